from pathlib import Path

import pytest

from stagekit.cli import main
from stagekit.manifest import read_manifest

SPEC = """\
[[stage]]
name = "builder"
base = "ubuntu:22.04"
workdir = "/app"
steps = [
  { kind = "copy_context", src = ".", dest = "." },
  { kind = "compile", binary = "indexify" },
  { kind = "export", port = "sample_config", path = "sample_config.yaml" },
]

[[stage]]
name = "runtime"
base = "ubuntu:22.04"
workdir = "/srv"
steps = [
  { kind = "copy_from", stage = "builder", port = "indexify", dest = "./" },
  { kind = "copy_from", stage = "builder", port = "sample_config", dest = "./config/indexify.yaml" },
]

[entrypoint]
argv = ["/srv/indexify", "start", "-c", "./config/indexify.yaml"]
config = "./config/indexify.yaml"
"""


@pytest.fixture
def spec_file(build_context: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in ("STAGEKIT_TOOLCHAIN_HOME", "STAGEKIT_REGISTRY_PROTOCOL", "SOURCE_DATE_EPOCH"):
        monkeypatch.delenv(name, raising=False)
    path = build_context / "stagekit.toml"
    path.write_text(SPEC, encoding="utf-8")
    return path


def test_validate_reports_stage_count(spec_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["-f", str(spec_file), "validate"]) == 0

    assert "2 stages" in capsys.readouterr().out


def test_lock_writes_default_lockfile(spec_file: Path) -> None:
    assert main(["-f", str(spec_file), "lock"]) == 0

    assert (spec_file.parent / "build" / "stagekit.lock").exists()


def test_build_then_promote(tmp_path: Path, spec_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
    output = tmp_path / "out"
    log = tmp_path / "build.jsonl"

    code = main(
        [
            "-f",
            str(spec_file),
            "build",
            "--backend",
            "inprocess",
            "--output",
            str(output),
            "--log",
            str(log),
        ]
    )

    assert code == 0
    assert "release ready: yes" in capsys.readouterr().out
    assert read_manifest(output / "manifest.json").release_ready
    assert log.read_text(encoding="utf-8").strip()
    assert main(["promote", str(output), str(tmp_path / "release")]) == 0
    assert (tmp_path / "release" / "image" / "srv" / "indexify").is_file()


def test_build_without_verification_cannot_be_promoted(
    tmp_path: Path,
    spec_file: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    output = tmp_path / "out"
    assert main(["-f", str(spec_file), "build", "--backend", "inprocess", "--output", str(output), "--no-verify"]) == 0

    assert main(["promote", str(output), str(tmp_path / "release")]) == 1
    assert "error [E_PROMOTION]" in capsys.readouterr().err


def test_frozen_build_without_lock_fails(
    tmp_path: Path,
    spec_file: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    code = main(["-f", str(spec_file), "build", "--backend", "inprocess", "--frozen", "--output", str(tmp_path / "o")])

    assert code == 1
    assert "error [E_LOCKFILE]" in capsys.readouterr().err


def test_emit_dockerfile_writes_file(tmp_path: Path, spec_file: Path) -> None:
    target = tmp_path / "Dockerfile"

    assert main(["-f", str(spec_file), "emit-dockerfile", str(target)]) == 0
    assert "FROM ubuntu:22.04 AS runtime" in target.read_text(encoding="utf-8")


def test_missing_specfile_reports_validation_error(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert main(["-f", str(tmp_path / "absent.toml"), "validate"]) == 1

    assert "error [E_VALIDATION]" in capsys.readouterr().err


def test_invalid_environment_settings_are_reported(
    spec_file: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("STAGEKIT_REGISTRY_PROTOCOL", "ftp")

    assert main(["-f", str(spec_file), "validate"]) == 1
    assert "registry protocol" in capsys.readouterr().err
