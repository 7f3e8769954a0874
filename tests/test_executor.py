import dataclasses
import json
import os
from collections.abc import Callable
from pathlib import Path

import pytest

from stagekit import InProcessBackend, Pipeline
from stagekit.cache import tree_digest
from stagekit.errors import (
    AssemblyError,
    CompilationError,
    PackagingError,
    ProvisioningError,
    ReproducibilityError,
    ToolchainBootstrapError,
    ValidationError,
)
from stagekit.executor import PipelineExecutor, StageRun
from stagekit.manifest import read_manifest


def test_build_assembles_runtime_image_with_only_copied_artifacts(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    pipeline = release_pipeline()

    result = pipeline.build(tmp_path / "out")

    image = result.image_dir
    assert (image / "srv" / "indexify").is_file()
    assert os.access(image / "srv" / "indexify", os.X_OK)
    assert (image / "srv" / "migration").is_file()
    assert (image / "srv" / "config" / "indexify.yaml").read_text(encoding="utf-8") == (
        "listen: 0.0.0.0:8900\n"
    )
    assert (image / "srv" / "start.sh").is_file()
    assert (image / "venv" / "pyvenv.cfg").is_file()
    assert not (image / "opt" / "rust").exists()
    assert not (image / "app").exists()
    assert result.manifest.packages == ("libssl-dev", "python3")
    assert result.stages == {"builder": "complete", "runtime": "complete"}


def test_build_runs_entrypoint_self_test_and_marks_release_ready(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    result = release_pipeline().build(tmp_path / "out")

    assert result.verification is not None
    assert result.verification.ok
    assert "indexify: ready" in result.verification.stdout
    assert result.release_ready
    assert read_manifest(result.manifest_path).release_ready


def test_manifest_records_artifact_provenance(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    result = release_pipeline().build(tmp_path / "out")

    by_dest = {artifact.dest: artifact for artifact in result.manifest.artifacts}
    assert set(by_dest) == {
        "/srv/indexify",
        "/srv/migration",
        "/srv/config/indexify.yaml",
        "/venv",
    }
    assert by_dest["/srv/indexify"].stage == "builder"
    assert by_dest["/srv/indexify"].digest == tree_digest(result.image_dir / "srv" / "indexify")
    assert result.manifest.entrypoint == ("/srv/indexify", "start", "-c", "./config/indexify.yaml")


def test_stages_run_in_dependency_order(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    backend = InProcessBackend()
    release_pipeline(backend=backend).build(tmp_path / "out")

    stages = [call.split(":", 1)[0] for call in backend.calls]
    assert stages.index("runtime") > max(i for i, stage in enumerate(stages) if stage == "builder")


@pytest.mark.parametrize(
    ("fail_on", "error_type"),
    [
        ("provision", ProvisioningError),
        ("compile:migration", CompilationError),
        ("venv", PackagingError),
    ],
)
def test_builder_failure_publishes_no_image(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
    fail_on: str,
    error_type: type[Exception],
) -> None:
    pipeline = release_pipeline(backend=InProcessBackend(fail_on=(fail_on,)))
    output = tmp_path / "out"

    with pytest.raises(error_type):
        pipeline.build(output)

    assert not output.exists()
    assert pipeline.stage_status("builder") == "failed"
    assert pipeline.stage_status("runtime") == "pending"
    assert list((tmp_path / "build" / ".work").iterdir()) == []


def test_failed_rebuild_keeps_previous_output(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    output = tmp_path / "out"
    first = release_pipeline().build(output)

    broken = release_pipeline(
        backend=InProcessBackend(fail_on=("compile:indexify",)),
        build_dir=tmp_path / "other-build",
    )
    with pytest.raises(CompilationError):
        broken.build(output)

    assert read_manifest(output / "manifest.json").tree_digest == first.manifest.tree_digest


def test_toolchain_bootstrap_failure_is_typed(
    tmp_path: Path,
    build_context: Path,
) -> None:
    pipeline = Pipeline(build_dir=tmp_path / "build", context_dir=build_context, backend=InProcessBackend())
    builder = pipeline.stage("builder", base="ubuntu:22.04", workdir="/app")
    builder.toolchain(
        "rust",
        version="1.79.0",
        url=(tmp_path / "missing.tar.gz").as_uri(),
        sha256="0" * 64,
        install_dir="/opt/rust",
    )
    builder.compile("indexify")
    runtime = pipeline.stage("runtime", base="ubuntu:22.04", workdir="/srv")
    runtime.copy_from(builder, "indexify", "./")
    pipeline.entrypoint("/srv/indexify")

    with pytest.raises(ToolchainBootstrapError):
        pipeline.build(tmp_path / "out")

    assert not (tmp_path / "out").exists()


def test_toolchain_copied_into_runtime_is_rejected(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    pipeline = release_pipeline(export_toolchain=True)

    with pytest.raises(AssemblyError) as excinfo:
        pipeline.build(tmp_path / "out")

    assert excinfo.value.context["path"].startswith("/opt/rust")
    assert not (tmp_path / "out").exists()


def test_compiler_executable_in_runtime_is_rejected(
    tmp_path: Path,
    build_context: Path,
) -> None:
    gcc = build_context / "gcc"
    gcc.write_text("#!/bin/sh\n", encoding="utf-8")
    gcc.chmod(0o755)
    pipeline = Pipeline(build_dir=tmp_path / "build", context_dir=build_context, backend=InProcessBackend())
    builder = pipeline.stage("builder", base="ubuntu:22.04", workdir="/app")
    builder.copy_context(".", ".")
    builder.compile("indexify")
    runtime = pipeline.stage("runtime", base="ubuntu:22.04", workdir="/srv")
    runtime.copy_from(builder, "indexify", "./")
    runtime.copy_context("gcc", "/usr/bin/gcc")
    pipeline.entrypoint("/srv/indexify")

    with pytest.raises(AssemblyError) as excinfo:
        pipeline.build(tmp_path / "out", verify=False)

    assert excinfo.value.context["path"] == "/usr/bin/gcc"


def test_missing_context_path_raises_assembly_error(
    tmp_path: Path,
    build_context: Path,
) -> None:
    pipeline = Pipeline(build_dir=tmp_path / "build", context_dir=build_context, backend=InProcessBackend())
    stage = pipeline.stage("runtime", base="ubuntu:22.04", workdir="/srv")
    stage.copy_context("scripts/missing.sh", ".")
    pipeline.entrypoint("/srv/missing.sh")

    with pytest.raises(AssemblyError) as excinfo:
        pipeline.build(tmp_path / "out")

    assert excinfo.value.context["src"] == "scripts/missing.sh"


def test_context_copy_applies_file_mode(tmp_path: Path, build_context: Path) -> None:
    pipeline = Pipeline(build_dir=tmp_path / "build", context_dir=build_context, backend=InProcessBackend())
    stage = pipeline.stage("runtime", base="ubuntu:22.04", workdir="/srv")
    stage.copy_context("sample_config.yaml", "./config/", mode="0600")
    pipeline.entrypoint("/srv/config/sample_config.yaml")

    result = pipeline.build(tmp_path / "out", verify=False)

    copied = result.image_dir / "srv" / "config" / "sample_config.yaml"
    assert copied.stat().st_mode & 0o777 == 0o600
    assert not result.release_ready


def test_export_of_missing_path_raises_assembly_error(
    tmp_path: Path,
    build_context: Path,
) -> None:
    pipeline = Pipeline(build_dir=tmp_path / "build", context_dir=build_context, backend=InProcessBackend())
    builder = pipeline.stage("builder", base="ubuntu:22.04", workdir="/app")
    builder.compile("indexify")
    builder.export("config", "sample_config.yaml")
    runtime = pipeline.stage("runtime", base="ubuntu:22.04", workdir="/srv")
    runtime.copy_from(builder, "config", "./config.yaml")
    pipeline.entrypoint("/srv/indexify")

    with pytest.raises(AssemblyError):
        pipeline.build(tmp_path / "out")

    assert pipeline.stage_status("builder") == "failed"


def test_rebuild_is_served_from_step_cache(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    first = release_pipeline().build(tmp_path / "out")
    backend = InProcessBackend()
    second = release_pipeline(backend=backend).build(tmp_path / "out")

    assert first.cache_hits == []
    assert second.cache_misses == []
    assert len(second.cache_hits) == len(first.cache_misses)
    assert backend.calls == []
    assert second.manifest.tree_digest == first.manifest.tree_digest
    assert second.manifest.artifacts == first.manifest.artifacts
    assert second.release_ready


def test_context_change_invalidates_dependent_steps(
    tmp_path: Path,
    build_context: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    first = release_pipeline().build(tmp_path / "out")
    (build_context / "src" / "main.rs").write_text("fn main() { run(); }\n", encoding="utf-8")

    second = release_pipeline().build(tmp_path / "out")

    assert second.cache_misses
    assert second.manifest.tree_digest != first.manifest.tree_digest


def test_independent_builds_produce_identical_images(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    first = release_pipeline(build_dir=tmp_path / "build-a").build(tmp_path / "out-a")
    second = release_pipeline(build_dir=tmp_path / "build-b").build(tmp_path / "out-b")

    assert first.manifest.tree_digest == second.manifest.tree_digest
    assert first.manifest.to_json() == second.manifest.to_json()
    assert tree_digest(first.image_dir) == tree_digest(second.image_dir)


def test_tampered_cache_entry_is_rejected(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    release_pipeline().build(tmp_path / "out")
    entries = sorted((tmp_path / "build" / ".cache" / "steps").iterdir())
    (entries[0] / "tree" / "injected").write_text("tampered\n", encoding="utf-8")

    with pytest.raises(ReproducibilityError):
        release_pipeline().build(tmp_path / "out-2")

    assert not (tmp_path / "out-2").exists()


def test_build_without_cache_executes_every_step(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    release_pipeline().build(tmp_path / "out")
    backend = InProcessBackend()

    result = release_pipeline(backend=backend).build(tmp_path / "out", use_cache=False)

    assert result.cache_hits == []
    assert "builder:compile:indexify" in backend.calls


def test_report_records_stages_cache_and_logs(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    result = release_pipeline().build(tmp_path / "out")

    report = json.loads(result.report_path.read_text(encoding="utf-8"))
    assert report["backend"] == "inprocess"
    assert report["stages"] == {"builder": "complete", "runtime": "complete"}
    assert set(report["ports"]["builder"]) == {"indexify", "migration", "venv", "sample_config"}
    assert report["tree_digest"] == result.manifest.tree_digest
    assert report["verification"]["ok"] is True
    operations = {record["operation"] for record in report["logs"]}
    assert {"stage_start", "step_complete", "artifact_copy", "verify", "stage_complete"} <= operations
    assert report["timeline"]["builder"][0] == "stage_start"
    assert report["timeline"]["runtime"][-2:] == ["stage_complete", "verify"]
    assert len({record["run"] for record in report["logs"]}) == 1
    assert report["host_prerequisites"] == []


def test_stage_run_rejects_invalid_transitions() -> None:
    run = StageRun("builder")
    run.transition("executing")
    run.transition("complete")

    with pytest.raises(ValidationError):
        run.transition("executing")
    with pytest.raises(ValidationError):
        StageRun("runtime").transition("complete")


def test_stage_status_before_build_is_pending(release_pipeline: Callable[..., Pipeline]) -> None:
    pipeline = release_pipeline()

    assert pipeline.stage_status("builder") == "pending"
    with pytest.raises(ValidationError):
        pipeline.stage_status("unknown")


def test_interrupted_build_cleans_work_dir(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _interrupt(*args: object, **kwargs: object) -> None:
        raise KeyboardInterrupt

    monkeypatch.setattr(InProcessBackend, "package", _interrupt)
    pipeline = release_pipeline()

    with pytest.raises(KeyboardInterrupt):
        pipeline.build(tmp_path / "out")

    assert pipeline.stage_status("builder") == "failed"
    assert list((tmp_path / "build" / ".work").iterdir()) == []
    assert not (tmp_path / "out").exists()


def test_rebuild_into_output_inside_context_is_idempotent(
    build_context: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    output = build_context / "dist" / "image"
    first = release_pipeline().build(output)

    second = release_pipeline().build(output)

    assert second.cache_misses == []
    assert second.manifest.tree_digest == first.manifest.tree_digest
    assert second.manifest.artifacts == first.manifest.artifacts


def test_context_symlink_outside_context_is_rejected(tmp_path: Path, build_context: Path) -> None:
    secret = tmp_path / "secret.txt"
    secret.write_text("s3cret\n", encoding="utf-8")
    (build_context / "leak.txt").symlink_to(secret)
    pipeline = Pipeline(build_dir=tmp_path / "build", context_dir=build_context, backend=InProcessBackend())
    stage = pipeline.stage("runtime", base="ubuntu:22.04", workdir="/srv")
    stage.copy_context("leak.txt", "./leak.txt")
    pipeline.entrypoint("/srv/leak.txt")

    with pytest.raises(AssemblyError) as excinfo:
        pipeline.build(tmp_path / "out", verify=False)

    assert excinfo.value.context["src"] == "leak.txt"
    assert not (tmp_path / "out").exists()


def test_declared_stage_env_wins_over_build_defaults(
    tmp_path: Path,
    build_context: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    seen: list[dict[str, str]] = []
    original = InProcessBackend.compile

    def _compile(self: InProcessBackend, ctx: object, step: object, env: dict[str, str]) -> Path:
        seen.append(dict(env))
        return original(self, ctx, step, env)  # type: ignore[arg-type]

    monkeypatch.setattr(InProcessBackend, "compile", _compile)
    pipeline = Pipeline(build_dir=tmp_path / "build", context_dir=build_context, backend=InProcessBackend())
    builder = pipeline.stage("builder", base="ubuntu:22.04", workdir="/app")
    builder.env("CARGO_REGISTRIES_CRATES_IO_PROTOCOL", "git")
    builder.copy_context(".", ".")
    builder.compile("indexify")
    runtime = pipeline.stage("runtime", base="ubuntu:22.04", workdir="/srv")
    runtime.copy_from(builder, "indexify", "./")
    pipeline.entrypoint("/srv/indexify")

    pipeline.build(tmp_path / "out", verify=False)

    assert seen[0]["CARGO_REGISTRIES_CRATES_IO_PROTOCOL"] == "git"
    assert seen[0]["SOURCE_DATE_EPOCH"] == "0"


def test_rebuild_after_context_change_prunes_stale_cache_entries(
    tmp_path: Path,
    build_context: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    release_pipeline().build(tmp_path / "out")
    (build_context / "src" / "main.rs").write_text("fn main() { run(); }\n", encoding="utf-8")

    result = release_pipeline().build(tmp_path / "out")

    report = json.loads(result.report_path.read_text(encoding="utf-8"))
    keys = {
        record["extra"]["key"]
        for record in report["logs"]
        if record["operation"] in ("step_cached", "step_complete")
    }
    entries = {path.name for path in (tmp_path / "build" / ".cache" / "steps").iterdir()}
    assert result.cache_misses
    assert entries == keys


def test_interrupted_publish_restores_previous_output(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    output = tmp_path / "out"
    first = release_pipeline().build(output)
    real_replace = os.replace

    def _replace(src: os.PathLike[str], dst: os.PathLike[str]) -> None:
        if str(src).endswith(".staging"):
            raise KeyboardInterrupt
        real_replace(src, dst)

    monkeypatch.setattr("stagekit.executor.os.replace", _replace)

    with pytest.raises(KeyboardInterrupt):
        release_pipeline().build(output)

    assert read_manifest(output / "manifest.json").tree_digest == first.manifest.tree_digest
    assert [path.name for path in tmp_path.iterdir() if path.name.startswith(".out.")] == []


def test_consecutive_builds_report_only_their_own_logs(
    tmp_path: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    pipeline = release_pipeline()
    pipeline.build(tmp_path / "out")

    result = pipeline.build(tmp_path / "out")

    report = json.loads(result.report_path.read_text(encoding="utf-8"))
    assert len({record["run"] for record in report["logs"]}) == 1
    assert report["logs"][0]["run"] == pipeline.logger.run_id
    assert report["timeline"]["builder"].count("stage_start") == 1
    assert len(pipeline.logger.records) > len(report["logs"])


def test_executor_without_entrypoint_raises_validation_error(
    tmp_path: Path,
    build_context: Path,
    release_pipeline: Callable[..., Pipeline],
) -> None:
    spec = dataclasses.replace(release_pipeline().spec(), entrypoint=None)
    executor = PipelineExecutor(
        spec,
        backend=InProcessBackend(),
        context_dir=build_context,
        build_dir=tmp_path / "build",
    )

    with pytest.raises(ValidationError) as excinfo:
        executor.execute(tmp_path / "out")

    assert "entrypoint" in str(excinfo.value)
    assert not (tmp_path / "out").exists()
