import json
import os
from pathlib import Path

import pytest

from stagekit.cache import StepCacheInput, StepCacheStore, cache_key, tree_digest
from stagekit.errors import ReproducibilityError
from stagekit.fsops import copy_path


def _inputs(**kwargs: object) -> StepCacheInput:
    fields: dict[str, object] = {
        "stage_base": "ubuntu:22.04",
        "parent_key": "",
        "step": {"kind": "compile", "binary": "indexify"},
        "inputs": {"context": "abc"},
        "env": {"SOURCE_DATE_EPOCH": "0"},
    }
    fields.update(kwargs)
    return StepCacheInput(**fields)  # type: ignore[arg-type]


def _tree(root: Path) -> Path:
    (root / "app").mkdir(parents=True)
    (root / "app" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
    return root


@pytest.mark.parametrize(
    "changed",
    [
        {"stage_base": "debian:bookworm"},
        {"parent_key": "parent"},
        {"step": {"kind": "compile", "binary": "migration"}},
        {"inputs": {"context": "def"}},
        {"env": {"SOURCE_DATE_EPOCH": "1"}},
    ],
)
def test_cache_key_changes_with_every_input(changed: dict[str, object]) -> None:
    assert cache_key(_inputs()) != cache_key(_inputs(**changed))


def test_cache_key_ignores_mapping_order() -> None:
    first = _inputs(env={"A": "1", "B": "2"})
    second = _inputs(env={"B": "2", "A": "1"})

    assert cache_key(first) == cache_key(second)


def test_cache_round_trip_restores_snapshot(tmp_path: Path) -> None:
    store = StepCacheStore(tmp_path / "cache")
    inputs = _inputs()
    key = store.save(inputs=inputs, tree=_tree(tmp_path / "root"))
    destination = tmp_path / "restored"
    destination.mkdir()
    (destination / "stale").write_text("old", encoding="utf-8")

    assert store.load(key=key, expected_inputs=inputs, destination=destination)
    assert (destination / "app" / "main.rs").is_file()
    assert not (destination / "stale").exists()


def test_cache_load_reports_miss(tmp_path: Path) -> None:
    store = StepCacheStore(tmp_path / "cache")

    assert not store.load(key="0" * 64, expected_inputs=_inputs(), destination=tmp_path / "root")


def test_cache_detects_tampered_snapshot(tmp_path: Path) -> None:
    store = StepCacheStore(tmp_path / "cache")
    inputs = _inputs()
    key = store.save(inputs=inputs, tree=_tree(tmp_path / "root"))
    (tmp_path / "cache" / key / "tree" / "app" / "main.rs").write_text("tampered", encoding="utf-8")

    with pytest.raises(ReproducibilityError, match="digest mismatch"):
        store.load(key=key, expected_inputs=inputs, destination=tmp_path / "restored")


def test_cache_detects_manifest_input_mismatch(tmp_path: Path) -> None:
    store = StepCacheStore(tmp_path / "cache")
    inputs = _inputs()
    key = store.save(inputs=inputs, tree=_tree(tmp_path / "root"))
    manifest_path = tmp_path / "cache" / key / "manifest.json"
    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    manifest["inputs"]["stage_base"] = "alpine:3"
    manifest_path.write_text(json.dumps(manifest), encoding="utf-8")

    with pytest.raises(ReproducibilityError) as excinfo:
        store.load(key=key, expected_inputs=inputs, destination=tmp_path / "restored")

    assert excinfo.value.context["key"] == key


def test_save_is_idempotent_for_existing_key(tmp_path: Path) -> None:
    store = StepCacheStore(tmp_path / "cache")
    inputs = _inputs()

    first = store.save(inputs=inputs, tree=_tree(tmp_path / "one"))
    second = store.save(inputs=inputs, tree=_tree(tmp_path / "two"))

    assert first == second
    assert [path.name for path in (tmp_path / "cache").iterdir()] == [first]


def test_tree_digest_ignores_timestamps(tmp_path: Path) -> None:
    root = _tree(tmp_path / "root")
    before = tree_digest(root)
    os.utime(root / "app" / "main.rs", (1, 1))

    assert tree_digest(root) == before


def test_tree_digest_tracks_content_and_exec_bit(tmp_path: Path) -> None:
    root = _tree(tmp_path / "root")
    before = tree_digest(root)
    (root / "app" / "main.rs").chmod(0o755)
    after_chmod = tree_digest(root)
    (root / "app" / "main.rs").write_text("fn main() { panic!() }\n", encoding="utf-8")

    assert len({before, after_chmod, tree_digest(root)}) == 3


def test_tree_digest_skips_excluded_paths(tmp_path: Path) -> None:
    root = _tree(tmp_path / "root")
    before = tree_digest(root, exclude=[root / "build"])
    (root / "build").mkdir()
    (root / "build" / "output.bin").write_bytes(b"\x00")

    assert tree_digest(root, exclude=[root / "build"]) == before
    assert tree_digest(root) != before


def test_copy_path_merges_directories_and_skips_excluded(tmp_path: Path) -> None:
    source = _tree(tmp_path / "context")
    (source / "build").mkdir()
    (source / "build" / "junk").write_text("x", encoding="utf-8")
    dest = tmp_path / "dest"
    (dest / "existing").mkdir(parents=True)

    copy_path(source, dest, exclude=[source / "build"])

    assert (dest / "app" / "main.rs").is_file()
    assert (dest / "existing").is_dir()
    assert not (dest / "build").exists()


def test_copy_path_places_file_inside_directory(tmp_path: Path) -> None:
    source = tmp_path / "indexify"
    source.write_text("binary", encoding="utf-8")
    (tmp_path / "srv").mkdir()

    copy_path(source, tmp_path / "srv")

    assert (tmp_path / "srv" / "indexify").read_text(encoding="utf-8") == "binary"


def test_prune_keeps_only_listed_entries(tmp_path: Path) -> None:
    store = StepCacheStore(tmp_path / "cache")
    kept = store.save(inputs=_inputs(), tree=_tree(tmp_path / "one"))
    stale = store.save(inputs=_inputs(parent_key="old"), tree=_tree(tmp_path / "two"))
    (tmp_path / "cache" / ".tmp-inflight").mkdir()

    removed = store.prune(keep_keys=[kept])

    assert removed == [stale]
    assert store.contains(kept)
    assert not (tmp_path / "cache" / stale).exists()
    assert (tmp_path / "cache" / ".tmp-inflight").is_dir()


def test_tree_digest_ignores_parent_holding_only_excluded_output(tmp_path: Path) -> None:
    root = _tree(tmp_path / "root")
    output = root / "dist" / "image"
    before = tree_digest(root, exclude=[output])
    (output / "rootfs").mkdir(parents=True)
    (output / "rootfs" / "indexify").write_text("binary", encoding="utf-8")

    assert tree_digest(root, exclude=[output]) == before

    (root / "dist" / "notes.txt").write_text("kept", encoding="utf-8")
    assert tree_digest(root, exclude=[output]) != before


def test_copy_path_skips_parent_holding_only_excluded_output(tmp_path: Path) -> None:
    source = _tree(tmp_path / "context")
    output = source / "dist" / "image"
    output.mkdir(parents=True)
    (output / "manifest.json").write_text("{}", encoding="utf-8")
    dest = tmp_path / "dest"

    copy_path(source, dest, exclude=[output])

    assert (dest / "app" / "main.rs").is_file()
    assert not (dest / "dist").exists()
