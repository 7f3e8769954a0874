"""Content-addressed step cache store with manifest verification."""

from __future__ import annotations

import json
import os
import shutil
import uuid
from collections.abc import Iterable
from pathlib import Path

from stagekit.cache.digest import tree_digest
from stagekit.cache.keys import StepCacheInput, _to_payload, cache_key
from stagekit.errors import ReproducibilityError
from stagekit.fsops import remove_path


class StepCacheStore:
    """Snapshots of stage roots keyed by the inputs of the step that produced them.

    Entries are written to a private temporary directory and published with a
    single rename, so concurrent writers of the same key never expose a
    half-written entry.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def contains(self, key: str) -> bool:
        return (self.root / key / "manifest.json").exists()

    def load(self, *, key: str, expected_inputs: StepCacheInput, destination: Path) -> bool:
        entry = self.root / key
        tree_path = entry / "tree"
        manifest_path = entry / "manifest.json"
        if not tree_path.exists() or not manifest_path.exists():
            return False

        manifest = self._read_manifest(manifest_path)
        if manifest.get("inputs") != _to_payload(expected_inputs):
            raise ReproducibilityError(
                "Cache manifest inputs do not match expected step inputs.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": key},
            )
        if manifest.get("key") != key:
            raise ReproducibilityError(
                "Cache manifest key mismatch.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": key},
            )
        actual_digest = tree_digest(tree_path)
        if manifest.get("tree_sha256") != actual_digest:
            raise ReproducibilityError(
                "Cache snapshot digest mismatch.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "key": key},
            )

        if destination.exists():
            shutil.rmtree(destination)
        shutil.copytree(tree_path, destination, symlinks=True)
        return True

    def save(self, *, inputs: StepCacheInput, tree: Path) -> str:
        key = cache_key(inputs)
        entry = self.root / key
        if self.contains(key):
            return key

        staging = self.root / f".tmp-{uuid.uuid4().hex}"
        try:
            shutil.copytree(tree, staging / "tree", symlinks=True)
            manifest = {
                "key": key,
                "inputs": _to_payload(inputs),
                "tree_sha256": tree_digest(staging / "tree"),
            }
            (staging / "manifest.json").write_text(
                json.dumps(manifest, indent=2, sort_keys=True) + "\n",
                encoding="utf-8",
            )
            try:
                os.replace(staging, entry)
            except OSError:
                # Another writer published the same key first.
                if not self.contains(key):
                    raise
        finally:
            if staging.exists():
                shutil.rmtree(staging)
        return key

    def prune(self, *, keep_keys: Iterable[str]) -> list[str]:
        """Delete every published entry whose key is not in *keep_keys*.

        In-flight ``.tmp-*`` directories belong to concurrent writers and are
        left alone.
        """
        keep = set(keep_keys)
        removed: list[str] = []
        for entry in sorted(self.root.iterdir()):
            if entry.name.startswith(".") or entry.name in keep:
                continue
            remove_path(entry)
            removed.append(entry.name)
        return removed

    def _read_manifest(self, path: Path) -> dict[str, object]:
        try:
            parsed = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ReproducibilityError(
                "Cache manifest is not valid JSON.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "path": str(path)},
            ) from exc
        if not isinstance(parsed, dict):
            raise ReproducibilityError(
                "Cache manifest has invalid structure.",
                hint="Invalidate the cache entry and rebuild.",
                context={"operation": "cache_load", "path": str(path)},
            )
        return parsed
