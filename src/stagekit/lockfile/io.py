"""Reading and writing ``stagekit.lock``."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from stagekit.errors import LockfileError
from stagekit.lockfile.model import LOCKFILE_VERSION, LockedFetch, Lockfile
from stagekit.lockfile.resolve import pipeline_digest

_SHA256 = re.compile(r"[0-9a-f]{64}")
_REGENERATE = "Re-run pipeline.lock() (or `stagekit lock`) to regenerate it."


def serialize_lockfile(lockfile: Lockfile) -> str:
    payload = {
        "version": lockfile.version,
        "pipeline_digest": lockfile.pipeline_digest,
        "pipeline": lockfile.pipeline,
        "toolchains": [
            {"source": item.source, "kind": item.kind, "digest": item.digest}
            for item in lockfile.toolchains
        ],
    }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def parse_lockfile(raw: str) -> Lockfile:
    """Parse lockfile text, checking its schema and its own pipeline digest."""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LockfileError("Lockfile is not valid JSON.", hint=_REGENERATE) from exc
    if not isinstance(payload, dict):
        raise LockfileError("Lockfile must contain a JSON object.", hint=_REGENERATE)

    version = payload.get("version")
    if not isinstance(version, int) or isinstance(version, bool):
        raise LockfileError("Lockfile `version` must be an integer.", hint=_REGENERATE)
    if version != LOCKFILE_VERSION:
        raise LockfileError(
            "Unsupported lockfile version.",
            hint=_REGENERATE,
            context={"version": str(version), "supported": str(LOCKFILE_VERSION)},
        )

    digest = payload.get("pipeline_digest")
    if not isinstance(digest, str) or not digest:
        raise LockfileError("Lockfile `pipeline_digest` must be a non-empty string.")
    pipeline = payload.get("pipeline")
    if not isinstance(pipeline, dict):
        raise LockfileError("Lockfile `pipeline` must be an object.")
    if pipeline_digest(pipeline) != digest:
        raise LockfileError(
            "Lockfile pipeline does not match its recorded digest.",
            hint=_REGENERATE,
            context={"recorded": digest, "actual": pipeline_digest(pipeline)},
        )

    entries = payload.get("toolchains", [])
    if not isinstance(entries, list):
        raise LockfileError("Lockfile `toolchains` must be a list.")
    return Lockfile(
        version=version,
        pipeline_digest=digest,
        pipeline=pipeline,
        toolchains=[_locked_toolchain(entry, index) for index, entry in enumerate(entries)],
    )


def read_lockfile(path: str | Path) -> Lockfile:
    lock_path = Path(path)
    try:
        raw = lock_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise LockfileError(
            "Lockfile does not exist.",
            hint="Run pipeline.lock() before using frozen mode.",
            context={"path": str(lock_path)},
        ) from exc
    return parse_lockfile(raw)


def write_lockfile(lockfile: Lockfile, path: str | Path) -> Path:
    lock_path = Path(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = lock_path.with_name(f".{lock_path.name}.tmp")
    temp_path.write_text(serialize_lockfile(lockfile), encoding="utf-8")
    temp_path.replace(lock_path)
    return lock_path


def _locked_toolchain(entry: Any, index: int) -> LockedFetch:
    context = {"entry": str(index)}
    if not isinstance(entry, dict):
        raise LockfileError("Lockfile toolchain entry must be an object.", context=context)
    source = entry.get("source")
    kind = entry.get("kind")
    digest = entry.get("digest")
    if not isinstance(source, str) or not source:
        raise LockfileError("Lockfile toolchain entry has no source.", context=context)
    if kind != "toolchain":
        raise LockfileError("Lockfile entry kind must be 'toolchain'.", context={**context, "kind": str(kind)})
    if not isinstance(digest, str) or not _SHA256.fullmatch(digest):
        raise LockfileError(
            "Lockfile toolchain digest must be a sha256 hex string.",
            context={**context, "source": source},
        )
    return LockedFetch(source=source, kind=kind, digest=digest)
