"""Lockfile resolution helpers."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from stagekit.lockfile.model import LOCKFILE_VERSION, LockedFetch, Lockfile


def pipeline_digest(pipeline: dict[str, Any]) -> str:
    canonical = json.dumps(pipeline, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def build_lockfile(*, pipeline: dict[str, Any]) -> Lockfile:
    toolchains: list[LockedFetch] = []
    for stage in pipeline.get("stages", []):
        if not isinstance(stage, dict):
            continue
        for step in stage.get("steps", []):
            if not isinstance(step, dict) or step.get("kind") != "toolchain":
                continue
            pin = step.get("pin", {})
            toolchains.append(
                LockedFetch(source=str(pin["url"]), kind="toolchain", digest=str(pin["sha256"]))
            )

    return Lockfile(
        version=LOCKFILE_VERSION,
        pipeline_digest=pipeline_digest(pipeline),
        pipeline=pipeline,
        toolchains=sorted(set(toolchains), key=lambda item: (item.source, item.digest)),
    )
