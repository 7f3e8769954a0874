"""Cache key derivation."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

CACHE_SCHEMA_VERSION = 1


@dataclass(frozen=True, slots=True)
class StepCacheInput:
    stage_base: str
    parent_key: str
    step: dict[str, Any]
    inputs: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    schema_version: int = CACHE_SCHEMA_VERSION


def cache_key(inputs: StepCacheInput) -> str:
    canonical = json.dumps(_to_payload(inputs), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _to_payload(inputs: StepCacheInput) -> dict[str, Any]:
    return {
        "schema_version": inputs.schema_version,
        "stage_base": inputs.stage_base,
        "parent_key": inputs.parent_key,
        "step": inputs.step,
        "inputs": dict(sorted(inputs.inputs.items())),
        "env": dict(sorted(inputs.env.items())),
    }
