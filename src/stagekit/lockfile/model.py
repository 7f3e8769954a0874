"""Lockfile typed model."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

LOCKFILE_VERSION = 1


@dataclass(frozen=True, slots=True)
class LockedFetch:
    """A pinned download recorded in the lockfile (currently only toolchains)."""

    source: str
    kind: str
    digest: str


@dataclass(frozen=True, slots=True)
class Lockfile:
    version: int
    pipeline_digest: str
    pipeline: dict[str, Any]
    toolchains: list[LockedFetch] = field(default_factory=list)
