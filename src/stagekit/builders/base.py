"""Typed interfaces for language/toolchain builders."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(frozen=True, slots=True)
class BuildSpec:
    name: str
    source: Path
    output_path: Path
    package: str | None = None
    profile: str = "release"
    flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BuildArtifact:
    builder: str
    output_path: Path
    commands: tuple[tuple[str, ...], ...]


class Builder(Protocol):
    name: str

    def commands(self, spec: BuildSpec) -> tuple[tuple[str, ...], ...]:
        """Return the ordered commands that produce the artifact."""

    def build(self, spec: BuildSpec) -> BuildArtifact:
        """Compile source and return output artifact path."""
