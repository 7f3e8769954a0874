"""Rust builder."""

from __future__ import annotations

from dataclasses import dataclass

from stagekit.builders.base import BuildArtifact, BuildSpec
from stagekit.builders.materialize import materialize_artifact
from stagekit.errors import CompilationError


@dataclass(slots=True)
class RustBuilder:
    tool: str = "cargo"
    name: str = "rust"

    def commands(self, spec: BuildSpec) -> tuple[tuple[str, ...], ...]:
        flags = list(spec.flags)
        if "--locked" not in flags:
            flags.append("--locked")
        command = [self.tool, "build"]
        if spec.profile == "release":
            command.append("--release")
        if spec.package:
            command.extend(["--package", spec.package])
        command.extend(flags)
        return (tuple(command),)

    def build(self, spec: BuildSpec) -> BuildArtifact:
        return materialize_artifact(
            builder_name=self.name,
            commands=self.commands(spec),
            spec=spec,
            error=CompilationError,
        )
