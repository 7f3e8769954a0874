"""Isolated Python environment builder."""

from __future__ import annotations

from dataclasses import dataclass

from stagekit.builders.base import BuildArtifact, BuildSpec
from stagekit.builders.materialize import materialize_artifact
from stagekit.errors import PackagingError


@dataclass(slots=True)
class VenvBuilder:
    """Create a venv at ``spec.output_path`` and pip-install ``spec.package`` into it.

    ``spec.package`` is the install target relative to ``spec.source`` and
    defaults to the source tree itself.
    """

    interpreter: str = "python3"
    name: str = "venv"

    def commands(self, spec: BuildSpec) -> tuple[tuple[str, ...], ...]:
        venv = spec.output_path
        target = spec.package or "."
        return (
            (self.interpreter, "-m", "venv", str(venv)),
            (str(venv / "bin" / "pip"), "install", *spec.flags, target),
        )

    def build(self, spec: BuildSpec) -> BuildArtifact:
        return materialize_artifact(
            builder_name=self.name,
            commands=self.commands(spec),
            spec=spec,
            error=PackagingError,
        )
