"""Real artifact materialization via subprocess execution.

Runs actual compile and packaging commands (cargo build, python -m venv,
pip install) and checks that the expected output exists afterwards.
"""

from __future__ import annotations

import os
import subprocess

from stagekit.builders.base import BuildArtifact, BuildSpec
from stagekit.errors import StagekitError


def materialize_artifact(
    *,
    builder_name: str,
    commands: tuple[tuple[str, ...], ...],
    spec: BuildSpec,
    error: type[StagekitError],
) -> BuildArtifact:
    env = dict(os.environ)
    env.update(spec.env)
    env.setdefault("SOURCE_DATE_EPOCH", "0")

    for command in commands:
        try:
            result = subprocess.run(
                list(command),
                cwd=str(spec.source),
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise error(
                f"{builder_name} tool is not available.",
                hint="Install or bootstrap the toolchain in an earlier step.",
                context={"builder": builder_name, "command": " ".join(command)},
            ) from exc
        if result.returncode != 0:
            raise error(
                f"{builder_name} build failed.",
                hint=f"Check {builder_name} output and build configuration.",
                context={
                    "builder": builder_name,
                    "command": " ".join(command),
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[:2000] if result.stderr else "",
                },
            )

    if not spec.output_path.exists():
        raise error(
            f"{builder_name} build did not produce the expected output.",
            hint="Check the binary/package name and build profile.",
            context={"builder": builder_name, "output_path": str(spec.output_path)},
        )

    return BuildArtifact(
        builder=builder_name,
        output_path=spec.output_path,
        commands=commands,
    )
