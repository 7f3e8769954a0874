"""Native host execution backend.

Each stage root is a directory on the host and steps run as real processes
with the stage workdir as their working directory. Package provisioning
goes through the host package manager; by default ``sudo`` is used for
privilege escalation when not running as root. Set ``privilege="none"`` to
invoke the package manager directly.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from stagekit.backends.base import CommandResult, StageContext
from stagekit.builders import BUILDERS, BuildSpec, VenvBuilder
from stagekit.errors import CompilationError, ProvisioningError, ValidationError
from stagekit.ir.model import CommandStep, CompileStep, ProvisionStep, VenvStep

DEFAULT_UPDATE_ARGV = ("apt-get", "update")
DEFAULT_INSTALL_ARGV = ("apt-get", "install", "-y", "--no-install-recommends")


@dataclass(slots=True)
class LocalBackend:
    name: str = "local"
    privilege: Literal["sudo", "none"] = "sudo"
    update_argv: tuple[str, ...] = DEFAULT_UPDATE_ARGV
    install_argv: tuple[str, ...] = DEFAULT_INSTALL_ARGV
    extra_env: dict[str, str] = field(default_factory=dict)
    host_packages: list[str] = field(default_factory=list)

    def prepare(self, ctx: StageContext) -> None:
        self._ensure_local_prerequisites(ctx)
        ctx.root.mkdir(parents=True, exist_ok=True)
        ctx.workdir_path().mkdir(parents=True, exist_ok=True)

    def provision(self, ctx: StageContext, step: ProvisionStep) -> None:
        prefix = self._privilege_prefix()
        for argv in (self.update_argv, (*self.install_argv, *step.packages)):
            if not argv:
                continue
            cmd = [*prefix, *argv]
            try:
                result = subprocess.run(
                    cmd,
                    capture_output=True,
                    text=True,
                    check=False,
                )
            except FileNotFoundError as exc:
                raise ProvisioningError(
                    "Package manager is not available on this host.",
                    hint="Use the in-process backend or run on a Debian-based host.",
                    context={"stage": ctx.name, "command": " ".join(cmd)},
                ) from exc
            if result.returncode != 0:
                raise ProvisioningError(
                    "System package installation failed.",
                    hint="Check package names and repository access.",
                    context={
                        "backend": self.name,
                        "stage": ctx.name,
                        "command": " ".join(cmd),
                        "returncode": str(result.returncode),
                        "stderr": result.stderr[:2000] if result.stderr else "",
                    },
                )
        # apt installs system-wide, so these are host prerequisites, not image contents.
        for package in step.packages:
            if package not in self.host_packages:
                self.host_packages.append(package)

    def run(self, ctx: StageContext, step: CommandStep) -> CommandResult:
        env = ctx.host_env({**self.extra_env, **step.env})
        try:
            result = subprocess.run(
                list(step.argv),
                cwd=str(ctx.workdir_path()),
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            return CommandResult(argv=step.argv, returncode=127, stderr=str(exc))
        return CommandResult(
            argv=step.argv,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def compile(self, ctx: StageContext, step: CompileStep, env: Mapping[str, str]) -> Path:
        builder_cls = BUILDERS.get(step.builder)
        if builder_cls is None:
            raise CompilationError(
                "Unknown builder.",
                context={"stage": ctx.name, "builder": step.builder},
            )
        spec = BuildSpec(
            name=step.binary,
            source=ctx.workdir_path(),
            output_path=ctx.host_path(step.output_path(ctx.workdir)),
            package=step.package,
            profile=step.profile,
            flags=step.flags,
            env=ctx.host_env({**self.extra_env, **env}),
        )
        return builder_cls().build(spec).output_path

    def package(self, ctx: StageContext, step: VenvStep, env: Mapping[str, str]) -> Path:
        spec = BuildSpec(
            name=step.port,
            source=ctx.host_path(step.source),
            output_path=ctx.host_path(step.venv),
            env=ctx.host_env({**self.extra_env, **env}),
        )
        return VenvBuilder(interpreter=step.interpreter).build(spec).output_path

    def cleanup(self, ctx: StageContext) -> None:
        pass

    def host_prerequisites(self) -> tuple[str, ...]:
        return tuple(sorted(self.host_packages))

    def _privilege_prefix(self) -> list[str]:
        if self.privilege == "sudo" and os.getuid() != 0:
            return ["sudo"]
        return []

    def _ensure_local_prerequisites(self, ctx: StageContext) -> None:
        if not sys.platform.startswith("linux"):
            raise ValidationError(
                "Local backend requires a Linux host.",
                hint="Use the in-process backend on this platform.",
                context={"backend": self.name, "stage": ctx.name, "operation": "prepare"},
            )
        if self.privilege == "sudo" and os.getuid() != 0 and shutil.which("sudo") is None:
            raise ValidationError(
                "Local backend requires `sudo` when not running as root.",
                hint="Run as root or construct LocalBackend(privilege='none').",
                context={"backend": self.name, "stage": ctx.name, "operation": "prepare"},
            )
