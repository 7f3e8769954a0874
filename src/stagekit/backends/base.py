"""Protocol and shared stage context for step execution backends."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from stagekit.ir.model import CommandStep, CompileStep, ProvisionStep, VenvStep, resolve_in_stage

PACKAGE_RECORD_DIR = "/var/lib/stagekit/packages"
PATH_PLACEHOLDERS = ("$PATH", "${PATH}")


@dataclass(slots=True)
class StageContext:
    """Host-side view of one stage's isolated filesystem."""

    name: str
    base: str
    root: Path
    workdir: str = "/"
    env: dict[str, str] = field(default_factory=dict)
    path_prefix: list[str] = field(default_factory=list)
    toolchain_dirs: list[str] = field(default_factory=list)

    def host_path(self, path: str) -> Path:
        """Map an in-stage path (absolute or workdir-relative) to the host."""
        resolved = resolve_in_stage(self.workdir, path)
        return self.root / resolved.lstrip("/")

    def workdir_path(self) -> Path:
        return self.host_path(self.workdir)

    def search_path(self, host_path: str | None = None) -> str:
        """Build PATH: toolchain bins, then the stage PATH binding, then the host PATH."""
        inherited = host_path if host_path is not None else os.environ.get("PATH", "")
        entries: list[str] = [str(self.host_path(entry)) for entry in reversed(self.path_prefix)]
        declared = self.env.get("PATH")
        if declared is None:
            entries.append(inherited)
        else:
            for entry in declared.split(":"):
                if entry in PATH_PLACEHOLDERS:
                    entries.append(inherited)
                elif entry.startswith("/"):
                    entries.append(str(self.host_path(entry)))
        return ":".join(entry for entry in entries if entry)

    def host_env(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        env = dict(os.environ)
        env.update({key: value for key, value in self.env.items() if key != "PATH"})
        env.update(extra or {})
        env["PATH"] = self.search_path()
        return env


@dataclass(frozen=True, slots=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class BuildBackend(Protocol):
    name: str

    def prepare(self, ctx: StageContext) -> None:
        """Create the stage filesystem from its base."""

    def provision(self, ctx: StageContext, step: ProvisionStep) -> None:
        """Install system packages; raise ProvisioningError on failure."""

    def run(self, ctx: StageContext, step: CommandStep) -> CommandResult:
        """Run a command inside the stage and report its outcome."""

    def compile(self, ctx: StageContext, step: CompileStep, env: Mapping[str, str]) -> Path:
        """Compile a binary and return its host path; raise CompilationError on failure."""

    def package(self, ctx: StageContext, step: VenvStep, env: Mapping[str, str]) -> Path:
        """Create an isolated interpreter environment; raise PackagingError on failure."""

    def cleanup(self, ctx: StageContext) -> None:
        """Release backend resources held for the stage."""

    def host_prerequisites(self) -> tuple[str, ...]:
        """System packages installed on the build host instead of into a stage root."""


def record_packages(ctx: StageContext, packages: tuple[str, ...]) -> None:
    record_dir = ctx.host_path(PACKAGE_RECORD_DIR)
    record_dir.mkdir(parents=True, exist_ok=True)
    for package in packages:
        (record_dir / package).write_text(f"{package}\n", encoding="utf-8")


def recorded_packages(root: Path) -> tuple[str, ...]:
    record_dir = root / PACKAGE_RECORD_DIR.lstrip("/")
    if not record_dir.is_dir():
        return ()
    return tuple(sorted(path.name for path in record_dir.iterdir()))
