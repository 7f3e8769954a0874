"""IR dataclasses shared by the executor, compiler, and validators."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, ClassVar, Literal

RustProfile = Literal["release", "debug"]


def resolve_in_stage(workdir: str, path: str) -> str:
    """Return *path* as an absolute in-stage path, relative to *workdir*."""
    candidate = PurePosixPath(path)
    if not candidate.is_absolute():
        candidate = PurePosixPath(workdir) / candidate
    parts: list[str] = []
    for part in candidate.parts[1:]:
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    return "/" + "/".join(parts)


@dataclass(frozen=True, slots=True)
class ToolchainPin:
    """A version-locked toolchain archive verified by content digest."""

    name: str
    version: str
    url: str
    sha256: str
    install_dir: str
    bin_dir: str = "bin"
    installer: tuple[str, ...] = ()

    def payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "url": self.url,
            "sha256": self.sha256,
            "install_dir": self.install_dir,
            "bin_dir": self.bin_dir,
            "installer": list(self.installer),
        }


@dataclass(frozen=True, slots=True)
class ProvisionStep:
    packages: tuple[str, ...]

    kind: ClassVar[str] = "provision"

    @property
    def label(self) -> str:
        return f"provision:{','.join(self.packages)}"

    def payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "packages": list(self.packages)}


@dataclass(frozen=True, slots=True)
class ToolchainStep:
    pin: ToolchainPin

    kind: ClassVar[str] = "toolchain"

    @property
    def label(self) -> str:
        return f"toolchain:{self.pin.name}-{self.pin.version}"

    def payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "pin": self.pin.payload()}


@dataclass(frozen=True, slots=True)
class CompileStep:
    binary: str
    builder: str = "rust"
    package: str | None = None
    profile: RustProfile = "release"
    port: str = ""
    flags: tuple[str, ...] = ()

    kind: ClassVar[str] = "compile"

    @property
    def label(self) -> str:
        return f"compile:{self.binary}"

    @property
    def port_name(self) -> str:
        return self.port or self.binary

    def output_path(self, workdir: str) -> str:
        return resolve_in_stage(workdir, f"target/{self.profile}/{self.binary}")

    def payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "builder": self.builder,
            "binary": self.binary,
            "package": self.package,
            "profile": self.profile,
            "port": self.port_name,
            "flags": list(self.flags),
        }


@dataclass(frozen=True, slots=True)
class VenvStep:
    venv: str
    source: str = "."
    interpreter: str = "python3"
    port: str = "venv"

    kind: ClassVar[str] = "venv"

    @property
    def label(self) -> str:
        return f"venv:{self.venv}"

    def payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "venv": self.venv,
            "source": self.source,
            "interpreter": self.interpreter,
            "port": self.port,
        }


@dataclass(frozen=True, slots=True)
class CommandStep:
    argv: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)

    kind: ClassVar[str] = "command"

    @property
    def label(self) -> str:
        return f"run:{self.argv[0] if self.argv else ''}"

    def payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "argv": list(self.argv),
            "env": dict(sorted(self.env.items())),
        }


@dataclass(frozen=True, slots=True)
class ContextCopyStep:
    src: str
    dest: str
    mode: str | None = None

    kind: ClassVar[str] = "copy_context"

    @property
    def label(self) -> str:
        return f"copy:{self.src}"

    def payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "src": self.src, "dest": self.dest, "mode": self.mode}


@dataclass(frozen=True, slots=True)
class CopyFromStep:
    stage: str
    port: str
    dest: str

    kind: ClassVar[str] = "copy_from"

    @property
    def label(self) -> str:
        return f"copy_from:{self.stage}.{self.port}"

    def payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "stage": self.stage, "port": self.port, "dest": self.dest}


@dataclass(frozen=True, slots=True)
class ExportStep:
    port: str
    path: str

    kind: ClassVar[str] = "export"

    @property
    def label(self) -> str:
        return f"export:{self.port}"

    def payload(self) -> dict[str, Any]:
        return {"kind": self.kind, "port": self.port, "path": self.path}


Step = (
    ProvisionStep
    | ToolchainStep
    | CompileStep
    | VenvStep
    | CommandStep
    | ContextCopyStep
    | CopyFromStep
    | ExportStep
)


@dataclass(frozen=True, slots=True)
class StageSpec:
    name: str
    base: str
    workdir: str = "/"
    steps: tuple[Step, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "base": self.base,
            "workdir": self.workdir,
            "env": dict(sorted(self.env.items())),
            "steps": [step.payload() for step in self.steps],
        }


@dataclass(frozen=True, slots=True)
class EntrypointSpec:
    argv: tuple[str, ...]
    config_path: str | None = None
    timeout: float = 30.0
    env: Mapping[str, str] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {
            "argv": list(self.argv),
            "config_path": self.config_path,
            "timeout": self.timeout,
            "env": dict(sorted(self.env.items())),
        }


@dataclass(frozen=True, slots=True)
class PipelineSpec:
    stages: tuple[StageSpec, ...]
    final_stage: str
    entrypoint: EntrypointSpec | None = None

    def stage(self, name: str) -> StageSpec:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def payload(self) -> dict[str, Any]:
        return {
            "final_stage": self.final_stage,
            "entrypoint": None if self.entrypoint is None else self.entrypoint.payload(),
            "stages": [stage.payload() for stage in self.stages],
        }


@dataclass(frozen=True, slots=True)
class PortDecl:
    name: str
    path: str
    step_index: int


def ports_of(stage: StageSpec) -> dict[str, PortDecl]:
    """Map each artifact port a stage exports to the step that produces it.

    Duplicate names are reported by the validator; the first declaration wins here.
    """
    ports: dict[str, PortDecl] = {}
    for index, step in enumerate(stage.steps):
        decl: PortDecl | None = None
        if isinstance(step, CompileStep):
            decl = PortDecl(step.port_name, step.output_path(stage.workdir), index)
        elif isinstance(step, VenvStep):
            decl = PortDecl(step.port, resolve_in_stage(stage.workdir, step.venv), index)
        elif isinstance(step, ExportStep):
            decl = PortDecl(step.port, resolve_in_stage(stage.workdir, step.path), index)
        if decl is not None and decl.name not in ports:
            ports[decl.name] = decl
    return ports


def declared_port_names(stage: StageSpec) -> list[str]:
    names: list[str] = []
    for step in stage.steps:
        if isinstance(step, CompileStep):
            names.append(step.port_name)
        elif isinstance(step, (VenvStep, ExportStep)):
            names.append(step.port)
    return names


def dependencies_of(stage: StageSpec) -> tuple[str, ...]:
    return tuple(
        dict.fromkeys(step.stage for step in stage.steps if isinstance(step, CopyFromStep))
    )
