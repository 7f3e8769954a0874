"""Declarative pipeline object for multi-stage build recipes."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Self

from stagekit.backends import BuildBackend, LocalBackend
from stagekit.compiler import emit_dockerfile
from stagekit.errors import LockfileError, ValidationError
from stagekit.executor import PipelineExecutor, PipelineResult, StageStatus
from stagekit.ir.model import (
    CommandStep,
    CompileStep,
    ContextCopyStep,
    CopyFromStep,
    EntrypointSpec,
    ExportStep,
    PipelineSpec,
    ProvisionStep,
    RustProfile,
    StageSpec,
    Step,
    ToolchainPin,
    ToolchainStep,
    VenvStep,
)
from stagekit.ir.validate import validate_pipeline
from stagekit.lockfile import build_lockfile, pipeline_digest, read_lockfile, write_lockfile
from stagekit.observability import StructuredLogger
from stagekit.policy import Policy, ensure_build_policy
from stagekit.settings import BuildSettings

LOCKFILE_NAME = "stagekit.lock"


@dataclass(slots=True)
class StageBuilder:
    """Fluent recorder for the ordered steps of one stage."""

    name: str
    base: str
    workdir: str = "/"
    steps: list[Step] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)

    def install(self, *packages: str) -> Self:
        if not packages:
            raise ValidationError("install() requires at least one package.")
        for package in packages:
            if not package:
                raise ValidationError("Package names must be non-empty.")
        self.steps.append(ProvisionStep(packages=tuple(packages)))
        return self

    def toolchain(
        self,
        name: str,
        *,
        version: str,
        url: str,
        sha256: str,
        install_dir: str,
        bin_dir: str = "bin",
        installer: tuple[str, ...] = (),
    ) -> Self:
        for label, value in (("name", name), ("version", version), ("url", url)):
            if not value:
                raise ValidationError(f"toolchain() requires a non-empty {label}.")
        if not install_dir.startswith("/"):
            raise ValidationError(
                "Toolchain install_dir must be an absolute in-stage path.",
                context={"stage": self.name, "toolchain": name, "install_dir": install_dir},
            )
        pin = ToolchainPin(
            name=name,
            version=version,
            url=url,
            sha256=sha256,
            install_dir=install_dir,
            bin_dir=bin_dir,
            installer=tuple(installer),
        )
        self.steps.append(ToolchainStep(pin=pin))
        return self

    def compile(
        self,
        binary: str,
        *,
        builder: str = "rust",
        package: str | None = None,
        profile: RustProfile = "release",
        port: str | None = None,
        flags: tuple[str, ...] = (),
    ) -> Self:
        if not binary:
            raise ValidationError("compile() requires a binary name.")
        if profile not in ("release", "debug"):
            raise ValidationError(
                "Unsupported build profile.",
                hint="Use 'release' or 'debug'.",
                context={"stage": self.name, "profile": profile},
            )
        self.steps.append(
            CompileStep(
                binary=binary,
                builder=builder,
                package=package,
                profile=profile,
                port=port or "",
                flags=tuple(flags),
            )
        )
        return self

    def venv(
        self,
        path: str,
        *,
        source: str = ".",
        interpreter: str = "python3",
        port: str = "venv",
    ) -> Self:
        if not path:
            raise ValidationError("venv() requires a path.")
        self.steps.append(VenvStep(venv=path, source=source, interpreter=interpreter, port=port))
        return self

    def run(self, *argv: str, env: Mapping[str, str] | None = None) -> Self:
        if not argv or not argv[0]:
            raise ValidationError("run() requires a command.")
        self.steps.append(CommandStep(argv=tuple(argv), env=dict(env or {})))
        return self

    def copy_context(self, src: str, dest: str, *, mode: str | None = None) -> Self:
        if not src or not dest:
            raise ValidationError("copy_context() requires both src and dest.")
        source = PurePosixPath(src)
        if source.is_absolute() or ".." in source.parts:
            raise ValidationError(
                "Build context paths must be relative and stay inside the context.",
                hint="Move the file into the build context directory.",
                context={"stage": self.name, "src": src},
            )
        if mode is not None:
            try:
                int(mode, 8)
            except ValueError as exc:
                raise ValidationError(
                    "File mode must be an octal string.",
                    context={"stage": self.name, "mode": mode},
                ) from exc
        self.steps.append(ContextCopyStep(src=src, dest=dest, mode=mode))
        return self

    def copy_from(self, stage: str | StageBuilder, port: str, dest: str) -> Self:
        stage_name = stage.name if isinstance(stage, StageBuilder) else stage
        if not stage_name or not port or not dest:
            raise ValidationError("copy_from() requires stage, port, and dest.")
        self.steps.append(CopyFromStep(stage=stage_name, port=port, dest=dest))
        return self

    def export(self, port: str, path: str) -> Self:
        if not port or not path:
            raise ValidationError("export() requires both port and path.")
        self.steps.append(ExportStep(port=port, path=path))
        return self

    def env(self, name: str, value: str) -> Self:
        if not name:
            raise ValidationError("env() requires a variable name.")
        self.environment[name] = value
        return self

    def prepend_path(self, directory: str) -> Self:
        if not directory.startswith("/"):
            raise ValidationError(
                "PATH entries must be absolute in-stage paths.",
                context={"stage": self.name, "path": directory},
            )
        current = self.environment.get("PATH", "$PATH")
        self.environment["PATH"] = f"{directory}:{current}"
        return self

    def to_spec(self) -> StageSpec:
        return StageSpec(
            name=self.name,
            base=self.base,
            workdir=self.workdir,
            steps=tuple(self.steps),
            env=dict(self.environment),
        )


@dataclass(slots=True)
class Pipeline:
    """Represents a multi-stage build recipe."""

    build_dir: Path = field(default_factory=lambda: Path("build"))
    context_dir: Path = field(default_factory=lambda: Path("."))
    policy: Policy = field(default_factory=Policy)
    settings: BuildSettings = field(default_factory=BuildSettings)
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    backend: BuildBackend = field(default_factory=LocalBackend)
    _stages: list[StageBuilder] = field(init=False, default_factory=list, repr=False)
    _entrypoint: EntrypointSpec | None = field(init=False, default=None, repr=False)
    _final_stage: str | None = field(init=False, default=None, repr=False)
    _last_executor: PipelineExecutor | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        self.build_dir = Path(self.build_dir)
        self.context_dir = Path(self.context_dir)

    def set_policy(self, policy: Policy) -> Self:
        self.policy = policy
        return self

    def stage(self, name: str, *, base: str, workdir: str = "/") -> StageBuilder:
        if not name:
            raise ValidationError("stage() requires a non-empty name.")
        if not base:
            raise ValidationError(
                "stage() requires a non-empty base image.",
                context={"stage": name},
            )
        if not workdir.startswith("/"):
            raise ValidationError(
                "Stage workdir must be an absolute path.",
                context={"stage": name, "workdir": workdir},
            )
        if any(existing.name == name for existing in self._stages):
            raise ValidationError("Stage names must be unique.", context={"stage": name})
        builder = StageBuilder(name=name, base=base, workdir=workdir)
        self._stages.append(builder)
        return builder

    def entrypoint(
        self,
        *argv: str,
        config: str | None = None,
        timeout: float = 30.0,
        env: Mapping[str, str] | None = None,
        stage: str | None = None,
    ) -> Self:
        if not argv or not argv[0]:
            raise ValidationError("entrypoint() requires a command.")
        if timeout <= 0:
            raise ValidationError("Entrypoint timeout must be positive.", context={"timeout": str(timeout)})
        self._entrypoint = EntrypointSpec(
            argv=tuple(argv),
            config_path=config,
            timeout=timeout,
            env=dict(env or {}),
        )
        self._final_stage = stage
        return self

    def spec(self) -> PipelineSpec:
        final_stage = self._final_stage
        if final_stage is None:
            final_stage = self._stages[-1].name if self._stages else ""
        spec = PipelineSpec(
            stages=tuple(stage.to_spec() for stage in self._stages),
            final_stage=final_stage,
            entrypoint=self._entrypoint,
        )
        validate_pipeline(spec, policy=self.policy)
        return spec

    def lock(self, path: str | Path | None = None) -> Path:
        lock_path = Path(path) if path is not None else self._default_lock_path()
        lock = build_lockfile(pipeline=self.spec().payload())
        return write_lockfile(lock, lock_path)

    def build(
        self,
        output_dir: str | Path | None = None,
        *,
        frozen: bool = False,
        verify: bool | None = None,
        use_cache: bool = True,
    ) -> PipelineResult:
        ensure_build_policy(policy=self.policy, frozen=frozen)
        spec = self.spec()
        if frozen:
            self._assert_frozen_lock(spec)
        destination = Path(output_dir) if output_dir is not None else self.build_dir / "output"
        executor = PipelineExecutor(
            spec,
            backend=self.backend,
            context_dir=self.context_dir,
            build_dir=self.build_dir,
            settings=self.settings,
            policy=self.policy,
            logger=self.logger,
            use_cache=use_cache,
        )
        self._last_executor = executor
        return executor.execute(destination, verify=verify)

    def emit_dockerfile(self, path: str | Path) -> Path:
        destination = Path(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_text(emit_dockerfile(self.spec(), settings=self.settings), encoding="utf-8")
        return destination

    def stage_status(self, name: str) -> StageStatus:
        if not any(stage.name == name for stage in self._stages):
            raise ValidationError("Unknown stage.", context={"stage": name})
        if self._last_executor is None:
            return "pending"
        run = self._last_executor.runs.get(name)
        return "pending" if run is None else run.status

    def _default_lock_path(self) -> Path:
        return self.build_dir / LOCKFILE_NAME

    def _assert_frozen_lock(self, spec: PipelineSpec) -> None:
        lock_path = self._default_lock_path()
        lock = read_lockfile(lock_path)
        current_digest = pipeline_digest(spec.payload())
        if lock.pipeline_digest != current_digest:
            raise LockfileError(
                "Frozen build lockfile is stale for current pipeline.",
                hint="Re-run pipeline.lock() and commit the updated lockfile.",
                context={
                    "operation": "build",
                    "mode": "frozen",
                    "expected": current_digest,
                    "actual": lock.pipeline_digest,
                    "path": str(lock_path),
                },
            )
