"""Stage graph execution, step caching, and all-or-nothing image assembly."""

from __future__ import annotations

import json
import os
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from stagekit.backends.base import BuildBackend, StageContext, recorded_packages
from stagekit.cache import StepCacheInput, StepCacheStore, cache_key, tree_digest
from stagekit.errors import (
    AssemblyError,
    CompilationError,
    StartupVerificationError,
    ValidationError,
)
from stagekit.fsops import clamp_mtimes, copy_path, remove_path
from stagekit.ir.model import (
    CommandStep,
    CompileStep,
    ContextCopyStep,
    CopyFromStep,
    ExportStep,
    PipelineSpec,
    ProvisionStep,
    StageSpec,
    Step,
    ToolchainStep,
    VenvStep,
    dependencies_of,
    ports_of,
    resolve_in_stage,
)
from stagekit.ir.validate import execution_order, validate_pipeline
from stagekit.manifest import IMAGE_DIR_NAME, MANIFEST_NAME, CopiedArtifact, ImageManifest
from stagekit.observability import StructuredLogger
from stagekit.policy import Policy
from stagekit.settings import BuildSettings
from stagekit.toolchain import bootstrap_toolchain, register_toolchain, resolve_install_dir
from stagekit.verify import VerificationResult, verify_entrypoint

StageStatus = Literal["pending", "executing", "complete", "failed"]

_TRANSITIONS: dict[StageStatus, tuple[StageStatus, ...]] = {
    "pending": ("executing",),
    "executing": ("complete", "failed"),
    "complete": (),
    "failed": (),
}

REPORT_NAME = "report.json"


@dataclass(slots=True)
class StageRun:
    name: str
    status: StageStatus = "pending"
    port_digests: dict[str, str] = field(default_factory=dict)
    error_code: str | None = None

    def transition(self, target: StageStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise ValidationError(
                "Invalid stage state transition.",
                context={"stage": self.name, "from": self.status, "to": target},
            )
        self.status = target


@dataclass(slots=True)
class PipelineResult:
    output_dir: Path
    image_dir: Path
    manifest_path: Path
    report_path: Path
    manifest: ImageManifest
    stages: dict[str, StageStatus] = field(default_factory=dict)
    cache_hits: list[str] = field(default_factory=list)
    cache_misses: list[str] = field(default_factory=list)
    verification: VerificationResult | None = None

    @property
    def release_ready(self) -> bool:
        return self.manifest.release_ready


class PipelineExecutor:
    """Run a pipeline spec stage by stage and publish the final image.

    Every stage gets a fresh root under ``<build_dir>/.work/<run>``; the whole
    work tree is discarded when the run ends, whether it succeeds, fails, or is
    interrupted. The output directory is only replaced once the final image,
    manifest, and report are complete.
    """

    def __init__(
        self,
        spec: PipelineSpec,
        *,
        backend: BuildBackend,
        context_dir: Path,
        build_dir: Path,
        settings: BuildSettings | None = None,
        policy: Policy | None = None,
        logger: StructuredLogger | None = None,
        use_cache: bool = True,
    ) -> None:
        self.spec = spec
        self.backend = backend
        self.context_dir = Path(context_dir)
        self.build_dir = Path(build_dir)
        self.settings = settings or BuildSettings()
        self.policy = policy or Policy()
        self.logger = logger or StructuredLogger()
        self.use_cache = use_cache
        self.runs: dict[str, StageRun] = {stage.name: StageRun(stage.name) for stage in spec.stages}
        self.cache_hits: list[str] = []
        self.cache_misses: list[str] = []
        self._contexts: dict[str, StageContext] = {}
        self._copied: list[CopiedArtifact] = []
        self._cache = StepCacheStore(self.build_dir / ".cache" / "steps") if use_cache else None
        self._chain_keys: set[str] = set()
        self._context_exclude: tuple[Path, ...] = (self.build_dir,)

    def execute(self, output_dir: Path, *, verify: bool | None = None) -> PipelineResult:
        validate_pipeline(self.spec, policy=self.policy)
        should_verify = self.policy.verify_entrypoint if verify is None else verify
        run_id = uuid.uuid4().hex[:12]
        self.logger.run_id = run_id
        work_dir = self.build_dir / ".work" / run_id
        output_dir = Path(output_dir)
        staging = output_dir.parent / f".{output_dir.name}.{run_id}.staging"
        self._context_exclude = _context_excludes(self.build_dir, output_dir)
        try:
            for name in execution_order(self.spec):
                self._run_stage(self.spec.stage(name), work_dir)
            result = self._assemble(staging, output_dir, verify=should_verify)
            self._publish(staging, output_dir, run_id=run_id)
            if self._cache is not None:
                self._cache.prune(keep_keys=self._chain_keys)
        finally:
            for ctx in self._contexts.values():
                self.backend.cleanup(ctx)
            remove_path(work_dir)
            remove_path(staging)

        if result.verification is not None and not result.verification.ok:
            verification = result.verification
            raise StartupVerificationError(
                "Image entrypoint failed its startup self-test.",
                hint="The image exists but is not release-ready; do not promote it.",
                context={
                    "operation": "verify",
                    "image": str(result.image_dir),
                    "reason": verification.reason,
                    "returncode": "" if verification.returncode is None else str(verification.returncode),
                    "stderr": verification.stderr[-2000:],
                },
            )
        return result

    def status(self, name: str) -> StageStatus:
        return self.runs[name].status

    def _run_stage(self, stage: StageSpec, work_dir: Path) -> None:
        run = self.runs[stage.name]
        for dependency in dependencies_of(stage):
            if self.runs[dependency].status != "complete":
                raise AssemblyError(
                    "Stage dependency has not completed.",
                    context={"stage": stage.name, "dependency": dependency},
                )

        run.transition("executing")
        self.logger.log(
            operation="stage_start",
            stage=stage.name,
            step=None,
            message="Starting stage.",
            extra={"base": stage.base},
        )
        ctx = StageContext(
            name=stage.name,
            base=stage.base,
            root=work_dir / "stages" / stage.name / "root",
            workdir=stage.workdir,
            env=dict(stage.env),
        )
        self._contexts[stage.name] = ctx
        try:
            self.backend.prepare(ctx)
            parent_key = ""
            for index, step in enumerate(stage.steps):
                parent_key = self._run_step(stage, ctx, index, step, parent_key)
            run.port_digests = self._port_digests(stage, ctx)
        except BaseException as exc:
            run.transition("failed")
            run.error_code = getattr(exc, "code", type(exc).__name__)
            self.logger.log(
                operation="stage_failed",
                stage=stage.name,
                step=None,
                level="error",
                message=str(exc).splitlines()[0] if str(exc) else type(exc).__name__,
                extra={"code": run.error_code},
            )
            raise
        run.transition("complete")
        self.logger.log(
            operation="stage_complete",
            stage=stage.name,
            step=None,
            message="Completed stage.",
            extra={"ports": dict(sorted(run.port_digests.items()))},
        )

    def _port_digests(self, stage: StageSpec, ctx: StageContext) -> dict[str, str]:
        digests: dict[str, str] = {}
        for port, decl in ports_of(stage).items():
            path = ctx.host_path(decl.path)
            if not path.exists() and not path.is_symlink():
                raise AssemblyError(
                    "Declared artifact port was not produced.",
                    context={"stage": stage.name, "port": port, "path": decl.path},
                )
            digests[port] = tree_digest(path)
        return digests

    def _run_step(
        self,
        stage: StageSpec,
        ctx: StageContext,
        index: int,
        step: Step,
        parent_key: str,
    ) -> str:
        if isinstance(step, ExportStep):
            path = ctx.host_path(step.path)
            if not path.exists() and not path.is_symlink():
                raise AssemblyError(
                    "Exported path does not exist.",
                    hint="Export paths after the step that creates them.",
                    context={"stage": stage.name, "port": step.port, "path": step.path},
                )
            return parent_key

        inputs = StepCacheInput(
            stage_base=stage.base,
            parent_key=parent_key,
            step=step.payload(),
            inputs=self._step_inputs(ctx, step),
            env=self._step_env(ctx),
        )
        key = cache_key(inputs)
        if self._cache is not None and self._cache.load(
            key=key, expected_inputs=inputs, destination=ctx.root
        ):
            if isinstance(step, ToolchainStep):
                register_toolchain(ctx, step.pin, resolve_install_dir(step.pin, self.settings))
            if isinstance(step, CopyFromStep):
                self._record_copy(stage, ctx, step)
            self._chain_keys.add(key)
            self.cache_hits.append(f"{stage.name}:{index}:{step.label}")
            self.logger.log(
                operation="step_cached",
                stage=stage.name,
                step=step.label,
                message="Restored step output from cache.",
                extra={"key": key},
            )
            return key

        self._execute_step(stage, ctx, step)
        self.cache_misses.append(f"{stage.name}:{index}:{step.label}")
        if self._cache is not None:
            self._cache.save(inputs=inputs, tree=ctx.root)
            self._chain_keys.add(key)
        self.logger.log(
            operation="step_complete",
            stage=stage.name,
            step=step.label,
            message="Executed step.",
            extra={"key": key},
        )
        return key

    def _step_inputs(self, ctx: StageContext, step: Step) -> dict[str, str]:
        inputs = {"backend": self.backend.name, "workdir": ctx.workdir}
        if isinstance(step, ContextCopyStep):
            source = self._context_source(ctx, step)
            if source.exists():
                inputs[f"context:{step.src}"] = tree_digest(source, exclude=self._context_exclude)
        elif isinstance(step, CopyFromStep):
            digest = self.runs[step.stage].port_digests.get(step.port, "")
            inputs[f"port:{step.stage}.{step.port}"] = digest
        return inputs

    def _step_env(self, ctx: StageContext) -> dict[str, str]:
        env = dict(ctx.env)
        env.update(self.settings.build_env(ctx.env))
        if self.settings.toolchain_home:
            env["STAGEKIT_TOOLCHAIN_HOME"] = self.settings.toolchain_home
        return env

    def _execute_step(self, stage: StageSpec, ctx: StageContext, step: Step) -> None:
        build_env = self.settings.build_env(ctx.env)
        if isinstance(step, ProvisionStep):
            self.backend.provision(ctx, step)
        elif isinstance(step, ToolchainStep):
            bootstrap_toolchain(
                ctx,
                step.pin,
                backend=self.backend,
                settings=self.settings,
                cache_dir=self.build_dir / ".cache" / "fetch",
                policy=self.policy,
            )
        elif isinstance(step, CompileStep):
            self.backend.compile(ctx, step, build_env)
        elif isinstance(step, VenvStep):
            self.backend.package(ctx, step, build_env)
        elif isinstance(step, CommandStep):
            result = self.backend.run(ctx, step)
            if not result.ok:
                raise CompilationError(
                    "Build command failed.",
                    hint="Check the command output.",
                    context={
                        "stage": stage.name,
                        "command": " ".join(step.argv),
                        "returncode": str(result.returncode),
                        "stderr": result.stderr[:2000],
                    },
                )
        elif isinstance(step, ContextCopyStep):
            self._copy_context(stage, ctx, step)
        elif isinstance(step, CopyFromStep):
            self._copy_from(stage, ctx, step)

    def _context_source(self, ctx: StageContext, step: ContextCopyStep) -> Path:
        source = self.context_dir / step.src
        if not source.resolve().is_relative_to(self.context_dir.resolve()):
            raise AssemblyError(
                "Build context path resolves outside the build context.",
                hint="Copy only files that live inside the build context directory.",
                context={"stage": ctx.name, "src": step.src},
            )
        return source

    def _copy_context(self, stage: StageSpec, ctx: StageContext, step: ContextCopyStep) -> None:
        source = self._context_source(ctx, step)
        context = {"stage": stage.name, "src": step.src, "dest": step.dest}
        if not source.exists():
            raise AssemblyError("Build context path does not exist.", context=context)
        destination = self._destination(ctx, step.dest, source)
        try:
            copy_path(source, destination, exclude=self._context_exclude)
            if step.mode is not None:
                destination.chmod(int(step.mode, 8))
        except OSError as exc:
            raise AssemblyError(
                "Build context path could not be copied.",
                hint=str(exc),
                context=context,
            ) from exc
        self.logger.log(
            operation="context_copy",
            stage=stage.name,
            step=step.label,
            artifact=step.src,
            message="Copied build context path.",
            extra={"dest": step.dest},
        )

    def _copy_from(self, stage: StageSpec, ctx: StageContext, step: CopyFromStep) -> None:
        context = {"stage": stage.name, "source_stage": step.stage, "port": step.port}
        source_run = self.runs[step.stage]
        if source_run.status != "complete":
            raise AssemblyError(
                "Artifact copied before its producing stage completed.",
                context={**context, "status": source_run.status},
            )
        decl = ports_of(self.spec.stage(step.stage))[step.port]
        source = self._contexts[step.stage].host_path(decl.path)
        if not source.exists() and not source.is_symlink():
            raise AssemblyError("Referenced artifact is missing.", context={**context, "path": decl.path})
        try:
            actual = tree_digest(source)
        except OSError as exc:
            raise AssemblyError(
                "Referenced artifact is unreadable.",
                hint=str(exc),
                context={**context, "path": decl.path},
            ) from exc
        if actual != source_run.port_digests[step.port]:
            raise AssemblyError(
                "Artifact changed after its producing stage completed.",
                context={**context, "path": decl.path},
            )
        destination = self._destination(ctx, step.dest, source)
        try:
            copy_path(source, destination)
        except OSError as exc:
            raise AssemblyError(
                "Referenced artifact could not be copied.",
                hint=str(exc),
                context={**context, "path": decl.path},
            ) from exc
        self._record_copy(stage, ctx, step)
        self.logger.log(
            operation="artifact_copy",
            stage=stage.name,
            step=step.label,
            artifact=f"{step.stage}.{step.port}",
            message="Copied artifact from upstream stage.",
            extra={"dest": step.dest, "digest": actual},
        )

    def _record_copy(self, stage: StageSpec, ctx: StageContext, step: CopyFromStep) -> None:
        if stage.name != self.spec.final_stage:
            return
        decl = ports_of(self.spec.stage(step.stage))[step.port]
        dest = resolve_in_stage(ctx.workdir, step.dest)
        if _is_dir_target(step.dest) or (
            ctx.host_path(dest).is_dir() and not self._contexts[step.stage].host_path(decl.path).is_dir()
        ):
            dest = f"{dest.rstrip('/')}/{Path(decl.path).name}"
        self._copied.append(
            CopiedArtifact(
                dest=dest,
                stage=step.stage,
                port=step.port,
                digest=self.runs[step.stage].port_digests[step.port],
            )
        )

    def _destination(self, ctx: StageContext, dest: str, source: Path) -> Path:
        target = ctx.host_path(dest)
        if source.is_dir() and not source.is_symlink():
            return target
        if _is_dir_target(dest) or target.is_dir():
            return target / source.name
        return target

    def _assemble(self, staging: Path, output_dir: Path, *, verify: bool) -> PipelineResult:
        final = self.spec.stage(self.spec.final_stage)
        ctx = self._contexts[final.name]
        self._ensure_no_toolchain(ctx)
        clamp_mtimes(ctx.root, self.settings.source_date_epoch)

        remove_path(staging)
        staging.mkdir(parents=True)
        image_dir = staging / IMAGE_DIR_NAME
        shutil.move(ctx.root, image_dir)

        entrypoint = self.spec.entrypoint
        if entrypoint is None:
            raise ValidationError(
                "Pipeline has no entrypoint.",
                hint="Declare one with pipeline.entrypoint(...).",
                context={"stage": final.name},
            )
        manifest = ImageManifest(
            base=final.base,
            workdir=final.workdir,
            entrypoint=entrypoint.argv,
            env=dict(final.env),
            packages=recorded_packages(image_dir),
            artifacts=tuple(self._copied),
            tree_digest=tree_digest(image_dir),
        )

        verification: VerificationResult | None = None
        if verify:
            verification = verify_entrypoint(
                image_dir,
                entrypoint,
                workdir=final.workdir,
                env=final.env,
            )
            self.logger.log(
                operation="verify",
                stage=final.name,
                step=None,
                level="info" if verification.ok else "error",
                message="Entrypoint self-test passed." if verification.ok else "Entrypoint self-test failed.",
                extra={"returncode": verification.returncode, "reason": verification.reason},
            )
            manifest = manifest.with_release_ready(verification.ok)

        manifest.to_json(staging / MANIFEST_NAME)
        report = self._report(manifest, verification)
        (staging / REPORT_NAME).write_text(
            json.dumps(report, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        return PipelineResult(
            output_dir=output_dir,
            image_dir=output_dir / IMAGE_DIR_NAME,
            manifest_path=output_dir / MANIFEST_NAME,
            report_path=output_dir / REPORT_NAME,
            manifest=manifest,
            stages={name: run.status for name, run in self.runs.items()},
            cache_hits=list(self.cache_hits),
            cache_misses=list(self.cache_misses),
            verification=verification,
        )

    def _ensure_no_toolchain(self, ctx: StageContext) -> None:
        for other in self._contexts.values():
            for install_dir in other.toolchain_dirs:
                if ctx.host_path(install_dir).exists():
                    raise AssemblyError(
                        "Final image contains a build toolchain directory.",
                        hint="Copy only compiled outputs into the final stage.",
                        context={"stage": ctx.name, "path": install_dir},
                    )
        markers = set(self.policy.toolchain_markers)
        for path in sorted(ctx.root.rglob("*")):
            if path.name not in markers or path.is_dir():
                continue
            if path.is_symlink() or os.access(path, os.X_OK):
                raise AssemblyError(
                    "Final image contains a build toolchain executable.",
                    hint="Copy only compiled outputs into the final stage.",
                    context={"stage": ctx.name, "path": "/" + path.relative_to(ctx.root).as_posix()},
                )

    def _publish(self, staging: Path, output_dir: Path, *, run_id: str) -> None:
        output_dir.parent.mkdir(parents=True, exist_ok=True)
        previous = output_dir.parent / f".{output_dir.name}.{run_id}.previous"
        if output_dir.exists():
            os.replace(output_dir, previous)
        try:
            os.replace(staging, output_dir)
        finally:
            if previous.exists() and not output_dir.exists():
                os.replace(previous, output_dir)
        remove_path(previous)
        self.logger.log(
            operation="publish",
            stage=self.spec.final_stage,
            step=None,
            message="Published final image.",
            extra={"output_dir": str(output_dir)},
        )

    def _report(
        self,
        manifest: ImageManifest,
        verification: VerificationResult | None,
    ) -> dict[str, Any]:
        return {
            "backend": self.backend.name,
            "stages": {name: run.status for name, run in self.runs.items()},
            "ports": {
                name: dict(sorted(run.port_digests.items())) for name, run in self.runs.items()
            },
            "cache": {"hits": list(self.cache_hits), "misses": list(self.cache_misses)},
            "tree_digest": manifest.tree_digest,
            "release_ready": manifest.release_ready,
            "verification": None if verification is None else verification.to_dict(),
            "host_prerequisites": list(self.backend.host_prerequisites()),
            "timeline": self.logger.timeline(run_id=self.logger.run_id),
            "logs": self.logger.records_for_run(self.logger.run_id),
        }


def _context_excludes(build_dir: Path, output_dir: Path) -> tuple[Path, ...]:
    """Paths never read from the build context while building into *output_dir*."""
    excludes = [build_dir, output_dir]
    if output_dir.parent.is_dir():
        excludes.extend(output_dir.parent.glob(f".{output_dir.name}.*"))
    return tuple(excludes)


def _is_dir_target(dest: str) -> bool:
    return dest.endswith("/") or dest in (".", "./")
