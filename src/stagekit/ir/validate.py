"""Validation and ordering helpers for the stage graph."""

from __future__ import annotations

from collections import Counter

from stagekit.errors import ValidationError
from stagekit.ir.model import (
    CopyFromStep,
    PipelineSpec,
    ProvisionStep,
    declared_port_names,
    dependencies_of,
    ports_of,
)
from stagekit.policy import Policy


def validate_pipeline(spec: PipelineSpec, *, policy: Policy | None = None) -> None:
    """Validate required structural constraints before any step executes."""
    active_policy = policy or Policy()
    if not spec.stages:
        raise ValidationError(
            "Pipeline declares no stages.",
            hint="Declare at least one stage with pipeline.stage(...).",
            context={"operation": "validate_pipeline"},
        )

    counts = Counter(stage.name for stage in spec.stages)
    duplicates = sorted(name for name, count in counts.items() if count > 1)
    if duplicates:
        raise ValidationError(
            "Stage names must be unique.",
            context={"operation": "validate_pipeline", "duplicates": ",".join(duplicates)},
        )

    declared: set[str] = set()
    for stage in spec.stages:
        if not stage.base:
            raise ValidationError(
                "Stage base image must be non-empty.",
                context={"operation": "validate_pipeline", "stage": stage.name},
            )
        if not stage.steps:
            raise ValidationError(
                "Stage declares no steps.",
                context={"operation": "validate_pipeline", "stage": stage.name},
            )
        port_counts = Counter(declared_port_names(stage))
        repeated = sorted(name for name, count in port_counts.items() if count > 1)
        if repeated:
            raise ValidationError(
                "Artifact port declared more than once.",
                hint="Each port is produced by exactly one step.",
                context={
                    "operation": "validate_pipeline",
                    "stage": stage.name,
                    "ports": ",".join(repeated),
                },
            )
        for step in stage.steps:
            if isinstance(step, CopyFromStep):
                _validate_copy(spec, stage_name=stage.name, step=step, declared=declared)
        declared.add(stage.name)

    # Backward references alone rule out cycles; this guards specs built by hand.
    execution_order(spec)

    if spec.final_stage not in counts:
        raise ValidationError(
            "Final stage is missing from the pipeline.",
            context={"operation": "validate_pipeline", "stage": spec.final_stage},
        )
    if spec.entrypoint is None or not spec.entrypoint.argv:
        raise ValidationError(
            "Pipeline has no entrypoint.",
            hint="Declare one with pipeline.entrypoint(...).",
            context={"operation": "validate_pipeline", "stage": spec.final_stage},
        )

    final = spec.stage(spec.final_stage)
    forbidden = set(active_policy.forbidden_runtime_packages)
    for step in final.steps:
        if not isinstance(step, ProvisionStep):
            continue
        offending = sorted(forbidden.intersection(step.packages))
        if offending:
            raise ValidationError(
                "Final stage provisions build toolchain packages.",
                hint="Install compilers in a builder stage and copy only outputs.",
                context={
                    "operation": "validate_pipeline",
                    "stage": final.name,
                    "packages": ",".join(offending),
                },
            )


def _validate_copy(
    spec: PipelineSpec,
    *,
    stage_name: str,
    step: CopyFromStep,
    declared: set[str],
) -> None:
    context = {
        "operation": "validate_pipeline",
        "stage": stage_name,
        "source_stage": step.stage,
        "port": step.port,
    }
    if step.stage == stage_name:
        raise ValidationError("Stage cannot copy from itself.", context=context)
    if step.stage not in {stage.name for stage in spec.stages}:
        raise ValidationError("Copy references an unknown stage.", context=context)
    if step.stage not in declared:
        raise ValidationError(
            "Copy references a stage declared later in the pipeline.",
            hint="Declare producing stages before the stages that consume them.",
            context=context,
        )
    if step.port not in ports_of(spec.stage(step.stage)):
        raise ValidationError(
            "Copy references an unknown artifact port.",
            hint="Export the path with stage.export(port, path).",
            context=context,
        )


def execution_order(spec: PipelineSpec) -> tuple[str, ...]:
    """Return stage names in dependency order, ties broken by declaration order."""
    names = [stage.name for stage in spec.stages]
    pending = {
        stage.name: {dep for dep in dependencies_of(stage) if dep in names}
        for stage in spec.stages
    }
    order: list[str] = []
    while pending:
        ready = [name for name in names if name in pending and not pending[name]]
        if not ready:
            raise ValidationError(
                "Stage dependency graph contains a cycle.",
                context={"operation": "execution_order", "stages": ",".join(sorted(pending))},
            )
        current = ready[0]
        order.append(current)
        del pending[current]
        for deps in pending.values():
            deps.discard(current)
    return tuple(order)
