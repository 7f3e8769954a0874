"""Canonical intermediate representation for build pipelines."""

from .model import (
    CommandStep,
    CompileStep,
    ContextCopyStep,
    CopyFromStep,
    EntrypointSpec,
    ExportStep,
    PipelineSpec,
    PortDecl,
    ProvisionStep,
    StageSpec,
    Step,
    ToolchainPin,
    ToolchainStep,
    VenvStep,
    dependencies_of,
    ports_of,
    resolve_in_stage,
)
from .validate import execution_order, validate_pipeline

__all__ = [
    "CommandStep",
    "CompileStep",
    "ContextCopyStep",
    "CopyFromStep",
    "EntrypointSpec",
    "ExportStep",
    "PipelineSpec",
    "PortDecl",
    "ProvisionStep",
    "StageSpec",
    "Step",
    "ToolchainPin",
    "ToolchainStep",
    "VenvStep",
    "dependencies_of",
    "execution_order",
    "ports_of",
    "resolve_in_stage",
]
