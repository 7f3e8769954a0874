"""Multi-stage build pipelines with verified, minimal runtime images."""

from .backends import InProcessBackend, LocalBackend
from .errors import (
    AssemblyError,
    CompilationError,
    ErrorCode,
    LockfileError,
    PackagingError,
    PolicyError,
    PromotionError,
    ProvisioningError,
    ReproducibilityError,
    StagekitError,
    StartupVerificationError,
    ToolchainBootstrapError,
    ValidationError,
)
from .executor import PipelineExecutor, PipelineResult
from .manifest import ImageManifest, promote, read_manifest
from .observability import StructuredLogger
from .pipeline import Pipeline, StageBuilder
from .policy import Policy
from .settings import BuildSettings
from .specfile import load_pipeline

__all__ = [
    "AssemblyError",
    "BuildSettings",
    "CompilationError",
    "ErrorCode",
    "ImageManifest",
    "InProcessBackend",
    "LocalBackend",
    "LockfileError",
    "PackagingError",
    "Pipeline",
    "PipelineExecutor",
    "PipelineResult",
    "Policy",
    "PolicyError",
    "PromotionError",
    "ProvisioningError",
    "ReproducibilityError",
    "StageBuilder",
    "StagekitError",
    "StartupVerificationError",
    "StructuredLogger",
    "ToolchainBootstrapError",
    "ValidationError",
    "load_pipeline",
    "promote",
    "read_manifest",
]
