"""Typed pipeline error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across API surfaces."""

    VALIDATION = "E_VALIDATION"
    PROVISIONING = "E_PROVISIONING"
    TOOLCHAIN_BOOTSTRAP = "E_TOOLCHAIN_BOOTSTRAP"
    COMPILATION = "E_COMPILATION"
    PACKAGING = "E_PACKAGING"
    ASSEMBLY = "E_ASSEMBLY"
    STARTUP_VERIFICATION = "E_STARTUP_VERIFICATION"
    REPRODUCIBILITY = "E_REPRODUCIBILITY"
    LOCKFILE = "E_LOCKFILE"
    POLICY = "E_POLICY"
    PROMOTION = "E_PROMOTION"


class StagekitError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(StagekitError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class ProvisioningError(StagekitError):
    """System package installation failed."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PROVISIONING, hint=hint, context=context)


class ToolchainBootstrapError(StagekitError):
    """Compiler toolchain fetch or install failed."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message, code=ErrorCode.TOOLCHAIN_BOOTSTRAP, hint=hint, context=context
        )


class CompilationError(StagekitError):
    """Source tree failed to build."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.COMPILATION, hint=hint, context=context)


class PackagingError(StagekitError):
    """Interpreter environment creation or dependency install failed."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PACKAGING, hint=hint, context=context)


class AssemblyError(StagekitError):
    """A referenced artifact was missing or unreadable at copy time."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.ASSEMBLY, hint=hint, context=context)


class StartupVerificationError(StagekitError):
    """The final image entrypoint did not pass its self-test."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(
            message, code=ErrorCode.STARTUP_VERIFICATION, hint=hint, context=context
        )


class ReproducibilityError(StagekitError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.REPRODUCIBILITY, hint=hint, context=context)


class LockfileError(StagekitError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.LOCKFILE, hint=hint, context=context)


class PolicyError(StagekitError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.POLICY, hint=hint, context=context)


class PromotionError(StagekitError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PROMOTION, hint=hint, context=context)


__all__ = [
    "AssemblyError",
    "CompilationError",
    "ErrorCode",
    "LockfileError",
    "PackagingError",
    "PolicyError",
    "PromotionError",
    "ProvisioningError",
    "ReproducibilityError",
    "StagekitError",
    "StartupVerificationError",
    "ToolchainBootstrapError",
    "ValidationError",
]
