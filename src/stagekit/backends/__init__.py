"""Build backend interfaces and implementations."""

from .base import BuildBackend, CommandResult, StageContext, recorded_packages
from .inprocess import InProcessBackend
from .local import LocalBackend

BACKENDS = {
    "inprocess": InProcessBackend,
    "local": LocalBackend,
}

__all__ = [
    "BACKENDS",
    "BuildBackend",
    "CommandResult",
    "InProcessBackend",
    "LocalBackend",
    "StageContext",
    "recorded_packages",
]
