"""Compiler interfaces for emitting container build files."""

from .emit_dockerfile import DOCKERFILE_SYNTAX, emit_dockerfile

__all__ = [
    "DOCKERFILE_SYNTAX",
    "emit_dockerfile",
]
