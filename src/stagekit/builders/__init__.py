"""Builder contracts and model types."""

from .base import BuildArtifact, Builder, BuildSpec
from .rust import RustBuilder
from .venv import VenvBuilder

BUILDERS = {"rust": RustBuilder}

__all__ = [
    "BUILDERS",
    "BuildArtifact",
    "BuildSpec",
    "Builder",
    "RustBuilder",
    "VenvBuilder",
]
