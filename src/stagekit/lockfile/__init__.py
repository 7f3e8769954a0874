"""Pipeline lockfile APIs."""

from .io import parse_lockfile, read_lockfile, serialize_lockfile, write_lockfile
from .model import LOCKFILE_VERSION, LockedFetch, Lockfile
from .resolve import build_lockfile, pipeline_digest

__all__ = [
    "LOCKFILE_VERSION",
    "LockedFetch",
    "Lockfile",
    "build_lockfile",
    "parse_lockfile",
    "pipeline_digest",
    "read_lockfile",
    "serialize_lockfile",
    "write_lockfile",
]
