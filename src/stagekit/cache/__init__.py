"""Content-addressed step cache APIs."""

from .digest import file_digest, tree_digest
from .keys import CACHE_SCHEMA_VERSION, StepCacheInput, cache_key
from .store import StepCacheStore

__all__ = [
    "CACHE_SCHEMA_VERSION",
    "StepCacheInput",
    "StepCacheStore",
    "cache_key",
    "file_digest",
    "tree_digest",
]
