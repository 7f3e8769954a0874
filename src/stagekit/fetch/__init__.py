"""Integrity-checked input retrieval."""

from .http import fetch

__all__ = ["fetch"]
