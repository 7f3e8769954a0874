"""Deterministic content digests for files and directory trees."""

from __future__ import annotations

import hashlib
import os
from collections.abc import Iterable
from pathlib import Path

from stagekit.fsops import is_excluded, resolve_excludes


def file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


def tree_digest(path: str | Path, *, exclude: Iterable[Path] = ()) -> str:
    """Digest a file or directory by relative path, type, exec bit, and content.

    Timestamps and ownership are ignored so that identical trees built at
    different times hash the same. Entries under any ``exclude`` path are skipped.
    """
    root = Path(path)
    digest = hashlib.sha256()
    if root.is_symlink() or not root.is_dir():
        _update_entry(digest, root, ".")
        return digest.hexdigest()
    excluded = resolve_excludes(exclude)
    for entry in sorted(_walk(root, excluded)):
        _update_entry(digest, root / entry, entry)
    return digest.hexdigest()


def _walk(root: Path, excluded: set[Path]) -> list[str]:
    entries: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        if excluded:
            dirnames[:] = [name for name in dirnames if not is_excluded(base / name, excluded)]
            filenames = [name for name in filenames if not is_excluded(base / name, excluded)]
        for name in [*dirnames, *filenames]:
            entries.append((base / name).relative_to(root).as_posix())
    return entries


def _update_entry(digest: hashlib._Hash, path: Path, rel: str) -> None:
    if path.is_symlink():
        digest.update(f"L {rel} {os.readlink(path)}\n".encode())
    elif path.is_dir():
        digest.update(f"D {rel}\n".encode())
    else:
        executable = "x" if os.access(path, os.X_OK) else "-"
        digest.update(f"F {rel} {executable} {file_digest(path)}\n".encode())
