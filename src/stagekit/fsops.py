"""Filesystem helpers shared by the cache, executor, and backends."""

from __future__ import annotations

import os
import shutil
from collections.abc import Iterable
from pathlib import Path


def copy_path(src: Path, dest: Path, *, exclude: Iterable[Path] = ()) -> None:
    """Copy a file or directory tree, preserving modes and symlinks.

    Directories are merged into an existing destination directory. Entries
    under any ``exclude`` path are skipped.
    """
    if src.is_dir() and not src.is_symlink():
        excluded = resolve_excludes(exclude)

        def _ignore(dirpath: str, names: list[str]) -> list[str]:
            return [name for name in names if is_excluded(Path(dirpath) / name, excluded)]

        shutil.copytree(
            src,
            dest,
            symlinks=True,
            dirs_exist_ok=True,
            ignore=_ignore if excluded else None,
        )
        return
    dest.parent.mkdir(parents=True, exist_ok=True)
    if dest.is_dir() and not dest.is_symlink():
        dest = dest / src.name
    if dest.is_symlink() or dest.exists():
        dest.unlink()
    shutil.copy2(src, dest, follow_symlinks=False)


def remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


def clamp_mtimes(root: Path, epoch: int) -> None:
    """Set every mtime under *root* to *epoch* for reproducible archives."""
    if not root.exists():
        return
    paths = [root]
    if root.is_dir():
        paths.extend(root.rglob("*"))
    for path in paths:
        if path.is_symlink():
            continue
        os.utime(path, (epoch, epoch))


def make_executable(path: Path) -> None:
    path.chmod(path.stat().st_mode | 0o111)


def resolve_excludes(exclude: Iterable[Path]) -> set[Path]:
    return {Path(item).resolve() for item in exclude}


def is_excluded(path: Path, excluded: set[Path]) -> bool:
    """Whether *path* is excluded, or is a directory holding nothing but excluded entries.

    The second case keeps a parent such as ``dist/`` out of copies and digests
    once ``dist/image`` has been published into it.
    """
    if not excluded:
        return False
    resolved = path.resolve()
    if resolved in excluded:
        return True
    if path.is_symlink() or not path.is_dir():
        return False
    if not any(item.is_relative_to(resolved) for item in excluded):
        return False
    return all(is_excluded(child, excluded) for child in path.iterdir())
