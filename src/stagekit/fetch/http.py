"""Content-addressed download of pinned archives (HTTP(S) or file URLs)."""

from __future__ import annotations

import hashlib
import os
import re
import uuid
from pathlib import Path
from urllib.error import URLError
from urllib.request import urlopen

from stagekit.cache.digest import file_digest
from stagekit.errors import ReproducibilityError, ValidationError
from stagekit.policy import Policy, ensure_network_allowed

_SHA256 = re.compile(r"[0-9a-f]{64}")
_CHUNK = 1 << 20


def fetch(
    url: str,
    *,
    sha256: str,
    cache_dir: str | Path,
    policy: Policy | None = None,
) -> Path:
    """Return ``<cache_dir>/<sha256>``, downloading *url* on a cache miss.

    Downloads are streamed to a temporary file while hashing and only renamed
    into place when the digest matches. Cached entries are re-hashed on every
    use.
    """
    active_policy = policy or Policy()
    expected = sha256.strip().lower()
    if not expected and active_policy.require_integrity:
        raise ValidationError(
            "fetch() requires a sha256 value.",
            hint="Pin the artifact to its content digest.",
            context={"url": url},
        )
    if expected and not _SHA256.fullmatch(expected):
        raise ValidationError(
            "sha256 must be 64 hexadecimal characters.",
            context={"url": url, "sha256": sha256},
        )

    cache_path = Path(cache_dir)
    cache_path.mkdir(parents=True, exist_ok=True)
    if expected:
        cached = cache_path / expected
        if cached.exists():
            _assert_hash_matches(cached, expected_sha256=expected)
            return cached

    ensure_network_allowed(policy=active_policy, operation="fetch")
    temp_path, actual = _download(url, cache_path)
    if expected and actual != expected:
        temp_path.unlink()
        raise ReproducibilityError(
            "Fetched content hash mismatch.",
            hint="Update the expected hash or source URL to a trusted immutable artifact.",
            context={"operation": "fetch", "url": url, "expected": expected, "actual": actual},
        )
    artifact_path = cache_path / actual
    os.replace(temp_path, artifact_path)
    return artifact_path


def _download(url: str, cache_path: Path) -> tuple[Path, str]:
    temp_path = cache_path / f".{uuid.uuid4().hex}.partial"
    digest = hashlib.sha256()
    try:
        with urlopen(url) as response, temp_path.open("wb") as handle:  # noqa: S310 - digest checked by caller
            for chunk in iter(lambda: response.read(_CHUNK), b""):
                digest.update(chunk)
                handle.write(chunk)
    except (URLError, OSError) as exc:
        temp_path.unlink(missing_ok=True)
        raise ValidationError(
            "Unable to download artifact.",
            hint=str(exc),
            context={"operation": "fetch", "url": url},
        ) from exc
    return temp_path, digest.hexdigest()


def _assert_hash_matches(path: Path, *, expected_sha256: str) -> None:
    actual_sha256 = file_digest(path)
    if actual_sha256 != expected_sha256:
        raise ReproducibilityError(
            "Cached artifact hash mismatch.",
            hint=f"Delete {path} and fetch again from a trusted source.",
            context={
                "operation": "fetch",
                "path": str(path),
                "expected": expected_sha256,
                "actual": actual_sha256,
            },
        )
