"""Image manifest model, canonical export, and promotion gate."""

from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import cbor2

from stagekit.errors import PromotionError, ValidationError

MANIFEST_NAME = "manifest.json"
IMAGE_DIR_NAME = "image"


@dataclass(frozen=True, slots=True)
class CopiedArtifact:
    dest: str
    stage: str
    port: str
    digest: str


@dataclass(frozen=True, slots=True)
class ImageManifest:
    base: str
    workdir: str
    entrypoint: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)
    packages: tuple[str, ...] = ()
    artifacts: tuple[CopiedArtifact, ...] = ()
    tree_digest: str = ""
    release_ready: bool = False
    schema_version: int = 1

    def to_json(self, path: str | Path | None = None) -> str:
        payload = self._payload()
        encoded = json.dumps(payload, indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        payload = self._payload()
        encoded = cbor2.dumps(payload, canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def with_release_ready(self, ready: bool) -> ImageManifest:
        return ImageManifest(
            base=self.base,
            workdir=self.workdir,
            entrypoint=self.entrypoint,
            env=dict(self.env),
            packages=self.packages,
            artifacts=self.artifacts,
            tree_digest=self.tree_digest,
            release_ready=ready,
            schema_version=self.schema_version,
        )

    def _payload(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "base": self.base,
            "workdir": self.workdir,
            "entrypoint": list(self.entrypoint),
            "env": dict(sorted(self.env.items())),
            "packages": list(self.packages),
            "artifacts": [
                {
                    "dest": artifact.dest,
                    "stage": artifact.stage,
                    "port": artifact.port,
                    "digest": artifact.digest,
                }
                for artifact in self.artifacts
            ],
            "tree_digest": self.tree_digest,
            "release_ready": self.release_ready,
        }


def read_manifest(path: str | Path) -> ImageManifest:
    manifest_path = Path(path)
    try:
        payload = json.loads(manifest_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValidationError(
            "Image manifest does not exist.",
            context={"path": str(manifest_path)},
        ) from exc
    except json.JSONDecodeError as exc:
        raise ValidationError(
            "Image manifest is not valid JSON.",
            hint=str(exc),
            context={"path": str(manifest_path)},
        ) from exc
    if not isinstance(payload, dict):
        raise ValidationError("Invalid image manifest payload type.")
    try:
        return ImageManifest(
            base=str(payload["base"]),
            workdir=str(payload["workdir"]),
            entrypoint=tuple(payload["entrypoint"]),
            env=dict(payload.get("env", {})),
            packages=tuple(payload.get("packages", [])),
            artifacts=tuple(CopiedArtifact(**item) for item in payload.get("artifacts", [])),
            tree_digest=str(payload.get("tree_digest", "")),
            release_ready=bool(payload.get("release_ready", False)),
            schema_version=int(payload.get("schema_version", 1)),
        )
    except (KeyError, TypeError) as exc:
        raise ValidationError(
            "Image manifest is missing required fields.",
            hint=str(exc),
            context={"path": str(manifest_path)},
        ) from exc


def promote(output_dir: str | Path, destination: str | Path) -> Path:
    """Copy a verified build output (image + manifest) to *destination*.

    Only images whose manifest records a passing self-test may be promoted.
    """
    source = Path(output_dir)
    manifest = read_manifest(source / MANIFEST_NAME)
    if not manifest.release_ready:
        raise PromotionError(
            "Image is not release-ready.",
            hint="The entrypoint self-test did not pass; rebuild and verify before promoting.",
            context={"operation": "promote", "path": str(source)},
        )
    target = Path(destination)
    if target.exists():
        raise PromotionError(
            "Promotion destination already exists.",
            context={"operation": "promote", "destination": str(target)},
        )
    staging = target.parent / f".{target.name}.promote"
    if staging.exists():
        shutil.rmtree(staging)
    staging.mkdir(parents=True)
    try:
        shutil.copytree(source / IMAGE_DIR_NAME, staging / IMAGE_DIR_NAME, symlinks=True)
        shutil.copy2(source / MANIFEST_NAME, staging / MANIFEST_NAME)
        os.replace(staging, target)
    finally:
        if staging.exists():
            shutil.rmtree(staging)
    return target
