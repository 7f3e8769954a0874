"""Shared test fixtures."""

from __future__ import annotations

import hashlib
import io
import tarfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from stagekit import Pipeline
from stagekit.backends.inprocess import InProcessBackend


@dataclass(frozen=True)
class ToolchainArchive:
    path: Path
    url: str
    sha256: str


@pytest.fixture
def inprocess_backend() -> InProcessBackend:
    """Provide an in-process backend for tests that call build()."""
    return InProcessBackend()


@pytest.fixture
def build_context(tmp_path: Path) -> Path:
    """A small source tree shaped like a Rust server with a Python extractor package."""
    context = tmp_path / "context"
    (context / "src").mkdir(parents=True)
    (context / "scripts").mkdir()
    (context / "Cargo.toml").write_text('[package]\nname = "indexify"\n', encoding="utf-8")
    (context / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
    (context / "pyproject.toml").write_text('[project]\nname = "extractors"\n', encoding="utf-8")
    (context / "sample_config.yaml").write_text("listen: 0.0.0.0:8900\n", encoding="utf-8")
    (context / "empty_config.yaml").write_text("", encoding="utf-8")
    start = context / "scripts" / "start.sh"
    start.write_text("#!/bin/sh\nexec /srv/indexify start -c ./config/indexify.yaml\n", encoding="utf-8")
    start.chmod(0o755)
    return context


@pytest.fixture
def toolchain_archive(tmp_path: Path) -> ToolchainArchive:
    path = tmp_path / "downloads" / "rust-1.79.0.tar.gz"
    path.parent.mkdir(parents=True)
    with tarfile.open(path, "w:gz") as tar:
        for name in ("cargo", "rustc"):
            payload = f"#!/bin/sh\necho {name} 1.79.0\n".encode()
            info = tarfile.TarInfo(f"rust-1.79.0/bin/{name}")
            info.size = len(payload)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(payload))
    digest = hashlib.sha256(path.read_bytes()).hexdigest()
    return ToolchainArchive(path=path, url=path.as_uri(), sha256=digest)


@pytest.fixture
def release_pipeline(
    tmp_path: Path,
    build_context: Path,
    toolchain_archive: ToolchainArchive,
) -> Callable[..., Pipeline]:
    """Factory for the two-stage release pipeline used across executor tests."""

    def _make(
        *,
        backend: InProcessBackend | None = None,
        build_dir: Path | None = None,
        config_port_path: str = "sample_config.yaml",
        export_toolchain: bool = False,
    ) -> Pipeline:
        pipeline = Pipeline(
            build_dir=build_dir or tmp_path / "build",
            context_dir=build_context,
            backend=backend or InProcessBackend(),
        )
        builder = pipeline.stage("builder", base="ubuntu:22.04", workdir="/app")
        builder.env("CARGO_REGISTRIES_CRATES_IO_PROTOCOL", "sparse")
        builder.copy_context(".", ".")
        builder.install("build-essential", "pkg-config", "python3-venv", "protobuf-compiler")
        builder.toolchain(
            "rust",
            version="1.79.0",
            url=toolchain_archive.url,
            sha256=toolchain_archive.sha256,
            install_dir="/opt/rust",
        )
        builder.compile("indexify")
        builder.compile("migration", package="migration")
        builder.venv("/venv")
        builder.export("sample_config", config_port_path)
        if export_toolchain:
            builder.export("toolchain", "/opt/rust")

        runtime = pipeline.stage("runtime", base="ubuntu:22.04", workdir="/srv")
        runtime.install("libssl-dev", "python3")
        runtime.copy_from(builder, "indexify", "./")
        runtime.copy_from(builder, "migration", "./")
        runtime.copy_from(builder, "sample_config", "./config/indexify.yaml")
        runtime.copy_context("scripts/start.sh", ".")
        runtime.copy_from(builder, "venv", "/venv")
        if export_toolchain:
            runtime.copy_from(builder, "toolchain", "/opt/rust")
        runtime.prepend_path("/venv/bin")

        pipeline.entrypoint(
            "/srv/indexify",
            "start",
            "-c",
            "./config/indexify.yaml",
            config="./config/indexify.yaml",
            timeout=10.0,
        )
        return pipeline

    return _make
