"""Indexify release image declared with the Python API."""

import os
from pathlib import Path

from stagekit import Pipeline
from stagekit.backends import LocalBackend

RUST_VERSION = "1.79.0"
RUST_URL = f"https://static.rust-lang.org/dist/rust-{RUST_VERSION}-x86_64-unknown-linux-gnu.tar.gz"


def build_indexify_pipeline(context_dir: Path, *, rust_sha256: str) -> Pipeline:
    pipeline = Pipeline(context_dir=context_dir, build_dir=context_dir / "build", backend=LocalBackend())

    builder = pipeline.stage("builder", base="ubuntu:22.04", workdir="/indexify-build")
    builder.env("CARGO_REGISTRIES_CRATES_IO_PROTOCOL", "sparse")
    builder.copy_context(".", ".")
    builder.install(
        "build-essential",
        "curl",
        "pkg-config",
        "python3",
        "python3-dev",
        "python3-venv",
        "protobuf-compiler",
        "protobuf-compiler-grpc",
        "sqlite3",
        "libssl-dev",
    )
    builder.toolchain(
        "rust",
        version=RUST_VERSION,
        url=RUST_URL,
        sha256=rust_sha256,
        install_dir="/opt/rust",
        installer=("sh", "{source_dir}/install.sh", "--prefix={install_dir}", "--without=rust-docs"),
    )
    builder.compile("indexify")
    builder.compile("migration", package="migration")
    builder.venv("/venv")
    builder.export("sample_config", "sample_config.yaml")

    runtime = pipeline.stage("runtime", base="ubuntu:22.04", workdir="/indexify")
    runtime.install("libssl-dev", "python3")
    runtime.copy_from(builder, "indexify", "./")
    runtime.copy_from(builder, "migration", "./")
    runtime.copy_from(builder, "sample_config", "./config/indexify.yaml")
    runtime.copy_context("scripts/docker_compose_start.sh", ".")
    runtime.copy_from(builder, "venv", "/venv")
    runtime.prepend_path("/venv/bin")

    pipeline.entrypoint(
        "/indexify/indexify",
        "start",
        "-c",
        "./config/indexify.yaml",
        config="./config/indexify.yaml",
    )
    return pipeline


if __name__ == "__main__":
    pipeline = build_indexify_pipeline(Path.cwd(), rust_sha256=os.environ["RUST_ARCHIVE_SHA256"])
    pipeline.lock()
    pipeline.build(frozen=True)
