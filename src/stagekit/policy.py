"""Policy configuration and enforcement helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from stagekit.errors import PolicyError

NetworkMode = Literal["online", "offline"]

DEFAULT_FORBIDDEN_RUNTIME_PACKAGES = (
    "build-essential",
    "cargo",
    "clang",
    "g++",
    "gcc",
    "make",
    "protobuf-compiler",
    "protobuf-compiler-grpc",
    "rustc",
)

DEFAULT_TOOLCHAIN_MARKERS = (
    "cargo",
    "cc",
    "clang",
    "g++",
    "gcc",
    "protoc",
    "rustc",
    "rustup",
)


@dataclass(frozen=True, slots=True)
class Policy:
    require_frozen_lock: bool = False
    require_integrity: bool = True
    network_mode: NetworkMode = "online"
    verify_entrypoint: bool = True
    forbidden_runtime_packages: tuple[str, ...] = DEFAULT_FORBIDDEN_RUNTIME_PACKAGES
    toolchain_markers: tuple[str, ...] = DEFAULT_TOOLCHAIN_MARKERS


def ensure_build_policy(*, policy: Policy, frozen: bool) -> None:
    if policy.require_frozen_lock and not frozen:
        raise PolicyError(
            "Frozen lock mode is required by policy.",
            hint="Call build(frozen=True) or relax policy.require_frozen_lock.",
            context={"operation": "build"},
        )


def ensure_network_allowed(*, policy: Policy, operation: str) -> None:
    if policy.network_mode == "offline":
        raise PolicyError(
            "Network operations are disabled by policy.",
            hint="Switch policy.network_mode to 'online' for this operation.",
            context={"operation": operation},
        )
