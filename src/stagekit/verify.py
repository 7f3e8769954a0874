"""Entrypoint self-test against an assembled image."""

from __future__ import annotations

import subprocess
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from stagekit.backends.base import StageContext
from stagekit.ir.model import EntrypointSpec

VERIFY_ENV_VAR = "STAGEKIT_VERIFY"

FailureReason = Literal["", "exit", "timeout", "missing_config", "missing_binary"]


@dataclass(frozen=True, slots=True)
class VerificationResult:
    ok: bool
    argv: tuple[str, ...]
    returncode: int | None = None
    reason: FailureReason = ""
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "argv": list(self.argv),
            "returncode": self.returncode,
            "reason": self.reason,
            "stdout": self.stdout[-2000:],
            "stderr": self.stderr[-2000:],
        }


def verify_entrypoint(
    image_dir: Path,
    entrypoint: EntrypointSpec,
    *,
    workdir: str,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> VerificationResult:
    """Run the image entrypoint once in short-lived verification mode.

    The process runs on the host with the image workdir as cwd. In-image
    absolute paths on the command line and in ``PATH`` are mapped into
    *image_dir*. ``STAGEKIT_VERIFY=1`` asks the binary to exit once ready.
    """
    ctx = StageContext(name="verify", base="", root=image_dir, workdir=workdir, env=dict(env or {}))
    argv = entrypoint.argv
    if entrypoint.config_path is not None and not ctx.host_path(entrypoint.config_path).is_file():
        return VerificationResult(
            ok=False,
            argv=argv,
            reason="missing_config",
            stderr=f"configuration file not found: {entrypoint.config_path}",
        )

    host_argv = [_map_arg(ctx, arg) for arg in argv]
    host_argv[0] = str(ctx.host_path(argv[0])) if "/" in argv[0] else argv[0]
    process_env = ctx.host_env({**entrypoint.env, VERIFY_ENV_VAR: "1"})
    started = time.monotonic()
    try:
        completed = subprocess.run(
            host_argv,
            cwd=str(ctx.workdir_path()),
            env=process_env,
            capture_output=True,
            text=True,
            timeout=timeout if timeout is not None else entrypoint.timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        return VerificationResult(
            ok=False,
            argv=argv,
            reason="timeout",
            stdout=_text(exc.stdout),
            stderr=_text(exc.stderr),
            duration=time.monotonic() - started,
        )
    except OSError as exc:
        return VerificationResult(
            ok=False,
            argv=argv,
            reason="missing_binary",
            stderr=str(exc),
            duration=time.monotonic() - started,
        )

    return VerificationResult(
        ok=completed.returncode == 0,
        argv=argv,
        returncode=completed.returncode,
        reason="" if completed.returncode == 0 else "exit",
        stdout=completed.stdout,
        stderr=completed.stderr,
        duration=time.monotonic() - started,
    )


def _map_arg(ctx: StageContext, arg: str) -> str:
    if arg.startswith("/") and ctx.host_path(arg).exists():
        return str(ctx.host_path(arg))
    return arg


def _text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
