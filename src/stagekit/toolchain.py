"""Version-locked toolchain bootstrap from content-verified archives."""

from __future__ import annotations

import tarfile
from pathlib import Path, PurePosixPath

from stagekit.backends.base import BuildBackend, StageContext
from stagekit.errors import StagekitError, ToolchainBootstrapError
from stagekit.fetch import fetch
from stagekit.fsops import copy_path, remove_path
from stagekit.ir.model import CommandStep, ToolchainPin
from stagekit.policy import Policy
from stagekit.settings import BuildSettings

INSTALLER_SCRATCH = "/tmp/stagekit-toolchain"


def resolve_install_dir(pin: ToolchainPin, settings: BuildSettings) -> str:
    if settings.toolchain_home:
        return f"{settings.toolchain_home.rstrip('/')}/{pin.name}-{pin.version}"
    return pin.install_dir


def bootstrap_toolchain(
    ctx: StageContext,
    pin: ToolchainPin,
    *,
    backend: BuildBackend,
    settings: BuildSettings,
    cache_dir: Path,
    policy: Policy | None = None,
) -> str:
    """Install *pin* into the stage and put its bin dir on the stage PATH.

    Without an installer the archive is unpacked straight into the install dir
    (a single top-level directory is stripped). With an installer the archive is
    unpacked to a scratch directory and the installer argv is run there with
    ``{install_dir}`` and ``{source_dir}`` substituted.
    """
    install_dir = resolve_install_dir(pin, settings)
    context = {
        "stage": ctx.name,
        "toolchain": f"{pin.name}-{pin.version}",
        "install_dir": install_dir,
    }
    try:
        archive = fetch(pin.url, sha256=pin.sha256, cache_dir=cache_dir, policy=policy)
    except StagekitError as exc:
        raise ToolchainBootstrapError(
            "Toolchain archive could not be fetched and verified.",
            hint=exc.hint or "Check the pinned URL and sha256.",
            context={**context, "cause": exc.code},
        ) from exc

    install_path = ctx.host_path(install_dir)
    if not pin.installer:
        _extract_archive(archive, install_path, context=context)
        bin_path = install_path / pin.bin_dir
        if not bin_path.is_dir():
            raise ToolchainBootstrapError(
                "Toolchain archive has no bin directory.",
                hint="Set ToolchainPin.bin_dir to the directory holding the executables.",
                context={**context, "bin_dir": pin.bin_dir},
            )
    else:
        scratch = ctx.host_path(f"{INSTALLER_SCRATCH}/{pin.name}")
        _extract_archive(archive, scratch, context=context)
        argv = tuple(
            arg.format(install_dir=str(install_path), source_dir=str(scratch))
            for arg in pin.installer
        )
        result = backend.run(ctx, CommandStep(argv=argv, env={"NONINTERACTIVE": "1"}))
        remove_path(ctx.host_path(INSTALLER_SCRATCH))
        if not result.ok:
            raise ToolchainBootstrapError(
                "Toolchain installer failed.",
                hint="Installers must run non-interactively.",
                context={
                    **context,
                    "command": " ".join(argv),
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[:2000],
                },
            )

    register_toolchain(ctx, pin, install_dir)
    return install_dir


def register_toolchain(ctx: StageContext, pin: ToolchainPin, install_dir: str) -> None:
    """Record stage-scoped toolchain state; also replayed on step cache hits."""
    ctx.path_prefix.append(str(PurePosixPath(install_dir) / pin.bin_dir))
    ctx.toolchain_dirs.append(install_dir)


def _extract_archive(archive: Path, destination: Path, *, context: dict[str, str]) -> None:
    staging = destination.parent / f".{destination.name}.extract"
    remove_path(staging)
    staging.mkdir(parents=True)
    try:
        with tarfile.open(archive, "r:*") as tar:
            members = tar.getmembers()
            for member in members:
                parts = PurePosixPath(member.name).parts
                if member.name.startswith("/") or ".." in parts:
                    raise ToolchainBootstrapError(
                        "Toolchain archive contains an unsafe member path.",
                        context={**context, "member": member.name},
                    )
            tar.extractall(staging, members=members, filter="data")
    except tarfile.TarError as exc:
        remove_path(staging)
        raise ToolchainBootstrapError(
            "Toolchain archive could not be unpacked.",
            hint=str(exc),
            context=context,
        ) from exc
    except ToolchainBootstrapError:
        remove_path(staging)
        raise

    children = list(staging.iterdir())
    source = children[0] if len(children) == 1 and children[0].is_dir() else staging
    destination.mkdir(parents=True, exist_ok=True)
    copy_path(source, destination)
    remove_path(staging)
