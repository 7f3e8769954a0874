"""Multi-stage Dockerfile emission.

Renders a validated pipeline as an equivalent Dockerfile:
- one ``FROM <base> AS <name>`` block per stage, in declaration order
- toolchains fetched with ``ADD --checksum`` instead of piping a remote
  installer into a shell
- compile and venv steps rendered with the same argv the builders run
- ``COPY --from`` with each artifact port resolved to its producing path
"""

from __future__ import annotations

import json
import re
import shlex
from pathlib import Path

from stagekit.builders import BUILDERS, BuildSpec, VenvBuilder
from stagekit.errors import ValidationError
from stagekit.ir.model import (
    CommandStep,
    CompileStep,
    ContextCopyStep,
    CopyFromStep,
    ExportStep,
    PipelineSpec,
    ProvisionStep,
    StageSpec,
    ToolchainPin,
    ToolchainStep,
    VenvStep,
    ports_of,
    resolve_in_stage,
)
from stagekit.settings import BuildSettings
from stagekit.toolchain import INSTALLER_SCRATCH, resolve_install_dir

DOCKERFILE_SYNTAX = "# syntax=docker/dockerfile:1.7"

_BARE_ENV_VALUE = re.compile(r"^[A-Za-z0-9_./:@%+,=${}-]*$")


def emit_dockerfile(spec: PipelineSpec, *, settings: BuildSettings | None = None) -> str:
    active_settings = settings or BuildSettings()
    blocks = [DOCKERFILE_SYNTAX]
    for stage in spec.stages:
        blocks.append("\n".join(_render_stage(spec, stage, active_settings)))
    if spec.entrypoint is not None:
        blocks[-1] += "\n" + f"CMD {json.dumps(list(spec.entrypoint.argv))}"
    return "\n\n".join(blocks) + "\n"


def _render_stage(spec: PipelineSpec, stage: StageSpec, settings: BuildSettings) -> list[str]:
    lines = [f"FROM {stage.base} AS {stage.name}", f"WORKDIR {stage.workdir}"]
    for key, value in sorted(stage.env.items()):
        lines.append(f"ENV {key}={_env_value(value)}")

    # Keys the stage sets with ENV are already in the RUN environment.
    build_env = {key: value for key, value in settings.build_env().items() if key not in stage.env}
    for step in stage.steps:
        if isinstance(step, ProvisionStep):
            packages = " ".join(shlex.quote(package) for package in step.packages)
            lines.append(
                "RUN apt-get update"
                f" && apt-get install -y --no-install-recommends {packages}"
                " && rm -rf /var/lib/apt/lists/*"
            )
        elif isinstance(step, ToolchainStep):
            lines.extend(_render_toolchain(step.pin, settings))
        elif isinstance(step, CompileStep):
            builder_cls = BUILDERS.get(step.builder)
            if builder_cls is None:
                raise ValidationError(
                    "Unknown builder.",
                    context={"stage": stage.name, "builder": step.builder},
                )
            build_spec = BuildSpec(
                name=step.binary,
                source=Path(stage.workdir),
                output_path=Path(step.output_path(stage.workdir)),
                package=step.package,
                profile=step.profile,
                flags=step.flags,
            )
            prefix = _env_prefix(build_env, ("CARGO_REGISTRIES_CRATES_IO_PROTOCOL", "SOURCE_DATE_EPOCH"))
            for argv in builder_cls().commands(build_spec):
                lines.append(f"RUN {prefix}{shlex.join(argv)}")
        elif isinstance(step, VenvStep):
            build_spec = BuildSpec(
                name=step.port,
                source=Path(resolve_in_stage(stage.workdir, step.source)),
                output_path=Path(resolve_in_stage(stage.workdir, step.venv)),
            )
            commands = VenvBuilder(interpreter=step.interpreter).commands(build_spec)
            prefix = _env_prefix(build_env, ("PIP_DISABLE_PIP_VERSION_CHECK", "PIP_NO_INPUT"))
            rendered = " && ".join(shlex.join(argv) for argv in commands)
            source = resolve_in_stage(stage.workdir, step.source)
            lines.append(f"RUN cd {shlex.quote(source)} && {prefix}{rendered}")
        elif isinstance(step, CommandStep):
            prefix = "".join(f"{key}={shlex.quote(value)} " for key, value in sorted(step.env.items()))
            lines.append(f"RUN {prefix}{shlex.join(step.argv)}")
        elif isinstance(step, ContextCopyStep):
            chmod = f"--chmod={step.mode} " if step.mode is not None else ""
            lines.append(f"COPY {chmod}{json.dumps([step.src, step.dest])}")
        elif isinstance(step, CopyFromStep):
            port = ports_of(spec.stage(step.stage))[step.port]
            lines.append(f"COPY --from={step.stage} {json.dumps([port.path, step.dest])}")
        elif isinstance(step, ExportStep):
            lines.append(f"# port {step.port} -> {resolve_in_stage(stage.workdir, step.path)}")
    return lines


def _render_toolchain(pin: ToolchainPin, settings: BuildSettings) -> list[str]:
    install_dir = resolve_install_dir(pin, settings)
    archive = f"{INSTALLER_SCRATCH}/{pin.name}-{pin.version}.archive"
    extracted = f"{INSTALLER_SCRATCH}/{pin.name}.extract"
    source_dir = f"{INSTALLER_SCRATCH}/{pin.name}"
    unpack = (
        f"mkdir -p {extracted} {source_dir}"
        f" && tar -xf {archive} -C {extracted}"
        f" && set -- {extracted}/*"
        f' && if [ "$#" -eq 1 ] && [ -d "$1" ]; then src="$1"; else src={extracted}; fi'
        f' && cp -a "$src"/. {source_dir}/'
    )
    if pin.installer:
        argv = [arg.format(install_dir=install_dir, source_dir=source_dir) for arg in pin.installer]
        install = f"NONINTERACTIVE=1 {shlex.join(argv)}"
    else:
        install = f"mkdir -p {shlex.quote(install_dir)} && cp -a {source_dir}/. {shlex.quote(install_dir)}/"
    bin_dir = f"{install_dir.rstrip('/')}/{pin.bin_dir}"
    return [
        f"ADD --checksum=sha256:{pin.sha256} {pin.url} {archive}",
        f"RUN {unpack} && {install} && rm -rf {INSTALLER_SCRATCH}",
        f"ENV PATH={bin_dir}:$PATH",
    ]


def _env_prefix(env: dict[str, str], keys: tuple[str, ...]) -> str:
    return "".join(f"{key}={shlex.quote(env[key])} " for key in keys if key in env)


def _env_value(value: str) -> str:
    if value and _BARE_ENV_VALUE.match(value):
        return value
    return json.dumps(value)
