"""Environment bindings consumed while building."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Literal

from stagekit.errors import ValidationError

RegistryProtocol = Literal["sparse", "git"]

TOOLCHAIN_HOME_VAR = "STAGEKIT_TOOLCHAIN_HOME"
REGISTRY_PROTOCOL_VAR = "STAGEKIT_REGISTRY_PROTOCOL"


@dataclass(frozen=True, slots=True)
class BuildSettings:
    toolchain_home: str | None = None
    registry_protocol: RegistryProtocol = "sparse"
    source_date_epoch: int = 0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BuildSettings:
        env = os.environ if environ is None else environ
        toolchain_home = env.get(TOOLCHAIN_HOME_VAR) or None
        if toolchain_home is not None and not PurePosixPath(toolchain_home).is_absolute():
            raise ValidationError(
                "Toolchain home must be an absolute in-stage path.",
                context={"variable": TOOLCHAIN_HOME_VAR, "value": toolchain_home},
            )
        protocol = env.get(REGISTRY_PROTOCOL_VAR, "sparse")
        if protocol not in ("sparse", "git"):
            raise ValidationError(
                "Unsupported package registry protocol.",
                hint="Use 'sparse' or 'git'.",
                context={"variable": REGISTRY_PROTOCOL_VAR, "value": protocol},
            )
        raw_epoch = env.get("SOURCE_DATE_EPOCH", "0")
        try:
            epoch = int(raw_epoch)
        except ValueError as exc:
            raise ValidationError(
                "SOURCE_DATE_EPOCH must be an integer.",
                context={"value": raw_epoch},
            ) from exc
        return cls(
            toolchain_home=toolchain_home,
            registry_protocol=protocol,  # type: ignore[arg-type]
            source_date_epoch=epoch,
        )

    def build_env(self, declared: Mapping[str, str] | None = None) -> dict[str, str]:
        """Variables exported to every compile and packaging step.

        Values the stage declares with ``ENV`` win over these defaults.
        """
        env = {
            "CARGO_REGISTRIES_CRATES_IO_PROTOCOL": self.registry_protocol,
            "PIP_DISABLE_PIP_VERSION_CHECK": "1",
            "PIP_NO_INPUT": "1",
            "SOURCE_DATE_EPOCH": str(self.source_date_epoch),
        }
        if declared:
            env.update((key, declared[key]) for key in env.keys() & declared.keys())
        return env
