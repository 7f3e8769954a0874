"""In-process build backend for testing and development.

Produces deterministic artifacts without invoking a package manager, cargo,
or pip. Compiled binaries are POSIX shell stubs that honour the entrypoint
contract (``-c <config>``; exit 0 only when the config file exists and is
non-empty), so the self-test runs end to end. This makes the backend
suitable for:
- Unit tests that verify the pipeline orchestration
- Dry runs on hosts without the real toolchains
- Fault-injection scenarios via ``fail_on``
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from stagekit.backends.base import CommandResult, StageContext, record_packages
from stagekit.cache.digest import tree_digest
from stagekit.errors import CompilationError, PackagingError, ProvisioningError
from stagekit.fsops import make_executable
from stagekit.ir.model import CommandStep, CompileStep, ProvisionStep, VenvStep

STUB_TEMPLATE = """\
#!/bin/sh
# stagekit simulated binary: name={name} digest={digest}
config=""
while [ "$#" -gt 0 ]; do
  case "$1" in
    -c|--config)
      config="${{2:-}}"
      if [ "$#" -gt 1 ]; then shift; fi
      ;;
  esac
  shift
done
if [ -z "$config" ] || [ ! -s "$config" ]; then
  echo "{name}: configuration file missing or empty: $config" >&2
  exit 2
fi
echo "{name}: ready"
exit 0
"""


@dataclass(slots=True)
class InProcessBackend:
    """Backend that produces deterministic placeholder artifacts in-process."""

    name: str = "inprocess"
    fail_on: tuple[str, ...] = ()
    calls: list[str] = field(default_factory=list)

    def prepare(self, ctx: StageContext) -> None:
        ctx.root.mkdir(parents=True, exist_ok=True)
        ctx.workdir_path().mkdir(parents=True, exist_ok=True)

    def provision(self, ctx: StageContext, step: ProvisionStep) -> None:
        self._record(ctx, step.label)
        if self._should_fail(step.label, step.kind):
            raise ProvisioningError(
                "System package installation failed.",
                hint="Injected failure.",
                context={"backend": self.name, "stage": ctx.name, "step": step.label},
            )
        record_packages(ctx, step.packages)

    def run(self, ctx: StageContext, step: CommandStep) -> CommandResult:
        self._record(ctx, step.label)
        if self._should_fail(step.label, step.kind):
            return CommandResult(argv=step.argv, returncode=1, stderr="injected failure")
        return CommandResult(argv=step.argv, returncode=0, stdout="simulated\n")

    def compile(self, ctx: StageContext, step: CompileStep, env: Mapping[str, str]) -> Path:
        self._record(ctx, step.label)
        if self._should_fail(step.label, step.kind):
            raise CompilationError(
                f"{step.builder} build failed.",
                hint="Injected failure.",
                context={"backend": self.name, "stage": ctx.name, "step": step.label},
            )
        output_path = ctx.host_path(step.output_path(ctx.workdir))
        output_path.parent.mkdir(parents=True, exist_ok=True)
        digest = self._digest(ctx, step.payload(), env)
        output_path.write_text(
            STUB_TEMPLATE.format(name=step.binary, digest=digest),
            encoding="utf-8",
        )
        make_executable(output_path)
        return output_path

    def package(self, ctx: StageContext, step: VenvStep, env: Mapping[str, str]) -> Path:
        self._record(ctx, step.label)
        if self._should_fail(step.label, step.kind):
            raise PackagingError(
                "venv build failed.",
                hint="Injected failure.",
                context={"backend": self.name, "stage": ctx.name, "step": step.label},
            )
        venv = ctx.host_path(step.venv)
        (venv / "bin").mkdir(parents=True, exist_ok=True)
        (venv / "pyvenv.cfg").write_text(
            "home = /usr/bin\ninclude-system-site-packages = false\n",
            encoding="utf-8",
        )
        python = venv / "bin" / "python"
        if not python.is_symlink():
            python.symlink_to(f"/usr/bin/{step.interpreter}")
        (venv / "installed.txt").write_text(
            f"source={step.source}\ndigest={self._digest(ctx, step.payload(), env)}\n",
            encoding="utf-8",
        )
        return venv

    def cleanup(self, ctx: StageContext) -> None:
        pass

    def host_prerequisites(self) -> tuple[str, ...]:
        return ()

    def _digest(self, ctx: StageContext, payload: dict[str, object], env: Mapping[str, str]) -> str:
        source = ctx.workdir_path()
        canonical = json.dumps(
            {
                "stage": ctx.name,
                "base": ctx.base,
                "step": payload,
                "env": dict(sorted(env.items())),
                "source": tree_digest(source) if source.exists() else "",
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def _record(self, ctx: StageContext, label: str) -> None:
        self.calls.append(f"{ctx.name}:{label}")

    def _should_fail(self, label: str, kind: str) -> bool:
        return label in self.fail_on or kind in self.fail_on
