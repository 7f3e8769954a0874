"""TOML pipeline file loader."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

from stagekit.errors import ValidationError
from stagekit.pipeline import Pipeline, StageBuilder

DEFAULT_SPECFILE = "stagekit.toml"

# kind -> (required keys, optional keys)
_STEP_FIELDS: dict[str, tuple[frozenset[str], frozenset[str]]] = {
    "install": (frozenset({"packages"}), frozenset()),
    "toolchain": (
        frozenset({"name", "version", "url", "sha256", "install_dir"}),
        frozenset({"bin_dir", "installer"}),
    ),
    "compile": (frozenset({"binary"}), frozenset({"builder", "package", "profile", "port", "flags"})),
    "venv": (frozenset({"path"}), frozenset({"source", "interpreter", "port"})),
    "run": (frozenset({"argv"}), frozenset({"env"})),
    "copy_context": (frozenset({"src", "dest"}), frozenset({"mode"})),
    "copy_from": (frozenset({"stage", "port", "dest"}), frozenset()),
    "export": (frozenset({"port", "path"}), frozenset()),
}

_LIST_FIELDS = frozenset({"packages", "installer", "flags", "argv"})
_TABLE_FIELDS = frozenset({"env"})


def load_pipeline(path: str | Path, **kwargs: Any) -> Pipeline:
    """Read a TOML pipeline file and return the declared pipeline.

    ``context_dir`` defaults to the directory holding the file and
    ``build_dir`` to ``<context_dir>/build``. Other keyword arguments are
    passed to :class:`Pipeline`.
    """
    spec_path = Path(path)
    try:
        with spec_path.open("rb") as handle:
            payload = tomllib.load(handle)
    except FileNotFoundError as exc:
        raise ValidationError(
            "Pipeline file does not exist.",
            hint=f"Create {DEFAULT_SPECFILE} or pass -f PATH.",
            context={"path": str(spec_path)},
        ) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(
            "Pipeline file is not valid TOML.",
            hint=str(exc),
            context={"path": str(spec_path)},
        ) from exc

    kwargs.setdefault("context_dir", spec_path.parent)
    kwargs.setdefault("build_dir", Path(kwargs["context_dir"]) / "build")
    pipeline = Pipeline(**kwargs)
    pipeline_from_mapping(pipeline, payload, source=str(spec_path))
    return pipeline


def pipeline_from_mapping(pipeline: Pipeline, payload: dict[str, Any], *, source: str = "<mapping>") -> Pipeline:
    stages = payload.get("stage")
    if not isinstance(stages, list) or not stages:
        raise ValidationError(
            "Pipeline file declares no [[stage]] tables.",
            context={"path": source},
        )
    for index, raw_stage in enumerate(stages):
        _load_stage(pipeline, raw_stage, index=index, source=source)

    entrypoint = payload.get("entrypoint")
    if not isinstance(entrypoint, dict):
        raise ValidationError(
            "Pipeline file has no [entrypoint] table.",
            context={"path": source},
        )
    context = {"path": source, "table": "entrypoint"}
    argv = _string_list(entrypoint, "argv", context=context)
    config = _optional_str(entrypoint, "config", context=context)
    stage = _optional_str(entrypoint, "stage", context=context)
    timeout = entrypoint.get("timeout", 30.0)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise ValidationError("Entrypoint timeout must be a number.", context=context)
    env = _string_table(entrypoint, "env", context=context)
    pipeline.entrypoint(*argv, config=config, timeout=float(timeout), env=env, stage=stage)
    return pipeline


def _load_stage(pipeline: Pipeline, raw: Any, *, index: int, source: str) -> StageBuilder:
    context = {"path": source, "stage_index": str(index)}
    if not isinstance(raw, dict):
        raise ValidationError("Stage entry must be a table.", context=context)
    name = _required_str(raw, "name", context=context)
    context["stage"] = name
    stage = pipeline.stage(
        name,
        base=_required_str(raw, "base", context=context),
        workdir=_optional_str(raw, "workdir", context=context) or "/",
    )
    for key, value in _string_table(raw, "env", context=context).items():
        stage.env(key, value)
    for directory in _string_list(raw, "prepend_path", context=context, required=False):
        stage.prepend_path(directory)

    steps = raw.get("steps")
    if not isinstance(steps, list):
        raise ValidationError("Stage `steps` must be an array of tables.", context=context)
    for step_index, step in enumerate(steps):
        _load_step(stage, step, context={**context, "step_index": str(step_index)})
    return stage


def _load_step(stage: StageBuilder, raw: Any, *, context: dict[str, str]) -> None:
    if not isinstance(raw, dict):
        raise ValidationError("Step entry must be a table.", context=context)
    kind = raw.get("kind")
    if kind not in _STEP_FIELDS:
        raise ValidationError(
            "Unknown step kind.",
            hint=f"Use one of: {', '.join(sorted(_STEP_FIELDS))}.",
            context={**context, "kind": str(kind)},
        )
    required, optional = _STEP_FIELDS[kind]
    fields = {key: value for key, value in raw.items() if key != "kind"}
    missing = sorted(required - fields.keys())
    if missing:
        raise ValidationError(
            "Step is missing required keys.",
            context={**context, "kind": kind, "missing": ",".join(missing)},
        )
    unknown = sorted(fields.keys() - required - optional)
    if unknown:
        raise ValidationError(
            "Step has unknown keys.",
            context={**context, "kind": kind, "unknown": ",".join(unknown)},
        )
    for key in fields:
        if key in _LIST_FIELDS:
            fields[key] = tuple(_string_list(fields, key, context=context))
        elif key in _TABLE_FIELDS:
            fields[key] = _string_table(fields, key, context=context)
        elif not isinstance(fields[key], str):
            raise ValidationError(
                f"Step key `{key}` must be a string.",
                context={**context, "kind": kind},
            )

    if kind == "install":
        stage.install(*fields.pop("packages"))
    elif kind == "toolchain":
        stage.toolchain(fields.pop("name"), **fields)
    elif kind == "compile":
        stage.compile(fields.pop("binary"), **fields)
    elif kind == "venv":
        stage.venv(fields.pop("path"), **fields)
    elif kind == "run":
        stage.run(*fields.pop("argv"), **fields)
    elif kind == "copy_context":
        stage.copy_context(fields.pop("src"), fields.pop("dest"), **fields)
    elif kind == "copy_from":
        stage.copy_from(fields["stage"], fields["port"], fields["dest"])
    elif kind == "export":
        stage.export(fields["port"], fields["path"])


def _required_str(payload: dict[str, Any], key: str, *, context: dict[str, str]) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Missing or invalid `{key}` value.", context=context)
    return value


def _optional_str(payload: dict[str, Any], key: str, *, context: dict[str, str]) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Invalid `{key}` value.", context=context)
    return value


def _string_list(
    payload: dict[str, Any],
    key: str,
    *,
    context: dict[str, str],
    required: bool = True,
) -> list[str]:
    value = payload.get(key)
    if value is None and not required:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"`{key}` must be an array of strings.", context=context)
    return list(value)


def _string_table(payload: dict[str, Any], key: str, *, context: dict[str, str]) -> dict[str, str]:
    value = payload.get(key, {})
    if not isinstance(value, dict) or not all(isinstance(item, str) for item in value.values()):
        raise ValidationError(f"`{key}` must be a table of strings.", context=context)
    return dict(value)
