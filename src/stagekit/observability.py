"""Structured build log shared by the executor, CLI, and build report."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

LogLevel = Literal["info", "warning", "error"]


@dataclass(slots=True)
class StructuredLogger:
    """Accumulates one record per stage transition, step, copy, and verification.

    ``run_id`` is stamped on every record so records from consecutive builds
    on one logger can still be told apart.
    """

    run_id: str = ""
    records: list[dict[str, Any]] = field(default_factory=list)

    def log(
        self,
        *,
        operation: str,
        stage: str | None,
        step: str | None,
        message: str,
        artifact: str | None = None,
        level: LogLevel = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "run": self.run_id,
            "level": level,
            "operation": operation,
            "stage": stage,
            "step": step,
            "artifact": artifact,
            "message": message,
        }
        if extra:
            record["extra"] = extra
        self.records.append(record)

    def records_for_stage(self, stage: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("stage") == stage]

    def records_for_run(self, run_id: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("run") == run_id]

    def timeline(self, *, run_id: str | None = None) -> dict[str, list[str]]:
        """Operations per stage in the order they were logged, optionally for one run."""
        records = self.records if run_id is None else self.records_for_run(run_id)
        timeline: dict[str, list[str]] = {}
        for record in records:
            stage = record.get("stage")
            if stage is None:
                continue
            step = record.get("step")
            entry = record["operation"] if step is None else f"{record['operation']}:{step}"
            timeline.setdefault(stage, []).append(entry)
        return timeline

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with output_path.open("w", encoding="utf-8") as handle:
            for record in self.records:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        return output_path
