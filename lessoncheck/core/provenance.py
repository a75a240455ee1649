"""Append-only JSONL event log for verification runs."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, Field


class RunEvent(BaseModel):
    """One line of the event log: a lesson load, a snippet verdict, or the run summary."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    stage: str = Field(..., description="Run stage, e.g. 'lesson', 'snippet' or 'summary'.")
    message: str
    lesson: str | None = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventLogger:
    """Writes RunEvents to a JSONL file; safe to share between worker threads."""

    def __init__(self, output_path: Path):
        self.output_path = output_path
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log(self, event: RunEvent) -> RunEvent:
        line = event.model_dump_json()
        with self._lock, self.output_path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")
        return event

    def record(self, stage: str, message: str, *, lesson: str | None = None, **payload: Any) -> RunEvent:
        """Build a RunEvent from keyword payload and append it."""
        return self.log(RunEvent(stage=stage, message=message, lesson=lesson, payload=payload))


__all__ = ["EventLogger", "RunEvent"]
