"""Aggregate verdicts into a report and write it to the console or a file."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from pydantic import BaseModel, Field
from rich.console import Console
from rich.table import Table
from rich.text import Text

from lessoncheck.core.config import ReportFormat
from lessoncheck.core.errors import AggregationError

from .models import ErrorKind, Snippet, SnippetKey, SnippetKind, SnippetState, Verdict

STATUS_STYLES: Dict[SnippetState, str] = {
    SnippetState.PASSED: "green",
    SnippetState.SKIPPED: "dim",
    SnippetState.FAILED: "bold red",
    SnippetState.ERRORED: "red",
    SnippetState.TIMEOUT: "yellow",
}
REPORTED_STATES: Tuple[SnippetState, ...] = tuple(STATUS_STYLES)


class SnippetReport(BaseModel):
    """One row of the report: where the snippet lives and how it ended."""

    lesson: str
    index: int
    line: int
    kind: SnippetKind
    label: Optional[str] = None
    status: SnippetState
    duration: float = 0.0
    error_kind: Optional[ErrorKind] = None
    detail: str = ""
    diff: str = ""

    @property
    def key(self) -> SnippetKey:
        return (self.lesson, self.index)


class VerificationReport(BaseModel):
    """All verdicts of a run, keyed by (lesson id, snippet index)."""

    toolchain: str
    normalization: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    entries: List[SnippetReport] = Field(default_factory=list)

    def add(self, snippet: Snippet, verdict: Verdict) -> SnippetReport:
        if snippet.key != verdict.key:
            raise ValueError(f"Verdict {verdict.key} does not belong to snippet {snippet.key}")
        entry = SnippetReport(
            lesson=snippet.lesson_id,
            index=snippet.index,
            line=snippet.line,
            kind=snippet.kind,
            label=snippet.label,
            status=verdict.state,
            duration=round(verdict.duration, 3),
            error_kind=verdict.error_kind,
            detail=verdict.detail,
            diff=verdict.diff,
        )
        self.entries.append(entry)
        return entry

    def extend(self, pairs: Iterable[Tuple[Snippet, Verdict]]) -> None:
        for snippet, verdict in pairs:
            self.add(snippet, verdict)

    def finish(self) -> "VerificationReport":
        self.finished_at = datetime.now(timezone.utc)
        return self

    def lookup(self, lesson: str, index: int) -> Optional[SnippetReport]:
        for entry in self.entries:
            if entry.lesson == lesson and entry.index == index:
                return entry
        return None

    def statuses(self) -> Dict[SnippetKey, SnippetState]:
        return {entry.key: entry.status for entry in self.entries}

    def summary(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in REPORTED_STATES}
        for entry in self.entries:
            counts[entry.status.value] += 1
        counts["total"] = len(self.entries)
        return counts

    @property
    def lessons(self) -> List[str]:
        seen: Dict[str, None] = {}
        for entry in self.entries:
            seen.setdefault(entry.lesson, None)
        return list(seen)

    @property
    def problems(self) -> List[SnippetReport]:
        return [entry for entry in self.entries if not entry.status.is_success]

    @property
    def exit_code(self) -> int:
        return 0 if not self.problems else 1

    def to_payload(self) -> Dict[str, object]:
        payload = self.model_dump(mode="json")
        payload["summary"] = self.summary()
        return payload


class ReportSink(Protocol):
    def emit(self, report: VerificationReport) -> None: ...


class ConsoleSink:
    """Render the report as a rich table followed by diffs of failing snippets."""

    def __init__(self, console: Console | None = None, *, quiet: bool = False):
        self.console = console or Console()
        self.quiet = quiet

    def emit(self, report: VerificationReport) -> None:
        try:
            if not self.quiet:
                self._print_table(report)
                self._print_problems(report)
            self._print_summary(report)
        except OSError as exc:
            raise AggregationError(f"Cannot write report to console: {exc}") from exc

    def _print_table(self, report: VerificationReport) -> None:
        table = Table(title="Snippet Verification", show_header=True)
        table.add_column("Lesson")
        table.add_column("#", justify="right")
        table.add_column("Line", justify="right")
        table.add_column("Source")
        table.add_column("Kind")
        table.add_column("Status", justify="center")
        for entry in report.entries:
            table.add_row(
                entry.lesson,
                str(entry.index),
                str(entry.line),
                entry.label or "-",
                entry.kind.value,
                Text(entry.status.value.upper(), style=STATUS_STYLES[entry.status]),
            )
        self.console.print(table)

    def _print_problems(self, report: VerificationReport) -> None:
        for entry in report.problems:
            where = entry.label or f"line {entry.line}"
            self.console.print(
                Text(f"{entry.status.value.upper()} {entry.lesson}#{entry.index} ({where})", style=STATUS_STYLES[entry.status])
            )
            body = entry.diff or entry.detail
            if body:
                self.console.print(Text(body), highlight=False)

    def _print_summary(self, report: VerificationReport) -> None:
        counts = report.summary()
        parts = [f"{counts[state.value]} {state.value}" for state in REPORTED_STATES if counts[state.value]]
        style = "green" if report.exit_code == 0 else "bold red"
        line = f"{counts['total']} snippet(s) in {len(report.lessons)} lesson(s): " + (", ".join(parts) or "nothing to verify")
        self.console.print(Text(line, style=style))


class FileSink:
    """Write the report as one JSON document or as JSON lines (one per snippet)."""

    def __init__(self, path: Path, *, fmt: ReportFormat = "json"):
        self.path = path
        self.fmt = fmt

    def emit(self, report: VerificationReport) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as handle:
                if self.fmt == "jsonl":
                    for entry in report.entries:
                        handle.write(entry.model_dump_json() + "\n")
                else:
                    json.dump(report.to_payload(), handle, indent=2)
                    handle.write("\n")
        except OSError as exc:
            raise AggregationError(f"Cannot write report to {self.path}: {exc}") from exc


__all__ = [
    "ConsoleSink",
    "FileSink",
    "ReportSink",
    "SnippetReport",
    "VerificationReport",
]
