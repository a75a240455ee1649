"""Lesson, snippet, and result records passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, Tuple

SnippetKey = Tuple[str, int]

SKIP_ATTRIBUTES = frozenset({"skip", "ignore", "no-verify"})


class SnippetKind(str, Enum):
    """Closed set of snippet variants. Every stage handles all three."""

    RUNNABLE = "runnable"
    FRAGMENT = "fragment"
    MALFORMED = "malformed"


class SnippetState(str, Enum):
    """Lifecycle of a snippet: PENDING -> EXTRACTED -> SKIPPED | RAN -> verdict."""

    PENDING = "pending"
    EXTRACTED = "extracted"
    RAN = "ran"
    SKIPPED = "skipped"
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_success(self) -> bool:
        return self in (SnippetState.PASSED, SnippetState.SKIPPED)


TERMINAL_STATES = frozenset(
    {
        SnippetState.PASSED,
        SnippetState.FAILED,
        SnippetState.ERRORED,
        SnippetState.TIMEOUT,
        SnippetState.SKIPPED,
    }
)


class ErrorKind(str, Enum):
    COMPILE_ERROR = "compile_error"
    RUNTIME_ERROR = "runtime_error"
    TIMEOUT = "timeout"
    EXTRACTION_ERROR = "extraction_error"


@dataclass(frozen=True)
class Snippet:
    """One fenced code block, read-only view into its lesson."""

    lesson_id: str
    index: int
    line: int
    language: str
    code: str
    kind: SnippetKind
    attributes: Tuple[str, ...] = ()
    label: str | None = None
    package: str | None = None
    expected_output: str | None = None
    error: str | None = None

    @property
    def key(self) -> SnippetKey:
        return (self.lesson_id, self.index)

    @property
    def has_expectation(self) -> bool:
        return self.expected_output is not None

    @property
    def skip_requested(self) -> bool:
        return any(attr.lower() in SKIP_ATTRIBUTES for attr in self.attributes)

    def describe(self) -> str:
        where = self.label or f"line {self.line}"
        return f"{self.lesson_id}#{self.index} ({where})"


@dataclass(frozen=True)
class Section:
    heading: str
    level: int
    prose: str
    snippet_indices: Tuple[int, ...] = ()


@dataclass(frozen=True)
class Lesson:
    """A parsed Markdown lesson. Identity is its id (path relative to the lesson root)."""

    id: str
    path: Path
    text: str
    sections: Tuple[Section, ...]
    snippets: Tuple[Snippet, ...]

    @property
    def chapter(self) -> str:
        return self.id.split("/", 1)[0]

    def __iter__(self) -> Iterator[Snippet]:
        return iter(self.snippets)

    def __len__(self) -> int:
        return len(self.snippets)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of handing one snippet to the runner."""

    key: SnippetKey
    state: SnippetState
    executed: bool = False
    stdout: str = ""
    error_text: str = ""
    error_kind: ErrorKind | None = None
    duration: float = 0.0

    def __post_init__(self) -> None:
        if self.state not in (SnippetState.RAN, SnippetState.SKIPPED, SnippetState.ERRORED, SnippetState.TIMEOUT):
            raise ValueError(f"runner cannot produce state {self.state.value!r}")


@dataclass(frozen=True)
class Verdict:
    """Terminal classification of a snippet after verification."""

    key: SnippetKey
    state: SnippetState
    diff: str = ""
    detail: str = ""
    duration: float = 0.0
    error_kind: ErrorKind | None = None

    def __post_init__(self) -> None:
        if not self.state.is_terminal:
            raise ValueError(f"verdict state must be terminal, got {self.state.value!r}")


@dataclass
class OutputCapture:
    """Per-snippet accumulator for subprocess output, one entry per step.

    A fresh instance is created for every snippet and passed explicitly to each
    step so no output can leak between snippets.
    """

    steps: list[tuple[str, str, str]] = field(default_factory=list)

    def record(self, step: str, stdout: str | bytes | None, stderr: str | bytes | None) -> None:
        self.steps.append((step, _as_text(stdout or ""), _as_text(stderr or "")))

    def stdout_for(self, step: str) -> str:
        return "".join(out for name, out, _ in self.steps if name == step)

    def stderr_for(self, step: str) -> str:
        return "".join(err for name, _, err in self.steps if name == step)

    @property
    def stderr_text(self) -> str:
        return "".join(err for _, _, err in self.steps)


def _as_text(value: str | bytes) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = [
    "ErrorKind",
    "ExecutionResult",
    "Lesson",
    "OutputCapture",
    "Section",
    "Snippet",
    "SnippetKey",
    "SnippetKind",
    "SnippetState",
    "TERMINAL_STATES",
    "Verdict",
]
