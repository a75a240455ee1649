"""Exception hierarchy shared by the extractor, runner, and report sinks."""

from __future__ import annotations


class LessoncheckError(Exception):
    """Base class for every error raised by lessoncheck."""


class ConfigError(LessoncheckError, ValueError):
    """Configuration file or override could not be turned into a VerifyConfig."""


class ExtractionError(LessoncheckError):
    """A fenced block is framed badly (unterminated fence or output comment, empty body).

    The extractor recovers from it by emitting a MALFORMED snippet.
    """

    def __init__(self, message: str, *, line: int | None = None):
        super().__init__(message)
        self.line = line

    def __str__(self) -> str:
        base = super().__str__()
        return f"line {self.line}: {base}" if self.line is not None else base


class ToolchainError(LessoncheckError):
    """A toolchain command could not be started (missing binary, bad template)."""


class AggregationError(LessoncheckError):
    """Writing the verification report failed. Fatal for the whole run."""


__all__ = [
    "AggregationError",
    "ConfigError",
    "ExtractionError",
    "LessoncheckError",
    "ToolchainError",
]
