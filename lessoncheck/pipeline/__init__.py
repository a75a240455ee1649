"""Extract, run, and verify the code listings of Markdown lessons."""

from __future__ import annotations

from .extractor import SnippetStream, extract_snippets, load_lesson, parse_lesson
from .models import ErrorKind, ExecutionResult, Lesson, Section, Snippet, SnippetKind, SnippetState, Verdict
from .report import ConsoleSink, FileSink, VerificationReport
from .runner import SnippetRunner, companion_sources
from .runtime import discover_lessons, run_verification, verify_lesson
from .verifier import Verifier, normalize_output

__all__ = [
    "ConsoleSink",
    "ErrorKind",
    "ExecutionResult",
    "FileSink",
    "Lesson",
    "Section",
    "Snippet",
    "SnippetKind",
    "SnippetRunner",
    "SnippetState",
    "SnippetStream",
    "Verdict",
    "VerificationReport",
    "Verifier",
    "companion_sources",
    "discover_lessons",
    "extract_snippets",
    "load_lesson",
    "normalize_output",
    "parse_lesson",
    "run_verification",
    "verify_lesson",
]
