"""Compare captured output with the output a lesson declares."""

from __future__ import annotations

import difflib
import re
from typing import Callable, Dict, List

from lessoncheck.core.config import NormalizationPolicy

from .models import ExecutionResult, Snippet, SnippetState, Verdict

_WHITESPACE_RUN = re.compile(r"\s+")


def _split_lines(text: str) -> List[str]:
    return text.replace("\r\n", "\n").replace("\r", "\n").split("\n")


def _normalize_exact(text: str) -> List[str]:
    lines = _split_lines(text)
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _normalize_trim(text: str) -> List[str]:
    lines = _split_lines(text)
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


def _normalize_collapse(text: str) -> List[str]:
    return [_WHITESPACE_RUN.sub(" ", line.strip()) for line in _normalize_trim(text)]


NORMALIZERS: Dict[str, Callable[[str], List[str]]] = {
    "exact": _normalize_exact,
    "trim": _normalize_trim,
    "collapse": _normalize_collapse,
}


def _check_policy(policy: str) -> None:
    if policy not in NORMALIZERS:
        valid = ", ".join(NORMALIZERS)
        raise ValueError(f"Unknown normalization policy '{policy}'. Valid options: {valid}")


def normalize_output(text: str, policy: NormalizationPolicy = "trim") -> List[str]:
    """Split ``text`` into comparable lines under ``policy``."""
    _check_policy(policy)
    return NORMALIZERS[policy](text)


def render_diff(expected: List[str], actual: List[str]) -> str:
    return "\n".join(
        difflib.unified_diff(expected, actual, fromfile="expected", tofile="actual", lineterm="")
    )


class Verifier:
    """Maps a runner result to a terminal verdict. Pure, so repeat calls agree."""

    def __init__(self, normalization: NormalizationPolicy = "trim"):
        _check_policy(normalization)
        self.normalization = normalization

    def verify(self, snippet: Snippet, result: ExecutionResult) -> Verdict:
        if result.key != snippet.key:
            raise ValueError(f"Result {result.key} does not belong to snippet {snippet.key}")

        base = {"key": snippet.key, "duration": result.duration, "error_kind": result.error_kind}
        if result.state is SnippetState.SKIPPED:
            return Verdict(state=SnippetState.SKIPPED, detail=result.error_text, **base)
        if result.state is SnippetState.TIMEOUT:
            return Verdict(state=SnippetState.TIMEOUT, detail=result.error_text, **base)
        if result.state is SnippetState.ERRORED:
            return Verdict(state=SnippetState.ERRORED, detail=result.error_text, **base)
        if result.state is not SnippetState.RAN:
            raise ValueError(f"Cannot verify result in state {result.state.value!r}")

        if not snippet.has_expectation:
            return Verdict(state=SnippetState.PASSED, detail="no declared output; ran without error", **base)
        if not result.executed:
            return Verdict(state=SnippetState.PASSED, detail="fragment type-checked; declared output not compared", **base)

        expected = normalize_output(snippet.expected_output or "", self.normalization)
        actual = normalize_output(result.stdout, self.normalization)
        if expected == actual:
            return Verdict(state=SnippetState.PASSED, **base)
        return Verdict(
            state=SnippetState.FAILED,
            diff=render_diff(expected, actual),
            detail="output differs from declared output",
            **base,
        )


__all__ = ["NORMALIZERS", "Verifier", "normalize_output", "render_diff"]
