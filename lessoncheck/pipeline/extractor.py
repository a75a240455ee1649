"""Turn Markdown lesson text into ordered snippets and sections.

Recognised expected-output conventions:

- a trailing ``/* Output: ... */`` comment as the last thing inside the block;
- right after the closing fence (blank lines allowed), a ``/* Output: ... */``
  or bare ``/* ... */`` comment in the prose;
- right after the closing fence, a fenced block tagged ``output``, ``text`` or
  ``console``. That block is consumed and is never a snippet itself.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from lessoncheck.core.config import ToolchainConfig
from lessoncheck.core.errors import ExtractionError

from .models import Lesson, Section, Snippet, SnippetKind

LOGGER = logging.getLogger(__name__)

FENCE_RE = re.compile(r"^(?P<indent> {0,3})(?P<fence>`{3,}|~{3,})(?P<info>.*)$")
HEADING_RE = re.compile(r"^ {0,3}(?P<hashes>#{1,6})(?:[ \t]+(?P<title>.*?))?[ \t]*#*[ \t]*$")
OUTPUT_OPENER_RE = re.compile(r"^\s*/\*\s*output\s*:", re.IGNORECASE)
OUTPUT_MARKER_RE = re.compile(r"^\s*/\*\s*(?:output\s*:)?[ \t]?", re.IGNORECASE)
LABEL_RE = re.compile(r"^[\w./\\-]+$")
OUTPUT_FENCE_TAGS = frozenset({"output", "text", "console"})
COMMENT_CLOSE = "*/"


@dataclass(frozen=True)
class _Heading:
    level: int
    title: str


@dataclass(frozen=True)
class _Prose:
    text: str


_Event = Union[_Heading, _Prose, Snippet]


def _parse_info(info: str) -> Tuple[str, Tuple[str, ...]]:
    tokens = [token for token in re.split(r"[\s,{}]+", info.strip()) if token]
    if not tokens:
        return "", ()
    return tokens[0].lower(), tuple(token.lower().lstrip(".") for token in tokens[1:])


def _find_fence_close(lines: Sequence[str], start: int, marker: str) -> Optional[int]:
    closing = re.compile(rf"^ {{0,3}}{re.escape(marker[0])}{{{len(marker)},}}[ \t]*$")
    for position in range(start, len(lines)):
        if closing.match(lines[position]):
            return position
    return None


def _outdent(line: str, width: int) -> str:
    """Remove up to ``width`` leading spaces, the indentation of the opening fence."""
    stripped = 0
    while stripped < width and stripped < len(line) and line[stripped] == " ":
        stripped += 1
    return line[stripped:]


def _read_comment(lines: Sequence[str], start: int, indent: int = 0) -> Tuple[str, int]:
    """Parse a ``/* ... */`` comment beginning on ``lines[start]``.

    Returns the comment body (marker and terminator removed) and the index of
    the line holding the terminator. Continuation lines lose up to ``indent``
    leading spaces.
    """
    first = OUTPUT_MARKER_RE.sub("", lines[start], count=1)
    body: List[str] = []
    if COMMENT_CLOSE in first:
        head = first[: first.index(COMMENT_CLOSE)].rstrip()
        if head:
            body.append(head)
        return "\n".join(body), start
    if first.strip():
        body.append(first.rstrip())
    for position in range(start + 1, len(lines)):
        line = _outdent(lines[position], indent)
        if COMMENT_CLOSE in line:
            head = line[: line.index(COMMENT_CLOSE)].rstrip()
            if head:
                body.append(head)
            return "\n".join(body), position
        body.append(line)
    raise ExtractionError("unterminated output comment", line=start + 1)


def _split_inline_output(body: List[str], first_line: int) -> Tuple[List[str], Optional[str]]:
    """Separate a trailing ``/* Output: */`` comment from the code lines."""
    opener = None
    for position in range(len(body) - 1, -1, -1):
        if OUTPUT_OPENER_RE.match(body[position]):
            opener = position
            break
    if opener is None:
        return body, None
    try:
        expected, close = _read_comment(body, opener)
    except ExtractionError as exc:
        raise ExtractionError("unterminated output comment", line=first_line + opener) from exc
    trailing = body[close + 1 :]
    if any(line.strip() for line in trailing):
        return body, None
    return _rstrip_blank(body[:opener]), expected


def _rstrip_blank(lines: List[str]) -> List[str]:
    end = len(lines)
    while end and not lines[end - 1].strip():
        end -= 1
    return lines[:end]


def _trailing_output(lines: Sequence[str], start: int, indent: int = 0) -> Tuple[Optional[str], int]:
    """Look for an expected-output block right after a closing fence.

    Returns the expectation (or None) and the index scanning should resume at.
    """
    position = start
    while position < len(lines) and not lines[position].strip():
        position += 1
    if position >= len(lines):
        return None, start
    candidate = lines[position]
    if candidate.lstrip().startswith("/*"):
        expected, close = _read_comment(lines, position, indent)
        return expected, close + 1
    fence = FENCE_RE.match(candidate)
    if fence:
        language, _ = _parse_info(fence.group("info"))
        if language in OUTPUT_FENCE_TAGS:
            close = _find_fence_close(lines, position + 1, fence.group("fence"))
            if close is None:
                raise ExtractionError("unterminated output fence", line=position + 1)
            width = len(fence.group("indent"))
            return "\n".join(_outdent(line, width) for line in lines[position + 1 : close]), close + 1
    return None, start


def _find_label(body: Sequence[str], toolchain: ToolchainConfig) -> Optional[str]:
    for line in body:
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith(toolchain.comment_prefix):
            return None
        candidate = stripped[len(toolchain.comment_prefix) :].strip()
        if LABEL_RE.match(candidate) and candidate.endswith(toolchain.source_suffix):
            return candidate
        return None
    return None


def _first_code_line(body: Sequence[str], toolchain: ToolchainConfig) -> Optional[str]:
    in_block_comment = False
    for line in body:
        stripped = line.strip()
        if in_block_comment:
            if COMMENT_CLOSE in stripped:
                in_block_comment = False
            continue
        if not stripped or stripped.startswith(toolchain.comment_prefix):
            continue
        if toolchain.comment_prefix == "//" and stripped.startswith("/*"):
            in_block_comment = COMMENT_CLOSE not in stripped[2:]
            continue
        return stripped
    return None


def _classify(code: str, body: Sequence[str], toolchain: ToolchainConfig, line: int) -> SnippetKind:
    if _first_code_line(body, toolchain) is None:
        raise ExtractionError("snippet has no code", line=line)
    if toolchain.entry_point_regex.search(code):
        return SnippetKind.RUNNABLE
    return SnippetKind.FRAGMENT


def _package_of(code: str, toolchain: ToolchainConfig) -> Optional[str]:
    regex = toolchain.package_regex
    if regex is None:
        return None
    match = regex.search(code)
    return match.group(1) if match else None


def _scan(
    text: str,
    *,
    lesson_id: str,
    toolchain: ToolchainConfig,
    include_untagged: bool,
) -> Iterator[_Event]:
    lines = text.splitlines()
    position = 0
    index = 0
    while position < len(lines):
        line = lines[position]
        fence = FENCE_RE.match(line)
        if fence is None:
            heading = HEADING_RE.match(line)
            if heading:
                yield _Heading(level=len(heading.group("hashes")), title=(heading.group("title") or "").strip())
            else:
                yield _Prose(line)
            position += 1
            continue

        marker = fence.group("fence")
        language, attributes = _parse_info(fence.group("info"))
        close = _find_fence_close(lines, position + 1, marker)
        resume = close + 1 if close is not None else len(lines)
        wanted = toolchain.accepts(language) if language else include_untagged
        if not wanted:
            for prose_line in lines[position:resume]:
                yield _Prose(prose_line)
            position = resume
            continue

        start_line = position + 1
        indent = len(fence.group("indent"))
        end = close if close is not None else len(lines)
        body = [_outdent(body_line, indent) for body_line in lines[position + 1 : end]]
        label = _find_label(body, toolchain)
        try:
            if close is None:
                raise ExtractionError("unterminated code fence", line=start_line)
            code_lines, expected = _split_inline_output(body, start_line + 1)
            if expected is None:
                expected, resume = _trailing_output(lines, resume, indent)
            code = "\n".join(code_lines)
            kind = _classify(code, code_lines, toolchain, start_line)
        except ExtractionError as exc:
            LOGGER.warning("Malformed snippet %s#%d: %s", lesson_id, index, exc)
            yield Snippet(
                lesson_id=lesson_id,
                index=index,
                line=start_line,
                language=language,
                code="\n".join(body),
                kind=SnippetKind.MALFORMED,
                attributes=attributes,
                label=label,
                error=str(exc),
            )
        else:
            yield Snippet(
                lesson_id=lesson_id,
                index=index,
                line=start_line,
                language=language,
                code=code + "\n" if code else code,
                kind=kind,
                attributes=attributes,
                label=label,
                package=_package_of(code, toolchain),
                expected_output=expected,
            )
        index += 1
        position = resume


class SnippetStream:
    """Lazy, restartable sequence of the snippets in one document.

    Each iteration re-scans the text from the start, so the stream can be
    consumed any number of times and always yields snippets in source order.
    """

    def __init__(self, text: str, *, lesson_id: str, toolchain: ToolchainConfig, include_untagged: bool = False):
        self.text = text
        self.lesson_id = lesson_id
        self.toolchain = toolchain
        self.include_untagged = include_untagged

    def __iter__(self) -> Iterator[Snippet]:
        for event in _scan(
            self.text,
            lesson_id=self.lesson_id,
            toolchain=self.toolchain,
            include_untagged=self.include_untagged,
        ):
            if isinstance(event, Snippet):
                yield event


def extract_snippets(
    text: str,
    *,
    lesson_id: str,
    toolchain: ToolchainConfig,
    include_untagged: bool = False,
) -> SnippetStream:
    return SnippetStream(text, lesson_id=lesson_id, toolchain=toolchain, include_untagged=include_untagged)


def lesson_id_for(path: Path, root: Path | None = None) -> str:
    """Return the lesson id: path relative to ``root`` without suffix, '/'-separated."""
    path = path.resolve()
    if root is not None:
        root = root.resolve()
        if root.is_file():
            root = root.parent
        try:
            return path.relative_to(root).with_suffix("").as_posix()
        except ValueError:
            pass
    return path.with_suffix("").name


def parse_lesson(
    text: str,
    *,
    lesson_id: str,
    path: Path,
    toolchain: ToolchainConfig,
    include_untagged: bool = False,
) -> Lesson:
    sections: List[Section] = []
    snippets: List[Snippet] = []
    heading, level = "", 0
    prose: List[str] = []
    indices: List[int] = []

    def flush() -> None:
        body = "\n".join(prose).strip()
        if heading or body or indices:
            sections.append(Section(heading=heading, level=level, prose=body, snippet_indices=tuple(indices)))

    for event in _scan(text, lesson_id=lesson_id, toolchain=toolchain, include_untagged=include_untagged):
        if isinstance(event, _Heading):
            flush()
            heading, level = event.title, event.level
            prose, indices = [], []
        elif isinstance(event, _Prose):
            prose.append(event.text)
        else:
            snippets.append(event)
            indices.append(event.index)
    flush()

    return Lesson(id=lesson_id, path=path, text=text, sections=tuple(sections), snippets=tuple(snippets))


def load_lesson(
    path: Path,
    *,
    toolchain: ToolchainConfig,
    root: Path | None = None,
    include_untagged: bool = False,
) -> Lesson:
    """Read a UTF-8 lesson from disk and parse it."""
    text = path.read_text(encoding="utf-8")
    lesson_id = lesson_id_for(path, root)
    lesson = parse_lesson(
        text,
        lesson_id=lesson_id,
        path=path.resolve(),
        toolchain=toolchain,
        include_untagged=include_untagged,
    )
    LOGGER.debug("Loaded lesson %s with %d snippet(s)", lesson_id, len(lesson))
    return lesson


__all__ = [
    "SnippetStream",
    "extract_snippets",
    "lesson_id_for",
    "load_lesson",
    "parse_lesson",
]
