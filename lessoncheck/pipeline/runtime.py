"""Drive extraction, execution, and verification over a tree of lessons."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from lessoncheck.core.config import VerifyConfig
from lessoncheck.core.errors import LessoncheckError
from lessoncheck.core.provenance import EventLogger

from .extractor import load_lesson
from .models import Lesson, Snippet, SnippetState, Verdict
from .report import VerificationReport
from .runner import SnippetRunner, companion_sources
from .verifier import Verifier

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[Snippet, Verdict], None]


def discover_lessons(path: Path, pattern: str = "*.md") -> List[Path]:
    """Return lesson files under ``path`` (or ``path`` itself) in a stable order."""
    path = path.expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Lesson path does not exist: {path}")
    if path.is_file():
        return [path.resolve()]
    return sorted(candidate.resolve() for candidate in path.rglob(pattern) if candidate.is_file())


def verify_snippet(snippet: Snippet, lesson: Lesson, runner: SnippetRunner, verifier: Verifier) -> Verdict:
    result = runner.run(snippet, companion_sources(lesson, snippet))
    return verifier.verify(snippet, result)


def verify_lesson(
    lesson: Lesson,
    runner: SnippetRunner,
    verifier: Verifier,
    *,
    concurrency: int = 1,
    progress: Optional[ProgressCallback] = None,
) -> List[Tuple[Snippet, Verdict]]:
    """Verify every snippet of ``lesson`` on a bounded worker pool.

    Verdicts are gathered from the futures and returned in snippet order; an
    unexpected failure while handling one snippet only marks that snippet ERRORED.
    """
    if not lesson.snippets:
        return []

    verdicts: Dict[int, Verdict] = {}
    workers = max(1, min(concurrency, len(lesson.snippets)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lessoncheck") as executor:
        futures = {
            executor.submit(verify_snippet, snippet, lesson, runner, verifier): snippet
            for snippet in lesson.snippets
        }
        for future in as_completed(futures):
            snippet = futures[future]
            try:
                verdict = future.result()
            except Exception as exc:  # noqa: BLE001 - isolate the failing snippet
                LOGGER.exception("Unexpected failure verifying %s", snippet.describe())
                verdict = Verdict(key=snippet.key, state=SnippetState.ERRORED, detail=f"internal error: {exc}")
            verdicts[snippet.index] = verdict
            if progress is not None:
                progress(snippet, verdict)

    return [(snippet, verdicts[snippet.index]) for snippet in lesson.snippets]


def run_verification(
    target: Path,
    config: VerifyConfig,
    *,
    events: Optional[EventLogger] = None,
    progress: Optional[ProgressCallback] = None,
) -> VerificationReport:
    """Verify every lesson under ``target`` one lesson at a time."""
    lesson_paths = discover_lessons(target, config.lesson_pattern)
    LOGGER.info("Verifying %d lesson(s) under %s", len(lesson_paths), target)

    runner = SnippetRunner(config.toolchain, timeout=config.timeout, compile_timeout=config.compile_timeout)
    verifier = Verifier(config.normalization)
    report = VerificationReport(toolchain=config.toolchain.name, normalization=config.normalization)
    root = target.expanduser().resolve()

    for lesson_path in lesson_paths:
        try:
            lesson = load_lesson(
                lesson_path,
                toolchain=config.toolchain,
                root=root,
                include_untagged=config.include_untagged,
            )
        except (OSError, UnicodeDecodeError) as exc:
            raise LessoncheckError(f"Cannot read lesson {lesson_path}: {exc}") from exc

        if events is not None:
            events.record(
                "lesson",
                "Lesson loaded",
                lesson=lesson.id,
                path=str(lesson.path),
                snippets=len(lesson),
                sections=len(lesson.sections),
            )

        for snippet, verdict in verify_lesson(
            lesson,
            runner,
            verifier,
            concurrency=config.concurrency,
            progress=progress,
        ):
            entry = report.add(snippet, verdict)
            if events is not None:
                events.record(
                    "snippet",
                    f"Snippet {entry.status.value}",
                    lesson=lesson.id,
                    index=entry.index,
                    line=entry.line,
                    kind=entry.kind.value,
                    status=entry.status.value,
                )

    report.finish()
    if events is not None:
        events.record("summary", "Verification finished", **report.summary())
    return report


__all__ = ["discover_lessons", "run_verification", "verify_lesson", "verify_snippet"]
