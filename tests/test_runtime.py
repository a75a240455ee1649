from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import pytest

from lessoncheck.core.config import VerifyConfig
from lessoncheck.core.provenance import EventLogger
from lessoncheck.pipeline.extractor import parse_lesson
from lessoncheck.pipeline.models import ExecutionResult, SnippetState
from lessoncheck.pipeline.runner import SnippetRunner
from lessoncheck.pipeline.runtime import discover_lessons, run_verification, verify_lesson
from lessoncheck.pipeline.verifier import Verifier

PASSING = """
# Arithmetic

```python
print(1 + 1)
```

```output
2
```

```python
# package: helpers
def double(x):
    return 2 * x
```
"""

FAILING = """
# Greetings

```python
print("hello")
```

```output
goodbye
```

```python skip
print(undefined_name)
```
"""

LOOPING = """
# Looping

```python
if __name__ == "__main__":
    while True:
        pass
```

```python
print(1)
```

```output
1
```
"""


class _CountingRunner:
    """Records the largest number of snippets running at the same time."""

    def __init__(self):
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def run(self, snippet, companions=()):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.05)
        with self._lock:
            self.active -= 1
        return ExecutionResult(key=snippet.key, state=SnippetState.RAN, executed=True, stdout=f"{snippet.index}\n")


class _FakeRunner:
    """Returns canned stdout; raises for one index and delays earlier snippets."""

    def __init__(self, explode_at: int | None = None):
        self.explode_at = explode_at

    def run(self, snippet, companions=()):
        if snippet.index == self.explode_at:
            raise RuntimeError("runner crashed")
        time.sleep(0.05 * (3 - snippet.index))
        return ExecutionResult(key=snippet.key, state=SnippetState.RAN, executed=True, stdout=f"{snippet.index}\n")


@pytest.fixture
def python_config() -> VerifyConfig:
    return VerifyConfig(toolchain="python", timeout=5, concurrency=2)


def _lesson(python_toolchain, count: int = 3):
    blocks = "\n".join(f"```python\nprint({i})\n```\n\n```output\n{i}\n```\n" for i in range(count))
    return parse_lesson(blocks, lesson_id="fake", path=Path("fake.md"), toolchain=python_toolchain)


def test_discover_lessons_is_sorted_and_recursive(write_lesson) -> None:
    second = write_lesson("b/two.md", "# Two\n")
    first = write_lesson("a/one.md", "# One\n")
    write_lesson("a/notes.txt", "not a lesson")

    root = first.parents[1]
    assert discover_lessons(root) == [first.resolve(), second.resolve()]
    assert discover_lessons(first) == [first.resolve()]
    with pytest.raises(FileNotFoundError):
        discover_lessons(root / "missing")


def test_verify_lesson_keeps_snippet_order(python_toolchain) -> None:
    lesson = _lesson(python_toolchain)
    seen = []

    pairs = verify_lesson(
        lesson,
        _FakeRunner(),
        Verifier(),
        concurrency=3,
        progress=lambda snippet, verdict: seen.append(snippet.index),
    )

    assert [snippet.index for snippet, _ in pairs] == [0, 1, 2]
    assert all(verdict.state is SnippetState.PASSED for _, verdict in pairs)
    assert sorted(seen) == [0, 1, 2]


def test_unexpected_failure_only_affects_one_snippet(python_toolchain) -> None:
    lesson = _lesson(python_toolchain)

    pairs = verify_lesson(lesson, _FakeRunner(explode_at=1), Verifier(), concurrency=2)

    states = [verdict.state for _, verdict in pairs]
    assert states == [SnippetState.PASSED, SnippetState.ERRORED, SnippetState.PASSED]
    assert "internal error: runner crashed" in pairs[1][1].detail


def test_run_verification_over_lesson_tree(write_lesson, python_config, tmp_path: Path) -> None:
    write_lesson("chapter01/arithmetic.md", PASSING)
    write_lesson("chapter02/greetings.md", FAILING)
    events_path = tmp_path / "events" / "run.jsonl"

    report = run_verification(tmp_path / "lessons", python_config, events=EventLogger(events_path))

    assert report.lessons == ["chapter01/arithmetic", "chapter02/greetings"]
    assert report.statuses() == {
        ("chapter01/arithmetic", 0): SnippetState.PASSED,
        ("chapter01/arithmetic", 1): SnippetState.PASSED,
        ("chapter02/greetings", 0): SnippetState.FAILED,
        ("chapter02/greetings", 1): SnippetState.SKIPPED,
    }
    assert report.exit_code == 1
    failed = report.lookup("chapter02/greetings", 0)
    assert "-goodbye" in failed.diff
    assert "+hello" in failed.diff

    events = [json.loads(line) for line in events_path.read_text(encoding="utf-8").splitlines()]
    assert [event["stage"] for event in events] == ["lesson", "snippet", "snippet", "lesson", "snippet", "snippet", "summary"]
    assert events[0]["lesson"] == "chapter01/arithmetic"
    assert events[0]["payload"]["snippets"] == 2
    assert events[1]["payload"]["status"] == "passed"
    assert events[-1]["payload"]["failed"] == 1


def test_run_verification_on_single_file(write_lesson, python_config) -> None:
    path = write_lesson("arithmetic.md", PASSING)

    report = run_verification(path, python_config)

    assert report.lessons == ["arithmetic"]
    assert report.exit_code == 0
    assert report.summary()["passed"] == 2


def test_timeout_only_affects_the_offending_snippet(python_toolchain) -> None:
    lesson = parse_lesson(
        LOOPING,
        lesson_id="looping",
        path=Path("looping.md"),
        toolchain=python_toolchain,
    )
    runner = SnippetRunner(python_toolchain, timeout=1.0)

    pairs = verify_lesson(lesson, runner, Verifier(), concurrency=2)

    assert [verdict.state for _, verdict in pairs] == [SnippetState.TIMEOUT, SnippetState.PASSED]


def test_worker_pool_never_exceeds_concurrency(python_toolchain) -> None:
    lesson = _lesson(python_toolchain, count=8)
    runner = _CountingRunner()

    pairs = verify_lesson(lesson, runner, Verifier(), concurrency=3)

    assert len(pairs) == 8
    assert 1 <= runner.peak <= 3
