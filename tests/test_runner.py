from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from lessoncheck.pipeline.extractor import extract_snippets, parse_lesson
from lessoncheck.pipeline.models import ErrorKind, Snippet, SnippetKind, SnippetState
from lessoncheck.pipeline.runner import SnippetRunner, companion_sources, expand_command
from lessoncheck.pipeline.verifier import Verifier


def _snippet(code: str, kind: SnippetKind = SnippetKind.RUNNABLE, *, index: int = 0, **kwargs) -> Snippet:
    return Snippet(
        lesson_id="runner",
        index=index,
        line=1,
        language="python",
        code=dedent(code).lstrip(),
        kind=kind,
        **kwargs,
    )


@pytest.fixture
def runner(python_toolchain) -> SnippetRunner:
    return SnippetRunner(python_toolchain, timeout=10.0, compile_timeout=30.0)


def test_runnable_snippet_captures_stdout(runner) -> None:
    result = runner.run(_snippet("print(1 + 1)\n"))

    assert result.state is SnippetState.RAN
    assert result.executed
    assert result.stdout == "2\n"
    assert result.error_kind is None
    assert result.duration >= 0


def test_fragment_is_only_checked(runner) -> None:
    result = runner.run(_snippet("def area(r):\n    return 3 * r * r\n", SnippetKind.FRAGMENT))

    assert result.state is SnippetState.RAN
    assert not result.executed
    assert result.stdout == ""


def test_fragment_with_syntax_error_is_a_compile_error(runner) -> None:
    result = runner.run(_snippet("def broken(:\n    pass\n", SnippetKind.FRAGMENT))

    assert result.state is SnippetState.ERRORED
    assert result.error_kind is ErrorKind.COMPILE_ERROR
    assert "check step exited with status" in result.error_text


def test_nonzero_exit_is_a_runtime_error(runner) -> None:
    result = runner.run(
        _snippet(
            """
            import sys
            print("before")
            sys.exit(3)
            """
        )
    )

    assert result.state is SnippetState.ERRORED
    assert result.error_kind is ErrorKind.RUNTIME_ERROR
    assert result.executed
    assert result.stdout == "before\n"
    assert "status 3" in result.error_text


def test_exception_traceback_is_reported(runner) -> None:
    result = runner.run(_snippet('print("x")\nraise RuntimeError("boom")\n'))

    assert result.state is SnippetState.ERRORED
    assert "RuntimeError: boom" in result.error_text


def test_snippet_exceeding_timeout_is_killed(python_toolchain) -> None:
    runner = SnippetRunner(python_toolchain, timeout=1.0)
    code = """
    if __name__ == "__main__":
        while True:
            pass
    """

    result = runner.run(_snippet(code))

    assert result.state is SnippetState.TIMEOUT
    assert result.error_kind is ErrorKind.TIMEOUT
    assert "timed out after 1s" in result.error_text
    assert result.duration < 10


def test_same_package_fragments_compile_together(runner, python_toolchain) -> None:
    lesson = parse_lesson(
        dedent(
            """
            # Shapes

            ```python
            # shapes/circle.py
            # package: shapes
            def area(radius):
                return 3 * radius * radius
            ```

            ```python
            # shapes/use_circle.py
            # package: shapes
            from circle import area
            print(area(2))
            ```

            ```output
            12
            ```
            """
        ),
        lesson_id="shapes",
        path=Path("shapes.md"),
        toolchain=python_toolchain,
    )
    circle, use_circle = lesson.snippets
    assert circle.kind is SnippetKind.FRAGMENT
    assert use_circle.kind is SnippetKind.RUNNABLE

    companions = companion_sources(lesson, use_circle)
    result = runner.run(use_circle, companions)

    assert companions == (circle,)
    assert result.state is SnippetState.RAN
    assert result.stdout == "12\n"


def test_companions_exclude_other_packages_and_runnables(python_toolchain) -> None:
    lesson = parse_lesson(
        dedent(
            """
            ```python
            # package: a
            X = 1
            ```

            ```python
            # package: b
            Y = 2
            ```

            ```python
            # package: a
            print(X)
            ```

            ```python
            # package: a
            print("other main")
            ```
            """
        ),
        lesson_id="packages",
        path=Path("packages.md"),
        toolchain=python_toolchain,
    )

    assert [snippet.index for snippet in companion_sources(lesson, lesson.snippets[2])] == [0]
    assert companion_sources(lesson, _snippet("print(1)\n")) == ()


def test_support_sources_are_added_to_every_unit(tmp_path: Path, python_toolchain) -> None:
    helpers = tmp_path / "helpers.py"
    helpers.write_text('def greet():\n    return "hi"\n', encoding="utf-8")
    toolchain = python_toolchain.model_copy(update={"support_sources": [helpers]})
    runner = SnippetRunner(toolchain)

    result = runner.run(_snippet("from helpers import greet\nprint(greet())\n"))

    assert result.state is SnippetState.RAN
    assert result.stdout == "hi\n"


def test_missing_support_source_is_a_toolchain_error(tmp_path: Path, python_toolchain) -> None:
    toolchain = python_toolchain.model_copy(update={"support_sources": [tmp_path / "absent.py"]})

    result = SnippetRunner(toolchain).run(_snippet("print(1)\n"))

    assert result.state is SnippetState.ERRORED
    assert "Cannot read support source" in result.error_text


def test_snippets_do_not_share_a_working_directory(runner) -> None:
    writer = _snippet('open("state.txt", "w").close()\nprint("wrote")\n')
    reader = _snippet('import os\nprint(os.path.exists("state.txt"))\n', index=1)

    assert runner.run(writer).stdout == "wrote\n"
    assert runner.run(reader).stdout == "False\n"


def test_missing_binary_is_reported_as_compile_error(python_toolchain) -> None:
    toolchain = python_toolchain.model_copy(update={"run_command": ["lessoncheck-no-such-binary", "{main}"]})

    result = SnippetRunner(toolchain).run(_snippet("print(1)\n"))

    assert result.state is SnippetState.ERRORED
    assert result.error_kind is ErrorKind.COMPILE_ERROR
    assert "not found" in result.error_text


def test_malformed_and_skipped_snippets_are_not_run(runner) -> None:
    malformed = runner.run(_snippet("", SnippetKind.MALFORMED, error="line 1: unterminated code fence"))
    skipped = runner.run(_snippet("print(1)\n", attributes=("skip",)))

    assert malformed.state is SnippetState.SKIPPED
    assert malformed.error_kind is ErrorKind.EXTRACTION_ERROR
    assert "unterminated" in malformed.error_text
    assert skipped.state is SnippetState.SKIPPED
    assert not skipped.executed


def test_unchecked_fragment_is_skipped(python_toolchain) -> None:
    toolchain = python_toolchain.model_copy(update={"check_fragments": False})

    result = SnippetRunner(toolchain).run(_snippet("X = 1\n", SnippetKind.FRAGMENT))

    assert result.state is SnippetState.SKIPPED


def test_kotlin_plan_and_command_expansion(kotlin_toolchain, tmp_path: Path) -> None:
    runner = SnippetRunner(kotlin_toolchain, timeout=5.0, compile_timeout=60.0)
    runnable = Snippet(
        lesson_id="k",
        index=0,
        line=1,
        language="kotlin",
        code="fun main() = println(1)\n",
        kind=SnippetKind.RUNNABLE,
        label="HelloWorld/Main.kt",
    )

    steps = runner.plan_steps(runnable)
    assert [step.name for step in steps] == ["compile", "run"]
    assert [step.timeout for step in steps] == [60.0, 5.0]

    sources = [tmp_path / "Main.kt", tmp_path / "Cup.kt"]
    args = expand_command(steps[0].command, sources=sources, main=sources[0], workdir=tmp_path)
    assert args == [
        "kotlinc",
        str(sources[0]),
        str(sources[1]),
        "-include-runtime",
        "-d",
        f"{tmp_path}/snippet.jar",
    ]


def test_plan_sources_names_files_uniquely(kotlin_toolchain) -> None:
    runner = SnippetRunner(kotlin_toolchain)

    def make(index: int, label: str | None) -> Snippet:
        return Snippet(
            lesson_id="k",
            index=index,
            line=1,
            language="kotlin",
            code="class C\n",
            kind=SnippetKind.FRAGMENT,
            label=label,
        )

    files = runner.plan_sources(make(0, "A/Shared.kt"), [make(1, "B/Shared.kt"), make(2, None)])

    assert [source.name for source in files] == ["Shared.kt", "1_Shared.kt", "Snippet2.kt"]


def test_list_item_fence_runs_and_matches_output(runner, python_toolchain) -> None:
    text = "- Add two numbers:\n\n  ```python\n  if __name__ == \"__main__\":\n      print(1 + 1)\n  ```\n\n  ```output\n  2\n  ```\n"
    (snippet,) = extract_snippets(text, lesson_id="steps", toolchain=python_toolchain)

    result = runner.run(snippet)
    verdict = Verifier().verify(snippet, result)

    assert snippet.kind is SnippetKind.RUNNABLE
    assert result.state is SnippetState.RAN
    assert result.stdout == "2\n"
    assert verdict.state is SnippetState.PASSED
