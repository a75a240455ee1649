"""Execute snippets in throwaway toolchain processes.

Every snippet gets its own temporary directory and its own subprocesses. A
runnable snippet is compiled (when the toolchain has a compile step) and run;
a fragment is only type-checked. Each step is bounded by a timeout, and a step
that overruns has its whole process group killed.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from lessoncheck.core.config import ToolchainConfig
from lessoncheck.core.errors import ToolchainError

from .models import ErrorKind, ExecutionResult, Lesson, OutputCapture, Snippet, SnippetKind, SnippetState

LOGGER = logging.getLogger(__name__)

COMPILE_STEP = "compile"
CHECK_STEP = "check"
RUN_STEP = "run"


@dataclass(frozen=True)
class SourceFile:
    name: str
    text: str


@dataclass(frozen=True)
class _Step:
    name: str
    command: Tuple[str, ...]
    timeout: float
    failure: ErrorKind


def companion_sources(lesson: Lesson, snippet: Snippet) -> Tuple[Snippet, ...]:
    """Other fragments of the lesson that declare the same package as ``snippet``.

    They are compiled together with ``snippet`` as one compilation unit.
    """
    if not snippet.package:
        return ()
    return tuple(
        other
        for other in lesson.snippets
        if other.index != snippet.index
        and other.package == snippet.package
        and other.kind is SnippetKind.FRAGMENT
        and not other.skip_requested
    )


def expand_command(template: Sequence[str], *, sources: Sequence[Path], main: Path, workdir: Path) -> List[str]:
    """Fill the ``{sources}``, ``{main}``, ``{workdir}`` and ``{python}`` placeholders."""
    args: List[str] = []
    for token in template:
        if token == "{sources}":
            args.extend(str(path) for path in sources)
            continue
        value = (
            token.replace("{sources}", " ".join(str(path) for path in sources))
            .replace("{main}", str(main))
            .replace("{workdir}", str(workdir))
            .replace("{python}", sys.executable)
        )
        args.append(value)
    return args


def _terminate(proc: subprocess.Popen) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:  # pragma: no cover - no process groups outside POSIX
        proc.kill()


class SnippetRunner:
    """Runs one snippet at a time; safe to share between worker threads."""

    def __init__(self, toolchain: ToolchainConfig, *, timeout: float = 10.0, compile_timeout: float = 120.0):
        self.toolchain = toolchain
        self.timeout = timeout
        self.compile_timeout = compile_timeout

    # ============== Planning ==============

    def plan_steps(self, snippet: Snippet) -> Optional[List[_Step]]:
        """Return the commands needed for ``snippet``, or None when it is skipped."""
        toolchain = self.toolchain
        if snippet.kind is SnippetKind.MALFORMED:
            return None
        if snippet.kind is SnippetKind.FRAGMENT:
            if not toolchain.check_fragments or not toolchain.check_command:
                return None
            return [_Step(CHECK_STEP, tuple(toolchain.check_command), self.compile_timeout, ErrorKind.COMPILE_ERROR)]
        if snippet.kind is SnippetKind.RUNNABLE:
            steps: List[_Step] = []
            if toolchain.compile_command:
                steps.append(
                    _Step(COMPILE_STEP, tuple(toolchain.compile_command), self.compile_timeout, ErrorKind.COMPILE_ERROR)
                )
            steps.append(_Step(RUN_STEP, tuple(toolchain.run_command), self.timeout, ErrorKind.RUNTIME_ERROR))
            return steps
        raise ValueError(f"Unhandled snippet kind: {snippet.kind!r}")

    def plan_sources(self, snippet: Snippet, companions: Iterable[Snippet] = ()) -> List[SourceFile]:
        """Source files for one compilation unit; the snippet itself comes first."""
        used: set[str] = set()
        files = [SourceFile(self._file_name(snippet, used), snippet.code)]
        for companion in companions:
            files.append(SourceFile(self._file_name(companion, used), companion.code))
        for support in self.toolchain.support_sources:
            try:
                text = support.read_text(encoding="utf-8")
            except OSError as exc:
                raise ToolchainError(f"Cannot read support source {support}: {exc}") from exc
            files.append(SourceFile(self._unique(support.name, used), text))
        return files

    def _file_name(self, snippet: Snippet, used: set[str]) -> str:
        if snippet.label:
            name = snippet.label.replace("\\", "/").rsplit("/", 1)[-1]
        else:
            name = f"Snippet{snippet.index}{self.toolchain.source_suffix}"
        return self._unique(name, used)

    @staticmethod
    def _unique(name: str, used: set[str]) -> str:
        candidate = name
        counter = 1
        while candidate in used:
            candidate = f"{counter}_{name}"
            counter += 1
        used.add(candidate)
        return candidate

    # ============== Execution ==============

    def run(self, snippet: Snippet, companions: Iterable[Snippet] = ()) -> ExecutionResult:
        if snippet.kind is SnippetKind.MALFORMED:
            return ExecutionResult(
                key=snippet.key,
                state=SnippetState.SKIPPED,
                error_text=snippet.error or "malformed snippet",
                error_kind=ErrorKind.EXTRACTION_ERROR,
            )
        if snippet.skip_requested:
            return ExecutionResult(key=snippet.key, state=SnippetState.SKIPPED, error_text="skipped by fence attribute")

        steps = self.plan_steps(snippet)
        if steps is None:
            return ExecutionResult(
                key=snippet.key,
                state=SnippetState.SKIPPED,
                error_text=f"fragment not type-checked by the {self.toolchain.name} toolchain",
            )

        capture = OutputCapture()
        started = time.monotonic()
        try:
            with tempfile.TemporaryDirectory(prefix="lessoncheck-") as tmp:
                workdir = Path(tmp)
                sources = self._write_sources(workdir, self.plan_sources(snippet, companions))
                for step in steps:
                    failure = self._run_step(step, snippet, sources=sources, workdir=workdir, capture=capture)
                    if failure is not None:
                        state, kind, message = failure
                        return ExecutionResult(
                            key=snippet.key,
                            state=state,
                            executed=step.name == RUN_STEP,
                            stdout=capture.stdout_for(RUN_STEP),
                            error_text=message,
                            error_kind=kind,
                            duration=time.monotonic() - started,
                        )
        except ToolchainError as exc:
            LOGGER.error("Toolchain failure for %s: %s", snippet.describe(), exc)
            return ExecutionResult(
                key=snippet.key,
                state=SnippetState.ERRORED,
                error_text=str(exc),
                error_kind=ErrorKind.COMPILE_ERROR,
                duration=time.monotonic() - started,
            )

        return ExecutionResult(
            key=snippet.key,
            state=SnippetState.RAN,
            executed=snippet.kind is SnippetKind.RUNNABLE,
            stdout=capture.stdout_for(RUN_STEP),
            error_text=capture.stderr_text,
            duration=time.monotonic() - started,
        )

    @staticmethod
    def _write_sources(workdir: Path, files: Sequence[SourceFile]) -> List[Path]:
        paths: List[Path] = []
        for source in files:
            path = workdir / source.name
            path.write_text(source.text, encoding="utf-8")
            paths.append(path)
        return paths

    def _run_step(
        self,
        step: _Step,
        snippet: Snippet,
        *,
        sources: Sequence[Path],
        workdir: Path,
        capture: OutputCapture,
    ) -> Optional[Tuple[SnippetState, ErrorKind, str]]:
        args = expand_command(step.command, sources=sources, main=sources[0], workdir=workdir)
        LOGGER.debug("%s %s: %s", step.name, snippet.describe(), " ".join(args))
        returncode, stdout, stderr = self._execute(args, cwd=workdir, timeout=step.timeout)
        capture.record(step.name, stdout, stderr)
        if returncode is None:
            LOGGER.warning("Timed out after %.1fs during %s of %s", step.timeout, step.name, snippet.describe())
            return SnippetState.TIMEOUT, ErrorKind.TIMEOUT, f"{step.name} step timed out after {step.timeout:g}s"
        if returncode != 0:
            detail = capture.stderr_for(step.name).strip() or capture.stdout_for(step.name).strip()
            message = f"{step.name} step exited with status {returncode}"
            return SnippetState.ERRORED, step.failure, f"{message}\n{detail}" if detail else message
        return None

    def _execute(self, args: Sequence[str], *, cwd: Path, timeout: float) -> Tuple[Optional[int], bytes, bytes]:
        env = {**os.environ, **self.toolchain.env}
        try:
            proc = subprocess.Popen(
                list(args),
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except FileNotFoundError as exc:
            raise ToolchainError(f"Toolchain command not found: {args[0]}") from exc
        except OSError as exc:
            raise ToolchainError(f"Cannot start {args[0]}: {exc}") from exc

        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            _terminate(proc)
            stdout, stderr = proc.communicate()
            return None, stdout, stderr
        return proc.returncode, stdout, stderr


__all__ = ["SnippetRunner", "SourceFile", "companion_sources", "expand_command"]
