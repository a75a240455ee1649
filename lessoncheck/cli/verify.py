"""Command line entry point: ``lessoncheck verify`` and ``lessoncheck snippets``."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from lessoncheck import get_version
from lessoncheck.core.config import ENV_CONFIG_PATH, VerifyConfig, load_verify_config
from lessoncheck.core.errors import AggregationError, ConfigError, LessoncheckError
from lessoncheck.core.provenance import EventLogger
from lessoncheck.pipeline.extractor import load_lesson
from lessoncheck.pipeline.report import ConsoleSink, FileSink, ReportSink
from lessoncheck.pipeline.runtime import discover_lessons, run_verification

LOGGER = logging.getLogger("lessoncheck.cli")
EXIT_USAGE = 2

app = typer.Typer(help="Run the code listings of Markdown lessons and check their declared output.")
console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger("lessoncheck").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_config(config_path: Path | None, overrides: Dict[str, Any]) -> VerifyConfig:
    load_dotenv(Path.cwd() / ".env")
    if config_path is None and os.environ.get(ENV_CONFIG_PATH):
        config_path = Path(os.environ[ENV_CONFIG_PATH])
    try:
        return load_verify_config(config_path, overrides=overrides)
    except ConfigError as exc:
        raise typer.BadParameter(str(exc), param_hint="configuration") from exc


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"lessoncheck {get_version()}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Print the installed version and exit.",
    ),
) -> None:
    """Verify lesson code listings."""


@app.command()
def verify(
    path: Path = typer.Argument(..., exists=True, help="A lesson file or a directory of lessons."),
    concurrency: int | None = typer.Option(None, "--concurrency", "-j", min=1, help="Snippets run in parallel per lesson."),
    timeout: float | None = typer.Option(None, "--timeout", min=0.001, help="Seconds each snippet may run."),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        show_default=False,
        help=f"YAML settings file (defaults to ${ENV_CONFIG_PATH} when set).",
    ),
    toolchain: str | None = typer.Option(None, "--toolchain", help="Toolchain preset, e.g. kotlin or python."),
    normalization: str | None = typer.Option(None, "--normalization", help="Output comparison: exact, trim or collapse."),
    report: Path | None = typer.Option(None, "--report", help="Also write the report to this file."),
    report_format: str | None = typer.Option(None, "--format", help="Report file format: json or jsonl."),
    events: Path | None = typer.Option(None, "--events", help="Append run events to this JSONL file."),
    quiet: bool = typer.Option(False, "--quiet", help="Only print the summary line."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Extract, run, and verify every snippet under PATH.

    Exits 0 when every snippet passed or was skipped, 1 when any failed,
    errored, or timed out, and 2 on configuration or report-writing errors.
    """

    _configure_logging(verbose)
    cfg = _load_config(
        config,
        {
            "concurrency": concurrency,
            "timeout": timeout,
            "toolchain": toolchain,
            "normalization": normalization,
            "report_path": report,
            "report_format": report_format,
            "events_path": events,
        },
    )

    try:
        event_logger = EventLogger(cfg.events_path) if cfg.events_path else None
    except OSError as exc:
        typer.echo(f"Cannot record run events: {exc}", err=True)
        raise typer.Exit(code=EXIT_USAGE) from exc

    try:
        result = run_verification(path, cfg, events=event_logger)
    except (LessoncheckError, OSError) as exc:
        typer.echo(f"Verification aborted: {exc}", err=True)
        raise typer.Exit(code=EXIT_USAGE) from exc

    sinks: List[ReportSink] = [ConsoleSink(console, quiet=quiet)]
    if cfg.report_path is not None:
        sinks.append(FileSink(cfg.report_path, fmt=cfg.report_format))
    try:
        for sink in sinks:
            sink.emit(result)
    except AggregationError as exc:
        typer.echo(f"Report could not be written: {exc}", err=True)
        raise typer.Exit(code=EXIT_USAGE) from exc

    if cfg.report_path is not None and not quiet:
        console.print(f"[dim]Report written to {cfg.report_path}[/dim]")
    raise typer.Exit(code=result.exit_code)


@app.command()
def snippets(
    path: Path = typer.Argument(..., exists=True, help="A lesson file or a directory of lessons."),
    config: Path | None = typer.Option(None, "--config", "-c", show_default=False, help="YAML settings file."),
    toolchain: str | None = typer.Option(None, "--toolchain", help="Toolchain preset, e.g. kotlin or python."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON instead of a table."),
) -> None:
    """List the snippets found under PATH without running them."""

    _configure_logging(False)
    cfg = _load_config(config, {"toolchain": toolchain})
    root = path.expanduser().resolve()
    rows: List[Dict[str, Any]] = []
    for lesson_path in discover_lessons(path, cfg.lesson_pattern):
        try:
            lesson = load_lesson(lesson_path, toolchain=cfg.toolchain, root=root, include_untagged=cfg.include_untagged)
        except (OSError, UnicodeDecodeError) as exc:
            typer.echo(f"Cannot read lesson {lesson_path}: {exc}", err=True)
            raise typer.Exit(code=EXIT_USAGE) from exc
        for snippet in lesson.snippets:
            rows.append(
                {
                    "lesson": snippet.lesson_id,
                    "index": snippet.index,
                    "line": snippet.line,
                    "kind": snippet.kind.value,
                    "label": snippet.label,
                    "package": snippet.package,
                    "expects_output": snippet.has_expectation,
                    "error": snippet.error,
                }
            )

    if as_json:
        typer.echo(json.dumps(rows, indent=2, ensure_ascii=False))
        return

    table = Table("Lesson", "#", "Line", "Kind", "Source", "Output")
    for row in rows:
        table.add_row(
            row["lesson"],
            str(row["index"]),
            str(row["line"]),
            row["kind"],
            row["label"] or "-",
            "yes" if row["expects_output"] else "no",
        )
    console.print(table)
    console.print(f"[dim]{len(rows)} snippet(s)[/dim]")


if __name__ == "__main__":
    app()
