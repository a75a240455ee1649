from __future__ import annotations

from pathlib import Path
from textwrap import dedent
from typing import Callable

import pytest

from lessoncheck.core.config import ToolchainConfig, resolve_toolchain


@pytest.fixture
def kotlin_toolchain() -> ToolchainConfig:
    return resolve_toolchain("kotlin")


@pytest.fixture
def python_toolchain() -> ToolchainConfig:
    return resolve_toolchain("python")


@pytest.fixture
def write_lesson(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a dedented Markdown lesson under ``tmp_path/lessons``."""

    root = tmp_path / "lessons"

    def _write(relative: str, text: str) -> Path:
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(dedent(text).lstrip(), encoding="utf-8")
        return path

    return _write
