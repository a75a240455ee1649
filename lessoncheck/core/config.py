"""
Typed configuration for lessoncheck runs.

Settings are layered: model defaults, then an optional YAML file, then
``LESSONCHECK_*`` environment variables, then explicit CLI overrides.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import ConfigError

NormalizationPolicy = Literal["exact", "trim", "collapse"]
ReportFormat = Literal["json", "jsonl"]

ENV_CONFIG_PATH = "LESSONCHECK_CONFIG"
ENV_OVERRIDES: Dict[str, str] = {
    "LESSONCHECK_TOOLCHAIN": "toolchain",
    "LESSONCHECK_TIMEOUT": "timeout",
    "LESSONCHECK_COMPILE_TIMEOUT": "compile_timeout",
    "LESSONCHECK_CONCURRENCY": "concurrency",
    "LESSONCHECK_NORMALIZATION": "normalization",
}

TOOLCHAIN_PRESETS: Dict[str, Dict[str, Any]] = {
    "kotlin": {
        "name": "kotlin",
        "languages": ["kotlin", "kt"],
        "source_suffix": ".kt",
        "comment_prefix": "//",
        "entry_point_pattern": r"^fun\s+main\s*\(",
        "package_pattern": r"^\s*package\s+([A-Za-z_][\w.]*)",
        "compile_command": ["kotlinc", "{sources}", "-include-runtime", "-d", "{workdir}/snippet.jar"],
        "run_command": ["java", "-jar", "{workdir}/snippet.jar"],
        "check_command": ["kotlinc", "{sources}", "-d", "{workdir}/classes"],
    },
    "python": {
        "name": "python",
        "languages": ["python", "py", "python3"],
        "source_suffix": ".py",
        "comment_prefix": "#",
        "entry_point_pattern": r"^(?:if\s+__name__\s*==\s*[\"']__main__[\"']\s*:|print\()",
        "package_pattern": r"^#\s*package:\s*([A-Za-z_][\w.]*)",
        "compile_command": None,
        "run_command": ["{python}", "{main}"],
        "check_command": ["{python}", "-m", "py_compile", "{sources}"],
        "env": {"PYTHONIOENCODING": "utf-8"},
    },
}


def _default_concurrency() -> int:
    return max(1, min(4, os.cpu_count() or 1))


class ToolchainConfig(BaseModel):
    """How snippets of one language are compiled, type-checked, and run."""

    model_config = ConfigDict(extra="forbid")

    name: str
    languages: List[str] = Field(..., min_length=1, description="Fence language tags treated as snippets.")
    source_suffix: str = Field(..., description="File suffix used when writing snippet sources.")
    comment_prefix: str = "//"
    entry_point_pattern: str = Field(..., description="Multiline regex marking a runnable snippet.")
    package_pattern: Optional[str] = Field(default=None, description="Regex whose first group names the snippet package.")
    compile_command: Optional[List[str]] = None
    run_command: List[str] = Field(..., min_length=1)
    check_command: Optional[List[str]] = None
    check_fragments: bool = True
    support_sources: List[Path] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("languages", mode="before")
    @classmethod
    def normalize_languages(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.split(",")
        if isinstance(value, list):
            return [item.strip().lower() for item in value if isinstance(item, str) and item.strip()]
        return value

    @field_validator("source_suffix")
    @classmethod
    def dotted_suffix(cls, value: str) -> str:
        value = value.strip()
        return value if value.startswith(".") else f".{value}"

    @field_validator("entry_point_pattern", "package_pattern")
    @classmethod
    def compilable_pattern(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            re.compile(value, re.MULTILINE)
        except re.error as exc:
            raise ValueError(f"invalid regular expression {value!r}: {exc}") from exc
        return value

    @field_validator("support_sources", mode="before")
    @classmethod
    def coerce_paths(cls, value: Any) -> Any:
        if isinstance(value, (str, Path)):
            value = [value]
        if isinstance(value, list):
            return [Path(item).expanduser() for item in value]
        return value

    @property
    def entry_point_regex(self) -> re.Pattern[str]:
        return re.compile(self.entry_point_pattern, re.MULTILINE)

    @property
    def package_regex(self) -> Optional[re.Pattern[str]]:
        if not self.package_pattern:
            return None
        return re.compile(self.package_pattern, re.MULTILINE)

    def accepts(self, language: str) -> bool:
        return language.strip().lower() in self.languages


class VerifyConfig(BaseModel):
    """Top-level settings for a verification run."""

    model_config = ConfigDict(extra="forbid")

    toolchain: ToolchainConfig = Field(default_factory=lambda: resolve_toolchain("kotlin"))
    timeout: float = Field(default=10.0, gt=0, description="Seconds a snippet may run before it is killed.")
    compile_timeout: float = Field(default=120.0, gt=0, description="Seconds allowed for compiling or type-checking.")
    concurrency: int = Field(default_factory=_default_concurrency, ge=1, le=64)
    normalization: NormalizationPolicy = "trim"
    lesson_pattern: str = "*.md"
    include_untagged: bool = False
    report_path: Optional[Path] = None
    report_format: ReportFormat = "json"
    events_path: Optional[Path] = None

    @model_validator(mode="before")
    @classmethod
    def expand_toolchain(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = dict(data)
        toolchain = payload.get("toolchain")
        if isinstance(toolchain, str):
            payload["toolchain"] = resolve_toolchain(toolchain)
        elif isinstance(toolchain, dict) and "preset" in toolchain:
            overrides = dict(toolchain)
            preset = str(overrides.pop("preset")).strip().lower()
            if preset not in TOOLCHAIN_PRESETS:
                raise ValueError(_unknown_toolchain_message(preset))
            payload["toolchain"] = {**TOOLCHAIN_PRESETS[preset], **overrides}
        return payload

    @field_validator("normalization", mode="before")
    @classmethod
    def lower_policy(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


def _unknown_toolchain_message(name: str) -> str:
    valid = ", ".join(sorted(TOOLCHAIN_PRESETS))
    return f"Unknown toolchain '{name}'. Valid options: {valid}"


def resolve_toolchain(name: str) -> ToolchainConfig:
    """Return the preset toolchain registered under ``name``."""
    key = name.strip().lower()
    if key not in TOOLCHAIN_PRESETS:
        raise ConfigError(_unknown_toolchain_message(name))
    return ToolchainConfig.model_validate(TOOLCHAIN_PRESETS[key])


def read_yaml_file(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return a dictionary."""
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Expected mapping at root of {path}, received {type(data)}")
    return data


def _resolve_config_path(value: Any, base_dir: Path) -> str:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    return str(path)


def _absolutize_paths(data: Dict[str, Any], base_dir: Path) -> None:
    for key in ("report_path", "events_path"):
        if data.get(key):
            data[key] = _resolve_config_path(data[key], base_dir)
    toolchain = data.get("toolchain")
    if isinstance(toolchain, dict) and toolchain.get("support_sources"):
        sources = toolchain["support_sources"]
        if isinstance(sources, (str, Path)):
            sources = [sources]
        toolchain["support_sources"] = [_resolve_config_path(item, base_dir) for item in sources]


def env_overrides(environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Collect config overrides from ``LESSONCHECK_*`` environment variables."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for env_key, field in ENV_OVERRIDES.items():
        value = environ.get(env_key)
        if value is not None and value.strip():
            overrides[field] = value.strip()
    return overrides


def load_verify_config(
    path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> VerifyConfig:
    """Build the run configuration from YAML, environment, and CLI overrides.

    ``None`` values in ``overrides`` are ignored so CLI options that were not
    passed do not clobber the file or environment.
    """
    data: Dict[str, Any] = {}
    source = "defaults"
    if path is not None:
        path = path.expanduser().resolve()
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        data = read_yaml_file(path)
        _absolutize_paths(data, path.parent)
        source = str(path)

    data.update(env_overrides(environ))
    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    try:
        return VerifyConfig.model_validate(data)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in error['loc']) or 'config'}: {error['msg']}" for error in exc.errors()
        )
        raise ConfigError(f"Invalid lessoncheck config ({source}): {details}") from exc
    except ValueError as exc:
        raise ConfigError(f"Invalid lessoncheck config ({source}): {exc}") from exc


__all__ = [
    "ENV_CONFIG_PATH",
    "NormalizationPolicy",
    "ReportFormat",
    "TOOLCHAIN_PRESETS",
    "ToolchainConfig",
    "VerifyConfig",
    "env_overrides",
    "load_verify_config",
    "read_yaml_file",
    "resolve_toolchain",
]
