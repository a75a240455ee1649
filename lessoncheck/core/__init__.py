"""
Configuration, error types, and run-event logging for lessoncheck.

These modules have no dependency on the pipeline so the CLI can validate
settings before any lesson is loaded.
"""

from .config import ToolchainConfig, VerifyConfig, load_verify_config, resolve_toolchain
from .errors import AggregationError, ConfigError, ExtractionError, LessoncheckError, ToolchainError
from .provenance import EventLogger, RunEvent

__all__ = [
    "AggregationError",
    "ConfigError",
    "EventLogger",
    "ExtractionError",
    "LessoncheckError",
    "RunEvent",
    "ToolchainConfig",
    "ToolchainError",
    "VerifyConfig",
    "load_verify_config",
    "resolve_toolchain",
]
