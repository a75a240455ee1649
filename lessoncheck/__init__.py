"""
Core package for lessoncheck.

Extracts the code listings embedded in Markdown lessons, runs them, and checks
their console output against the output the lesson claims they produce.
"""

from importlib import metadata


def get_version() -> str:
    """Return the installed project version."""
    try:
        return metadata.version("lessoncheck")
    except metadata.PackageNotFoundError:
        return "0.0.0"


__all__ = ["get_version"]
