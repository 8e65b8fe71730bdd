"""
Core package for the PKE invocation workflow engine.

The engine gates the five course-authoring invocations, packages their
context, grades the evidence behind generated content, and records the
audit trail. HTTP routing lives in ``apps.authoring_api``.
"""

from importlib import metadata


def get_version() -> str:
    """Return the installed project version."""
    try:
        return metadata.version("pke-engine")
    except metadata.PackageNotFoundError:
        return "0.0.0"


__all__ = ["get_version"]
