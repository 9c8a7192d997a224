"""Runbooks bundled with runbookctl, addressed as ``builtin:NAME``."""

from importlib import resources
from pathlib import Path

from runbookctl.core.exceptions import ParseError

BUILTIN_PREFIX = "builtin:"


def builtin_names() -> list[str]:
    """Names of all bundled runbooks, sorted."""
    return sorted(
        entry.name[: -len(".md")]
        for entry in resources.files(__name__).iterdir()
        if entry.name.endswith(".md")
    )


def resolve_builtin(name: str) -> Path:
    """Path of a bundled runbook.

    Raises:
        ParseError: If no bundled runbook has that name
    """
    if name not in builtin_names():
        raise ParseError(
            f"Unknown builtin runbook '{name}'",
            details={"available": ", ".join(builtin_names())},
        )
    return Path(str(resources.files(__name__) / f"{name}.md"))
