"""Workspace file enumeration for upload entries.

Source patterns are Ant-style includes relative to the workspace root, several
of them separated by commas (``build/libs/*.jar, docs/**/*.html``).

- A pattern containing a wildcard matches regular files only.
- A literal pattern matches the named file, or the named directory itself
  (which the uploader then copies recursively).
"""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

_WILDCARDS = ("*", "?", "[")


def split_patterns(pattern: str) -> list[str]:
    """Split a comma-separated include list into individual patterns."""
    return [p.strip().replace("\\", "/") for p in pattern.split(",") if p.strip()]


def _has_wildcard(pattern: str) -> bool:
    return any(token in pattern for token in _WILDCARDS)


def list_workspace_files(workspace: Path, pattern: str) -> list[Path]:
    """Return the workspace entries matching *pattern*, sorted and de-duplicated."""
    workspace = Path(workspace)
    found: dict[Path, None] = {}
    for include in split_patterns(pattern):
        include = include.lstrip("/")
        if include.endswith("/"):
            # Ant shorthand: "dir/" means "dir/**"
            include = include.rstrip("/")
            if not include.endswith("**"):
                include += "/**"
        if include == "**" or include.endswith("/**"):
            # pathlib's trailing "**" yields directories only
            include += "/*"
        if _has_wildcard(include):
            for match in sorted(workspace.glob(include)):
                if match.is_file():
                    found.setdefault(match)
        else:
            candidate = workspace / include
            if candidate.exists():
                found.setdefault(candidate)
    logger.debug("Pattern %r matched %d entries in %s", pattern, len(found), workspace)
    return list(found)


def _explain(workspace: Path, include: str) -> str:
    existing: list[str] = []
    for segment in [s for s in include.split("/") if s]:
        if _has_wildcard(segment):
            break
        prefix = "/".join(existing + [segment])
        if not (workspace / prefix).exists():
            if existing:
                return (
                    f"'{include}' doesn't match anything: "
                    f"'{'/'.join(existing)}' exists but not '{prefix}'"
                )
            return f"'{include}' doesn't match anything: '{prefix}' does not exist"
        existing.append(segment)
    return f"'{include}' doesn't match anything"


def describe_no_match(workspace: Path, pattern: str) -> str | None:
    """Explain why *pattern* matched nothing, or return None if it matches.

    Walks the literal (wildcard-free) prefix of each include and reports the
    first segment that does not exist, e.g.::

        'build/libz/*.jar' doesn't match anything: 'build' exists but not 'build/libz'
    """
    workspace = Path(workspace)
    if not workspace.is_dir():
        return f"Workspace {workspace} does not exist"

    messages = [
        _explain(workspace, include)
        for include in split_patterns(pattern)
        if not list_workspace_files(workspace, include)
    ]
    return "\n".join(messages) or None
