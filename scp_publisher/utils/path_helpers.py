"""Remote path composition and validation utilities.

Everything here is pure string manipulation: no SFTP or filesystem I/O.
Remote paths are always POSIX (forward-slash) regardless of the local OS.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
from pathlib import PurePosixPath
from typing import NamedTuple

logger = logging.getLogger(__name__)

_REPEATED_SLASHES = re.compile(r"/{2,}")


class RemoteTarget(NamedTuple):
    """Where a single local file lands on the remote host."""

    directory: str  # relative to the root repository path; ensured before writing
    path: str  # full remote file path


def concat_dir(folder: str, child: str) -> str:
    """Append *child* to *folder* with a single separator.

    No separator is added when *folder* is empty or already ends with ``/``.
    """
    if folder.endswith("/") or folder == "":
        return folder + child
    return f"{folder}/{child}"


def join_remote(*parts: str) -> str:
    """Join remote path parts with exactly one ``/`` between them.

    Empty parts are skipped, so an empty root or folder never introduces a
    leading ``/`` before the first real segment::

        >>> join_remote("/srv/repo/", "/builds/", "app.jar")
        '/srv/repo/builds/app.jar'
        >>> join_remote("", "builds", "app.jar")
        'builds/app.jar'
    """
    result = ""
    for part in parts:
        if not part:
            continue
        if not result:
            result = part
            continue
        child = part.lstrip("/")
        if child:
            # "or '/'" keeps the filesystem root when result is just slashes
            result = concat_dir(result.rstrip("/") or "/", child)
    return _REPEATED_SLASHES.sub("/", result)


def to_posix(path: str | os.PathLike[str]) -> str:
    """Return *path* as a string with every ``\\`` replaced by ``/``."""
    return os.fspath(path).replace("\\", "/")


def relative_dir(workspace: str | os.PathLike[str], path: str | os.PathLike[str]) -> str:
    """Return the directory of *path* relative to *workspace*, POSIX-style.

    Returns ``""`` when *path* sits directly in the workspace or is not inside
    it at all.  A relative workspace or path is taken against the current
    directory.
    """
    ws = to_posix(workspace) or "."
    parent = posixpath.dirname(to_posix(path)) or "."
    rel = posixpath.relpath(parent, ws)
    if rel == "." or rel == ".." or rel.startswith("../"):
        return ""
    return rel


def resolve_remote_target(
    root: str,
    folder: str,
    file_name: str,
    relative: str = "",
    keep_hierarchy: bool = False,
) -> RemoteTarget:
    """Compute the remote location for one local file.

    Args:
        root: Root repository path of the site.
        folder: Destination folder (already macro-expanded).
        file_name: Local file name.
        relative: The file's directory relative to the workspace.
        keep_hierarchy: Insert *relative* between *folder* and *file_name*;
            otherwise the file lands flat in *folder*.
    """
    directory = folder.strip()
    if keep_hierarchy and relative:
        directory = join_remote(directory, to_posix(relative))
    else:
        directory = join_remote(directory)
    return RemoteTarget(directory=directory, path=join_remote(root, directory, file_name))


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units but labels them KB/MB/GB.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe for SFTP operations.

    Rejects paths that contain null bytes or path-traversal sequences (``..``).
    """
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True
