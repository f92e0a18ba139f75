"""Race-tolerant remote ``mkdir -p`` over SFTP.

Several build agents may publish to the same site at once and race on shared
intermediate directories.  A failed ``mkdir`` is therefore not an error by
itself: the segment is stat'ed again and accepted if it now exists as a
directory.  Nothing is cached between calls; every call re-verifies every
segment.
"""

from __future__ import annotations

import errno
import logging
import stat

import paramiko

from scp_publisher.connection import Session
from scp_publisher.exceptions import PathConflictError, TransportError
from scp_publisher.utils.path_helpers import join_remote

logger = logging.getLogger(__name__)


def _stat_or_none(sftp: paramiko.SFTPClient, path: str) -> paramiko.SFTPAttributes | None:
    """Return the attributes of *path*, or None if it does not exist."""
    try:
        return sftp.stat(path)
    except OSError as exc:
        if isinstance(exc, FileNotFoundError) or exc.errno == errno.ENOENT:
            return None
        logger.error("Error getting stat of directory:%s:%s", path, exc)
        raise TransportError(f"Error getting stat of directory {path}: {exc}") from exc
    except paramiko.SSHException as exc:
        raise TransportError(f"Error getting stat of directory {path}: {exc}") from exc


def ensure_directories(session: Session, root: str, relative_path: str) -> str:
    """Create every missing segment of *relative_path* under *root*.

    Returns the full remote directory path.

    Raises:
        PathConflictError: A segment exists but is not a directory.
        TransportError: A stat failed for a reason other than "not found", or
            a segment could not be created and still does not exist.
    """
    sftp = session.sftp
    current = root
    for segment in [s for s in relative_path.split("/") if s]:
        candidate = join_remote(current, segment)
        attrs = _stat_or_none(sftp, candidate)
        if attrs is None:
            logger.info("Trying to create %s", candidate)
            try:
                sftp.mkdir(candidate)
            except (OSError, paramiko.SSHException) as exc:
                # Another uploader may have created it in the meantime.
                logger.debug("mkdir %s failed (%s); checking again", candidate, exc)
            attrs = _stat_or_none(sftp, candidate)
            if attrs is None:
                raise TransportError(f"Could not create remote directory {candidate}")
        if attrs.st_mode is None or not stat.S_ISDIR(attrs.st_mode):
            raise PathConflictError(f"{candidate} is not a directory", path=candidate)
        current = candidate
    return current
