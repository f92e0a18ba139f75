"""Upload engine: copies workspace files and directory trees over SFTP.

- Directory entries are uploaded recursively; nesting below the directory is
  always mirrored on the remote side.
- Remote directories are created on demand (see :mod:`scp_publisher.directories`).
- Existing remote files are overwritten in place.  A failed transfer may leave
  a truncated remote file behind; it is reported, not repaired.
- A :class:`PathConflictError` fails only the affected file: its item is
  marked FAILED and sibling files keep uploading.  Every other error marks
  the item FAILED and aborts the call; items started so far stay in the
  caller's results list.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import IO, Callable

import paramiko

from scp_publisher.connection import Session
from scp_publisher.directories import ensure_directories
from scp_publisher.exceptions import (
    ConnectionError,
    PathConflictError,
    PathError,
    TransportError,
)
from scp_publisher.utils.path_helpers import (
    RemoteTarget,
    human_readable_size,
    join_remote,
    relative_dir,
    resolve_remote_target,
    validate_remote_path,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024  # 256 KB per read/write call

# ---------------------------------------------------------------------------
# TransferItem
# ---------------------------------------------------------------------------


class TransferStatus(Enum):
    """Lifecycle state of a TransferItem."""

    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETE = auto()
    FAILED = auto()


@dataclass
class TransferItem:
    """One local file on its way to the remote host."""

    source_path: str
    dest_path: str
    file_size: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    bytes_transferred: int = 0
    status: TransferStatus = TransferStatus.PENDING
    error: str | None = None
    start_time: float | None = None
    end_time: float | None = None

    @property
    def progress_fraction(self) -> float:
        """Fraction of the file transferred (0.0 – 1.0)."""
        if self.file_size <= 0:
            return 1.0
        return min(1.0, self.bytes_transferred / self.file_size)

    @property
    def speed_mbps(self) -> float:
        """Transfer speed in MB/s, or 0 if not yet started."""
        if self.start_time is None or self.bytes_transferred == 0:
            return 0.0
        elapsed = (self.end_time or time.monotonic()) - self.start_time
        if elapsed <= 0:
            return 0.0
        return (self.bytes_transferred / elapsed) / (1024 * 1024)


ItemCallback = Callable[[TransferItem], None]


# ---------------------------------------------------------------------------
# Uploader
# ---------------------------------------------------------------------------


class Uploader:
    """Uploads local entries below a site's root repository path.

    The root must already have been verified (``RemoteSite.verify_root``).
    """

    def __init__(
        self,
        session: Session,
        root: str,
        workspace: str | Path | None = None,
        on_progress: ItemCallback | None = None,
        on_item_complete: ItemCallback | None = None,
    ) -> None:
        """Bind the uploader to a session.

        Args:
            session: An open :class:`Session`.
            root: The site's root repository path.
            workspace: Workspace root, needed to keep hierarchy.
            on_progress: Called after each chunk is written.
            on_item_complete: Called when a file finishes (any status).
        """
        self._session = session
        self._root = root
        self._workspace = workspace
        self.on_progress = on_progress
        self.on_item_complete = on_item_complete

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def upload(
        self,
        dest_folder: str,
        local_path: str | Path,
        keep_hierarchy: bool = False,
        results: list[TransferItem] | None = None,
    ) -> list[TransferItem]:
        """Upload a file or a directory tree into *dest_folder*.

        With *keep_hierarchy*, the entry's directory relative to the
        workspace is inserted below *dest_folder* once, at the top.

        Returns one :class:`TransferItem` per file.  When *results* is given,
        each item is also appended to it as its transfer starts, so a caller
        still holds the finished and failed items if the call raises.

        Raises:
            ConnectionError: The session is closed.
            PathError: The destination folder contains ``..`` or a NUL byte.
            TransportError: A stat, mkdir or write failed.
        """
        if self._session.closed:
            raise ConnectionError(f"Connection to {self._session.label} is not established")

        path = Path(local_path)
        folder = dest_folder.strip()
        if keep_hierarchy and self._workspace is not None:
            folder = join_remote(folder, relative_dir(self._workspace, path))

        # The site root is administrator-configured; only the folder is checked.
        if not validate_remote_path(folder):
            raise PathError(f"Invalid remote destination folder: {folder!r}")

        items: list[TransferItem] = []
        try:
            self._upload_entry(folder, path, items)
        finally:
            if results is not None:
                results.extend(items)
        return items

    def open_stream(self, dest_folder: str, file_name: str) -> paramiko.SFTPFile:
        """Open ``dest_folder/file_name`` for writing, creating the folder.

        The caller owns (and must close) the returned file.
        """
        target = resolve_remote_target(self._root, dest_folder, file_name)
        ensure_directories(self._session, self._root, target.directory)
        try:
            return self._session.sftp.open(target.path, "wb")
        except (OSError, paramiko.SSHException) as exc:
            raise TransportError(f"Could not open {target.path} for writing: {exc}") from exc

    # ------------------------------------------------------------------
    # Recursion
    # ------------------------------------------------------------------

    def _upload_entry(self, folder: str, path: Path, items: list[TransferItem]) -> None:
        if path.is_dir():
            sub_folder = join_remote(folder, path.name)
            for child in sorted(path.iterdir()):
                self._upload_entry(sub_folder, child, items)
            logger.info("Directory upload complete: %s → %s", path, sub_folder)
            return
        target = resolve_remote_target(self._root, folder, path.name)
        try:
            file_size = path.stat().st_size
        except OSError:
            file_size = 0
        item = TransferItem(source_path=str(path), dest_path=target.path, file_size=file_size)
        items.append(item)
        self._upload_file(path, target, item)

    def _upload_file(self, path: Path, target: RemoteTarget, item: TransferItem) -> TransferItem:
        file_size = item.file_size
        item.status = TransferStatus.IN_PROGRESS
        item.start_time = time.monotonic()
        try:
            try:
                ensure_directories(self._session, self._root, target.directory)
            except PathConflictError as exc:
                item.status = TransferStatus.FAILED
                item.error = str(exc)
                logger.error("Cannot upload %s: %s", path, exc)
                return item
            except (TransportError, ConnectionError) as exc:
                item.status = TransferStatus.FAILED
                item.error = str(exc)
                raise

            logger.info(
                "uploading file: '%s' (%s)", target.path, human_readable_size(file_size)
            )
            try:
                with open(path, "rb") as local_fh:
                    with self._session.sftp.open(target.path, "wb") as remote_fh:
                        # Pipelined mode keeps many write requests in flight;
                        # close() still waits for every ACK.
                        remote_fh.set_pipelined(True)
                        self._stream_with_progress(local_fh, remote_fh, item)
            except (OSError, paramiko.SSHException) as exc:
                item.status = TransferStatus.FAILED
                item.error = str(exc)
                raise TransportError(
                    f"Failed to upload {path} to {target.path}: {exc}"
                ) from exc

            item.status = TransferStatus.COMPLETE
            return item
        finally:
            item.end_time = time.monotonic()
            if self.on_item_complete:
                try:
                    self.on_item_complete(item)
                except Exception:
                    logger.exception("Exception in on_item_complete callback")

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _stream_with_progress(self, src: IO[bytes], dst: IO[bytes], item: TransferItem) -> None:
        """Stream bytes from *src* to *dst* in chunks, updating *item*."""
        while True:
            chunk = src.read(CHUNK_SIZE)
            if not chunk:
                break
            dst.write(chunk)
            item.bytes_transferred += len(chunk)
            if self.on_progress:
                try:
                    self.on_progress(item)
                except Exception:
                    logger.exception("Exception in on_progress callback")
