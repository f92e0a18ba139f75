"""Live mirroring of a build's console log to ``<folder>/console.html``.

The log source has no completion callback, so the streamer polls: check
whether the log is complete, copy everything written since the last read,
and sleep for a short interval if it was not complete.  The remote file is a
single ``<pre>...</pre>`` fragment.

Mirroring is best effort: every failure is logged and never changes the
build result.
"""

from __future__ import annotations

import html
import logging
import queue
import threading
import time
from pathlib import Path
from typing import Callable, Protocol

import paramiko

from scp_publisher.connection import RemoteSite
from scp_publisher.credentials import Authenticator
from scp_publisher.exceptions import PublisherError
from scp_publisher.transfer import Uploader
from scp_publisher.utils.path_helpers import join_remote

logger = logging.getLogger(__name__)

CONSOLE_FILE_NAME = "console.html"
POLL_INTERVAL = 0.5  # seconds between polls of an incomplete log

# ---------------------------------------------------------------------------
# Log sources
# ---------------------------------------------------------------------------


class LogSource(Protocol):
    """A build log that can be read incrementally as HTML."""

    def read_html(self, position: int) -> tuple[str, int]:
        """Return the HTML for everything after *position*, and the new position."""
        ...

    def is_complete(self) -> bool:
        """Return True once the build has finished writing the log."""
        ...


class BuildLog:
    """Thread-safe in-memory log the host appends to while the build runs."""

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._length = 0
        self._complete = False
        self._lock = threading.Lock()

    def write(self, text: str) -> None:
        with self._lock:
            if self._complete:
                raise ValueError("Cannot write to a completed build log")
            self._parts.append(text)
            self._length += len(text)

    def mark_complete(self) -> None:
        with self._lock:
            self._complete = True

    def is_complete(self) -> bool:
        with self._lock:
            return self._complete

    def read_html(self, position: int) -> tuple[str, int]:
        with self._lock:
            text = "".join(self._parts)
            length = self._length
        return html.escape(text[position:], quote=False), length


class FileLogSource:
    """Tails a log file on the local disk.

    *is_complete* tells whether the writer is done; without it the file is
    treated as an already finished log.  Until the log is complete only whole
    lines are consumed, so a multi-byte character is never split.
    """

    def __init__(self, path: str | Path, is_complete: Callable[[], bool] | None = None) -> None:
        self._path = Path(path)
        self._is_complete = is_complete

    def is_complete(self) -> bool:
        return True if self._is_complete is None else bool(self._is_complete())

    def read_html(self, position: int) -> tuple[str, int]:
        complete = self.is_complete()
        try:
            with open(self._path, "rb") as fh:
                fh.seek(position)
                data = fh.read()
        except FileNotFoundError:
            return "", position
        if not complete:
            end = data.rfind(b"\n")
            data = data[: end + 1] if end >= 0 else b""
        text = data.decode("utf-8", errors="replace")
        return html.escape(text, quote=False), position + len(data)


# ---------------------------------------------------------------------------
# ConsoleStreamHandle
# ---------------------------------------------------------------------------


class ConsoleStreamHandle:
    """Handle on a running console streamer.

    The outcome (True if the log was copied) arrives through a queue, so the
    orchestrator can either wait for it or simply drop the handle.
    """

    def __init__(self, thread: threading.Thread, results: "queue.Queue[bool]") -> None:
        self._thread = thread
        self._results = results
        self._result: bool | None = None

    @property
    def name(self) -> str:
        return self._thread.name

    def done(self) -> bool:
        return self._result is not None or not self._thread.is_alive()

    def wait(self, timeout: float | None = None) -> bool | None:
        """Block until the streamer finishes; None if *timeout* expires first."""
        if self._result is None:
            try:
                self._result = self._results.get(timeout=timeout)
            except queue.Empty:
                return None
        return self._result


# ---------------------------------------------------------------------------
# ConsoleStreamer
# ---------------------------------------------------------------------------


class ConsoleStreamer:
    """Copies a build log to a site while the build is still writing it.

    Always works on its own session, which it opens and releases itself.
    """

    def __init__(
        self,
        site: RemoteSite,
        auth: Authenticator,
        dest_folder: str,
        log_source: LogSource,
        poll_interval: float = POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._site = site
        self._auth = auth
        self._dest_folder = dest_folder.strip()
        self._log = log_source
        self._poll_interval = poll_interval
        self._sleep = sleep
        self.cycles = 0

    @property
    def remote_path(self) -> str:
        return join_remote(self._site.root_repository_path, self._dest_folder, CONSOLE_FILE_NAME)

    def run(self) -> bool:
        """Stream the log until it is complete; returns False on failure."""
        session = None
        try:
            session = self._site.connect(self._auth)
            self._site.verify_root(session)
            uploader = Uploader(session, self._site.root_repository_path)
            with uploader.open_stream(self._dest_folder, CONSOLE_FILE_NAME) as remote:
                remote.write(b"<pre>\n")
                position = 0
                while True:
                    # Checked before reading so nothing written before
                    # completion is missed by the last read.
                    complete = self._log.is_complete()
                    text, position = self._log.read_html(position)
                    if text:
                        remote.write(text.encode("utf-8"))
                    self.cycles += 1
                    if complete:
                        break
                    self._sleep(self._poll_interval)
                remote.write(b"</pre>\n")
                remote.flush()
            logger.info("Console log copied to %s (%d polls)", self.remote_path, self.cycles)
            return True
        except (PublisherError, OSError, paramiko.SSHException) as exc:
            logger.warning("Failed to upload console log: %s", exc)
            return False
        finally:
            self._site.disconnect(session)

    def start(self) -> ConsoleStreamHandle:
        """Run :meth:`run` on a daemon thread and return its handle."""
        results: "queue.Queue[bool]" = queue.Queue(maxsize=1)

        def _target() -> None:
            ok = False
            try:
                ok = self.run()
            except Exception:
                logger.exception("Unexpected error while copying console log")
            finally:
                results.put(ok)

        thread = threading.Thread(
            target=_target,
            name=f"console-{self._site.hostname}-{self._dest_folder or 'root'}",
            daemon=True,
        )
        thread.start()
        return ConsoleStreamHandle(thread, results)
