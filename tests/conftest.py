"""Shared fixtures: an in-memory SFTP server and sessions bound to it."""

from __future__ import annotations

import errno
import posixpath
import stat
import threading
from pathlib import Path
from typing import Callable
from unittest.mock import MagicMock

import paramiko
import pytest

from scp_publisher.connection import RemoteSite, Session
from scp_publisher.credentials import PasswordAuth

ROOT = "/srv/repo"


# ---------------------------------------------------------------------------
# Fake SFTP
# ---------------------------------------------------------------------------


class FakeRemoteFile:
    """Write handle returned by :meth:`FakeSFTP.open`."""

    def __init__(self, server: "FakeSFTP", path: str) -> None:
        self._server = server
        self.path = path
        self.pipelined = False
        self.closed = False

    def set_pipelined(self, pipelined: bool = True) -> None:
        self.pipelined = pipelined

    def write(self, data: bytes) -> None:
        if self.closed:
            raise OSError("write on closed file")
        with self._server.lock:
            self._server.files[self.path] += bytes(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeRemoteFile":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class FakeSFTP:
    """Thread-safe in-memory stand-in for ``paramiko.SFTPClient``.

    Only the calls the publisher makes are supported: ``stat``, ``mkdir``,
    ``open(path, "wb")`` and ``close``.  Paths are absolute POSIX paths.
    """

    def __init__(self, dirs: tuple[str, ...] = (ROOT,)) -> None:
        self.lock = threading.Lock()
        self.dirs: set[str] = {"/"}
        self.files: dict[str, bytes] = {}
        self.mkdir_calls: list[str] = []
        self.closed = False
        for d in dirs:
            self.add_dir(d)

    @staticmethod
    def _norm(path: str) -> str:
        return posixpath.normpath(path)

    def add_dir(self, path: str) -> None:
        path = self._norm(path)
        while path not in self.dirs:
            self.dirs.add(path)
            path = posixpath.dirname(path)

    def add_file(self, path: str, data: bytes = b"") -> None:
        path = self._norm(path)
        self.add_dir(posixpath.dirname(path))
        self.files[path] = data

    def stat(self, path: str) -> paramiko.SFTPAttributes:
        path = self._norm(path)
        attrs = paramiko.SFTPAttributes()
        with self.lock:
            if path in self.dirs:
                attrs.st_mode = stat.S_IFDIR | 0o755
                return attrs
            if path in self.files:
                attrs.st_mode = stat.S_IFREG | 0o644
                attrs.st_size = len(self.files[path])
                return attrs
        raise FileNotFoundError(errno.ENOENT, "No such file", path)

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        path = self._norm(path)
        with self.lock:
            self.mkdir_calls.append(path)
            if path in self.dirs or path in self.files:
                raise OSError("Failure")
            if posixpath.dirname(path) not in self.dirs:
                raise FileNotFoundError(errno.ENOENT, "No such file", path)
            self.dirs.add(path)

    def open(self, path: str, mode: str = "r", bufsize: int = -1) -> FakeRemoteFile:
        path = self._norm(path)
        with self.lock:
            if posixpath.dirname(path) not in self.dirs:
                raise FileNotFoundError(errno.ENOENT, "No such file", path)
            if path in self.dirs:
                raise OSError("Failure")
            self.files[path] = b""
        return FakeRemoteFile(self, path)

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_sftp() -> FakeSFTP:
    return FakeSFTP()


@pytest.fixture()
def session(fake_sftp: FakeSFTP) -> Session:
    """Return an open Session over the in-memory server."""
    return Session(MagicMock(), fake_sftp, "deploy@build.example:22")


@pytest.fixture()
def password_auth() -> PasswordAuth:
    return PasswordAuth(username="deploy", password="s3cret")


@pytest.fixture()
def site_factory(fake_sftp: FakeSFTP) -> Callable[..., RemoteSite]:
    """Build RemoteSites whose ``connect`` opens sessions on ``fake_sftp``.

    Every session handed out is recorded in ``site.sessions``.
    """

    def _make(name: str = "repo", root: str = ROOT, **kwargs: object) -> RemoteSite:
        site = RemoteSite(
            "build.example",
            root_repository_path=root,
            credentials_id="deploy-creds",
            display_name=name,
            **kwargs,  # type: ignore[arg-type]
        )
        site.sessions = []  # type: ignore[attr-defined]

        def _connect(auth: object) -> Session:
            s = Session(MagicMock(), fake_sftp, f"deploy@build.example:22 ({name})")
            site.sessions.append(s)  # type: ignore[attr-defined]
            return s

        site.connect = MagicMock(side_effect=_connect)  # type: ignore[method-assign]
        return site

    return _make


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    """A small build workspace::

        build/libs/app.jar
        build/libs/app-sources.jar
        build/reports/index.html
        build/reports/css/site.css
        README.txt
    """
    ws = tmp_path / "workspace"
    (ws / "build" / "libs").mkdir(parents=True)
    (ws / "build" / "reports" / "css").mkdir(parents=True)
    (ws / "build" / "libs" / "app.jar").write_bytes(b"jar-bytes")
    (ws / "build" / "libs" / "app-sources.jar").write_bytes(b"sources")
    (ws / "build" / "reports" / "index.html").write_text("<html/>", encoding="utf-8")
    (ws / "build" / "reports" / "css" / "site.css").write_text("body{}", encoding="utf-8")
    (ws / "README.txt").write_text("readme", encoding="utf-8")
    return ws
