"""SSH/SFTP session lifecycle for a configured upload site.

A :class:`RemoteSite` holds the connection parameters; :meth:`RemoteSite.connect`
hands out a :class:`Session` (one SSH transport plus one SFTP channel).  A
session is used by one logical operation at a time: the console streamer always
opens its own.
"""

from __future__ import annotations

import io
import logging
import socket
import stat
import threading
from enum import Enum
from pathlib import Path
from typing import Any

import paramiko

from scp_publisher.credentials import Authenticator, PasswordAuth, PrivateKeyAuth
from scp_publisher.exceptions import (
    ConfigurationError,
    ConnectionError,
    PathError,
    TransportError,
    UnknownHostError,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 22
_KEEPALIVE_INTERVAL = 30  # seconds

# Tried in order when loading key text of unknown type.
_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class HostKeyPolicy(Enum):
    """How to treat a host key that is not in known_hosts."""

    REJECT = "reject"
    WARN = "warn"
    ACCEPT = "accept"

    @classmethod
    def parse(cls, value: "HostKeyPolicy | str | None") -> "HostKeyPolicy":
        if isinstance(value, cls):
            return value
        if not value:
            return cls.REJECT
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ConfigurationError(
                f"Unknown host_key_policy {value!r} (expected reject, warn or accept)"
            ) from exc


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
        )


def _missing_host_key_policy(policy: HostKeyPolicy) -> paramiko.MissingHostKeyPolicy:
    if policy is HostKeyPolicy.ACCEPT:
        return paramiko.AutoAddPolicy()
    if policy is HostKeyPolicy.WARN:
        return paramiko.WarningPolicy()
    return _CapturingPolicy()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _close_quietly(closeable: Any) -> None:
    """Close *closeable*, logging instead of raising on cleanup errors."""
    try:
        closeable.close()
    except Exception as exc:  # socket teardown noise must not mask the real error
        logger.debug("Ignoring error while closing %r: %s", closeable, exc)


def parse_port(value: Any) -> int:
    """Return *value* as a port number, falling back to 22 when unparsable."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return DEFAULT_PORT


def load_private_key(key_text: str, passphrase: str | None = None) -> paramiko.PKey:
    """Parse *key_text* as any supported private key type.

    Raises:
        ConnectionError: The key could not be parsed (or decrypted).
    """
    last_error: Exception | None = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(key_text), password=passphrase)
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise ConnectionError(
        f"There was a problem getting your SSH private key: {last_error}"
    ) from last_error


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Session:
    """One live SSH connection plus its SFTP channel.

    ``close()`` is idempotent; a closed session raises :exc:`ConnectionError`
    when its channel is requested.
    """

    def __init__(
        self,
        client: paramiko.SSHClient,
        sftp: paramiko.SFTPClient,
        label: str,
    ) -> None:
        self._client: paramiko.SSHClient | None = client
        self._sftp: paramiko.SFTPClient | None = sftp
        self.label = label
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._sftp is None

    @property
    def sftp(self) -> paramiko.SFTPClient:
        """Return the SFTP channel.

        Raises:
            ConnectionError: If the session has been closed.
        """
        with self._lock:
            if self._sftp is None:
                raise ConnectionError(f"Connection to {self.label} is not established")
            return self._sftp

    def close(self) -> None:
        """Close the SFTP channel and the SSH connection."""
        with self._lock:
            sftp, client = self._sftp, self._client
            self._sftp = None
            self._client = None
        if sftp is None and client is None:
            return
        if sftp is not None:
            _close_quietly(sftp)
        if client is not None:
            _close_quietly(client)
        logger.info("Disconnected from %s", self.label)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# RemoteSite
# ---------------------------------------------------------------------------


class RemoteSite:
    """A configured upload destination: host, credentials and root path."""

    def __init__(
        self,
        hostname: str,
        root_repository_path: str = "",
        port: int | str = DEFAULT_PORT,
        credentials_id: str | None = None,
        display_name: str = "",
        username: str = "",
        host_key_policy: HostKeyPolicy | str = HostKeyPolicy.REJECT,
        timeout: float = 15.0,
        known_hosts: str | None = None,
    ) -> None:
        """Initialise site parameters (does NOT connect).

        Args:
            hostname: SSH host name or IP.
            root_repository_path: Absolute remote directory every upload goes under.
            port: SSH port; unparsable values fall back to 22.
            credentials_id: Key of the credential record in the keyring.
            display_name: Optional name shown in logs and used for lookup.
            username: Used only for the default display name.
            host_key_policy: What to do with a host key missing from known_hosts.
            timeout: TCP/handshake timeout in seconds.
            known_hosts: Extra known_hosts file; ``~/.ssh/known_hosts`` is always
                loaded when present.
        """
        self.hostname = hostname
        self.root_repository_path = (root_repository_path or "").strip()
        self.port = parse_port(port)
        self.credentials_id = credentials_id
        self.display_name = display_name
        self.username = username
        self.host_key_policy = HostKeyPolicy.parse(host_key_policy)
        self.timeout = timeout
        self.known_hosts = known_hosts

    @property
    def name(self) -> str:
        if self.display_name:
            return self.display_name
        return f"{self.username}@{self.hostname}:{self.root_repository_path}"

    def __repr__(self) -> str:
        return f"RemoteSite({self.name!r}, host={self.hostname!r}, port={self.port})"

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteSite":
        """Build a site from a ``sites.json`` profile."""
        if not data.get("hostname"):
            raise ConfigurationError(f"Site profile has no hostname: {data!r}")
        return cls(
            hostname=data["hostname"],
            root_repository_path=data.get("root_repository_path", ""),
            port=data.get("port", DEFAULT_PORT),
            credentials_id=data.get("credentials_id"),
            display_name=data.get("display_name") or data.get("name") or "",
            username=data.get("username", ""),
            host_key_policy=data.get("host_key_policy") or HostKeyPolicy.REJECT,
            timeout=float(data.get("timeout", 15.0)),
            known_hosts=data.get("known_hosts"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "hostname": self.hostname,
            "port": self.port,
            "username": self.username,
            "credentials_id": self.credentials_id,
            "root_repository_path": self.root_repository_path,
            "host_key_policy": self.host_key_policy.value,
            "timeout": self.timeout,
            "known_hosts": self.known_hosts,
        }

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def _new_client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if self.host_key_policy is HostKeyPolicy.REJECT:
            default_known_hosts = Path.home() / ".ssh" / "known_hosts"
            if default_known_hosts.exists():
                client.load_host_keys(str(default_known_hosts))
            if self.known_hosts:
                client.load_host_keys(self.known_hosts)
        client.set_missing_host_key_policy(_missing_host_key_policy(self.host_key_policy))
        return client

    def connect(self, auth: Authenticator) -> Session:
        """Open an SSH connection and an SFTP channel bound to it.

        Raises:
            UnknownHostError: Host key is not trusted (REJECT policy).
            ConnectionError: Authentication, handshake or network failure.
        """
        connect_kwargs: dict[str, Any] = {
            "hostname": self.hostname,
            "port": self.port,
            "timeout": self.timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        match auth:
            case PasswordAuth(username=username, password=password):
                connect_kwargs.update(username=username, password=password)
            case PrivateKeyAuth(username=username, private_key=key_text, passphrase=passphrase):
                connect_kwargs.update(
                    username=username,
                    pkey=load_private_key(key_text, passphrase),
                )
            case _:
                raise ConfigurationError(f"Unsupported authenticator: {type(auth).__name__}")

        label = f"{connect_kwargs['username']}@{self.hostname}:{self.port}"
        logger.info("Connecting to %s", label)

        client = self._new_client()
        try:
            client.connect(**connect_kwargs)
        except UnknownHostError:
            _close_quietly(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_quietly(client)
            raise UnknownHostError(
                f"Host key mismatch for {self.hostname} — check ~/.ssh/known_hosts",
                hostname=self.hostname,
            ) from exc
        except paramiko.AuthenticationException as exc:
            _close_quietly(client)
            raise ConnectionError(f"Authentication failed for {label}: {exc}") from exc
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            _close_quietly(client)
            raise ConnectionError(f"Could not connect to {label}: {exc}") from exc

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(_KEEPALIVE_INTERVAL)

        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as exc:
            _close_quietly(client)
            raise ConnectionError(f"Could not open SFTP channel to {label}: {exc}") from exc

        logger.info("Connected to %s", label)
        return Session(client, sftp, label)

    @staticmethod
    def disconnect(session: Session | None) -> None:
        """Close *session*; ``None`` or an already-closed session is a no-op."""
        if session is not None:
            session.close()

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def verify_root(self, session: Session) -> None:
        """Check that the root repository path is an existing directory.

        Raises:
            PathError: Root missing or not a directory.
            TransportError: Any other stat failure.
        """
        root = self.root_repository_path or "."
        try:
            attrs = session.sftp.stat(root)
        except FileNotFoundError as exc:
            raise PathError(
                f"Can't get stat of root repository directory:{root}"
            ) from exc
        except (OSError, paramiko.SSHException) as exc:
            raise TransportError(f"Error getting stat of {root}: {exc}") from exc
        if attrs.st_mode is None or not stat.S_ISDIR(attrs.st_mode):
            raise PathError(f"{root} is not a directory")

    def login_check(self, auth: Authenticator) -> bool:
        """Connect and immediately disconnect; raises on any failure."""
        session = self.connect(auth)
        self.disconnect(session)
        return True
