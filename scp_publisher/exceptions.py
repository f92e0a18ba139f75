"""Exception hierarchy for scp-publisher.

Hierarchy::

    PublisherError
    ├── ConfigurationError        - config / job file loading and validation
    ├── ConnectionError           - session not established, handshake, auth
    │   ├── UnknownHostError      - host key not trusted
    │   └── CredentialsNotFoundError
    ├── PathError                 - remote root missing or not a directory
    │   └── PathConflictError     - a required directory segment is a file
    └── TransportError            - stat / mkdir / write failures on the channel
"""

from __future__ import annotations

from typing import Any


class PublisherError(Exception):
    """Base exception for all scp-publisher errors."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(PublisherError):
    """Raised when settings, site profiles or a job file cannot be used."""


class ConnectionError(PublisherError):  # noqa: A001  (shadows built-in intentionally)
    """Raised when a session cannot be established or is used after closing."""


class UnknownHostError(ConnectionError):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key type so the operator can verify it
    out-of-band before trusting the host.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
    ) -> None:
        super().__init__(
            message,
            details={"hostname": hostname, "key_type": key_type, "fingerprint": fingerprint},
        )
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint


class CredentialsNotFoundError(ConnectionError):
    """Raised when a credentials id cannot be resolved to an authenticator."""


class PathError(PublisherError):
    """Raised when the remote root repository path is unusable."""


class PathConflictError(PathError):
    """Raised when a path segment that must be a directory is something else."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message, details={"path": path})
        self.path = path


class TransportError(PublisherError):
    """Raised when an SFTP operation (stat, mkdir, write) fails."""
