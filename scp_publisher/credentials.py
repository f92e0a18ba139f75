"""Credential resolution for SFTP sites.

A site refers to its credentials by id.  The secret material never lives in
``sites.json``: it is stored in the OS keyring as a small JSON record, either

    {"type": "password", "username": "...", "password": "..."}

or

    {"type": "private_key", "username": "...", "private_key": "<PEM>",
     "key_path": "/path/on/this/host", "passphrase": "..."}

and resolved into one of the two authenticator variants below.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from scp_publisher.exceptions import ConfigurationError, CredentialsNotFoundError

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "scp-publisher"


# ---------------------------------------------------------------------------
# Authenticators
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordAuth:
    """Username + password authentication."""

    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class PrivateKeyAuth:
    """Username + private key authentication.

    ``private_key`` holds the PEM/OpenSSH key text; the passphrase, if any,
    decrypts it.
    """

    username: str
    private_key: str = field(repr=False)
    passphrase: str | None = field(default=None, repr=False)


Authenticator = Union[PasswordAuth, PrivateKeyAuth]


# ---------------------------------------------------------------------------
# CredentialStore
# ---------------------------------------------------------------------------


class CredentialStore:
    """Stores and resolves credential records in the OS keyring."""

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        self._service = service

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, credentials_id: str | None) -> Authenticator:
        """Return the authenticator stored under *credentials_id*.

        Raises:
            CredentialsNotFoundError: No id given, or nothing stored under it.
            ConfigurationError: The stored record is malformed or its key file
                cannot be read.
        """
        if not credentials_id:
            raise CredentialsNotFoundError("No credentials id configured for this site")

        try:
            raw = keyring.get_password(self._service, credentials_id)
        except KeyringError as exc:
            raise CredentialsNotFoundError(
                f"Could not read credentials '{credentials_id}' from the keyring: {exc}"
            ) from exc
        if raw is None:
            raise CredentialsNotFoundError(
                f"Credentials with id '{credentials_id}' no longer exist!"
            )

        try:
            record = json.loads(raw)
            if not isinstance(record, dict):
                raise ValueError("credential record must be a JSON object")
        except ValueError as exc:
            raise ConfigurationError(
                f"Corrupt credential record '{credentials_id}': {exc}"
            ) from exc

        return self._to_authenticator(credentials_id, record)

    @staticmethod
    def _to_authenticator(credentials_id: str, record: dict[str, Any]) -> Authenticator:
        kind = record.get("type")
        username = record.get("username") or ""
        if kind == "password":
            logger.debug("Password credentials used through id %s", credentials_id)
            return PasswordAuth(username=username, password=record.get("password") or "")
        if kind == "private_key":
            logger.debug("Private key credentials used through id %s", credentials_id)
            key_text = record.get("private_key")
            if not key_text and record.get("key_path"):
                try:
                    key_text = Path(record["key_path"]).read_text(encoding="utf-8")
                except OSError as exc:
                    raise ConfigurationError(
                        f"There was a problem getting your SSH private key: {exc}"
                    ) from exc
            if not key_text:
                raise ConfigurationError(
                    f"Credential record '{credentials_id}' has no private key"
                )
            return PrivateKeyAuth(
                username=username,
                private_key=key_text,
                passphrase=record.get("passphrase"),
            )
        raise ConfigurationError(
            f"Credential record '{credentials_id}' has unknown type {kind!r}"
        )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _save(self, credentials_id: str, record: dict[str, Any]) -> str:
        keyring.set_password(self._service, credentials_id, json.dumps(record))
        logger.info("Credentials stored in keyring as %s", credentials_id)
        return credentials_id

    def store_password(self, credentials_id: str, username: str, password: str) -> str:
        """Store a username/password record under *credentials_id*."""
        return self._save(
            credentials_id,
            {"type": "password", "username": username, "password": password},
        )

    def store_private_key(
        self,
        credentials_id: str,
        username: str,
        *,
        private_key: str | None = None,
        key_path: str | None = None,
        passphrase: str | None = None,
    ) -> str:
        """Store a private-key record under *credentials_id*.

        Either the key text or a path to a key file on this host is required;
        a path is read each time the credentials are resolved.
        """
        if not private_key and not key_path:
            raise ValueError("store_private_key needs private_key or key_path")
        record: dict[str, Any] = {"type": "private_key", "username": username}
        if private_key:
            record["private_key"] = private_key
        if key_path:
            record["key_path"] = key_path
        if passphrase:
            record["passphrase"] = passphrase
        return self._save(credentials_id, record)

    def delete(self, credentials_id: str) -> bool:
        """Remove *credentials_id* from the keyring; False if it was not there."""
        try:
            keyring.delete_password(self._service, credentials_id)
        except PasswordDeleteError:
            logger.warning("delete: credentials not found: %s", credentials_id)
            return False
        logger.info("Credentials deleted from keyring: %s", credentials_id)
        return True

    # ------------------------------------------------------------------
    # Legacy sites
    # ------------------------------------------------------------------

    def migrate_legacy(
        self,
        username: str,
        password: str | None = None,
        keyfile: str | None = None,
    ) -> str:
        """Move inline site secrets into a new keyring record.

        Older site profiles carried ``password`` or ``keyfile`` directly.
        Returns the generated credentials id.

        Raises:
            ConfigurationError: Neither a password nor a key file was given.
        """
        credentials_id = str(uuid.uuid4())
        if password:
            self.store_password(credentials_id, username, password)
        elif keyfile:
            self.store_private_key(credentials_id, username, key_path=keyfile)
        else:
            raise ConfigurationError(
                "Did not find password nor keyfile while migrating a legacy site"
            )
        logger.info("Migrated legacy credentials for %s to %s", username, credentials_id)
        return credentials_id
