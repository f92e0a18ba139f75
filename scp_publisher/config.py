"""Configuration and site management for scp-publisher.

All settings are stored as JSON files under ``~/.scp-publisher/``.
Secrets are never written to disk; they are delegated to ``keyring``
through :class:`~scp_publisher.credentials.CredentialStore`.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from scp_publisher.connection import RemoteSite
from scp_publisher.credentials import CredentialStore, PasswordAuth, PrivateKeyAuth
from scp_publisher.exceptions import ConfigurationError, PublisherError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "ssh_timeout": 15,
    "host_key_policy": "reject",
    "console_poll_interval": 0.5,
    "log_level": "INFO",
    "transport_log_level": "WARNING",
}

# Inline secrets older site profiles may carry; never persisted.
_SECRET_KEYS = ("password", "keyfile", "passphrase", "private_key")


def _same_endpoint(a: dict[str, Any], b: dict[str, Any]) -> bool:
    return (a.get("hostname"), str(a.get("port", 22))) == (b.get("hostname"), str(b.get("port", 22)))

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages application settings and site profiles.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt file triggers a warning and
    a safe reset; it never crashes a build.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.scp-publisher/`` if necessary."""
        self._base = base_dir or Path.home() / ".scp-publisher"
        self._config_path = self._base / "config.json"
        self._sites_path = self._base / "sites.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._sites: list[dict[str, Any]] = self._load_sites()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            loaded = json.loads(self._config_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s) — resetting to defaults", exc)
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    def _load_sites(self) -> list[dict[str, Any]]:
        """Load ``sites.json``, returning an empty list on corruption."""
        if not self._sites_path.exists():
            return []
        try:
            loaded = json.loads(self._sites_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, list):
                raise ValueError("Sites root must be a JSON array")
            return [s for s in loaded if isinstance(s, dict)]
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt sites.json (%s) — resetting to empty list", exc)
            self._atomic_write(self._sites_path, [])
            return []

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        return dict(self._config)

    # ------------------------------------------------------------------
    # Site management
    # ------------------------------------------------------------------

    def get_site_profiles(self) -> list[dict[str, Any]]:
        """Return a copy of all saved site profiles."""
        return [dict(s) for s in self._sites]

    def save_site(self, profile: dict[str, Any]) -> None:
        """Upsert a site profile by its ``name`` field.

        If a site with the same ``name`` already exists it is replaced;
        otherwise the new site is appended.  Secret fields are stripped.
        """
        name = profile.get("name")
        if not name:
            raise ValueError("Site must have a non-empty 'name' field")
        if not profile.get("hostname"):
            raise ValueError("Site must have a non-empty 'hostname' field")

        profile = {k: v for k, v in profile.items() if k not in _SECRET_KEYS}

        for i, existing in enumerate(self._sites):
            if existing.get("name") == name:
                self._sites[i] = profile
                break
        else:
            self._sites.append(profile)

        self._atomic_write(self._sites_path, self._sites)
        logger.info("Site saved: %s", name)

    def delete_site(self, name: str) -> bool:
        """Delete the site identified by *name*.

        Returns ``True`` if a site was deleted, ``False`` if not found.
        """
        original_len = len(self._sites)
        self._sites = [s for s in self._sites if s.get("name") != name]
        if len(self._sites) < original_len:
            self._atomic_write(self._sites_path, self._sites)
            logger.info("Site deleted: %s", name)
            return True
        logger.warning("delete_site: site not found: %s", name)
        return False

    def get_site_profile(self, name: str) -> dict[str, Any] | None:
        for site in self._sites:
            if site.get("name") == name:
                return dict(site)
        return None

    def _site_from_profile(self, profile: dict[str, Any]) -> RemoteSite:
        data = dict(profile)
        data.setdefault("timeout", self.get("ssh_timeout", 15))
        data.setdefault("host_key_policy", self.get("host_key_policy", "reject"))
        return RemoteSite.from_dict(data)

    def get_sites(self) -> list[RemoteSite]:
        """Return every saved site, with global defaults applied."""
        return [self._site_from_profile(p) for p in self._sites]

    def get_site(self, name: str) -> RemoteSite | None:
        profile = self.get_site_profile(name)
        return None if profile is None else self._site_from_profile(profile)

    # ------------------------------------------------------------------
    # Legacy migration
    # ------------------------------------------------------------------

    def _matching_credentials(self, store: CredentialStore, legacy: dict[str, Any]) -> str | None:
        """Return the id of stored credentials equal to *legacy*'s inline secret.

        Only sites on the same hostname and port are considered; the stored
        record must carry the same username and the same password or key.
        """
        username = legacy.get("username", "")
        key_text: str | None = None
        if not legacy.get("password"):
            try:
                key_text = Path(legacy["keyfile"]).read_text(encoding="utf-8")
            except OSError:
                return None

        for other in self._sites:
            credentials_id = other.get("credentials_id")
            if not credentials_id or not _same_endpoint(other, legacy):
                continue
            try:
                auth = store.resolve(credentials_id)
            except PublisherError as exc:
                logger.debug("Skipping credentials %s: %s", credentials_id, exc)
                continue
            if auth.username != username:
                continue
            if isinstance(auth, PasswordAuth) and auth.password == legacy.get("password"):
                return credentials_id
            if isinstance(auth, PrivateKeyAuth) and auth.private_key == key_text:
                return credentials_id
        return None

    def migrate_legacy_sites(self, store: CredentialStore) -> int:
        """Move inline ``password``/``keyfile`` secrets into the keyring.

        Each migrated site is rewritten without its secrets and pointed at a
        ``credentials_id``.  Credentials already stored for another site on
        the same host, with the same username and secret, are reused; otherwise
        a new record is generated.  Returns the number of sites migrated.
        """
        migrated = 0
        for i, site in enumerate(self._sites):
            if site.get("credentials_id"):
                continue
            if not (site.get("password") or site.get("keyfile")):
                continue
            credentials_id = self._matching_credentials(store, site)
            if credentials_id is not None:
                logger.info(
                    "Reusing credentials %s for legacy site %s", credentials_id, site.get("name")
                )
            else:
                credentials_id = store.migrate_legacy(
                    site.get("username", ""),
                    password=site.get("password"),
                    keyfile=site.get("keyfile"),
                )
            cleaned = {k: v for k, v in site.items() if k not in _SECRET_KEYS}
            cleaned["credentials_id"] = credentials_id
            self._sites[i] = cleaned
            migrated += 1
        if migrated:
            self._atomic_write(self._sites_path, self._sites)
            logger.info("Migrated %d legacy site(s) to keyring credentials", migrated)
        return migrated


# ---------------------------------------------------------------------------
# Job files
# ---------------------------------------------------------------------------


def load_job_file(path: str | Path) -> dict[str, Any]:
    """Read a job description.

    The file is a JSON object ``{"site": name | null, "entries": [...]}``;
    each entry carries ``destination_folder``, ``source_file``,
    ``keep_hierarchy``, ``copy_console_log`` and ``copy_after_failure``.

    Raises:
        ConfigurationError: The file is missing, not JSON, or malformed.
    """
    job_path = Path(path)
    try:
        data = json.loads(job_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Cannot read job file {job_path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Job file {job_path} is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Job file {job_path} must contain a JSON object")
    entries = data.get("entries", [])
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise ConfigurationError(f"'entries' in {job_path} must be a list of objects")
    site = data.get("site")
    if site is not None and not isinstance(site, str):
        raise ConfigurationError(f"'site' in {job_path} must be a string or null")
    return {"site": site, "entries": entries}
