"""Upload orchestration for one build.

A :class:`SitePublisher` uploads the configured entries of one site in order
over a single session.  Failures never abort the build: they are logged and
demote the build result to UNSTABLE, so a failed upload does not hide the
real build outcome.  Console-log entries run concurrently on their own
session and never affect the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import paramiko

from scp_publisher.connection import RemoteSite, Session
from scp_publisher.console import ConsoleStreamer, ConsoleStreamHandle, LogSource, POLL_INTERVAL
from scp_publisher.credentials import Authenticator, CredentialStore
from scp_publisher.exceptions import ConfigurationError, PublisherError
from scp_publisher.transfer import TransferItem, TransferStatus, Uploader
from scp_publisher.utils.macros import expand_macros
from scp_publisher.utils.workspace import describe_no_match, list_workspace_files

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Build model
# ---------------------------------------------------------------------------


class BuildResult(Enum):
    """Build outcome, ordered from best to worst."""

    SUCCESS = 0
    UNSTABLE = 1
    FAILURE = 2

    def worse(self, other: "BuildResult") -> "BuildResult":
        return self if self.value >= other.value else other

    @classmethod
    def parse(cls, value: "BuildResult | str") -> "BuildResult":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown build result {value!r}") from exc


@dataclass
class Entry:
    """One file-copy rule of a job.

    ``destination_folder`` and ``source_file`` may contain ``$VAR`` macros.
    """

    destination_folder: str = ""
    source_file: str = ""
    keep_hierarchy: bool = False
    copy_console_log: bool = False
    copy_after_failure: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Entry":
        return cls(
            destination_folder=str(data.get("destination_folder") or ""),
            source_file=str(data.get("source_file") or ""),
            keep_hierarchy=bool(data.get("keep_hierarchy", False)),
            copy_console_log=bool(data.get("copy_console_log", False)),
            copy_after_failure=bool(data.get("copy_after_failure", False)),
        )


@dataclass
class BuildContext:
    """What the host knows about the running build."""

    workspace: Path | None
    result: BuildResult = BuildResult.SUCCESS
    env: dict[str, str] = field(default_factory=dict)
    log: LogSource | None = None

    def set_result(self, result: BuildResult) -> None:
        """Record *result*; the build result can only get worse."""
        self.result = self.result.worse(result)


@dataclass
class PublishOutcome:
    """Everything one publish run produced."""

    result: BuildResult
    transfers: list[TransferItem] = field(default_factory=list)
    console_streams: list[ConsoleStreamHandle] = field(default_factory=list)

    @property
    def failed(self) -> list[TransferItem]:
        return [t for t in self.transfers if t.status is TransferStatus.FAILED]

    def wait_for_console(self, timeout: float | None = None) -> None:
        for handle in self.console_streams:
            handle.wait(timeout)


# Per-entry failures that demote the build but let the next entry run.
_ENTRY_ERRORS = (PublisherError, OSError, paramiko.SSHException)


# ---------------------------------------------------------------------------
# SitePublisher
# ---------------------------------------------------------------------------


class SitePublisher:
    """Publishes the entries configured for one site."""

    def __init__(
        self,
        site_name: str | None,
        entries: Sequence[Entry] | None,
        sites: Sequence[RemoteSite],
        credentials: CredentialStore,
        console_poll_interval: float = POLL_INTERVAL,
    ) -> None:
        """Bind entries to a site.

        Args:
            site_name: Name of the site to use; None picks the first site.
            entries: File-copy rules, uploaded in order.
            sites: All configured sites.
            credentials: Resolves the site's credentials id.
            console_poll_interval: Sleep between console log polls.
        """
        if site_name is None and sites:
            site_name = sites[0].name
        self.site_name = site_name
        self.entries = list(entries) if entries is not None else None
        self._sites = list(sites)
        self._credentials = credentials
        self._console_poll_interval = console_poll_interval

    def get_site(self) -> RemoteSite | None:
        """Return the site named ``site_name``, or None if it is not configured."""
        for site in self._sites:
            if site.name == self.site_name:
                return site
        return None

    # ------------------------------------------------------------------
    # Perform
    # ------------------------------------------------------------------

    def perform(self, build: BuildContext) -> PublishOutcome:
        """Upload every applicable entry; never raises for upload failures."""
        outcome = PublishOutcome(result=build.result)
        cached_result = build.result

        site = self.get_site()
        if site is None:
            logger.error("No SCP site is configured. This is likely a configuration problem.")
            build.set_result(BuildResult.UNSTABLE)
            outcome.result = build.result
            return outcome
        if not self.entries:
            logger.warning("No SCP entries are configured for site \"%s\"", site.name)
            return outcome

        session: Session | None = None
        try:
            auth = self._credentials.resolve(site.credentials_id)

            # The console log always gets its own session, so a job that only
            # mirrors the console never needs the main one.
            console_only = len(self.entries) == 1 and self.entries[0].copy_console_log
            if not console_only:
                session = site.connect(auth)
                site.verify_root(session)

            for entry in self.entries:
                if not entry.copy_after_failure and cached_result is BuildResult.FAILURE:
                    logger.info(
                        "Build failed; skipping %r (copy after failure is off)",
                        entry.source_file or entry.destination_folder,
                    )
                    continue
                try:
                    self._process_entry(entry, site, auth, session, build, outcome)
                except _ENTRY_ERRORS as exc:
                    logger.error("Failed to upload files: %s", exc)
                    build.set_result(BuildResult.UNSTABLE)
        except _ENTRY_ERRORS as exc:
            logger.error("Failed to upload files: %s", exc)
            build.set_result(BuildResult.UNSTABLE)
        finally:
            site.disconnect(session)

        outcome.result = build.result
        return outcome

    def _process_entry(
        self,
        entry: Entry,
        site: RemoteSite,
        auth: Authenticator,
        session: Session | None,
        build: BuildContext,
        outcome: PublishOutcome,
    ) -> None:
        folder = expand_macros(entry.destination_folder, build.env).strip()

        if entry.copy_console_log:
            if build.log is None:
                logger.warning("No console log available for this build; not copying it.")
                return
            logger.info("Copying console log.")
            streamer = ConsoleStreamer(
                site, auth, folder, build.log, poll_interval=self._console_poll_interval
            )
            outcome.console_streams.append(streamer.start())
            return

        if session is None:
            raise ConfigurationError("No session is open for file uploads")

        pattern = expand_macros(entry.source_file, build.env)
        workspace = build.workspace
        if workspace is None or not Path(workspace).is_dir():
            logger.warning(
                "No workspace found, files cannot be copied. "
                "Probably an error communicating with the build agent."
            )
            return

        sources = list_workspace_files(Path(workspace), pattern)
        if not sources:
            logger.warning("No file(s) found: %s", pattern)
            diagnostic = describe_no_match(Path(workspace), pattern)
            if diagnostic:
                logger.warning(diagnostic)
            return

        uploader = Uploader(session, site.root_repository_path, workspace=workspace)
        for source in sources:
            # Items land in outcome.transfers even if the upload raises part-way.
            items = uploader.upload(
                folder, source, keep_hierarchy=entry.keep_hierarchy, results=outcome.transfers
            )
            if any(item.status is TransferStatus.FAILED for item in items):
                build.set_result(BuildResult.UNSTABLE)


# ---------------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------------


class Publisher:
    """Runs several site publishers, in order, for one build."""

    def __init__(self, site_publishers: Iterable[SitePublisher]) -> None:
        self._site_publishers = list(site_publishers)

    def perform(self, build: BuildContext) -> PublishOutcome:
        combined = PublishOutcome(result=build.result)
        for site_publisher in self._site_publishers:
            outcome = site_publisher.perform(build)
            combined.transfers.extend(outcome.transfers)
            combined.console_streams.extend(outcome.console_streams)
        combined.result = build.result
        return combined
