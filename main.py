"""scp-publisher — entry point.

Configures logging, parses the command line and dispatches to the
``publish``, ``check``, ``sites`` and ``credentials`` commands.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from scp_publisher import __version__
from scp_publisher.config import ConfigManager, load_job_file
from scp_publisher.console import FileLogSource
from scp_publisher.credentials import CredentialStore
from scp_publisher.exceptions import PublisherError
from scp_publisher.publisher import BuildContext, BuildResult, Entry, SitePublisher

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

# Process exit code per final build result.
_EXIT_CODES = {
    BuildResult.SUCCESS: 0,
    BuildResult.UNSTABLE: 1,
    BuildResult.FAILURE: 2,
}

log = logging.getLogger(__name__)


def _configure_logging(level: str = "INFO", transport_level: str = "WARNING") -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=level.upper(),
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    # paramiko's transport chatter only at the configured level
    logging.getLogger("paramiko").setLevel(transport_level.upper())


def _parse_env(pairs: Sequence[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise PublisherError(f"--env expects KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_publish(args: argparse.Namespace, config: ConfigManager, store: CredentialStore) -> int:
    config.migrate_legacy_sites(store)
    job = load_job_file(args.job)
    entries = [Entry.from_dict(e) for e in job["entries"]]
    site_name = args.site or job["site"]

    workspace = Path(args.workspace).resolve()
    env = dict(os.environ)
    env.setdefault("WORKSPACE", str(workspace))
    env.update(_parse_env(args.env))

    build = BuildContext(
        workspace=workspace,
        result=BuildResult.parse(args.result),
        env=env,
        log=FileLogSource(args.console_log) if args.console_log else None,
    )
    publisher = SitePublisher(
        site_name,
        entries,
        config.get_sites(),
        store,
        console_poll_interval=float(config.get("console_poll_interval", 0.5)),
    )
    outcome = publisher.perform(build)
    # Console streams are daemon threads; leaving early would cut them off.
    outcome.wait_for_console()

    log.info(
        "Published %d file(s), %d failed; build result %s",
        len(outcome.transfers),
        len(outcome.failed),
        outcome.result.name,
    )
    return _EXIT_CODES[outcome.result]


def _cmd_check(args: argparse.Namespace, config: ConfigManager, store: CredentialStore) -> int:
    config.migrate_legacy_sites(store)
    site = config.get_site(args.site)
    if site is None:
        log.error("No site named %r", args.site)
        return 1
    site.login_check(store.resolve(site.credentials_id))
    print(f"Successfully connected to {site.name}")
    return 0


def _cmd_sites(args: argparse.Namespace, config: ConfigManager, store: CredentialStore) -> int:
    if args.sites_command == "list":
        for profile in config.get_site_profiles():
            print(
                f"{profile['name']}\t{profile.get('hostname', '')}:{profile.get('port', 22)}"
                f"\t{profile.get('root_repository_path', '')}"
            )
        return 0
    if args.sites_command == "add":
        config.save_site(
            {
                "name": args.name,
                "hostname": args.hostname,
                "port": args.port,
                "username": args.username,
                "credentials_id": args.credentials_id,
                "root_repository_path": args.root,
                "host_key_policy": args.host_key_policy or config.get("host_key_policy"),
                "known_hosts": args.known_hosts,
            }
        )
        return 0
    return 0 if config.delete_site(args.name) else 1


def _cmd_credentials(
    args: argparse.Namespace, config: ConfigManager, store: CredentialStore
) -> int:
    if args.credentials_command == "add-password":
        password = getpass.getpass(f"Password for {args.username}: ")
        store.store_password(args.id, args.username, password)
        return 0
    if args.credentials_command == "add-key":
        passphrase = getpass.getpass("Key passphrase (empty for none): ") or None
        if args.inline:
            key_text = Path(args.key_file).read_text(encoding="utf-8")
            store.store_private_key(
                args.id, args.username, private_key=key_text, passphrase=passphrase
            )
        else:
            store.store_private_key(
                args.id,
                args.username,
                key_path=str(Path(args.key_file).expanduser()),
                passphrase=passphrase,
            )
        return 0
    return 0 if store.delete(args.id) else 1


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scp-publisher",
        description="Upload build artifacts and console logs to SFTP sites.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory holding config.json and sites.json (default ~/.scp-publisher)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    publish = sub.add_parser("publish", help="Upload the entries of a job file")
    publish.add_argument("--job", required=True, help="JSON job description")
    publish.add_argument("--workspace", required=True, help="Build workspace directory")
    publish.add_argument("--site", help="Site name (overrides the job file)")
    publish.add_argument(
        "--result",
        default="SUCCESS",
        choices=[r.name for r in BuildResult],
        help="Result of the build being published",
    )
    publish.add_argument("--console-log", help="Build log file to mirror as console.html")
    publish.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra variable for $VAR expansion (repeatable)",
    )
    publish.set_defaults(handler=_cmd_publish)

    check = sub.add_parser("check", help="Log in to a site and disconnect")
    check.add_argument("site")
    check.set_defaults(handler=_cmd_check)

    sites = sub.add_parser("sites", help="Manage site profiles")
    sites_sub = sites.add_subparsers(dest="sites_command", required=True)
    sites_sub.add_parser("list")
    add = sites_sub.add_parser("add")
    add.add_argument("name")
    add.add_argument("--hostname", required=True)
    add.add_argument("--port", type=int, default=22)
    add.add_argument("--username", default="")
    add.add_argument("--credentials-id", required=True)
    add.add_argument("--root", default="", help="Root repository path on the server")
    add.add_argument("--host-key-policy", choices=["reject", "warn", "accept"])
    add.add_argument("--known-hosts")
    remove = sites_sub.add_parser("remove")
    remove.add_argument("name")
    sites.set_defaults(handler=_cmd_sites)

    creds = sub.add_parser("credentials", help="Manage keyring credentials")
    creds_sub = creds.add_subparsers(dest="credentials_command", required=True)
    add_pw = creds_sub.add_parser("add-password")
    add_pw.add_argument("id")
    add_pw.add_argument("--username", required=True)
    add_key = creds_sub.add_parser("add-key")
    add_key.add_argument("id")
    add_key.add_argument("--username", required=True)
    add_key.add_argument("--key-file", required=True)
    add_key.add_argument(
        "--inline",
        action="store_true",
        help="Store the key text in the keyring instead of its path",
    )
    rm = creds_sub.add_parser("remove")
    rm.add_argument("id")
    creds.set_defaults(handler=_cmd_credentials)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run scp-publisher and return the process exit code."""
    args = _build_parser().parse_args(argv)
    _configure_logging()

    try:
        config = ConfigManager(args.config_dir)
        _configure_logging(
            config.get("log_level", "INFO"), config.get("transport_log_level", "WARNING")
        )
        return args.handler(args, config, CredentialStore())
    except (PublisherError, ValueError, OSError) as exc:
        log.error("%s", exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
