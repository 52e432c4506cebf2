"""sftp-deploy — entry point.

Configures logging, resolves the connection options and uploads a local
directory tree to the remote host.

Usage::

    python main.py --host example.com --user deploy --remote-path /var/www dist/
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from sftp_deploy import (
    ConfigError,
    ConnectionError,
    UploadPipeline,
    iter_local_files,
    resolve_config,
)
from sftp_deploy.config import load_options_file
from sftp_deploy.transfer import TransferResult

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

EXIT_OK = 0
EXIT_FILE_ERRORS = 1
EXIT_CONFIG_ERROR = 2
EXIT_CONNECTION_ERROR = 3

logger = logging.getLogger("sftp_deploy.main")


def _configure_logging(verbosity: int, quiet: bool) -> None:
    """Set up root logging to stderr."""
    level = logging.INFO
    if quiet:
        level = logging.WARNING
    elif verbosity > 0:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sftp-deploy",
        description="Upload a local directory tree to a remote host over SFTP.",
    )
    parser.add_argument("src", type=Path, help="Local directory whose files are uploaded.")
    parser.add_argument("--options", type=Path, help="JSON file with connection options.")
    parser.add_argument("--host", help="Remote host name or address.")
    parser.add_argument("--port", type=int, help="SSH port (default: 22).")
    parser.add_argument("--user", dest="username", help="SSH user (default: anonymous).")
    parser.add_argument("--password", help="Password; prefer --auth-key for real deployments.")
    parser.add_argument("--key", action="append", help="Private key file to try (repeatable).")
    parser.add_argument("--passphrase", help="Passphrase for the private key.")
    parser.add_argument("--agent", action="store_true", default=None, help="Authenticate through ssh-agent.")
    parser.add_argument("--agent-forward", action="store_true", default=None, help="Request agent forwarding.")
    parser.add_argument("--remote-path", help="Remote base directory (default: /).")
    parser.add_argument("--platform", choices=("unix", "windows"), help="Remote platform (default: unix).")
    parser.add_argument("--timeout", type=float, help="Connection timeout in seconds.")
    parser.add_argument("--concurrency", type=int, help="Parallel transfers over the session (default: 4).")
    parser.add_argument("--auth-key", help="Key to look up in the auth file or OS keyring.")
    parser.add_argument("--auth-file", help="JSON auth file (default: .ftppass).")
    parser.add_argument("--strict-directories", action="store_true", default=None,
                        help="Fail a file when its remote directory cannot be created.")
    parser.add_argument("--exclude", action="append", default=[], metavar="GLOB",
                        help="Skip files matching GLOB (repeatable).")
    parser.add_argument("--quiet", action="store_true", help="Only log warnings and errors.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Enable debug logging.")
    return parser.parse_args(argv)


def build_options(args: argparse.Namespace) -> dict[str, Any]:
    """Merge the options file (if any) with command-line overrides."""
    options: dict[str, Any] = {}
    if args.options:
        options.update(load_options_file(args.options))

    overrides = {
        "host": args.host,
        "port": args.port,
        "username": args.username,
        "password": args.password,
        "key": args.key,
        "passphrase": args.passphrase,
        "agent": args.agent,
        "agentForward": args.agent_forward,
        "remotePath": args.remote_path,
        "remotePlatform": args.platform,
        "timeout": args.timeout,
        "concurrency": args.concurrency,
        "authKey": args.auth_key,
        "authFile": args.auth_file,
        "strictDirectories": args.strict_directories,
    }
    for key, value in overrides.items():
        if value is not None:
            options[key] = value
    if args.quiet:
        options["logFiles"] = False
    return options


def _log_failure(result: TransferResult) -> None:
    if not result.ok and result.error:
        logger.debug("%s failed: %s", result.record.relative_path, result.error)


def main(argv: list[str] | None = None) -> int:
    """Run one upload and return the process exit code."""
    args = parse_args(argv)
    _configure_logging(args.verbose, args.quiet)

    try:
        config = resolve_config(build_options(args))
        records = iter_local_files(args.src, exclude=args.exclude)
    except (ConfigError, NotADirectoryError) as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR

    try:
        summary = UploadPipeline(config, on_item_complete=_log_failure).run(records)
    except ConnectionError as exc:
        logger.error("Upload aborted: %s", exc)
        return EXIT_CONNECTION_ERROR

    for rel, error in summary.failures:
        logger.error("Failed: %s (%s)", rel, error)
    return EXIT_FILE_ERRORS if summary.failed else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
