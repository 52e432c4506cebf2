"""Option resolution for sftp-deploy.

Turns the loose, alias-heavy option mapping accepted by the CLI and the
Python API into one immutable :class:`PipelineConfig`.  Credentials may come
from the options themselves, from a JSON auth file (``.ftppass``), from the
OS keyring, or from private key files discovered on disk.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import keyring

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "sftp-deploy"

DEFAULT_AUTH_FILE = ".ftppass"
DEFAULT_KEY_LOCATIONS: tuple[str, ...] = (
    "~/.ssh/id_rsa",
    "/.ssh/id_rsa",
    "~/.ssh/id_dsa",
    "/.ssh/id_dsa",
)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_OPTIONS: dict[str, Any] = {
    "port": 22,
    "username": "anonymous",
    "remote_path": "/",
    "remote_platform": "unix",
    "timeout": None,
    "log_files": True,
    "concurrency": 4,
    "strict_directories": False,
}

# alias -> canonical name; the first alias found wins
_ALIASES: dict[str, tuple[str, ...]] = {
    "host": ("host",),
    "port": ("port",),
    "username": ("username", "user"),
    "password": ("password", "pass"),
    "key": ("key", "keyLocation", "key_location", "privateKeyLocation",
            "privateKeyLocations", "private_key_location", "private_key_locations"),
    "key_contents": ("keyContents", "key_contents"),
    "passphrase": ("passphrase",),
    "agent": ("agent",),
    "agent_forward": ("agentForward", "agent_forward"),
    "remote_path": ("remotePath", "remote_path"),
    "remote_platform": ("remotePlatform", "remote_platform", "platform"),
    "timeout": ("timeout",),
    "log_files": ("logFiles", "log_files"),
    "auth_file": ("authFile", "auth_file"),
    "auth_key": ("authKey", "auth_key", "auth"),
    "concurrency": ("concurrency",),
    "strict_directories": ("strictDirectories", "strict_directories"),
}


class ConfigError(ValueError):
    """Raised when the options cannot produce a usable configuration."""


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable, fully resolved settings for one upload run."""

    host: str
    port: int = 22
    username: str = "anonymous"
    password: str | None = None
    private_key: bytes | None = None
    passphrase: str | None = None
    agent: bool | str = False
    agent_forward: bool = False
    remote_path: str = "/"
    remote_platform: str = "unix"
    timeout: float | None = None
    log_files: bool = True
    concurrency: int = 4
    strict_directories: bool = False

    @property
    def auth_mode(self) -> str:
        """Selected authentication mode: ``password`` > ``agent`` > ``key``."""
        if self.password:
            return "password"
        if self.agent:
            return "agent"
        return "key"

    def __repr__(self) -> str:
        secret = "***" if self.password else None
        return (
            f"PipelineConfig(host={self.host!r}, port={self.port}, "
            f"username={self.username!r}, password={secret!r}, "
            f"auth_mode={self.auth_mode!r}, remote_path={self.remote_path!r}, "
            f"remote_platform={self.remote_platform!r})"
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _canonicalize(options: Mapping[str, Any]) -> dict[str, Any]:
    """Collapse option aliases into their canonical snake_case names."""
    resolved: dict[str, Any] = {}
    for name, aliases in _ALIASES.items():
        for alias in aliases:
            value = options.get(alias)
            if value is not None and value != "":
                resolved[name] = value
                break
    return resolved


def load_options_file(path: str | Path) -> dict[str, Any]:
    """Load a JSON options object from *path*.

    Raises:
        ConfigError: If the file is unreadable or its root is not an object.
    """
    path = Path(path)
    try:
        loaded = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not read options file {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError(f"Options file {path} must contain a JSON object")
    return loaded


def load_auth_entry(auth_file: str | Path, auth_key: str) -> dict[str, Any] | None:
    """Return the credentials stored under *auth_key*, or None if no auth file.

    The auth file is a JSON object whose values are either option objects
    (``{"user": ..., "pass": ...}``) or ``"user:pass"`` strings.

    Raises:
        ConfigError: If the file exists but is corrupt or lacks *auth_key*.
    """
    path = Path(auth_file)
    if not path.exists():
        return None

    try:
        entries = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Corrupt auth file {path}: {exc}") from exc

    auth = entries.get(auth_key) if isinstance(entries, dict) else None
    if not auth:
        raise ConfigError(f"Could not find auth key {auth_key!r} in {path}")

    if isinstance(auth, str):
        if ":" not in auth:
            raise ConfigError(f"Auth entry {auth_key!r} must be 'user:pass' or an object")
        user, password = auth.split(":", 1)
        return {"user": user, "pass": password}
    if not isinstance(auth, dict):
        raise ConfigError(f"Auth entry {auth_key!r} must be 'user:pass' or an object")
    return dict(auth)


def lookup_keyring_password(auth_key: str) -> str | None:
    """Fetch the password stored in the OS keyring under *auth_key*."""
    try:
        password = keyring.get_password(KEYRING_SERVICE, auth_key)
    except keyring.errors.KeyringError as exc:
        logger.warning("Keyring lookup for %r failed: %s", auth_key, exc)
        return None
    if password:
        logger.debug("Password for %r found in keyring", auth_key)
    return password


def find_private_key(locations: list[str] | tuple[str, ...]) -> bytes | None:
    """Read the first existing key file among *locations* (``~`` expanded)."""
    for location in locations:
        path = Path(location).expanduser()
        if path.is_file():
            try:
                contents = path.read_bytes()
            except OSError as exc:
                logger.warning("Could not read private key %s: %s", path, exc)
                continue
            logger.debug("Using private key %s", path)
            return contents
    return None


def _resolve_key(opts: dict[str, Any]) -> tuple[bytes | None, str | None]:
    """Return ``(key_bytes, passphrase)`` when key authentication is implied."""
    key = opts.get("key")
    if isinstance(key, Mapping):
        key = dict(key)
    elif key is not None:
        key = {"location": key}

    if key is None and (
        opts.get("passphrase") or opts.get("key_contents") or not opts.get("password")
    ):
        key = {}
    if key is None:
        return None, None

    contents = key.get("contents") or opts.get("key_contents")
    passphrase = key.get("passphrase") or opts.get("passphrase")

    if not contents:
        locations = key.get("location") or DEFAULT_KEY_LOCATIONS
        if isinstance(locations, (str, Path)):
            locations = [str(locations)]
        contents = find_private_key([str(loc) for loc in locations])
        if contents is None and not opts.get("password") and not opts.get("agent"):
            raise ConfigError(
                "Cannot find private key, searched: " + ", ".join(str(loc) for loc in locations)
            )

    if isinstance(contents, str):
        contents = contents.encode("utf-8")
    return contents, passphrase


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no", "off")
    return bool(value)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def resolve_config(options: Mapping[str, Any], base_dir: str | Path | None = None) -> PipelineConfig:
    """Build a :class:`PipelineConfig` from a loose option mapping.

    Args:
        options: Options using any supported alias (``user``/``username``,
            ``pass``/``password``, ``remotePath``/``remote_path``, ...).
        base_dir: Directory the auth file is resolved against (default: cwd).

    Raises:
        ConfigError: Missing host, bad auth file entry, or no usable
            credentials.
    """
    opts = _canonicalize(options)
    if not opts.get("host"):
        raise ConfigError("`host` required.")

    auth_key = opts.get("auth_key")
    if auth_key:
        auth_file = Path(base_dir or ".") / opts.get("auth_file", DEFAULT_AUTH_FILE)
        entry = load_auth_entry(auth_file, auth_key)
        if entry is not None:
            opts.update(_canonicalize(entry))
        elif not opts.get("password"):
            password = lookup_keyring_password(auth_key)
            if password:
                opts["password"] = password

    private_key, passphrase = _resolve_key(opts)

    agent = opts.get("agent", False)
    if not isinstance(agent, str):
        agent = _as_bool(agent)

    try:
        port = int(opts.get("port", DEFAULT_OPTIONS["port"]))
        timeout = opts.get("timeout", DEFAULT_OPTIONS["timeout"])
        timeout = float(timeout) if timeout is not None else None
        concurrency = int(opts.get("concurrency", DEFAULT_OPTIONS["concurrency"]))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric option: {exc}") from exc
    if concurrency < 1:
        raise ConfigError("`concurrency` must be at least 1")

    config = PipelineConfig(
        host=str(opts["host"]),
        port=port,
        username=str(opts.get("username", DEFAULT_OPTIONS["username"])),
        password=opts.get("password"),
        private_key=private_key,
        passphrase=passphrase,
        agent=agent,
        agent_forward=_as_bool(opts.get("agent_forward", False)),
        remote_path=str(opts.get("remote_path", DEFAULT_OPTIONS["remote_path"])),
        remote_platform=str(opts.get("remote_platform", DEFAULT_OPTIONS["remote_platform"])),
        timeout=timeout,
        log_files=_as_bool(opts.get("log_files", DEFAULT_OPTIONS["log_files"])),
        concurrency=concurrency,
        strict_directories=_as_bool(
            opts.get("strict_directories", DEFAULT_OPTIONS["strict_directories"])
        ),
    )
    logger.debug("Resolved %r", config)
    return config
