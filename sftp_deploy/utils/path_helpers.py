"""Remote path resolution, normalisation and validation utilities."""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Container

logger = logging.getLogger(__name__)

REMOTE_ROOT = "/"


@dataclass(frozen=True)
class ResolvedPath:
    """Target file path plus the directories that must exist before writing it.

    ``ancestors`` is ordered root-to-leaf so parents are always created first.
    """

    target: str
    ancestors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def dirname(self) -> str:
        """Directory that will contain :attr:`target`."""
        return posixpath.dirname(self.target)


def normalize_base_path(base: str) -> str:
    """Normalise the configured remote base path.

    Backslashes become forward slashes, a leading ``~/`` is dropped (SFTP
    resolves relative paths against the login directory) and trailing
    slashes are removed, except for the root itself.
    """
    base = (base or REMOTE_ROOT).replace("\\", "/")
    if base == "~":
        return "."
    if base.startswith("~/"):
        base = base[2:] or "."
    return posixpath.normpath(base)


def is_windows_platform(platform: str | None) -> bool:
    """Return True when *platform* names a Windows-style remote."""
    return bool(platform) and "win" in platform.lower()


def to_remote_platform(path: str, platform: str | None) -> str:
    """Return *path* in the separator style the remote platform expects."""
    if is_windows_platform(platform):
        return path.replace("/", "\\")
    return path


def ancestor_dirs(path: str) -> list[str]:
    """Return *path* and every ancestor directory of it, shallowest first.

    Example::

        >>> ancestor_dirs("/var/www/a")
        ['/', '/var', '/var/www', '/var/www/a']
        >>> ancestor_dirs("site/a")
        ['site', 'site/a']
    """
    if not path or path == ".":
        return []

    absolute = path.startswith(REMOTE_ROOT)
    parts = [p for p in path.split("/") if p and p != "."]
    dirs: list[str] = [REMOTE_ROOT] if absolute else []
    cumulative = ""
    for part in parts:
        cumulative = f"{cumulative}/{part}" if cumulative else part
        dirs.append(f"/{cumulative}" if absolute else cumulative)
    return dirs


def resolve_remote_path(
    base: str,
    relative: str,
    cache: Container[str] | None = None,
) -> ResolvedPath:
    """Compute the remote target for *relative* under *base*.

    Ancestor directories shorter than *base* (above the configured remote
    root) are dropped, as is anything already present in *cache*.
    """
    base = normalize_base_path(base)
    relative = relative.replace("\\", "/").lstrip("/")
    target = posixpath.normpath(posixpath.join(base, relative))

    dirname = posixpath.dirname(target)
    ancestors = [
        d for d in ancestor_dirs(dirname)
        if len(d) >= len(base) and not (cache is not None and d in cache)
    ]
    if base.startswith(REMOTE_ROOT):
        ancestors = [d if d.startswith(REMOTE_ROOT) else REMOTE_ROOT + d for d in ancestors]

    return ResolvedPath(target=target, ancestors=tuple(ancestors))


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe for SFTP operations.

    Rejects paths that contain null bytes or path-traversal sequences (``..``)
    left over after normalisation.
    """
    if not path:
        logger.warning("Remote path rejected — empty")
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True
