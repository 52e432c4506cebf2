"""Run-scoped memory of remote directories known to exist."""

from __future__ import annotations

import logging
import threading
from typing import Iterator

from sftp_deploy.utils.path_helpers import to_remote_platform

logger = logging.getLogger(__name__)

DIRECTORY_MODE = 0o755


def remote_exists(sftp, path: str) -> bool:
    """Return True if *path* exists on the remote host.

    Any ``stat`` failure counts as "does not exist"; a permission problem
    will resurface from the following mkdir or write.
    """
    try:
        sftp.stat(path)
    except OSError:
        return False
    return True


class DirectoryCache:
    """Set of forward-slash remote directory paths confirmed during one run.

    Entries are never evicted.  Paths whose mkdir failed are remembered
    separately: they are not retried and are not reported as present.
    Check-then-create for a given path runs under a per-path lock, so racing
    transfers that share an ancestor issue at most one ``mkdir`` for it; the
    losers find the path cached.
    """

    def __init__(self) -> None:
        self._present: set[str] = set()
        self._failed: set[str] = set()
        self._lock = threading.Lock()
        self._path_locks: dict[str, threading.Lock] = {}
        self.mkdir_count = 0

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._present

    def __len__(self) -> int:
        with self._lock:
            return len(self._present)

    def __iter__(self) -> Iterator[str]:
        return iter(self.paths())

    def paths(self) -> list[str]:
        """Return a sorted snapshot of the cached paths."""
        with self._lock:
            return sorted(self._present)

    def mark(self, path: str) -> None:
        """Record *path* as present."""
        with self._lock:
            self._present.add(path)
            self._failed.discard(path)

    def failed(self, path: str) -> bool:
        """Return True if creating *path* failed earlier in this run."""
        with self._lock:
            return path in self._failed

    def _lock_for(self, path: str) -> threading.Lock:
        with self._lock:
            return self._path_locks.setdefault(path, threading.Lock())

    def ensure_exists(self, sftp, path: str, platform: str | None = "unix") -> bool:
        """Make sure directory *path* exists, creating it if needed.

        Returns False when the directory could not be created; that is logged
        as a warning, never raised.  The outcome is cached either way: the same
        run does not retry the mkdir, and a failed path keeps returning False.
        """
        if path in self:
            return True

        with self._lock_for(path):
            if path in self:
                return True
            if self.failed(path):
                return False

            remote = to_remote_platform(path, platform)
            if not remote_exists(sftp, remote):
                with self._lock:
                    self.mkdir_count += 1
                try:
                    sftp.mkdir(remote, mode=DIRECTORY_MODE)
                    logger.info("SFTP Created: %s", remote)
                except OSError as exc:
                    if remote_exists(sftp, remote):
                        logger.debug("Directory %s appeared concurrently: %s", remote, exc)
                    else:
                        logger.warning("SFTP Mkdir Error: %s %s", exc, remote)
                        with self._lock:
                            self._failed.add(path)
                        return False

            self.mark(path)
            return True
