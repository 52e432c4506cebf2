"""Local file source: turns a directory tree into FileRecords."""

from __future__ import annotations

import fnmatch
import logging
from pathlib import Path
from typing import Iterable, Iterator

from sftp_deploy.transfer import FileRecord

logger = logging.getLogger(__name__)


def _is_excluded(rel: str, patterns: Iterable[str]) -> bool:
    name = rel.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatch(rel, p) or fnmatch.fnmatch(name, p) for p in patterns)


def iter_local_files(root: str | Path, exclude: Iterable[str] = ()) -> Iterator[FileRecord]:
    """Return an iterator of :class:`FileRecord` for every file under *root*.

    Files are visited in sorted order and opened only when uploaded.  The
    relative path always uses forward slashes so it maps directly onto the
    remote tree.  *exclude* holds glob patterns matched against the relative
    path and the bare file name.

    Raises:
        NotADirectoryError: If *root* is not a directory (raised immediately,
            not on first iteration).
    """
    root = Path(root)
    if not root.is_dir():
        raise NotADirectoryError(f"Source path '{root}' is not a directory")
    return _walk(root, list(exclude))


def _walk(root: Path, patterns: list[str]) -> Iterator[FileRecord]:
    for local_path in sorted(root.rglob("*")):
        if not local_path.is_file():
            continue
        rel = "/".join(local_path.relative_to(root).parts)
        if patterns and _is_excluded(rel, patterns):
            logger.debug("Excluded %s", rel)
            continue
        yield FileRecord(relative_path=rel, local_path=local_path)
