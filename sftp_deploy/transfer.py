"""File transfer engine for sftp-deploy.

Uploads one :class:`FileRecord` over an already-open SFTP client:
- Ancestor directories are created root-to-leaf through the run's
  :class:`~sftp_deploy.cache.DirectoryCache`
- Buffered, streamed and on-disk contents are pumped in chunks
- Per-chunk progress callbacks
- File-scoped failures become a FAILED :class:`TransferResult`; a dead
  session is re-raised as :exc:`~sftp_deploy.connection.AbruptClosureError`
"""

from __future__ import annotations

import io
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import BinaryIO, Callable, Iterable

import paramiko

from sftp_deploy.cache import DirectoryCache
from sftp_deploy.connection import ConnectionError
from sftp_deploy.utils.path_helpers import human_readable_size

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024          # 256 KB per read/write call

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransferStatus(Enum):
    """Lifecycle state of a TransferResult."""

    PENDING = auto()
    IN_PROGRESS = auto()
    COMPLETE = auto()
    FAILED = auto()
    SKIPPED = auto()


# ---------------------------------------------------------------------------
# FileRecord
# ---------------------------------------------------------------------------


@dataclass
class FileRecord:
    """One unit of input: a relative path and its contents.

    ``contents`` is either a bytes buffer or a readable binary stream.  When
    it is None, ``local_path`` (if set) is opened lazily at upload time.  A
    record with neither is a null record and is passed through untouched.
    ``size`` is only used for progress percentages.
    """

    relative_path: str
    contents: bytes | BinaryIO | None = None
    size: int | None = None
    local_path: Path | None = None

    def __post_init__(self) -> None:
        if self.size is None:
            if isinstance(self.contents, (bytes, bytearray)):
                self.size = len(self.contents)
            elif self.local_path is not None:
                try:
                    self.size = Path(self.local_path).stat().st_size
                except OSError:
                    self.size = 0
            else:
                self.size = 0

    @property
    def is_null(self) -> bool:
        return self.contents is None and self.local_path is None

    @property
    def is_buffer(self) -> bool:
        return isinstance(self.contents, (bytes, bytearray))

    @property
    def is_stream(self) -> bool:
        return not self.is_null and not self.is_buffer

    def open(self) -> BinaryIO:
        """Return a readable binary stream over the record's contents.

        Streams handed in by the caller are returned as-is; the caller owns
        them.  Buffers are wrapped and local files are opened fresh.
        """
        if self.is_buffer:
            return io.BytesIO(self.contents)  # type: ignore[arg-type]
        if self.contents is not None:
            return self.contents  # type: ignore[return-value]
        if self.local_path is not None:
            return open(self.local_path, "rb")
        raise ValueError(f"Null record has no contents: {self.relative_path!r}")


# ---------------------------------------------------------------------------
# TransferResult
# ---------------------------------------------------------------------------


@dataclass
class TransferResult:
    """Outcome of uploading one FileRecord."""

    record: FileRecord
    remote_path: str
    status: TransferStatus = TransferStatus.PENDING
    bytes_transferred: int = 0
    error: str | None = None
    directory_errors: list[str] = field(default_factory=list)
    start_time: float | None = None
    end_time: float | None = None

    @property
    def ok(self) -> bool:
        return self.status == TransferStatus.COMPLETE

    @property
    def progress_fraction(self) -> float:
        """Fraction of the declared size transferred (0.0 – 1.0)."""
        size = self.record.size or 0
        if size <= 0:
            return 1.0
        return min(1.0, self.bytes_transferred / size)

    @property
    def percent(self) -> int:
        """Whole-number progress percentage, halves rounded up, capped at 100."""
        return min(100, int(self.progress_fraction * 100 + 0.5))

    @property
    def speed_mbps(self) -> float:
        """Transfer speed in MB/s, or 0 if not yet started."""
        if self.start_time is None or self.bytes_transferred == 0:
            return 0.0
        elapsed = (self.end_time or time.monotonic()) - self.start_time
        if elapsed <= 0:
            return 0.0
        return (self.bytes_transferred / elapsed) / (1024 * 1024)


# ---------------------------------------------------------------------------
# TransferEngine
# ---------------------------------------------------------------------------


class TransferEngine:
    """Writes single files to the remote host over a shared SFTP client."""

    def __init__(
        self,
        cache: DirectoryCache,
        remote_platform: str = "unix",
        log_files: bool = True,
        strict_directories: bool = False,
        on_progress: Callable[[TransferResult], None] | None = None,
        session_check: Callable[[], None] | None = None,
    ) -> None:
        """Initialise the engine.

        Args:
            cache: Directory cache shared by every transfer of the run.
            remote_platform: ``unix`` or ``windows``; controls mkdir separators.
            log_files: Log one INFO line per uploaded file.
            strict_directories: Fail the file when a required ancestor
                directory could not be created instead of attempting the write.
            on_progress: Called after each chunk is written.
            session_check: Raises when the session died; consulted when a
                transfer fails so session loss is not mistaken for a file error.
        """
        self.cache = cache
        self.remote_platform = remote_platform
        self.log_files = log_files
        self.strict_directories = strict_directories
        self.on_progress = on_progress
        self._session_check = session_check

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def transfer(
        self,
        sftp: paramiko.SFTPClient,
        record: FileRecord,
        target: str,
        ancestors: Iterable[str] = (),
    ) -> TransferResult:
        """Upload *record* to *target*, creating *ancestors* first.

        Raises:
            AbruptClosureError: The session died during the transfer.
        """
        result = TransferResult(record=record, remote_path=target)
        result.status = TransferStatus.IN_PROGRESS
        result.start_time = time.monotonic()
        try:
            self._make_directories(sftp, ancestors, result)
            if result.directory_errors and self.strict_directories:
                raise OSError(
                    "Could not create remote directories: " + ", ".join(result.directory_errors)
                )
            self._upload(sftp, record, target, result)
        except ConnectionError:
            result.status = TransferStatus.FAILED
            raise
        except Exception as exc:
            if self._session_check is not None:
                self._session_check()
            result.status = TransferStatus.FAILED
            result.error = str(exc) or exc.__class__.__name__
            logger.error("Upload failed for %s → %s: %s", record.relative_path, target, result.error)
        finally:
            result.end_time = time.monotonic()
        return result

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def _make_directories(self, sftp, ancestors: Iterable[str], result: TransferResult) -> None:
        """Create missing ancestors in root-to-leaf order."""
        for directory in ancestors:
            if not self.cache.ensure_exists(sftp, directory, self.remote_platform):
                result.directory_errors.append(directory)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def _upload(self, sftp, record: FileRecord, target: str, result: TransferResult) -> None:
        """Open *target* truncated and stream the record's bytes into it."""
        source = record.open()
        owns_source = record.contents is None or record.is_buffer
        try:
            with sftp.open(target, "wb") as remote_fh:
                # up to 100 write requests may be in flight; close() waits for all ACKs
                remote_fh.set_pipelined(True)
                self._stream_with_progress(source, remote_fh, result)
        finally:
            if owns_source:
                source.close()

        result.status = TransferStatus.COMPLETE
        if self.log_files:
            logger.info("Uploaded: %s => %s", record.relative_path, target)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _stream_with_progress(self, src, dst, result: TransferResult) -> None:
        """Copy *src* to *dst* in chunks, updating *result* after each one."""
        while True:
            chunk = src.read(CHUNK_SIZE)
            if not chunk:
                break
            dst.write(chunk)
            result.bytes_transferred += len(chunk)
            logger.debug(
                "%s uploaded %s (%d%%)",
                result.remote_path,
                human_readable_size(result.bytes_transferred),
                result.percent,
            )
            if self.on_progress:
                try:
                    self.on_progress(result)
                except Exception:
                    logger.exception("Exception in on_progress callback")
