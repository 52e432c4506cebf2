"""Upload pipeline controller.

:class:`UploadPipeline` is the public entry point: it accepts
:class:`~sftp_deploy.transfer.FileRecord` objects one at a time, schedules
each upload on a small worker pool that shares a single SFTP session, passes
every record through unchanged, and on end-of-input waits for all transfers,
releases the session and logs one summary line.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Iterable, Iterator, Mapping

from sftp_deploy.cache import DirectoryCache
from sftp_deploy.config import PipelineConfig, resolve_config
from sftp_deploy.connection import ConnectionError, SessionPool
from sftp_deploy.transfer import FileRecord, TransferEngine, TransferResult, TransferStatus
from sftp_deploy.utils.path_helpers import (
    ResolvedPath,
    resolve_remote_path,
    validate_remote_path,
)

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    """Lifecycle of one upload run."""

    IDLE = auto()
    ACTIVE = auto()
    CLOSED = auto()


class PipelineClosedError(RuntimeError):
    """Raised when a record is submitted after the pipeline was closed."""


@dataclass
class PipelineSummary:
    """Run-level counters, reported once when the pipeline closes."""

    uploaded: int = 0
    failed: int = 0
    skipped: int = 0
    bytes_transferred: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.uploaded == 0:
            return "No files uploaded"
        noun = "file" if self.uploaded == 1 else "files"
        return f"{self.uploaded} {noun} uploaded successfully"


class UploadPipeline:
    """Drives one upload run against one host.

    Usage::

        with UploadPipeline(config) as pipeline:
            for record in pipeline.process(records):
                ...  # every record comes back, uploaded or not

    File-scoped failures are counted and the run continues.  Session-level
    failures (connect, auth, abrupt closure) are fatal: they are re-raised by
    later :meth:`submit` calls and by :meth:`close`.
    """

    def __init__(
        self,
        config: PipelineConfig,
        on_progress: Callable[[TransferResult], None] | None = None,
        on_item_complete: Callable[[TransferResult], None] | None = None,
        pool: SessionPool | None = None,
    ) -> None:
        """Create the run-scoped session pool, directory cache and engine."""
        self.config = config
        self.on_item_complete = on_item_complete
        self.cache = DirectoryCache()
        self.pool = pool or SessionPool(config)
        self.engine = TransferEngine(
            self.cache,
            remote_platform=config.remote_platform,
            log_files=config.log_files,
            strict_directories=config.strict_directories,
            on_progress=on_progress,
            session_check=self.pool.ensure_alive,
        )

        self._lock = threading.Lock()
        self._state = PipelineState.IDLE
        self._executor: ThreadPoolExecutor | None = None
        self._futures: list[Future] = []
        self._summary = PipelineSummary()
        self._fatal: ConnectionError | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        with self._lock:
            return self._state

    @property
    def summary(self) -> PipelineSummary:
        return self._summary

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, record: FileRecord) -> Future:
        """Schedule *record* for upload and return a future for its result.

        Null records complete immediately as SKIPPED without opening a session.

        Raises:
            PipelineClosedError: close() has already been called.
            ConnectionError: A previous transfer hit a fatal session error.
        """
        with self._lock:
            if self._state == PipelineState.CLOSED:
                raise PipelineClosedError("Upload pipeline is closed")
            if self._fatal is not None:
                raise self._fatal
            if self._state == PipelineState.IDLE:
                self._state = PipelineState.ACTIVE
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.concurrency,
                    thread_name_prefix="sftp-upload",
                )
                logger.debug("Pipeline active with %d worker(s)", self.config.concurrency)
            executor = self._executor

        if record.is_null:
            return self._finished(TransferResult(
                record=record, remote_path="", status=TransferStatus.SKIPPED,
            ))

        resolved = resolve_remote_path(self.config.remote_path, record.relative_path, self.cache)
        if not validate_remote_path(resolved.target):
            return self._finished(TransferResult(
                record=record,
                remote_path=resolved.target,
                status=TransferStatus.FAILED,
                error=f"Invalid remote path: {resolved.target!r}",
            ))

        future = executor.submit(self._run_transfer, record, resolved)  # type: ignore[union-attr]
        with self._lock:
            self._futures.append(future)
        return future

    def process(self, records: Iterable[FileRecord]) -> Iterator[FileRecord]:
        """Upload every record and yield it back unchanged (pass-through).

        The pipeline is closed when *records* is exhausted or the consumer
        stops iterating.
        """
        try:
            for record in records:
                self.submit(record)
                yield record
        finally:
            if self.state != PipelineState.CLOSED:
                self.close()

    def run(self, records: Iterable[FileRecord]) -> PipelineSummary:
        """Upload every record and return the run summary."""
        for _ in self.process(records):
            pass
        return self._summary

    def close(self) -> PipelineSummary:
        """Wait for accepted transfers, release the session and report.

        Idempotent; only the first call logs the summary.

        Raises:
            ConnectionError: The run hit a fatal session error.
        """
        with self._lock:
            if self._state == PipelineState.CLOSED:
                return self._summary
            self._state = PipelineState.CLOSED
            executor = self._executor
            futures = list(self._futures)

        if futures:
            wait(futures)
        if executor is not None:
            executor.shutdown(wait=True)
        self.pool.release()

        summary = self._summary
        if summary.uploaded > 0:
            logger.info(summary.message)
        else:
            logger.warning(summary.message)
        if summary.failed:
            logger.warning("%d file(s) failed to upload", summary.failed)

        if self._fatal is not None:
            raise self._fatal
        return summary

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> UploadPipeline:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.state == PipelineState.CLOSED:
            return
        if exc_type is None:
            self.close()
            return
        try:
            self.close()
        except ConnectionError as close_exc:
            logger.error("Session error while closing after %s: %s", exc_type.__name__, close_exc)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run_transfer(self, record: FileRecord, resolved: ResolvedPath) -> TransferResult:
        """Worker body: acquire the shared session and upload one record."""
        try:
            sftp = self.pool.acquire()
            result = self.engine.transfer(sftp, record, resolved.target, resolved.ancestors)
        except ConnectionError as exc:
            with self._lock:
                if self._fatal is None:
                    self._fatal = exc
            self._record(TransferResult(
                record=record,
                remote_path=resolved.target,
                status=TransferStatus.FAILED,
                error=str(exc),
            ))
            raise
        self._record(result)
        return result

    def _finished(self, result: TransferResult) -> Future:
        """Record *result* and wrap it in an already-completed future."""
        self._record(result)
        future: Future = Future()
        future.set_result(result)
        return future

    def _record(self, result: TransferResult) -> None:
        """Fold *result* into the run counters and fire on_item_complete."""
        with self._lock:
            summary = self._summary
            summary.bytes_transferred += result.bytes_transferred
            if result.status == TransferStatus.COMPLETE:
                summary.uploaded += 1
            elif result.status == TransferStatus.SKIPPED:
                summary.skipped += 1
            else:
                summary.failed += 1
                summary.failures.append((result.record.relative_path, result.error or "unknown error"))

        if self.on_item_complete:
            try:
                self.on_item_complete(result)
            except Exception:
                logger.exception("Exception in on_item_complete callback")


def upload_files(
    records: Iterable[FileRecord],
    options: Mapping[str, Any] | PipelineConfig,
    **kwargs: Any,
) -> PipelineSummary:
    """Resolve *options* and upload *records* in one call.

    Extra keyword arguments are passed to :class:`UploadPipeline`.
    """
    config = options if isinstance(options, PipelineConfig) else resolve_config(options)
    return UploadPipeline(config, **kwargs).run(records)
