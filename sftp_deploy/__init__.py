"""sftp-deploy — upload build artefacts to a remote host over SFTP."""

from __future__ import annotations

from sftp_deploy.config import ConfigError, PipelineConfig, resolve_config
from sftp_deploy.connection import AbruptClosureError, ConnectionError, SessionPool
from sftp_deploy.pipeline import (
    PipelineClosedError,
    PipelineState,
    PipelineSummary,
    UploadPipeline,
    upload_files,
)
from sftp_deploy.sources import iter_local_files
from sftp_deploy.transfer import FileRecord, TransferResult, TransferStatus

__version__ = "1.0.0"

__all__ = [
    "AbruptClosureError",
    "ConfigError",
    "ConnectionError",
    "FileRecord",
    "PipelineClosedError",
    "PipelineConfig",
    "PipelineState",
    "PipelineSummary",
    "SessionPool",
    "TransferResult",
    "TransferStatus",
    "UploadPipeline",
    "iter_local_files",
    "resolve_config",
    "upload_files",
]
