"""Shared fixtures: an in-memory stand-in for a paramiko SFTP server."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import pytest

from sftp_deploy.config import PipelineConfig


class RemoteFS:
    """Directories and files that the mocked SFTP client reads and writes."""

    def __init__(self) -> None:
        self.dirs: set[str] = {"/", "/var"}
        self.files: dict[str, bytes] = {}
        self.fail_writes: set[str] = set()
        self.fail_mkdirs: set[str] = set()
        self.lock = threading.Lock()


class RemoteFile:
    """Minimal file handle returned by ``mock_sftp.open``."""

    def __init__(self, fs: RemoteFS, path: str) -> None:
        self._fs = fs
        self._path = path
        self._chunks: list[bytes] = []
        self.pipelined = False

    def __enter__(self) -> "RemoteFile":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    def set_pipelined(self, pipelined: bool = True) -> None:
        self.pipelined = pipelined

    def write(self, data: bytes) -> None:
        if self._path in self._fs.fail_writes:
            raise OSError(f"Failure writing {self._path}")
        self._chunks.append(bytes(data))

    def close(self) -> None:
        with self._fs.lock:
            self._fs.files[self._path] = b"".join(self._chunks)


def make_sftp(fs: RemoteFS) -> MagicMock:
    """Return a MagicMock SFTP client backed by *fs*."""
    sftp = MagicMock()

    def _stat(path: str) -> MagicMock:
        with fs.lock:
            if path in fs.dirs:
                return MagicMock(st_size=0)
            if path in fs.files:
                return MagicMock(st_size=len(fs.files[path]))
        raise FileNotFoundError(2, "No such file", path)

    def _mkdir(path: str, mode: int = 0o777) -> None:
        with fs.lock:
            if path in fs.fail_mkdirs:
                raise PermissionError(13, "Permission denied", path)
            if path in fs.dirs:
                raise OSError("Failure")
            fs.dirs.add(path)

    def _open(path: str, mode: str = "r", bufsize: int = -1) -> RemoteFile:
        return RemoteFile(fs, path)

    sftp.get_channel.return_value.closed = False
    sftp.stat.side_effect = _stat
    sftp.mkdir.side_effect = _mkdir
    sftp.open.side_effect = _open
    return sftp


@pytest.fixture()
def remote_fs() -> RemoteFS:
    return RemoteFS()


@pytest.fixture()
def mock_sftp(remote_fs: RemoteFS) -> MagicMock:
    """Return a mock paramiko.SFTPClient backed by ``remote_fs``."""
    return make_sftp(remote_fs)


@pytest.fixture()
def mock_client(mock_sftp: MagicMock) -> MagicMock:
    """Return a mock paramiko.SSHClient whose transport stays alive."""
    client = MagicMock()
    client.open_sftp.return_value = mock_sftp
    client.get_transport.return_value.is_active.return_value = True
    return client


@pytest.fixture()
def ssh_client_cls(mock_client: MagicMock):
    """Patch paramiko.SSHClient so every connection gets ``mock_client``."""
    with patch("sftp_deploy.connection.paramiko.SSHClient", return_value=mock_client) as cls:
        yield cls


@pytest.fixture()
def config() -> PipelineConfig:
    return PipelineConfig(
        host="deploy.example.com",
        username="deploy",
        password="secret",
        remote_path="/var/www",
        concurrency=1,
    )
