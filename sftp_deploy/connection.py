"""SSH/SFTP session lifecycle for one upload run.

:class:`SessionPool` lazily opens exactly one SSH connection and one SFTP
sub-session, hands the same client to every caller, and tears both down on
:meth:`SessionPool.release`.  Concurrent :meth:`SessionPool.acquire` calls made
while the connection is still being established wait for that single attempt
instead of opening their own.
"""

from __future__ import annotations

import io
import logging
import socket
import threading
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

import paramiko
from paramiko.agent import AgentRequestHandler

from sftp_deploy.config import PipelineConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

StateChangeCallback = Callable[["ConnectionState", Optional[str]], None]

_KEEPALIVE_INTERVAL = 30  # seconds
_MONITOR_INTERVAL = 2  # seconds between session liveness checks
_WINDOW_SIZE = 64 * 1024 * 1024

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.RSAKey,
    paramiko.ECDSAKey,
    paramiko.Ed25519Key,
)


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class ConnectionError(Exception):  # noqa: A001  (shadows built-in intentionally)
    """Raised when the SSH/SFTP session cannot be established or used."""


class UnknownHostError(ConnectionError):
    """Raised when the remote host key does not match ``known_hosts``."""

    def __init__(self, message: str, hostname: str = "") -> None:
        super().__init__(message)
        self.hostname = hostname


class AbruptClosureError(ConnectionError):
    """Raised when the session ends before the pipeline released it."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _close_quietly(resource) -> None:
    """Close *resource* without raising; cleanup noise is not actionable."""
    try:
        resource.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing %r: %s", resource, exc)


def load_private_key(contents: bytes, passphrase: str | None = None) -> paramiko.PKey:
    """Parse PEM/OpenSSH key *contents* into a paramiko key object.

    Raises:
        ConnectionError: If no supported key type can parse the data.
    """
    text = contents.decode("utf-8", errors="replace")
    errors: list[str] = []
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase)
        except paramiko.PasswordRequiredException as exc:
            raise ConnectionError("Private key is encrypted and no passphrase was given") from exc
        except (paramiko.SSHException, ValueError) as exc:
            errors.append(f"{key_class.__name__}: {exc}")
    raise ConnectionError("Unsupported private key format (" + "; ".join(errors) + ")")


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """States of the single session owned by a pipeline run."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    CLOSED = auto()
    ERROR = auto()


# ---------------------------------------------------------------------------
# SessionPool
# ---------------------------------------------------------------------------


class SessionPool:
    """Owns the one SSH connection and SFTP sub-session of an upload run.

    Thread-safety:
    - ``_cond`` guards every state transition; callers that arrive while
      CONNECTING wait on it until the connecting thread finishes.
    - ERROR is terminal: the recorded error is re-raised to every later
      caller and no reconnect is attempted.
    """

    def __init__(
        self,
        config: PipelineConfig,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Store the configuration; nothing touches the network until acquire()."""
        self.config = config
        self._on_state_change = on_state_change

        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._error: ConnectionError | None = None
        self._cond = threading.Condition()
        self._stop_event = threading.Event()
        self._monitor_thread: threading.Thread | None = None
        self.connect_count = 0

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """Current session state (thread-safe read)."""
        with self._cond:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def _set_state(self, new_state: ConnectionState, message: str | None = None) -> None:
        """Update state, wake waiters and fire the callback (must hold ``_cond``)."""
        self._state = new_state
        self._cond.notify_all()
        logger.debug(
            "Session state → %s%s",
            new_state.name,
            f" ({message})" if message else "",
        )
        if self._on_state_change:
            try:
                self._on_state_change(new_state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    def _fail(self, error: ConnectionError) -> None:
        """Record a terminal session error (must hold ``_cond``)."""
        if self._error is None:
            self._error = error
        self._set_state(ConnectionState.ERROR, str(error))

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self) -> paramiko.SFTPClient:
        """Return the shared SFTP client, connecting on first use.

        Raises:
            ConnectionError: Connection or authentication failed, or the
                pool has already been released.
            AbruptClosureError: The session died before release().
        """
        with self._cond:
            while self._state == ConnectionState.CONNECTING:
                self._cond.wait()

            if self._state == ConnectionState.CONNECTED:
                self._check_transport()
                return self._sftp  # type: ignore[return-value]
            if self._state == ConnectionState.ERROR:
                raise self._error  # type: ignore[misc]
            if self._state == ConnectionState.CLOSED:
                raise ConnectionError(f"Session to {self.config.host} was already released")

            self._set_state(ConnectionState.CONNECTING)

        try:
            client, sftp = self._do_connect()
        except ConnectionError as exc:
            with self._cond:
                self._fail(exc)
            raise
        except Exception as exc:
            error = ConnectionError(f"Could not connect to {self.config.host}: {exc}")
            with self._cond:
                self._fail(error)
            raise error from exc

        with self._cond:
            if self._state != ConnectionState.CONNECTING:
                # released while we were connecting
                _close_quietly(sftp)
                _close_quietly(client)
                raise ConnectionError(f"Session to {self.config.host} was released while connecting")
            self._client = client
            self._sftp = sftp
            self._set_state(ConnectionState.CONNECTED)

        self._start_monitor_thread()
        return sftp

    def release(self) -> None:
        """Close the SFTP sub-session, then the SSH connection.  Idempotent."""
        with self._cond:
            self._stop_event.set()
            sftp, client = self._sftp, self._client
            self._sftp = None
            self._client = None
            already_closed = self._state in (ConnectionState.CLOSED, ConnectionState.DISCONNECTED)
            if self._state != ConnectionState.ERROR:
                self._set_state(ConnectionState.CLOSED)

        if sftp is not None:
            _close_quietly(sftp)
            logger.debug("SFTP session closed")
        if client is not None:
            _close_quietly(client)
            logger.info("Connection to %s closed", self.config.host)
        elif not already_closed:
            logger.debug("release() called with no open connection")

        monitor = self._monitor_thread
        if monitor and monitor.is_alive() and monitor is not threading.current_thread():
            monitor.join(timeout=_MONITOR_INTERVAL + 1)
        self._monitor_thread = None

    def ensure_alive(self) -> None:
        """Raise :exc:`AbruptClosureError` if the transport or SFTP channel died unexpectedly."""
        with self._cond:
            if self._state == ConnectionState.CONNECTED:
                self._check_transport()
            elif self._state == ConnectionState.ERROR and isinstance(self._error, AbruptClosureError):
                raise self._error

    def _check_transport(self) -> None:
        """Flag abrupt closure if the transport or the SFTP channel is gone.

        Must hold ``_cond``.
        """
        transport = self._client.get_transport() if self._client else None
        channel = self._sftp.get_channel() if self._sftp else None
        if (
            transport is not None
            and transport.is_active()
            and (channel is None or not channel.closed)
        ):
            return
        logger.error("SFTP abrupt closure on %s", self.config.host)
        self._fail(AbruptClosureError(f"SFTP abrupt closure on {self.config.host}"))
        raise self._error  # type: ignore[misc]

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _connect_kwargs(self) -> dict:
        """Translate the config into ``SSHClient.connect`` keyword arguments."""
        config = self.config
        kwargs: dict = {
            "hostname": config.host,
            "port": config.port,
            "username": config.username,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if config.timeout:
            kwargs["timeout"] = config.timeout
            kwargs["banner_timeout"] = config.timeout
            kwargs["auth_timeout"] = config.timeout

        mode = config.auth_mode
        if mode == "password":
            logger.info("Authenticating with password.")
            kwargs["password"] = config.password
        elif mode == "agent":
            logger.info("Authenticating with agent.")
            kwargs["allow_agent"] = True
        else:
            logger.info("Authenticating with private key.")
            if config.private_key:
                kwargs["pkey"] = load_private_key(config.private_key, config.passphrase)
            else:
                kwargs["look_for_keys"] = True
        return kwargs

    def _do_connect(self) -> tuple[paramiko.SSHClient, paramiko.SFTPClient]:
        """Open the SSH connection and its SFTP sub-session."""
        config = self.config
        logger.info("Connecting to %s@%s:%d", config.username, config.host, config.port)

        client = paramiko.SSHClient()
        known_hosts_path = Path.home() / ".ssh" / "known_hosts"
        if known_hosts_path.exists():
            try:
                client.load_host_keys(str(known_hosts_path))
            except OSError as exc:
                logger.warning("Could not load %s: %s", known_hosts_path, exc)
        # deploy runs are unattended, so new host keys are accepted
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        self.connect_count += 1
        try:
            client.connect(**self._connect_kwargs())
        except paramiko.BadHostKeyException as exc:
            _close_quietly(client)
            raise UnknownHostError(
                f"Host key mismatch for {config.host} — check ~/.ssh/known_hosts",
                hostname=config.host,
            ) from exc
        except paramiko.AuthenticationException as exc:
            _close_quietly(client)
            raise ConnectionError(f"Authentication failed for {config.username}@{config.host}") from exc
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            _close_quietly(client)
            raise ConnectionError(f"Could not connect to {config.host}:{config.port}: {exc}") from exc

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(_KEEPALIVE_INTERVAL)
            transport.default_window_size = _WINDOW_SIZE

        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as exc:
            _close_quietly(client)
            raise ConnectionError(f"Could not open SFTP session on {config.host}: {exc}") from exc

        if config.agent_forward and config.auth_mode == "agent":
            AgentRequestHandler(sftp.get_channel())
            logger.debug("Agent forwarding requested")

        logger.info("Connected to %s", config.host)
        return client, sftp

    # ------------------------------------------------------------------
    # Liveness monitor
    # ------------------------------------------------------------------

    def _start_monitor_thread(self) -> None:
        """Spawn a daemon thread that notices a dead session promptly."""
        self._stop_event.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitor_loop,
            name=f"session-monitor-{self.config.host}",
            daemon=True,
        )
        self._monitor_thread.start()

    def _monitor_loop(self) -> None:
        logger.debug("Session monitor started for %s", self.config.host)
        while not self._stop_event.wait(timeout=_MONITOR_INTERVAL):
            with self._cond:
                if self._state != ConnectionState.CONNECTED:
                    break
                try:
                    self._check_transport()
                except AbruptClosureError:
                    break
        logger.debug("Session monitor exiting for %s", self.config.host)
