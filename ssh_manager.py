"""Remote command execution over pooled SSH sessions.

Each logical server gets a small pool of paramiko clients. Callers beyond the
pool size block until a session is released instead of failing. Commands
without side effects are retried on transient connection failures; commands
that mutate remote state are attempted exactly once.
"""

from __future__ import annotations

import errno
import logging
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import paramiko

from config_manager import ServerTarget, resolve_server
from gateway_errors import (
    CommandTimeout,
    GatewayError,
    InvalidRemotePath,
    PermissionDeniedRemote,
    RemoteCommandFailed,
    RemoteConnectionError,
    RemoteNotFound,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 10.0
KEEPALIVE_SECONDS = 30

ClientFactory = Callable[[ServerTarget, float], Any]


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


_NOT_FOUND_MARKERS = ("no such file or directory", "cannot stat", "not found")
_DENIED_MARKERS = ("permission denied", "operation not permitted", "read-only file system")


def raise_for_result(result: CommandResult, *, path: str, action: str) -> CommandResult:
    """Translate a failed command into the matching structured error."""

    if result.ok:
        return result
    detail = (result.stderr or result.stdout).strip()
    lowered = detail.lower()
    if any(marker in lowered for marker in _DENIED_MARKERS):
        raise PermissionDeniedRemote(f"Permission denied while trying to {action} {path}")
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        raise RemoteNotFound(f"{path} not found on server")
    raise RemoteCommandFailed(
        f"Unable to {action} {path}: {detail or f'exit status {result.exit_code}'}",
        exit_code=result.exit_code,
    )


def _connect(target: ServerTarget, connect_timeout: float) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    try:
        client.load_system_host_keys()
    except OSError:  # pragma: no cover - depends on the host
        pass
    client.set_missing_host_key_policy(paramiko.WarningPolicy())
    client.connect(
        hostname=target.host,
        port=target.port,
        username=target.username or None,
        password=target.password,
        key_filename=target.key_filename,
        timeout=connect_timeout,
        banner_timeout=connect_timeout,
        auth_timeout=connect_timeout,
        allow_agent=target.key_filename is None and target.password is None,
    )
    transport = client.get_transport()
    if transport is not None:
        transport.set_keepalive(KEEPALIVE_SECONDS)
    return client


class _SessionPool:
    """Bounded set of reusable clients for one server."""

    def __init__(self, target: ServerTarget, size: int, factory: ClientFactory, connect_timeout: float) -> None:
        self.target = target
        self._factory = factory
        self._connect_timeout = connect_timeout
        self._slots = threading.BoundedSemaphore(max(1, int(size)))
        self._idle: List[Any] = []
        self._lock = threading.Lock()
        self._closed = False

    def acquire(self) -> Any:
        self._slots.acquire()
        with self._lock:
            if self._closed:
                self._slots.release()
                raise RemoteConnectionError(f"Session pool for {self.target.label} is closed", transient=False)
            client = self._idle.pop() if self._idle else None
        if client is not None:
            return client
        try:
            return self._factory(self.target, self._connect_timeout)
        except BaseException:
            self._slots.release()
            raise

    def release(self, client: Any, *, broken: bool = False) -> None:
        try:
            with self._lock:
                if not broken and not self._closed:
                    self._idle.append(client)
                    return
            _close_quietly(client)
        finally:
            self._slots.release()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []
        for client in idle:
            _close_quietly(client)


class _LocalWriteFailed(Exception):
    def __init__(self, error: OSError) -> None:
        super().__init__(str(error))
        self.error = error


class _LocalSink:
    """File-like target for ``SFTPClient.getfo`` that tags local write errors."""

    def __init__(self, handle: Any) -> None:
        self._handle = handle

    def write(self, data: bytes) -> int:
        view = memoryview(data)
        try:
            while view:
                written = self._handle.write(view)
                view = view[written:]
        except OSError as exc:
            raise _LocalWriteFailed(exc) from exc
        return len(data)


def _local_write_error(local_path: Path, exc: OSError) -> GatewayError:
    return GatewayError(f"Unable to write {local_path.name} to the local cache: {exc}", code="cache_io_error")


def _expire_channel(channel: Any, expired: threading.Event) -> None:
    expired.set()
    try:
        channel.close()
    except Exception as exc:  # pragma: no cover - channel already torn down
        logger.debug("Failed to close expired SSH channel: %s", exc)


def _close_quietly(client: Any) -> None:
    try:
        client.close()
    except Exception as exc:  # pragma: no cover - teardown best effort
        logger.debug("Failed to close SSH client cleanly: %s", exc)


class SSHManager:
    """Run commands and transfer files against logical servers by id."""

    def __init__(
        self,
        targets: Mapping[int, ServerTarget],
        *,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        retries: int = 2,
        retry_backoff: float = 0.5,
        pool_size: int = 3,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._targets = dict(targets)
        self._command_timeout = float(command_timeout) if command_timeout and command_timeout > 0 else None
        self._connect_timeout = float(connect_timeout) if connect_timeout and connect_timeout > 0 else DEFAULT_CONNECT_TIMEOUT
        self._retries = max(0, int(retries))
        self._retry_backoff = max(0.0, float(retry_backoff))
        self._pool_size = max(1, int(pool_size))
        self._factory = client_factory or _connect
        self._sleep = sleep
        self._pools: Dict[int, _SessionPool] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], targets: Mapping[int, ServerTarget], **kwargs: Any) -> "SSHManager":
        return cls(
            targets,
            command_timeout=float(cfg.get("SSH_COMMAND_TIMEOUT") or DEFAULT_COMMAND_TIMEOUT),
            connect_timeout=float(cfg.get("SSH_CONNECT_TIMEOUT") or DEFAULT_CONNECT_TIMEOUT),
            retries=int(cfg.get("SSH_RETRIES", 2)),
            retry_backoff=float(cfg.get("SSH_RETRY_BACKOFF", 0.5)),
            pool_size=int(cfg.get("SSH_POOL_SIZE") or 3),
            **kwargs,
        )

    def target(self, server_id: Any) -> ServerTarget:
        return resolve_server(self._targets, server_id)

    # ------------------------------------------------------------------ Commands
    def execute(
        self,
        server_id: Any,
        command: str,
        *,
        timeout: Optional[float] = None,
        side_effects: bool = False,
    ) -> CommandResult:
        """Run ``command`` on the server and return its output and exit status.

        A non-zero exit status is returned, not raised; its meaning belongs to
        the caller. ``side_effects`` disables automatic retries.
        """

        if "\x00" in command or "\n" in command:
            raise InvalidRemotePath("Refusing to run a command containing control characters")
        pool = self._pool_for(server_id)
        limit = self._effective_timeout(timeout)
        return self._with_retries(
            pool,
            lambda client: self._run(client, command, limit),
            description=command,
            retry=not side_effects,
        )

    def download(
        self,
        server_id: Any,
        remote_path: str,
        local_path: Union[str, Path],
        *,
        timeout: Optional[float] = None,
    ) -> int:
        """Copy ``remote_path`` to ``local_path`` over SFTP and return the byte count."""

        pool = self._pool_for(server_id)
        limit = self._effective_timeout(timeout)
        return self._with_retries(
            pool,
            lambda client: self._transfer(client, remote_path, Path(local_path), limit),
            description=f"sftp get {remote_path}",
            retry=True,
        )

    # ------------------------------------------------------------------ Lifecycle
    def close(self) -> None:
        with self._lock:
            pools, self._pools = list(self._pools.values()), {}
        for pool in pools:
            pool.close()

    # ------------------------------------------------------------------ Internals
    def _pool_for(self, server_id: Any) -> _SessionPool:
        target = self.target(server_id)
        with self._lock:
            pool = self._pools.get(target.server_id)
            if pool is None:
                pool = _SessionPool(target, self._pool_size, self._factory, self._connect_timeout)
                self._pools[target.server_id] = pool
            return pool

    def _effective_timeout(self, timeout: Optional[float]) -> Optional[float]:
        # paramiko treats 0 as "fail immediately"; callers mean "no limit"
        if timeout is None:
            return self._command_timeout
        return float(timeout) if timeout > 0 else None

    def _with_retries(self, pool: _SessionPool, operation: Callable[[Any], Any], *, description: str, retry: bool) -> Any:
        attempts = self._retries + 1 if retry else 1
        for attempt in range(attempts):
            try:
                client = self._checkout(pool)
            except RemoteConnectionError as exc:
                if not exc.transient or attempt + 1 >= attempts:
                    raise
                self._backoff(pool, attempt, exc)
                continue
            broken = False
            try:
                return operation(client)
            except RemoteConnectionError as exc:
                broken = True
                if not exc.transient or attempt + 1 >= attempts:
                    raise
                self._backoff(pool, attempt, exc)
            except CommandTimeout:
                broken = True
                raise
            finally:
                pool.release(client, broken=broken)
        raise RemoteConnectionError(f"{description}: retries exhausted")  # pragma: no cover

    def _backoff(self, pool: _SessionPool, attempt: int, exc: GatewayError) -> None:
        delay = self._retry_backoff * (2**attempt)
        logger.warning(
            "SSH channel to %s failed (%s); retry %d/%d in %.2fs",
            pool.target.label,
            exc.message,
            attempt + 1,
            self._retries,
            delay,
        )
        if delay:
            self._sleep(delay)

    def _checkout(self, pool: _SessionPool) -> Any:
        try:
            return pool.acquire()
        except paramiko.AuthenticationException as exc:
            raise RemoteConnectionError(
                f"Authentication to {pool.target.label} failed", code="auth_failed", transient=False
            ) from exc
        except socket.timeout as exc:
            raise RemoteConnectionError(f"Timed out connecting to {pool.target.label}") from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise RemoteConnectionError(f"Unable to connect to {pool.target.label}: {exc}") from exc

    def _run(self, client: Any, command: str, timeout: Optional[float]) -> CommandResult:
        """Run one command, bounded by ``timeout`` seconds of wall-clock time.

        paramiko's own timeout only limits each read, so a command that keeps
        writing output would never trip it. A timer closes the channel once the
        deadline passes, which ends the blocking reads.
        """

        logger.debug("ssh exec: %s", command)
        expired = threading.Event()
        deadline: Optional[threading.Timer] = None
        try:
            _, stdout, stderr = client.exec_command(command, timeout=timeout)
            channel = stdout.channel
            if timeout:
                deadline = threading.Timer(timeout, _expire_channel, args=(channel, expired))
                deadline.daemon = True
                deadline.start()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            code = channel.recv_exit_status()
        except socket.timeout as exc:
            raise CommandTimeout(f"Command did not finish within {timeout}s") from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            if expired.is_set():
                raise CommandTimeout(f"Command did not finish within {timeout}s") from exc
            raise RemoteConnectionError(f"SSH channel failed: {exc}") from exc
        finally:
            if deadline is not None:
                deadline.cancel()
        if expired.is_set():
            raise CommandTimeout(f"Command did not finish within {timeout}s")
        return CommandResult(stdout=out, stderr=err, exit_code=int(code))

    def _transfer(self, client: Any, remote_path: str, local_path: Path, timeout: Optional[float]) -> int:
        # unbuffered, so a full or read-only disk fails inside write() where
        # it can be told apart from SFTP errors
        try:
            handle = open(local_path, "wb", buffering=0)
        except OSError as exc:
            raise _local_write_error(local_path, exc) from exc
        with handle:
            expected = self._sftp_get(client, remote_path, _LocalSink(handle), timeout, local_path)
        received = local_path.stat().st_size
        if expected is not None and received != expected:
            raise RemoteConnectionError(
                f"Incomplete transfer of {remote_path}: {received} of {expected} bytes",
                code="incomplete_transfer",
            )
        logger.debug("sftp get %s -> %s (%d bytes)", remote_path, local_path, received)
        return received

    def _sftp_get(
        self,
        client: Any,
        remote_path: str,
        sink: "_LocalSink",
        timeout: Optional[float],
        local_path: Path,
    ) -> Optional[int]:
        try:
            sftp = client.open_sftp()
        except socket.timeout as exc:
            raise CommandTimeout("Timed out opening SFTP session") from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise RemoteConnectionError(f"Unable to open SFTP session: {exc}") from exc
        try:
            channel = sftp.get_channel()
            if channel is not None and timeout:
                channel.settimeout(timeout)
            expected = sftp.stat(remote_path).st_size
            sftp.getfo(remote_path, sink)
        except _LocalWriteFailed as exc:
            raise _local_write_error(local_path, exc.error) from exc.error
        except socket.timeout as exc:
            raise CommandTimeout(f"Transfer of {remote_path} stalled for {timeout}s") from exc
        except PermissionError as exc:
            raise PermissionDeniedRemote(f"Permission denied reading {remote_path}") from exc
        except FileNotFoundError as exc:
            raise RemoteNotFound(f"Remote file {remote_path} not found") from exc
        except IOError as exc:
            if exc.errno == errno.ENOENT:
                raise RemoteNotFound(f"Remote file {remote_path} not found") from exc
            if exc.errno == errno.EACCES:
                raise PermissionDeniedRemote(f"Permission denied reading {remote_path}") from exc
            raise RemoteConnectionError(f"Transfer of {remote_path} failed: {exc}") from exc
        except (paramiko.SSHException, EOFError) as exc:
            raise RemoteConnectionError(f"Transfer of {remote_path} failed: {exc}") from exc
        finally:
            _close_quietly(sftp)
        return expected
