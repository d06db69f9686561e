"""Tests for pooled SSH command execution with a fake paramiko client."""

import errno
import os
import socket
import threading
import time
from pathlib import Path
from types import SimpleNamespace

import paramiko
import pytest

from config_manager import ServerTarget
from gateway_errors import (
    CommandTimeout,
    GatewayError,
    InvalidRemotePath,
    PermissionDeniedRemote,
    RemoteCommandFailed,
    RemoteConnectionError,
    RemoteNotFound,
    UnknownServer,
)
from ssh_manager import CommandResult, SSHManager, raise_for_result

TARGETS = {1: ServerTarget(server_id=1, host="media.example", username="svc")}


class FakeChannel:
    def __init__(self, code):
        self._code = code
        self.closed = threading.Event()

    def recv_exit_status(self):
        return self._code

    def close(self):
        self.closed.set()


class ChattyStream:
    """stdout of a command that keeps printing until its channel is closed."""

    def __init__(self):
        self.channel = FakeChannel(-1)
        self.lines = 0

    def read(self):
        while not self.channel.closed.wait(timeout=0.01):
            self.lines += 1
        return b"still going\n" * self.lines


class FakeSFTP:
    def __init__(self, files, error=None):
        self.files = files
        self.error = error
        self.closed = False

    def get_channel(self):
        return None

    def stat(self, path):
        if path not in self.files:
            raise IOError(errno.ENOENT, "No such file")
        return SimpleNamespace(st_size=len(self.files[path]))

    def getfo(self, path, handle):
        if self.error is not None:
            raise self.error
        data = self.files[path]
        for start in range(0, len(data), 4):
            handle.write(data[start:start + 4])
        return len(data)

    def close(self):
        self.closed = True


class FakeStream:
    def __init__(self, data=b"", code=0, error=None):
        self._data = data
        self._error = error
        self.channel = FakeChannel(code)

    def read(self):
        if self._error is not None:
            raise self._error
        return self._data


class FakeClient:
    def __init__(self, script, sftp=None):
        self.script = script
        self.sftp = sftp
        self.commands = []
        self.closed = False

    def open_sftp(self):
        return self.sftp

    def exec_command(self, command, timeout=None):
        self.commands.append((command, timeout))
        outcome = self.script(command)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def close(self):
        self.closed = True


class Factory:
    def __init__(self, script=None, failures=0, failure=None, sftp=None):
        self.sftp = sftp
        self.script = script or (lambda command: (None, FakeStream(b"ok\n"), FakeStream(b"")))
        self.failures = failures
        self.failure = failure or OSError("connection refused")
        self.clients = []
        self.attempts = 0

    def __call__(self, target, connect_timeout):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.failure
        client = FakeClient(self.script, self.sftp)
        self.clients.append(client)
        return client


def manager(factory, **kwargs):
    delays = kwargs.pop("delays", [])
    kwargs.setdefault("retries", 2)
    kwargs.setdefault("retry_backoff", 0.5)
    return SSHManager(TARGETS, client_factory=factory, sleep=delays.append, **kwargs)


class TestExecute:
    def test_returns_output_and_exit_code(self):
        factory = Factory(lambda command: (None, FakeStream(b"hello\n", 3), FakeStream(b"warn\n", 3)))

        result = manager(factory).execute(1, "echo hello")

        assert result == CommandResult(stdout="hello\n", stderr="warn\n", exit_code=3)
        assert result.ok is False

    def test_sessions_are_reused(self):
        factory = Factory()
        ssh = manager(factory)

        ssh.execute(1, "true")
        ssh.execute(1, "true")

        assert factory.attempts == 1
        assert len(factory.clients[0].commands) == 2

    def test_transient_connect_failure_is_retried_with_backoff(self):
        factory = Factory(failures=2)
        delays = []

        result = manager(factory, delays=delays).execute(1, "ls")

        assert result.stdout == "ok\n"
        assert factory.attempts == 3
        assert delays == [0.5, 1.0]

    def test_retries_are_bounded(self):
        factory = Factory(failures=10)

        with pytest.raises(RemoteConnectionError):
            manager(factory, retries=2).execute(1, "ls")
        assert factory.attempts == 3

    def test_side_effect_commands_are_not_retried(self):
        factory = Factory(lambda command: paramiko.SSHException("channel closed"))

        with pytest.raises(RemoteConnectionError):
            manager(factory).execute(1, "rm -- /srv/x.mp4", side_effects=True)
        assert factory.attempts == 1

    def test_authentication_failure_is_not_retried(self):
        factory = Factory(failures=5, failure=paramiko.AuthenticationException("bad key"))

        with pytest.raises(RemoteConnectionError) as info:
            manager(factory).execute(1, "ls")
        assert info.value.code == "auth_failed"
        assert factory.attempts == 1

    def test_timeout_discards_session(self):
        factory = Factory(lambda command: (None, FakeStream(error=socket.timeout()), FakeStream()))
        ssh = manager(factory, command_timeout=5)

        with pytest.raises(CommandTimeout):
            ssh.execute(1, "sleep 100")
        assert factory.clients[0].closed is True
        assert factory.clients[0].commands == [("sleep 100", 5.0)]

    def test_unknown_server(self):
        with pytest.raises(UnknownServer):
            manager(Factory()).execute(42, "ls")

    def test_rejects_multi_line_commands(self):
        with pytest.raises(InvalidRemotePath):
            manager(Factory()).execute(1, "ls\nrm -rf /")

    def test_pool_bounds_parallel_sessions(self):
        started = threading.Event()
        release = threading.Event()

        def script(command):
            if command == "slow":
                started.set()
                release.wait(timeout=5)
            return (None, FakeStream(b"done"), FakeStream())

        factory = Factory(script)
        ssh = manager(factory, pool_size=1)
        results = []

        first = threading.Thread(target=lambda: results.append(ssh.execute(1, "slow")))
        first.start()
        started.wait(timeout=5)
        second = threading.Thread(target=lambda: results.append(ssh.execute(1, "fast")))
        second.start()
        time.sleep(0.05)

        assert len(results) == 0
        release.set()
        first.join(timeout=5)
        second.join(timeout=5)
        assert len(results) == 2
        assert factory.attempts == 1

    def test_close_releases_idle_clients(self):
        factory = Factory()
        ssh = manager(factory)
        ssh.execute(1, "true")

        ssh.close()

        assert factory.clients[0].closed is True


    def test_command_that_keeps_printing_hits_the_deadline(self):
        chatty = ChattyStream()
        factory = Factory(lambda command: (None, chatty, FakeStream()))
        ssh = manager(factory, command_timeout=0.2)
        started = time.monotonic()

        with pytest.raises(CommandTimeout):
            ssh.execute(1, "find -L /srv/media -type f")

        assert time.monotonic() - started < 4
        assert chatty.channel.closed.is_set()
        assert chatty.lines > 0
        assert factory.clients[0].closed is True
        assert factory.attempts == 1

    def test_fast_command_is_not_cut_short(self):
        factory = Factory(lambda command: (None, FakeStream(b"quick\n"), FakeStream()))

        result = manager(factory, command_timeout=0.2).execute(1, "true")
        time.sleep(0.3)

        assert result.stdout == "quick\n"
        assert factory.clients[0].closed is False


class TestDownload:
    def test_download_writes_file(self, tmp_path):
        sftp = FakeSFTP({"/srv/a.mp4": b"0123456789"})
        target = tmp_path / "a.part"

        received = manager(Factory(sftp=sftp)).download(1, "/srv/a.mp4", target)

        assert received == 10
        assert target.read_bytes() == b"0123456789"
        assert sftp.closed is True

    def test_missing_remote_file(self, tmp_path):
        sftp = FakeSFTP({})

        with pytest.raises(RemoteNotFound):
            manager(Factory(sftp=sftp)).download(1, "/srv/none.mp4", tmp_path / "x.part")

    def test_missing_local_directory_is_a_local_error(self, tmp_path):
        sftp = FakeSFTP({"/srv/a.mp4": b"data"})
        factory = Factory(sftp=sftp)

        with pytest.raises(GatewayError) as info:
            manager(factory).download(1, "/srv/a.mp4", tmp_path / "gone" / "a.part")

        assert type(info.value) is GatewayError
        assert info.value.code == "cache_io_error"
        assert factory.attempts == 1
        assert sftp.closed is False

    def test_local_disk_full_is_not_retried_as_remote_failure(self):
        if not os.path.exists("/dev/full"):
            pytest.skip("needs /dev/full")
        factory = Factory(sftp=FakeSFTP({"/srv/a.mp4": b"data"}))

        with pytest.raises(GatewayError) as info:
            manager(factory).download(1, "/srv/a.mp4", Path("/dev/full"))

        assert info.value.code == "cache_io_error"
        assert not isinstance(info.value, RemoteConnectionError)
        assert factory.attempts == 1

    def test_remote_read_error_is_retried(self, tmp_path):
        sftp = FakeSFTP({"/srv/a.mp4": b"data"}, error=IOError(errno.EIO, "Failure"))
        delays = []

        with pytest.raises(RemoteConnectionError):
            manager(Factory(sftp=sftp), delays=delays).download(1, "/srv/a.mp4", tmp_path / "a.part")

        assert delays == [0.5, 1.0]


class TestRaiseForResult:
    def test_success_passes_through(self):
        result = CommandResult("x", "", 0)
        assert raise_for_result(result, path="/a", action="stat") is result

    def test_not_found(self):
        result = CommandResult("", "stat: cannot statx '/a': No such file or directory", 1)
        with pytest.raises(RemoteNotFound):
            raise_for_result(result, path="/a", action="stat")

    def test_permission_denied(self):
        result = CommandResult("", "rm: cannot remove '/a': Permission denied", 1)
        with pytest.raises(PermissionDeniedRemote):
            raise_for_result(result, path="/a", action="delete")

    def test_other_failures_keep_exit_code(self):
        with pytest.raises(RemoteCommandFailed) as info:
            raise_for_result(CommandResult("", "disk on fire", 5), path="/a", action="delete")
        assert info.value.exit_code == 5
