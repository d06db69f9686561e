"""Shared pytest fixtures for all tests."""

import posixpath
import shlex
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
from PIL import Image

from config_manager import ServerTarget, resolve_server
from ssh_manager import CommandResult
from video_gateway import VideoGateway

MEDIA_ROOT = "/srv/media"


class FakeRemote:
    """In-memory stand-in for the SSH command channel.

    Understands the handful of commands the gateway sends (find, stat, test,
    rm, mv, ffprobe) and serves downloads from the same file table.
    """

    def __init__(self, media_root: str = MEDIA_ROOT) -> None:
        self.targets = {1: ServerTarget(server_id=1, host="media.example", media_root=media_root)}
        self.files: Dict[str, Tuple[bytes, float]] = {}
        self.commands: List[Tuple[str, bool]] = []
        self.downloads: List[str] = []
        self.probe_output: Optional[str] = None
        self.download_gate: Optional[threading.Event] = None
        self.download_error: Optional[Exception] = None
        self.truncate_downloads = False
        self.closed = False
        self._lock = threading.Lock()

    # -------------------------------------------------------------- setup
    def add(self, path: str, data: bytes, mtime: float = 1700000000.0) -> str:
        self.files[path] = (data, mtime)
        return path

    def _is_dir(self, path: str) -> bool:
        prefix = path.rstrip("/") + "/"
        return any(name.startswith(prefix) for name in self.files)

    # -------------------------------------------------------------- executor API
    def target(self, server_id) -> ServerTarget:
        return resolve_server(self.targets, server_id)

    def close(self) -> None:
        self.closed = True

    def execute(self, server_id, command, *, timeout=None, side_effects=False) -> CommandResult:
        self.target(server_id)
        with self._lock:
            self.commands.append((command, side_effects))
        argv = shlex.split(command)
        handler = getattr(self, f"_cmd_{argv[0]}", None)
        if handler is None:
            return CommandResult("", f"sh: {argv[0]}: command not found\n", 127)
        return handler(argv)

    def download(self, server_id, remote_path, local_path, *, timeout=None) -> int:
        self.target(server_id)
        with self._lock:
            self.downloads.append(remote_path)
        if self.download_gate is not None:
            self.download_gate.wait(timeout=5)
        if self.download_error is not None:
            raise self.download_error
        data, _ = self.files[remote_path]
        if self.truncate_downloads:
            data = data[: len(data) // 2]
        Path(local_path).write_bytes(data)
        return len(data)

    # -------------------------------------------------------------- commands
    def _cmd_find(self, argv):
        directory = argv[2]
        if not self._is_dir(directory):
            return CommandResult("", f"find: '{directory}': No such file or directory\n", 1)
        recursive = "-maxdepth" not in argv
        prefix = directory.rstrip("/") + "/"
        lines = []
        for name, (data, mtime) in sorted(self.files.items()):
            if not name.startswith(prefix):
                continue
            relative = name[len(prefix):]
            if not recursive and "/" in relative:
                continue
            lines.append(f"{len(data)}|{mtime:.10f}|{relative}")
        return CommandResult("\n".join(lines) + "\n", "", 0)

    def _cmd_stat(self, argv):
        path = argv[-1]
        if path in self.files:
            data, mtime = self.files[path]
            return CommandResult(f"regular file|{len(data)}|{int(mtime)}\n", "", 0)
        if self._is_dir(path):
            return CommandResult("directory|4096|1700000000\n", "", 0)
        return CommandResult("", f"stat: cannot statx '{path}': No such file or directory\n", 1)

    def _cmd_test(self, argv):
        path = argv[-1]
        return CommandResult("", "", 0 if path in self.files or self._is_dir(path) else 1)

    def _cmd_rm(self, argv):
        path = argv[-1]
        if path not in self.files:
            return CommandResult("", f"rm: cannot remove '{path}': No such file or directory\n", 1)
        del self.files[path]
        return CommandResult("", "", 0)

    def _cmd_mv(self, argv):
        source, destination = argv[-2], argv[-1]
        if source not in self.files:
            return CommandResult("", f"mv: cannot stat '{source}': No such file or directory\n", 1)
        if destination not in self.files:
            self.files[destination] = self.files.pop(source)
        return CommandResult("", "", 0)

    def _cmd_ffprobe(self, argv):
        if self.probe_output is None:
            return CommandResult("", "sh: ffprobe: command not found\n", 127)
        return CommandResult(self.probe_output, "", 0)


class FakeExtractor:
    """Frame extractor that paints a solid image instead of running ffmpeg."""

    def __init__(self, color=(200, 30, 30), size=(640, 360)) -> None:
        self.color = color
        self.size = size
        self.calls: List[Tuple[Path, Optional[float]]] = []
        self.error: Optional[Exception] = None

    def __call__(self, video_path: Path, output_path: Path, timestamp: Optional[float]) -> None:
        self.calls.append((Path(video_path), timestamp))
        if self.error is not None:
            raise self.error
        Image.new("RGB", self.size, self.color).save(output_path, "JPEG")


def video_path(owner: str, name: str, folder: Optional[str] = None) -> str:
    parts = [MEDIA_ROOT, owner] + ([folder] if folder else []) + [name]
    return posixpath.join(*parts)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def gateway(tmp_path, remote, extractor):
    instance = VideoGateway(
        remote,
        cache_dir=tmp_path / "cache",
        cache_quota_bytes=10 * 1024 * 1024,
        thumbnail_quota_bytes=1024 * 1024,
        extensions=[".mp4", ".mkv", ".webm"],
        extractor=extractor,
        chunk_size=64,
    )
    yield instance
    instance.close()


@pytest.fixture
def sample_video(remote):
    """A 1000 byte video whose byte at offset i is i % 256."""

    data = bytes(i % 256 for i in range(1000))
    return remote.add(video_path("alice", "clip.mp4"), data)
