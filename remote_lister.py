"""Enumerate and stat video files on remote servers.

Listings are produced by ``find -printf`` on the remote side and parsed line
by line; anything that does not match the expected ``size|mtime|path`` shape
is skipped rather than failing the whole listing.
"""

from __future__ import annotations

import logging
import math
import posixpath
import shlex
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import remote_paths
from gateway_errors import RemoteNotFound
from ssh_manager import CommandResult, raise_for_result

logger = logging.getLogger(__name__)

LIST_FORMAT = "%s|%T@|%P\\n"
STAT_FORMAT = "%F|%s|%Y\\n"


def _to_iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(microsecond=0).isoformat()


def human_readable_size(size: int) -> str:
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    idx = int(min(len(units) - 1, math.floor(math.log(size, 1024))))
    scaled = size / (1024**idx)
    return f"{scaled:.1f} {units[idx]}"


@dataclass(frozen=True)
class RemoteFileMeta:
    name: str
    path: str
    size: int
    mtime: float
    is_file: bool = True

    @property
    def ext(self) -> str:
        return remote_paths.extension(self.name)

    @property
    def folder(self) -> str:
        return posixpath.dirname(self.path)

    @property
    def modified_at(self) -> str:
        return _to_iso(self.mtime)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "folder": self.folder,
            "size": self.size,
            "size_text": human_readable_size(self.size),
            "modified_at": self.modified_at,
            "mtime": self.mtime,
            "ext": self.ext,
        }


def parse_listing(output: str, directory: str) -> List[RemoteFileMeta]:
    """Parse ``find -printf`` output rooted at ``directory``."""

    entries: List[RemoteFileMeta] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("|", 2)
        if len(parts) != 3 or not parts[2]:
            logger.debug("Skipping unparsable listing line: %r", line)
            continue
        size_text, mtime_text, relative = parts
        try:
            size = int(size_text)
            mtime = float(mtime_text)
        except ValueError:
            logger.debug("Skipping listing line with invalid numbers: %r", line)
            continue
        if size < 0 or not math.isfinite(mtime):
            continue
        entries.append(
            RemoteFileMeta(
                name=posixpath.basename(relative),
                path=posixpath.join(directory, relative),
                size=size,
                mtime=mtime,
            )
        )
    return entries


def parse_stat(output: str, path: str) -> Optional[RemoteFileMeta]:
    line = output.strip().splitlines()[0] if output.strip() else ""
    parts = line.split("|")
    if len(parts) != 3:
        return None
    kind, size_text, mtime_text = parts
    try:
        size = int(size_text)
        mtime = float(mtime_text)
    except ValueError:
        return None
    return RemoteFileMeta(
        name=posixpath.basename(path),
        path=path,
        size=size,
        mtime=mtime,
        is_file=kind.strip().startswith("regular"),
    )


class RemoteLister:
    """List remote directories through a command executor."""

    def __init__(self, executor: Any, extensions: Iterable[str]) -> None:
        self._executor = executor
        self._extensions = {ext.lower() for ext in extensions}

    def is_video(self, path: str) -> bool:
        return remote_paths.has_extension(path, self._extensions)

    def list_directory(
        self,
        server_id: Any,
        directory: str,
        *,
        recursive: bool = True,
    ) -> List[RemoteFileMeta]:
        """Return the video files below ``directory``, newest first."""

        directory = remote_paths.canonicalize(directory)
        depth = "" if recursive else "-maxdepth 1 "
        command = (
            f"find -L {remote_paths.quote(directory)} {depth}-type f "
            f"-printf {shlex.quote(LIST_FORMAT)}"
        )
        result: CommandResult = self._executor.execute(server_id, command)
        entries = parse_listing(result.stdout, directory)
        if not result.ok:
            # find keeps going past unreadable subfolders; only a missing or
            # unreadable root is fatal
            if entries:
                logger.warning(
                    "Partial listing of %s on server %s: %s",
                    directory,
                    server_id,
                    result.stderr.strip(),
                )
            else:
                raise_for_result(result, path=directory, action="list")
        videos = [entry for entry in entries if self.is_video(entry.name)]
        videos.sort(key=lambda entry: entry.mtime, reverse=True)
        logger.debug("Listed %d videos in %s on server %s", len(videos), directory, server_id)
        return videos

    def stat(self, server_id: Any, path: str) -> RemoteFileMeta:
        path = remote_paths.canonicalize(path)
        command = f"stat -L --printf {shlex.quote(STAT_FORMAT)} -- {remote_paths.quote(path)}"
        result: CommandResult = self._executor.execute(server_id, command)
        raise_for_result(result, path=path, action="stat")
        meta = parse_stat(result.stdout, path)
        if meta is None:
            raise RemoteNotFound(f"Unable to read metadata for {path}")
        return meta

    def exists(self, server_id: Any, path: str) -> bool:
        path = remote_paths.canonicalize(path)
        result: CommandResult = self._executor.execute(server_id, f"test -e {remote_paths.quote(path)}")
        return result.ok
