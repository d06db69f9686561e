"""Serve cached files with full and single byte-range responses."""

from __future__ import annotations

import logging
import mimetypes
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional, Union

from werkzeug.http import http_date, parse_range_header

from gateway_errors import CorruptLocalCache, UnsupportedStreamType

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

_FALLBACK_TYPES = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".flv": "video/x-flv",
    ".wmv": "video/x-ms-wmv",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
}


class StreamKind(str, Enum):
    LOCAL = "local"


@dataclass(frozen=True)
class VideoStream:
    """A playable source for a remote video. Only cached local files exist today."""

    local_path: Path
    cached: bool
    remote_path: str
    kind: StreamKind = StreamKind.LOCAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "type": self.kind.value,
            "local_path": str(self.local_path),
            "cached": self.cached,
        }


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


class RangeNotSatisfiable(ValueError):
    pass


def parse_byte_range(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Resolve a ``Range`` header against a file of ``size`` bytes.

    Returns None when the header is absent or malformed (serve the whole
    file) and raises :class:`RangeNotSatisfiable` when it is well formed but
    starts past the end of the file.
    """

    if not header:
        return None
    parsed = parse_range_header(header)
    if parsed is None or parsed.units != "bytes" or len(parsed.ranges) != 1:
        return None
    start, stop = parsed.ranges[0]
    if start < 0:
        # suffix range: the last -start bytes
        if size <= 0:
            raise RangeNotSatisfiable(header)
        return ByteRange(max(0, size + start), size - 1)
    if start >= size:
        raise RangeNotSatisfiable(header)
    end = size - 1 if stop is None else min(stop - 1, size - 1)
    return ByteRange(start, end)


class ByteSource:
    """Lazy reader over ``[start, end]`` of a file.

    The file is opened on first use unless an open ``handle`` is passed in,
    and closed once the window is exhausted or :meth:`close` is called,
    whichever comes first. Bytes are only read as the caller asks for them.
    """

    def __init__(
        self,
        path: Union[str, Path],
        start: int,
        end: int,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        handle: Optional[BinaryIO] = None,
    ) -> None:
        self.path = Path(path)
        self.start = start
        self.end = end
        self.chunk_size = max(1, int(chunk_size))
        self._position = 0
        self._handle: Optional[BinaryIO] = handle
        self._closed = False

    @property
    def length(self) -> int:
        return max(0, self.end - self.start + 1)

    @property
    def closed(self) -> bool:
        return self._closed

    def _file(self) -> BinaryIO:
        if self._closed:
            raise ValueError("I/O operation on closed byte source")
        if self._handle is None:
            self._handle = open(self.path, "rb")
        return self._handle

    def tell(self) -> int:
        return self._position

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        if whence == os.SEEK_SET:
            target = offset
        elif whence == os.SEEK_CUR:
            target = self._position + offset
        elif whence == os.SEEK_END:
            target = self.length + offset
        else:
            raise ValueError(f"Invalid whence ({whence})")
        self._position = min(max(0, target), self.length)
        return self._position

    def read(self, size: int = -1) -> bytes:
        remaining = self.length - self._position
        if remaining <= 0:
            return b""
        if size is None or size < 0 or size > remaining:
            size = remaining
        handle = self._file()
        handle.seek(self.start + self._position)
        data = handle.read(size)
        self._position += len(data)
        return data

    def __iter__(self) -> "ByteSource":
        return self

    def __next__(self) -> bytes:
        if self._closed:
            raise StopIteration
        chunk = self.read(self.chunk_size)
        if not chunk:
            self.close()
            raise StopIteration
        return chunk

    def close(self) -> None:
        self._closed = True
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()

    def __enter__(self) -> "ByteSource":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


@dataclass
class StreamResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[ByteSource] = None


def guess_content_type(name: str) -> str:
    mime, _ = mimetypes.guess_type(name)
    if mime:
        return mime
    return _FALLBACK_TYPES.get(Path(name).suffix.lower(), "application/octet-stream")


class StreamingServer:
    """Build status, headers and a byte source for cached files."""

    def __init__(self, *, chunk_size: int = DEFAULT_CHUNK_SIZE, max_age: int = 3600) -> None:
        self.chunk_size = max(1, int(chunk_size))
        self.max_age = max(0, int(max_age))

    def serve(self, stream: VideoStream, range_header: Optional[str]) -> StreamResponse:
        if stream.kind is not StreamKind.LOCAL:
            raise UnsupportedStreamType(f"Stream type '{stream.kind}' is not supported")
        filename = Path(stream.remote_path).name
        return self.prepare_response(
            stream.local_path,
            range_header,
            content_type=guess_content_type(filename),
            filename=filename,
        )

    def prepare_response(
        self,
        local_path: Union[str, Path],
        range_header: Optional[str] = None,
        *,
        content_type: Optional[str] = None,
        filename: Optional[str] = None,
        max_age: Optional[int] = None,
    ) -> StreamResponse:
        path = Path(local_path)
        # the descriptor keeps the content readable even if the cache unlinks
        # the file before the body has been sent
        try:
            handle = open(path, "rb")
        except OSError as exc:
            raise CorruptLocalCache(f"Cached file {path.name} is not readable") from exc
        try:
            stat_info = os.fstat(handle.fileno())
        except OSError as exc:
            handle.close()
            raise CorruptLocalCache(f"Cached file {path.name} is not readable") from exc
        size = stat_info.st_size
        headers: Dict[str, str] = {
            "Accept-Ranges": "bytes",
            "Content-Type": content_type or guess_content_type(path.name),
            "Cache-Control": f"public, max-age={self.max_age if max_age is None else max_age}",
            "Last-Modified": http_date(stat_info.st_mtime),
        }
        if filename:
            safe_name = filename.replace('"', "").replace("\r", "").replace("\n", "")
            headers["Content-Disposition"] = f'inline; filename="{safe_name}"'

        try:
            byte_range = parse_byte_range(range_header, size)
        except RangeNotSatisfiable:
            logger.debug("Unsatisfiable range %r for %s (%d bytes)", range_header, path.name, size)
            headers["Content-Range"] = f"bytes */{size}"
            headers["Content-Length"] = "0"
            handle.close()
            return StreamResponse(status=416, headers=headers)

        if byte_range is None:
            if range_header:
                logger.debug("Ignoring malformed range %r for %s", range_header, path.name)
            headers["Content-Length"] = str(size)
            return StreamResponse(
                status=200,
                headers=headers,
                body=ByteSource(path, 0, size - 1, chunk_size=self.chunk_size, handle=handle),
            )

        headers["Content-Range"] = f"bytes {byte_range.start}-{byte_range.end}/{size}"
        headers["Content-Length"] = str(byte_range.length)
        return StreamResponse(
            status=206,
            headers=headers,
            body=ByteSource(path, byte_range.start, byte_range.end, chunk_size=self.chunk_size, handle=handle),
        )
