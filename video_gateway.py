"""Service facade turning remote video paths into cached, streamable files.

A :class:`VideoGateway` is built once by the process entry point
(:meth:`VideoGateway.from_config`) and torn down with :meth:`close`, which
releases pooled SSH sessions and leftover temp files.
"""

from __future__ import annotations

import json
import logging
import posixpath
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import remote_paths
from cache_admin import CacheAdmin
from cache_manager import CacheStats, CacheStore, RemoteVideoRef, ThumbnailKey
from config_manager import build_server_targets
from gateway_errors import (
    CommandTimeout,
    CorruptLocalCache,
    InvalidRemotePath,
    PermissionDeniedRemote,
    RemoteConflict,
    RemoteConnectionError,
    RemoteNotFound,
    UnknownServer,
)
from remote_lister import RemoteLister, human_readable_size
from ssh_manager import SSHManager, raise_for_result
from streaming import StreamingServer, StreamResponse, VideoStream
from thumbnail_manager import FrameExtractor, ThumbnailGenerator

logger = logging.getLogger(__name__)

MB = 1024 * 1024
PROBE_TIMEOUT = 20.0


class VideoGateway:
    def __init__(
        self,
        executor: Any,
        *,
        cache_dir: Path,
        cache_quota_bytes: int,
        thumbnail_quota_bytes: int,
        extensions: Iterable[str],
        extractor: Optional[FrameExtractor] = None,
        thumb_size: tuple = (320, 180),
        thumb_quality: int = 70,
        chunk_size: int = 64 * 1024,
        stream_max_age: int = 3600,
        thumb_max_age: int = 86400,
    ) -> None:
        self.executor = executor
        cache_dir = Path(cache_dir)
        self.lister = RemoteLister(executor, extensions)
        self.videos = CacheStore(cache_dir / "videos", quota_bytes=cache_quota_bytes, name="videos")
        self.thumbnail_store = CacheStore(
            cache_dir / "thumbnails",
            quota_bytes=thumbnail_quota_bytes,
            key_type=ThumbnailKey,
            name="thumbnails",
        )
        self.thumbnails = ThumbnailGenerator(
            self.thumbnail_store,
            extractor=extractor,
            width=thumb_size[0],
            height=thumb_size[1],
            quality=thumb_quality,
        )
        self.streaming = StreamingServer(chunk_size=chunk_size, max_age=stream_max_age)
        self.admin = CacheAdmin(self.videos, self.thumbnail_store)
        self.thumb_max_age = thumb_max_age

    @classmethod
    def from_config(
        cls,
        cfg: Mapping[str, Any],
        *,
        executor: Any = None,
        extractor: Optional[FrameExtractor] = None,
    ) -> "VideoGateway":
        if executor is None:
            executor = SSHManager.from_config(cfg, build_server_targets(cfg))
        return cls(
            executor,
            cache_dir=Path(cfg.get("CACHE_DIR") or "./cache"),
            cache_quota_bytes=int(float(cfg.get("CACHE_QUOTA_MB") or 0) * MB),
            thumbnail_quota_bytes=int(float(cfg.get("THUMBNAIL_QUOTA_MB") or 0) * MB),
            extensions=cfg.get("VIDEO_EXTENSIONS") or [],
            extractor=extractor,
            thumb_size=(int(cfg.get("THUMB_WIDTH") or 320), int(cfg.get("THUMB_HEIGHT") or 180)),
            thumb_quality=int(cfg.get("THUMB_JPEG_QUALITY") or 70),
            chunk_size=int(cfg.get("STREAM_CHUNK_SIZE") or 64 * 1024),
            stream_max_age=int(cfg.get("STREAM_CACHE_MAX_AGE") or 0),
            thumb_max_age=int(cfg.get("THUMB_CACHE_MAX_AGE") or 0),
        )

    def close(self) -> None:
        self.videos.close()
        self.thumbnail_store.close()
        self.executor.close()

    # ------------------------------------------------------------------ Listing
    def owner_directory(self, server_id: Any, owner_prefix: str, folder: Optional[str] = None) -> str:
        target = self.executor.target(server_id)
        return remote_paths.join(target.media_root, owner_prefix, *(folder.strip("/").split("/") if folder else []))

    def list_videos(self, server_id: Any, owner_prefix: str, folder: Optional[str] = None) -> List[Dict[str, Any]]:
        target = self.executor.target(server_id)
        directory = self.owner_directory(target.server_id, owner_prefix, folder)
        entries = self.lister.list_directory(target.server_id, directory)
        videos = []
        for entry in entries:
            payload = entry.to_dict()
            payload["cached"] = self.videos.is_cached(RemoteVideoRef(target.server_id, entry.path))
            videos.append(payload)
        return videos

    @staticmethod
    def summarize(videos: List[Dict[str, Any]]) -> Dict[str, Any]:
        total = sum(int(item.get("size") or 0) for item in videos)
        return {
            "total_videos": len(videos),
            "total_size": total,
            "total_size_text": human_readable_size(total),
        }

    # ------------------------------------------------------------------ Availability
    def check_availability(self, server_id: Any, remote_path: str) -> Dict[str, Any]:
        """Report whether ``remote_path`` is a playable video on the server.

        Missing files, rejected paths and unsupported formats are reported as
        unavailable; transport failures propagate.
        """

        try:
            ref = RemoteVideoRef.create(server_id, remote_path)
        except (InvalidRemotePath, UnknownServer) as exc:
            return {"available": False, "reason": exc.message}
        if not self.lister.is_video(ref.remote_path):
            return {"available": False, "reason": "Unsupported video format"}
        try:
            meta = self.lister.stat(ref.server_id, ref.remote_path)
        except RemoteNotFound:
            return {"available": False, "reason": "Video not found on server"}
        except UnknownServer as exc:
            return {"available": False, "reason": exc.message}
        except PermissionDeniedRemote:
            return {"available": False, "reason": "Video is not readable on server"}
        if not meta.is_file:
            return {"available": False, "reason": "Path is not a file"}
        return {
            "available": True,
            "size": meta.size,
            "modified_at": meta.modified_at,
            "cached": self.videos.is_cached(ref),
        }

    def get_video_info(self, server_id: Any, remote_path: str) -> Dict[str, Any]:
        ref = RemoteVideoRef.create(server_id, remote_path)
        meta = self.lister.stat(ref.server_id, ref.remote_path)
        info = meta.to_dict()
        entry = self.videos.peek(ref)
        info["cached"] = entry is not None
        if entry is not None:
            info["cached_size"] = entry.size_bytes
            info["cache_stale"] = entry.size_bytes != meta.size
        info.update(self._probe(ref))
        return info

    def _probe(self, ref: RemoteVideoRef) -> Dict[str, Any]:
        command = (
            "ffprobe -v error -select_streams v:0 "
            "-show_entries stream=codec_name,width,height,bit_rate:format=duration,bit_rate "
            f"-of json {remote_paths.quote(ref.remote_path)}"
        )
        try:
            result = self.executor.execute(ref.server_id, command, timeout=PROBE_TIMEOUT)
        except (CommandTimeout, RemoteConnectionError) as exc:
            logger.debug("ffprobe skipped for %s: %s", ref.remote_path, exc.message)
            return {}
        if not result.ok:
            logger.debug("ffprobe unavailable for %s (exit %s)", ref.remote_path, result.exit_code)
            return {}
        try:
            data = json.loads(result.stdout or "{}")
        except ValueError:
            return {}
        streams = data.get("streams") or [{}]
        stream = streams[0] if isinstance(streams[0], dict) else {}
        fmt = data.get("format") or {}
        probed: Dict[str, Any] = {}
        for field_name, value in (
            ("duration", fmt.get("duration")),
            ("bit_rate", stream.get("bit_rate") or fmt.get("bit_rate")),
            ("width", stream.get("width")),
            ("height", stream.get("height")),
        ):
            try:
                if value is not None:
                    probed[field_name] = float(value) if field_name == "duration" else int(value)
            except (TypeError, ValueError):
                continue
        if stream.get("codec_name"):
            probed["codec"] = stream["codec_name"]
        return probed

    # ------------------------------------------------------------------ Streaming
    def get_video_stream(
        self,
        server_id: Any,
        remote_path: str,
        video_id: Optional[str] = None,
        *,
        revalidate: bool = False,
    ) -> VideoStream:
        ref = RemoteVideoRef.create(server_id, remote_path)
        if revalidate:
            entry = self.videos.peek(ref)
            if entry is not None:
                meta = self.lister.stat(ref.server_id, ref.remote_path)
                if meta.size != entry.size_bytes:
                    logger.info("Remote copy of %s changed size; refreshing cache", ref.remote_path)
                    self.videos.invalidate(ref)
        cached = self.videos.is_cached(ref)
        local_path = self._ensure_local(ref)
        logger.info(
            "Serving %s %s%s",
            posixpath.basename(ref.remote_path),
            "(cache)" if cached else "(new)",
            f" [{video_id}]" if video_id else "",
        )
        return VideoStream(local_path=local_path, cached=cached, remote_path=ref.remote_path)

    def open_stream(
        self,
        server_id: Any,
        remote_path: str,
        range_header: Optional[str] = None,
        video_id: Optional[str] = None,
    ) -> StreamResponse:
        stream = self.get_video_stream(server_id, remote_path, video_id)
        try:
            return self.streaming.serve(stream, range_header)
        except CorruptLocalCache as exc:
            # evicted or removed between lookup and open; fetch it again once
            logger.warning("%s; retrying %s", exc.message, stream.remote_path)
        stream = self.get_video_stream(server_id, remote_path, video_id)
        return self.streaming.serve(stream, range_header)

    def _ensure_local(self, ref: RemoteVideoRef) -> Path:
        return self.videos.get_or_fetch(ref, lambda temp_path: self._fetch(ref, temp_path))

    def _fetch(self, ref: RemoteVideoRef, temp_path: Path) -> None:
        meta = self.lister.stat(ref.server_id, ref.remote_path)
        if not meta.is_file:
            raise RemoteNotFound(f"{ref.remote_path} is not a regular file")
        received = self.executor.download(ref.server_id, ref.remote_path, temp_path)
        if received != meta.size:
            raise RemoteConnectionError(
                f"Incomplete transfer of {ref.remote_path}: {received} of {meta.size} bytes",
                code="incomplete_transfer",
            )

    # ------------------------------------------------------------------ Thumbnails
    def generate_thumbnail(
        self,
        server_id: Any,
        remote_path: str,
        video_id: Optional[str] = None,
        marker: Optional[str] = None,
    ) -> Dict[str, Any]:
        ref = RemoteVideoRef.create(server_id, remote_path)
        key = ThumbnailKey(ref, marker)
        path = self.thumbnails.get_or_generate(key, lambda: self._ensure_local(ref))
        return {"success": True, "thumbnail_path": str(path)}

    # ------------------------------------------------------------------ Mutations
    def delete_video(self, server_id: Any, remote_path: str) -> None:
        ref = RemoteVideoRef.create(server_id, remote_path)
        try:
            result = self.executor.execute(
                ref.server_id,
                f"rm -- {remote_paths.quote(ref.remote_path)}",
                side_effects=True,
            )
            raise_for_result(result, path=ref.remote_path, action="delete")
        finally:
            self._invalidate(ref)
        logger.info("Deleted %s on server %s", ref.remote_path, ref.server_id)

    def rename_video(self, server_id: Any, old_remote_path: str, new_remote_path: str) -> Dict[str, Any]:
        """Rename a remote video; ``new_remote_path`` may be a bare new name."""

        ref = RemoteVideoRef.create(server_id, old_remote_path)
        destination = remote_paths.build_renamed_path(ref.remote_path, new_remote_path)
        if destination == ref.remote_path:
            raise RemoteConflict("New name matches the current name")
        if self.lister.exists(ref.server_id, destination):
            raise RemoteConflict(f"{posixpath.basename(destination)} already exists")
        try:
            result = self.executor.execute(
                ref.server_id,
                f"mv -n -- {remote_paths.quote(ref.remote_path)} {remote_paths.quote(destination)}",
                side_effects=True,
            )
            raise_for_result(result, path=ref.remote_path, action="rename")
        finally:
            self._invalidate(ref)
        logger.info(
            "Renamed %s -> %s on server %s",
            posixpath.basename(ref.remote_path),
            posixpath.basename(destination),
            ref.server_id,
        )
        return {
            "old_name": posixpath.basename(ref.remote_path),
            "new_name": posixpath.basename(destination),
            "new_path": destination,
        }

    def _invalidate(self, ref: RemoteVideoRef) -> None:
        self.videos.invalidate(ref)
        self.thumbnails.invalidate_video(ref.server_id, ref.remote_path)

    # ------------------------------------------------------------------ Cache admin
    def get_cache_status(self) -> CacheStats:
        return self.admin.status()

    def cache_report(self) -> Dict[str, Any]:
        return self.admin.report()

    def clear_cache(self) -> Dict[str, int]:
        return {"removed_files": self.admin.clear()}

