"""Still-frame thumbnails for cached videos.

Frames are pulled with ffmpeg, letterboxed to a fixed size with Pillow and
stored as JPEG in their own cache namespace, one per video and timestamp.
"""

from __future__ import annotations

import logging
import math
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Optional, Union

from PIL import Image

from cache_manager import CacheStore, ThumbnailKey
from gateway_errors import GatewayError, ThumbnailExtractionFailed

logger = logging.getLogger(__name__)

THUMB_BG = (24, 24, 24)
DEFAULT_TIMESTAMP = 0.1

try:  # Pillow >= 9.1
    _RESAMPLING_FILTER = Image.Resampling.LANCZOS  # type: ignore[attr-defined]
except AttributeError:  # pragma: no cover - legacy Pillow
    _RESAMPLING_FILTER = Image.LANCZOS  # type: ignore[attr-defined]


def parse_marker(marker: Optional[str]) -> Optional[float]:
    """Return the frame timestamp encoded in ``marker`` (seconds), if any."""

    if marker is None or str(marker).strip() == "":
        return None
    try:
        value = float(marker)
    except (TypeError, ValueError):
        raise ThumbnailExtractionFailed(f"Invalid thumbnail timestamp '{marker}'", status=400)
    if not math.isfinite(value) or value < 0:
        raise ThumbnailExtractionFailed(f"Invalid thumbnail timestamp '{marker}'", status=400)
    return value


class FfmpegFrameExtractor:
    """Pull a single frame out of a local video with ffmpeg."""

    def __init__(self, ffmpeg_path: Optional[str] = None, ffprobe_path: Optional[str] = None) -> None:
        self._ffmpeg_path = ffmpeg_path
        self._ffprobe_path = ffprobe_path

    def __call__(self, video_path: Path, output_path: Path, timestamp: Optional[float]) -> None:
        ffmpeg_path = self._ffmpeg_path or shutil.which("ffmpeg")
        if not ffmpeg_path:
            raise ThumbnailExtractionFailed("ffmpeg is not available; cannot render video thumbnail")
        self._ffmpeg_path = ffmpeg_path
        if timestamp is None:
            timestamp = self._probe_midpoint(video_path)
        cmd = [
            ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-ss",
            f"{timestamp:.3f}",
            "-i",
            str(video_path),
            "-frames:v",
            "1",
            "-f",
            "image2",
            str(output_path),
        ]
        try:
            subprocess.run(cmd, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)  # noqa: S603
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or b"").decode("utf-8", errors="replace").strip()
            raise ThumbnailExtractionFailed(f"ffmpeg could not extract a frame: {detail or exc}") from exc
        except OSError as exc:
            raise ThumbnailExtractionFailed(f"ffmpeg could not be started: {exc}") from exc
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise ThumbnailExtractionFailed("ffmpeg produced no frame")

    def _probe_midpoint(self, path: Path) -> float:
        ffprobe_path = self._ffprobe_path or shutil.which("ffprobe")
        if not ffprobe_path:
            return DEFAULT_TIMESTAMP
        self._ffprobe_path = ffprobe_path
        cmd = [
            ffprobe_path,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)  # noqa: S603
            duration = float(result.stdout.strip())
        except (ValueError, subprocess.CalledProcessError, OSError):
            return DEFAULT_TIMESTAMP
        if not math.isfinite(duration) or duration <= 0:
            return DEFAULT_TIMESTAMP
        return duration / 2


FrameExtractor = Callable[[Path, Path, Optional[float]], None]


class ThumbnailGenerator:
    """Create and cache one JPEG still per video (and optional timestamp)."""

    def __init__(
        self,
        store: CacheStore,
        *,
        extractor: Optional[FrameExtractor] = None,
        width: int = 320,
        height: int = 180,
        quality: int = 70,
    ) -> None:
        self.store = store
        self._extractor = extractor or FfmpegFrameExtractor()
        self.width = max(1, int(width))
        self.height = max(1, int(height))
        self.quality = min(95, max(1, int(quality)))

    def get_or_generate(self, key: ThumbnailKey, source: Callable[[], Union[str, Path]]) -> Path:
        """Return the cached thumbnail for ``key``.

        ``source`` is only called on a miss and must return the local path of
        the full video, fetching it first if needed.
        """

        timestamp = parse_marker(key.marker)
        return self.store.get_or_fetch(key, lambda temp_path: self._render(source, temp_path, timestamp))

    def invalidate_video(self, server_id: int, remote_path: str) -> int:
        return self.store.invalidate_matching(
            lambda key: key.ref.server_id == server_id and key.ref.remote_path == remote_path
        )

    def _render(self, source: Callable[[], Union[str, Path]], output_path: Path, timestamp: Optional[float]) -> None:
        video_path = Path(source())
        if not video_path.is_file() or not os.access(video_path, os.R_OK):
            raise ThumbnailExtractionFailed(f"Source video {video_path.name} is not readable")

        handle, frame_name = tempfile.mkstemp(suffix=".jpg", dir=str(output_path.parent))
        os.close(handle)
        frame_path = Path(frame_name)
        try:
            try:
                self._extractor(video_path, frame_path, timestamp)
            except GatewayError:
                raise
            except Exception as exc:
                raise ThumbnailExtractionFailed(f"Frame extraction failed: {exc}") from exc
            try:
                with Image.open(frame_path) as img:
                    img = img.convert("RGB")
                    img.thumbnail((self.width, self.height), _RESAMPLING_FILTER)
                    result = Image.new("RGB", (self.width, self.height), THUMB_BG)
                    offset = ((self.width - img.width) // 2, (self.height - img.height) // 2)
                    result.paste(img, offset)
                result.save(output_path, "JPEG", quality=self.quality)
            except OSError as exc:
                raise ThumbnailExtractionFailed(f"Extracted frame could not be processed: {exc}") from exc
            logger.debug("Rendered thumbnail for %s at %s", video_path.name, timestamp)
        finally:
            try:
                frame_path.unlink()
            except OSError:
                pass
