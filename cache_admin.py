"""Aggregate reporting and full invalidation across cache namespaces."""

from __future__ import annotations

import logging
from typing import Any, Dict

from cache_manager import CacheStats, CacheStore
from system_monitor import get_disk_stats

logger = logging.getLogger(__name__)


class CacheAdmin:
    def __init__(self, videos: CacheStore, thumbnails: CacheStore) -> None:
        self.videos = videos
        self.thumbnails = thumbnails

    def status(self) -> CacheStats:
        return self.videos.status()

    def report(self) -> Dict[str, Any]:
        """Video and thumbnail statistics plus free space on the cache volume."""

        videos = self.videos.status()
        thumbnails = self.thumbnails.status()
        payload: Dict[str, Any] = videos.to_dict()
        payload["cache_dir"] = str(self.videos.root)
        payload["thumbnails"] = thumbnails.to_dict()
        payload["disk"] = get_disk_stats(self.videos.root)
        return payload

    def clear(self) -> int:
        removed_videos = self.videos.clear()
        removed_thumbnails = self.thumbnails.clear()
        total = removed_videos + removed_thumbnails
        logger.info(
            "Cache cleared: %d videos and %d thumbnails removed",
            removed_videos,
            removed_thumbnails,
        )
        return total
