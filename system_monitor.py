"""
Lightweight helpers to report disk usage for the cache volume.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Union

import psutil


def _nearest_existing(path: Path) -> Optional[Path]:
    """Return ``path`` or the closest existing parent, or None if unavailable."""
    for candidate in (path, *path.parents):
        try:
            if candidate.exists():
                return candidate
        except OSError:
            continue
    return None


def _bytes_to_gb(value: float) -> float:
    """Convert bytes to gigabytes rounded to one decimal place."""
    return round(value / (1024**3), 1)


def get_disk_stats(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Gather disk statistics for the volume holding ``path``.

    Returns:
        dict: Raw byte counts plus rounded gigabyte figures. Fields default to
        None when the volume cannot be inspected.
    """

    stats: Dict[str, Any] = {
        "disk_path": None,
        "disk_free_bytes": None,
        "disk_total_bytes": None,
        "disk_used": None,
        "disk_total": None,
        "disk_percent": None,
    }

    existing = _nearest_existing(Path(path))
    if existing is None:
        return stats

    stats["disk_path"] = str(existing)
    try:
        disk = psutil.disk_usage(str(existing))
    except OSError:
        return stats
    stats["disk_free_bytes"] = int(disk.free)
    stats["disk_total_bytes"] = int(disk.total)
    stats["disk_used"] = _bytes_to_gb(disk.used)
    stats["disk_total"] = _bytes_to_gb(disk.total)
    stats["disk_percent"] = round(disk.percent, 1)
    return stats
