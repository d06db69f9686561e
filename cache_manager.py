"""Disk backed cache of remote files with single-flight fetches.

Each :class:`CacheStore` owns one directory (a namespace). Entries are keyed by
immutable key objects exposing ``token``, ``suffix``, ``to_dict()`` and a
``from_dict()`` classmethod. Files are written to a hidden ``.part`` path and
renamed into place only once the fetch completed, so readers never see a
partial file.

Locking: ``_lock`` guards the entry and flight maps plus the running byte
total. It is only held for bookkeeping; fetches and all file I/O happen
outside of it. Concurrent callers for the same key share one ``_Flight``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, List, Optional, Type

import remote_paths
from gateway_errors import CacheFull, CorruptLocalCache, FetchAborted, GatewayError, UnknownServer

logger = logging.getLogger(__name__)

INDEX_FILENAME = "index.json"
TEMP_SUFFIX = ".part"

FetchFn = Callable[[Path], Any]


def _to_iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _digest(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class RemoteVideoRef:
    """Identity of a remote video: server id plus canonical path."""

    server_id: int
    remote_path: str

    @classmethod
    def create(cls, server_id: Any, remote_path: str) -> "RemoteVideoRef":
        try:
            server = int(server_id)
        except (TypeError, ValueError):
            raise UnknownServer(f"Invalid server id '{server_id}'")
        return cls(server, remote_paths.canonicalize(remote_path))

    @property
    def token(self) -> str:
        return _digest(f"{self.server_id}:{self.remote_path}")

    @property
    def suffix(self) -> str:
        return remote_paths.extension(self.remote_path)

    def to_dict(self) -> Dict[str, Any]:
        return {"server_id": self.server_id, "remote_path": self.remote_path}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteVideoRef":
        return cls(int(data["server_id"]), str(data["remote_path"]))


@dataclass(frozen=True)
class ThumbnailKey:
    """A still frame of ``ref``; ``marker`` selects the frame timestamp."""

    ref: RemoteVideoRef
    marker: Optional[str] = None

    @property
    def token(self) -> str:
        return _digest(f"{self.ref.token}:{self.marker or ''}")

    @property
    def suffix(self) -> str:
        return ".jpg"

    def to_dict(self) -> Dict[str, Any]:
        return {**self.ref.to_dict(), "marker": self.marker}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThumbnailKey":
        return cls(RemoteVideoRef.from_dict(data), data.get("marker"))


class CacheState(str, Enum):
    FETCHING = "fetching"
    READY = "ready"
    FAILED = "failed"
    EVICTED = "evicted"


@dataclass
class CacheEntry:
    key: Hashable
    local_path: Path
    size_bytes: int
    created_at: float
    last_access_at: float
    state: CacheState = CacheState.READY

    def to_record(self) -> Dict[str, Any]:
        return {
            "key": self.key.to_dict(),  # type: ignore[attr-defined]
            "file": self.local_path.name,
            "size": self.size_bytes,
            "created_at": self.created_at,
            "last_access_at": self.last_access_at,
        }


@dataclass
class CacheStats:
    entries: int
    total_bytes: int
    quota_bytes: int
    oldest_access: Optional[float]
    newest_access: Optional[float]
    fetching: int = 0
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": self.entries,
            "total_bytes": self.total_bytes,
            "quota_bytes": self.quota_bytes,
            "oldest_access": _to_iso(self.oldest_access),
            "newest_access": _to_iso(self.newest_access),
            "fetching": self.fetching,
            "degraded": self.degraded,
        }


@dataclass
class _Flight:
    key: Hashable
    temp_path: Path
    done: threading.Event = field(default_factory=threading.Event)
    path: Optional[Path] = None
    error: Optional[BaseException] = None
    aborted: bool = False
    state: CacheState = CacheState.FETCHING


class CacheStore:
    """Key addressed file cache bounded by ``quota_bytes``."""

    def __init__(
        self,
        root: Path,
        *,
        quota_bytes: int,
        key_type: Type[Any] = RemoteVideoRef,
        name: str = "videos",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = Path(root)
        self.name = name
        self.quota_bytes = max(0, int(quota_bytes))
        self._key_type = key_type
        self._clock = clock
        self._lock = threading.Lock()
        self._index_lock = threading.Lock()
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._flights: Dict[Hashable, _Flight] = {}
        self._total_bytes = 0
        self._degraded = False
        self.root.mkdir(parents=True, exist_ok=True)
        self._load_index()

    # ------------------------------------------------------------------ Lookup
    def peek(self, key: Hashable) -> Optional[CacheEntry]:
        """Return the Ready entry for ``key`` without touching its access time."""

        with self._lock:
            return self._entries.get(key)

    def is_cached(self, key: Hashable) -> bool:
        return self.peek(key) is not None

    def get_or_fetch(self, key: Hashable, fetch_fn: FetchFn) -> Path:
        """Return the local path for ``key``, calling ``fetch_fn`` on a miss.

        ``fetch_fn`` receives a temporary path to write to. Concurrent callers
        for the same key wait on a single fetch and share its outcome.
        """

        while True:
            owner = False
            with self._lock:
                entry = self._entries.get(key)
                flight = None
                if entry is None:
                    flight = self._flights.get(key)
                    if flight is None:
                        flight = _Flight(key=key, temp_path=self._temp_path(key))
                        self._flights[key] = flight
                        owner = True
            if entry is not None:
                path = self._verify(entry)
                if path is not None:
                    return path
                continue
            assert flight is not None
            if owner:
                return self._run_flight(flight, fetch_fn)
            flight.done.wait()
            if flight.state is CacheState.FAILED:
                assert flight.error is not None
                raise flight.error
            assert flight.path is not None
            self._touch(key)
            return flight.path

    def _verify(self, entry: CacheEntry) -> Optional[Path]:
        try:
            size = entry.local_path.stat().st_size
        except OSError:
            size = None
        if size == entry.size_bytes:
            self._touch(entry.key)
            return entry.local_path
        error = CorruptLocalCache(
            f"Cached file {entry.local_path.name} is missing or truncated; fetching again"
        )
        logger.warning("[%s] %s", self.name, error.message)
        self._drop(entry.key, expected=entry)
        return None

    def _touch(self, key: Hashable) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.last_access_at = self._clock()

    # ------------------------------------------------------------------ Fetch
    def _run_flight(self, flight: _Flight, fetch_fn: FetchFn) -> Path:
        key = flight.key
        final_path = self._final_path(key)
        try:
            try:
                fetch_fn(flight.temp_path)
                size = flight.temp_path.stat().st_size
                if flight.aborted:
                    raise FetchAborted(f"Cache entry for {self._describe(key)} was invalidated during fetch")
                os.replace(flight.temp_path, final_path)
            except GatewayError:
                raise
            except OSError as exc:
                if flight.aborted:
                    raise FetchAborted(
                        f"Cache entry for {self._describe(key)} was invalidated during fetch"
                    ) from exc
                raise GatewayError(
                    f"Unable to store {self._describe(key)} in cache: {exc}", code="cache_io_error"
                ) from exc

            now = self._clock()
            previous = None
            with self._lock:
                current = self._flights.get(key) is flight
                if current:
                    del self._flights[key]
                    previous = self._entries.pop(key, None)
                    if previous is not None:
                        self._total_bytes -= previous.size_bytes
                        previous.state = CacheState.EVICTED
                    self._entries[key] = CacheEntry(
                        key=key,
                        local_path=final_path,
                        size_bytes=size,
                        created_at=now,
                        last_access_at=now,
                    )
                    self._total_bytes += size
            if previous is not None:
                self._unlink(previous.local_path)
            if not current:
                self._unlink(final_path)
                raise FetchAborted(f"Cache entry for {self._describe(key)} was invalidated during fetch")
        except BaseException as exc:
            with self._lock:
                if self._flights.get(key) is flight:
                    del self._flights[key]
            self._unlink(flight.temp_path)
            flight.state = CacheState.FAILED
            flight.error = exc
            flight.done.set()
            logger.warning("[%s] Fetch failed for %s: %s", self.name, self._describe(key), exc)
            raise

        flight.path = final_path
        flight.state = CacheState.READY
        flight.done.set()
        logger.info("[%s] Cached %s (%d bytes)", self.name, self._describe(key), size)
        self.evict_if_over_quota(protect=key)
        self._save_index()
        return final_path

    # ------------------------------------------------------------------ Eviction
    def evict_if_over_quota(self, protect: Optional[Hashable] = None) -> List[CacheEntry]:
        """Drop least recently used entries until the total fits the quota.

        ``protect`` is never evicted, so a single oversized file is kept and the
        store reports itself as degraded instead.
        """

        victims: List[CacheEntry] = []
        with self._lock:
            if self._total_bytes <= self.quota_bytes:
                self._degraded = False
                return victims
            ordered = sorted(self._entries.values(), key=lambda item: item.last_access_at)
            for entry in ordered:
                if self._total_bytes <= self.quota_bytes or len(self._entries) <= 1:
                    break
                if protect is not None and entry.key == protect:
                    continue
                del self._entries[entry.key]
                self._total_bytes -= entry.size_bytes
                entry.state = CacheState.EVICTED
                victims.append(entry)
            self._degraded = self._total_bytes > self.quota_bytes
            total = self._total_bytes
        for entry in victims:
            self._unlink(entry.local_path)
            logger.info("[%s] Evicted %s (%d bytes)", self.name, self._describe(entry.key), entry.size_bytes)
        if self._degraded:
            error = CacheFull(
                f"{self.name} cache holds {total} bytes, above its quota of {self.quota_bytes} bytes"
            )
            logger.warning("[%s] %s; keeping oversized entry", self.name, error.message)
        if victims:
            self._save_index()
        return victims

    # ------------------------------------------------------------------ Invalidation
    def invalidate(self, key: Hashable) -> bool:
        """Remove ``key`` in any state. Returns True if something was removed."""

        removed = self._drop(key)
        if removed:
            self._save_index()
        return removed

    def invalidate_matching(self, predicate: Callable[[Any], bool]) -> int:
        with self._lock:
            keys = [key for key in list(self._entries) + list(self._flights) if predicate(key)]
        removed = sum(1 for key in set(keys) if self._drop(key))
        if removed:
            self._save_index()
        return removed

    def _drop(self, key: Hashable, *, expected: Optional[CacheEntry] = None) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if expected is not None and entry is not expected:
                entry = None
            if entry is not None:
                del self._entries[key]
                self._total_bytes -= entry.size_bytes
                entry.state = CacheState.EVICTED
            flight = self._flights.pop(key, None) if expected is None else None
            if flight is not None:
                flight.aborted = True
        if entry is not None:
            self._unlink(entry.local_path)
            logger.info("[%s] Invalidated %s", self.name, self._describe(key))
        return entry is not None or flight is not None

    def clear(self) -> int:
        """Remove every entry and in-flight temp file; return the number of files deleted."""

        with self._lock:
            entries = list(self._entries.values())
            flights = list(self._flights.values())
            self._entries.clear()
            self._flights.clear()
            self._total_bytes = 0
            self._degraded = False
            for flight in flights:
                flight.aborted = True
        removed = 0
        for entry in entries:
            entry.state = CacheState.EVICTED
            if self._unlink(entry.local_path):
                removed += 1
        for flight in flights:
            if self._unlink(flight.temp_path):
                removed += 1
        self._save_index()
        logger.info("[%s] Cleared cache: %d files removed", self.name, removed)
        return removed

    # ------------------------------------------------------------------ Status
    def status(self) -> CacheStats:
        with self._lock:
            accesses = [entry.last_access_at for entry in self._entries.values()]
            return CacheStats(
                entries=len(self._entries),
                total_bytes=self._total_bytes,
                quota_bytes=self.quota_bytes,
                oldest_access=min(accesses) if accesses else None,
                newest_access=max(accesses) if accesses else None,
                fetching=len(self._flights),
                degraded=self._degraded,
            )

    def close(self) -> None:
        """Abort in-flight bookkeeping and delete leftover temp files."""

        with self._lock:
            for flight in self._flights.values():
                flight.aborted = True
            self._flights.clear()
        for leftover in self.root.glob(f".*{TEMP_SUFFIX}"):
            self._unlink(leftover)
        self._save_index()

    # ------------------------------------------------------------------ Paths
    def _final_path(self, key: Hashable) -> Path:
        # unique per fetch so a stale flight can never remove a newer file
        return self.root / f"{key.token}-{uuid.uuid4().hex[:8]}{key.suffix}"  # type: ignore[attr-defined]

    def _temp_path(self, key: Hashable) -> Path:
        return self.root / f".{key.token}.{uuid.uuid4().hex}{TEMP_SUFFIX}"  # type: ignore[attr-defined]

    def _describe(self, key: Hashable) -> str:
        ref = getattr(key, "ref", key)
        server_id = getattr(ref, "server_id", "?")
        remote_path = getattr(ref, "remote_path", key)
        return f"{server_id}:{remote_path}"

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("[%s] Unable to remove %s: %s", self.name, path, exc)
            return False

    # ------------------------------------------------------------------ Index
    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILENAME

    def _load_index(self) -> None:
        records: List[Dict[str, Any]] = []
        try:
            with self.index_path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            records = list(data.get("entries") or [])
        except FileNotFoundError:
            pass
        except (OSError, ValueError, AttributeError) as exc:
            logger.warning("[%s] Ignoring unreadable cache index %s: %s", self.name, self.index_path, exc)

        known = {INDEX_FILENAME}
        for record in records:
            try:
                key = self._key_type.from_dict(record["key"])
                local_path = self.root / Path(str(record["file"])).name
                if not local_path.name.startswith(key.token):
                    continue
                size = int(record["size"])
                created_at = float(record.get("created_at") or 0.0)
                last_access_at = float(record.get("last_access_at") or created_at)
            except (KeyError, TypeError, ValueError) as exc:
                logger.debug("[%s] Skipping invalid index record %r: %s", self.name, record, exc)
                continue
            try:
                if local_path.stat().st_size != size:
                    continue
            except OSError:
                continue
            self._entries[key] = CacheEntry(key, local_path, size, created_at, last_access_at)
            self._total_bytes += size
            known.add(local_path.name)

        swept = 0
        for candidate in self.root.iterdir():
            if candidate.is_file() and candidate.name not in known and self._unlink(candidate):
                swept += 1
        if swept:
            logger.info("[%s] Removed %d untracked files from %s", self.name, swept, self.root)
        if self._entries:
            logger.info("[%s] Restored %d cached entries (%d bytes)", self.name, len(self._entries), self._total_bytes)
        self.evict_if_over_quota()

    def _save_index(self) -> None:
        with self._lock:
            records = [entry.to_record() for entry in self._entries.values()]
        payload = {"version": 1, "entries": records}
        with self._index_lock:
            temp_path = self.index_path.with_name(f".{INDEX_FILENAME}.{uuid.uuid4().hex}.tmp")
            try:
                with temp_path.open("w", encoding="utf-8") as handle:
                    json.dump(payload, handle, indent=2)
                    handle.write("\n")
                os.replace(temp_path, self.index_path)
            except OSError as exc:
                logger.warning("[%s] Failed to write cache index: %s", self.name, exc)
                self._unlink(temp_path)

