"""TTL response cache with optional write-through persistence to disk.

Upstream responses (statements, historical prices, option chains) are cached
per process. When persistence is enabled every entry is mirrored to
``<cache_dir>/<sanitized-key>.json`` so a restarted process can serve warm
data; files are read back lazily on the first lookup of a key.

The cache is an optimization only: disk and JSON errors are logged and
degrade to a miss or a no-op, never to an exception.
"""

from __future__ import annotations

import copy
import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from app.core.config import CacheSettings
from app.utils.periodic import PeriodicTask

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[:|]")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass
class CacheEntry:
    """Cached payload plus its creation time in epoch milliseconds."""

    data: Any
    timestamp: int

    def to_json(self) -> dict[str, Any]:
        return {"data": self.data, "timestamp": self.timestamp}


def sanitize_key(key: str) -> str:
    """Map a cache key onto a safe file name stem.

    ``:`` and ``|`` become ``-``; anything else outside ``[A-Za-z0-9._-]``
    becomes ``_``.

    Examples:
        >>> sanitize_key("statements:IBM")
        'statements-IBM'
        >>> sanitize_key("hist:2024-01-01:BRK.B:a,b")
        'hist-2024-01-01-BRK.B-a_b'
    """

    return _UNSAFE_CHARS.sub("_", _SEPARATORS.sub("-", key))


class ResponseCache:
    """Thread-safe in-memory TTL cache with best-effort disk mirroring.

    Attributes:
        enabled: When False every read misses and every write is dropped.
        ttl_seconds: Time-to-live applied to all entries.
        persistence_enabled: Mirror entries to JSON files under ``cache_dir``.
        cache_dir: Directory for persisted entries.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        ttl_seconds: int = 86400,
        persistence_enabled: bool = False,
        cache_dir: str | Path | None = None,
        sweep_interval_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
        start_sweeper: bool = True,
    ) -> None:
        self.enabled = enabled
        self.ttl_seconds = ttl_seconds
        self.persistence_enabled = persistence_enabled
        self.cache_dir = Path(cache_dir) if cache_dir is not None else Path.cwd() / ".cache"
        self._ttl_ms = ttl_seconds * 1000
        self._clock = clock
        self._store: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._sweeper: PeriodicTask | None = None

        if self.enabled and self.persistence_enabled:
            self._ensure_cache_dir()

        if self.enabled and start_sweeper:
            self._sweeper = PeriodicTask(
                "response-cache-sweep", sweep_interval_seconds, self.cleanup
            ).start()

    @classmethod
    def from_settings(cls, cache_settings: CacheSettings, **kwargs: Any) -> "ResponseCache":
        return cls(
            enabled=cache_settings.enabled,
            ttl_seconds=cache_settings.ttl_seconds,
            persistence_enabled=cache_settings.persistence_enabled,
            cache_dir=cache_settings.dir,
            sweep_interval_seconds=cache_settings.sweep_interval_seconds,
            **kwargs,
        )

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"ResponseCache(enabled={self.enabled}, ttl_seconds={self.ttl_seconds}, "
            f"persistence_enabled={self.persistence_enabled}, size={len(self._store)})"
        )

    def get(self, key: str) -> Any | None:
        """Return the cached value for ``key``, or None on a miss.

        A memory miss falls back to the persisted file when persistence is
        enabled; a fresh file entry is promoted into memory. Expired entries
        are deleted from memory and disk.
        """

        if not self.enabled:
            return None

        with self._lock:
            entry = self._store.get(key)
            if entry is None and self.persistence_enabled:
                entry = self._read_disk_entry(key)
                if entry is not None:
                    self._store[key] = entry
                    logger.debug("cache.rehydrated", extra={"cache_key": key})

            if entry is None:
                self._misses += 1
                logger.debug("cache.miss", extra={"cache_key": key, "reason": "not_found"})
                return None

            if self._is_entry_expired(entry):
                self._delete(key)
                self._misses += 1
                logger.debug("cache.miss", extra={"cache_key": key, "reason": "expired"})
                return None

            self._hits += 1
            logger.debug("cache.hit", extra={"cache_key": key})
            return copy.deepcopy(entry.data)

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``; last write wins.

        Values that cannot be copied are skipped. Persisted values must be
        JSON-native: anything else stays in memory only and the disk write
        is logged as failed.
        """

        if not self.enabled:
            return

        try:
            data = copy.deepcopy(value)
        except (TypeError, copy.Error) as exc:
            logger.warning(
                "cache.set_failed",
                extra={"cache_key": key, "error_type": type(exc).__name__},
            )
            return

        entry = CacheEntry(data=data, timestamp=self._now_ms())

        with self._lock:
            self._store[key] = entry
            if self.persistence_enabled:
                self._write_disk_entry(key, entry)

        logger.debug(
            "cache.set",
            extra={
                "cache_key": key,
                "size": len(self._store),
                "ttl_s": self.ttl_seconds,
                "persisted": self.persistence_enabled,
            },
        )

    def has(self, key: str) -> bool:
        """Return True when a non-expired entry exists in memory or on disk."""

        if not self.enabled:
            return False

        with self._lock:
            entry = self._store.get(key)
            if entry is not None:
                return not self._is_entry_expired(entry)

            if self.persistence_enabled:
                return self._read_disk_entry(key) is not None

        return False

    def is_expired(self, key: str) -> bool:
        """Return True when ``key`` has no live in-memory entry.

        Disk is not consulted; use ``has`` or ``get`` to rehydrate first.
        """

        with self._lock:
            entry = self._store.get(key)
            return entry is None or self._is_entry_expired(entry)

    def clear(self) -> None:
        """Drop every entry from memory and, when persisting, from disk."""

        with self._lock:
            self._store.clear()
            self._hits = 0
            self._misses = 0

            if not self.persistence_enabled:
                return

            try:
                files = list(self.cache_dir.glob("*.json"))
            except OSError as exc:
                logger.warning("cache.clear_failed", extra={"error_type": type(exc).__name__})
                return

            for path in files:
                self._unlink(path)

    def cleanup(self) -> None:
        """Sweep expired entries from memory and stale files from disk.

        Disk staleness is judged by file modification time rather than the
        serialized timestamp, which is close enough for a sweep.
        """

        now = self._now_ms()
        with self._lock:
            expired = [k for k, entry in self._store.items() if now > entry.timestamp + self._ttl_ms]
            for key in expired:
                self._delete(key)

            removed_files = 0
            if self.persistence_enabled and self.cache_dir.is_dir():
                try:
                    files = list(self.cache_dir.glob("*.json"))
                except OSError:
                    files = []
                for path in files:
                    try:
                        modified_ms = path.stat().st_mtime * 1000
                    except OSError:
                        continue
                    if now > modified_ms + self._ttl_ms and self._unlink(path):
                        removed_files += 1

        if expired or removed_files:
            logger.info(
                "cache.sweep",
                extra={"expired_entries": len(expired), "expired_files": removed_files},
            )

    def stats(self) -> dict[str, int | bool]:
        """Return lightweight cache metrics without exposing values."""

        with self._lock:
            return {
                "enabled": self.enabled,
                "persistence_enabled": self.persistence_enabled,
                "ttl_seconds": self.ttl_seconds,
                "entries": len(self._store),
                "hits": self._hits,
                "misses": self._misses,
            }

    def close(self) -> None:
        """Stop the background sweep."""

        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _is_entry_expired(self, entry: CacheEntry) -> bool:
        return self._now_ms() > entry.timestamp + self._ttl_ms

    def _entry_path(self, key: str) -> Path:
        return self.cache_dir / f"{sanitize_key(key)}.json"

    def _ensure_cache_dir(self) -> None:
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error(
                "cache.dir_unavailable",
                extra={"cache_dir": str(self.cache_dir), "error_type": type(exc).__name__},
            )

    def _read_disk_entry(self, key: str) -> CacheEntry | None:
        """Load a persisted entry; expired or unreadable files count as a miss."""

        path = self._entry_path(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning(
                "cache.read_failed",
                extra={"cache_key": key, "error_type": type(exc).__name__},
            )
            return None

        try:
            payload = json.loads(raw)
            entry = CacheEntry(data=payload["data"], timestamp=int(payload["timestamp"]))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(
                "cache.corrupt_entry",
                extra={"cache_key": key, "error_type": type(exc).__name__},
            )
            return None

        if self._is_entry_expired(entry):
            self._unlink(path)
            return None

        return entry

    def _write_disk_entry(self, key: str, entry: CacheEntry) -> None:
        path = self._entry_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(entry.to_json()), encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            logger.warning(
                "cache.persist_failed",
                extra={"cache_key": key, "error_type": type(exc).__name__},
            )

    def _delete(self, key: str) -> None:
        self._store.pop(key, None)
        if self.persistence_enabled:
            self._unlink(self._entry_path(key))

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(
                "cache.delete_failed",
                extra={"path": path.name, "error_type": type(exc).__name__},
            )
            return False
        return True
