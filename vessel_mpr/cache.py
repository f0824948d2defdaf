"""In-memory LRU cache for computed curved MPR volumes.

Volumes are keyed by a hash of the (rounded) centerline control points plus
vessel and study identifiers, so a repeated request with the same geometry can
skip resampling entirely. Memory is bounded both by an estimated byte budget
and by an entry count; when either would be exceeded the least recently
accessed entries are evicted first.
"""

from __future__ import annotations

import logging
import math
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from threading import RLock
from typing import Callable, Dict, Iterable, Optional

from .centerline import Point3D
from .curved_mpr import CurvedMPRVolume

logger = logging.getLogger(__name__)

DEFAULT_MAX_MEMORY_BYTES = 512 * 1024 * 1024
DEFAULT_MAX_ENTRIES = 50

# Control-point coordinates are rounded to this many decimals before hashing.
HASH_DECIMALS = 2

ENTRY_OVERHEAD_BYTES = 1024
POINT_OVERHEAD_BYTES = 64

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619


@dataclass
class _CacheEntry:
    key: str
    volume: CurvedMPRVolume
    memory_size: int
    created: float
    last_accessed: float


@dataclass(frozen=True)
class CacheStats:
    entry_count: int
    memory_used: int
    memory_limit: int
    memory_usage_percent: float
    hits: int
    misses: int
    hit_rate: float
    evictions: int

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def format_bytes(num_bytes: int) -> str:
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    exponent = min(int(math.log(num_bytes, 1024)), len(units) - 1)
    return f"{num_bytes / 1024 ** exponent:.2f} {units[exponent]}"


def estimate_volume_size(volume: CurvedMPRVolume) -> int:
    """Sample buffer bytes plus fixed per-entry and per-point overhead."""
    return int(volume.nbytes) + ENTRY_OVERHEAD_BYTES + POINT_OVERHEAD_BYTES * len(volume.centerline_points)


class VolumeCache:
    """Thread-safe LRU cache of :class:`CurvedMPRVolume` objects.

    The ``OrderedDict`` is kept in access order (oldest first), so eviction
    always removes the least recently accessed entry, not the oldest insert.
    """

    def __init__(
        self,
        max_memory_bytes: int = DEFAULT_MAX_MEMORY_BYTES,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        if max_memory_bytes <= 0:
            raise ValueError("max_memory_bytes must be > 0")
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.max_memory_bytes = int(max_memory_bytes)
        self.max_entries = int(max_entries)
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        self._lock = RLock()
        self._memory_used = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        logger.debug("Volume cache initialised with %s limit", format_bytes(self.max_memory_bytes))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def get(self, key: str) -> Optional[CurvedMPRVolume]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                logger.debug("Cache miss: %s", key)
                return None
            entry.last_accessed = time.time()
            self._entries.move_to_end(key)
            self._hits += 1
            logger.debug("Cache hit: %s", key)
            return entry.volume

    def set(self, key: str, volume: CurvedMPRVolume) -> None:
        """Insert or replace ``key``, evicting LRU entries until both limits hold.

        An entry larger than the whole memory budget is still stored once
        everything else has been evicted.
        """
        memory_size = estimate_volume_size(volume)
        with self._lock:
            existing = self._entries.pop(key, None)
            if existing is not None:
                self._memory_used -= existing.memory_size
            self._evict_for(memory_size)
            now = time.time()
            self._entries[key] = _CacheEntry(
                key=key, volume=volume, memory_size=memory_size, created=now, last_accessed=now
            )
            self._memory_used += memory_size
            logger.debug(
                "Cached volume %s (%s, total %s)",
                key,
                format_bytes(memory_size),
                format_bytes(self._memory_used),
            )

    def has(self, key: str) -> bool:
        """Membership test; does not count as an access."""
        with self._lock:
            return key in self._entries

    def delete(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._memory_used -= entry.memory_size
            logger.debug("Deleted cache entry %s", key)
            return True

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._memory_used = 0
            logger.debug("Cleared cache (%d entries)", count)

    def stats(self) -> CacheStats:
        with self._lock:
            requests = self._hits + self._misses
            return CacheStats(
                entry_count=len(self._entries),
                memory_used=self._memory_used,
                memory_limit=self.max_memory_bytes,
                memory_usage_percent=self._memory_used / self.max_memory_bytes * 100.0,
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / requests * 100.0 if requests else 0.0,
                evictions=self._evictions,
            )

    def _evict_for(self, required: int) -> None:
        # Caller holds the lock.
        while self._entries and (
            self._memory_used + required > self.max_memory_bytes or len(self._entries) >= self.max_entries
        ):
            key, entry = self._entries.popitem(last=False)
            self._memory_used -= entry.memory_size
            self._evictions += 1
            logger.debug(
                "Evicted LRU entry %s (%s, age %.0fs)",
                key,
                format_bytes(entry.memory_size),
                time.time() - entry.created,
            )


def _round_half_up(value: float, decimals: int) -> float:
    scale = 10 ** decimals
    return math.floor(value * scale + 0.5) / scale


def _format_number(value: float) -> str:
    # Integral values print without a fractional part ("16", not "16.0").
    if value == 0:
        return "0"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def fnv1a_32(text: str) -> str:
    """32-bit FNV-1a of the UTF-8 bytes of ``text`` as 8 lowercase hex digits."""
    h = FNV_OFFSET_BASIS
    for byte in text.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return f"{h:08x}"


def generate_centerline_hash(
    control_points: Iterable[Point3D],
    vessel: Optional[str] = None,
    study_id: Optional[str] = None,
) -> str:
    """Deterministic cache key for a centerline geometry.

    Coordinates are rounded to :data:`HASH_DECIMALS` places so float noise does
    not produce distinct keys. Point order matters.
    """
    points = "|".join(
        ",".join(_format_number(_round_half_up(c, HASH_DECIMALS)) for c in (p.x, p.y, p.z)) for p in control_points
    )
    parts = [points]
    if vessel:
        parts.append(vessel)
    if study_id:
        parts.append(study_id)
    return fnv1a_32(":".join(parts))


def short_hash(key: str) -> str:
    return key[:8]


def get_cached_or_compute(
    cache: VolumeCache,
    key: str,
    compute_fn: Callable[[], CurvedMPRVolume],
) -> CurvedMPRVolume:
    """Return the cached volume for ``key`` or compute, store and return it."""
    cached = cache.get(key)
    if cached is not None:
        return cached
    volume = compute_fn()
    cache.set(key, volume)
    return volume
