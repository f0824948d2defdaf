from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from vessel_mpr.cache import (
    VolumeCache,
    estimate_volume_size,
    fnv1a_32,
    generate_centerline_hash,
    get_cached_or_compute,
    short_hash,
)
from vessel_mpr.centerline import CenterlinePoint, ControlPoint
from vessel_mpr.curved_mpr import CurvedMPRVolume


def make_volume(slices=4, size=8):
    points = tuple(CenterlinePoint(float(i), 0.0, 0.0, distance=float(i)) for i in range(slices))
    return CurvedMPRVolume(
        data=np.zeros((slices, size, size), dtype=np.int16),
        spacing=(0.5, 0.5, 0.5),
        centerline_points=points,
        total_length=float(slices - 1),
    )


def test_fnv1a_reference_values():
    assert fnv1a_32("") == "811c9dc5"
    assert fnv1a_32("a") == "e40c292c"
    assert fnv1a_32("foobar") == "bf9cf968"


def test_hash_string_format():
    points = [ControlPoint(0.0, -0.0, 0.001), ControlPoint(16.5, 0.1 + 0.2, 4.996)]
    expected = fnv1a_32("0,0,0|16.5,0.3,5:LAD:study-1")
    assert generate_centerline_hash(points, "LAD", "study-1") == expected


def test_hash_is_deterministic_and_rounded():
    a = [ControlPoint(1.0, 2.0, 3.0), ControlPoint(4.0, 5.0, 6.0)]
    b = [ControlPoint(1.001, 2.004, 2.9999), ControlPoint(4.0, 5.0, 6.0)]
    key = generate_centerline_hash(a, "RCA", "s1")
    assert key == generate_centerline_hash(a, "RCA", "s1")
    assert key == generate_centerline_hash(b, "RCA", "s1")
    assert len(key) == 8 and int(key, 16) >= 0
    assert short_hash(key) == key


def test_hash_depends_on_order_vessel_and_study():
    a = [ControlPoint(1.0, 2.0, 3.0), ControlPoint(4.0, 5.0, 6.0)]
    base = generate_centerline_hash(a, "LAD", "s1")
    assert generate_centerline_hash(list(reversed(a)), "LAD", "s1") != base
    assert generate_centerline_hash(a, "LCX", "s1") != base
    assert generate_centerline_hash(a, "LAD", "s2") != base
    assert generate_centerline_hash([ControlPoint(1.01, 2.0, 3.0), a[1]], "LAD", "s1") != base


def test_size_estimate_includes_overhead():
    volume = make_volume(slices=4, size=8)
    assert estimate_volume_size(volume) == 4 * 8 * 8 * 2 + 1024 + 4 * 64


def test_get_updates_hits_and_misses():
    cache = VolumeCache()
    volume = make_volume()
    assert cache.get("missing") is None
    cache.set("k", volume)
    assert cache.get("k") is volume
    stats = cache.stats()
    assert (stats.hits, stats.misses) == (1, 1)
    assert stats.hit_rate == pytest.approx(50.0)
    assert stats.entry_count == 1
    assert stats.memory_used == estimate_volume_size(volume)


def test_entry_limit_evicts_least_recently_accessed():
    cache = VolumeCache(max_entries=2)
    cache.set("a", make_volume())
    cache.set("b", make_volume())
    cache.get("a")
    cache.set("c", make_volume())
    assert cache.has("a") and cache.has("c")
    assert not cache.has("b")
    assert cache.stats().evictions == 1


def test_memory_limit_evicts_until_new_entry_fits():
    size = estimate_volume_size(make_volume())
    cache = VolumeCache(max_memory_bytes=3 * size)
    for key in "abc":
        cache.set(key, make_volume())
    cache.get("a")
    cache.get("b")
    cache.set("d", make_volume())
    assert set(k for k in "abcd" if cache.has(k)) == {"a", "b", "d"}
    assert cache.stats().memory_used <= 3 * size


def test_oversized_entry_is_still_inserted():
    cache = VolumeCache(max_memory_bytes=100)
    cache.set("small", make_volume(slices=2, size=2))
    cache.set("big", make_volume(slices=8, size=32))
    assert cache.has("big")
    assert not cache.has("small")
    stats = cache.stats()
    assert stats.entry_count == 1
    assert stats.memory_used > stats.memory_limit
    assert stats.memory_usage_percent > 100.0


def test_replacing_key_does_not_double_count():
    cache = VolumeCache(max_entries=1)
    first = make_volume()
    second = make_volume(slices=6)
    cache.set("k", first)
    cache.set("k", second)
    assert cache.get("k") is second
    stats = cache.stats()
    assert stats.evictions == 0
    assert stats.memory_used == estimate_volume_size(second)


def test_has_delete_and_clear():
    cache = VolumeCache()
    cache.set("a", make_volume())
    assert "a" in cache
    assert cache.stats().hits == 0
    assert cache.delete("a") is True
    assert cache.delete("a") is False
    cache.set("b", make_volume())
    cache.clear()
    assert len(cache) == 0
    assert cache.stats().memory_used == 0


def test_get_cached_or_compute_runs_once():
    cache = VolumeCache()
    calls = []

    def compute():
        calls.append(1)
        return make_volume()

    first = get_cached_or_compute(cache, "key", compute)
    second = get_cached_or_compute(cache, "key", compute)
    assert first is second
    assert len(calls) == 1


def test_concurrent_inserts_respect_limits():
    size = estimate_volume_size(make_volume())
    cache = VolumeCache(max_memory_bytes=5 * size, max_entries=4)
    with ThreadPoolExecutor(max_workers=8) as executor:
        list(executor.map(lambda i: cache.set(f"k{i}", make_volume()), range(64)))
    stats = cache.stats()
    assert stats.entry_count <= 4
    assert stats.memory_used == stats.entry_count * size
    assert stats.evictions == 64 - stats.entry_count


def test_invalid_limits():
    with pytest.raises(ValueError):
        VolumeCache(max_memory_bytes=0)
    with pytest.raises(ValueError):
        VolumeCache(max_entries=0)
