from __future__ import annotations

import time

import pytest

from shift_planner.cache import PATTERNS, TEMPLATES, TemplateCache, TemplateFilter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TemplateCache(template_ttl=60, pattern_ttl=120, max_entries=10, clock=clock)


def test_hit_within_ttl(cache, clock):
    cache.set_templates(1, [{"id": 1}])
    clock.advance(60)
    assert cache.get_templates(1) == [{"id": 1}]
    assert cache.stats()["hits"] == 1


def test_expired_entry_counts_as_miss_and_eviction(cache, clock):
    cache.set_templates(1, [{"id": 1}])
    clock.advance(61)
    assert cache.get_templates(1) is None
    stats = cache.stats()
    assert stats["misses"] == 1
    assert stats["evictions"] == 1
    assert stats["size"] == 0


def test_patterns_use_their_own_ttl(cache, clock):
    cache.set_patterns(1, 5, ["09:00-17:00"])
    clock.advance(90)
    assert cache.get_patterns(1, 5) == ["09:00-17:00"]


def test_explicit_ttl_overrides_keyspace_default(cache, clock):
    cache.set(TEMPLATES, "1:custom", "value", ttl=5)
    clock.advance(6)
    assert cache.get(TEMPLATES, "1:custom") is None


def test_set_overwrites_existing_entry(cache):
    cache.set_templates(1, ["old"])
    cache.set_templates(1, ["new"])
    assert cache.get_templates(1) == ["new"]
    assert cache.stats()["size"] == 1


def test_invalidate_removes_only_that_scope(cache):
    cache.set_templates(1, ["a"])
    cache.set_templates(1, ["b"], TemplateFilter(location_id=3))
    cache.set_patterns(1, 7, ["p"])
    cache.set_templates(10, ["other"])
    cache.set_patterns(2, 7, ["q"])

    assert cache.invalidate(1) == 3

    assert cache.get_templates(1) is None
    assert cache.get_patterns(1, 7) is None
    assert cache.get_templates(10) == ["other"]
    assert cache.get_patterns(2, 7) == ["q"]


def test_invalidate_can_target_one_keyspace(cache):
    cache.set_templates(1, ["a"])
    cache.set_patterns(1, 7, ["p"])
    cache.set_patterns(1, 8, ["r"])

    cache.invalidate_templates(1)
    assert cache.get_patterns(1, 7) == ["p"]

    cache.invalidate_patterns(1, 7)
    assert cache.get_patterns(1, 7) is None
    assert cache.get_patterns(1, 8) == ["r"]


def test_capacity_evicts_oldest_entries(cache, clock):
    for index in range(11):
        cache.set(TEMPLATES, f"1:{index}", index)
        clock.advance(1)

    stats = cache.stats()
    assert stats["size"] == 10
    assert stats["evictions"] == 1
    assert cache.get(TEMPLATES, "1:0") is None
    assert cache.get(TEMPLATES, "1:1") == 1


def test_capacity_eviction_touches_every_keyspace(cache, clock):
    for index in range(6):
        cache.set(PATTERNS, f"1:{index}", index)
        clock.advance(1)
    for index in range(5):
        cache.set(TEMPLATES, f"1:{index}", index)
        clock.advance(1)

    assert cache.stats()["size"] == 9
    assert cache.get(PATTERNS, "1:0") is None
    assert cache.get(TEMPLATES, "1:0") is None


def test_cleanup_removes_expired_entries(cache, clock):
    cache.set_templates(1, ["a"])
    cache.set_patterns(1, 2, ["p"])
    clock.advance(61)

    assert cache.cleanup() == 1
    assert cache.stats()["size"] == 1


def test_stats_hit_rate(cache):
    cache.set_templates(1, ["a"])
    cache.get_templates(1)
    cache.get_templates(2)
    cache.get_templates(1)
    stats = cache.stats()
    assert stats["hit_rate"] == 66.67


def test_clear(cache):
    cache.set_templates(1, ["a"])
    cache.set_patterns(1, 2, ["p"])
    cache.clear()
    assert cache.stats()["size"] == 0


def test_unknown_keyspace_is_rejected(cache):
    with pytest.raises(ValueError):
        cache.get("shifts", "1:1")


def test_filter_keys_are_stable():
    assert TemplateFilter(location_id=3, search=" Week ").cache_key() == TemplateFilter(location_id=3, search="week").cache_key()
    assert TemplateFilter().cache_key() == "default"
    assert TemplateFilter(is_active=True).cache_key() != TemplateFilter(is_active=False).cache_key()


def test_sweeper_removes_expired_entries_in_background(clock):
    cache = TemplateCache(template_ttl=1, clock=clock)
    cache.set_templates(1, ["a"])
    clock.advance(5)
    cache.start_sweeper(0.01)
    try:
        deadline = time.monotonic() + 2
        while cache.stats()["size"] and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        cache.stop_sweeper(timeout=1)
    assert cache.stats()["size"] == 0


def test_capacity_eviction_keeps_the_entry_just_written(clock):
    cache = TemplateCache(max_entries=2, clock=clock)
    cache.set_templates(1, ["a"])
    clock.advance(1)
    cache.set_templates(2, ["b"])
    clock.advance(1)
    cache.set_patterns(3, 7, ["fresh"])

    assert cache.get_patterns(3, 7) == ["fresh"]
    assert cache.get_templates(1) is None
    assert cache.get_templates(2) == ["b"]


def test_write_with_stale_generation_is_dropped(cache):
    token = cache.template_generation(1)
    cache.invalidate_templates(1)

    assert cache.set_templates(1, ["old"], generation=token) is False
    assert cache.get_templates(1) is None
    assert cache.set_templates(1, ["new"], generation=cache.template_generation(1)) is True
    assert cache.get_templates(1) == ["new"]


def test_generation_is_per_company_and_keyspace(cache):
    templates = cache.template_generation(1)
    patterns = cache.pattern_generation(1)

    cache.invalidate_templates(2)
    cache.invalidate_patterns(1, 7)

    assert cache.template_generation(1) == templates
    assert cache.pattern_generation(1) != patterns
    assert cache.set_templates(1, ["kept"], generation=templates) is True


def test_clear_fences_in_flight_writes(cache):
    token = cache.pattern_generation(1)
    cache.clear()
    assert cache.set_patterns(1, 7, ["old"], generation=token) is False
