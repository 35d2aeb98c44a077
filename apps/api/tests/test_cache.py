"""Tests for the TTL cache service."""

from vesta_calendar.core.cache import CacheService


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_cache_entries_expire_after_ttl():
    clock = _Clock()
    cache = CacheService(default_ttl_seconds=30, clock=clock)

    cache.set("user-1", "status", {"connected": True})
    assert cache.get("user-1", "status") == {"connected": True}

    clock.now += 29
    assert cache.get("user-1", "status") == {"connected": True}

    clock.now += 1
    assert cache.get("user-1", "status") is None


def test_cache_per_entry_ttl_overrides_default():
    clock = _Clock()
    cache = CacheService(default_ttl_seconds=30, clock=clock)

    cache.set("user-1", "short", "value", ttl_seconds=5)
    clock.now += 6

    assert cache.get("user-1", "short") is None


def test_scoped_caches_are_isolated_per_user():
    cache = CacheService(default_ttl_seconds=30)
    first = cache.scoped("user-1")
    second = cache.scoped("user-2")

    first.set("status", "user-1-status")

    assert first.get("status") == "user-1-status"
    assert second.get("status") is None


def test_clear_namespace_only_drops_that_user():
    cache = CacheService(default_ttl_seconds=30)
    cache.set("user-1", "status", 1)
    cache.set("user-1", "settings", 2)
    cache.set("user-2", "status", 3)

    cache.scoped("user-1").clear()

    assert cache.get("user-1", "status") is None
    assert cache.get("user-1", "settings") is None
    assert cache.get("user-2", "status") == 3


def test_delete_removes_single_key():
    cache = CacheService(default_ttl_seconds=30)
    scoped = cache.scoped("user-1")
    scoped.set("status", 1)
    scoped.set("settings", 2)

    scoped.delete("status")

    assert scoped.get("status") is None
    assert scoped.get("settings") == 2
