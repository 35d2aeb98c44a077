"""
TTL cache service.

One CacheService lives on app.state; request handlers receive a
ScopedCache bound to the authenticated user, so entries can never be
read across users.
"""

import time
from typing import Any, Callable


class CacheService:
    """In-process key/value cache with per-entry expiry."""

    def __init__(self, default_ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[Any, float]] = {}

    def get(self, namespace: str, key: str) -> Any | None:
        entry = self._entries.get((namespace, key))
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop((namespace, key), None)
            return None
        return value

    def set(self, namespace: str, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[(namespace, key)] = (value, self._clock() + ttl)

    def delete(self, namespace: str, key: str) -> None:
        self._entries.pop((namespace, key), None)

    def clear_namespace(self, namespace: str) -> None:
        for entry_key in [k for k in self._entries if k[0] == namespace]:
            del self._entries[entry_key]

    def scoped(self, namespace: str) -> "ScopedCache":
        return ScopedCache(self, namespace)


class ScopedCache:
    """View of a CacheService restricted to one namespace."""

    def __init__(self, service: CacheService, namespace: str):
        self._service = service
        self.namespace = namespace

    def get(self, key: str) -> Any | None:
        return self._service.get(self.namespace, key)

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        self._service.set(self.namespace, key, value, ttl_seconds)

    def delete(self, key: str) -> None:
        self._service.delete(self.namespace, key)

    def clear(self) -> None:
        self._service.clear_namespace(self.namespace)
