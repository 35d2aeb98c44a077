"""
Per-user sync lease.

Only one calendar sync may run for a user at a time. A lease is a
time-bounded exclusive right; it expires on its own if the holder dies.
Requests that arrive while a lease is held can ask for a single rerun
instead of waiting, so bursts of push notifications coalesce.

Uses Redis when REDIS_URL is configured (multi-worker), otherwise an
in-process map guarded by an asyncio.Lock.
"""

import asyncio
import secrets
import time
from dataclasses import dataclass

from vesta_calendar.core.config import settings
from vesta_calendar.core.redis_client import get_async_redis_client


LOCK_KEY_PREFIX = "gcal-sync-lock:"
RERUN_KEY_PREFIX = "gcal-sync-rerun:"

# Delete the lease only if we still own it.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class SyncLease:
    user_id: str
    token: str


class InMemorySyncLock:
    """Single-process lease map."""

    def __init__(self, ttl_seconds: float):
        self.ttl_seconds = ttl_seconds
        # user_id -> (token, monotonic expiry)
        self._leases: dict[str, tuple[str, float]] = {}
        self._reruns: set[str] = set()
        self._lock = asyncio.Lock()

    async def acquire(self, user_id) -> SyncLease | None:
        key = str(user_id)
        now = time.monotonic()
        async with self._lock:
            held = self._leases.get(key)
            if held and held[1] > now:
                return None
            token = secrets.token_hex(8)
            self._leases[key] = (token, now + self.ttl_seconds)
            return SyncLease(user_id=key, token=token)

    async def release(self, lease: SyncLease) -> None:
        async with self._lock:
            held = self._leases.get(lease.user_id)
            if held and held[0] == lease.token:
                del self._leases[lease.user_id]

    async def is_held(self, user_id) -> bool:
        held = self._leases.get(str(user_id))
        return bool(held and held[1] > time.monotonic())

    async def request_rerun(self, user_id) -> None:
        async with self._lock:
            self._reruns.add(str(user_id))

    async def consume_rerun(self, user_id) -> bool:
        async with self._lock:
            key = str(user_id)
            if key in self._reruns:
                self._reruns.discard(key)
                return True
            return False


class RedisSyncLock:
    """Lease stored in Redis (SET NX PX), released with a token check."""

    def __init__(self, client, ttl_seconds: float):
        self.client = client
        self.ttl_seconds = ttl_seconds

    def _ttl_ms(self) -> int:
        return int(self.ttl_seconds * 1000)

    async def acquire(self, user_id) -> SyncLease | None:
        key = str(user_id)
        token = secrets.token_hex(8)
        acquired = await self.client.set(
            f"{LOCK_KEY_PREFIX}{key}", token, nx=True, px=self._ttl_ms()
        )
        if not acquired:
            return None
        return SyncLease(user_id=key, token=token)

    async def release(self, lease: SyncLease) -> None:
        await self.client.eval(
            _RELEASE_SCRIPT, 1, f"{LOCK_KEY_PREFIX}{lease.user_id}", lease.token
        )

    async def is_held(self, user_id) -> bool:
        return bool(await self.client.exists(f"{LOCK_KEY_PREFIX}{user_id}"))

    async def request_rerun(self, user_id) -> None:
        await self.client.set(f"{RERUN_KEY_PREFIX}{user_id}", "1", px=self._ttl_ms())

    async def consume_rerun(self, user_id) -> bool:
        return bool(await self.client.delete(f"{RERUN_KEY_PREFIX}{user_id}"))


_sync_lock: InMemorySyncLock | RedisSyncLock | None = None


def get_sync_lock() -> InMemorySyncLock | RedisSyncLock:
    """Process-wide sync lock (Redis-backed when available)."""
    global _sync_lock
    if _sync_lock is None:
        ttl = settings.GOOGLE_CALENDAR_SYNC_LOCK_TTL_SECONDS
        client = get_async_redis_client()
        if client is not None:
            _sync_lock = RedisSyncLock(client, ttl)
        else:
            _sync_lock = InMemorySyncLock(ttl)
    return _sync_lock
