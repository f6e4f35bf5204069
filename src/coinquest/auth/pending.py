"""
Pending registration cache.

Signup data lives here, keyed by normalized email, until its one-time code
is verified and the account is materialized. Two interchangeable stores:

- ``MemoryPendingStore``: process-local dict guarded by an asyncio.Lock.
  Entries are only visible to the process that created them.
- ``RedisPendingStore``: one JSON value per ``pending_signup:<email>`` key,
  shared by every API instance. Check-and-set runs inside WATCH/MULTI/EXEC.

Expiry is always checked lazily on read; the periodic sweep only reclaims
space and is never relied on for correctness.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel
from redis.exceptions import WatchError

from coinquest.errors import TooManyRequests

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from coinquest.config import Settings

logger = structlog.get_logger()


class Cooldown(TooManyRequests):
    """A new code was requested before the resend cooldown elapsed."""


class PendingRegistration(BaseModel):
    """Unverified signup. ``password`` is plaintext until materialization."""

    email: str
    name: str
    password: str
    age: int | None = None
    grade: str | None = None
    school: str | None = None
    code_hash: str
    issued_at: datetime
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at

    def cooldown_remaining(self, now: datetime, cooldown: timedelta) -> float:
        """Seconds until another code may be issued (0 when allowed)."""
        return max(0.0, (self.issued_at + cooldown - now).total_seconds())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class PendingStore(ABC):
    """Storage primitive behind the cache. Every method is atomic per email."""

    @abstractmethod
    async def insert_if_absent(self, entry: PendingRegistration, now: datetime) -> bool:
        """Insert unless a live entry exists. Returns True if inserted."""

    @abstractmethod
    async def get(self, email: str) -> PendingRegistration | None:
        """Return the entry (live or expired) or None."""

    @abstractmethod
    async def replace_code(
        self,
        email: str,
        code_hash: str,
        expires_at: datetime,
        cooldown: timedelta,
        now: datetime,
    ) -> PendingRegistration | None:
        """Swap in a new code hash if the cooldown elapsed.

        Returns the previous entry, None if there is no entry.
        Raises Cooldown with the remaining wait otherwise.
        """

    @abstractmethod
    async def compare_and_set(
        self, email: str, expected_hash: str, entry: PendingRegistration, now: datetime
    ) -> bool:
        """Overwrite the entry only if its code hash is still ``expected_hash``."""

    @abstractmethod
    async def consume(self, email: str, expected_hash: str | None = None) -> PendingRegistration | None:
        """Remove and return the entry; with ``expected_hash`` only when it matches."""

    @abstractmethod
    async def sweep(self, now: datetime) -> int:
        """Drop expired entries. Returns how many were removed."""

    async def close(self) -> None:  # noqa: B027
        """Release store resources."""


class MemoryPendingStore(PendingStore):
    """Process-local store."""

    def __init__(self) -> None:
        self._entries: dict[str, PendingRegistration] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def insert_if_absent(self, entry: PendingRegistration, now: datetime) -> bool:
        async with self._lock:
            current = self._entries.get(entry.email)
            if current is not None and current.is_live(now):
                return False
            self._entries[entry.email] = entry.model_copy()
            return True

    async def get(self, email: str) -> PendingRegistration | None:
        async with self._lock:
            entry = self._entries.get(email)
            return entry.model_copy() if entry is not None else None

    async def replace_code(
        self,
        email: str,
        code_hash: str,
        expires_at: datetime,
        cooldown: timedelta,
        now: datetime,
    ) -> PendingRegistration | None:
        async with self._lock:
            current = self._entries.get(email)
            if current is None:
                return None
            remaining = current.cooldown_remaining(now, cooldown)
            if remaining > 0:
                raise Cooldown(remaining)
            self._entries[email] = current.model_copy(
                update={"code_hash": code_hash, "issued_at": now, "expires_at": expires_at}
            )
            return current

    async def compare_and_set(
        self, email: str, expected_hash: str, entry: PendingRegistration, now: datetime
    ) -> bool:
        async with self._lock:
            current = self._entries.get(email)
            if current is None or current.code_hash != expected_hash:
                return False
            self._entries[email] = entry.model_copy()
            return True

    async def consume(self, email: str, expected_hash: str | None = None) -> PendingRegistration | None:
        async with self._lock:
            current = self._entries.get(email)
            if current is None:
                return None
            if expected_hash is not None and current.code_hash != expected_hash:
                return None
            return self._entries.pop(email)

    async def sweep(self, now: datetime) -> int:
        async with self._lock:
            expired = [email for email, entry in self._entries.items() if not entry.is_live(now)]
            for email in expired:
                del self._entries[email]
            return len(expired)


class RedisPendingStore(PendingStore):
    """Shared store on Redis.

    Keys outlive the code by ``grace`` so an expired entry can still be
    reported as expired instead of missing.
    """

    KEY_PREFIX = "pending_signup:"

    def __init__(self, redis: Redis, grace: timedelta) -> None:
        self._redis = redis
        self._grace = grace

    def _key(self, email: str) -> str:
        return f"{self.KEY_PREFIX}{email}"

    def _ttl_ms(self, entry: PendingRegistration, now: datetime) -> int:
        return max(1, int((entry.expires_at - now + self._grace).total_seconds() * 1000))

    @staticmethod
    def _decode(raw: str | None) -> PendingRegistration | None:
        if raw is None:
            return None
        return PendingRegistration.model_validate_json(raw)

    async def insert_if_absent(self, entry: PendingRegistration, now: datetime) -> bool:
        key = self._key(entry.email)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = self._decode(await pipe.get(key))
                if current is not None and current.is_live(now):
                    return False
                pipe.multi()
                pipe.set(key, entry.model_dump_json(), px=self._ttl_ms(entry, now))
                await pipe.execute()
            except WatchError:
                # Another request wrote this key first; its entry wins.
                return False
        return True

    async def get(self, email: str) -> PendingRegistration | None:
        return self._decode(await self._redis.get(self._key(email)))

    async def replace_code(
        self,
        email: str,
        code_hash: str,
        expires_at: datetime,
        cooldown: timedelta,
        now: datetime,
    ) -> PendingRegistration | None:
        key = self._key(email)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = self._decode(await pipe.get(key))
                if current is None:
                    return None
                remaining = current.cooldown_remaining(now, cooldown)
                if remaining > 0:
                    raise Cooldown(remaining)
                updated = current.model_copy(
                    update={"code_hash": code_hash, "issued_at": now, "expires_at": expires_at}
                )
                pipe.multi()
                pipe.set(key, updated.model_dump_json(), px=self._ttl_ms(updated, now))
                await pipe.execute()
            except WatchError:
                # A concurrent resend just issued a code, so the full cooldown applies.
                raise Cooldown(cooldown.total_seconds()) from None
        return current

    async def compare_and_set(
        self, email: str, expected_hash: str, entry: PendingRegistration, now: datetime
    ) -> bool:
        key = self._key(email)
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = self._decode(await pipe.get(key))
                if current is None or current.code_hash != expected_hash:
                    return False
                pipe.multi()
                pipe.set(key, entry.model_dump_json(), px=self._ttl_ms(entry, now))
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def consume(self, email: str, expected_hash: str | None = None) -> PendingRegistration | None:
        key = self._key(email)
        if expected_hash is None:
            return self._decode(await self._redis.getdel(key))
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                current = self._decode(await pipe.get(key))
                if current is None or current.code_hash != expected_hash:
                    return None
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            except WatchError:
                return None
        return current

    async def sweep(self, now: datetime) -> int:
        # Redis expires keys on its own.
        return 0


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class PendingRegistrationCache:
    """TTL- and cooldown-aware facade over a PendingStore, plus the sweep task."""

    def __init__(
        self,
        store: PendingStore,
        *,
        cooldown: timedelta = timedelta(seconds=60),
        sweep_interval: float = 300,
    ) -> None:
        self.store = store
        self.cooldown = cooldown
        self.sweep_interval = sweep_interval
        self._sweep_task: asyncio.Task[None] | None = None

    async def put(
        self,
        email: str,
        data: dict[str, object],
        code_hash: str,
        ttl: timedelta,
        now: datetime | None = None,
    ) -> bool:
        """Insert a pending signup. Returns False (and changes nothing) if one is live."""
        if now is None:
            now = _utcnow()
        entry = PendingRegistration.model_validate(
            {
                **data,
                "email": email,
                "code_hash": code_hash,
                "issued_at": now,
                "expires_at": now + ttl,
            }
        )
        return await self.store.insert_if_absent(entry, now)

    async def get(self, email: str) -> PendingRegistration | None:
        return await self.store.get(email)

    async def replace_code(
        self,
        email: str,
        new_hash: str,
        new_ttl: timedelta,
        now: datetime | None = None,
    ) -> PendingRegistration | None:
        """Issue a new code hash. Raises Cooldown if the last one is too recent."""
        if now is None:
            now = _utcnow()
        return await self.store.replace_code(email, new_hash, now + new_ttl, self.cooldown, now)

    async def restore(
        self,
        email: str,
        current_hash: str,
        previous: PendingRegistration,
        now: datetime | None = None,
    ) -> bool:
        """Put ``previous`` back if the entry still carries ``current_hash``."""
        if now is None:
            now = _utcnow()
        return await self.store.compare_and_set(email, current_hash, previous, now)

    async def consume(self, email: str, code_hash: str | None = None) -> PendingRegistration | None:
        return await self.store.consume(email, code_hash)

    async def sweep(self, now: datetime | None = None) -> int:
        if now is None:
            now = _utcnow()
        removed = await self.store.sweep(now)
        if removed:
            logger.info("pending_signups_swept", removed=removed)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("pending_sweep_failed")

    def start(self) -> None:
        """Start the periodic sweep on the running loop."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the sweep and close the store."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.store.close()


# ---------------------------------------------------------------------------
# Process-wide owner
# ---------------------------------------------------------------------------

_cache: PendingRegistrationCache | None = None


def init_pending_cache(settings: Settings, redis: Redis | None = None) -> PendingRegistrationCache:
    """Create the process-wide cache for the configured backend."""
    global _cache  # noqa: PLW0603
    store: PendingStore
    if settings.pending_backend == "redis":
        if redis is None:
            msg = "pending_backend=redis requires an initialized Redis client"
            raise RuntimeError(msg)
        store = RedisPendingStore(redis, grace=timedelta(seconds=settings.pending_sweep_interval_seconds))
    else:
        store = MemoryPendingStore()
    _cache = PendingRegistrationCache(
        store,
        cooldown=timedelta(seconds=settings.otp_resend_cooldown_seconds),
        sweep_interval=settings.pending_sweep_interval_seconds,
    )
    logger.info("pending_cache_initialized", backend=settings.pending_backend)
    return _cache


async def close_pending_cache() -> None:
    """Stop the sweep and drop the cache."""
    global _cache  # noqa: PLW0603
    if _cache is not None:
        await _cache.stop()
        _cache = None


def get_pending_cache() -> PendingRegistrationCache:
    """Get the process-wide cache (FastAPI dependency)."""
    if _cache is None:
        msg = "Pending cache not initialized. Call init_pending_cache() first."
        raise RuntimeError(msg)
    return _cache
