"""Event-idempotency cache for inbound webhook events.

Role:
    Records which platform event ids have already been handled so retransmitted webhooks
    are not answered twice. Redis is the shared primary store; a process-local mapping
    takes over whenever Redis is unreachable.

State contract:
    - AVAILABLE: remote store serves every call.
    - DEGRADED: local store serves every call. Entered the moment a remote call fails.
    - DEGRADED -> AVAILABLE only through a successful reconnection ping (_on_ready).
    - Reconnection backs off min(retries * step, cap) and gives up after max_retries;
      reset_reconnect() restarts an exhausted lifecycle.

The two stores are never synchronized: a key written to Redis is unknown to the local
store after a failover, so deduplication is best-effort across that boundary.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis_async

logger = logging.getLogger("order_bridge.dedup")

DEFAULT_TTL_SECONDS = 15


class BackendState(str, Enum):
    AVAILABLE = "available"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class CacheEntry:
    """Local record of a seen key with its expiry instant."""
    inserted_at: float
    expires_at: float

    def is_live(self, now: float) -> bool:
        return now < self.expires_at


class DedupStore(Protocol):
    """Operations shared by the remote and local dedup stores."""

    async def insert(self, key: str, ttl_s: int) -> None: ...

    async def remove(self, key: str) -> bool: ...

    async def insert_if_absent(self, key: str, ttl_s: int) -> bool: ...


class RemoteDedupStore(DedupStore, Protocol):
    """Shared store that can also report its own readiness."""

    async def ping(self) -> None: ...


class InMemoryDedupStore:
    """Process-local key -> expiry mapping with lazy expiry on access."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    async def insert(self, key: str, ttl_s: int) -> None:
        now = self._clock()
        self._entries[key] = CacheEntry(inserted_at=now, expires_at=now + ttl_s)

    async def remove(self, key: str) -> bool:
        # Expired entries are dropped here as well; there is no background sweep.
        entry = self._entries.pop(key, None)
        return entry is not None and entry.is_live(self._clock())

    async def insert_if_absent(self, key: str, ttl_s: int) -> bool:
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and entry.is_live(now):
            return False
        self._entries[key] = CacheEntry(inserted_at=now, expires_at=now + ttl_s)
        return True

    def __len__(self) -> int:
        return len(self._entries)


class RedisDedupStore:
    """Redis-backed dedup store shared across worker processes."""

    def __init__(self, client: Any, prefix: str = "dedup:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, socket_timeout_s: float = 1.0) -> "RedisDedupStore":
        client = redis_async.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout_s,
            socket_connect_timeout=socket_timeout_s,
        )
        return cls(client)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def ping(self) -> None:
        await self._client.ping()

    async def insert(self, key: str, ttl_s: int) -> None:
        # Redis sets cannot expire members, so a plain key with a dummy value is used.
        await self._client.set(self._key(key), "", ex=max(1, int(ttl_s)))

    async def remove(self, key: str) -> bool:
        deleted = await self._client.delete(self._key(key))
        return int(deleted or 0) > 0

    async def insert_if_absent(self, key: str, ttl_s: int) -> bool:
        created = await self._client.set(self._key(key), "", ex=max(1, int(ttl_s)), nx=True)
        return bool(created)

    async def aclose(self) -> None:
        await self._client.aclose()


class ResilientDedupCache:
    """Routes dedup calls to Redis while healthy and to the local store otherwise."""

    def __init__(
        self,
        remote: Optional[RemoteDedupStore] = None,
        local: Optional[DedupStore] = None,
        *,
        ttl_s: int = DEFAULT_TTL_SECONDS,
        max_retries: int = 5,
        backoff_step_ms: int = 50,
        backoff_cap_ms: int = 500,
        op_timeout_s: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Purpose: Wire the remote and local stores behind one health-tracking facade.
        Inputs/Outputs: Inputs are the stores, TTL, reconnection and timeout knobs; no return.
        Side Effects / State: Starts DEGRADED until the remote reports readiness.
        Dependencies: Remote must expose ping/insert/remove/insert_if_absent coroutines.
        Failure Modes: None; a missing remote keeps the cache on the local store forever.
        If Removed: Retransmitted webhooks are answered more than once.
        Testing Notes: Inject a fake remote and a fake clock on the local store.
        """
        # Keep both stores; state only changes through _on_ready/_on_error.
        self._remote = remote
        self._local = local if local is not None else InMemoryDedupStore()
        self._ttl_s = ttl_s
        self._max_retries = max_retries
        self._backoff_step_ms = backoff_step_ms
        self._backoff_cap_ms = backoff_cap_ms
        self._op_timeout_s = op_timeout_s
        self._sleep = sleep
        self._state = BackendState.DEGRADED
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_exhausted = False

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def is_available(self) -> bool:
        return self._state is BackendState.AVAILABLE

    @property
    def ttl_s(self) -> int:
        return self._ttl_s

    def backoff_delay(self, retries: int) -> float:
        """Return the wait in seconds before reconnection attempt number `retries`."""
        return min(retries * self._backoff_step_ms, self._backoff_cap_ms) / 1000.0

    async def insert(self, key: str) -> None:
        """Purpose: Record that an event key has been seen for the configured TTL.
        Inputs/Outputs: Input is the dedup key; no return value.
        Side Effects / State: Writes to Redis, or to the local store when degraded.
        Dependencies: Uses _try_remote for routing and failover.
        Failure Modes: Never raises; remote errors degrade the cache for this call.
        If Removed: Events cannot be marked as handled.
        Testing Notes: Insert twice and verify no error and a refreshed entry.
        """
        # Overwrite semantics in both stores make repeated inserts harmless.
        served, _ = await self._try_remote("insert", lambda: self._remote.insert(key, self._ttl_s))
        if served:
            return
        await self._local.insert(key, self._ttl_s)

    async def remove(self, key: str) -> bool:
        """Purpose: Delete a key and report whether it was present and unexpired.
        Inputs/Outputs: Input is the dedup key; returns True iff the key was live.
        Side Effects / State: Deletes from Redis or the local store.
        Dependencies: Uses _try_remote for routing and failover.
        Failure Modes: Never raises; falls back to the local store on remote failure.
        If Removed: Callers lose the dedup decision point.
        Testing Notes: Unknown keys and expired keys both return False.
        """
        # The local store handles lazy expiry on its own.
        served, removed = await self._try_remote("remove", lambda: self._remote.remove(key))
        if served:
            return bool(removed)
        return await self._local.remove(key)

    async def insert_if_absent(self, key: str) -> bool:
        """Atomically mark `key` as seen; True when it was not seen before."""
        served, created = await self._try_remote(
            "insert_if_absent", lambda: self._remote.insert_if_absent(key, self._ttl_s)
        )
        if served:
            return bool(created)
        return await self._local.insert_if_absent(key, self._ttl_s)

    async def connect(self) -> BackendState:
        """Run one reconnection lifecycle inline and return the resulting state."""
        await self._reconnect()
        return self._state

    def start(self) -> None:
        """Start the reconnection lifecycle in the background."""
        self._schedule_reconnect()

    def reset_reconnect(self) -> None:
        """Clear an exhausted retry ceiling and start reconnecting again."""
        self._reconnect_exhausted = False
        self._schedule_reconnect()

    async def aclose(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        closer = getattr(self._remote, "aclose", None)
        if closer is not None:
            try:
                await closer()
            except Exception as exc:
                logger.debug("[Dedup] Error while closing remote store: %s", exc)

    async def _try_remote(self, operation: str, call: Callable[[], Awaitable[Any]]) -> Tuple[bool, Any]:
        # Returns (served, value); served is False whenever the local store must answer.
        if self._remote is None or self._state is not BackendState.AVAILABLE:
            return False, None
        try:
            value = await asyncio.wait_for(call(), timeout=self._op_timeout_s)
        except Exception as exc:
            self._on_error(exc, operation)
            return False, None
        return True, value

    def _on_ready(self) -> None:
        if self._state is not BackendState.AVAILABLE:
            logger.info("[Dedup] Redis connected and ready.")
        self._state = BackendState.AVAILABLE

    def _on_error(self, exc: BaseException, operation: str = "connection") -> None:
        if self._state is BackendState.AVAILABLE:
            logger.warning("[Dedup] Redis %s failed, switching to memory: %s", operation, exc)
        else:
            logger.debug("[Dedup] Redis %s failed while degraded: %s", operation, exc)
        self._state = BackendState.DEGRADED
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._remote is None or self._reconnect_exhausted:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        if self._remote is None:
            logger.info("[Dedup] No remote store configured, using in-memory cache.")
            return
        retries = 0
        while True:
            try:
                await asyncio.wait_for(self._remote.ping(), timeout=self._op_timeout_s)
            except Exception as exc:
                retries += 1
                if retries > self._max_retries:
                    self._reconnect_exhausted = True
                    logger.warning(
                        "[Dedup] Too many retries (%d), staying on in-memory cache: %s",
                        self._max_retries,
                        exc,
                    )
                    return
                delay = self.backoff_delay(retries)
                logger.debug("[Dedup] Reconnect attempt %d failed, retrying in %.3fs", retries, delay)
                await self._sleep(delay)
                continue
            self._on_ready()
            return
