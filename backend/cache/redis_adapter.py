"""
Redis Cache Adapter
Redis 缓存适配器

Wraps an asyncio Redis client behind a miss-on-failure contract:
- Explicit connection state machine (disconnected / connecting / connected / exhausted)
- Scheduled reconnects with fixed or capped-exponential delay
- Bounded connect and operation timeouts
- Errors never propagate to callers; they become misses and trigger a reconnect
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config import RedisSettings

logger = logging.getLogger(__name__)

# Failures that demote the adapter; anything else is a programming error
CONNECTION_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class ConnectionState(str, Enum):
    """External cache connection status"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    EXHAUSTED = "exhausted"


@dataclass
class ExternalCacheState:
    """Health bookkeeping; never persisted."""
    state: ConnectionState = ConnectionState.DISCONNECTED
    consecutive_failures: int = 0
    next_retry_at: Optional[float] = None
    last_error: Optional[str] = None


def default_client_factory(settings: RedisSettings) -> aioredis.Redis:
    """Create a Redis client; the connection is opened lazily by the first command."""
    return aioredis.Redis(
        host=settings.host,
        port=settings.port,
        password=settings.password,
        db=settings.db,
        socket_connect_timeout=settings.connect_timeout,
        socket_timeout=settings.operation_timeout,
        decode_responses=True,
    )


class RedisCacheAdapter:
    """
    External cache with automatic failover bookkeeping.

    Usage:
        adapter = RedisCacheAdapter(settings.redis)
        await adapter.start()          # first connect + reconnect scheduler
        value = await adapter.get("image:pets/b.png")
        await adapter.close()
    """

    def __init__(
        self,
        settings: RedisSettings,
        client_factory: Callable[[RedisSettings], Any] = default_client_factory,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._client_factory = client_factory
        self._clock = clock
        self._client = None
        self._state = ExternalCacheState()
        self._listeners: List[Callable[[], None]] = []
        self._scheduler_task: Optional[asyncio.Task] = None

    # ============================================
    # State
    # ============================================

    @property
    def healthy(self) -> bool:
        return self._state.state == ConnectionState.CONNECTED and self._client is not None

    @property
    def state(self) -> ConnectionState:
        return self._state.state

    @property
    def consecutive_failures(self) -> int:
        return self._state.consecutive_failures

    @property
    def next_retry_at(self) -> Optional[float]:
        return self._state.next_retry_at

    def add_connect_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback run after every successful connect."""
        self._listeners.append(callback)

    def status(self) -> Dict[str, Any]:
        data = asdict(self._state)
        data["state"] = self._state.state.value
        data["max_retries"] = self._settings.max_retries
        if self._state.next_retry_at is not None:
            data["next_retry_in"] = max(0.0, round(self._state.next_retry_at - self._clock(), 1))
        else:
            data["next_retry_in"] = None
        return data

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        """Attempt the first connection and start the reconnect scheduler."""
        await self.connect()
        if self._scheduler_task is None or self._scheduler_task.done():
            self._scheduler_task = asyncio.create_task(self._scheduler_loop())
            logger.debug("[RedisCache] Reconnect scheduler started")

    async def connect(self) -> bool:
        """
        Open a connection and verify it with PING.

        Returns:
            True if the adapter is connected afterwards.
        """
        if self._state.state == ConnectionState.CONNECTED:
            return True
        if self._state.state == ConnectionState.CONNECTING:
            logger.debug("[RedisCache] Connection attempt already in progress, skipping")
            return False
        if self._state.state == ConnectionState.EXHAUSTED:
            logger.debug("[RedisCache] Retries exhausted, waiting for manual reset")
            return False

        self._state.state = ConnectionState.CONNECTING
        attempt = self._state.consecutive_failures + 1
        logger.info(
            f"[RedisCache] Connecting to {self._settings.host}:{self._settings.port} "
            f"(attempt {attempt}/{self._settings.max_retries + 1})"
        )

        await self._drop_client()
        client = None
        try:
            client = self._client_factory(self._settings)
            await asyncio.wait_for(client.ping(), timeout=self._settings.connect_timeout)
        except CONNECTION_ERRORS as e:
            logger.warning(f"[RedisCache] Connection failed: {e!r}")
            if client is not None:
                await self._close_client(client)
            if self._state.state == ConnectionState.CONNECTING:
                self._record_failure(e)
            return False

        if self._state.state != ConnectionState.CONNECTING or self._client is not None:
            # Closed or superseded while the PING was in flight
            logger.debug("[RedisCache] Connection state changed during connect, discarding client")
            await self._close_client(client)
            return self.healthy

        self._client = client
        self._state.state = ConnectionState.CONNECTED
        self._state.consecutive_failures = 0
        self._state.next_retry_at = None
        self._state.last_error = None
        logger.info("[RedisCache] Connected")

        for callback in self._listeners:
            callback()
        return True

    async def maybe_reconnect(self) -> bool:
        """
        Reconnect if a retry is due.

        Called by the scheduler on every tick; tests call it after
        advancing a virtual clock.
        """
        if self._state.state != ConnectionState.DISCONNECTED:
            return False
        if self._state.next_retry_at is None or self._clock() < self._state.next_retry_at:
            return False
        return await self.connect()

    def reset(self) -> None:
        """Clear the failure counter and make a retry due immediately."""
        self._state.consecutive_failures = 0
        self._state.last_error = None
        # An in-flight attempt keeps CONNECTING and finishes on its own
        if self._state.state not in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            self._state.state = ConnectionState.DISCONNECTED
            self._state.next_retry_at = self._clock()
        logger.info("[RedisCache] Retry count reset")

    async def reconnect(self) -> bool:
        """Manual reconnect: reset the counters and connect now."""
        logger.info("[RedisCache] Manual reconnection triggered")
        self.reset()
        if self._state.state == ConnectionState.CONNECTED:
            await self._drop_client()
            self._state.state = ConnectionState.DISCONNECTED
        return await self.connect()

    async def close(self) -> None:
        """Stop the scheduler and close the connection."""
        if self._scheduler_task and not self._scheduler_task.done():
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
        self._scheduler_task = None
        await self._drop_client()
        self._state = ExternalCacheState()
        logger.info("[RedisCache] Closed")

    # ============================================
    # Operations
    # ============================================

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Fetch and decode a JSON value; None on miss, failure or bad payload."""
        ok, raw = await self._execute("get", key, lambda c: c.get(key))
        if not ok or raw is None:
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"[RedisCache] Undecodable value for {key}: {e}")
            return None
        if not isinstance(value, dict):
            logger.warning(f"[RedisCache] Unexpected value type for {key}: {type(value).__name__}")
            return None
        logger.debug(f"[RedisCache] Hit: {key}")
        return value

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> bool:
        """Store a JSON value with expiry; True if stored."""
        if ttl_seconds <= 0:
            return False
        payload = json.dumps(value, ensure_ascii=False)
        ok, _ = await self._execute(
            "set", key, lambda c: c.set(key, payload, ex=int(ttl_seconds))
        )
        if ok:
            logger.debug(f"[RedisCache] Set: {key} (TTL: {int(ttl_seconds)}s)")
        return ok

    async def delete(self, key: str) -> bool:
        """Delete a key; True only if it existed."""
        ok, result = await self._execute("delete", key, lambda c: c.delete(key))
        return bool(ok and result)

    async def clear(self, pattern: str) -> int:
        """Delete every key matching ``pattern``; returns the number removed."""

        async def _scan_and_delete(client) -> int:
            removed = 0
            async for found in client.scan_iter(match=pattern, count=500):
                removed += await client.delete(found)
            return removed

        ok, removed = await self._execute(
            "clear", pattern, _scan_and_delete,
            timeout=max(self._settings.operation_timeout, 30.0),
        )
        return removed if ok else 0

    async def info(self) -> Dict[str, Any]:
        ok, dbsize = await self._execute("dbsize", "-", lambda c: c.dbsize())
        return {"dbsize": dbsize} if ok else {}

    # ============================================
    # Internals
    # ============================================

    async def _execute(
        self,
        op: str,
        key: str,
        call: Callable[[Any], Awaitable[Any]],
        timeout: Optional[float] = None,
    ) -> Tuple[bool, Any]:
        """Run ``call`` against the live client, absorbing connection failures."""
        client = self._client
        if self._state.state != ConnectionState.CONNECTED or client is None:
            return False, None
        try:
            result = await asyncio.wait_for(
                call(client), timeout=timeout or self._settings.operation_timeout
            )
        except CONNECTION_ERRORS as e:
            logger.warning(f"[RedisCache] {op} failed for {key}: {e!r}")
            # Only the first failure on a given client demotes the adapter
            if self._client is client:
                self._client = None
                await self._close_client(client)
                self._record_failure(e)
            return False, None
        return True, result

    def _record_failure(self, error: BaseException) -> None:
        self._state.consecutive_failures += 1
        self._state.last_error = str(error) or error.__class__.__name__
        failures = self._state.consecutive_failures

        if failures > self._settings.max_retries:
            self._state.state = ConnectionState.EXHAUSTED
            self._state.next_retry_at = None
            logger.error(
                "[RedisCache] Max reconnection attempts reached, "
                "using local cache until manual reset"
            )
            return

        delay = self._retry_delay(failures)
        self._state.state = ConnectionState.DISCONNECTED
        self._state.next_retry_at = self._clock() + delay
        logger.warning(
            f"[RedisCache] Falling back to local cache; reconnect in {delay:.1f}s "
            f"(attempt {failures + 1}/{self._settings.max_retries + 1})"
        )

    def _retry_delay(self, failures: int) -> float:
        interval = self._settings.retry_interval
        if self._settings.retry_backoff == "exponential":
            return min(interval * (2 ** (failures - 1)), self._settings.max_retry_delay)
        return interval

    async def _scheduler_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._settings.poll_interval)
                await self.maybe_reconnect()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[RedisCache] Reconnect scheduler error: {e}")

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await self._close_client(client)

    @staticmethod
    async def _close_client(client) -> None:
        try:
            await client.aclose()
        except CONNECTION_ERRORS as e:
            logger.debug(f"[RedisCache] Ignoring close error: {e!r}")
