"""
Connection Pool Manager

One bounded pool per PoolKey (resource id + optional sub-resource), created
lazily on the first acquire. Pool construction fetches credentials from the
Token Provider before the first physical connection is opened; if that
fails the pool is not stored and the next acquire tries again.

Health policy:
- every checkout probes the connection; a failed probe discards it and a
  replacement is opened, within the pool_checkout retry budget
- idle connections older than the idle timeout are closed on checkout
- connections that errored while leased are discarded on release
"""

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import structlog

from resource_broker.shared.adapters.base import ConnectionFactory
from resource_broker.shared.auth.token_provider import TokenProvider
from resource_broker.shared.connections.registry import ResourceDescriptor
from resource_broker.shared.core.config import Settings, get_settings
from resource_broker.shared.core.credentials import BrokerCredential
from resource_broker.shared.core.exceptions import (
    ConfigurationError,
    ConnectionUnavailable,
    PoolTimeout,
)
from resource_broker.shared.core.retry import RetryPolicy, get_retry_policy

logger = structlog.get_logger()


@dataclass(frozen=True)
class PoolKey:
    resource_id: str
    sub_resource: Optional[str] = None

    def __str__(self) -> str:
        if self.sub_resource:
            return f"{self.resource_id}/{self.sub_resource}"
        return self.resource_id


@dataclass(frozen=True)
class PoolTarget:
    """What a pool connects to, and as whom."""

    descriptor: ResourceDescriptor
    credential: BrokerCredential
    sub_resource: Optional[str] = None


@dataclass
class PoolConfig:
    """Configuration for pool sizing and timeouts."""

    min_size: int = 0
    max_size: int = 10
    connection_timeout: float = 15.0  # Max wait for a free connection
    idle_timeout: float = 30.0  # Idle connections older than this are closed

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PoolConfig":
        settings = settings or get_settings()
        return cls(
            min_size=settings.POOL_MIN,
            max_size=settings.POOL_MAX,
            connection_timeout=settings.POOL_CONNECTION_TIMEOUT_SECONDS,
            idle_timeout=settings.POOL_IDLE_TIMEOUT_SECONDS,
        )


@dataclass
class PooledConnection:
    handle: Any
    generation: int
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)


@dataclass
class ConnectionLease:
    """A caller's exclusive hold on one pooled connection until release."""

    pool_key: PoolKey
    handle: Any
    acquired_at: datetime
    _connection: PooledConnection = field(repr=False)
    _pool: "ConnectionPool" = field(repr=False)
    failed: bool = False
    released: bool = False

    def mark_failed(self) -> None:
        """The connection errored during use; it will be discarded on release."""
        self.failed = True


class ConnectionPool:
    def __init__(
        self,
        key: PoolKey,
        factory: ConnectionFactory,
        opener: Callable[[], Awaitable[Any]],
        config: PoolConfig,
        checkout_policy: RetryPolicy,
        identity: str,
    ):
        self.key = key
        self.factory = factory
        self.config = config
        self.identity = identity
        self._opener = opener
        self._checkout_policy = checkout_policy
        self._slots = asyncio.Semaphore(config.max_size)
        self._idle: deque[PooledConnection] = deque()
        self._open_count = 0
        self._leased = 0
        self._generation = 0
        self._closed = False

    @property
    def size(self) -> int:
        """Physical connections currently open (idle + leased)."""
        return self._open_count

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def leased_count(self) -> int:
        return self._leased

    async def warm(self) -> None:
        for _ in range(self.config.min_size):
            self._idle.append(await self._open())

    async def _open(self) -> PooledConnection:
        handle = await self._opener()
        self._open_count += 1
        return PooledConnection(handle=handle, generation=self._generation)

    async def _discard(self, conn: PooledConnection, reason: str) -> None:
        self._open_count -= 1
        logger.info("pooled_connection_discarded", pool=str(self.key), reason=reason)
        try:
            await self.factory.close(conn.handle)
        except Exception as e:
            logger.warning("pooled_connection_close_failed", pool=str(self.key), error=str(e))

    async def _checkout(self) -> PooledConnection:
        now = time.monotonic()
        conn: PooledConnection | None = None
        while self._idle:
            candidate = self._idle.pop()
            if now - candidate.last_used > self.config.idle_timeout:
                await self._discard(candidate, reason="idle_timeout")
                continue
            conn = candidate
            break

        if conn is None:
            conn = await self._open()

        if await self.factory.probe(conn.handle):
            return conn
        await self._discard(conn, reason="probe_failed")
        raise ConnectionUnavailable(
            f"Connection to '{self.key}' failed its liveness probe",
            details={"pool": str(self.key)},
        )

    async def acquire(self, timeout: float | None = None) -> ConnectionLease:
        if self._closed:
            raise ConnectionUnavailable(f"Pool '{self.key}' is closed")
        wait = self.config.connection_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=wait)
        except asyncio.TimeoutError as e:
            logger.warning(
                "pool_acquire_timeout",
                pool=str(self.key),
                timeout_seconds=wait,
                leased=self._leased,
                max_size=self.config.max_size,
            )
            raise PoolTimeout(
                f"No connection to '{self.key}' became available within {wait:g}s",
                details={"pool": str(self.key), "max_size": self.config.max_size},
            ) from e

        try:
            conn = await self._checkout_policy.run(self._checkout)
        except BaseException:
            self._slots.release()
            raise

        self._leased += 1
        return ConnectionLease(
            pool_key=self.key,
            handle=conn.handle,
            acquired_at=datetime.now(timezone.utc),
            _connection=conn,
            _pool=self,
        )

    async def release(self, lease: ConnectionLease) -> None:
        if lease.released:
            return
        lease.released = True
        self._leased -= 1
        conn = lease._connection
        try:
            if lease.failed:
                await self._discard(conn, reason="errored_in_use")
            elif self._closed or conn.generation != self._generation:
                await self._discard(conn, reason="drained")
            else:
                conn.last_used = time.monotonic()
                self._idle.append(conn)
        finally:
            self._slots.release()

    async def drain(self) -> int:
        """
        Close every idle connection. Connections currently leased are closed
        when they come back.
        """
        self._generation += 1
        drained = 0
        while self._idle:
            await self._discard(self._idle.popleft(), reason="drained")
            drained += 1
        return drained

    async def close(self) -> None:
        self._closed = True
        await self.drain()


class PoolManager:
    def __init__(
        self,
        token_provider: TokenProvider,
        factories: dict[str, ConnectionFactory],
        resolve_target: Callable[[PoolKey], PoolTarget],
        config: PoolConfig | None = None,
        checkout_policy: RetryPolicy | None = None,
    ):
        self.token_provider = token_provider
        self.factories = factories
        self.config = config or PoolConfig.from_settings()
        self._resolve_target = resolve_target
        self._checkout_policy = checkout_policy or get_retry_policy("pool_checkout")
        self._pools: dict[PoolKey, ConnectionPool] = {}
        # One construction lock per key; unrelated keys never contend.
        self._locks: dict[PoolKey, asyncio.Lock] = {}
        self._shutting_down = False

    def get_pool(self, key: PoolKey) -> ConnectionPool | None:
        return self._pools.get(key)

    @property
    def pools(self) -> dict[PoolKey, ConnectionPool]:
        return dict(self._pools)

    def factory_for(self, descriptor: ResourceDescriptor) -> ConnectionFactory:
        factory = self.factories.get(descriptor.kind.value)
        if factory is None:
            raise ConfigurationError(
                f"No backend registered for resource kind '{descriptor.kind.value}'"
            )
        return factory

    async def _get_or_create(self, key: PoolKey) -> ConnectionPool:
        pool = self._pools.get(key)
        if pool is not None:
            return pool

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            pool = self._pools.get(key)
            if pool is not None:
                return pool
            if self._shutting_down:
                raise ConnectionUnavailable("Broker is shutting down")

            target = self._resolve_target(key)
            factory = self.factory_for(target.descriptor)
            scope = target.descriptor.token_scope

            # Credentials first; a failure here leaves no pool behind.
            await self.token_provider.get_token(target.credential, scope)

            async def opener() -> Any:
                token = await self.token_provider.get_token(target.credential, scope)
                return await factory.open(
                    target.descriptor,
                    target.sub_resource,
                    token,
                    target.credential.auth_mode,
                )

            pool = ConnectionPool(
                key,
                factory,
                opener,
                self.config,
                self._checkout_policy,
                identity=target.credential.identity,
            )
            try:
                await pool.warm()
            except BaseException:
                await pool.close()
                raise
            self._pools[key] = pool
            logger.info(
                "connection_pool_created",
                pool=str(key),
                min_size=self.config.min_size,
                max_size=self.config.max_size,
            )
            return pool

    async def acquire(self, key: PoolKey, timeout: float | None = None) -> ConnectionLease:
        pool = await self._get_or_create(key)
        return await pool.acquire(timeout)

    async def release(self, lease: ConnectionLease) -> None:
        await lease._pool.release(lease)

    @asynccontextmanager
    async def lease(
        self, key: PoolKey, timeout: float | None = None
    ) -> AsyncIterator[ConnectionLease]:
        """Scoped acquisition; the lease is released on every exit path."""
        held = await self.acquire(key, timeout)
        try:
            yield held
        except BaseException:
            held.mark_failed()
            raise
        finally:
            await self.release(held)

    async def drain(self, key: PoolKey) -> int:
        pool = self._pools.get(key)
        if pool is None:
            return 0
        drained = await pool.drain()
        logger.info("connection_pool_drained", pool=str(key), closed=drained)
        return drained

    async def drain_identity(self, identity: str) -> list[PoolKey]:
        """Drain every pool authenticated as ``identity``."""
        keys = [key for key, pool in self._pools.items() if pool.identity == identity]
        for key in keys:
            await self.drain(key)
        return keys

    async def shutdown(self) -> None:
        self._shutting_down = True
        pools = list(self._pools.items())
        self._pools.clear()
        errors: list[str] = []
        for key, pool in pools:
            try:
                await pool.close()
            except Exception as e:
                errors.append(f"{key}: {e}")
        if errors:
            logger.error("connection_pool_shutdown_errors", errors=errors)
        logger.info("connection_pools_closed", count=len(pools))
