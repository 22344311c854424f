import asyncio
from datetime import timedelta

import pytest

from resource_broker.shared.adapters.base import ConnectionFactory
from resource_broker.shared.auth.token_provider import TokenProvider
from resource_broker.shared.connections.pool import (
    PoolConfig,
    PoolKey,
    PoolManager,
    PoolTarget,
)
from resource_broker.shared.connections.registry import ResourceDescriptor, ResourceKind
from resource_broker.shared.core.config import Settings
from resource_broker.shared.core.credentials import AuthMode, ServicePrincipalCredential
from resource_broker.shared.core.exceptions import (
    AuthenticationFailed,
    ConnectionUnavailable,
    PoolTimeout,
)

KEY = PoolKey("prod-sql", "sales")


class FakeConnectionFactory(ConnectionFactory):
    kind = ResourceKind.SQL

    def __init__(self):
        self.opened: list[str] = []
        self.closed: list[str] = []
        self.unhealthy: set[str] = set()
        self.always_unhealthy = False
        self.last_open = None

    async def open(self, descriptor, sub_resource, token, auth_mode):
        handle = f"conn-{len(self.opened) + 1}"
        self.opened.append(handle)
        self.last_open = (
            descriptor.id,
            sub_resource,
            token.access_token.get_secret_value(),
            auth_mode,
        )
        return handle

    async def probe(self, handle):
        return not self.always_unhealthy and handle not in self.unhealthy

    async def close(self, handle):
        self.closed.append(handle)

    async def discover(self, descriptor, token, auth_mode):
        return []


@pytest.fixture
def credential():
    return ServicePrincipalCredential(tenant_id="tenant-1", client_id="client-1", client_secret="s")


@pytest.fixture
def descriptor():
    return ResourceDescriptor(
        id="prod-sql",
        endpoint="mssql+aioodbc://prod.database.windows.net",
        sub_resources=[{"name": "sales"}],
    )


@pytest.fixture
def connection_factory():
    return FakeConnectionFactory()


@pytest.fixture
def auth_factory(strategy_factory):
    return strategy_factory()


@pytest.fixture
def make_manager(auth_factory, connection_factory, credential, descriptor, fast_policy):
    def make(**config):
        provider = TokenProvider(
            auth_factory, refresh_buffer=timedelta(minutes=5), retry_policy=fast_policy
        )
        return PoolManager(
            provider,
            {"sql": connection_factory},
            lambda key: PoolTarget(descriptor, credential, key.sub_resource),
            config=PoolConfig(**{"connection_timeout": 1.0, **config}),
            checkout_policy=fast_policy,
        )

    return make


def test_pool_key_str():
    assert str(PoolKey("prod-sql")) == "prod-sql"
    assert str(KEY) == "prod-sql/sales"
    assert PoolKey("prod-sql", "sales") == KEY


def test_pool_config_from_settings():
    config = PoolConfig.from_settings(Settings(POOL_MIN=1, POOL_MAX=4))
    assert (config.min_size, config.max_size) == (1, 4)


@pytest.mark.asyncio
async def test_acquire_opens_with_token_and_reuses(make_manager, connection_factory):
    manager = make_manager()

    lease = await manager.acquire(KEY)
    assert lease.handle == "conn-1"
    assert lease.pool_key == KEY
    assert connection_factory.last_open == (
        "prod-sql",
        "sales",
        "auth1-access",
        AuthMode.SERVICE_PRINCIPAL,
    )
    await manager.release(lease)

    again = await manager.acquire(KEY)
    assert again.handle == "conn-1"
    await manager.release(again)
    assert connection_factory.opened == ["conn-1"]


@pytest.mark.asyncio
async def test_release_is_idempotent(make_manager):
    manager = make_manager(max_size=1)
    lease = await manager.acquire(KEY)
    await manager.release(lease)
    await manager.release(lease)

    pool = manager.get_pool(KEY)
    assert pool.leased_count == 0
    assert pool.idle_count == 1


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_max_size(make_manager, connection_factory):
    manager = make_manager(max_size=3)
    in_use = 0
    peak = 0

    async def worker():
        nonlocal in_use, peak
        async with manager.lease(KEY):
            in_use += 1
            peak = max(peak, in_use)
            await asyncio.sleep(0.01)
            in_use -= 1

    await asyncio.gather(*(worker() for _ in range(20)))

    pool = manager.get_pool(KEY)
    assert peak == 3
    assert pool.size <= 3
    assert len(connection_factory.opened) <= 3
    assert pool.leased_count == 0


@pytest.mark.asyncio
async def test_concurrent_first_use_authenticates_once(
    make_manager, auth_factory, credential
):
    manager = make_manager(max_size=10)

    async def worker():
        async with manager.lease(KEY):
            await asyncio.sleep(0.001)

    await asyncio.gather(*(worker() for _ in range(50)))

    assert auth_factory.created[credential.identity].authenticate_calls == 1
    assert len(manager.pools) == 1


@pytest.mark.asyncio
async def test_exhausted_pool_times_out(make_manager):
    manager = make_manager(max_size=1)
    held = await manager.acquire(KEY)

    with pytest.raises(PoolTimeout, match="prod-sql/sales"):
        await manager.acquire(KEY, timeout=0.05)

    await manager.release(held)
    lease = await manager.acquire(KEY, timeout=0.05)
    await manager.release(lease)


@pytest.mark.asyncio
async def test_failed_probe_is_replaced(make_manager, connection_factory):
    manager = make_manager()
    lease = await manager.acquire(KEY)
    await manager.release(lease)
    connection_factory.unhealthy.add("conn-1")

    replacement = await manager.acquire(KEY)

    assert replacement.handle == "conn-2"
    assert connection_factory.closed == ["conn-1"]
    assert manager.get_pool(KEY).size == 1
    await manager.release(replacement)


@pytest.mark.asyncio
async def test_probe_failures_exhaust_retries(make_manager, connection_factory):
    manager = make_manager(max_size=1)
    connection_factory.always_unhealthy = True

    with pytest.raises(ConnectionUnavailable, match="liveness probe"):
        await manager.acquire(KEY)

    pool = manager.get_pool(KEY)
    assert len(connection_factory.opened) == 3
    assert pool.size == 0

    # The slot was given back.
    connection_factory.always_unhealthy = False
    lease = await manager.acquire(KEY, timeout=0.05)
    await manager.release(lease)


@pytest.mark.asyncio
async def test_errored_lease_is_discarded(make_manager, connection_factory):
    manager = make_manager()

    with pytest.raises(RuntimeError):
        async with manager.lease(KEY) as lease:
            assert lease.handle == "conn-1"
            raise RuntimeError("driver blew up")

    pool = manager.get_pool(KEY)
    assert connection_factory.closed == ["conn-1"]
    assert pool.size == 0
    assert pool.idle_count == 0


@pytest.mark.asyncio
async def test_idle_connections_expire(make_manager, connection_factory):
    manager = make_manager(idle_timeout=0.01)
    lease = await manager.acquire(KEY)
    await manager.release(lease)
    await asyncio.sleep(0.05)

    fresh = await manager.acquire(KEY)

    assert fresh.handle == "conn-2"
    assert connection_factory.closed == ["conn-1"]
    await manager.release(fresh)


@pytest.mark.asyncio
async def test_min_size_warms_pool(make_manager, connection_factory):
    manager = make_manager(min_size=2, max_size=4)
    lease = await manager.acquire(KEY)

    pool = manager.get_pool(KEY)
    assert len(connection_factory.opened) == 2
    assert pool.size == 2
    assert pool.idle_count == 1
    await manager.release(lease)


@pytest.mark.asyncio
async def test_drain_closes_idle_and_returning_connections(make_manager, connection_factory):
    manager = make_manager()
    first = await manager.acquire(KEY)
    second = await manager.acquire(KEY)
    await manager.release(first)

    assert await manager.drain(KEY) == 1
    assert connection_factory.closed == [first.handle]

    await manager.release(second)
    assert connection_factory.closed == [first.handle, second.handle]
    assert manager.get_pool(KEY).size == 0

    # The pool keeps serving with new connections.
    third = await manager.acquire(KEY)
    assert third.handle == "conn-3"
    await manager.release(third)


@pytest.mark.asyncio
async def test_drain_unknown_key(make_manager):
    assert await make_manager().drain(PoolKey("nope")) == 0


@pytest.mark.asyncio
async def test_drain_identity(make_manager, credential):
    manager = make_manager()
    other = PoolKey("prod-sql", "other")
    for key in (KEY, other):
        await manager.release(await manager.acquire(key))

    drained = await manager.drain_identity(credential.identity)

    assert set(drained) == {KEY, other}
    assert await manager.drain_identity("interactive:x:y") == []


@pytest.mark.asyncio
async def test_auth_failure_leaves_no_pool(make_manager, auth_factory, credential):
    manager = make_manager()
    strategy = manager.token_provider.strategy_for(credential)
    strategy.failures = [AuthenticationFailed("nope")] * 3

    with pytest.raises(AuthenticationFailed):
        await manager.acquire(KEY)
    assert manager.get_pool(KEY) is None

    lease = await manager.acquire(KEY)
    assert manager.get_pool(KEY) is not None
    await manager.release(lease)


@pytest.mark.asyncio
async def test_unknown_kind_is_configuration_error(
    auth_factory, credential, fast_policy
):
    from resource_broker.shared.core.exceptions import ConfigurationError

    http_descriptor = ResourceDescriptor(id="api", endpoint="https://api.example.test", kind="http")
    manager = PoolManager(
        TokenProvider(auth_factory, retry_policy=fast_policy),
        {},
        lambda key: PoolTarget(http_descriptor, credential, None),
        config=PoolConfig(),
        checkout_policy=fast_policy,
    )
    with pytest.raises(ConfigurationError, match="http"):
        await manager.acquire(PoolKey("api"))


@pytest.mark.asyncio
async def test_shutdown_closes_pools(make_manager, connection_factory):
    manager = make_manager()
    await manager.release(await manager.acquire(KEY))

    await manager.shutdown()

    assert connection_factory.closed == ["conn-1"]
    assert manager.pools == {}
    with pytest.raises(ConnectionUnavailable, match="shutting down"):
        await manager.acquire(KEY)
