"""
Global pytest fixtures for the resource broker test suite.

Provides:
- Settings isolation (BROKER_* environment, per-test token cache directory)
- Zero-wait retry policies
- A scriptable fake auth strategy that counts authentications and refreshes
"""
import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

# Set test environment BEFORE any broker imports
os.environ["BROKER_TESTING"] = "true"

import pytest

from resource_broker.shared.auth.base import AuthStrategy
from resource_broker.shared.core.config import get_settings
from resource_broker.shared.core.credentials import AuthMode, BrokerCredential, CachedToken
from resource_broker.shared.core.exceptions import (
    AuthenticationCancelled,
    AuthenticationFailed,
    ConnectionUnavailable,
    RefreshRejected,
)
from resource_broker.shared.core.retry import RetryPolicy

_BROKER_ENV = (
    "BROKER_RESOURCES",
    "BROKER_RESOURCE_ENDPOINT",
    "BROKER_RESOURCE_KIND",
    "BROKER_RESOURCE_SUB_RESOURCE",
    "BROKER_RESOURCE_AUTH_MODE",
    "BROKER_RESOURCE_API_KEY",
    "BROKER_DEFAULT_TENANT_ID",
    "BROKER_DEFAULT_CLIENT_ID",
    "BROKER_DEFAULT_CLIENT_SECRET",
    "BROKER_DEFAULT_API_KEY",
    "BROKER_DEBUG",
)


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Each test gets a clean BROKER_* environment and its own token cache dir."""
    for name in _BROKER_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BROKER_TOKEN_CACHE_DIR", str(tmp_path / "token-cache"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Three attempts, no backoff sleeps."""
    return RetryPolicy(
        name="test",
        max_attempts=3,
        min_wait=0,
        max_wait=0,
        retry_on=(AuthenticationFailed, ConnectionUnavailable, ConnectionError),
        give_up_on=(RefreshRejected, AuthenticationCancelled),
    )


class FakeAuthStrategy(AuthStrategy):
    """
    In-memory strategy. ``lifetime`` sets expiry of issued tokens, measured
    from ``clock`` (wall time by default);
    ``failures`` queues exceptions raised by the next authenticate calls;
    ``refresh_error`` is raised by every refresh when set.
    """

    mode = AuthMode.SERVICE_PRINCIPAL

    def __init__(
        self,
        identity: str,
        *,
        lifetime: timedelta = timedelta(hours=1),
        persist_tokens: bool = False,
        unattended: bool = True,
        delay: float = 0.01,
        clock: Callable[[], datetime] | None = None,
    ):
        super().__init__(identity)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.lifetime = lifetime
        self.persist_tokens = persist_tokens
        self.unattended = unattended
        self.delay = delay
        self.authenticate_calls = 0
        self.refresh_calls = 0
        self.failures: list[BaseException] = []
        self.refresh_error: BaseException | None = None
        self.cancelled_with: AuthenticationCancelled | None = None
        self.block: asyncio.Future[None] | None = None

    def _issue(self, scope: str, label: str) -> CachedToken:
        return CachedToken(
            access_token=f"{label}-access",
            expires_at=self.clock() + self.lifetime,
            refresh_token=f"{label}-refresh",
            scope=scope,
            owner_key_hash=self.owner_key_hash,
        )

    async def authenticate(self, scope: str) -> CachedToken:
        self.authenticate_calls += 1
        if self.block is not None:
            await self.block
        await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return self._issue(scope, f"auth{self.authenticate_calls}")

    async def refresh(self, token: CachedToken) -> CachedToken:
        self.refresh_calls += 1
        await asyncio.sleep(self.delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self._issue(token.scope, f"refresh{self.refresh_calls}")

    async def cancel_pending(self, reason: AuthenticationCancelled) -> None:
        self.cancelled_with = reason
        if self.block is not None and not self.block.done():
            self.block.set_exception(reason)


@pytest.fixture
def strategy_factory() -> Callable[..., Any]:
    """
    Returns ``make(**strategy_kwargs)``, producing a factory callable for
    TokenProvider. Created strategies are exposed on ``factory.created``.
    """

    def make(**kwargs: Any) -> Callable[[BrokerCredential], FakeAuthStrategy]:
        created: dict[str, FakeAuthStrategy] = {}

        def factory(credential: BrokerCredential) -> FakeAuthStrategy:
            strategy = FakeAuthStrategy(credential.identity, **kwargs)
            created[credential.identity] = strategy
            return strategy

        factory.created = created  # type: ignore[attr-defined]
        return factory

    return make
