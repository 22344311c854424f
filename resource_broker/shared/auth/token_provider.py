"""
Token Provider

Hands out access tokens per (credential identity, scope) pair, driving each
pair through:

    UNAUTHENTICATED -> AUTHENTICATING -> VALID -> EXPIRING -> REFRESHING
                                          ^                      |
                                          +----------------------+
    (any hard failure returns the pair to UNAUTHENTICATED)

All work for one pair happens under that pair's lock, so concurrent callers
share a single authentication or refresh. Pairs never contend with each other.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

import structlog

from resource_broker.shared.auth.base import AuthStrategy
from resource_broker.shared.auth.secret_cache import SecretCache
from resource_broker.shared.core.config import get_settings
from resource_broker.shared.core.credentials import BrokerCredential, CachedToken
from resource_broker.shared.core.exceptions import (
    AuthenticationCancelled,
    RefreshRejected,
)
from resource_broker.shared.core.retry import RetryPolicy, get_retry_policy

logger = structlog.get_logger()


class TokenState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    VALID = "valid"
    EXPIRING = "expiring"
    REFRESHING = "refreshing"


@dataclass
class _TokenSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    state: TokenState = TokenState.UNAUTHENTICATED
    token: CachedToken | None = None
    cache_checked: bool = False
    # Token arrived with less life than the refresh buffer; used until it expires.
    short_lived: bool = False


class TokenProvider:
    def __init__(
        self,
        strategy_factory: Callable[[BrokerCredential], AuthStrategy],
        secret_cache: SecretCache | None = None,
        *,
        refresh_buffer: timedelta | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        settings = get_settings()
        self._strategy_factory = strategy_factory
        self._cache = secret_cache or SecretCache()
        if refresh_buffer is None:
            refresh_buffer = timedelta(seconds=settings.TOKEN_REFRESH_BUFFER_SECONDS)
        self.refresh_buffer = refresh_buffer
        self.retry_policy = retry_policy or get_retry_policy("authentication")
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._slots: dict[tuple[str, str], _TokenSlot] = {}
        self._strategies: dict[str, AuthStrategy] = {}
        # Bumped on logout; work started under an older generation is discarded.
        self._generations: dict[str, int] = {}

    def _slot(self, identity: str, scope: str) -> _TokenSlot:
        return self._slots.setdefault((identity, scope), _TokenSlot())

    def strategy_for(self, credential: BrokerCredential) -> AuthStrategy:
        identity = credential.identity
        strategy = self._strategies.get(identity)
        if strategy is None:
            strategy = self._strategy_factory(credential)
            self._strategies[identity] = strategy
        return strategy

    def state(self, credential: BrokerCredential, scope: str) -> TokenState:
        slot = self._slots.get((credential.identity, scope))
        if slot is None:
            return TokenState.UNAUTHENTICATED
        if slot.state is TokenState.VALID and self._refresh_due(slot):
            return TokenState.EXPIRING
        return slot.state

    def _refresh_due(self, slot: _TokenSlot) -> bool:
        token = slot.token
        if token is None:
            return False
        now = self._clock()
        if not token.needs_refresh(self.refresh_buffer, now):
            return False
        if slot.short_lived:
            return token.needs_refresh(timedelta(0), now)
        return True

    async def get_token(self, credential: BrokerCredential, scope: str) -> CachedToken:
        """
        Return a token for ``credential`` that is valid for at least the refresh buffer,
        or until expiry when the provider issues tokens shorter-lived than the buffer.

        May block for the whole interactive sign-in window.
        """
        identity = credential.identity
        strategy = self.strategy_for(credential)
        slot = self._slot(identity, scope)

        async with slot.lock:
            generation = self._generations.get(identity, 0)

            if slot.token is None and strategy.persist_tokens and not slot.cache_checked:
                slot.cache_checked = True
                cached = await asyncio.to_thread(self._cache.load, identity, scope)
                if cached is not None and cached.owner_key_hash == strategy.owner_key_hash:
                    logger.debug("token_loaded_from_cache", mode=strategy.mode.value, scope=scope)
                    slot.token = cached
                    slot.state = TokenState.VALID
                    slot.short_lived = False

            if slot.token is None:
                token = await self._authenticate(strategy, slot, scope)
            elif self._refresh_due(slot):
                slot.state = TokenState.EXPIRING
                token = await self._refresh(strategy, slot, scope)
            else:
                return slot.token

            if self._generations.get(identity, 0) != generation:
                slot.token = None
                slot.state = TokenState.UNAUTHENTICATED
                raise AuthenticationCancelled(
                    "Credential was logged out while authentication was in progress"
                )

            slot.token = token
            slot.state = TokenState.VALID
            slot.short_lived = token.needs_refresh(self.refresh_buffer, self._clock())
            if slot.short_lived:
                logger.warning(
                    "token_lifetime_shorter_than_refresh_buffer",
                    mode=strategy.mode.value,
                    scope=scope,
                    refresh_buffer_seconds=self.refresh_buffer.total_seconds(),
                )
            if strategy.persist_tokens:
                await asyncio.to_thread(self._cache.save, identity, token)
            return token

    async def _authenticate(
        self, strategy: AuthStrategy, slot: _TokenSlot, scope: str
    ) -> CachedToken:
        slot.state = TokenState.AUTHENTICATING
        logger.info("token_authentication_started", mode=strategy.mode.value, scope=scope)
        try:
            if strategy.unattended:
                return await self.retry_policy.run(strategy.authenticate, scope)
            # A user is involved; one sign-in attempt per call.
            return await strategy.authenticate(scope)
        except BaseException:
            slot.state = TokenState.UNAUTHENTICATED
            raise

    async def _refresh(
        self, strategy: AuthStrategy, slot: _TokenSlot, scope: str
    ) -> CachedToken:
        current = slot.token
        assert current is not None
        slot.state = TokenState.REFRESHING
        logger.info("token_refresh_started", mode=strategy.mode.value, scope=scope)
        try:
            return await self.retry_policy.run(strategy.refresh, current)
        except RefreshRejected as e:
            logger.warning(
                "token_refresh_rejected",
                mode=strategy.mode.value,
                scope=scope,
                error=str(e),
            )
            slot.token = None
            slot.state = TokenState.UNAUTHENTICATED
            if strategy.persist_tokens:
                await asyncio.to_thread(self._cache.clear, strategy.identity)
            if strategy.unattended:
                raise
            return await self._authenticate(strategy, slot, scope)
        except BaseException:
            # Refresh material stays on disk; the next call reloads and retries.
            slot.token = None
            slot.cache_checked = False
            slot.state = TokenState.UNAUTHENTICATED
            raise

    async def logout(self, credential: BrokerCredential) -> bool:
        """
        Forget every token for ``credential``, clear its cache file and fail any
        in-flight interactive wait immediately. Returns True when a cache file was removed.
        """
        identity = credential.identity
        self._generations[identity] = self._generations.get(identity, 0) + 1

        strategy = self._strategies.get(identity)
        if strategy is not None:
            await strategy.cancel_pending(
                AuthenticationCancelled("Credential was logged out")
            )

        for (slot_identity, _scope), slot in self._slots.items():
            if slot_identity == identity:
                slot.token = None
                slot.cache_checked = False
                slot.state = TokenState.UNAUTHENTICATED

        removed = await asyncio.to_thread(self._cache.clear, identity)
        logger.info("credential_logged_out", mode=credential.mode, cache_cleared=removed)
        return removed

    async def close(self) -> None:
        strategies = list(self._strategies.values())
        self._strategies.clear()
        self._slots.clear()
        for strategy in strategies:
            await strategy.close()
