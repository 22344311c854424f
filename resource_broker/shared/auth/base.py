from abc import ABC, abstractmethod

from resource_broker.shared.core.credentials import AuthMode, CachedToken
from resource_broker.shared.core.exceptions import AuthenticationCancelled
from resource_broker.shared.core.security import fingerprint


class AuthStrategy(ABC):
    """
    Abstract base for the three ways of obtaining credential material.

    Standardizes the interface for:
    - First authentication for a scope
    - Refresh of an expiring token
    - Cancellation of pending user interaction (logout)
    """

    mode: AuthMode
    # Whether tokens from this strategy are written to the secret cache.
    persist_tokens: bool = False
    # Whether a failed first authentication may be retried without a user present.
    unattended: bool = True

    def __init__(self, identity: str):
        self.identity = identity
        self.owner_key_hash = fingerprint(identity)

    @abstractmethod
    async def authenticate(self, scope: str) -> CachedToken:
        """Obtain a fresh token for ``scope``."""
        raise NotImplementedError()

    @abstractmethod
    async def refresh(self, token: CachedToken) -> CachedToken:
        """
        Replace an expiring token.

        Raises RefreshRejected when the refresh material is no longer accepted.
        """
        raise NotImplementedError()

    async def cancel_pending(self, reason: AuthenticationCancelled) -> None:
        """Fail any in-flight user interaction immediately."""
        return None

    async def close(self) -> None:
        return None
