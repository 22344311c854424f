from resource_broker.shared.auth.base import AuthStrategy
from resource_broker.shared.core.credentials import AuthMode, CachedToken, StaticKeyCredential


class StaticKeyAuth(AuthStrategy):
    """
    The "token" is the configured key itself.

    It never expires and is never refreshed. Whether it is valid is only
    learned from the first real call (a 401 surfaces as Unauthorized).
    """

    mode = AuthMode.STATIC_KEY

    def __init__(self, credential: StaticKeyCredential):
        super().__init__(credential.identity)
        self.credential = credential

    async def authenticate(self, scope: str) -> CachedToken:
        return CachedToken(
            access_token=self.credential.key,
            expires_at=None,
            scope=scope,
            owner_key_hash=self.owner_key_hash,
        )

    async def refresh(self, token: CachedToken) -> CachedToken:
        return token
