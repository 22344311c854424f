"""
Service Principal Authentication

Client-credentials flow via azure-identity. Non-interactive; an expiring
token is replaced by silently exchanging the client secret again.
"""
from datetime import datetime, timezone

import structlog
from azure.core.exceptions import (
    ClientAuthenticationError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity.aio import ClientSecretCredential

from resource_broker.shared.auth.base import AuthStrategy
from resource_broker.shared.core.credentials import (
    AuthMode,
    CachedToken,
    ServicePrincipalCredential,
)
from resource_broker.shared.core.exceptions import AuthenticationFailed

logger = structlog.get_logger()


class ServicePrincipalAuth(AuthStrategy):
    mode = AuthMode.SERVICE_PRINCIPAL

    def __init__(self, credential: ServicePrincipalCredential, authority_host: str):
        super().__init__(credential.identity)
        self.credential = credential
        self.authority_host = authority_host
        self._client: ClientSecretCredential | None = None

    def _get_client(self) -> ClientSecretCredential:
        if self._client is None:
            self._client = ClientSecretCredential(
                tenant_id=self.credential.tenant_id,
                client_id=self.credential.client_id,
                client_secret=self.credential.client_secret.get_secret_value(),
                authority=self.authority_host,
            )
        return self._client

    async def authenticate(self, scope: str) -> CachedToken:
        try:
            access = await self._get_client().get_token(scope)
        except ClientAuthenticationError as e:
            logger.error(
                "service_principal_auth_failed",
                tenant_id=self.credential.tenant_id,
                client_id=self.credential.client_id,
                error=str(e),
            )
            raise AuthenticationFailed(
                f"Service principal authentication failed: {e}",
                details={"tenant_id": self.credential.tenant_id},
            ) from e
        except (ServiceRequestError, ServiceResponseError) as e:
            logger.warning(
                "service_principal_auth_transport_error",
                tenant_id=self.credential.tenant_id,
                error=str(e),
            )
            raise AuthenticationFailed(
                f"Identity provider unreachable: {e}",
                details={"tenant_id": self.credential.tenant_id},
            ) from e

        return CachedToken(
            access_token=access.token,
            expires_at=datetime.fromtimestamp(access.expires_on, tz=timezone.utc),
            scope=scope,
            owner_key_hash=self.owner_key_hash,
        )

    async def refresh(self, token: CachedToken) -> CachedToken:
        return await self.authenticate(token.scope)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
