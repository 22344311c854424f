import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from azure.core.credentials import AccessToken
from azure.core.exceptions import ClientAuthenticationError, ServiceRequestError

from resource_broker.shared.auth.factory import AuthStrategyFactory
from resource_broker.shared.auth.interactive import InteractiveAuth
from resource_broker.shared.auth.service_principal import ServicePrincipalAuth
from resource_broker.shared.auth.static_key import StaticKeyAuth
from resource_broker.shared.core.config import Settings
from resource_broker.shared.core.credentials import (
    BrokerCredential,
    InteractiveCredential,
    ServicePrincipalCredential,
    StaticKeyCredential,
)
from resource_broker.shared.core.exceptions import AuthenticationFailed, ConfigurationError

SCOPE = "https://database.windows.net/.default"


@pytest.fixture
def sp_credential():
    return ServicePrincipalCredential(
        tenant_id="tenant-1", client_id="client-1", client_secret="hunter2"
    )


@pytest.mark.asyncio
async def test_service_principal_authenticate(sp_credential):
    expires_on = int(time.time()) + 3600
    with patch(
        "resource_broker.shared.auth.service_principal.ClientSecretCredential"
    ) as mock_cls:
        client = MagicMock()
        client.get_token = AsyncMock(return_value=AccessToken("sp-access", expires_on))
        client.close = AsyncMock()
        mock_cls.return_value = client

        auth = ServicePrincipalAuth(sp_credential, "https://login.example.test")
        token = await auth.authenticate(SCOPE)
        refreshed = await auth.refresh(token)
        await auth.close()

    assert token.access_token.get_secret_value() == "sp-access"
    assert int(token.expires_at.timestamp()) == expires_on
    assert token.refresh_token is None
    assert refreshed.scope == SCOPE
    assert client.get_token.await_count == 2
    client.get_token.assert_awaited_with(SCOPE)
    client.close.assert_awaited_once()
    mock_cls.assert_called_once_with(
        tenant_id="tenant-1",
        client_id="client-1",
        client_secret="hunter2",
        authority="https://login.example.test",
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ClientAuthenticationError(message="AADSTS7000215: Invalid client secret provided."),
        ServiceRequestError(message="connection refused"),
    ],
)
async def test_service_principal_errors_map_to_authentication_failed(sp_credential, error):
    with patch(
        "resource_broker.shared.auth.service_principal.ClientSecretCredential"
    ) as mock_cls:
        mock_cls.return_value.get_token = AsyncMock(side_effect=error)
        auth = ServicePrincipalAuth(sp_credential, "https://login.example.test")

        with pytest.raises(AuthenticationFailed) as exc_info:
            await auth.authenticate(SCOPE)

    assert "hunter2" not in str(exc_info.value)
    assert exc_info.value.details["tenant_id"] == "tenant-1"


@pytest.mark.asyncio
async def test_static_key_never_expires():
    auth = StaticKeyAuth(StaticKeyCredential(key="api-key-1"))
    token = await auth.authenticate("any")
    assert token.access_token.get_secret_value() == "api-key-1"
    assert token.expires_at is None
    assert await auth.refresh(token) is token
    assert auth.persist_tokens is False


def test_factory_dispatch(sp_credential):
    factory = AuthStrategyFactory(Settings(INTERACTIVE_AUTH_TIMEOUT_SECONDS=42))

    assert isinstance(factory.create(sp_credential), ServicePrincipalAuth)
    assert isinstance(factory(StaticKeyCredential(key="k")), StaticKeyAuth)
    interactive = factory.create(InteractiveCredential(tenant_id="t", client_id="c"))
    assert isinstance(interactive, InteractiveAuth)
    assert interactive.timeout_seconds == 42


def test_factory_rejects_unknown_credential():
    with pytest.raises(ConfigurationError, match="Unsupported credential type"):
        AuthStrategyFactory(Settings()).create(BrokerCredential())


def test_strategies_share_owner_hash_per_identity(sp_credential):
    factory = AuthStrategyFactory(Settings())
    first = factory.create(sp_credential)
    second = factory.create(sp_credential)
    other = factory.create(
        ServicePrincipalCredential(tenant_id="tenant-1", client_id="client-2", client_secret="x")
    )
    assert first.owner_key_hash == second.owner_key_hash
    assert first.owner_key_hash != other.owner_key_hash
