"""
Auth Strategy Factory

Maps a validated credential to the strategy that can produce tokens for it.
"""

from typing import Any, Callable

import httpx

from resource_broker.shared.auth.base import AuthStrategy
from resource_broker.shared.auth.interactive import InteractiveAuth
from resource_broker.shared.auth.service_principal import ServicePrincipalAuth
from resource_broker.shared.auth.static_key import StaticKeyAuth
from resource_broker.shared.core.config import Settings, get_settings
from resource_broker.shared.core.credentials import (
    BrokerCredential,
    InteractiveCredential,
    ServicePrincipalCredential,
    StaticKeyCredential,
)
from resource_broker.shared.core.exceptions import ConfigurationError


class AuthStrategyFactory:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        browser_opener: Callable[[str], Any] | None = None,
    ):
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.browser_opener = browser_opener

    def create(self, credential: BrokerCredential) -> AuthStrategy:
        """
        Returns the appropriate strategy based on the credential type.
        """
        if isinstance(credential, ServicePrincipalCredential):
            return ServicePrincipalAuth(credential, self.settings.AUTHORITY_HOST)

        elif isinstance(credential, InteractiveCredential):
            return InteractiveAuth(
                credential,
                self.settings.AUTHORITY_HOST,
                timeout_seconds=self.settings.INTERACTIVE_AUTH_TIMEOUT_SECONDS,
                http_client=self.http_client,
                browser_opener=self.browser_opener,
            )

        elif isinstance(credential, StaticKeyCredential):
            return StaticKeyAuth(credential)

        raise ConfigurationError(
            f"Unsupported credential type: {type(credential).__name__}"
        )

    __call__ = create
