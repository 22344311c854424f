"""
Typed Credential Classes
Standardizes the three authentication strategies into Pydantic models.
This decouples the token provider and backends from raw configuration dicts.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from resource_broker.shared.core.exceptions import ConfigurationError
from resource_broker.shared.core.security import fingerprint


class AuthMode(str, Enum):
    SERVICE_PRINCIPAL = "service_principal"
    INTERACTIVE = "interactive"
    STATIC_KEY = "static_key"


class BrokerCredential(BaseModel):
    """Base class for all credentials."""

    model_config = ConfigDict(
        frozen=True, populate_by_name=True, alias_generator=to_camel, extra="ignore"
    )

    @property
    def identity(self) -> str:
        """Key naming this credential in token slots and the secret cache."""
        raise NotImplementedError()

    @property
    def auth_mode(self) -> AuthMode:
        return AuthMode(getattr(self, "mode"))


class ServicePrincipalCredential(BrokerCredential):
    """Client-credentials (app-to-app) identity."""
    mode: Literal["service_principal"] = "service_principal"
    tenant_id: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    client_secret: SecretStr

    @property
    def identity(self) -> str:
        return f"service_principal:{self.tenant_id}:{self.client_id}"


class InteractiveCredential(BrokerCredential):
    """Delegated user identity (authorization code + PKCE, public client)."""
    mode: Literal["interactive"] = "interactive"
    tenant_id: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)

    @property
    def identity(self) -> str:
        return f"interactive:{self.tenant_id}:{self.client_id}"


class StaticKeyCredential(BrokerCredential):
    """Pre-issued API key or password. No expiry, no refresh."""
    mode: Literal["static_key"] = "static_key"
    key: SecretStr

    @property
    def identity(self) -> str:
        return f"static_key:{fingerprint(self.key.get_secret_value())[:16]}"


Credential = Annotated[
    Union[ServicePrincipalCredential, InteractiveCredential, StaticKeyCredential],
    Field(discriminator="mode"),
]

_credential_adapter: TypeAdapter[Any] = TypeAdapter(Credential)


def _infer_mode(raw: dict[str, Any]) -> str | None:
    if raw.get("key") or raw.get("apiKey"):
        return AuthMode.STATIC_KEY.value
    if raw.get("clientSecret") or raw.get("client_secret"):
        return AuthMode.SERVICE_PRINCIPAL.value
    if raw.get("clientId") or raw.get("client_id"):
        return AuthMode.INTERACTIVE.value
    return None


def parse_credential(raw: Any, *, source: str = "credential") -> Credential:
    """Validate a credential mapping; ``mode`` is inferred from the fields when omitted."""
    if isinstance(raw, BrokerCredential):
        return raw  # type: ignore[return-value]
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{source} must be an object")
    data = dict(raw)
    if "apiKey" in data and "key" not in data:
        data["key"] = data.pop("apiKey")
    if not data.get("mode"):
        mode = _infer_mode(data)
        if mode is None:
            raise ConfigurationError(
                f"{source} must define a key, a clientSecret, or a clientId"
            )
        data["mode"] = mode
    try:
        return _credential_adapter.validate_python(data)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ConfigurationError(
            f"{source} is invalid",
            details={"fields": fields},
        ) from e


class CachedToken(BaseModel):
    """
    Access token plus refresh material.

    SecretStr keeps token values out of repr() and logs.
    """

    model_config = ConfigDict(frozen=False)

    access_token: SecretStr
    expires_at: Optional[datetime] = None
    refresh_token: Optional[SecretStr] = None
    scope: str
    owner_key_hash: str

    def remaining(self, now: datetime | None = None) -> timedelta | None:
        if self.expires_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        return self.expires_at - now

    def needs_refresh(self, buffer: timedelta, now: datetime | None = None) -> bool:
        """True when the token expires inside ``buffer``. Tokens without expiry never do."""
        remaining = self.remaining(now)
        return remaining is not None and remaining < buffer

    def to_storage(self) -> dict[str, Any]:
        """Plain mapping, secrets revealed, for the encrypted cache only."""
        return {
            "access_token": self.access_token.get_secret_value(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "refresh_token": (
                self.refresh_token.get_secret_value() if self.refresh_token else None
            ),
            "scope": self.scope,
            "owner_key_hash": self.owner_key_hash,
        }
