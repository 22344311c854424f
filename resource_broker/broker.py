"""
Resource Broker

The single entry point integrations use: resolve a resource, lease a pooled
connection authenticated with the right credential, and run gated read-only
queries over it.

All mutable state (token slots, pools, locks) is owned by the broker
instance; several brokers can coexist in one process without interference.
"""
import asyncio
import json
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field

from resource_broker.shared.adapters.base import ConnectionFactory
from resource_broker.shared.adapters.http import HttpConnectionFactory
from resource_broker.shared.adapters.sql import SqlConnectionFactory
from resource_broker.shared.auth.factory import AuthStrategyFactory
from resource_broker.shared.auth.secret_cache import SecretCache
from resource_broker.shared.auth.token_provider import TokenProvider
from resource_broker.shared.connections.pool import (
    ConnectionLease,
    PoolConfig,
    PoolKey,
    PoolManager,
    PoolTarget,
)
from resource_broker.shared.connections.registry import (
    ResourceDescriptor,
    ResourceRegistry,
    SubResourceDescriptor,
)
from resource_broker.shared.core.config import Settings, get_settings
from resource_broker.shared.core.credentials import (
    BrokerCredential,
    Credential,
    InteractiveCredential,
    ServicePrincipalCredential,
    StaticKeyCredential,
    parse_credential,
)
from resource_broker.shared.core.exceptions import (
    BrokerException,
    ConfigurationError,
    QueryTimeout,
)
from resource_broker.shared.core.logging import audit_log, setup_logging
from resource_broker.shared.core.retry import RetryPolicy, get_retry_policy
from resource_broker.shared.gatekeeper.shaping import shape_response
from resource_broker.shared.gatekeeper.validator import enforce

logger = structlog.get_logger()

DEFAULT_CREDENTIAL_REF = "default"
AUDIT_QUERY_PREVIEW_CHARS = 500

CredentialInput = Union[BrokerCredential, Mapping[str, Any]]


class QueryResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    columns: list[str] = Field(default_factory=list)
    rows: list[dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    truncated: bool = False


class ResourceBroker:
    def __init__(
        self,
        registry: ResourceRegistry,
        *,
        credentials: Optional[Mapping[str, CredentialInput]] = None,
        default_credential: Optional[CredentialInput] = None,
        token_provider: Optional[TokenProvider] = None,
        factories: Optional[dict[str, ConnectionFactory]] = None,
        pool_config: Optional[PoolConfig] = None,
        checkout_policy: Optional[RetryPolicy] = None,
        discovery_policy: Optional[RetryPolicy] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry
        self._credentials: dict[str, Credential] = {
            name: parse_credential(raw, source=f"credential '{name}'")
            for name, raw in (credentials or {}).items()
        }
        self._default_credential: Optional[Credential] = (
            parse_credential(default_credential, source="default credential")
            if default_credential is not None
            else None
        )
        self.token_provider = token_provider or TokenProvider(
            AuthStrategyFactory(self.settings),
            SecretCache(self.settings.TOKEN_CACHE_DIR, salt=self.settings.TOKEN_CACHE_KDF_SALT),
            refresh_buffer=timedelta(seconds=self.settings.TOKEN_REFRESH_BUFFER_SECONDS),
        )
        self.factories: dict[str, ConnectionFactory] = factories or {
            "sql": SqlConnectionFactory(self.settings.POOL_CONNECTION_TIMEOUT_SECONDS),
            "http": HttpConnectionFactory(),
        }
        self.pools = PoolManager(
            self.token_provider,
            self.factories,
            self._pool_target,
            config=pool_config or PoolConfig.from_settings(self.settings),
            checkout_policy=checkout_policy,
        )
        self._discovery_policy = discovery_policy or get_retry_policy("discovery")
        self._closed = False

    async def __aenter__(self) -> "ResourceBroker":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ---------------------------------------------------------------- registry

    def list_resources(self) -> list[ResourceDescriptor]:
        return self.registry.list_resources()

    def resolve(self, resource_id: str) -> ResourceDescriptor:
        return self.registry.resolve(resource_id)

    async def list_sub_resources(self, resource_id: str) -> list[SubResourceDescriptor]:
        return await self.registry.list_sub_resources(resource_id, discover=self._discover)

    def default_configuration(self) -> dict[str, Any]:
        return self.registry.default_configuration()

    def describe(self) -> list[dict[str, Any]]:
        return self.registry.describe()

    # ------------------------------------------------------------- credentials

    def credential_for(self, descriptor: ResourceDescriptor) -> Credential:
        """Resource-specific credential, then the shared default, else an error."""
        credential: Optional[Credential]
        if descriptor.credential is not None:
            credential = descriptor.credential
        elif descriptor.credential_ref and descriptor.credential_ref != DEFAULT_CREDENTIAL_REF:
            credential = self._credentials.get(descriptor.credential_ref)
            if credential is None:
                raise ConfigurationError(
                    f"Resource '{descriptor.id}' references unknown credential "
                    f"'{descriptor.credential_ref}'",
                    details={"resource_id": descriptor.id},
                )
        else:
            credential = self._default_credential

        if credential is None:
            raise ConfigurationError(
                f"No credential available for resource '{descriptor.id}': "
                "configure one on the resource or a shared default",
                details={"resource_id": descriptor.id},
            )
        if descriptor.auth_mode is not None and credential.auth_mode is not descriptor.auth_mode:
            raise ConfigurationError(
                f"Resource '{descriptor.id}' requires {descriptor.auth_mode.value} "
                f"authentication but its credential is {credential.auth_mode.value}",
                details={"resource_id": descriptor.id},
            )
        return credential

    def _named_credential(self, credential_ref: Optional[str]) -> Credential:
        if not credential_ref or credential_ref == DEFAULT_CREDENTIAL_REF:
            if self._default_credential is None:
                raise ConfigurationError("No shared default credential is configured")
            return self._default_credential
        credential = self._credentials.get(credential_ref)
        if credential is None:
            try:
                descriptor = self.registry.get(credential_ref)
            except BrokerException:
                raise ConfigurationError(
                    f"Unknown credential '{credential_ref}'"
                ) from None
            credential = self.credential_for(descriptor)
        return credential

    # ------------------------------------------------------------------ pools

    def _pool_target(self, key: PoolKey) -> PoolTarget:
        descriptor = self.registry.resolve(key.resource_id)
        if key.sub_resource is not None:
            self.registry.resolve_sub_resource(key.resource_id, key.sub_resource)
        return PoolTarget(
            descriptor=descriptor,
            credential=self.credential_for(descriptor),
            sub_resource=key.sub_resource,
        )

    @staticmethod
    def _key(key: Union[PoolKey, str], sub_resource: Optional[str] = None) -> PoolKey:
        if isinstance(key, PoolKey):
            return key
        return PoolKey(resource_id=key, sub_resource=sub_resource)

    async def acquire(
        self,
        key: Union[PoolKey, str],
        sub_resource: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> ConnectionLease:
        """
        Lease a connection for ``key``. Blocks up to the connection timeout,
        and on first use for the key, for as long as authentication takes.
        """
        if self._closed:
            raise ConfigurationError("Broker has been shut down")
        return await self.pools.acquire(self._key(key, sub_resource), timeout)

    async def release(self, lease: ConnectionLease) -> None:
        await self.pools.release(lease)

    @asynccontextmanager
    async def lease(
        self,
        key: Union[PoolKey, str],
        sub_resource: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[ConnectionLease]:
        if self._closed:
            raise ConfigurationError("Broker has been shut down")
        async with self.pools.lease(self._key(key, sub_resource), timeout) as held:
            yield held

    async def drain(self, key: Union[PoolKey, str], sub_resource: Optional[str] = None) -> int:
        return await self.pools.drain(self._key(key, sub_resource))

    async def _discover(self, descriptor: ResourceDescriptor) -> list[str]:
        credential = self.credential_for(descriptor)
        factory = self.pools.factory_for(descriptor)

        async def attempt() -> list[str]:
            token = await self.token_provider.get_token(credential, descriptor.token_scope)
            return await factory.discover(descriptor, token, credential.auth_mode)

        return await self._discovery_policy.run(attempt)

    # ----------------------------------------------------------------- logout

    async def logout(self, credential_ref: Optional[str] = None) -> bool:
        """
        Clear cached tokens for a credential (a named credential, a resource id,
        or the shared default), fail any in-flight interactive login for it and
        drain every pool that authenticated with it.
        """
        credential = self._named_credential(credential_ref)
        removed = await self.token_provider.logout(credential)
        drained = await self.pools.drain_identity(credential.identity)
        logger.info(
            "broker_logout",
            credential_ref=credential_ref or DEFAULT_CREDENTIAL_REF,
            drained_pools=[str(k) for k in drained],
        )
        return removed

    # ----------------------------------------------------------- query path

    async def execute_read_query(
        self,
        query: str,
        resource_id: Optional[str] = None,
        sub_resource: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        max_rows: Optional[int] = None,
        max_bytes: Optional[int] = None,
    ) -> QueryResult:
        """
        Validate, lease, execute with a deadline, shape and audit one read-only query.
        """
        if timeout is None:
            timeout = self.settings.QUERY_TIMEOUT_SECONDS
        if max_rows is None:
            max_rows = self.settings.QUERY_MAX_ROWS
        if max_bytes is None:
            max_bytes = self.settings.QUERY_MAX_RESPONSE_BYTES
        if timeout <= 0 or max_rows < 0 or max_bytes < 0:
            raise ConfigurationError(
                "Query limits must be non-negative and the timeout positive",
                details={"timeout": timeout, "max_rows": max_rows, "max_bytes": max_bytes},
            )

        started = time.perf_counter()
        rid = resource_id or ""
        audit_details: dict[str, Any] = {
            "operation": "execute_read_query",
            "sub_resource": sub_resource,
            "query": (query or "")[:AUDIT_QUERY_PREVIEW_CHARS],
        }
        try:
            rid = self.registry.resolve_default_id(resource_id)
            descriptor = self.registry.resolve(rid)
            if descriptor.read_only:
                enforce(query)
            if sub_resource is None and not descriptor.discovery_mode:
                sub_resource = self.registry.resolve_sub_resource_name(rid, None)
            audit_details["sub_resource"] = sub_resource

            factory = self.pools.factory_for(descriptor)
            async with self.lease(rid, sub_resource) as held:
                try:
                    columns, rows = await asyncio.wait_for(
                        factory.execute_read(held.handle, query, max_rows),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError as e:
                    held.mark_failed()
                    raise QueryTimeout(
                        f"Query exceeded its {timeout:g}s execution budget",
                        details={"resource_id": rid, "timeout_seconds": timeout},
                    ) from e

            shaped, truncated = shape_response(rows, max_rows, max_bytes)
            result = QueryResult(
                columns=columns,
                rows=shaped,
                row_count=len(shaped),
                truncated=truncated,
            )
        except BrokerException as e:
            audit_log(
                "read_query_executed",
                resource=rid,
                success=False,
                details={
                    **audit_details,
                    "error": e.message,
                    "error_code": e.code,
                    "elapsed_ms": _elapsed_ms(started),
                },
            )
            raise

        audit_log(
            "read_query_executed",
            resource=rid,
            success=True,
            details={
                **audit_details,
                "row_count": result.row_count,
                "truncated": result.truncated,
                "elapsed_ms": _elapsed_ms(started),
            },
        )
        return result

    # --------------------------------------------------------------- shutdown

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.pools.shutdown()
        await self.token_provider.close()
        for factory in self.factories.values():
            await factory.dispose()
        logger.info("broker_shutdown_complete")


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def default_credential_from_settings(settings: Settings) -> Optional[BrokerCredential]:
    if settings.DEFAULT_API_KEY:
        return StaticKeyCredential(key=settings.DEFAULT_API_KEY)
    if settings.DEFAULT_TENANT_ID and settings.DEFAULT_CLIENT_ID:
        if settings.DEFAULT_CLIENT_SECRET:
            return ServicePrincipalCredential(
                tenant_id=settings.DEFAULT_TENANT_ID,
                client_id=settings.DEFAULT_CLIENT_ID,
                client_secret=settings.DEFAULT_CLIENT_SECRET,
            )
        return InteractiveCredential(
            tenant_id=settings.DEFAULT_TENANT_ID,
            client_id=settings.DEFAULT_CLIENT_ID,
        )
    return None


def _named_credentials_from_settings(settings: Settings) -> dict[str, Any]:
    if not settings.RESOURCES:
        return {}
    try:
        document = json.loads(settings.RESOURCES)
    except ValueError as e:
        raise ConfigurationError(f"Resource configuration is not valid JSON: {e}") from e
    if isinstance(document, dict) and isinstance(document.get("credentials"), dict):
        return dict(document["credentials"])
    return {}


def build_broker_from_settings(settings: Optional[Settings] = None) -> ResourceBroker:
    """Wire registry, credentials, secret cache and backends from Settings."""
    settings = settings or get_settings()
    setup_logging(settings)
    registry = ResourceRegistry.from_settings(settings)
    return ResourceBroker(
        registry,
        credentials=_named_credentials_from_settings(settings),
        default_credential=default_credential_from_settings(settings),
        settings=settings,
    )
