"""
HTTP backend (httpx).

A "connection" is an ``httpx.AsyncClient`` bound to the resource endpoint and
carrying the credential header. Static keys are only proven by the first real
call: a 401 surfaces as Unauthorized.
"""
from typing import Any, Optional

import httpx
import structlog

from resource_broker.shared.adapters.base import ConnectionFactory
from resource_broker.shared.connections.registry import ResourceDescriptor, ResourceKind
from resource_broker.shared.core.credentials import AuthMode, CachedToken
from resource_broker.shared.core.exceptions import (
    ConfigurationError,
    ConnectionUnavailable,
    Unauthorized,
)

logger = structlog.get_logger()

SUB_RESOURCE_PLACEHOLDER = "{subResource}"


def _auth_headers(
    descriptor: ResourceDescriptor, token: CachedToken, auth_mode: AuthMode
) -> dict[str, str]:
    secret = token.access_token.get_secret_value()
    header = descriptor.options.get("apiKeyHeader")
    if auth_mode is AuthMode.STATIC_KEY and header:
        return {str(header): secret}
    return {"Authorization": f"Bearer {secret}"}


def _base_url(descriptor: ResourceDescriptor, sub_resource: Optional[str]) -> str:
    endpoint = descriptor.endpoint
    if SUB_RESOURCE_PLACEHOLDER in endpoint:
        if not sub_resource:
            raise ConfigurationError(
                f"Resource '{descriptor.id}' endpoint requires a sub-resource"
            )
        endpoint = endpoint.replace(SUB_RESOURCE_PLACEHOLDER, sub_resource)
    return endpoint.rstrip("/") + "/"


def raise_for_auth(response: httpx.Response, resource_id: str) -> None:
    if response.status_code == 401:
        raise Unauthorized(
            f"Resource '{resource_id}' rejected the credential (HTTP 401)",
            details={"resource_id": resource_id},
        )


class HttpConnectionFactory(ConnectionFactory):
    kind = ResourceKind.HTTP

    def __init__(
        self,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self._transport = transport

    def _client(
        self,
        descriptor: ResourceDescriptor,
        sub_resource: Optional[str],
        token: CachedToken,
        auth_mode: AuthMode,
    ) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=_base_url(descriptor, sub_resource),
            headers=_auth_headers(descriptor, token, auth_mode),
            timeout=httpx.Timeout(self.timeout, connect=min(10.0, self.timeout)),
            transport=self._transport,
        )

    async def open(
        self,
        descriptor: ResourceDescriptor,
        sub_resource: Optional[str],
        token: CachedToken,
        auth_mode: AuthMode,
    ) -> httpx.AsyncClient:
        client = self._client(descriptor, sub_resource, token, auth_mode)
        logger.debug("http_client_opened", resource_id=descriptor.id, sub_resource=sub_resource)
        return client

    async def probe(self, handle: httpx.AsyncClient) -> bool:
        return not handle.is_closed

    async def close(self, handle: httpx.AsyncClient) -> None:
        await handle.aclose()

    async def discover(
        self,
        descriptor: ResourceDescriptor,
        token: CachedToken,
        auth_mode: AuthMode,
    ) -> list[str]:
        path = descriptor.options.get("discoveryPath")
        if not path:
            raise ConfigurationError(
                f"Resource '{descriptor.id}' has no discoveryPath for sub-resource discovery"
            )
        endpoint = descriptor.endpoint.split(SUB_RESOURCE_PLACEHOLDER, 1)[0]
        client = httpx.AsyncClient(
            base_url=endpoint.rstrip("/") + "/",
            headers=_auth_headers(descriptor, token, auth_mode),
            timeout=httpx.Timeout(self.timeout, connect=min(10.0, self.timeout)),
            transport=self._transport,
        )
        try:
            response = await client.get(str(path).lstrip("/"))
        except httpx.HTTPError as e:
            raise ConnectionUnavailable(
                f"Sub-resource discovery failed for '{descriptor.id}': {e}",
                details={"resource_id": descriptor.id},
            ) from e
        finally:
            await client.aclose()

        raise_for_auth(response, descriptor.id)
        if response.status_code >= 400:
            raise ConnectionUnavailable(
                f"Sub-resource discovery failed for '{descriptor.id}' "
                f"(HTTP {response.status_code})",
                details={"resource_id": descriptor.id, "status_code": response.status_code},
            )
        return _names_from_payload(response.json())

    @staticmethod
    async def send(
        handle: httpx.AsyncClient,
        method: str,
        url: str,
        *,
        resource_id: str = "",
        **kwargs: Any,
    ) -> httpx.Response:
        """Issue a request on a leased client; 401 raises Unauthorized."""
        try:
            response = await handle.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ConnectionUnavailable(
                f"Request to '{resource_id or handle.base_url}' failed: {e}",
                details={"resource_id": resource_id},
            ) from e
        raise_for_auth(response, resource_id or str(handle.base_url))
        return response


def _names_from_payload(payload: Any) -> list[str]:
    if isinstance(payload, dict):
        for key in ("value", "items", "data", "results"):
            if isinstance(payload.get(key), list):
                payload = payload[key]
                break
    if not isinstance(payload, list):
        return []
    names: list[str] = []
    for item in payload:
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, dict) and item.get("name"):
            names.append(str(item["name"]))
    return names
