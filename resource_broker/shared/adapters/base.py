from abc import ABC, abstractmethod
from typing import Any, Optional

from resource_broker.shared.connections.registry import ResourceDescriptor, ResourceKind
from resource_broker.shared.core.credentials import AuthMode, CachedToken
from resource_broker.shared.core.exceptions import ConfigurationError


class ConnectionFactory(ABC):
    """
    Abstract Base Class for backend connection factories.

    Standardizes the interface for:
    - Opening a physical connection with credential material
    - Cheap liveness probing of a pooled connection
    - Sub-resource discovery against the live endpoint
    """

    kind: ResourceKind

    @abstractmethod
    async def open(
        self,
        descriptor: ResourceDescriptor,
        sub_resource: Optional[str],
        token: CachedToken,
        auth_mode: AuthMode,
    ) -> Any:
        """Open one physical connection. Raises ConnectionUnavailable on failure."""
        raise NotImplementedError()

    @abstractmethod
    async def probe(self, handle: Any) -> bool:
        """Return False when the connection should be discarded."""
        raise NotImplementedError()

    @abstractmethod
    async def close(self, handle: Any) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def discover(
        self,
        descriptor: ResourceDescriptor,
        token: CachedToken,
        auth_mode: AuthMode,
    ) -> list[str]:
        """List sub-resource names available on the endpoint."""
        raise NotImplementedError()

    async def execute_read(
        self, handle: Any, operation: str, max_rows: int
    ) -> tuple[list[str], list[dict[str, Any]]]:
        """
        Run an already-validated read-only operation.

        Returns column names and at most ``max_rows + 1`` rows so the caller
        can tell whether the result was cut short.
        """
        raise ConfigurationError(
            f"Read-only query execution is not supported for '{self.kind.value}' resources"
        )

    async def dispose(self) -> None:
        return None
