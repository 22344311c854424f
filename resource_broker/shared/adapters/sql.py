"""
Relational backend (SQLAlchemy async).

Each physical connection gets its own NullPool engine so that it is opened
with the credential material current at that moment; pooling is done by the
broker's ConnectionPool, not by SQLAlchemy.
"""
import asyncio
import struct
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from resource_broker.shared.adapters.base import ConnectionFactory
from resource_broker.shared.connections.registry import ResourceDescriptor, ResourceKind
from resource_broker.shared.core.credentials import AuthMode, CachedToken
from resource_broker.shared.core.exceptions import (
    ConfigurationError,
    ConnectionUnavailable,
    QueryExecutionError,
    Unauthorized,
)

logger = structlog.get_logger()

# pyodbc connection attribute carrying an Entra ID access token.
SQL_COPT_SS_ACCESS_TOKEN = 1256

_DISCOVERY_QUERIES = {
    "mssql": "SELECT name FROM sys.databases WHERE database_id > 4 ORDER BY name",
    "postgresql": (
        "SELECT datname FROM pg_database "
        "WHERE NOT datistemplate AND datallowconn ORDER BY datname"
    ),
    "sqlite": "PRAGMA database_list",
}

_LOGIN_FAILURE_MARKERS = (
    "login failed",
    "password authentication failed",
    "invalid authorization specification",
    "18456",
)


@dataclass
class SqlConnection:
    engine: AsyncEngine
    connection: AsyncConnection


def normalize_url(raw_url: str) -> URL:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("sqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    try:
        return make_url(url)
    except ArgumentError as e:
        raise ConfigurationError(f"Invalid SQL endpoint URL: {e}") from e


def access_token_struct(access_token: str) -> bytes:
    """Length-prefixed UTF-16-LE token as the ODBC driver expects it."""
    raw = access_token.encode("utf-16-le")
    return struct.pack(f"<I{len(raw)}s", len(raw), raw)


def _is_login_failure(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _LOGIN_FAILURE_MARKERS)


class SqlConnectionFactory(ConnectionFactory):
    kind = ResourceKind.SQL

    def __init__(self, connect_timeout: float = 15.0):
        self.connect_timeout = connect_timeout

    def build_url(
        self,
        descriptor: ResourceDescriptor,
        sub_resource: Optional[str],
        token: CachedToken,
        auth_mode: AuthMode,
    ) -> tuple[URL, dict[str, Any]]:
        url = normalize_url(descriptor.endpoint)
        backend = url.get_backend_name()
        connect_args: dict[str, Any] = {}

        if backend == "sqlite":
            # File-backed; sub-resources are attached schemas, not URLs.
            return url, connect_args

        if sub_resource:
            url = url.set(database=sub_resource)

        secret = token.access_token.get_secret_value()
        if auth_mode is AuthMode.STATIC_KEY:
            url = url.set(password=secret)
        elif backend == "mssql":
            connect_args["attrs_before"] = {
                SQL_COPT_SS_ACCESS_TOKEN: access_token_struct(secret)
            }
        else:
            url = url.set(password=secret)
        return url, connect_args

    async def _connect(
        self, url: URL, connect_args: dict[str, Any], resource_id: str
    ) -> SqlConnection:
        engine = create_async_engine(url, poolclass=NullPool, connect_args=connect_args)
        try:
            connection = await asyncio.wait_for(engine.connect(), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            await engine.dispose()
            raise ConnectionUnavailable(
                f"Connecting to '{resource_id}' timed out after {self.connect_timeout:g}s",
                details={"resource_id": resource_id},
            ) from e
        except (SQLAlchemyError, OSError) as e:
            await engine.dispose()
            if _is_login_failure(e):
                raise Unauthorized(
                    f"Login to '{resource_id}' was rejected: {e}",
                    details={"resource_id": resource_id},
                ) from e
            raise ConnectionUnavailable(
                f"Database connection failed for '{resource_id}': {e}",
                details={"resource_id": resource_id},
            ) from e
        return SqlConnection(engine=engine, connection=connection)

    async def open(
        self,
        descriptor: ResourceDescriptor,
        sub_resource: Optional[str],
        token: CachedToken,
        auth_mode: AuthMode,
    ) -> SqlConnection:
        url, connect_args = self.build_url(descriptor, sub_resource, token, auth_mode)
        handle = await self._connect(url, connect_args, descriptor.id)
        logger.debug(
            "sql_connection_opened",
            resource_id=descriptor.id,
            sub_resource=sub_resource,
            dialect=url.get_backend_name(),
        )
        return handle

    async def probe(self, handle: SqlConnection) -> bool:
        connection = handle.connection
        if connection.closed or connection.invalidated:
            return False
        try:
            await connection.execute(text("SELECT 1"))
            await connection.rollback()
        except SQLAlchemyError as e:
            logger.info("sql_liveness_probe_failed", error=str(e))
            return False
        return True

    async def close(self, handle: SqlConnection) -> None:
        try:
            await handle.connection.close()
        except SQLAlchemyError as e:
            logger.warning("sql_connection_close_failed", error=str(e))
        finally:
            await handle.engine.dispose()

    async def discover(
        self,
        descriptor: ResourceDescriptor,
        token: CachedToken,
        auth_mode: AuthMode,
    ) -> list[str]:
        url, connect_args = self.build_url(descriptor, None, token, auth_mode)
        backend = url.get_backend_name()
        query = _DISCOVERY_QUERIES.get(backend)
        if query is None:
            raise ConfigurationError(
                f"Sub-resource discovery is not supported for dialect '{backend}'"
            )
        if backend == "mssql":
            url = url.set(database="master")

        handle = await self._connect(url, connect_args, descriptor.id)
        try:
            result = await handle.connection.exec_driver_sql(query)
            rows = result.fetchall()
        except SQLAlchemyError as e:
            raise ConnectionUnavailable(
                f"Sub-resource discovery failed for '{descriptor.id}': {e}",
                details={"resource_id": descriptor.id},
            ) from e
        finally:
            await self.close(handle)

        if backend == "sqlite":
            # (seq, name, file)
            return [str(row[1]) for row in rows]
        return [str(row[0]) for row in rows]

    async def execute_read(
        self, handle: SqlConnection, operation: str, max_rows: int
    ) -> tuple[list[str], list[dict[str, Any]]]:
        connection = handle.connection
        try:
            # exec_driver_sql: no bind-parameter parsing of the caller's text.
            result = await connection.exec_driver_sql(operation)
            if not result.returns_rows:
                await connection.rollback()
                return [], []
            columns = list(result.keys())
            fetched = result.fetchmany(max_rows + 1)
            result.close()
            await connection.rollback()
        except SQLAlchemyError as e:
            raise QueryExecutionError(
                f"Query execution failed: {getattr(e, 'orig', None) or e}"
            ) from e
        return columns, [dict(row._mapping) for row in fetched]
