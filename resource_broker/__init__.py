from resource_broker.broker import QueryResult, ResourceBroker, build_broker_from_settings
from resource_broker.shared.connections.pool import ConnectionLease, PoolKey

__all__ = [
    "ConnectionLease",
    "PoolKey",
    "QueryResult",
    "ResourceBroker",
    "build_broker_from_settings",
]
