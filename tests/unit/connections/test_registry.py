import json

import pytest

from resource_broker.shared.connections.registry import (
    LEGACY_RESOURCE_ID,
    SQL_TOKEN_SCOPE,
    ResourceKind,
    ResourceRegistry,
)
from resource_broker.shared.core.config import Settings
from resource_broker.shared.core.credentials import StaticKeyCredential
from resource_broker.shared.core.exceptions import (
    ConfigurationError,
    ResourceInactiveError,
    ResourceNotFoundError,
)

RESOURCES = [
    {
        "id": "prod-sql",
        "displayName": "Production SQL",
        "endpoint": "mssql+aioodbc://prod.database.windows.net",
        "authMode": "service_principal",
        "subResources": [
            {"name": "sales", "active": True},
            {"name": "archive", "active": False},
        ],
    },
    {
        "id": "dev-sql",
        "endpoint": "postgresql://dev-host:5432",
        "active": False,
        "subResources": [],
    },
    {
        "id": "catalog-api",
        "kind": "http",
        "endpoint": "https://catalog.example.test/api/{subResource}",
        "credential": {"apiKey": "k-123"},
        "options": {"discoveryPath": "/tenants"},
    },
]


@pytest.fixture
def registry():
    return ResourceRegistry.from_config(RESOURCES)


def test_resolve_active_resource(registry):
    descriptor = registry.resolve("prod-sql")
    assert descriptor.display_name == "Production SQL"
    assert descriptor.kind is ResourceKind.SQL
    assert descriptor.token_scope == SQL_TOKEN_SCOPE
    assert descriptor.read_only is True


def test_display_name_defaults_to_id(registry):
    assert registry.get("dev-sql").display_name == "dev-sql"


def test_unknown_resource_lists_available(registry):
    with pytest.raises(ResourceNotFoundError) as exc_info:
        registry.resolve("nope")
    message = str(exc_info.value)
    assert "'nope' not found" in message
    assert "prod-sql (Production SQL)" in message
    assert "catalog-api" in message


def test_inactive_resource(registry):
    with pytest.raises(ResourceInactiveError, match="active=true"):
        registry.resolve("dev-sql")


def test_list_includes_inactive(registry):
    assert [r.id for r in registry.list_resources()] == ["prod-sql", "dev-sql", "catalog-api"]


def test_inline_credential_is_parsed(registry):
    descriptor = registry.get("catalog-api")
    assert isinstance(descriptor.credential, StaticKeyCredential)
    assert descriptor.discovery_mode
    assert descriptor.token_scope == "https://catalog.example.test/.default"


def test_resolve_sub_resource(registry):
    assert registry.resolve_sub_resource("prod-sql", "sales").name == "sales"
    with pytest.raises(ResourceInactiveError):
        registry.resolve_sub_resource("prod-sql", "archive")
    with pytest.raises(ResourceNotFoundError, match="Available: sales, archive"):
        registry.resolve_sub_resource("prod-sql", "missing")
    # Discovery mode accepts any name.
    assert registry.resolve_sub_resource("catalog-api", "tenant-7").name == "tenant-7"


def test_duplicate_ids_rejected():
    with pytest.raises(ConfigurationError, match="Duplicate resource ids: a"):
        ResourceRegistry.from_config(
            [{"id": "a", "endpoint": "sqlite://"}, {"id": "a", "endpoint": "sqlite://"}]
        )


def test_invalid_descriptor_names_fields():
    with pytest.raises(ConfigurationError, match="endpoint") as exc_info:
        ResourceRegistry.from_config([{"id": "broken"}])
    assert "broken" in str(exc_info.value)


def test_no_configuration():
    with pytest.raises(ConfigurationError, match="No resources configured"):
        ResourceRegistry.from_config(None)


def test_json_and_wrapped_shapes():
    from_json = ResourceRegistry.from_config(json.dumps(RESOURCES))
    wrapped = ResourceRegistry.from_config({"resources": RESOURCES})
    assert [r.id for r in from_json.list_resources()] == [r.id for r in wrapped.list_resources()]

    with pytest.raises(ConfigurationError, match="not valid JSON"):
        ResourceRegistry.from_config("{not json")


def test_legacy_flat_configuration():
    registry = ResourceRegistry.from_config(
        {"endpoint": "sqlite:///data.db", "subResource": "main", "apiKey": "secret-key"}
    )
    descriptor = registry.resolve(LEGACY_RESOURCE_ID)
    assert [s.name for s in descriptor.sub_resources] == ["main"]
    assert isinstance(descriptor.credential, StaticKeyCredential)
    assert registry.resolve_default_id() == LEGACY_RESOURCE_ID
    assert registry.resolve_sub_resource_name(LEGACY_RESOURCE_ID) == "main"


def test_legacy_requires_endpoint():
    with pytest.raises(ConfigurationError, match="requires an endpoint"):
        ResourceRegistry.from_config({"subResource": "main"})


def test_from_settings_prefers_resources_json():
    settings = Settings(
        RESOURCES=json.dumps(RESOURCES), RESOURCE_ENDPOINT="sqlite:///ignored.db"
    )
    registry = ResourceRegistry.from_settings(settings)
    assert len(registry.list_resources()) == 3


def test_from_settings_legacy_fields():
    settings = Settings(RESOURCE_ENDPOINT="sqlite:///data.db", RESOURCE_SUB_RESOURCE="main")
    registry = ResourceRegistry.from_settings(settings)
    assert registry.resolve("default").endpoint == "sqlite:///data.db"


@pytest.mark.asyncio
async def test_list_configured_sub_resources(registry):
    subs = await registry.list_sub_resources("prod-sql")
    assert [(s.name, s.active) for s in subs] == [("sales", True), ("archive", False)]


@pytest.mark.asyncio
async def test_list_discovered_sub_resources(registry):
    calls = []

    async def discover(descriptor):
        calls.append(descriptor.id)
        return ["t1", "t2", "t1", ""]

    subs = await registry.list_sub_resources("catalog-api", discover)

    assert calls == ["catalog-api"]
    assert [s.name for s in subs] == ["t1", "t2"]
    assert all(s.active for s in subs)
    # Stored configuration is untouched.
    assert registry.get("catalog-api").sub_resources == ()


@pytest.mark.asyncio
async def test_discovery_requires_discoverer(registry):
    with pytest.raises(ConfigurationError, match="discovery mode"):
        await registry.list_sub_resources("catalog-api")


def test_default_configuration(registry):
    defaults = registry.default_configuration()
    assert defaults["default_resource_id"] == "prod-sql"
    assert defaults["default_resource_name"] == "Production SQL"
    assert defaults["default_sub_resource"] == "sales"
    assert defaults["resource_count"] == 3
    assert defaults["sub_resource_count"] == 2
    assert "Defaults: resource='prod-sql'" in defaults["hint"]


def test_default_configuration_single_resource_hint():
    registry = ResourceRegistry.from_config({"endpoint": "sqlite:///x.db", "subResource": "main"})
    assert "may be omitted" in registry.default_configuration()["hint"]


def test_default_configuration_none_active():
    registry = ResourceRegistry.from_config(
        [{"id": "a", "endpoint": "sqlite://", "active": False}]
    )
    defaults = registry.default_configuration()
    assert defaults["default_resource_id"] is None
    assert "none are active" in defaults["hint"]
    with pytest.raises(ConfigurationError, match="none are active"):
        registry.resolve_default_id()


def test_sub_resource_name_required_in_discovery_mode(registry):
    assert registry.resolve_sub_resource_name("catalog-api", "explicit") == "explicit"
    with pytest.raises(ConfigurationError, match="must be specified"):
        registry.resolve_sub_resource_name("catalog-api")


def test_describe_never_leaks_credentials(registry):
    summaries = {s["id"]: s for s in registry.describe()}
    assert summaries["catalog-api"]["auth_method"] == "static_key"
    assert summaries["prod-sql"]["auth_method"] == "service_principal"
    assert summaries["dev-sql"]["auth_method"] == "default"
    assert summaries["catalog-api"]["discovery_mode"] is True
    assert "k-123" not in json.dumps(summaries)
