"""
Resource Registry

Parses declarative resource configuration once at startup into immutable
ResourceDescriptor records and answers resolve/list questions about them.

Two input shapes are accepted and normalized immediately:
- multi-resource: a JSON array of descriptors (or an object with a
  ``resources`` array)
- legacy single-resource: a flat object (``endpoint``, ``subResource``, ...)
  which becomes one descriptor with the fixed id ``"default"``
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence
from urllib.parse import urlsplit

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from resource_broker.shared.core.config import Settings, get_settings
from resource_broker.shared.core.credentials import AuthMode, Credential, parse_credential
from resource_broker.shared.core.exceptions import (
    ConfigurationError,
    ResourceInactiveError,
    ResourceNotFoundError,
)

logger = structlog.get_logger()

LEGACY_RESOURCE_ID = "default"
SQL_TOKEN_SCOPE = "https://database.windows.net/.default"

Discoverer = Callable[["ResourceDescriptor"], Awaitable[Sequence[str]]]


class ResourceKind(str, Enum):
    SQL = "sql"
    HTTP = "http"


class _Descriptor(BaseModel):
    model_config = ConfigDict(
        frozen=True, populate_by_name=True, alias_generator=to_camel, extra="ignore"
    )


class SubResourceDescriptor(_Descriptor):
    name: str = Field(..., min_length=1)
    active: bool = True
    description: Optional[str] = None


class ResourceDescriptor(_Descriptor):
    id: str = Field(..., min_length=1)
    display_name: Optional[str] = None
    active: bool = True
    endpoint: str = Field(..., min_length=1)
    kind: ResourceKind = ResourceKind.SQL
    auth_mode: Optional[AuthMode] = None
    credential_ref: Optional[str] = None
    credential: Optional[Credential] = None
    sub_resources: tuple[SubResourceDescriptor, ...] = ()
    read_only: bool = True
    scope: Optional[str] = None
    description: Optional[str] = None
    options: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _default_display_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not (data.get("displayName") or data.get("display_name")):
            data = {**data, "displayName": data.get("id")}
        return data

    @property
    def discovery_mode(self) -> bool:
        """An empty sub-resource list means the set is discovered at runtime."""
        return not self.sub_resources

    @property
    def token_scope(self) -> str:
        if self.scope:
            return self.scope
        if self.kind is ResourceKind.SQL:
            return SQL_TOKEN_SCOPE
        parts = urlsplit(self.endpoint)
        return f"{parts.scheme}://{parts.netloc}/.default"

    def find_sub_resource(self, name: str) -> SubResourceDescriptor | None:
        for sub in self.sub_resources:
            if sub.name == name:
                return sub
        return None


class ResourceRegistry:
    """Immutable set of resource descriptors with unique ids."""

    def __init__(self, resources: Iterable[ResourceDescriptor]):
        self._resources: dict[str, ResourceDescriptor] = {}
        duplicates: list[str] = []
        for descriptor in resources:
            if descriptor.id in self._resources:
                duplicates.append(descriptor.id)
                continue
            self._resources[descriptor.id] = descriptor
        if duplicates:
            raise ConfigurationError(
                f"Duplicate resource ids: {', '.join(sorted(set(duplicates)))}",
                details={"duplicate_ids": sorted(set(duplicates))},
            )
        logger.info(
            "resource_registry_loaded",
            resource_count=len(self._resources),
            active_count=sum(1 for r in self._resources.values() if r.active),
        )

    # ------------------------------------------------------------ construction

    @classmethod
    def from_config(cls, config: Any) -> "ResourceRegistry":
        """
        Build a registry from either configuration shape.

        ``config`` may be a JSON string, a list of descriptor mappings, an
        object holding a ``resources`` list, or a flat legacy object.
        """
        if isinstance(config, (str, bytes)):
            try:
                config = json.loads(config)
            except ValueError as e:
                raise ConfigurationError(f"Resource configuration is not valid JSON: {e}") from e

        if config is None:
            raise ConfigurationError(
                "No resources configured. Provide a resources array or the legacy "
                "single-resource fields."
            )
        if isinstance(config, dict) and "resources" in config:
            config = config["resources"]
            if not isinstance(config, list):
                raise ConfigurationError("'resources' must be an array")

        if isinstance(config, list):
            entries = [
                _parse_descriptor(raw, source=f"resources[{index}]")
                for index, raw in enumerate(config)
            ]
        elif isinstance(config, dict):
            entries = [_parse_descriptor(_normalize_legacy(config), source="legacy resource")]
        else:
            raise ConfigurationError("Resource configuration must be an array or an object")
        return cls(entries)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ResourceRegistry":
        settings = settings or get_settings()
        if settings.RESOURCES:
            if settings.has_legacy_resource:
                logger.info("legacy_resource_fields_ignored", reason="RESOURCES is set")
            return cls.from_config(settings.RESOURCES)
        if settings.has_legacy_resource:
            return cls.from_config(
                {
                    "endpoint": settings.RESOURCE_ENDPOINT,
                    "kind": settings.RESOURCE_KIND,
                    "subResource": settings.RESOURCE_SUB_RESOURCE,
                    "authMode": settings.RESOURCE_AUTH_MODE,
                    "apiKey": settings.RESOURCE_API_KEY,
                }
            )
        return cls.from_config(None)

    # --------------------------------------------------------------- lookups

    def list_resources(self) -> list[ResourceDescriptor]:
        """Every descriptor, inactive ones included."""
        return list(self._resources.values())

    def get(self, resource_id: str) -> ResourceDescriptor:
        descriptor = self._resources.get(resource_id)
        if descriptor is None:
            available = ", ".join(
                f"{r.id} ({r.display_name})" for r in self._resources.values()
            )
            raise ResourceNotFoundError(
                f"Resource '{resource_id}' not found. "
                f"Available resources: {available or 'none configured'}.",
                details={"resource_id": resource_id},
            )
        return descriptor

    def resolve(self, resource_id: str) -> ResourceDescriptor:
        """Return the descriptor if it exists and is active."""
        descriptor = self.get(resource_id)
        if not descriptor.active:
            raise ResourceInactiveError(
                f"Resource '{resource_id}' is inactive. "
                "Set active=true in configuration to enable access.",
                details={"resource_id": resource_id},
            )
        return descriptor

    def resolve_sub_resource(self, resource_id: str, name: str) -> SubResourceDescriptor:
        descriptor = self.resolve(resource_id)
        if descriptor.discovery_mode:
            return SubResourceDescriptor(name=name, active=True)

        sub = descriptor.find_sub_resource(name)
        if sub is None:
            available = ", ".join(s.name for s in descriptor.sub_resources)
            raise ResourceNotFoundError(
                f"Sub-resource '{name}' not configured on resource '{resource_id}'. "
                f"Available: {available}.",
                details={"resource_id": resource_id, "sub_resource": name},
            )
        if not sub.active:
            raise ResourceInactiveError(
                f"Sub-resource '{name}' is inactive on resource '{resource_id}'. "
                "Set active=true in configuration to enable access.",
                details={"resource_id": resource_id, "sub_resource": name},
            )
        return sub

    async def list_sub_resources(
        self, resource_id: str, discover: Discoverer | None = None
    ) -> list[SubResourceDescriptor]:
        """
        Configured sub-resources, or, in discovery mode, the live set from the
        endpoint (all active). Stored configuration is never mutated.
        """
        descriptor = self.resolve(resource_id)
        if not descriptor.discovery_mode:
            return list(descriptor.sub_resources)
        if discover is None:
            raise ConfigurationError(
                f"Resource '{resource_id}' is in discovery mode but no discoverer is available"
            )

        names = await discover(descriptor)
        seen: set[str] = set()
        discovered: list[SubResourceDescriptor] = []
        for name in names:
            if name and name not in seen:
                seen.add(name)
                discovered.append(SubResourceDescriptor(name=name, active=True))
        logger.info(
            "sub_resources_discovered",
            resource_id=resource_id,
            count=len(discovered),
        )
        return discovered

    # ------------------------------------------------------------- defaults

    def default_configuration(self) -> dict[str, Any]:
        """
        Default resource and sub-resource so callers can skip discovery calls.
        """
        resource_count = len(self._resources)
        result: dict[str, Any] = {
            "default_resource_id": None,
            "default_resource_name": None,
            "default_sub_resource": None,
            "resource_count": resource_count,
            "sub_resource_count": 0,
        }
        if resource_count == 0:
            result["hint"] = "No resources configured."
            return result

        active = [r for r in self._resources.values() if r.active]
        if not active:
            result["hint"] = (
                f"{resource_count} resource(s) configured but none are active. "
                "Set active=true on a resource to enable it."
            )
            return result

        default = active[0]
        result["default_resource_id"] = default.id
        result["default_resource_name"] = default.display_name
        sub_count = len(default.sub_resources)
        result["sub_resource_count"] = sub_count

        if default.discovery_mode:
            result["hint"] = (
                f"Default resource: {default.id}. Sub-resources are in discovery "
                "mode; the sub-resource must be specified."
            )
            return result

        active_subs = [s for s in default.sub_resources if s.active]
        if not active_subs:
            result["hint"] = (
                f"{sub_count} sub-resource(s) configured on '{default.id}' but none "
                "are active. Set active=true on a sub-resource to enable it."
            )
            return result

        result["default_sub_resource"] = active_subs[0].name
        if resource_count == 1 and len(active_subs) == 1:
            result["hint"] = (
                "Single resource with one active sub-resource. Resource and "
                f"sub-resource may be omitted; defaults are '{default.id}' and "
                f"'{active_subs[0].name}'."
            )
        else:
            result["hint"] = (
                f"{resource_count} resource(s), {sub_count} sub-resource(s) on the "
                f"default resource. Defaults: resource='{default.id}', "
                f"sub-resource='{active_subs[0].name}'."
            )
        return result

    def resolve_default_id(self, resource_id: str | None = None) -> str:
        if resource_id:
            return resource_id
        defaults = self.default_configuration()
        if not defaults["default_resource_id"]:
            raise ConfigurationError(defaults["hint"])
        return defaults["default_resource_id"]

    def resolve_sub_resource_name(self, resource_id: str, name: str | None = None) -> str:
        if name:
            return name
        descriptor = self.resolve(resource_id)
        if descriptor.discovery_mode:
            raise ConfigurationError(
                f"Resource '{resource_id}' is in discovery mode (no sub-resources "
                "pre-configured). The sub-resource must be specified."
            )
        active = [s for s in descriptor.sub_resources if s.active]
        if not active:
            available = ", ".join(s.name for s in descriptor.sub_resources)
            raise ConfigurationError(
                f"No active sub-resources on resource '{resource_id}'. "
                f"Available: {available}."
            )
        return active[0].name

    def describe(self) -> list[dict[str, Any]]:
        """Introspection summaries. Never includes credential material."""
        return [
            {
                "id": r.id,
                "display_name": r.display_name,
                "endpoint": r.endpoint,
                "kind": r.kind.value,
                "active": r.active,
                "sub_resource_count": len(r.sub_resources),
                "discovery_mode": r.discovery_mode,
                "auth_method": _auth_method(r),
                "description": r.description,
            }
            for r in self._resources.values()
        ]


def _auth_method(descriptor: ResourceDescriptor) -> str:
    if descriptor.credential is not None:
        return descriptor.credential.mode
    if descriptor.auth_mode is not None:
        return descriptor.auth_mode.value
    if descriptor.credential_ref:
        return f"ref:{descriptor.credential_ref}"
    return "default"


def _normalize_legacy(raw: dict[str, Any]) -> dict[str, Any]:
    """Flat single-resource fields -> one descriptor mapping with id 'default'."""
    endpoint = raw.get("endpoint")
    if not endpoint:
        raise ConfigurationError("Legacy resource configuration requires an endpoint")

    entry: dict[str, Any] = {
        "id": raw.get("id") or LEGACY_RESOURCE_ID,
        "displayName": raw.get("displayName") or raw.get("name") or LEGACY_RESOURCE_ID,
        "endpoint": endpoint,
        "active": raw.get("active", True),
    }
    for key in ("kind", "authMode", "credentialRef", "scope", "description", "options", "readOnly"):
        if raw.get(key) is not None:
            entry[key] = raw[key]

    sub_resource = raw.get("subResource")
    if sub_resource:
        entry["subResources"] = [{"name": sub_resource, "active": True}]

    if raw.get("credential"):
        entry["credential"] = raw["credential"]
    elif raw.get("apiKey"):
        entry["credential"] = {"mode": AuthMode.STATIC_KEY.value, "key": raw["apiKey"]}
    elif raw.get("clientId"):
        entry["credential"] = {
            k: raw[k] for k in ("tenantId", "clientId", "clientSecret") if raw.get(k)
        }
    return entry


def _parse_descriptor(raw: Any, *, source: str) -> ResourceDescriptor:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{source} must be an object")
    data = dict(raw)
    label = data.get("id") or source

    inline = data.get("credential")
    if isinstance(inline, dict):
        inline = dict(inline)
        if not inline.get("mode") and data.get("authMode"):
            inline["mode"] = data["authMode"]
        data["credential"] = parse_credential(inline, source=f"resource '{label}' credential")

    try:
        return ResourceDescriptor.model_validate(data)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ConfigurationError(
            f"Resource '{label}' is invalid: {', '.join(fields)}",
            details={"fields": fields},
        ) from e
