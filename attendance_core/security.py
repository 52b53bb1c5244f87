from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request

from attendance_core.errors import UNAUTHORIZED, ApiError
from attendance_core.services.permissions import CapabilityService, Identity
from attendance_core.services.registry import EventBus, ServiceRegistry
from attendance_core.services.settings_cache import SettingsCache
from attendance_core.settings import get_settings

USER_HEADER = "X-User-Id"
ORG_HEADER = "X-Org-Id"
ROLES_HEADER = "X-Role-Ids"

SERVICE_PERMISSIONS = "permissions"
SERVICE_SETTINGS = "settings_cache"
SERVICE_EVENTS = "events"


def get_registry(request: Request) -> ServiceRegistry:
    registry: ServiceRegistry | None = getattr(request.app.state, "registry", None)
    if registry is None:
        raise RuntimeError("Service registry not initialised.")
    return registry


def get_capabilities(registry: ServiceRegistry = Depends(get_registry)) -> CapabilityService:
    return registry.require(SERVICE_PERMISSIONS)


def get_settings_cache(registry: ServiceRegistry = Depends(get_registry)) -> SettingsCache:
    return registry.require(SERVICE_SETTINGS)


def get_events(registry: ServiceRegistry = Depends(get_registry)) -> EventBus:
    return registry.require(SERVICE_EVENTS)


def get_identity(request: Request) -> Identity:
    user_id = (request.headers.get(USER_HEADER) or "").strip()
    if not user_id:
        raise ApiError(status_code=401, code=UNAUTHORIZED, message="Missing user identity.")
    org_id = (request.headers.get(ORG_HEADER) or "").strip() or get_settings().default_org_id
    role_ids = tuple(
        item.strip() for item in (request.headers.get(ROLES_HEADER) or "").split(",") if item.strip()
    )

    request.state.actor = "user"
    request.state.actor_id = user_id
    return Identity(user_id=user_id, org_id=org_id, role_ids=role_ids)


def require_capability(capability: str) -> Callable[..., Identity]:
    def _dependency(
        identity: Identity = Depends(get_identity),
        capabilities: CapabilityService = Depends(get_capabilities),
    ) -> Identity:
        capabilities.require_capability(identity, capability)
        return identity

    return _dependency
