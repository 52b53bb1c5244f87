from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Callable, Iterable

from attendance_core.errors import FORBIDDEN, UNAUTHORIZED, ApiError, StoreNotReadyError

logger = logging.getLogger("attendance_core.permissions")

CAP_READ = "attendance:read"
CAP_WRITE = "attendance:write"
CAP_APPROVE = "attendance:approve"
CAP_ADMIN = "attendance:admin"

SELF_SERVICE_CAPABILITIES = frozenset({CAP_READ, CAP_WRITE})

DEFAULT_ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    "attendance_admin": frozenset({CAP_READ, CAP_WRITE, CAP_APPROVE, CAP_ADMIN}),
    "attendance_approver": frozenset({CAP_READ, CAP_APPROVE}),
    "attendance_employee": SELF_SERVICE_CAPABILITIES,
}


@dataclass(frozen=True)
class Identity:
    user_id: str
    org_id: str
    role_ids: tuple[str, ...] = field(default_factory=tuple)


CapabilityLookup = Callable[[Identity], Iterable[str] | None]


def role_capability_lookup(
    mapping: dict[str, frozenset[str]] | None = None,
) -> CapabilityLookup:
    role_map = mapping if mapping is not None else DEFAULT_ROLE_CAPABILITIES

    def _lookup(identity: Identity) -> set[str]:
        capabilities = set(SELF_SERVICE_CAPABILITIES)
        for role_id in identity.role_ids:
            capabilities.update(role_map.get(role_id, ()))
        return capabilities

    return _lookup


class CapabilityService:
    """Gate for mutating and cross-user operations.

    When the lookup cannot answer (returns None or the store is not ready),
    the call is denied unless the service was built with
    ``allow_degraded=True``; each degraded decision is logged.
    """

    def __init__(self, lookup: CapabilityLookup, *, allow_degraded: bool = False):
        self._lookup = lookup
        self.allow_degraded = allow_degraded
        if allow_degraded:
            logger.warning("permission_degraded_mode_enabled")

    def _capabilities(self, identity: Identity, capability: str) -> set[str] | None:
        try:
            capabilities = self._lookup(identity)
        except StoreNotReadyError:
            if not self.allow_degraded:
                raise
            capabilities = None
        if capabilities is None:
            if self.allow_degraded:
                logger.warning(
                    "permission_degraded_allow",
                    extra={"user_id": identity.user_id, "capability": capability},
                )
            return None
        return set(capabilities)

    def has_capability(self, identity: Identity | None, capability: str) -> bool:
        if identity is None or not identity.user_id:
            return False
        capabilities = self._capabilities(identity, capability)
        if capabilities is None:
            return self.allow_degraded
        return capability in capabilities or CAP_ADMIN in capabilities

    def require_capability(self, identity: Identity | None, capability: str) -> None:
        if identity is None or not identity.user_id:
            raise ApiError(status_code=401, code=UNAUTHORIZED, message="Missing user identity.")
        if not self.has_capability(identity, capability):
            raise ApiError(status_code=403, code=FORBIDDEN, message=f"Missing capability: {capability}")
