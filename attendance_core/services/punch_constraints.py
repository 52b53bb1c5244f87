from __future__ import annotations

from datetime import datetime
import ipaddress
import logging
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from attendance_core.errors import (
    IP_RESTRICTED,
    LOCATION_RESTRICTED,
    PUNCH_TOO_SOON,
    ApiError,
)
from attendance_core.models import AttendanceEvent
from attendance_core.services.location import evaluate_geo_fence
from attendance_core.services.settings_cache import AttendanceSettings
from attendance_core.services.timezones import normalize_ts

logger = logging.getLogger("attendance_core.punch_constraints")


def is_ip_allowed(ip: str | None, allowlist: tuple[str, ...] | list[str]) -> bool:
    if not allowlist:
        return True
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False
    for entry in allowlist:
        entry = entry.strip()
        if not entry:
            continue
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("ip_allowlist_entry_invalid", extra={"entry": entry})
    return False


def _latest_event_at(db: Session, *, user_id: str, org_id: str) -> datetime | None:
    return db.scalar(
        select(AttendanceEvent.occurred_at)
        .where(
            AttendanceEvent.user_id == user_id,
            AttendanceEvent.org_id == org_id,
        )
        .order_by(AttendanceEvent.occurred_at.desc())
        .limit(1)
    )


def check_punch_constraints(
    db: Session,
    *,
    user_id: str,
    org_id: str,
    occurred_at: datetime,
    settings: AttendanceSettings,
    client_ip: str | None = None,
    location: Mapping[str, Any] | None = None,
) -> None:
    """Default gate for live punches: IP allowlist, geofence, minimum interval."""
    if settings.ip_allowlist and not is_ip_allowed(client_ip, settings.ip_allowlist):
        raise ApiError(status_code=403, code=IP_RESTRICTED, message="Punch not allowed from this IP.")

    if settings.geo_fence is not None:
        allowed, flags = evaluate_geo_fence(settings.geo_fence, location)
        if not allowed:
            logger.info("punch_outside_geo_fence", extra={"user_id": user_id, "org_id": org_id, **flags})
            raise ApiError(
                status_code=403,
                code=LOCATION_RESTRICTED,
                message="Punch location outside allowed area.",
            )

    if settings.min_punch_interval_minutes > 0:
        last = _latest_event_at(db, user_id=user_id, org_id=org_id)
        if last is not None:
            diff_minutes = (normalize_ts(occurred_at) - normalize_ts(last)).total_seconds() / 60
            if diff_minutes < settings.min_punch_interval_minutes:
                raise ApiError(status_code=429, code=PUNCH_TOO_SOON, message="Punch interval too short.")
