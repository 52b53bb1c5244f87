from __future__ import annotations

from dataclasses import dataclass, field

import logging
import threading
import time
from typing import Any, Callable, Mapping

from sqlalchemy.orm import Session

from attendance_core.db import store_errors
from attendance_core.errors import StoreNotReadyError
from attendance_core.models import SystemConfig
from attendance_core.services.timezones import parse_hhmm

logger = logging.getLogger("attendance_core.settings_cache")

SETTINGS_KEY = "attendance.settings"


@dataclass(frozen=True)
class AutoAbsenceSettings:
    enabled: bool = False
    run_at: str = "00:15"
    lookback_days: int = 1


@dataclass(frozen=True)
class GeoFence:
    lat: float
    lng: float
    radius_meters: float


@dataclass(frozen=True)
class AttendanceSettings:
    auto_absence: AutoAbsenceSettings = field(default_factory=AutoAbsenceSettings)
    ip_allowlist: tuple[str, ...] = ()
    geo_fence: GeoFence | None = None
    min_punch_interval_minutes: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "auto_absence": {
                "enabled": self.auto_absence.enabled,
                "run_at": self.auto_absence.run_at,
                "lookback_days": self.auto_absence.lookback_days,
            },
            "ip_allowlist": list(self.ip_allowlist),
            "geo_fence": (
                {
                    "lat": self.geo_fence.lat,
                    "lng": self.geo_fence.lng,
                    "radius_meters": self.geo_fence.radius_meters,
                }
                if self.geo_fence is not None
                else None
            ),
            "min_punch_interval_minutes": self.min_punch_interval_minutes,
        }


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _parse_bool(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
    return fallback


def _parse_number(value: Any, fallback: float) -> float:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        return float(value)
    except (TypeError, ValueError):
        return fallback


def _parse_geo_fence(raw: Any) -> GeoFence | None:
    if not isinstance(raw, Mapping):
        return None
    lat = _parse_number(raw.get("lat"), float("nan"))
    lng = _parse_number(_pick(raw, "lng", "lon"), float("nan"))
    radius = _parse_number(_pick(raw, "radius_meters", "radiusMeters", "radius_m"), float("nan"))
    if lat != lat or lng != lng or radius != radius:
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180) or radius <= 0:
        return None
    return GeoFence(lat=lat, lng=lng, radius_meters=radius)


def normalize_settings(raw: Any) -> AttendanceSettings:
    """Coerce a stored document; missing or invalid values take defaults."""
    defaults = AttendanceSettings()
    if not isinstance(raw, Mapping):
        return defaults

    auto_raw = _pick(raw, "auto_absence", "autoAbsence")
    auto_raw = auto_raw if isinstance(auto_raw, Mapping) else {}
    run_at = _pick(auto_raw, "run_at", "runAt")
    if not isinstance(run_at, str) or parse_hhmm(run_at) is None:
        run_at = defaults.auto_absence.run_at
    auto_absence = AutoAbsenceSettings(
        enabled=_parse_bool(auto_raw.get("enabled"), defaults.auto_absence.enabled),
        run_at=run_at.strip(),
        lookback_days=max(
            1,
            int(_parse_number(_pick(auto_raw, "lookback_days", "lookbackDays"), defaults.auto_absence.lookback_days)),
        ),
    )

    allowlist_raw = _pick(raw, "ip_allowlist", "ipAllowlist")
    ip_allowlist = (
        tuple(str(item).strip() for item in allowlist_raw if str(item or "").strip())
        if isinstance(allowlist_raw, list)
        else ()
    )

    return AttendanceSettings(
        auto_absence=auto_absence,
        ip_allowlist=ip_allowlist,
        geo_fence=_parse_geo_fence(_pick(raw, "geo_fence", "geoFence")),
        min_punch_interval_minutes=max(
            0,
            int(
                _parse_number(
                    _pick(raw, "min_punch_interval_minutes", "minPunchIntervalMinutes"),
                    defaults.min_punch_interval_minutes,
                )
            ),
        ),
    )


def load_settings(db: Session) -> AttendanceSettings:
    try:
        with store_errors():
            row = db.get(SystemConfig, SETTINGS_KEY)
    except StoreNotReadyError:
        logger.warning("settings_store_not_ready")
        return AttendanceSettings()
    if row is None:
        return AttendanceSettings()
    return normalize_settings(row.value)


class SettingsCache:
    """TTL cache around a settings loader.

    One instance per application; tests build their own.
    """

    def __init__(
        self,
        loader: Callable[[], AttendanceSettings],
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._value: AttendanceSettings | None = None
        self._loaded_at: float | None = None

    def get(self) -> AttendanceSettings:
        with self._lock:
            if (
                self._value is not None
                and self._loaded_at is not None
                and self._clock() - self._loaded_at < self._ttl_seconds
            ):
                return self._value
        return self.refresh()

    def refresh(self) -> AttendanceSettings:
        value = self._loader()
        self.prime(value)
        return value

    def prime(self, value: AttendanceSettings) -> None:
        with self._lock:
            self._value = value
            self._loaded_at = self._clock()

    def invalidate(self) -> None:
        with self._lock:
            self._value = None
            self._loaded_at = None

    def peek(self) -> AttendanceSettings | None:
        with self._lock:
            return self._value


def session_settings_loader(session_factory: Callable[[], Session]) -> Callable[[], AttendanceSettings]:
    def _load() -> AttendanceSettings:
        with session_factory() as db:
            return load_settings(db)

    return _load
