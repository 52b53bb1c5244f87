from __future__ import annotations

import unittest
from collections.abc import Generator
from datetime import date, datetime, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient

from attendance_core.db import get_db
from attendance_core.errors import ApiError
from attendance_core.main import app
from attendance_core.models import (
    AttendanceEvent,
    AttendanceEventType,
    AttendanceRecord,
    AttendanceRule,
    AttendanceStatus,
    LeaveType,
)
from attendance_core.security import SERVICE_EVENTS, SERVICE_PERMISSIONS, SERVICE_SETTINGS
from attendance_core.services.metrics import ScheduleRule
from attendance_core.services.permissions import CapabilityService, role_capability_lookup
from attendance_core.services.registry import EventBus, ServiceRegistry
from attendance_core.services.settings_cache import AttendanceSettings, SettingsCache

EMPLOYEE_HEADERS = {"X-User-Id": "emp-1", "X-Org-Id": "org-1", "X-Role-Ids": "attendance_employee"}
ADMIN_HEADERS = {"X-User-Id": "adm-1", "X-Org-Id": "org-1", "X-Role-Ids": "attendance_admin"}


class _FakeDB:
    def add(self, _obj):  # type: ignore[no-untyped-def]
        return None

    def commit(self) -> None:
        return None

    def rollback(self) -> None:
        return None


def _override_get_db(fake_db: _FakeDB):
    def _override() -> Generator[_FakeDB, None, None]:
        yield fake_db

    return _override


def _registry() -> ServiceRegistry:
    registry = ServiceRegistry()
    registry.register(SERVICE_PERMISSIONS, CapabilityService(role_capability_lookup()))
    registry.register(SERVICE_SETTINGS, SettingsCache(AttendanceSettings, ttl_seconds=60))
    registry.register(SERVICE_EVENTS, EventBus())
    return registry


def _punch_result() -> tuple[AttendanceEvent, AttendanceRecord]:
    occurred_at = datetime(2026, 3, 2, 9, 12, tzinfo=timezone.utc)
    event = AttendanceEvent(
        id="evt-1",
        user_id="emp-1",
        org_id="org-1",
        work_date=date(2026, 3, 2),
        occurred_at=occurred_at,
        event_type=AttendanceEventType.CHECK_IN,
        source="manual",
        timezone="UTC",
        location={},
        meta={},
    )
    record = AttendanceRecord(
        id="rec-1",
        user_id="emp-1",
        org_id="org-1",
        work_date=date(2026, 3, 2),
        timezone="UTC",
        first_in_at=occurred_at,
        last_out_at=None,
        work_minutes=0,
        late_minutes=2,
        early_leave_minutes=0,
        status=AttendanceStatus.PARTIAL,
        is_workday=True,
        meta={},
    )
    return event, record


class AttendanceApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._previous_registry = getattr(app.state, "registry", None)
        app.state.registry = _registry()
        app.dependency_overrides[get_db] = _override_get_db(_FakeDB())
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        app.state.registry = self._previous_registry

    def test_missing_user_header_is_unauthorized(self) -> None:
        response = self.client.post(
            "/api/attendance/punch",
            json={"event_type": "check_in"},
            headers={"X-Request-Id": "req-401"},
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(
            response.json(),
            {"error": {"code": "UNAUTHORIZED", "message": "Missing user identity.", "request_id": "req-401"}},
        )
        self.assertEqual(response.headers["X-Request-Id"], "req-401")

    @patch("attendance_core.routers.attendance.record_punch")
    def test_punch_created(self, mock_record_punch) -> None:  # type: ignore[no-untyped-def]
        mock_record_punch.return_value = _punch_result()

        response = self.client.post(
            "/api/attendance/punch",
            json={"event_type": "check_in", "occurred_at": "2026-03-02T09:12:00Z"},
            headers={**EMPLOYEE_HEADERS, "X-Forwarded-For": "10.1.2.3, 172.16.0.1"},
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["event"]["id"], "evt-1")
        self.assertEqual(body["record"]["status"], "partial")
        self.assertEqual(body["record"]["late_minutes"], 2)
        kwargs = mock_record_punch.call_args.kwargs
        self.assertEqual((kwargs["user_id"], kwargs["org_id"]), ("emp-1", "org-1"))
        self.assertEqual(kwargs["client_ip"], "10.1.2.3")
        self.assertEqual(kwargs["role_ids"], ("attendance_employee",))
        self.assertEqual(kwargs["settings"], AttendanceSettings())

    @patch("attendance_core.routers.attendance.record_punch")
    def test_domain_error_uses_envelope(self, mock_record_punch) -> None:  # type: ignore[no-untyped-def]
        mock_record_punch.side_effect = ApiError(status_code=429, code="PUNCH_TOO_SOON", message="Punch interval too short.")

        response = self.client.post("/api/attendance/punch", json={"event_type": "check_out"}, headers=EMPLOYEE_HEADERS)

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json()["error"]["code"], "PUNCH_TOO_SOON")

    def test_invalid_body_is_validation_error(self) -> None:
        response = self.client.post("/api/attendance/punch", json={"event_type": "lunch"}, headers=EMPLOYEE_HEADERS)

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    @patch("attendance_core.routers.attendance.list_records")
    def test_cross_user_read_requires_admin(self, mock_list_records) -> None:  # type: ignore[no-untyped-def]
        mock_list_records.return_value = []
        query = {"from_date": "2026-03-01", "to_date": "2026-03-31", "user_id": "emp-2"}

        denied = self.client.get("/api/attendance/records", params=query, headers=EMPLOYEE_HEADERS)
        allowed = self.client.get("/api/attendance/records", params=query, headers=ADMIN_HEADERS)

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(denied.json()["error"]["code"], "FORBIDDEN")
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.json(), [])
        mock_list_records.assert_called_once()
        self.assertEqual(mock_list_records.call_args.kwargs["user_id"], "emp-2")

    def test_employee_cannot_import(self) -> None:
        response = self.client.post(
            "/api/attendance/import/commit",
            json={"rows": [{"user_id": "emp-1", "work_date": "2026-03-02"}]},
            headers=EMPLOYEE_HEADERS,
        )

        self.assertEqual(response.status_code, 403)

    @patch("attendance_core.routers.attendance.create_leave_type")
    def test_admin_creates_leave_type(self, mock_create_leave_type) -> None:  # type: ignore[no-untyped-def]
        mock_create_leave_type.return_value = LeaveType(
            id="lt-1",
            org_id="org-1",
            code="annual",
            name="Annual leave",
            requires_approval=True,
            is_active=True,
        )

        response = self.client.post(
            "/api/attendance/leave-types",
            json={"code": "annual", "name": "Annual leave"},
            headers=ADMIN_HEADERS,
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["code"], "annual")
        self.assertEqual(mock_create_leave_type.call_args.kwargs["org_id"], "org-1")

    def test_rule_templates_listed_for_admin(self) -> None:
        response = self.client.get("/api/attendance/rule-templates", headers=ADMIN_HEADERS)

        self.assertEqual(response.status_code, 200)
        self.assertIn("driver_default_hours", [item["name"] for item in response.json()])

    @patch("attendance_core.routers.attendance.record_punch")
    def test_unexpected_error_is_internal(self, mock_record_punch) -> None:  # type: ignore[no-untyped-def]
        mock_record_punch.side_effect = RuntimeError("boom")
        client = TestClient(app, raise_server_exceptions=False)

        response = client.post("/api/attendance/punch", json={"event_type": "check_in"}, headers=EMPLOYEE_HEADERS)

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"]["code"], "INTERNAL_ERROR")

    @patch("attendance_core.routers.attendance.load_default_schedule")
    def test_employee_reads_default_rule(self, mock_load) -> None:  # type: ignore[no-untyped-def]
        mock_load.return_value = ScheduleRule(
            timezone="Europe/Istanbul",
            work_start="08:30",
            work_end="17:30",
            late_grace_minutes=5,
            early_grace_minutes=0,
            rounding_minutes=1,
            working_weekdays=frozenset({1, 2, 3, 4, 5}),
            name="Org",
        )

        response = self.client.get("/api/attendance/rules/default", headers=EMPLOYEE_HEADERS)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["work_start"], "08:30")
        self.assertEqual(body["working_weekdays"], [1, 2, 3, 4, 5])
        self.assertIsNone(body["id"])
        self.assertEqual(mock_load.call_args.args[1], "org-1")

    @patch("attendance_core.routers.attendance.upsert_default_rule")
    def test_default_rule_update_is_admin_only(self, mock_upsert) -> None:  # type: ignore[no-untyped-def]
        mock_upsert.return_value = AttendanceRule(
            id="rule-2",
            org_id="org-1",
            name="Night",
            timezone="UTC",
            work_start_time="22:00",
            work_end_time="06:00",
            late_grace_minutes=10,
            early_grace_minutes=10,
            rounding_minutes=5,
            working_days=[0, 6],
            is_default=True,
        )
        body = {"name": "Night", "work_start_time": "22:00", "work_end_time": "06:00", "working_days": [0, 6]}

        denied = self.client.put("/api/attendance/rules/default", json=body, headers=EMPLOYEE_HEADERS)
        invalid = self.client.put("/api/attendance/rules/default", json={"working_days": [9]}, headers=ADMIN_HEADERS)
        allowed = self.client.put("/api/attendance/rules/default", json=body, headers=ADMIN_HEADERS)

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(invalid.status_code, 422)
        self.assertEqual(invalid.json()["error"]["code"], "VALIDATION_ERROR")
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.json()["id"], "rule-2")
        self.assertEqual(allowed.json()["working_weekdays"], [0, 6])
        mock_upsert.assert_called_once()
        self.assertEqual(mock_upsert.call_args.kwargs["org_id"], "org-1")
        self.assertEqual(mock_upsert.call_args.kwargs["payload"].work_start_time, "22:00")

    def test_health_lists_services(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["services"], ["events", "permissions", "settings_cache"])
        self.assertIn("ok", body["schema_guard"])


if __name__ == "__main__":
    unittest.main()
