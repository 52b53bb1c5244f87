from __future__ import annotations

import unittest
from dataclasses import replace
from datetime import date, datetime, timezone
from unittest.mock import patch

from attendance_core.errors import ApiError
from attendance_core.models import (
    ApprovalFlow,
    ApprovalInstance,
    ApprovalRecord,
    AttendanceEvent,
    AttendanceEventType,
    AttendanceRecord,
    AttendanceRequest,
    AttendanceStatus,
    RequestStatus,
    RequestType,
)
from attendance_core.schemas import AttendanceRequestCreate
from attendance_core.services.approvals import (
    _apply_approved_request,
    approve_request,
    can_act_on_step,
    cancel_request,
    create_attendance_request,
    flow_snapshot,
    normalize_steps,
    reject_request,
)
from attendance_core.services.metrics import ScheduleRule
from attendance_core.services.permissions import CapabilityService, Identity, role_capability_lookup
from attendance_core.services.registry import EVENT_REQUESTED, EVENT_RESOLVED
from attendance_core.services.rule_sets import compile_rule_set
from attendance_core.services.work_context import WorkContext

MODULE = "attendance_core.services.approvals"
WORK_DATE = date(2026, 3, 2)

EMPLOYEE = Identity(user_id="emp-1", org_id="org-1", role_ids=("attendance_employee",))
MANAGER = Identity(user_id="mgr-1", org_id="org-1", role_ids=("attendance_approver",))
HR = Identity(user_id="hr-1", org_id="org-1", role_ids=("attendance_approver", "hr"))


class _Result:
    def __init__(self, rowcount: int):
        self.rowcount = rowcount


class _FakeDB:
    def __init__(self, *, rowcount: int = 1):
        self.rowcount = rowcount
        self.added: list[object] = []
        self.commits = 0
        self.rollbacks = 0
        self.executed: list[object] = []

    def add(self, obj: object) -> None:
        self.added.append(obj)

    def flush(self) -> None:
        return

    def execute(self, statement):  # type: ignore[no-untyped-def]
        self.executed.append(statement)
        return _Result(self.rowcount)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def audit_rows(self) -> list[ApprovalRecord]:
        return [item for item in self.added if isinstance(item, ApprovalRecord)]


class _RecordingBus:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    def publish(self, event_name: str, payload: dict) -> None:
        self.published.append((event_name, payload))


def _capabilities() -> CapabilityService:
    return CapabilityService(role_capability_lookup())


def _two_step_request() -> tuple[AttendanceRequest, ApprovalInstance]:
    instance = ApprovalInstance(id="apv_1", status=RequestStatus.PENDING, version=0)
    request = AttendanceRequest(
        id="req-1",
        user_id="emp-1",
        org_id="org-1",
        work_date=WORK_DATE,
        request_type=RequestType.MISSED_CHECK_OUT,
        requested_out_at=datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc),
        status=RequestStatus.PENDING,
        approval_instance_id=instance.id,
        meta={
            "approval_flow": {
                "flow_id": "flow-1",
                "name": "two-step",
                "steps": [
                    {"name": "manager", "approver_user_ids": ["mgr-1"], "approver_role_ids": []},
                    {"name": "hr", "approver_user_ids": [], "approver_role_ids": ["hr"]},
                ],
                "current_step": 0,
            }
        },
    )
    return request, instance


class FlowHelperTests(unittest.TestCase):
    def test_normalize_steps_accepts_camel_case(self) -> None:
        steps = normalize_steps([{"approverUserIds": ["a"], "approverRoleIds": ["r"]}, "junk"])
        self.assertEqual(steps, [{"name": "step-1", "approver_user_ids": ["a"], "approver_role_ids": ["r"]}])

    def test_flow_snapshot_without_flow(self) -> None:
        self.assertEqual(flow_snapshot(None)["steps"], [])

    def test_can_act_on_step(self) -> None:
        step = {"approver_user_ids": ["mgr-1"], "approver_role_ids": ["hr"]}
        self.assertTrue(can_act_on_step(step, MANAGER))
        self.assertTrue(can_act_on_step(step, HR))
        self.assertFalse(can_act_on_step(step, EMPLOYEE))
        self.assertTrue(can_act_on_step({"approver_user_ids": [], "approver_role_ids": []}, EMPLOYEE))
        self.assertTrue(can_act_on_step(None, EMPLOYEE))


class ApproveRequestTests(unittest.TestCase):
    def _approve(self, db, request, instance, identity, apply_mock, events=None):  # type: ignore[no-untyped-def]
        with patch(f"{MODULE}._lock_request", return_value=request), patch(
            f"{MODULE}._lock_instance", return_value=instance
        ), patch(f"{MODULE}._apply_approved_request", apply_mock):
            return approve_request(
                db,
                request_id=request.id,
                identity=identity,
                capabilities=_capabilities(),
                events=events,
            )

    def test_two_step_flow_applies_side_effect_once(self) -> None:
        request, instance = _two_step_request()
        db = _FakeDB()
        bus = _RecordingBus()
        record = AttendanceRecord(
            id="rec-1",
            user_id="emp-1",
            org_id="org-1",
            work_date=WORK_DATE,
            timezone="UTC",
            status=AttendanceStatus.PARTIAL,
            work_minutes=0,
            late_minutes=0,
            early_leave_minutes=0,
            is_workday=True,
            meta={},
        )
        calls: list[str] = []

        def apply_mock(_db, item):  # type: ignore[no-untyped-def]
            calls.append(item.id)
            return record

        first = self._approve(db, request, instance, MANAGER, apply_mock, bus)

        self.assertEqual(first.status, RequestStatus.PENDING)
        self.assertEqual(first.version, 1)
        self.assertEqual(first.current_step, 1)
        self.assertEqual(request.status, RequestStatus.PENDING)
        self.assertEqual(calls, [])
        self.assertEqual(bus.published, [])

        with self.assertRaises(ApiError) as ctx:
            self._approve(db, request, instance, MANAGER, apply_mock, bus)
        self.assertEqual(ctx.exception.status_code, 403)

        second = self._approve(db, request, instance, HR, apply_mock, bus)

        self.assertEqual(second.status, RequestStatus.APPROVED)
        self.assertEqual(second.version, 2)
        self.assertEqual(instance.version, 2)
        self.assertEqual(request.status, RequestStatus.APPROVED)
        self.assertEqual(request.resolved_by, "hr-1")
        self.assertIs(second.record, record)
        self.assertEqual(calls, ["req-1"])
        self.assertEqual([name for name, _ in bus.published][0], EVENT_RESOLVED)

        audit = db.audit_rows()
        self.assertEqual([(row.from_version, row.to_version) for row in audit], [(0, 1), (1, 2)])
        self.assertEqual(audit[-1].details["final"], True)

        with self.assertRaises(ApiError) as ctx:
            self._approve(db, request, instance, HR, apply_mock, bus)
        self.assertEqual(ctx.exception.code, "INVALID_STATUS")
        self.assertEqual(calls, ["req-1"])

    def test_concurrent_version_change_is_rejected(self) -> None:
        request, instance = _two_step_request()
        db = _FakeDB(rowcount=0)

        with self.assertRaises(ApiError) as ctx:
            self._approve(db, request, instance, MANAGER, lambda *_: None)

        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(ctx.exception.code, "INVALID_STATE")
        self.assertEqual(db.rollbacks, 1)
        self.assertEqual(instance.version, 0)

    def test_employee_cannot_approve(self) -> None:
        request, instance = _two_step_request()

        with self.assertRaises(ApiError) as ctx:
            self._approve(_FakeDB(), request, instance, EMPLOYEE, lambda *_: None)

        self.assertEqual(ctx.exception.status_code, 403)


class TerminateRequestTests(unittest.TestCase):
    def test_reject_resolves_without_side_effect(self) -> None:
        request, instance = _two_step_request()
        db = _FakeDB()
        bus = _RecordingBus()

        with patch(f"{MODULE}._lock_request", return_value=request), patch(
            f"{MODULE}._lock_instance", return_value=instance
        ), patch(f"{MODULE}._apply_approved_request") as apply_mock:
            outcome = reject_request(
                db,
                request_id="req-1",
                identity=MANAGER,
                capabilities=_capabilities(),
                comment="no",
                events=bus,
            )

        apply_mock.assert_not_called()
        self.assertEqual(outcome.status, RequestStatus.REJECTED)
        self.assertEqual(outcome.version, 1)
        self.assertEqual(request.status, RequestStatus.REJECTED)
        self.assertEqual(db.audit_rows()[0].comment, "no")
        self.assertEqual(bus.published[0][1]["status"], "rejected")

    def test_requester_can_cancel_but_peer_cannot(self) -> None:
        request, instance = _two_step_request()
        peer = Identity(user_id="emp-2", org_id="org-1", role_ids=("attendance_employee",))

        with patch(f"{MODULE}._lock_request", return_value=request), patch(
            f"{MODULE}._lock_instance", return_value=instance
        ):
            with self.assertRaises(ApiError) as ctx:
                cancel_request(_FakeDB(), request_id="req-1", identity=peer, capabilities=_capabilities())
            outcome = cancel_request(_FakeDB(), request_id="req-1", identity=EMPLOYEE, capabilities=_capabilities())

        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(outcome.status, RequestStatus.CANCELLED)
        self.assertEqual(request.resolved_by, "emp-1")


CONTEXT = WorkContext(
    schedule=ScheduleRule(
        timezone="UTC",
        work_start="09:00",
        work_end="18:00",
        late_grace_minutes=10,
        early_grace_minutes=10,
        rounding_minutes=5,
        working_weekdays=frozenset({1, 2, 3, 4, 5}),
    ),
    is_working_day=True,
    source="rule",
)


def _utc(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute, tzinfo=timezone.utc)


class _ApplyDB:
    def __init__(self, *, approved_total: int = 0):
        self.approved_total = approved_total
        self.added: list[object] = []
        self.flush_count = 0

    def scalar(self, _statement):  # type: ignore[no-untyped-def]
        return self.approved_total

    def add(self, obj: object) -> None:
        self.added.append(obj)

    def flush(self) -> None:
        self.flush_count += 1

    def adjustment_events(self) -> list[AttendanceEvent]:
        return [item for item in self.added if isinstance(item, AttendanceEvent)]


def _daily_record(**values) -> AttendanceRecord:  # type: ignore[no-untyped-def]
    base = {
        "id": "rec-1",
        "user_id": "emp-1",
        "org_id": "org-1",
        "work_date": WORK_DATE,
        "timezone": "UTC",
        "status": AttendanceStatus.ABSENT,
        "work_minutes": 0,
        "late_minutes": 0,
        "early_leave_minutes": 0,
        "meta": {},
    }
    base.update(values)
    return AttendanceRecord(**base)


def _approved(request_type: RequestType, **values) -> AttendanceRequest:  # type: ignore[no-untyped-def]
    base = {
        "id": "req-9",
        "user_id": "emp-1",
        "org_id": "org-1",
        "work_date": WORK_DATE,
        "request_type": request_type,
        "status": RequestStatus.APPROVED,
        "meta": {"requester_role_ids": ["attendance_employee"]},
    }
    base.update(values)
    return AttendanceRequest(**base)


class ApplyApprovedRequestTests(unittest.TestCase):
    def _apply(self, db, request, record, *, context=CONTEXT, rule_set=None):  # type: ignore[no-untyped-def]
        with patch(f"{MODULE}.resolve_work_context", return_value=context), patch(
            f"{MODULE}.load_rule_set", return_value=rule_set
        ), patch(f"{MODULE}.lock_record", return_value=record), patch(
            "attendance_core.services.reconciler.lock_record", return_value=record
        ):
            return _apply_approved_request(db, request)

    def test_missed_check_out_keeps_existing_check_in(self) -> None:
        db = _ApplyDB()
        record = _daily_record(first_in_at=_utc(9, 12), status=AttendanceStatus.PARTIAL)
        request = _approved(RequestType.MISSED_CHECK_OUT, requested_out_at=_utc(18))

        result = self._apply(db, request, record)

        self.assertIs(result, record)
        self.assertEqual((record.first_in_at, record.last_out_at), (_utc(9, 12), _utc(18)))
        self.assertEqual(record.status, AttendanceStatus.LATE)
        self.assertEqual(record.late_minutes, 2)
        self.assertEqual(record.meta["last_mode"], "override")
        self.assertEqual(record.meta["last_request_id"], "req-9")

        events = db.adjustment_events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].event_type, AttendanceEventType.ADJUSTMENT)
        self.assertEqual(events[0].source, "request")
        self.assertEqual(events[0].meta["request_id"], "req-9")
        self.assertEqual(events[0].meta["requested_out_at"], _utc(18).isoformat())

    def test_leave_uses_sum_of_approved_minutes_and_forces_adjusted(self) -> None:
        db = _ApplyDB(approved_total=240)
        record = _daily_record(first_in_at=_utc(9), last_out_at=_utc(13), meta={"overtime_minutes": 15})
        request = _approved(RequestType.LEAVE, minutes=120)

        self._apply(db, request, record)

        self.assertEqual(record.status, AttendanceStatus.ADJUSTED)
        self.assertEqual(record.meta["leave_minutes"], 240)
        self.assertEqual(record.meta["overtime_minutes"], 15)
        self.assertEqual(record.meta["last_mode"], "merge")
        self.assertEqual((record.first_in_at, record.last_out_at), (_utc(9), _utc(13)))
        self.assertEqual(db.adjustment_events()[0].meta["minutes"], 120)

    def test_overtime_on_day_off_forces_off(self) -> None:
        db = _ApplyDB(approved_total=90)
        record = _daily_record()
        request = _approved(RequestType.OVERTIME, minutes=90)

        self._apply(db, request, record, context=replace(CONTEXT, is_working_day=False))

        self.assertEqual(record.status, AttendanceStatus.OFF)
        self.assertEqual(record.meta["overtime_minutes"], 90)
        self.assertFalse(record.is_workday)

    def test_org_rule_set_applied_to_side_effect(self) -> None:
        rule_set = compile_rule_set(
            {
                "policies": {
                    "rules": [
                        {
                            "name": "employee-bonus",
                            "when": {"fields_exist": ["role_tags"]},
                            "then": {"add_overtime_minutes": 30},
                        }
                    ]
                }
            },
            rule_set_id="rs-1",
        )
        db = _ApplyDB(approved_total=60)
        record = _daily_record(meta={"engine": {"applied_rules": ["stale"]}})
        request = _approved(RequestType.OVERTIME, minutes=60)

        self._apply(db, request, record, rule_set=rule_set)
        self._apply(db, request, record, rule_set=rule_set)

        self.assertEqual(record.meta["base_overtime_minutes"], 60)
        self.assertEqual(record.meta["overtime_minutes"], 90)
        self.assertEqual(record.meta["policy"]["applied_rules"], ["employee-bonus"])
        self.assertEqual(record.meta["rule_set"]["id"], "rs-1")
        self.assertNotIn("engine", record.meta)

        without_roles = _daily_record()
        no_roles_request = _approved(RequestType.OVERTIME, minutes=60, meta={})
        self._apply(_ApplyDB(approved_total=60), no_roles_request, without_roles, rule_set=rule_set)
        self.assertEqual(without_roles.meta["overtime_minutes"], 60)


class CreateRequestTests(unittest.TestCase):
    def test_missing_timestamp_rejected_before_store(self) -> None:
        payload = AttendanceRequestCreate(work_date=WORK_DATE, request_type=RequestType.MISSED_CHECK_IN)

        with self.assertRaises(ApiError) as ctx:
            create_attendance_request(_FakeDB(), user_id="emp-1", org_id="org-1", payload=payload)

        self.assertEqual(ctx.exception.status_code, 422)

    def test_leave_requires_positive_minutes(self) -> None:
        payload = AttendanceRequestCreate(work_date=WORK_DATE, request_type=RequestType.LEAVE, leave_type_id="lt-1")

        with self.assertRaises(ApiError):
            create_attendance_request(_FakeDB(), user_id="emp-1", org_id="org-1", payload=payload)

    def test_creates_pending_request_with_flow_snapshot(self) -> None:
        flow = ApprovalFlow(
            id="flow-1",
            org_id="org-1",
            name="managers",
            steps=[{"name": "manager", "approverRoleIds": ["attendance_approver"]}],
            is_active=True,
        )
        payload = AttendanceRequestCreate(
            work_date=WORK_DATE,
            request_type=RequestType.MISSED_CHECK_IN,
            requested_in_at=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc),
            reason="forgot",
        )
        db = _FakeDB()
        bus = _RecordingBus()

        with patch(f"{MODULE}._select_flow", return_value=flow):
            request = create_attendance_request(
                db,
                user_id="emp-1",
                org_id="org-1",
                payload=payload,
                role_ids=EMPLOYEE.role_ids,
                events=bus,
            )

        instances = [item for item in db.added if isinstance(item, ApprovalInstance)]
        self.assertEqual(len(instances), 1)
        self.assertTrue(instances[0].id.startswith("apv_"))
        self.assertEqual(instances[0].version, 0)
        self.assertEqual(request.status, RequestStatus.PENDING)
        self.assertEqual(request.approval_instance_id, instances[0].id)
        self.assertEqual(request.meta["approval_flow"]["steps"][0]["approver_role_ids"], ["attendance_approver"])
        self.assertEqual(request.meta["requester_role_ids"], ["attendance_employee"])
        self.assertEqual(db.audit_rows()[0].action, "submit")
        self.assertEqual(db.commits, 1)
        self.assertEqual(bus.published[0][0], EVENT_REQUESTED)


if __name__ == "__main__":
    unittest.main()
