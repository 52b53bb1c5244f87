from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from unittest.mock import patch

from attendance_core.models import AutoAbsenceRun
from attendance_core.services.auto_absence import (
    generate_absences_for_date,
    is_due,
    run_auto_absence,
    run_auto_absence_if_due,
)
from attendance_core.services.metrics import builtin_schedule
from attendance_core.services.registry import EVENT_ABSENCE_GENERATED
from attendance_core.services.settings_cache import AttendanceSettings, AutoAbsenceSettings
from attendance_core.services.work_context import WorkContext

MODULE = "attendance_core.services.auto_absence"
WORK_DATE = date(2026, 3, 2)


class _FakeDB:
    def __init__(self) -> None:
        self.runs: dict[int, AutoAbsenceRun] = {}
        self.commits = 0
        self.rollbacks = 0

    def get(self, model, pk):  # type: ignore[no-untyped-def]
        return self.runs.get(pk) if model is AutoAbsenceRun else None

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1


class _RecordingBus:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    def publish(self, event_name: str, payload: dict) -> None:
        self.published.append((event_name, payload))


def _context(is_working_day: bool) -> WorkContext:
    return WorkContext(schedule=builtin_schedule(), is_working_day=is_working_day, source="rule")


class IsDueTests(unittest.TestCase):
    def test_compares_local_minutes(self) -> None:
        now = datetime(2026, 3, 2, 21, 30, tzinfo=timezone.utc)
        self.assertTrue(is_due(now, "00:15", "Europe/Istanbul"))
        self.assertFalse(is_due(now, "22:00", "UTC"))
        self.assertTrue(is_due(now, "21:30", "UTC"))

    def test_bad_run_at_is_never_due(self) -> None:
        self.assertFalse(is_due(datetime(2026, 3, 2, 23, 0, tzinfo=timezone.utc), "late", "UTC"))


class GenerateAbsencesTests(unittest.TestCase):
    def test_skips_existing_records_and_off_days(self) -> None:
        db = _FakeDB()
        db.runs[7] = AutoAbsenceRun(id=7, org_id="org-1", work_date=WORK_DATE, created_count=0)
        contexts = {"u-2": _context(False), "u-3": _context(True)}

        with patch(f"{MODULE}._claim_run", return_value=7), patch(
            f"{MODULE}._users_with_records", return_value={"u-1"}
        ), patch(f"{MODULE}.absence_candidates", return_value=["u-1", "u-2", "u-3"]), patch(
            f"{MODULE}.resolve_work_context", side_effect=lambda _db, *, user_id, **_: contexts[user_id]
        ), patch(f"{MODULE}.reconcile_record") as reconcile:
            created = generate_absences_for_date(
                db,  # type: ignore[arg-type]
                org_id="org-1",
                work_date=WORK_DATE,
                default_schedule=builtin_schedule(),
            )

        self.assertEqual(created, ["u-3"])
        reconcile.assert_called_once()
        self.assertEqual(reconcile.call_args.kwargs["user_id"], "u-3")
        self.assertIsNone(reconcile.call_args.kwargs.get("first_in"))
        self.assertEqual(reconcile.call_args.kwargs["meta"], {"source": "auto_absence"})
        self.assertEqual(db.runs[7].created_count, 1)
        self.assertEqual(db.commits, 1)

    def test_already_claimed_date_does_nothing(self) -> None:
        db = _FakeDB()

        with patch(f"{MODULE}._claim_run", return_value=None), patch(
            f"{MODULE}.absence_candidates"
        ) as candidates, patch(f"{MODULE}.reconcile_record") as reconcile:
            created = generate_absences_for_date(
                db,  # type: ignore[arg-type]
                org_id="org-1",
                work_date=WORK_DATE,
                default_schedule=builtin_schedule(),
            )

        self.assertIsNone(created)
        candidates.assert_not_called()
        reconcile.assert_not_called()


class RunAutoAbsenceTests(unittest.TestCase):
    def test_lookback_dates_and_events(self) -> None:
        bus = _RecordingBus()
        outcomes = {date(2026, 3, 2): ["u-3"], date(2026, 3, 1): None}
        seen: list[date] = []

        def generate(_db, *, org_id, work_date, default_schedule):  # type: ignore[no-untyped-def]
            seen.append(work_date)
            return outcomes[work_date]

        with patch(f"{MODULE}.list_org_ids", return_value=["org-1"]), patch(
            f"{MODULE}.load_default_schedule", return_value=builtin_schedule()
        ), patch(f"{MODULE}.generate_absences_for_date", side_effect=generate):
            results = run_auto_absence(
                object(),  # type: ignore[arg-type]
                lookback_days=2,
                now=datetime(2026, 3, 3, 0, 30, tzinfo=timezone.utc),
                events=bus,
            )

        self.assertEqual(seen, [date(2026, 3, 2), date(2026, 3, 1)])
        self.assertEqual(results, [{"org_id": "org-1", "work_date": "2026-03-02", "total": 1}])
        self.assertEqual(bus.published, [(EVENT_ABSENCE_GENERATED, {**results[0], "user_ids": ["u-3"]})])

    def test_disabled_does_not_open_session(self) -> None:
        def factory():  # type: ignore[no-untyped-def]
            raise AssertionError("session opened")

        results = run_auto_absence_if_due(
            factory,
            settings_provider=AttendanceSettings,
            now=datetime(2026, 3, 3, 1, 0, tzinfo=timezone.utc),
        )

        self.assertEqual(results, [])

    def test_not_yet_due_does_not_open_session(self) -> None:
        def factory():  # type: ignore[no-untyped-def]
            raise AssertionError("session opened")

        settings = AttendanceSettings(auto_absence=AutoAbsenceSettings(enabled=True, run_at="23:00"))
        results = run_auto_absence_if_due(
            factory,
            settings_provider=lambda: settings,
            now=datetime(2026, 3, 3, 1, 0, tzinfo=timezone.utc),
        )

        self.assertEqual(results, [])


if __name__ == "__main__":
    unittest.main()
