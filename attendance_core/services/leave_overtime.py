from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendance_core.db import atomic, store_errors
from attendance_core.errors import ALREADY_EXISTS, NOT_FOUND, VALIDATION_ERROR, ApiError
from attendance_core.models import LeaveType, OvertimeRule
from attendance_core.services.metrics import round_overtime_minutes

logger = logging.getLogger("attendance_core.leave_overtime")


def create_leave_type(
    db: Session,
    *,
    org_id: str,
    code: str,
    name: str,
    requires_approval: bool = True,
) -> LeaveType:
    code = code.strip()
    if not code or not name.strip():
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message="Leave type code and name are required.")

    with atomic(db):
        existing = db.scalar(select(LeaveType).where(LeaveType.org_id == org_id, LeaveType.code == code))
        if existing is not None:
            raise ApiError(status_code=409, code=ALREADY_EXISTS, message=f"Leave type code already exists: {code}")
        leave_type = LeaveType(org_id=org_id, code=code, name=name.strip(), requires_approval=requires_approval)
        db.add(leave_type)
        try:
            db.flush()
        except IntegrityError as exc:
            raise ApiError(
                status_code=409,
                code=ALREADY_EXISTS,
                message=f"Leave type code already exists: {code}",
            ) from exc

    logger.info("leave_type_created", extra={"org_id": org_id, "leave_type_id": leave_type.id, "code": code})
    return leave_type


def create_overtime_rule(
    db: Session,
    *,
    org_id: str,
    name: str,
    min_minutes: int = 0,
    rounding_minutes: int = 15,
    max_minutes_per_day: int = 600,
) -> OvertimeRule:
    if min_minutes < 0 or rounding_minutes < 0 or max_minutes_per_day < 0:
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message="Overtime limits must be non-negative.")
    if max_minutes_per_day and min_minutes > max_minutes_per_day:
        raise ApiError(
            status_code=422,
            code=VALIDATION_ERROR,
            message="min_minutes cannot exceed max_minutes_per_day.",
        )

    with atomic(db):
        existing = db.scalar(select(OvertimeRule).where(OvertimeRule.org_id == org_id, OvertimeRule.name == name))
        if existing is not None:
            raise ApiError(status_code=409, code=ALREADY_EXISTS, message=f"Overtime rule already exists: {name}")
        rule = OvertimeRule(
            org_id=org_id,
            name=name,
            min_minutes=min_minutes,
            rounding_minutes=rounding_minutes,
            max_minutes_per_day=max_minutes_per_day,
        )
        db.add(rule)
        try:
            db.flush()
        except IntegrityError as exc:
            raise ApiError(status_code=409, code=ALREADY_EXISTS, message=f"Overtime rule already exists: {name}") from exc

    return rule


def get_active_leave_type(db: Session, *, org_id: str, leave_type_id: str | None) -> LeaveType:
    if not leave_type_id:
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message="leave_type_id is required.")
    with store_errors():
        leave_type = db.get(LeaveType, leave_type_id)
    if leave_type is None or leave_type.org_id != org_id or not leave_type.is_active:
        raise ApiError(status_code=404, code=NOT_FOUND, message="Leave type not found.")
    return leave_type


def get_active_overtime_rule(db: Session, *, org_id: str, overtime_rule_id: str | None) -> OvertimeRule:
    if not overtime_rule_id:
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message="overtime_rule_id is required.")
    with store_errors():
        rule = db.get(OvertimeRule, overtime_rule_id)
    if rule is None or rule.org_id != org_id or not rule.is_active:
        raise ApiError(status_code=404, code=NOT_FOUND, message="Overtime rule not found.")
    return rule


def resolve_overtime_minutes(rule: OvertimeRule, minutes: int) -> int:
    return round_overtime_minutes(
        minutes,
        min_minutes=rule.min_minutes,
        rounding_minutes=rule.rounding_minutes,
        max_minutes=rule.max_minutes_per_day or None,
    )
