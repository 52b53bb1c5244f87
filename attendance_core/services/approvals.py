from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging
from typing import Any, Mapping, Sequence
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from attendance_core.audit import log_approval_transition
from attendance_core.db import atomic, store_errors
from attendance_core.errors import (
    FORBIDDEN,
    INVALID_STATE,
    INVALID_STATUS,
    NOT_FOUND,
    VALIDATION_ERROR,
    ApiError,
)
from attendance_core.models import (
    PUNCH_REQUEST_TYPES,
    ApprovalFlow,
    ApprovalInstance,
    AttendanceEvent,
    AttendanceEventType,
    AttendanceRecord,
    AttendanceRequest,
    AttendanceStatus,
    RequestStatus,
    RequestType,
)
from attendance_core.schemas import AttendanceRequestCreate
from attendance_core.services.attendance import record_payload, validate_date_range
from attendance_core.services.leave_overtime import (
    get_active_leave_type,
    get_active_overtime_rule,
    resolve_overtime_minutes,
)
from attendance_core.services.permissions import CAP_APPROVE, CAP_WRITE, CapabilityService, Identity
from attendance_core.services.reconciler import MetricsOverride, ReconcileMode, lock_record, reconcile_record
from attendance_core.services.registry import EVENT_RECORD_UPDATED, EVENT_REQUESTED, EVENT_RESOLVED, EventBus
from attendance_core.services.rule_sets import RuleSetAdjuster, load_rule_set
from attendance_core.services.work_context import WorkContext, resolve_work_context

logger = logging.getLogger("attendance_core.approvals")


@dataclass
class ApprovalOutcome:
    request: AttendanceRequest
    status: RequestStatus
    version: int
    current_step: int
    total_steps: int
    record: AttendanceRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request": self.request,
            "status": self.status,
            "version": self.version,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "record": self.record,
        }


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item or "").strip()]


def normalize_steps(raw_steps: Any) -> list[dict[str, Any]]:
    steps: list[dict[str, Any]] = []
    if not isinstance(raw_steps, list):
        return steps
    for index, raw in enumerate(raw_steps):
        if not isinstance(raw, Mapping):
            continue
        steps.append(
            {
                "name": str(raw.get("name") or f"step-{index + 1}"),
                "approver_user_ids": _string_list(raw.get("approver_user_ids", raw.get("approverUserIds"))),
                "approver_role_ids": _string_list(raw.get("approver_role_ids", raw.get("approverRoleIds"))),
            }
        )
    return steps


def flow_snapshot(flow: ApprovalFlow | None) -> dict[str, Any]:
    if flow is None:
        return {"flow_id": None, "name": None, "steps": [], "current_step": 0}
    return {
        "flow_id": flow.id,
        "name": flow.name,
        "steps": normalize_steps(flow.steps),
        "current_step": 0,
    }


def can_act_on_step(step: Mapping[str, Any] | None, identity: Identity) -> bool:
    if step is None:
        return True
    user_ids = set(step.get("approver_user_ids") or [])
    role_ids = set(step.get("approver_role_ids") or [])
    if not user_ids and not role_ids:
        return True
    return identity.user_id in user_ids or bool(role_ids & set(identity.role_ids))


def _select_flow(
    db: Session,
    *,
    org_id: str,
    request_type: RequestType,
    approval_flow_id: str | None,
) -> ApprovalFlow | None:
    if approval_flow_id:
        flow = db.get(ApprovalFlow, approval_flow_id)
        if flow is None or flow.org_id != org_id or not flow.is_active:
            raise ApiError(status_code=404, code=NOT_FOUND, message="Approval flow not found.")
        return flow

    flows = db.scalars(
        select(ApprovalFlow)
        .where(
            ApprovalFlow.org_id == org_id,
            ApprovalFlow.is_active.is_(True),
            or_(ApprovalFlow.request_type == request_type.value, ApprovalFlow.request_type.is_(None)),
        )
        .order_by(ApprovalFlow.updated_at.desc())
    ).all()
    for flow in flows:
        if flow.request_type == request_type.value:
            return flow
    return flows[0] if flows else None


def _validate_punch_request(payload: AttendanceRequestCreate) -> None:
    if payload.request_type == RequestType.MISSED_CHECK_IN and payload.requested_in_at is None:
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message="requested_in_at is required.")
    if payload.request_type == RequestType.MISSED_CHECK_OUT and payload.requested_out_at is None:
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message="requested_out_at is required.")
    if (
        payload.request_type == RequestType.TIME_CORRECTION
        and payload.requested_in_at is None
        and payload.requested_out_at is None
    ):
        raise ApiError(
            status_code=422,
            code=VALIDATION_ERROR,
            message="time_correction requires requested_in_at or requested_out_at.",
        )


def create_attendance_request(
    db: Session,
    *,
    user_id: str,
    org_id: str,
    payload: AttendanceRequestCreate,
    role_ids: Sequence[str] = (),
    events: EventBus | None = None,
) -> AttendanceRequest:
    request_type = payload.request_type
    if request_type in PUNCH_REQUEST_TYPES:
        _validate_punch_request(payload)
    elif not payload.minutes or payload.minutes <= 0:
        raise ApiError(status_code=422, code=VALIDATION_ERROR, message="minutes must be positive.")

    with atomic(db):
        meta: dict[str, Any] = {}
        minutes: int | None = None
        leave_type_id: str | None = None
        overtime_rule_id: str | None = None

        if request_type == RequestType.LEAVE:
            leave_type = get_active_leave_type(db, org_id=org_id, leave_type_id=payload.leave_type_id)
            leave_type_id = leave_type.id
            minutes = int(payload.minutes or 0)
            meta["leave_type_code"] = leave_type.code
        elif request_type == RequestType.OVERTIME:
            rule = get_active_overtime_rule(db, org_id=org_id, overtime_rule_id=payload.overtime_rule_id)
            overtime_rule_id = rule.id
            minutes = resolve_overtime_minutes(rule, int(payload.minutes or 0))
            if minutes <= 0:
                raise ApiError(status_code=422, code=VALIDATION_ERROR, message="Overtime minutes resolve to zero.")
            meta["requested_minutes"] = int(payload.minutes or 0)
        if minutes is not None:
            meta["resolved_minutes"] = minutes

        flow = _select_flow(
            db,
            org_id=org_id,
            request_type=request_type,
            approval_flow_id=payload.approval_flow_id,
        )
        meta["approval_flow"] = flow_snapshot(flow)
        meta["requester_role_ids"] = list(role_ids)

        instance = ApprovalInstance(id=f"apv_{uuid4()}", status=RequestStatus.PENDING, version=0)
        db.add(instance)
        db.flush()

        request = AttendanceRequest(
            user_id=user_id,
            org_id=org_id,
            work_date=payload.work_date,
            request_type=request_type,
            requested_in_at=payload.requested_in_at,
            requested_out_at=payload.requested_out_at,
            reason=payload.reason,
            status=RequestStatus.PENDING,
            approval_instance_id=instance.id,
            leave_type_id=leave_type_id,
            overtime_rule_id=overtime_rule_id,
            minutes=minutes,
            meta=meta,
        )
        db.add(request)
        db.flush()

        log_approval_transition(
            db,
            instance_id=instance.id,
            action="submit",
            actor_id=user_id,
            from_status=RequestStatus.PENDING.value,
            to_status=RequestStatus.PENDING.value,
            from_version=0,
            to_version=0,
            details={"request_id": request.id, "request_type": request_type.value},
        )

    if events is not None:
        events.publish(
            EVENT_REQUESTED,
            {
                "request_id": request.id,
                "user_id": user_id,
                "org_id": org_id,
                "work_date": request.work_date.isoformat(),
                "request_type": request_type.value,
            },
        )
    return request


def _lock_request(db: Session, *, request_id: str, org_id: str) -> AttendanceRequest:
    request = db.scalar(
        select(AttendanceRequest)
        .where(AttendanceRequest.id == request_id, AttendanceRequest.org_id == org_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if request is None:
        raise ApiError(status_code=404, code=NOT_FOUND, message="Attendance request not found.")
    return request


def _lock_instance(db: Session, instance_id: str | None) -> ApprovalInstance:
    instance = None
    if instance_id:
        instance = db.scalar(
            select(ApprovalInstance)
            .where(ApprovalInstance.id == instance_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    if instance is None:
        raise ApiError(status_code=409, code=INVALID_STATE, message="Approval instance missing.")
    return instance


def _bump_version(db: Session, instance: ApprovalInstance, *, to_status: RequestStatus) -> int:
    """Conditional write keyed on the version read under lock."""
    expected = instance.version
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(ApprovalInstance)
        .where(ApprovalInstance.id == instance.id, ApprovalInstance.version == expected)
        .values(version=expected + 1, status=to_status, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ApiError(status_code=409, code=INVALID_STATE, message="Approval was modified concurrently.")
    set_committed_value(instance, "version", expected + 1)
    set_committed_value(instance, "status", to_status)
    set_committed_value(instance, "updated_at", now)
    return expected + 1


def _begin_transition(db: Session, *, request_id: str, org_id: str) -> tuple[AttendanceRequest, ApprovalInstance]:
    request = _lock_request(db, request_id=request_id, org_id=org_id)
    instance = _lock_instance(db, request.approval_instance_id)
    if request.status != RequestStatus.PENDING or instance.status != RequestStatus.PENDING:
        raise ApiError(
            status_code=409,
            code=INVALID_STATUS,
            message=f"Request is already {request.status.value}.",
        )
    return request, instance


def _flow(request: AttendanceRequest) -> tuple[dict[str, Any], list[dict[str, Any]], int]:
    flow = dict((request.meta or {}).get("approval_flow") or {})
    steps = flow.get("steps") if isinstance(flow.get("steps"), list) else []
    try:
        current = max(0, int(flow.get("current_step") or 0))
    except (TypeError, ValueError):
        current = 0
    return flow, steps, current


def _resolve(request: AttendanceRequest, *, status: RequestStatus, actor_id: str) -> None:
    request.status = status
    request.resolved_by = actor_id
    request.resolved_at = datetime.now(timezone.utc)


def _approved_minutes(
    db: Session,
    *,
    user_id: str,
    org_id: str,
    work_date: date,
    request_type: RequestType,
) -> int:
    total = db.scalar(
        select(func.coalesce(func.sum(AttendanceRequest.minutes), 0)).where(
            AttendanceRequest.user_id == user_id,
            AttendanceRequest.org_id == org_id,
            AttendanceRequest.work_date == work_date,
            AttendanceRequest.request_type == request_type,
            AttendanceRequest.status == RequestStatus.APPROVED,
        )
    )
    return int(total or 0)


def _request_adjuster(db: Session, request: AttendanceRequest, context: WorkContext) -> RuleSetAdjuster | None:
    rule_set = load_rule_set(db, org_id=request.org_id)
    if rule_set is None or rule_set.is_empty:
        return None
    return RuleSetAdjuster(
        rule_set,
        user_id=request.user_id,
        work_date=request.work_date,
        context=context,
        profile={"role_tags": _string_list((request.meta or {}).get("requester_role_ids"))},
    )


def _apply_approved_request(db: Session, request: AttendanceRequest) -> AttendanceRecord:
    context = resolve_work_context(
        db,
        org_id=request.org_id,
        user_id=request.user_id,
        work_date=request.work_date,
    )
    adjust = _request_adjuster(db, request, context)
    request_meta = {"last_request_id": request.id}

    if request.request_type in PUNCH_REQUEST_TYPES:
        existing = lock_record(
            db,
            user_id=request.user_id,
            org_id=request.org_id,
            work_date=request.work_date,
            timezone_name=context.schedule.timezone,
        )
        record = reconcile_record(
            db,
            user_id=request.user_id,
            org_id=request.org_id,
            work_date=request.work_date,
            context=context,
            first_in=request.requested_in_at or existing.first_in_at,
            last_out=request.requested_out_at or existing.last_out_at,
            mode=ReconcileMode.OVERRIDE,
            adjust=adjust,
            meta=request_meta,
        )
    else:
        leave_minutes = overtime_minutes = None
        if request.request_type == RequestType.LEAVE:
            leave_minutes = _approved_minutes(
                db,
                user_id=request.user_id,
                org_id=request.org_id,
                work_date=request.work_date,
                request_type=RequestType.LEAVE,
            )
        else:
            overtime_minutes = _approved_minutes(
                db,
                user_id=request.user_id,
                org_id=request.org_id,
                work_date=request.work_date,
                request_type=RequestType.OVERTIME,
            )
        forced = AttendanceStatus.ADJUSTED if context.is_working_day else AttendanceStatus.OFF
        record = reconcile_record(
            db,
            user_id=request.user_id,
            org_id=request.org_id,
            work_date=request.work_date,
            context=context,
            mode=ReconcileMode.MERGE,
            leave_minutes=leave_minutes,
            overtime_minutes=overtime_minutes,
            override=MetricsOverride(status=forced),
            adjust=adjust,
            meta=request_meta,
        )

    db.add(
        AttendanceEvent(
            id=str(uuid4()),
            user_id=request.user_id,
            org_id=request.org_id,
            work_date=request.work_date,
            occurred_at=datetime.now(timezone.utc),
            event_type=AttendanceEventType.ADJUSTMENT,
            source="request",
            timezone=context.schedule.timezone,
            location={},
            meta={
                "request_id": request.id,
                "request_type": request.request_type.value,
                "requested_in_at": request.requested_in_at.isoformat() if request.requested_in_at else None,
                "requested_out_at": request.requested_out_at.isoformat() if request.requested_out_at else None,
                "minutes": request.minutes,
            },
        )
    )
    return record


def _publish_resolution(events: EventBus | None, outcome: ApprovalOutcome, *, actor_id: str) -> None:
    if events is None:
        return
    request = outcome.request
    events.publish(
        EVENT_RESOLVED,
        {
            "request_id": request.id,
            "user_id": request.user_id,
            "org_id": request.org_id,
            "status": outcome.status.value,
            "actor_id": actor_id,
        },
    )
    if outcome.record is not None:
        events.publish(EVENT_RECORD_UPDATED, record_payload(outcome.record))


def approve_request(
    db: Session,
    *,
    request_id: str,
    identity: Identity,
    capabilities: CapabilityService,
    comment: str | None = None,
    events: EventBus | None = None,
) -> ApprovalOutcome:
    capabilities.require_capability(identity, CAP_APPROVE)

    with atomic(db):
        request, instance = _begin_transition(db, request_id=request_id, org_id=identity.org_id)
        flow, steps, current = _flow(request)
        step = steps[current] if current < len(steps) else None
        if not can_act_on_step(step, identity):
            raise ApiError(status_code=403, code=FORBIDDEN, message="Not an approver for the current step.")

        is_final = current >= len(steps) - 1
        from_version = instance.version
        to_status = RequestStatus.APPROVED if is_final else RequestStatus.PENDING
        to_version = _bump_version(db, instance, to_status=to_status)

        next_step = current if is_final else current + 1
        request.meta = {**(request.meta or {}), "approval_flow": {**flow, "current_step": next_step}}

        record = None
        if is_final:
            _resolve(request, status=RequestStatus.APPROVED, actor_id=identity.user_id)
            db.flush()
            record = _apply_approved_request(db, request)

        log_approval_transition(
            db,
            instance_id=instance.id,
            action="approve",
            actor_id=identity.user_id,
            comment=comment,
            from_status=RequestStatus.PENDING.value,
            to_status=to_status.value,
            from_version=from_version,
            to_version=to_version,
            details={
                "request_id": request.id,
                "step_index": current,
                "step_name": step.get("name") if step else None,
                "total_steps": len(steps),
                "final": is_final,
            },
        )

    outcome = ApprovalOutcome(
        request=request,
        status=to_status,
        version=to_version,
        current_step=next_step,
        total_steps=len(steps),
        record=record,
    )
    if is_final:
        _publish_resolution(events, outcome, actor_id=identity.user_id)
    return outcome


def _terminate(
    db: Session,
    *,
    request_id: str,
    identity: Identity,
    to_status: RequestStatus,
    action: str,
    comment: str | None,
    capabilities: CapabilityService,
) -> ApprovalOutcome:
    with atomic(db):
        request, instance = _begin_transition(db, request_id=request_id, org_id=identity.org_id)
        if action == "cancel" and request.user_id != identity.user_id:
            if not capabilities.has_capability(identity, CAP_APPROVE):
                raise ApiError(status_code=403, code=FORBIDDEN, message="Only the requester or an approver can cancel.")

        _, steps, current = _flow(request)
        from_version = instance.version
        to_version = _bump_version(db, instance, to_status=to_status)
        _resolve(request, status=to_status, actor_id=identity.user_id)
        log_approval_transition(
            db,
            instance_id=instance.id,
            action=action,
            actor_id=identity.user_id,
            comment=comment,
            from_status=RequestStatus.PENDING.value,
            to_status=to_status.value,
            from_version=from_version,
            to_version=to_version,
            details={"request_id": request.id, "step_index": current, "total_steps": len(steps)},
        )

    return ApprovalOutcome(
        request=request,
        status=to_status,
        version=to_version,
        current_step=current,
        total_steps=len(steps),
    )


def reject_request(
    db: Session,
    *,
    request_id: str,
    identity: Identity,
    capabilities: CapabilityService,
    comment: str | None = None,
    events: EventBus | None = None,
) -> ApprovalOutcome:
    capabilities.require_capability(identity, CAP_APPROVE)
    outcome = _terminate(
        db,
        request_id=request_id,
        identity=identity,
        to_status=RequestStatus.REJECTED,
        action="reject",
        comment=comment,
        capabilities=capabilities,
    )
    _publish_resolution(events, outcome, actor_id=identity.user_id)
    return outcome


def cancel_request(
    db: Session,
    *,
    request_id: str,
    identity: Identity,
    capabilities: CapabilityService,
    comment: str | None = None,
    events: EventBus | None = None,
) -> ApprovalOutcome:
    capabilities.require_capability(identity, CAP_WRITE)
    outcome = _terminate(
        db,
        request_id=request_id,
        identity=identity,
        to_status=RequestStatus.CANCELLED,
        action="cancel",
        comment=comment,
        capabilities=capabilities,
    )
    _publish_resolution(events, outcome, actor_id=identity.user_id)
    return outcome


def list_requests(
    db: Session,
    *,
    org_id: str,
    user_id: str | None = None,
    status: RequestStatus | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
    limit: int = 200,
) -> list[AttendanceRequest]:
    if from_date is not None and to_date is not None:
        validate_date_range(from_date, to_date)
    stmt = select(AttendanceRequest).where(AttendanceRequest.org_id == org_id)
    if user_id is not None:
        stmt = stmt.where(AttendanceRequest.user_id == user_id)
    if status is not None:
        stmt = stmt.where(AttendanceRequest.status == status)
    if from_date is not None:
        stmt = stmt.where(AttendanceRequest.work_date >= from_date)
    if to_date is not None:
        stmt = stmt.where(AttendanceRequest.work_date <= to_date)
    stmt = stmt.order_by(AttendanceRequest.created_at.desc()).limit(max(1, min(limit, 1000)))
    with store_errors():
        return list(db.scalars(stmt).all())
