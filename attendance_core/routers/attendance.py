from datetime import date

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from attendance_core.db import get_db
from attendance_core.models import RequestStatus
from attendance_core.schemas import (
    ApprovalOutcomeRead,
    AttendanceEventRead,
    AttendanceRecordRead,
    AttendanceRequestCreate,
    AttendanceRequestRead,
    DefaultRuleRead,
    DefaultRuleUpdate,
    ImportCommitRequest,
    ImportSummaryRead,
    LeaveTypeCreate,
    LeaveTypeRead,
    OvertimeRuleCreate,
    OvertimeRuleRead,
    PunchRequest,
    PunchResponse,
    RecordSummaryRead,
    ResolveRequestBody,
)
from attendance_core.security import (
    get_capabilities,
    get_events,
    get_settings_cache,
    require_capability,
)
from attendance_core.services.approvals import (
    ApprovalOutcome,
    approve_request,
    cancel_request,
    create_attendance_request,
    list_requests,
    reject_request,
)
from attendance_core.services.attendance import list_records, record_punch, summarize_records
from attendance_core.services.imports import commit_import
from attendance_core.services.leave_overtime import create_leave_type, create_overtime_rule
from attendance_core.services.permissions import (
    CAP_ADMIN,
    CAP_APPROVE,
    CAP_READ,
    CAP_WRITE,
    CapabilityService,
    Identity,
)
from attendance_core.services.reconciler import record_export_rows
from attendance_core.services.registry import EventBus
from attendance_core.services.rule_templates import list_builtin_templates
from attendance_core.services.settings_cache import SettingsCache
from attendance_core.services.work_context import load_default_schedule, schedule_from_rule, upsert_default_rule

router = APIRouter(prefix="/api/attendance", tags=["attendance"])


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _target_user(
    identity: Identity,
    user_id: str | None,
    capabilities: CapabilityService,
) -> str:
    if user_id is None or user_id == identity.user_id:
        return identity.user_id
    capabilities.require_capability(identity, CAP_ADMIN)
    return user_id


def _outcome_read(outcome: ApprovalOutcome) -> ApprovalOutcomeRead:
    return ApprovalOutcomeRead(
        request=AttendanceRequestRead.model_validate(outcome.request),
        status=outcome.status,
        version=outcome.version,
        current_step=outcome.current_step,
        total_steps=outcome.total_steps,
        record=AttendanceRecordRead.model_validate(outcome.record) if outcome.record is not None else None,
    )


@router.post("/punch", response_model=PunchResponse, status_code=status.HTTP_201_CREATED)
def punch(
    payload: PunchRequest,
    request: Request,
    identity: Identity = Depends(require_capability(CAP_WRITE)),
    settings_cache: SettingsCache = Depends(get_settings_cache),
    events: EventBus = Depends(get_events),
    db: Session = Depends(get_db),
) -> PunchResponse:
    event, record = record_punch(
        db,
        user_id=identity.user_id,
        org_id=identity.org_id,
        payload=payload,
        settings=settings_cache.get(),
        role_ids=identity.role_ids,
        client_ip=_client_ip(request),
        events=events,
    )
    request.state.event_id = event.id
    return PunchResponse(
        event=AttendanceEventRead.model_validate(event),
        record=AttendanceRecordRead.model_validate(record),
    )


@router.get("/records", response_model=list[AttendanceRecordRead])
def get_records(
    from_date: date = Query(...),
    to_date: date = Query(...),
    user_id: str | None = Query(default=None),
    identity: Identity = Depends(require_capability(CAP_READ)),
    capabilities: CapabilityService = Depends(get_capabilities),
    db: Session = Depends(get_db),
) -> list[AttendanceRecordRead]:
    target = _target_user(identity, user_id, capabilities)
    records = list_records(db, user_id=target, org_id=identity.org_id, from_date=from_date, to_date=to_date)
    return [AttendanceRecordRead.model_validate(item) for item in records]


@router.get("/summary", response_model=RecordSummaryRead)
def get_summary(
    from_date: date = Query(...),
    to_date: date = Query(...),
    user_id: str | None = Query(default=None),
    identity: Identity = Depends(require_capability(CAP_READ)),
    capabilities: CapabilityService = Depends(get_capabilities),
    db: Session = Depends(get_db),
) -> RecordSummaryRead:
    target = _target_user(identity, user_id, capabilities)
    records = list_records(db, user_id=target, org_id=identity.org_id, from_date=from_date, to_date=to_date)
    summary = summarize_records(
        records,
        user_id=target,
        org_id=identity.org_id,
        from_date=from_date,
        to_date=to_date,
    )
    return RecordSummaryRead(**summary)


@router.get("/export")
def export_records(
    from_date: date = Query(...),
    to_date: date = Query(...),
    user_id: str | None = Query(default=None),
    identity: Identity = Depends(require_capability(CAP_READ)),
    capabilities: CapabilityService = Depends(get_capabilities),
    db: Session = Depends(get_db),
) -> dict[str, list]:
    target = _target_user(identity, user_id, capabilities)
    records = list_records(db, user_id=target, org_id=identity.org_id, from_date=from_date, to_date=to_date)
    headers, rows = record_export_rows(records)
    return {"headers": headers, "rows": rows}


@router.post("/requests", response_model=AttendanceRequestRead, status_code=status.HTTP_201_CREATED)
def create_request(
    payload: AttendanceRequestCreate,
    identity: Identity = Depends(require_capability(CAP_WRITE)),
    events: EventBus = Depends(get_events),
    db: Session = Depends(get_db),
) -> AttendanceRequestRead:
    item = create_attendance_request(
        db,
        user_id=identity.user_id,
        org_id=identity.org_id,
        payload=payload,
        role_ids=identity.role_ids,
        events=events,
    )
    return AttendanceRequestRead.model_validate(item)


@router.get("/requests", response_model=list[AttendanceRequestRead])
def get_requests(
    user_id: str | None = Query(default=None),
    request_status: RequestStatus | None = Query(default=None, alias="status"),
    from_date: date | None = Query(default=None),
    to_date: date | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    identity: Identity = Depends(require_capability(CAP_READ)),
    capabilities: CapabilityService = Depends(get_capabilities),
    db: Session = Depends(get_db),
) -> list[AttendanceRequestRead]:
    if capabilities.has_capability(identity, CAP_APPROVE):
        target = user_id
    else:
        target = _target_user(identity, user_id, capabilities)
    items = list_requests(
        db,
        org_id=identity.org_id,
        user_id=target,
        status=request_status,
        from_date=from_date,
        to_date=to_date,
        limit=limit,
    )
    return [AttendanceRequestRead.model_validate(item) for item in items]


@router.post("/requests/{request_id}/approve", response_model=ApprovalOutcomeRead)
def approve(
    request_id: str,
    body: ResolveRequestBody | None = None,
    identity: Identity = Depends(require_capability(CAP_APPROVE)),
    capabilities: CapabilityService = Depends(get_capabilities),
    events: EventBus = Depends(get_events),
    db: Session = Depends(get_db),
) -> ApprovalOutcomeRead:
    outcome = approve_request(
        db,
        request_id=request_id,
        identity=identity,
        capabilities=capabilities,
        comment=body.comment if body else None,
        events=events,
    )
    return _outcome_read(outcome)


@router.post("/requests/{request_id}/reject", response_model=ApprovalOutcomeRead)
def reject(
    request_id: str,
    body: ResolveRequestBody | None = None,
    identity: Identity = Depends(require_capability(CAP_APPROVE)),
    capabilities: CapabilityService = Depends(get_capabilities),
    events: EventBus = Depends(get_events),
    db: Session = Depends(get_db),
) -> ApprovalOutcomeRead:
    outcome = reject_request(
        db,
        request_id=request_id,
        identity=identity,
        capabilities=capabilities,
        comment=body.comment if body else None,
        events=events,
    )
    return _outcome_read(outcome)


@router.post("/requests/{request_id}/cancel", response_model=ApprovalOutcomeRead)
def cancel(
    request_id: str,
    body: ResolveRequestBody | None = None,
    identity: Identity = Depends(require_capability(CAP_WRITE)),
    capabilities: CapabilityService = Depends(get_capabilities),
    events: EventBus = Depends(get_events),
    db: Session = Depends(get_db),
) -> ApprovalOutcomeRead:
    outcome = cancel_request(
        db,
        request_id=request_id,
        identity=identity,
        capabilities=capabilities,
        comment=body.comment if body else None,
        events=events,
    )
    return _outcome_read(outcome)


@router.post("/import/commit", response_model=ImportSummaryRead)
def import_commit(
    payload: ImportCommitRequest,
    identity: Identity = Depends(require_capability(CAP_ADMIN)),
    events: EventBus = Depends(get_events),
    db: Session = Depends(get_db),
) -> ImportSummaryRead:
    summary = commit_import(
        db,
        org_id=identity.org_id,
        actor_id=identity.user_id,
        payload=payload,
        events=events,
    )
    return ImportSummaryRead(**summary)


@router.post("/leave-types", response_model=LeaveTypeRead, status_code=status.HTTP_201_CREATED)
def add_leave_type(
    payload: LeaveTypeCreate,
    identity: Identity = Depends(require_capability(CAP_ADMIN)),
    db: Session = Depends(get_db),
) -> LeaveTypeRead:
    leave_type = create_leave_type(
        db,
        org_id=identity.org_id,
        code=payload.code,
        name=payload.name,
        requires_approval=payload.requires_approval,
    )
    return LeaveTypeRead.model_validate(leave_type)


@router.post("/overtime-rules", response_model=OvertimeRuleRead, status_code=status.HTTP_201_CREATED)
def add_overtime_rule(
    payload: OvertimeRuleCreate,
    identity: Identity = Depends(require_capability(CAP_ADMIN)),
    db: Session = Depends(get_db),
) -> OvertimeRuleRead:
    rule = create_overtime_rule(
        db,
        org_id=identity.org_id,
        name=payload.name,
        min_minutes=payload.min_minutes,
        rounding_minutes=payload.rounding_minutes,
        max_minutes_per_day=payload.max_minutes_per_day,
    )
    return OvertimeRuleRead.model_validate(rule)


@router.get("/rule-templates", dependencies=[Depends(require_capability(CAP_ADMIN))])
def get_rule_templates() -> list[dict]:
    return list_builtin_templates()


@router.get("/rules/default", response_model=DefaultRuleRead)
def get_default_rule(
    identity: Identity = Depends(require_capability(CAP_READ)),
    db: Session = Depends(get_db),
) -> DefaultRuleRead:
    return DefaultRuleRead(**load_default_schedule(db, identity.org_id).to_dict())


@router.put("/rules/default", response_model=DefaultRuleRead)
def put_default_rule(
    payload: DefaultRuleUpdate,
    identity: Identity = Depends(require_capability(CAP_ADMIN)),
    events: EventBus = Depends(get_events),
    db: Session = Depends(get_db),
) -> DefaultRuleRead:
    rule = upsert_default_rule(db, org_id=identity.org_id, payload=payload, events=events)
    return DefaultRuleRead(id=rule.id, **schedule_from_rule(rule).to_dict())
