from datetime import date, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from attendance_core.models import (
    AttendanceEventType,
    AttendanceStatus,
    RequestStatus,
    RequestType,
)


class PunchLocation(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy_m: float | None = Field(default=None, ge=0)


class PunchRequest(BaseModel):
    event_type: Literal["check_in", "check_out"]
    occurred_at: datetime | None = None
    timezone: str | None = Field(default=None, max_length=64)
    source: str = Field(default="manual", max_length=32)
    location: PunchLocation | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


class AttendanceRecordRead(BaseModel):
    id: str
    user_id: str
    org_id: str
    work_date: date
    timezone: str
    first_in_at: datetime | None
    last_out_at: datetime | None
    work_minutes: int
    late_minutes: int
    early_leave_minutes: int
    status: AttendanceStatus
    is_workday: bool
    meta: dict[str, Any]

    model_config = ConfigDict(from_attributes=True)


class AttendanceEventRead(BaseModel):
    id: str
    user_id: str
    org_id: str
    work_date: date
    occurred_at: datetime
    event_type: AttendanceEventType
    source: str
    timezone: str
    location: dict[str, Any]
    meta: dict[str, Any]

    model_config = ConfigDict(from_attributes=True)


class PunchResponse(BaseModel):
    event: AttendanceEventRead
    record: AttendanceRecordRead


class RecordSummaryRead(BaseModel):
    user_id: str
    org_id: str
    from_date: date
    to_date: date
    total_days: int
    total_work_minutes: int
    total_late_minutes: int
    total_early_leave_minutes: int
    status_counts: dict[str, int]


class AttendanceRequestCreate(BaseModel):
    work_date: date
    request_type: RequestType
    requested_in_at: datetime | None = None
    requested_out_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=1000)
    leave_type_id: str | None = None
    overtime_rule_id: str | None = None
    minutes: int | None = Field(default=None, ge=0)
    approval_flow_id: str | None = None

    @model_validator(mode="after")
    def validate_time_order(self) -> "AttendanceRequestCreate":
        if (
            self.requested_in_at is not None
            and self.requested_out_at is not None
            and self.requested_out_at < self.requested_in_at
        ):
            raise ValueError("requested_out_at must not precede requested_in_at")
        return self


class AttendanceRequestRead(BaseModel):
    id: str
    user_id: str
    org_id: str
    work_date: date
    request_type: RequestType
    requested_in_at: datetime | None
    requested_out_at: datetime | None
    reason: str | None
    status: RequestStatus
    approval_instance_id: str | None
    leave_type_id: str | None
    overtime_rule_id: str | None
    minutes: int | None
    meta: dict[str, Any]
    resolved_by: str | None
    resolved_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ResolveRequestBody(BaseModel):
    comment: str | None = Field(default=None, max_length=1000)


class ApprovalOutcomeRead(BaseModel):
    request: AttendanceRequestRead
    status: RequestStatus
    version: int
    current_step: int
    total_steps: int
    record: AttendanceRecordRead | None = None


class ImportRow(BaseModel):
    user_id: str | None = None
    work_date: date | None = None
    fields: dict[str, Any] = Field(default_factory=dict)


class ImportCommitRequest(BaseModel):
    rows: list[ImportRow] = Field(min_length=1, max_length=5000)
    mode: Literal["append", "merge", "override"] = "override"
    rule_set_id: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=255)
    timezone: str | None = Field(default=None, max_length=64)


class ImportRowError(BaseModel):
    index: int
    code: str
    message: str


class ImportSummaryRead(BaseModel):
    batch_id: str | None
    mode: str
    total: int
    imported: int
    failed: int
    errors: list[ImportRowError]
    record_ids: list[str]
    replayed: bool = False


class LeaveTypeCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    requires_approval: bool = True


class LeaveTypeRead(BaseModel):
    id: str
    org_id: str
    code: str
    name: str
    requires_approval: bool
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class OvertimeRuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    min_minutes: int = Field(default=0, ge=0)
    rounding_minutes: int = Field(default=15, ge=0)
    max_minutes_per_day: int = Field(default=600, ge=0)


class OvertimeRuleRead(BaseModel):
    id: str
    org_id: str
    name: str
    min_minutes: int
    rounding_minutes: int
    max_minutes_per_day: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class DefaultRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    timezone: str | None = Field(default=None, max_length=64)
    work_start_time: str | None = Field(default=None, max_length=8)
    work_end_time: str | None = Field(default=None, max_length=8)
    late_grace_minutes: int | None = Field(default=None, ge=0, le=720)
    early_grace_minutes: int | None = Field(default=None, ge=0, le=720)
    rounding_minutes: int | None = Field(default=None, ge=0, le=240)
    working_days: list[Annotated[int, Field(ge=0, le=6)]] | None = Field(default=None, max_length=7)


class DefaultRuleRead(BaseModel):
    id: str | None = None
    name: str | None
    timezone: str
    work_start: str
    work_end: str
    late_grace_minutes: int
    early_grace_minutes: int
    rounding_minutes: int
    working_weekdays: list[int]
