"""Attendance core schema

Revision ID: 0001_attendance_core
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_attendance_core"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

attendance_status = postgresql.ENUM(
    "normal",
    "late",
    "early_leave",
    "late_early",
    "partial",
    "absent",
    "adjusted",
    "off",
    name="attendance_status",
    create_type=False,
)
attendance_event_type = postgresql.ENUM(
    "check_in",
    "check_out",
    "adjustment",
    name="attendance_event_type",
    create_type=False,
)
attendance_request_type = postgresql.ENUM(
    "missed_check_in",
    "missed_check_out",
    "time_correction",
    "leave",
    "overtime",
    name="attendance_request_type",
    create_type=False,
)
attendance_request_status = postgresql.ENUM(
    "pending",
    "approved",
    "rejected",
    "cancelled",
    name="attendance_request_status",
    create_type=False,
)
approval_status = postgresql.ENUM(
    "pending",
    "approved",
    "rejected",
    "cancelled",
    name="approval_status",
    create_type=False,
)

ENUMS = (
    attendance_status,
    attendance_event_type,
    attendance_request_type,
    attendance_request_status,
    approval_status,
)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def _jsonb(name: str, default: str = "'{}'::jsonb") -> sa.Column:
    return sa.Column(name, postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text(default))


def _flag(name: str, default: bool = True) -> sa.Column:
    return sa.Column(name, sa.Boolean(), nullable=False, server_default=sa.text("true" if default else "false"))


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "attendance_rules",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("work_start_time", sa.String(length=5), nullable=False),
        sa.Column("work_end_time", sa.String(length=5), nullable=False),
        sa.Column("late_grace_minutes", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("early_grace_minutes", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("rounding_minutes", sa.Integer(), nullable=False, server_default=sa.text("5")),
        _jsonb("working_days", "'[1,2,3,4,5]'::jsonb"),
        _flag("is_default"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_attendance_rules_org_id", "attendance_rules", ["org_id"])

    op.create_table(
        "attendance_shifts",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("work_start_time", sa.String(length=5), nullable=False),
        sa.Column("work_end_time", sa.String(length=5), nullable=False),
        sa.Column("late_grace_minutes", sa.Integer(), nullable=True),
        sa.Column("early_grace_minutes", sa.Integer(), nullable=True),
        sa.Column("rounding_minutes", sa.Integer(), nullable=True),
        sa.Column("working_days", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _flag("is_active"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("org_id", "name", name="uq_attendance_shifts_org_name"),
    )
    op.create_index("ix_attendance_shifts_org_id", "attendance_shifts", ["org_id"])

    op.create_table(
        "attendance_shift_assignments",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("shift_id", sa.String(length=64), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        _flag("is_active"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["shift_id"], ["attendance_shifts.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_attendance_shift_assignments_user_start",
        "attendance_shift_assignments",
        ["org_id", "user_id", "start_date"],
    )
    op.create_index("ix_attendance_shift_assignments_shift_id", "attendance_shift_assignments", ["shift_id"])

    op.create_table(
        "attendance_rotation_rules",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        _jsonb("shift_sequence", "'[]'::jsonb"),
        _flag("is_active"),
        _timestamp("created_at"),
    )
    op.create_index("ix_attendance_rotation_rules_org_id", "attendance_rotation_rules", ["org_id"])

    op.create_table(
        "attendance_rotation_assignments",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("rotation_rule_id", sa.String(length=64), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        _flag("is_active"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["rotation_rule_id"], ["attendance_rotation_rules.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_attendance_rotation_assignments_user_start",
        "attendance_rotation_assignments",
        ["org_id", "user_id", "start_date"],
    )

    op.create_table(
        "attendance_holidays",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("holiday_date", sa.Date(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        _flag("is_working_day", default=False),
        sa.UniqueConstraint("org_id", "holiday_date", name="uq_attendance_holidays_org_date"),
    )

    op.create_table(
        "attendance_org_members",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        _flag("is_active"),
        sa.UniqueConstraint("org_id", "user_id", name="uq_attendance_org_members_org_user"),
    )

    op.create_table(
        "attendance_events",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", attendance_event_type, nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        _jsonb("location"),
        _jsonb("meta"),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_attendance_events_user_occurred",
        "attendance_events",
        ["org_id", "user_id", "occurred_at"],
    )
    op.create_index("ix_attendance_events_work_date", "attendance_events", ["work_date"])

    op.create_table(
        "attendance_records",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.Column("first_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("work_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("late_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("early_leave_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", attendance_status, nullable=False, server_default=sa.text("'absent'")),
        _flag("is_workday"),
        _jsonb("meta"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("user_id", "org_id", "work_date", name="uq_attendance_records_user_org_date"),
    )
    op.create_index("ix_attendance_records_org_date", "attendance_records", ["org_id", "work_date"])

    op.create_table(
        "attendance_leave_types",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        _flag("requires_approval"),
        _flag("is_active"),
        _timestamp("created_at"),
        sa.UniqueConstraint("org_id", "code", name="uq_attendance_leave_types_org_code"),
    )

    op.create_table(
        "attendance_overtime_rules",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("min_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("rounding_minutes", sa.Integer(), nullable=False, server_default=sa.text("15")),
        sa.Column("max_minutes_per_day", sa.Integer(), nullable=False, server_default=sa.text("600")),
        _flag("is_active"),
        _timestamp("created_at"),
        sa.UniqueConstraint("org_id", "name", name="uq_attendance_overtime_rules_org_name"),
    )

    op.create_table(
        "approval_flows",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("request_type", sa.String(length=32), nullable=True),
        _jsonb("steps", "'[]'::jsonb"),
        _flag("is_active"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_approval_flows_org_type", "approval_flows", ["org_id", "request_type"])

    op.create_table(
        "approval_instances",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("status", approval_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "approval_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("instance_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("from_status", sa.String(length=32), nullable=False),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("from_version", sa.Integer(), nullable=False),
        sa.Column("to_version", sa.Integer(), nullable=False),
        _jsonb("metadata"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["instance_id"], ["approval_instances.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_approval_records_instance_id", "approval_records", ["instance_id"])
    op.create_index("ix_approval_records_created_at", "approval_records", ["created_at"])

    op.create_table(
        "attendance_requests",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("request_type", attendance_request_type, nullable=False),
        sa.Column("requested_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requested_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.String(length=1000), nullable=True),
        sa.Column("status", attendance_request_status, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("approval_instance_id", sa.String(length=64), nullable=True),
        sa.Column("leave_type_id", sa.String(length=64), nullable=True),
        sa.Column("overtime_rule_id", sa.String(length=64), nullable=True),
        sa.Column("minutes", sa.Integer(), nullable=True),
        _jsonb("metadata"),
        sa.Column("resolved_by", sa.String(length=64), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["approval_instance_id"], ["approval_instances.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["leave_type_id"], ["attendance_leave_types.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["overtime_rule_id"], ["attendance_overtime_rules.id"], ondelete="SET NULL"),
    )
    op.create_index(
        "ix_attendance_requests_org_status",
        "attendance_requests",
        ["org_id", "status", "work_date"],
    )
    op.create_index("ix_attendance_requests_user_id", "attendance_requests", ["user_id"])
    op.create_index(
        "ix_attendance_requests_approval_instance_id",
        "attendance_requests",
        ["approval_instance_id"],
    )

    op.create_table(
        "attendance_rule_sets",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("scope", sa.String(length=32), nullable=False, server_default=sa.text("'org'")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _jsonb("config"),
        _flag("is_default", default=False),
        _flag("is_active"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("org_id", "name", "version", name="uq_attendance_rule_sets_org_name_version"),
    )
    op.create_index("ix_attendance_rule_sets_org_id", "attendance_rule_sets", ["org_id"])

    op.create_table(
        "attendance_import_batches",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("rule_set_id", sa.String(length=64), nullable=True),
        sa.Column("mode", sa.String(length=16), nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _jsonb("summary"),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index(
        "ix_attendance_import_batches_idempotency_key",
        "attendance_import_batches",
        ["idempotency_key"],
        unique=True,
    )

    op.create_table(
        "attendance_auto_absence_runs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(length=64), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("created_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("ran_at"),
        sa.UniqueConstraint("org_id", "work_date", name="uq_attendance_auto_absence_runs_org_date"),
    )

    op.create_table(
        "system_configs",
        sa.Column("key", sa.String(length=255), primary_key=True, nullable=False),
        _jsonb("value"),
        _timestamp("updated_at"),
    )


def downgrade() -> None:
    op.drop_table("system_configs")
    op.drop_table("attendance_auto_absence_runs")
    op.drop_index("ix_attendance_import_batches_idempotency_key", table_name="attendance_import_batches")
    op.drop_table("attendance_import_batches")
    op.drop_index("ix_attendance_rule_sets_org_id", table_name="attendance_rule_sets")
    op.drop_table("attendance_rule_sets")
    op.drop_index("ix_attendance_requests_approval_instance_id", table_name="attendance_requests")
    op.drop_index("ix_attendance_requests_user_id", table_name="attendance_requests")
    op.drop_index("ix_attendance_requests_org_status", table_name="attendance_requests")
    op.drop_table("attendance_requests")
    op.drop_index("ix_approval_records_created_at", table_name="approval_records")
    op.drop_index("ix_approval_records_instance_id", table_name="approval_records")
    op.drop_table("approval_records")
    op.drop_table("approval_instances")
    op.drop_index("ix_approval_flows_org_type", table_name="approval_flows")
    op.drop_table("approval_flows")
    op.drop_table("attendance_overtime_rules")
    op.drop_table("attendance_leave_types")
    op.drop_index("ix_attendance_records_org_date", table_name="attendance_records")
    op.drop_table("attendance_records")
    op.drop_index("ix_attendance_events_work_date", table_name="attendance_events")
    op.drop_index("ix_attendance_events_user_occurred", table_name="attendance_events")
    op.drop_table("attendance_events")
    op.drop_table("attendance_org_members")
    op.drop_table("attendance_holidays")
    op.drop_index("ix_attendance_rotation_assignments_user_start", table_name="attendance_rotation_assignments")
    op.drop_table("attendance_rotation_assignments")
    op.drop_index("ix_attendance_rotation_rules_org_id", table_name="attendance_rotation_rules")
    op.drop_table("attendance_rotation_rules")
    op.drop_index("ix_attendance_shift_assignments_shift_id", table_name="attendance_shift_assignments")
    op.drop_index("ix_attendance_shift_assignments_user_start", table_name="attendance_shift_assignments")
    op.drop_table("attendance_shift_assignments")
    op.drop_index("ix_attendance_shifts_org_id", table_name="attendance_shifts")
    op.drop_table("attendance_shifts")
    op.drop_index("ix_attendance_rules_org_id", table_name="attendance_rules")
    op.drop_table("attendance_rules")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
