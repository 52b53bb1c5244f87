from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from attendance_core.models import ApprovalRecord
from attendance_core.logging_utils import request_id_var

logger = logging.getLogger("attendance_core.audit")


def log_approval_transition(
    db: Session,
    *,
    instance_id: str,
    action: str,
    actor_id: str,
    from_status: str,
    to_status: str,
    from_version: int,
    to_version: int,
    comment: str | None = None,
    details: dict[str, Any] | None = None,
) -> ApprovalRecord:
    """Append an audit row in the caller's transaction."""
    record = ApprovalRecord(
        instance_id=instance_id,
        action=action,
        actor_id=actor_id,
        comment=comment,
        from_status=from_status,
        to_status=to_status,
        from_version=from_version,
        to_version=to_version,
        details=details or {},
    )
    db.add(record)

    logger.info(
        "approval_transition",
        extra={
            "request_id": request_id_var.get(),
            "instance_id": instance_id,
            "action": action,
            "actor_id": actor_id,
            "from_status": from_status,
            "to_status": to_status,
            "from_version": from_version,
            "to_version": to_version,
            "details": details or {},
        },
    )
    return record
