from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .extensions import db
from .models.audit_log import AuditLog

_logger = logging.getLogger(__name__)

ACTIONS = frozenset({
    "submit_claim",
    "approve_claim",
    "reject_claim",
    "request_info",
    "mark_picked_up",
    "schedule_set",
    "schedule_cleared",
    "hold_expired",
    "message_sent",
})


def record(
    action: str,
    entity_type: str,
    entity_id: int | None,
    actor_id: str | None,
    details: dict[str, Any] | None = None,
) -> bool:
    """Write one audit row, fire-and-forget.

    Runs in its own session after the business transaction has committed, so a
    failure here is logged and never undoes the operation that triggered it.
    """
    if action not in ACTIONS:
        _logger.warning("unknown audit action %r for %s %s", action, entity_type, entity_id)
    try:
        with Session(db.engine) as session:
            session.add(
                AuditLog(
                    actor_subject_id=actor_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    details=details or {},
                )
            )
            session.commit()
        return True
    except SQLAlchemyError as exc:
        _logger.warning("audit log insert failed (%s %s %s): %s", action, entity_type, entity_id, exc)
        return False
