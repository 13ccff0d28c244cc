"""Periodic check for approved claims whose pickup hold has lapsed.

The sweep never changes a claim's status: a lapsed hold is reported (audit row,
warning, advisory event) and staff decide what to do with it.
"""
from __future__ import annotations

import logging
from datetime import datetime

from claimdesk import audit
from claimdesk.models.audit_log import AuditLog
from claimdesk.modules.claims import service as claims
from claimdesk.modules.notifications import fanout
from claimdesk.store import isoformat, reading
from claimdesk.tasks.celery_app import celery_app

_logger = logging.getLogger(__name__)


def _already_reported(claim_ids: list[int]) -> set[int]:
    if not claim_ids:
        return set()
    with reading():
        rows = (
            AuditLog.query.with_entities(AuditLog.entity_id)
            .filter(
                AuditLog.action == "hold_expired",
                AuditLog.entity_type == "claim",
                AuditLog.entity_id.in_(claim_ids),
            )
            .all()
        )
    return {int(r[0]) for r in rows}


def sweep_expired_holds(now: datetime | None = None) -> list[int]:
    """Report each lapsed hold once; returns the ids reported by this run."""
    lapsed = claims.expired_holds(now)
    seen = _already_reported([int(c.id) for c in lapsed])
    reported: list[int] = []
    for claim in lapsed:
        if int(claim.id) in seen:
            continue
        _logger.warning("pickup hold for claim %s lapsed at %s", claim.id, claim.hold_until)
        audit.record("hold_expired", "claim", claim.id, None, {"holdUntil": isoformat(claim.hold_until)})
        fanout.hold_lapsed(claim)
        reported.append(int(claim.id))
    return reported


@celery_app.task
def sweep_expired_holds_task() -> dict:
    from claimdesk import create_app

    app = create_app()
    with app.app_context():
        reported = sweep_expired_holds()
    return {"reported": reported}
