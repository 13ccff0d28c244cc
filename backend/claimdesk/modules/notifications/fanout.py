"""Publish committed claim and thread changes to live viewers.

Each event goes to the claim's topic (open thread windows) and to the badge
topics of both sides: the claimant's subject topic and the shared staff topic.
Events are only sent after the store commit; the bus is a liveness hint and a
failed publish never fails the business operation.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from ...models.claim import Claim
from ...models.enums import ViewerRole
from ...models.message import Message
from ...schemas.claim import claim_schema
from ...schemas.message import message_schema
from . import bus

_logger = logging.getLogger(__name__)


def topics_for(claim: Claim) -> tuple[str, ...]:
    return (
        bus.claim_topic(claim.id),
        bus.subject_topic(claim.claimant_subject_id),
        bus.STAFF_TOPIC,
    )


def _emit(source: Claim, event_type: str, **fields: Any) -> Dict[str, Any]:
    event: Dict[str, Any] = {
        "eventId": uuid.uuid4().hex,
        "type": event_type,
        "claimId": int(source.id),
        **fields,
    }
    for topic in topics_for(source):
        try:
            bus.publish(topic, event)
        except Exception:  # pragma: no cover - in-memory bus does not raise
            _logger.exception("publish to %s failed for claim %s", topic, source.id)
    return event


def claim_changed(claim: Claim, action: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    """Status snapshot after a transition; viewers keep it only if its version is newer."""
    return _emit(claim, "claim", action=action, actorId=actor_id, claim=claim_schema.dump(claim))


def message_sent(claim: Claim, message: Message, client_ref: Optional[str] = None) -> Dict[str, Any]:
    fields: Dict[str, Any] = {"message": message_schema.dump(message)}
    if client_ref:
        fields["clientRef"] = client_ref
    return _emit(claim, "message", **fields)


def messages_seen(claim: Claim, viewer_role: ViewerRole, changed: int) -> Optional[Dict[str, Any]]:
    # Nothing flipped, nothing to tell
    if not changed:
        return None
    return _emit(claim, "seen", viewerRole=viewer_role.value, count=int(changed))


def hold_lapsed(claim: Claim) -> Dict[str, Any]:
    """Advisory only: the claim stays approved and can still be picked up."""
    return _emit(claim, "hold_expired", holdUntil=claim_schema.dump(claim).get("holdUntil"))
