"""Single entry point for the UI and API layers.

Composes the claim state machine and the thread manager, decides who may act
on a claim, retries transient store failures with bounded exponential backoff,
and publishes an event for every committed change.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from flask import current_app

from .errors import NotFound, StoreUnavailable, TransientFailure, Unauthorized
from .models.claim import Claim
from .models.enums import ViewerRole
from .models.message import Message
from .modules.claims import service as claims
from .modules.claims.service import TransitionResult
from .modules.messages import service as threads
from .modules.messages.service import ThreadSummary
from .modules.notifications import bus, fanout
from .modules.notifications.views import BadgeView, ThreadView
from .schemas.claim import claim_schema
from .schemas.message import messages_schema
from .security import Principal

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def _retrying(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    attempts = max(1, int(current_app.config.get("STORE_RETRY_ATTEMPTS", 3)))
    backoff = float(current_app.config.get("STORE_RETRY_BACKOFF", 0.05))
    last: Optional[StoreUnavailable] = None
    for attempt in range(attempts):
        try:
            return fn(*args, **kwargs)
        except StoreUnavailable as exc:
            last = exc
            _logger.warning("%s failed on attempt %d/%d: %s", fn.__name__, attempt + 1, attempts, exc)
            if attempt + 1 < attempts and backoff > 0:
                time.sleep(backoff * (2 ** attempt))
    raise TransientFailure("The service is busy, please try again") from last


def _claim_for(principal: Principal, claim_id: int) -> Claim:
    claim = _retrying(claims.get_claim, claim_id)
    if not principal.is_staff and claim.claimant_subject_id != principal.subject_id:
        raise Unauthorized("Not a participant of this claim")
    return claim


# --------------------------------------------------------------------------- claims


def submit_claim(principal: Principal, item_id: int, notes: Optional[str] = None) -> Claim:
    claim = _retrying(claims.submit, item_id, principal, notes)
    fanout.claim_changed(claim, "submit_claim", principal.subject_id)
    return claim


def get_claim(principal: Principal, claim_id: int) -> Claim:
    claim = _retrying(claims.get_claim, claim_id)
    if not principal.is_staff and claim.claimant_subject_id != principal.subject_id:
        # Claimants cannot discover other people's claims
        raise NotFound(f"Claim {claim_id} not found")
    return claim


def latest_claim_for_item(principal: Principal, item_id: int) -> Optional[Claim]:
    if not principal.is_staff:
        raise Unauthorized("Staff access required")
    return _retrying(claims.latest_claim_for_item, item_id)


def approve_claim(principal: Principal, claim_id: int) -> TransitionResult:
    result = _retrying(claims.approve, claim_id, principal)
    fanout.claim_changed(result.claim, "approve_claim", principal.subject_id)
    return result


def request_info_claim(principal: Principal, claim_id: int, message: Optional[str] = None) -> TransitionResult:
    result = _retrying(claims.request_info, claim_id, principal, message)
    fanout.claim_changed(result.claim, "request_info", principal.subject_id)
    if result.message is not None:
        fanout.message_sent(result.claim, result.message)
    return result


def reject_claim(principal: Principal, claim_id: int, reason: Optional[str] = None) -> TransitionResult:
    result = _retrying(claims.reject, claim_id, principal, reason)
    fanout.claim_changed(result.claim, "reject_claim", principal.subject_id)
    return result


def mark_picked_up(principal: Principal, claim_id: int) -> TransitionResult:
    result = _retrying(claims.mark_picked_up, claim_id, principal)
    fanout.claim_changed(result.claim, "mark_picked_up", principal.subject_id)
    return result


def redeem_pickup_code(principal: Principal, code: str) -> TransitionResult:
    result = _retrying(claims.redeem_pickup_code, code, principal)
    fanout.claim_changed(result.claim, "mark_picked_up", principal.subject_id)
    return result


def schedule_pickup(principal: Principal, claim_id: int, at: Optional[datetime]) -> Claim:
    claim = _retrying(claims.schedule_pickup, claim_id, principal, at)
    fanout.claim_changed(claim, "schedule_set" if at else "schedule_cleared", principal.subject_id)
    return claim


# --------------------------------------------------------------------------- messages


def send_message(principal: Principal, claim_id: int, body: str, client_ref: Optional[str] = None) -> Message:
    """Store a message; ``client_ref`` (the sender's draft id) only rides along on the event."""
    msg = _retrying(threads.send, claim_id, principal.subject_id, principal.viewer_role, body)
    claim = _retrying(claims.get_claim, claim_id)
    fanout.message_sent(claim, msg, client_ref)
    return msg


def mark_thread_seen(principal: Principal, claim_id: int) -> int:
    role = principal.viewer_role
    changed = _retrying(threads.mark_seen, claim_id, principal.subject_id, role)
    if changed:
        fanout.messages_seen(_retrying(claims.get_claim, claim_id), role, changed)
    return changed


def list_thread(principal: Principal, claim_id: int, after_id: Optional[int] = None) -> list[Message]:
    return _retrying(threads.list_thread, claim_id, principal.subject_id, principal.viewer_role, after_id)


def get_unread_badge(principal: Principal) -> Dict[str, Any]:
    by_claim = _retrying(threads.unread_by_claim, principal.subject_id, principal.viewer_role)
    return {"total": sum(by_claim.values()), "byClaim": by_claim}


def unread_count(principal: Principal, claim_id: int) -> int:
    _claim_for(principal, claim_id)
    return _retrying(threads.unread_count, claim_id, principal.viewer_role)


def list_inbox(principal: Principal, **filters: Any) -> list[ThreadSummary]:
    return _retrying(threads.list_inbox, principal.subject_id, principal.viewer_role, **filters)


# --------------------------------------------------------------------------- subscriptions


def open_thread(principal: Principal, claim_id: int) -> Tuple[bus.Subscription, ThreadView]:
    """Subscribe to a claim thread and hand back a view reconciled from the store.

    The subscription is opened before the fetch, so anything committed in
    between is both in the snapshot and in the mailbox; the view drops the
    duplicate.
    """
    claim = _claim_for(principal, claim_id)
    sub = bus.subscribe(bus.claim_topic(claim.id), int(current_app.config.get("BUS_QUEUE_SIZE", bus.DEFAULT_QUEUE_SIZE)))
    try:
        view = load_thread_view(principal, claim_id)
    except Exception:
        sub.close()
        raise
    return sub, view


def load_thread_view(principal: Principal, claim_id: int, view: Optional[ThreadView] = None) -> ThreadView:
    claim = _claim_for(principal, claim_id)
    msgs = list_thread(principal, claim_id)
    view = view or ThreadView(claim_id, principal.viewer_role.value)
    view.reconcile(messages_schema.dump(msgs), claim_schema.dump(claim))
    return view


def badge_topic(principal: Principal) -> str:
    if principal.viewer_role is ViewerRole.STAFF:
        return bus.STAFF_TOPIC
    return bus.subject_topic(principal.subject_id)


def open_badge(principal: Principal) -> Tuple[bus.Subscription, BadgeView]:
    sub = bus.subscribe(badge_topic(principal), int(current_app.config.get("BUS_QUEUE_SIZE", bus.DEFAULT_QUEUE_SIZE)))
    view = BadgeView(
        load_all=lambda: _retrying(threads.unread_by_claim, principal.subject_id, principal.viewer_role),
        load_one=lambda cid: _retrying(threads.unread_count, cid, principal.viewer_role),
    )
    try:
        view.reconcile()
    except Exception:
        sub.close()
        raise
    return sub, view
