"""Claim state machine.

    pending ─┬─► approved ──► picked_up
             ├─► needs_info ─┬─► approved
             │               └─► rejected
             └─► rejected

Every transition is one transaction and a compare-and-set ``UPDATE`` guarded by
the legal source states, so a duplicate request (double click, retried call)
finds zero rows and fails with :class:`InvalidTransition` instead of applying
twice. Item exclusivity is enforced by the ``uq_claims_item_active`` partial
unique index: when approvals for the same item race, the store lets the first
committer through and the others get :class:`ConflictingClaim`.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ... import audit
from ...errors import ConflictingClaim, InvalidTransition, NotFound, StoreUnavailable, Unauthorized, ValidationError
from ...extensions import db
from ...models.claim import Claim
from ...models.enums import ACTIVE_STATUSES, OPEN_STATUSES, ClaimStatus, ViewerRole
from ...models.message import Message
from ...security import Principal
from ...store import as_utc, reading, unit_of_work, utcnow
from ..messages import service as threads

_logger = logging.getLogger(__name__)

# Unambiguous characters only (no 0/O, 1/I/L) since codes are read aloud at the desk
PICKUP_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
_MAX_CODE_ATTEMPTS = 5

TRANSITIONS: dict[ClaimStatus, frozenset[ClaimStatus]] = {
    ClaimStatus.PENDING: frozenset({ClaimStatus.APPROVED, ClaimStatus.NEEDS_INFO, ClaimStatus.REJECTED}),
    ClaimStatus.NEEDS_INFO: frozenset({ClaimStatus.APPROVED, ClaimStatus.REJECTED}),
    ClaimStatus.APPROVED: frozenset({ClaimStatus.PICKED_UP}),
    ClaimStatus.REJECTED: frozenset(),
    ClaimStatus.PICKED_UP: frozenset(),
}


def sources_for(target: ClaimStatus) -> tuple[str, ...]:
    return tuple(s.value for s, targets in TRANSITIONS.items() if target in targets)


def can_transition(current: str, target: ClaimStatus) -> bool:
    try:
        return target in TRANSITIONS[ClaimStatus(current)]
    except ValueError:
        return False


@dataclass
class TransitionResult:
    claim: Claim
    previous_status: str
    pickup_code: Optional[str] = None
    hold_until: Optional[datetime] = None
    hold_expired: bool = False
    message: Optional[Message] = None
    message_error: Optional[str] = None


# --------------------------------------------------------------------------- helpers


def _require_staff(actor: Principal) -> None:
    if not actor.is_staff:
        raise Unauthorized("Only staff can decide on claims")


def _load(claim_id: int) -> Claim:
    claim = db.session.get(Claim, claim_id, populate_existing=True)
    if claim is None:
        raise NotFound(f"Claim {claim_id} not found")
    return claim


def _check_state(claim: Claim, target: ClaimStatus) -> None:
    if not can_transition(claim.status, target):
        raise InvalidTransition(
            f"Claim {claim.id} is {claim.status}; cannot move to {target.value}",
            current=claim.status,
            target=target.value,
        )


def _apply(claim: Claim, target: ClaimStatus, actor: Principal, **values) -> None:
    """Compare-and-set the claim row from one of ``target``'s legal sources."""
    stmt = (
        update(Claim)
        .where(Claim.id == claim.id, Claim.status.in_(sources_for(target)))
        .values(
            status=target.value,
            version=Claim.version + 1,
            updated_at=utcnow(),
            decided_by=actor.subject_id,
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount != 1:
        # Lost the race to a concurrent transition on the same claim
        raise InvalidTransition(f"Claim {claim.id} changed concurrently; cannot move to {target.value}")
    db.session.refresh(claim)


def _new_pickup_code() -> str:
    length = int(current_app.config.get("PICKUP_CODE_LENGTH", 6))
    for _ in range(10):
        cand = "".join(secrets.choice(PICKUP_CODE_ALPHABET) for _ in range(length))
        if not db.session.query(Claim.id).filter(Claim.pickup_code == cand).first():
            return cand
    # Space is crowded at this length; fall back to a longer code
    return "".join(secrets.choice(PICKUP_CODE_ALPHABET) for _ in range(length + 4))


def _active_holder(item_id: int, exclude_claim_id: int) -> Optional[Claim]:
    return (
        Claim.query
        .filter(Claim.item_id == item_id, Claim.status.in_(ACTIVE_STATUSES), Claim.id != exclude_claim_id)
        .first()
    )


def hold_expired(claim: Claim, now: datetime | None = None) -> bool:
    hold = as_utc(claim.hold_until)
    return bool(hold and hold < (now or utcnow()))


# --------------------------------------------------------------------------- reads


def get_claim(claim_id: int) -> Claim:
    with reading():
        return _load(claim_id)


def latest_claim_for_item(item_id: int) -> Optional[Claim]:
    with reading():
        return (
            Claim.query.populate_existing().filter(Claim.item_id == item_id)
            .order_by(Claim.created_at.desc(), Claim.id.desc())
            .first()
        )


def expired_holds(now: datetime | None = None, limit: int = 500) -> list[Claim]:
    """Approved claims whose pickup hold has lapsed without a handover."""
    with reading():
        return (
            Claim.query.populate_existing()
            .filter(
                Claim.status == ClaimStatus.APPROVED.value,
                Claim.hold_until.isnot(None),
                Claim.hold_until < (now or utcnow()),
            )
            .order_by(Claim.hold_until.asc(), Claim.id.asc())
            .limit(limit)
            .all()
        )


# --------------------------------------------------------------------------- operations


def submit(item_id: int, claimant: Principal, notes: str | None = None) -> Claim:
    """Open a new ``pending`` claim. A claimant holds at most one open claim per item."""
    if not isinstance(item_id, int) or item_id <= 0:
        raise ValidationError("Invalid itemId")
    notes = (notes or "").strip() or None
    try:
        with unit_of_work():
            existing = (
                Claim.query
                .filter(
                    Claim.item_id == item_id,
                    Claim.claimant_subject_id == claimant.subject_id,
                    Claim.status.in_(OPEN_STATUSES),
                )
                .first()
            )
            if existing:
                raise ConflictingClaim("You have already requested a claim for this item", claimId=existing.id)
            claim = Claim(
                item_id=item_id,
                claimant_subject_id=claimant.subject_id,
                notes=notes,
                status=ClaimStatus.PENDING.value,
                version=1,
                updated_at=utcnow(),
            )
            db.session.add(claim)
    except IntegrityError as exc:
        raise ConflictingClaim("You have already requested a claim for this item") from exc

    _logger.info("claim %s submitted for item %s by %s", claim.id, item_id, claimant.subject_id)
    audit.record("submit_claim", "claim", claim.id, claimant.subject_id, {"itemId": item_id})
    return claim


def approve(claim_id: int, actor: Principal) -> TransitionResult:
    _require_staff(actor)
    hold = timedelta(hours=int(current_app.config.get("PICKUP_HOLD_HOURS", 72)))

    for _ in range(_MAX_CODE_ATTEMPTS):
        try:
            with unit_of_work():
                claim = _load(claim_id)
                prev = claim.status
                _check_state(claim, ClaimStatus.APPROVED)
                holder = _active_holder(claim.item_id, claim.id)
                if holder is not None:
                    raise ConflictingClaim(
                        f"Item {claim.item_id} is already held by claim {holder.id}",
                        itemId=claim.item_id,
                    )
                now = utcnow()
                _apply(
                    claim,
                    ClaimStatus.APPROVED,
                    actor,
                    pickup_code=_new_pickup_code(),
                    hold_until=now + hold,
                    approved_at=now,
                )
            break
        except IntegrityError:
            # Either another approval for the item committed first, or the code collided
            with reading():
                claim = _load(claim_id)
                holder = _active_holder(claim.item_id, claim.id)
            if holder is not None:
                _logger.info("approval of claim %s lost to claim %s on item %s", claim_id, holder.id, claim.item_id)
                raise ConflictingClaim(
                    f"Item {claim.item_id} is already held by claim {holder.id}",
                    itemId=claim.item_id,
                )
            _check_state(claim, ClaimStatus.APPROVED)
            _logger.warning("pickup code collision approving claim %s; retrying", claim_id)
    else:
        raise StoreUnavailable(f"Could not issue a unique pickup code for claim {claim_id}")

    _logger.info("claim %s approved by %s; hold until %s", claim.id, actor.subject_id, claim.hold_until)
    audit.record(
        "approve_claim",
        "claim",
        claim.id,
        actor.subject_id,
        {"fromStatus": prev, "itemId": claim.item_id, "holdUntil": as_utc(claim.hold_until).isoformat()},
    )
    return TransitionResult(
        claim=claim,
        previous_status=prev,
        pickup_code=claim.pickup_code,
        hold_until=as_utc(claim.hold_until),
    )


def request_info(claim_id: int, actor: Principal, message: str | None = None) -> TransitionResult:
    """Move a pending claim to ``needs_info``, optionally with a staff note in the thread.

    The note rides in the same transaction when it is valid. A note that cannot be
    stored is rolled back to a savepoint, so the status change still commits and
    the failure is reported in ``message_error``.
    """
    _require_staff(actor)
    note = (message or "").strip()
    message_error = None
    if note:
        try:
            threads.validate_body(note)
        except ValidationError as exc:
            message_error = exc.message
            note = ""

    msg = None
    with unit_of_work():
        claim = _load(claim_id)
        prev = claim.status
        _check_state(claim, ClaimStatus.NEEDS_INFO)
        _apply(claim, ClaimStatus.NEEDS_INFO, actor)
        if note:
            try:
                with db.session.begin_nested():
                    msg = threads.append(claim, actor.subject_id, ViewerRole.STAFF, note)
            except (SQLAlchemyError, ValueError) as exc:
                # Only the note is rolled back; the status change still commits
                _logger.warning("request_info note for claim %s not stored: %s", claim_id, exc)
                message_error = "Message could not be saved"
                msg = None
    result = TransitionResult(claim=claim, previous_status=prev, message=msg, message_error=message_error)

    _logger.info("claim %s needs info (requested by %s)", claim_id, actor.subject_id)
    audit.record(
        "request_info",
        "claim",
        claim_id,
        actor.subject_id,
        {"fromStatus": result.previous_status, "message": note or None},
    )
    if result.message is not None:
        audit.record("message_sent", "message", result.message.id, actor.subject_id, {"claimId": claim_id})
    return result


def reject(claim_id: int, actor: Principal, reason: str | None = None) -> TransitionResult:
    _require_staff(actor)
    reason = (reason or "").strip() or None
    with unit_of_work():
        claim = _load(claim_id)
        prev = claim.status
        _check_state(claim, ClaimStatus.REJECTED)
        _apply(claim, ClaimStatus.REJECTED, actor)

    _logger.info("claim %s rejected by %s", claim_id, actor.subject_id)
    audit.record("reject_claim", "claim", claim_id, actor.subject_id, {"fromStatus": prev, "reason": reason})
    return TransitionResult(claim=claim, previous_status=prev)


def mark_picked_up(claim_id: int, actor: Principal) -> TransitionResult:
    """Record the physical handover.

    An expired hold does not block: staff confirming a handover in person wins.
    The result reports ``hold_expired`` so callers can surface a warning.
    """
    _require_staff(actor)
    with unit_of_work():
        result = _picked_up(_load(claim_id), actor)
    _audit_pickup(result, actor)
    return result


def redeem_pickup_code(code: str, actor: Principal) -> TransitionResult:
    """Find the approved claim presented at the desk by its pickup code and hand it over."""
    _require_staff(actor)
    normalized = (code or "").strip().upper()
    if not normalized or any(ch not in PICKUP_CODE_ALPHABET for ch in normalized):
        raise ValidationError("Invalid pickup code")
    with unit_of_work():
        claim = Claim.query.filter(
            Claim.pickup_code == normalized,
            Claim.status == ClaimStatus.APPROVED.value,
        ).first()
        if claim is None:
            raise NotFound("No approved claim with this pickup code")
        result = _picked_up(claim, actor)
    _audit_pickup(result, actor, code=normalized)
    return result


def _picked_up(claim: Claim, actor: Principal) -> TransitionResult:
    # Runs inside the caller's unit of work
    prev = claim.status
    _check_state(claim, ClaimStatus.PICKED_UP)
    expired = hold_expired(claim)
    if expired:
        _logger.warning(
            "claim %s picked up after hold expired at %s (confirmed by %s)",
            claim.id, claim.hold_until, actor.subject_id,
        )
    _apply(claim, ClaimStatus.PICKED_UP, actor, hold_until=None, picked_up_at=utcnow())
    return TransitionResult(claim=claim, previous_status=prev, pickup_code=claim.pickup_code, hold_expired=expired)


def _audit_pickup(result: TransitionResult, actor: Principal, code: str | None = None) -> None:
    _logger.info("claim %s picked up (confirmed by %s)", result.claim.id, actor.subject_id)
    details = {"fromStatus": result.previous_status, "holdExpired": result.hold_expired}
    if code:
        details["redeemedCode"] = True
    audit.record("mark_picked_up", "claim", result.claim.id, actor.subject_id, details)


def schedule_pickup(claim_id: int, actor: Principal, at: datetime | None) -> Claim:
    """Set or clear the handover appointment of an approved claim. Not a status change."""
    _require_staff(actor)
    with unit_of_work():
        claim = _load(claim_id)
        if claim.status != ClaimStatus.APPROVED.value:
            raise InvalidTransition(f"Only approved claims can be scheduled (claim {claim.id} is {claim.status})")
        stmt = (
            update(Claim)
            .where(Claim.id == claim.id, Claim.status == ClaimStatus.APPROVED.value)
            .values(pickup_scheduled_at=at, version=Claim.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(stmt).rowcount != 1:
            raise InvalidTransition(f"Claim {claim.id} changed concurrently")
        db.session.refresh(claim)

    action = "schedule_set" if at else "schedule_cleared"
    audit.record(action, "claim", claim.id, actor.subject_id, {"at": at.isoformat() if at else None})
    return claim
