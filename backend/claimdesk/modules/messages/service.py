"""Per-claim message threads, read receipts and unread counts.

Unread counts are never stored: they are ``COUNT``s over the two seen-flags,
so concurrent ``mark_seen`` calls and duplicate deliveries cannot make a badge
drift from the data.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from flask import current_app
from sqlalchemy import String, cast, false, func, literal, select, update

from ... import audit
from ...errors import NotFound, Unauthorized, ValidationError
from ...extensions import db
from ...models.claim import Claim
from ...models.enums import ViewerRole
from ...models.message import Message
from ...store import as_utc, reading, unit_of_work

_logger = logging.getLogger(__name__)

_CLAIMANT_SENDER_ROLES = ("claimant", "student")

# C0 controls other than tab, newline and carriage return, plus DEL.
# PostgreSQL text columns cannot hold NUL at all.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass
class ThreadSummary:
    claim_id: int
    item_id: int
    claimant_subject_id: str
    status: str
    created_at: datetime
    last_body: Optional[str] = None
    last_at: Optional[datetime] = None
    unread: int = 0

    @property
    def activity_at(self) -> datetime:
        return as_utc(self.last_at or self.created_at)


def _seen_flag(role: ViewerRole):
    return Message.seen_by_staff if role is ViewerRole.STAFF else Message.seen_by_claimant


def _addressed_to(role: ViewerRole):
    if role is ViewerRole.STAFF:
        return Message.sender_role.in_(_CLAIMANT_SENDER_ROLES)
    return Message.sender_role == ViewerRole.STAFF.value


def _unread_filter(role: ViewerRole):
    return (_addressed_to(role), _seen_flag(role) == false())


def _load_claim(claim_id: int, lock: bool = False) -> Claim:
    claim = db.session.get(Claim, claim_id, populate_existing=True, with_for_update=lock or None)
    if claim is None:
        raise NotFound(f"Claim {claim_id} not found")
    return claim


def authorize(claim: Claim, subject_id: str, role: ViewerRole) -> None:
    """Claimants may only touch their own claim's thread; staff reach every thread.

    ``role`` is derived from the authenticated principal by the facade, so a
    non-staff subject never arrives here as ``ViewerRole.STAFF``.
    """
    if role is ViewerRole.CLAIMANT and claim.claimant_subject_id != subject_id:
        raise Unauthorized("Not a participant of this claim")


def validate_body(body: str | None) -> str:
    if not isinstance(body, str):
        raise ValidationError("Message body must be text")
    text = body.strip()
    if not text:
        raise ValidationError("Message body is empty")
    if _CONTROL_CHARS.search(text):
        raise ValidationError("Message body contains control characters")
    limit = int(current_app.config.get("MESSAGE_MAX_LENGTH", 4000))
    if len(text) > limit:
        raise ValidationError(f"Message body exceeds {limit} characters", limit=limit)
    return text


def _insert_clock():
    # now() is the transaction start on PostgreSQL; the wall clock at insert
    # keeps created_at in the same order as the id within a locked thread
    if db.session.get_bind().dialect.name == "postgresql":
        return func.clock_timestamp()
    return func.current_timestamp()


def append(claim: Claim, sender_subject_id: str, sender_role: ViewerRole, body: str) -> Message:
    """Insert a message inside the caller's transaction; the sender's own side is pre-seen.

    The caller must hold the claim row lock (``send`` takes it explicitly and a
    status UPDATE takes it implicitly), so messages on one thread commit in the
    order their ids and timestamps were assigned.
    """
    msg = Message(
        claim_id=claim.id,
        sender_subject_id=sender_subject_id,
        sender_role=sender_role.value,
        body=body,
        seen_by_claimant=sender_role is ViewerRole.CLAIMANT,
        seen_by_staff=sender_role is ViewerRole.STAFF,
        created_at=_insert_clock(),
    )
    db.session.add(msg)
    db.session.flush()
    return msg


def send(claim_id: int, sender_subject_id: str, sender_role: ViewerRole, body: str) -> Message:
    text = validate_body(body)
    with unit_of_work():
        claim = _load_claim(claim_id, lock=True)
        authorize(claim, sender_subject_id, sender_role)
        msg = append(claim, sender_subject_id, sender_role, text)

    _logger.info("message %s sent on claim %s by %s", msg.id, claim_id, sender_role.value)
    audit.record(
        "message_sent",
        "message",
        msg.id,
        sender_subject_id,
        {"claimId": claim_id, "senderRole": sender_role.value},
    )
    return msg


def mark_seen(claim_id: int, viewer_subject_id: str, viewer_role: ViewerRole) -> int:
    """Flag every message addressed to ``viewer_role`` as seen. Idempotent.

    Returns how many messages flipped; 0 when the thread was already read.
    """
    flag = _seen_flag(viewer_role)
    with unit_of_work():
        claim = _load_claim(claim_id)
        authorize(claim, viewer_subject_id, viewer_role)
        stmt = (
            update(Message)
            .where(
                Message.claim_id == claim_id,
                Message.sender_subject_id != viewer_subject_id,
                *_unread_filter(viewer_role),
            )
            .values({flag.key: True})
            .execution_options(synchronize_session=False)
        )
        changed = db.session.execute(stmt).rowcount or 0
    if changed:
        _logger.debug("marked %s messages seen on claim %s for %s", changed, claim_id, viewer_role.value)
    return changed


def list_thread(
    claim_id: int,
    viewer_subject_id: str,
    viewer_role: ViewerRole,
    after_id: int | None = None,
) -> list[Message]:
    """Messages in store order: ``created_at`` then insertion sequence."""
    with reading():
        claim = _load_claim(claim_id)
        authorize(claim, viewer_subject_id, viewer_role)
        q = Message.query.populate_existing().filter(Message.claim_id == claim_id)
        if after_id:
            q = q.filter(Message.id > after_id)
        return q.order_by(Message.created_at.asc(), Message.id.asc()).all()


def unread_count(claim_id: int, viewer_role: ViewerRole) -> int:
    with reading():
        return (
            db.session.query(func.count(Message.id))
            .filter(Message.claim_id == claim_id, *_unread_filter(viewer_role))
            .scalar()
        ) or 0


def _participating(q, viewer_subject_id: str, viewer_role: ViewerRole):
    if viewer_role is ViewerRole.CLAIMANT:
        return q.filter(Claim.claimant_subject_id == viewer_subject_id)
    return q


def unread_by_claim(
    viewer_subject_id: str,
    viewer_role: ViewerRole,
    claim_ids: Iterable[int] | None = None,
) -> dict[int, int]:
    """Unread counts per claim for every thread the viewer participates in (non-zero only)."""
    with reading():
        q = (
            db.session.query(Message.claim_id, func.count(Message.id))
            .join(Claim, Claim.id == Message.claim_id)
            .filter(*_unread_filter(viewer_role))
        )
        q = _participating(q, viewer_subject_id, viewer_role)
        if claim_ids is not None:
            q = q.filter(Message.claim_id.in_(list(claim_ids)))
        return {int(cid): int(n) for cid, n in q.group_by(Message.claim_id).all()}


def aggregate_unread(viewer_subject_id: str, viewer_role: ViewerRole) -> int:
    """Global badge: unread messages across every claim the viewer takes part in."""
    with reading():
        q = (
            db.session.query(func.count(Message.id))
            .join(Claim, Claim.id == Message.claim_id)
            .filter(*_unread_filter(viewer_role))
        )
        return int(_participating(q, viewer_subject_id, viewer_role).scalar() or 0)


def list_inbox(
    viewer_subject_id: str,
    viewer_role: ViewerRole,
    status: str | None = None,
    unread_only: bool = False,
    sort: str = "new",
    search: str | None = None,
    limit: int = 300,
) -> list[ThreadSummary]:
    """Thread summaries for the messages portal: preview, last activity and unread count."""
    needle = (search or "").strip().lower()
    with reading():
        q = _participating(Claim.query.populate_existing(), viewer_subject_id, viewer_role)
        if status and status != "all":
            q = q.filter(Claim.status == status)
        # Filter before the limit so older unread threads are never cut off
        if unread_only:
            unread_claims = select(Message.claim_id).where(*_unread_filter(viewer_role))
            q = q.filter(Claim.id.in_(unread_claims))
        if needle:
            haystack = (
                literal("#", String)
                + cast(Claim.id, String)
                + " "
                + Claim.claimant_subject_id
                + " "
                + cast(Claim.item_id, String)
                + " "
                + cast(Claim.status, String)
            )
            q = q.filter(func.lower(haystack).contains(needle, autoescape=True))
        claims = q.order_by(Claim.created_at.desc(), Claim.id.desc()).limit(limit).all()
        ids = [c.id for c in claims]
        last_by_claim: dict[int, Message] = {}
        if ids:
            last_ids = (
                select(func.max(Message.id))
                .where(Message.claim_id.in_(ids))
                .group_by(Message.claim_id)
            )
            for m in Message.query.populate_existing().filter(Message.id.in_(last_ids)).all():
                last_by_claim[int(m.claim_id)] = m
    unread = unread_by_claim(viewer_subject_id, viewer_role, ids) if ids else {}

    out: list[ThreadSummary] = []
    for c in claims:
        last = last_by_claim.get(int(c.id))
        out.append(
            ThreadSummary(
                claim_id=int(c.id),
                item_id=int(c.item_id),
                claimant_subject_id=c.claimant_subject_id,
                status=c.status,
                created_at=as_utc(c.created_at),
                last_body=last.body if last else None,
                last_at=as_utc(last.created_at) if last else None,
                unread=unread.get(int(c.id), 0),
            )
        )

    if sort == "old":
        out.sort(key=lambda s: (s.activity_at, s.claim_id))
    elif sort == "unread":
        out.sort(key=lambda s: (s.unread > 0, s.activity_at, s.claim_id), reverse=True)
    else:
        out.sort(key=lambda s: (s.activity_at, s.claim_id), reverse=True)
    return out
