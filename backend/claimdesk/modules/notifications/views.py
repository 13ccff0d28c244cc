"""Subscriber-side views of a claim thread and of a viewer's unread badge.

Bus delivery is at-least-once and unordered, so applying an event must be
idempotent and order tolerant:

* a message already held (same id) is ignored;
* a claim snapshot whose ``version`` is not newer than the held one is ignored;
* badge counts are never incremented locally; an event only names the claim
  whose count must be re-read from the store.

After a (re)connect, or a ``resync`` event from an overflowed subscription, the
owner calls ``reconcile`` with an authoritative fetch before consuming further
events.
"""
from __future__ import annotations

import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

PENDING_SEND = "pending-send"
FAILED = "failed"

_SEEN_EVENT_WINDOW = 1024


@dataclass
class Draft:
    """A message typed locally and not yet stored. Its ``client_ref`` is never persisted."""

    body: str
    client_ref: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: str = PENDING_SEND
    error: Optional[str] = None


def _order_key(message: Mapping[str, Any]):
    return (message.get("createdAt") or "", int(message["id"]))


class _EventWindow:
    """Remembers recently applied event ids so redeliveries are skipped cheaply."""

    def __init__(self, size: int = _SEEN_EVENT_WINDOW):
        self._ids: "OrderedDict[str, None]" = OrderedDict()
        self._size = size

    def first_time(self, event: Mapping[str, Any]) -> bool:
        event_id = event.get("eventId")
        if not event_id:
            return True
        if event_id in self._ids:
            return False
        self._ids[event_id] = None
        if len(self._ids) > self._size:
            self._ids.popitem(last=False)
        return True


class ThreadView:
    def __init__(self, claim_id: int, viewer_role: str):
        self.claim_id = int(claim_id)
        self.viewer_role = viewer_role
        self.claim: Optional[Dict[str, Any]] = None
        self._messages: Dict[int, Dict[str, Any]] = {}
        self._drafts: List[Draft] = []
        self._window = _EventWindow()

    # ------------------------------------------------------------------ reads

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return sorted(self._messages.values(), key=_order_key)

    @property
    def drafts(self) -> List[Draft]:
        return list(self._drafts)

    @property
    def version(self) -> int:
        return int((self.claim or {}).get("version") or 0)

    @property
    def last_body(self) -> Optional[str]:
        msgs = self.messages
        return msgs[-1]["body"] if msgs else None

    def unread(self) -> int:
        if self.viewer_role == "staff":
            return sum(1 for m in self._messages.values() if m.get("senderRole") == "claimant" and not m.get("seenByStaff"))
        return sum(1 for m in self._messages.values() if m.get("senderRole") == "staff" and not m.get("seenByClaimant"))

    # ------------------------------------------------------------------ store sync

    def reconcile(self, messages: Iterable[Mapping[str, Any]], claim: Optional[Mapping[str, Any]] = None) -> None:
        """Replace local state with an authoritative fetch. Drafts survive."""
        self._messages = {int(m["id"]): dict(m) for m in messages}
        if claim is not None:
            self.claim = dict(claim)

    def apply(self, event: Mapping[str, Any]) -> bool:
        """Apply one bus event; returns True when the view changed."""
        if int(event.get("claimId", -1)) != self.claim_id or not self._window.first_time(event):
            return False
        kind = event.get("type")
        if kind == "message":
            changed = self._add_message(event["message"])
            ref = event.get("clientRef")
            if ref and self._drop_draft(ref):
                changed = True
            return changed
        if kind == "claim":
            return self._apply_snapshot(event["claim"])
        if kind == "seen":
            return self._apply_seen(event.get("viewerRole"))
        return False

    def _add_message(self, message: Mapping[str, Any]) -> bool:
        mid = int(message["id"])
        if mid in self._messages:
            return False
        self._messages[mid] = dict(message)
        return True

    def _apply_snapshot(self, snapshot: Mapping[str, Any]) -> bool:
        if int(snapshot.get("version") or 0) <= self.version:
            return False
        self.claim = dict(snapshot)
        return True

    def _apply_seen(self, role: Optional[str]) -> bool:
        # The reader's side flips for everything the counterpart sent
        if role == "staff":
            flag, sender = "seenByStaff", "claimant"
        elif role == "claimant":
            flag, sender = "seenByClaimant", "staff"
        else:
            return False
        changed = False
        for m in self._messages.values():
            if m.get("senderRole") == sender and not m.get(flag):
                m[flag] = True
                changed = True
        return changed

    # ------------------------------------------------------------------ drafts

    def compose(self, body: str) -> Draft:
        draft = Draft(body=body)
        self._drafts.append(draft)
        return draft

    def confirm(self, client_ref: str, message: Mapping[str, Any]) -> None:
        """Swap the draft for the stored message; harmless if the bus delivered it first."""
        self._drop_draft(client_ref)
        self._add_message(message)

    def fail(self, client_ref: str, error: str) -> Optional[Draft]:
        for d in self._drafts:
            if d.client_ref == client_ref:
                d.state = FAILED
                d.error = error
                return d
        return None

    def retry(self, client_ref: str) -> Optional[Draft]:
        for d in self._drafts:
            if d.client_ref == client_ref and d.state == FAILED:
                d.state = PENDING_SEND
                d.error = None
                return d
        return None

    def discard(self, client_ref: str) -> bool:
        return self._drop_draft(client_ref)

    def _drop_draft(self, client_ref: str) -> bool:
        before = len(self._drafts)
        self._drafts = [d for d in self._drafts if d.client_ref != client_ref]
        return len(self._drafts) != before


class BadgeView:
    """Unread badge across many threads, always derived from store reads.

    ``load_all`` returns ``{claim_id: unread}`` for the viewer; ``load_one``
    returns the unread count of one claim.
    """

    def __init__(self, load_all: Callable[[], Mapping[int, int]], load_one: Callable[[int], int]):
        self._load_all = load_all
        self._load_one = load_one
        self._counts: Dict[int, int] = {}
        self._window = _EventWindow()

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    @property
    def claim_ids(self) -> List[int]:
        return list(self._counts)

    def count(self, claim_id: int) -> int:
        return self._counts.get(int(claim_id), 0)

    def reconcile(self) -> int:
        self._counts = {int(k): int(v) for k, v in self._load_all().items() if v}
        return self.total

    def apply(self, event: Mapping[str, Any]) -> bool:
        if event.get("type") == "resync":
            self.reconcile()
            return True
        if event.get("type") not in ("message", "seen") or not self._window.first_time(event):
            return False
        cid = int(event["claimId"])
        fresh = int(self._load_one(cid))
        before = self._counts.get(cid, 0)
        if fresh:
            self._counts[cid] = fresh
        else:
            self._counts.pop(cid, None)
        return fresh != before
