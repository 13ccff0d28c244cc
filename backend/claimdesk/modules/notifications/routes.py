from __future__ import annotations

import json
import logging
import time
from queue import Empty

from flask import Blueprint, Response, current_app, stream_with_context

from ... import facade
from ...security import require_principal
from .views import BadgeView, ThreadView

bp = Blueprint("notifications", __name__, url_prefix="/notifications")

_logger = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _sse(event: str, data) -> str:
    return f"event: {event}\n" + f"data: {json.dumps(data)}\n\n"


def _ping() -> str:
    return _sse("ping", {"ts": int(time.time())})


def _thread_state(view: ThreadView) -> dict:
    return {"claimId": view.claim_id, "claim": view.claim, "messages": view.messages, "unread": view.unread()}


def _badge_state(view: BadgeView, counts: dict) -> dict:
    return {"total": view.total, "byClaim": {str(k): v for k, v in counts.items()}}


def _keepalive() -> float:
    # Keep below gunicorn's timeout to ensure periodic yields
    return float(current_app.config.get("SSE_KEEPALIVE_SECONDS", 15))


@bp.get("/claims/<int:claim_id>/stream")
def stream_thread(claim_id: int):
    """Server-Sent Events for one claim thread.

    The first event is a ``resync`` carrying the full thread; after that the
    client receives ``message``, ``claim`` and ``seen`` increments, plus another
    ``resync`` whenever this subscriber fell behind.
    """
    principal = require_principal()
    sub, view = facade.open_thread(principal, claim_id)
    keepalive = _keepalive()

    def event_stream():
        try:
            yield _sse("resync", _thread_state(view))
            while True:
                try:
                    evt = sub.get(timeout=keepalive)
                except Empty:
                    yield _ping()
                    continue
                if evt.get("type") == "resync":
                    facade.load_thread_view(principal, claim_id, view)
                    yield _sse("resync", _thread_state(view))
                    continue
                if view.apply(evt):
                    yield _sse(evt["type"], evt)
        finally:
            sub.close()
            _logger.debug("thread stream for claim %s closed", claim_id)

    return Response(stream_with_context(event_stream()), headers=_SSE_HEADERS)


@bp.get("/stream")
def stream_badge():
    """Server-Sent Events for the caller's unread badge across all threads."""
    principal = require_principal()
    sub, view = facade.open_badge(principal)
    keepalive = _keepalive()

    def counts() -> dict:
        return {cid: view.count(cid) for cid in sorted(view.claim_ids)}

    def event_stream():
        try:
            yield _sse("badge", _badge_state(view, counts()))
            while True:
                try:
                    evt = sub.get(timeout=keepalive)
                except Empty:
                    yield _ping()
                    continue
                if view.apply(evt):
                    yield _sse("badge", _badge_state(view, counts()))
        finally:
            sub.close()

    return Response(stream_with_context(event_stream()), headers=_SSE_HEADERS)
