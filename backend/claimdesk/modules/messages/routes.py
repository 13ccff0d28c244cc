from flask import Blueprint, jsonify, request

from ... import facade
from ...schemas.message import (
    InboxQuerySchema,
    ListThreadSchema,
    SendMessageSchema,
    message_schema,
    messages_schema,
    thread_summaries_schema,
)
from ...security import require_principal

bp = Blueprint("messages", __name__)


@bp.get("/claims/<int:claim_id>/messages")
def list_messages(claim_id: int):
    principal = require_principal()
    args = ListThreadSchema().load(request.args)
    msgs = facade.list_thread(principal, claim_id, args["after_id"])
    return jsonify({
        "messages": messages_schema.dump(msgs),
        "unread": facade.unread_count(principal, claim_id),
    })


@bp.post("/claims/<int:claim_id>/messages")
def send_message(claim_id: int):
    principal = require_principal()
    data = SendMessageSchema().load(request.get_json(silent=True) or {})
    msg = facade.send_message(principal, claim_id, data["body"], data["client_ref"])
    return jsonify({"message": message_schema.dump(msg), "clientRef": data["client_ref"]}), 201


@bp.post("/claims/<int:claim_id>/messages/seen")
def mark_seen(claim_id: int):
    """Flip the caller's seen flag on everything the other side sent."""
    marked = facade.mark_thread_seen(require_principal(), claim_id)
    return jsonify({"marked": marked})


@bp.get("/messages/unread")
def unread_badge():
    badge = facade.get_unread_badge(require_principal())
    # JSON object keys are strings
    return jsonify({"total": badge["total"], "byClaim": {str(k): v for k, v in badge["byClaim"].items()}})


@bp.get("/messages/threads")
def list_threads():
    principal = require_principal()
    filters = InboxQuerySchema().load(request.args)
    threads = facade.list_inbox(principal, **filters)
    return jsonify({"threads": thread_summaries_schema.dump(threads)})
