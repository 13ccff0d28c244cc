from flask import Blueprint, jsonify, request

from ... import facade
from ...schemas.claim import (
    RejectSchema,
    RequestInfoSchema,
    ScheduleSchema,
    SubmitClaimSchema,
    claim_schema,
)
from ...schemas.message import message_schema
from ...security import require_principal
from ...store import isoformat
from .service import TransitionResult

bp = Blueprint("claims", __name__, url_prefix="/claims")

_STATUS_LABELS = {
    "pending": "Pending Claim",
    "needs_info": "More Info Needed",
    "approved": "Approved",
    "rejected": "Rejected",
    "picked_up": "Picked Up",
}


def _status_label(internal: str | None) -> str | None:
    if not internal:
        return None
    return _STATUS_LABELS.get(internal.lower(), internal)


def _claim_to_dict(claim) -> dict:
    data = claim_schema.dump(claim)
    data["statusLabel"] = _status_label(claim.status)
    return data


def _transition_response(result: TransitionResult):
    body = {"claim": _claim_to_dict(result.claim), "previousStatus": result.previous_status}
    if result.pickup_code:
        body["pickupCode"] = result.pickup_code
    if result.hold_until:
        body["holdUntil"] = isoformat(result.hold_until)
    if result.hold_expired:
        body["holdExpired"] = True
    if result.message is not None:
        body["message"] = message_schema.dump(result.message)
    if result.message_error:
        body["messageError"] = result.message_error
    return jsonify(body)


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


@bp.post("")
def submit_claim():
    principal = require_principal()
    data = SubmitClaimSchema().load(_json_body())
    claim = facade.submit_claim(principal, data["item_id"], data["notes"])
    return jsonify({"claim": _claim_to_dict(claim)}), 201


@bp.get("/<int:claim_id>")
def get_claim(claim_id: int):
    claim = facade.get_claim(require_principal(), claim_id)
    return jsonify({"claim": _claim_to_dict(claim)})


@bp.get("/items/<int:item_id>/latest")
def latest_claim_for_item(item_id: int):
    """Most recent claim on an item, for the staff item drawer."""
    claim = facade.latest_claim_for_item(require_principal(), item_id)
    return jsonify({"claim": _claim_to_dict(claim) if claim else None})


@bp.post("/<int:claim_id>/approve")
def approve_claim(claim_id: int):
    return _transition_response(facade.approve_claim(require_principal(), claim_id))


@bp.post("/<int:claim_id>/request-info")
def request_info_claim(claim_id: int):
    principal = require_principal()
    data = RequestInfoSchema().load(_json_body())
    return _transition_response(facade.request_info_claim(principal, claim_id, data["message"]))


@bp.post("/<int:claim_id>/reject")
def reject_claim(claim_id: int):
    principal = require_principal()
    data = RejectSchema().load(_json_body())
    return _transition_response(facade.reject_claim(principal, claim_id, data["reason"]))


@bp.post("/<int:claim_id>/picked-up")
def mark_picked_up(claim_id: int):
    return _transition_response(facade.mark_picked_up(require_principal(), claim_id))


@bp.post("/pickup/<string:code>")
def redeem_pickup_code(code: str):
    """Hand over the item for the pickup code presented at the desk."""
    return _transition_response(facade.redeem_pickup_code(require_principal(), code))


@bp.put("/<int:claim_id>/schedule")
def schedule_pickup(claim_id: int):
    principal = require_principal()
    data = ScheduleSchema().load(_json_body())
    claim = facade.schedule_pickup(principal, claim_id, data["at"])
    return jsonify({"claim": _claim_to_dict(claim)})
