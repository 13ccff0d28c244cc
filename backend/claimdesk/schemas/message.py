from marshmallow import EXCLUDE, Schema, fields, validate

from ..models.enums import ClaimStatus, ViewerRole
from .claim import UTCDateTime


class MessageSchema(Schema):
    id = fields.Int(dump_only=True)
    claim_id = fields.Int(data_key="claimId", dump_only=True)
    sender_subject_id = fields.Str(data_key="senderId", dump_only=True)
    sender_role = fields.Function(lambda m: ViewerRole.parse(m.sender_role).value, data_key="senderRole")
    body = fields.Str(dump_only=True)
    created_at = UTCDateTime(data_key="createdAt", dump_only=True)
    seen_by_claimant = fields.Bool(data_key="seenByClaimant", dump_only=True)
    seen_by_staff = fields.Bool(data_key="seenByStaff", dump_only=True)


class SendMessageSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    # Length bounds are enforced by the thread manager against MESSAGE_MAX_LENGTH
    body = fields.Str(required=True)
    # Provisional id of the client's local draft; echoed back, never stored
    client_ref = fields.Str(data_key="clientRef", allow_none=True, load_default=None, validate=validate.Length(max=64))


class ListThreadSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    after_id = fields.Int(data_key="afterId", load_default=None, validate=validate.Range(min=0))


class InboxQuerySchema(Schema):
    class Meta:
        unknown = EXCLUDE

    status = fields.Str(
        load_default=None,
        validate=validate.OneOf(["all"] + [s.value for s in ClaimStatus]),
    )
    unread_only = fields.Bool(data_key="unreadOnly", load_default=False)
    sort = fields.Str(load_default="new", validate=validate.OneOf(["new", "old", "unread"]))
    search = fields.Str(load_default=None)
    limit = fields.Int(load_default=300, validate=validate.Range(min=1, max=300))


class ThreadSummarySchema(Schema):
    claim_id = fields.Int(data_key="claimId")
    item_id = fields.Int(data_key="itemId")
    claimant_subject_id = fields.Str(data_key="claimantId")
    status = fields.Str()
    last_body = fields.Str(data_key="lastBody", allow_none=True)
    last_at = UTCDateTime(data_key="lastAt", allow_none=True)
    unread = fields.Int()
    created_at = UTCDateTime(data_key="createdAt")


message_schema = MessageSchema()
messages_schema = MessageSchema(many=True)
thread_summaries_schema = ThreadSummarySchema(many=True)
