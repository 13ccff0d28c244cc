from marshmallow import EXCLUDE, Schema, fields, validate

from ..store import as_utc


class UTCDateTime(fields.DateTime):
    """ISO-8601 with an explicit UTC offset, whatever the driver returned."""

    def _serialize(self, value, attr, obj, **kwargs):
        return super()._serialize(as_utc(value), attr, obj, **kwargs)


class ClaimSchema(Schema):
    id = fields.Int(dump_only=True)
    item_id = fields.Int(data_key="itemId", required=True)
    claimant_subject_id = fields.Str(data_key="claimantId", dump_only=True)
    status = fields.Str(dump_only=True)
    notes = fields.Str(allow_none=True)
    pickup_code = fields.Str(data_key="pickupCode", dump_only=True, allow_none=True)
    hold_until = UTCDateTime(data_key="holdUntil", dump_only=True, allow_none=True)
    pickup_scheduled_at = UTCDateTime(data_key="pickupScheduledAt", dump_only=True, allow_none=True)
    decided_by = fields.Str(data_key="decidedBy", dump_only=True, allow_none=True)
    approved_at = UTCDateTime(data_key="approvedAt", dump_only=True, allow_none=True)
    picked_up_at = UTCDateTime(data_key="pickedUpAt", dump_only=True, allow_none=True)
    version = fields.Int(dump_only=True)
    created_at = UTCDateTime(data_key="createdAt", dump_only=True)
    updated_at = UTCDateTime(data_key="updatedAt", dump_only=True)


class SubmitClaimSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    item_id = fields.Int(data_key="itemId", required=True, strict=True, validate=validate.Range(min=1))
    notes = fields.Str(allow_none=True, load_default=None, validate=validate.Length(max=4000))


class RequestInfoSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    message = fields.Str(allow_none=True, load_default=None)


class RejectSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    reason = fields.Str(allow_none=True, load_default=None)


class ScheduleSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    # null clears the appointment
    at = fields.AwareDateTime(required=True, allow_none=True, default_timezone=None)


claim_schema = ClaimSchema()
