from sqlalchemy import func, Index, UniqueConstraint, text
from ..extensions import db
from .enums import claim_status_enum


class Claim(db.Model):
    __tablename__ = "claims"

    id = db.Column(db.BigInteger().with_variant(db.Integer, "sqlite"), primary_key=True)
    # Items live in the catalogue service; only the reference is kept here
    item_id = db.Column(db.BigInteger, nullable=False)
    claimant_subject_id = db.Column(db.String(64), nullable=False)
    status = db.Column(claim_status_enum, nullable=False, default="pending", server_default="pending")
    notes = db.Column(db.Text)
    pickup_code = db.Column(db.String(16))
    hold_until = db.Column(db.DateTime(timezone=True))
    pickup_scheduled_at = db.Column(db.DateTime(timezone=True))
    decided_by = db.Column(db.String(64))
    approved_at = db.Column(db.DateTime(timezone=True))
    picked_up_at = db.Column(db.DateTime(timezone=True))
    version = db.Column(db.Integer, nullable=False, default=1, server_default="1")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("pickup_code", name="uq_claims_pickup_code"),
        # First committed approval wins; a second approved/picked_up row for the item is rejected by the store
        Index(
            "uq_claims_item_active",
            "item_id",
            unique=True,
            postgresql_where=text("status IN ('approved', 'picked_up')"),
            sqlite_where=text("status IN ('approved', 'picked_up')"),
        ),
        Index(
            "uq_claims_item_claimant_open",
            "item_id",
            "claimant_subject_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'needs_info', 'approved')"),
            sqlite_where=text("status IN ('pending', 'needs_info', 'approved')"),
        ),
        Index("idx_claims_item", "item_id"),
        Index("idx_claims_claimant", "claimant_subject_id"),
        Index("idx_claims_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Claim {self.id} item={self.item_id} status={self.status}>"
