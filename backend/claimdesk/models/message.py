from sqlalchemy import Index, false, func
from ..extensions import db
from .enums import sender_role_enum


class Message(db.Model):
    __tablename__ = "claim_messages"

    # Insertion sequence; breaks ties between messages stamped with the same created_at
    id = db.Column(db.BigInteger().with_variant(db.Integer, "sqlite"), primary_key=True)
    claim_id = db.Column(db.BigInteger, db.ForeignKey("claims.id", ondelete="CASCADE"), nullable=False)
    sender_subject_id = db.Column(db.String(64), nullable=False)
    sender_role = db.Column(sender_role_enum, nullable=False)
    body = db.Column(db.Text, nullable=False)
    seen_by_claimant = db.Column(db.Boolean, nullable=False, default=False, server_default=false())
    seen_by_staff = db.Column(db.Boolean, nullable=False, default=False, server_default=false())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("idx_claim_messages_thread", "claim_id", "created_at", "id"),
        Index("idx_claim_messages_unseen_staff", "claim_id", "seen_by_staff"),
        Index("idx_claim_messages_unseen_claimant", "claim_id", "seen_by_claimant"),
    )

    def __repr__(self) -> str:
        return f"<Message {self.id} claim={self.claim_id} from={self.sender_role}>"
