from enum import Enum

from ..extensions import db


class ClaimStatus(str, Enum):
    PENDING = "pending"
    NEEDS_INFO = "needs_info"
    APPROVED = "approved"
    REJECTED = "rejected"
    PICKED_UP = "picked_up"


class ViewerRole(str, Enum):
    """The two sides of a claim thread. Staff and admins both speak as staff."""

    CLAIMANT = "claimant"
    STAFF = "staff"

    @property
    def counterpart(self) -> "ViewerRole":
        return ViewerRole.STAFF if self is ViewerRole.CLAIMANT else ViewerRole.CLAIMANT

    @classmethod
    def parse(cls, raw) -> "ViewerRole":
        # Older rows were written with "student" for the claimant side
        value = str(getattr(raw, "value", raw) or "").strip().lower()
        if value == "student":
            return cls.CLAIMANT
        return cls(value)


PRINCIPAL_ROLES = ("user", "staff", "admin")
STAFF_ROLES = frozenset({"staff", "admin"})

# Claims holding an item; at most one per item
ACTIVE_STATUSES = (ClaimStatus.APPROVED.value, ClaimStatus.PICKED_UP.value)
# Claims still in play for their claimant
OPEN_STATUSES = (ClaimStatus.PENDING.value, ClaimStatus.NEEDS_INFO.value, ClaimStatus.APPROVED.value)
TERMINAL_STATUSES = (ClaimStatus.REJECTED.value, ClaimStatus.PICKED_UP.value)

# Portable enum column types (native ENUM on PostgreSQL, CHECK constraint elsewhere)
claim_status_enum = db.Enum(*(s.value for s in ClaimStatus), name="claim_status_enum")
sender_role_enum = db.Enum("claimant", "staff", "student", name="sender_role_enum")
