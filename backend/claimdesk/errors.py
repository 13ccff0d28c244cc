"""Error taxonomy shared by the claim engine, the facade and the HTTP layer.

Every error carries the HTTP status the API answers with and a stable machine
code. Only :class:`TransientFailure` is ever retried (by the facade); the rest
are terminal and surfaced verbatim to the caller.
"""
from __future__ import annotations


class ClaimDeskError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str | None = None, **details):
        self.message = message or (type(self).__doc__ or self.code).strip()
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class Unauthorized(ClaimDeskError):
    """Not authorized to act on this claim"""

    status_code = 403
    code = "unauthorized"


class Unauthenticated(Unauthorized):
    """Authentication required"""

    status_code = 401


class InvalidTransition(ClaimDeskError):
    """Claim is not in a state that accepts this operation"""

    status_code = 409
    code = "invalid_transition"


class ConflictingClaim(ClaimDeskError):
    """Another claim already holds this item"""

    status_code = 409
    code = "conflicting_claim"


class ValidationError(ClaimDeskError):
    """Invalid input"""

    status_code = 400
    code = "validation_error"


class NotFound(ClaimDeskError):
    """Not found"""

    status_code = 404
    code = "not_found"


class TransientFailure(ClaimDeskError):
    """Temporary failure, try again"""

    status_code = 503
    code = "transient_failure"


class StoreUnavailable(Exception):
    """Raised inside an operation when the store fails in a retryable way.

    The facade retries these with backoff and converts them into
    :class:`TransientFailure` once attempts are exhausted.
    """
