from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

from flask import current_app, g
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired

from .errors import Unauthenticated
from .models.enums import PRINCIPAL_ROLES, STAFF_ROLES, ViewerRole


@dataclass(frozen=True)
class Principal:
    """An authenticated subject as handed to us by the identity provider."""

    subject_id: str
    role: str = "user"

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def viewer_role(self) -> ViewerRole:
        # Which side of a claim thread this principal speaks for
        return ViewerRole.STAFF if self.is_staff else ViewerRole.CLAIMANT


def _serializer() -> URLSafeTimedSerializer:
    secret = os.getenv("SECRET_KEY", "change-me")
    try:
        secret = current_app.config.get("SECRET_KEY") or secret
    except RuntimeError:
        pass
    # Salt provides namespace isolation for tokens
    return URLSafeTimedSerializer(secret_key=secret, salt="auth-token")


def issue_token(subject_id: str, role: str) -> str:
    """Issue a signed token for a subject.

    Payload is minimal: {"sub": str, "role": str}
    """
    role = role if role in PRINCIPAL_ROLES else "user"
    return _serializer().dumps({"sub": str(subject_id), "role": role})


def verify_token(token: str) -> Tuple[Optional[str], Optional[str]]:
    """Verify a token and return (subject_id, role) if valid, else (None, None).

    Max age configurable via AUTH_TOKEN_MAX_AGE seconds (default 30 days).
    """
    max_age_default = 60 * 60 * 24 * 30  # 30 days
    try:
        max_age = int(current_app.config.get("AUTH_TOKEN_MAX_AGE", max_age_default))
    except (RuntimeError, TypeError, ValueError):
        max_age = max_age_default
    try:
        data = _serializer().loads(token, max_age=max_age)
    except (BadSignature, SignatureExpired):
        return (None, None)
    if not isinstance(data, dict) or not data.get("sub"):
        return (None, None)
    role = str(data.get("role") or "user")
    if role not in PRINCIPAL_ROLES:
        return (None, None)
    return (str(data["sub"]), role)


def current_principal() -> Optional[Principal]:
    return getattr(g, "principal", None)


def require_principal() -> Principal:
    principal = current_principal()
    if principal is None:
        raise Unauthenticated()
    return principal
