"""
Test configuration and fixtures.

Provides:
- Flask app on an in-memory SQLite store, schema created per test
- Principals for a claimant, a second claimant and a staff member
- Header helpers for authenticated API calls
- Factories for claims and messages
"""
import pytest

from claimdesk import create_app
from claimdesk.extensions import db
from claimdesk.models.claim import Claim
from claimdesk.models.enums import ClaimStatus
from claimdesk.modules.notifications import bus
from claimdesk.security import Principal, issue_token
from claimdesk.store import utcnow


# =============================================================================
# App / database
# =============================================================================

@pytest.fixture()
def app():
    app = create_app("testing")
    bus.reset()
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
    bus.reset()


@pytest.fixture()
def client(app):
    return app.test_client()


# =============================================================================
# Principals
# =============================================================================

@pytest.fixture()
def claimant() -> Principal:
    return Principal(subject_id="student-1", role="user")


@pytest.fixture()
def other_claimant() -> Principal:
    return Principal(subject_id="student-2", role="user")


@pytest.fixture()
def staff() -> Principal:
    return Principal(subject_id="staff-1", role="staff")


def auth_headers(principal: Principal) -> dict:
    return {"Authorization": f"Bearer {issue_token(principal.subject_id, principal.role)}"}


@pytest.fixture()
def headers(app):
    """Build bearer headers for a principal: ``headers(staff)``."""
    return auth_headers


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture()
def make_claim(app):
    def _make(item_id: int = 100, subject_id: str = "student-1", status: ClaimStatus = ClaimStatus.PENDING, **extra) -> Claim:
        claim = Claim(
            item_id=item_id,
            claimant_subject_id=subject_id,
            status=status.value,
            version=1,
            updated_at=utcnow(),
            **extra,
        )
        db.session.add(claim)
        db.session.commit()
        return claim

    return _make
