import threading
from datetime import timedelta
from queue import Empty

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from claimdesk import audit, create_app, facade
from claimdesk.errors import ConflictingClaim, InvalidTransition, NotFound, StoreUnavailable, TransientFailure, Unauthorized
from claimdesk.extensions import db
from claimdesk.models.audit_log import AuditLog
from claimdesk.models.claim import Claim
from claimdesk.modules.claims import service as claims
from claimdesk.modules.notifications import bus
from claimdesk.security import Principal
from claimdesk.store import unit_of_work, utcnow
from claimdesk.tasks.jobs.holds import sweep_expired_holds


def _drain(sub) -> list[dict]:
    events = []
    while True:
        try:
            events.append(sub.get(timeout=0.01))
        except Empty:
            return events


# =============================================================================
# Retry policy
# =============================================================================

def test_transient_store_failure_is_retried(app, staff, make_claim, monkeypatch):
    claim = make_claim()
    real = claims.approve
    calls = {"n": 0}

    def flaky(claim_id, actor):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StoreUnavailable("connection reset")
        return real(claim_id, actor)

    monkeypatch.setattr(claims, "approve", flaky)
    result = facade.approve_claim(staff, claim.id)
    assert result.claim.status == "approved"
    assert calls["n"] == 2


def test_exhausted_retries_surface_transient_failure(app, staff, make_claim, monkeypatch):
    claim = make_claim()
    app.config["STORE_RETRY_ATTEMPTS"] = 3
    calls = {"n": 0}

    def down(*args, **kwargs):
        calls["n"] += 1
        raise StoreUnavailable("timeout")

    monkeypatch.setattr(claims, "reject", down)
    with pytest.raises(TransientFailure) as err:
        facade.reject_claim(staff, claim.id, "no")
    assert err.value.status_code == 503
    assert calls["n"] == 3


def test_terminal_errors_are_not_retried(app, staff, monkeypatch):
    calls = {"n": 0}

    def missing(*args, **kwargs):
        calls["n"] += 1
        raise NotFound()

    monkeypatch.setattr(claims, "approve", missing)
    with pytest.raises(NotFound):
        facade.approve_claim(staff, 1)
    assert calls["n"] == 1


def test_unit_of_work_translates_operational_errors(app):
    with pytest.raises(StoreUnavailable):
        with unit_of_work():
            raise OperationalError("UPDATE claims", {}, Exception("database is locked"))


# =============================================================================
# Authorization
# =============================================================================

def test_claimant_sees_only_own_claims(app, claimant, other_claimant, make_claim):
    claim = make_claim(subject_id=claimant.subject_id)
    assert facade.get_claim(claimant, claim.id).id == claim.id
    with pytest.raises(NotFound):
        facade.get_claim(other_claimant, claim.id)
    with pytest.raises(Unauthorized):
        facade.unread_count(other_claimant, claim.id)
    with pytest.raises(Unauthorized):
        facade.send_message(other_claimant, claim.id, "mine?")


def test_staff_role_comes_from_principal(app, make_claim):
    claim = make_claim()
    admin = Principal(subject_id="admin-1", role="admin")
    msg = facade.send_message(admin, claim.id, "Please bring ID")
    assert msg.sender_role == "staff"
    assert facade.get_unread_badge(Principal("student-1"))["total"] == 1


# =============================================================================
# Events
# =============================================================================

def test_committed_changes_reach_every_topic(app, claimant, staff, make_claim):
    claim = make_claim(subject_id=claimant.subject_id)
    thread_sub = bus.subscribe(bus.claim_topic(claim.id))
    badge_sub = bus.subscribe(bus.subject_topic(claimant.subject_id))
    staff_sub = bus.subscribe(bus.STAFF_TOPIC)
    try:
        facade.send_message(claimant, claim.id, "hello", client_ref="draft-1")
        facade.approve_claim(staff, claim.id)

        events = _drain(thread_sub)
        assert [e["type"] for e in events] == ["message", "claim"]
        assert events[0]["clientRef"] == "draft-1"
        assert events[0]["message"]["body"] == "hello"
        assert events[1]["claim"]["status"] == "approved"
        assert events[1]["claim"]["version"] == 2
        assert len(_drain(badge_sub)) == 2
        assert len(_drain(staff_sub)) == 2
    finally:
        for sub in (thread_sub, badge_sub, staff_sub):
            sub.close()


def test_transition_returns_after_publishing_snapshot(app, claimant, staff, make_claim):
    claim = make_claim(subject_id=claimant.subject_id)
    sub = bus.subscribe(bus.claim_topic(claim.id))
    try:
        result = facade.approve_claim(staff, claim.id)
        assert len(result.pickup_code) == 6
        (event,) = _drain(sub)
        assert event["type"] == "claim"
        assert event["claimId"] == claim.id
        assert event["action"] == "approve_claim"
        assert event["actorId"] == "staff-1"
        assert event["claim"]["id"] == claim.id
        assert event["claim"]["status"] == "approved"
    finally:
        sub.close()


def test_failed_operation_publishes_nothing(app, staff, make_claim):
    claim = make_claim()
    facade.reject_claim(staff, claim.id)
    sub = bus.subscribe(bus.claim_topic(claim.id))
    try:
        with pytest.raises(InvalidTransition):
            facade.approve_claim(staff, claim.id)
        assert _drain(sub) == []
    finally:
        sub.close()


def test_mark_seen_event_only_when_something_flipped(app, claimant, staff, make_claim):
    claim = make_claim(subject_id=claimant.subject_id)
    facade.send_message(claimant, claim.id, "any news?")
    sub = bus.subscribe(bus.claim_topic(claim.id))
    try:
        assert facade.mark_thread_seen(staff, claim.id) == 1
        assert facade.mark_thread_seen(staff, claim.id) == 0
        events = _drain(sub)
        assert [(e["type"], e["viewerRole"]) for e in events] == [("seen", "staff")]
    finally:
        sub.close()


def test_request_info_publishes_status_and_note(app, claimant, staff, make_claim):
    claim = make_claim(subject_id=claimant.subject_id)
    sub, view = facade.open_thread(claimant, claim.id)
    try:
        result = facade.request_info_claim(staff, claim.id, "Describe the sticker on the lid")
        assert result.claim.status == "needs_info"
        for event in _drain(sub):
            view.apply(event)
        assert view.claim["status"] == "needs_info"
        assert view.last_body == "Describe the sticker on the lid"
        assert view.unread() == 1
        assert facade.get_unread_badge(claimant) == {"total": 1, "byClaim": {claim.id: 1}}
    finally:
        sub.close()


def test_reconnect_does_not_duplicate(app, claimant, staff, make_claim):
    claim = make_claim(subject_id=claimant.subject_id)
    facade.send_message(claimant, claim.id, "one")
    sub, view = facade.open_thread(staff, claim.id)
    facade.send_message(claimant, claim.id, "two")
    for event in _drain(sub):
        view.apply(event)
    sub.close()

    # Disconnected: this one never reaches the view through the bus
    facade.send_message(claimant, claim.id, "three")

    # Reconnect: subscribe, then re-fetch; "four" lands in both the mailbox and the fetch
    sub = bus.subscribe(bus.claim_topic(claim.id))
    try:
        facade.send_message(claimant, claim.id, "four")
        facade.load_thread_view(staff, claim.id, view)
        for event in _drain(sub):
            view.apply(event)
        assert [m["body"] for m in view.messages] == ["one", "two", "three", "four"]
        assert view.unread() == 4
    finally:
        sub.close()


def test_badge_view_follows_store(app, claimant, staff, make_claim):
    claim = make_claim(subject_id=claimant.subject_id)
    sub, badge = facade.open_badge(claimant)
    try:
        assert badge.total == 0
        facade.send_message(staff, claim.id, "Your item is here")
        facade.send_message(staff, claim.id, "Desk closes at 5")
        for event in _drain(sub):
            badge.apply(event)
        assert badge.total == 2
        facade.mark_thread_seen(claimant, claim.id)
        for event in _drain(sub):
            badge.apply(event)
        assert badge.total == 0
    finally:
        sub.close()


# =============================================================================
# Audit
# =============================================================================

def test_audit_failure_does_not_undo_the_change(app, staff, make_claim, monkeypatch):
    claim = make_claim()

    class BrokenSession:
        def __init__(self, *args, **kwargs):
            pass

        def __enter__(self):
            raise OperationalError("INSERT INTO audit_log", {}, Exception("disk full"))

        def __exit__(self, *exc):
            return False

    monkeypatch.setattr(audit, "Session", BrokenSession)
    result = facade.approve_claim(staff, claim.id)
    assert result.claim.status == "approved"
    assert db.session.get(Claim, claim.id, populate_existing=True).status == "approved"
    assert AuditLog.query.count() == 0


# =============================================================================
# Hold sweep
# =============================================================================

def test_sweep_reports_each_lapsed_hold_once(app, staff, make_claim):
    claim = make_claim()
    claims.approve(claim.id, staff)
    db.session.execute(update(Claim).where(Claim.id == claim.id).values(hold_until=utcnow() - timedelta(hours=2)))
    db.session.commit()
    sub = bus.subscribe(bus.STAFF_TOPIC)
    try:
        assert sweep_expired_holds() == [claim.id]
        assert sweep_expired_holds() == []
        assert [e["type"] for e in _drain(sub)] == ["hold_expired"]
    finally:
        sub.close()
    # Advisory only: the claim is still approved and can be handed over
    assert db.session.get(Claim, claim.id, populate_existing=True).status == "approved"
    assert claims.mark_picked_up(claim.id, staff).hold_expired is True


# =============================================================================
# Concurrent approvals
# =============================================================================

def test_concurrent_approvals_admit_exactly_one(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_DATABASE_URL", f"sqlite:///{tmp_path / 'race.db'}")
    app = create_app("testing")
    app.config["STORE_RETRY_ATTEMPTS"] = 5
    staff = Principal(subject_id="staff-1", role="staff")
    with app.app_context():
        db.create_all()
        ids = []
        for n in range(5):
            claim = Claim(item_id=1, claimant_subject_id=f"student-{n}", status="pending", version=1, updated_at=utcnow())
            db.session.add(claim)
            db.session.commit()
            ids.append(claim.id)
        db.session.remove()

    outcomes: list[str] = []
    lock = threading.Lock()
    start = threading.Barrier(len(ids))

    def approve(claim_id: int):
        with app.app_context():
            start.wait()
            try:
                facade.approve_claim(staff, claim_id)
                outcome = "ok"
            except ConflictingClaim:
                outcome = "conflict"
            except TransientFailure:
                outcome = "busy"
            finally:
                db.session.remove()
        with lock:
            outcomes.append(outcome)

    workers = [threading.Thread(target=approve, args=(cid,)) for cid in ids]
    for t in workers:
        t.start()
    for t in workers:
        t.join(timeout=30)

    assert outcomes.count("ok") == 1
    assert outcomes.count("ok") + outcomes.count("conflict") == len(ids)
    with app.app_context():
        approved = Claim.query.filter_by(item_id=1, status="approved").all()
        assert len(approved) == 1
        db.session.remove()
        db.engine.dispose()
