from claimdesk.modules.claims import service as claims
from claimdesk.modules.notifications import bus


def _dev(subject_id: str, role: str = "user") -> dict:
    return {"X-User-Id": subject_id, "X-User-Role": role}


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok"}
    assert client.get("/db-check").get_json() == {"db": "ok"}


def test_unauthenticated_is_401(client):
    resp = client.post("/api/v1/claims", json={"itemId": 1})
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "unauthorized"


def test_bad_token_is_401(client):
    resp = client.get("/api/v1/messages/unread", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401


def test_submit_and_fetch_claim(client, claimant, other_claimant, staff, headers):
    resp = client.post("/api/v1/claims", json={"itemId": 12, "notes": "black umbrella"}, headers=headers(claimant))
    assert resp.status_code == 201
    claim = resp.get_json()["claim"]
    assert claim["status"] == "pending"
    assert claim["statusLabel"] == "Pending Claim"
    assert claim["claimantId"] == "student-1"
    assert claim["version"] == 1

    again = client.post("/api/v1/claims", json={"itemId": 12}, headers=headers(claimant))
    assert again.status_code == 409
    assert again.get_json()["code"] == "conflicting_claim"

    assert client.get(f"/api/v1/claims/{claim['id']}", headers=headers(claimant)).status_code == 200
    assert client.get(f"/api/v1/claims/{claim['id']}", headers=headers(other_claimant)).status_code == 404
    assert client.get(f"/api/v1/claims/{claim['id']}", headers=headers(staff)).status_code == 200


def test_submit_validation(client, claimant, headers):
    resp = client.post("/api/v1/claims", json={"itemId": "12"}, headers=headers(claimant))
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["code"] == "validation_error"
    assert "itemId" in body["details"]


def test_staff_decisions_over_http(client, make_claim, staff, headers):
    claim = make_claim()
    resp = client.post(f"/api/v1/claims/{claim.id}/approve", headers=headers(staff))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["claim"]["status"] == "approved"
    assert body["previousStatus"] == "pending"
    assert len(body["pickupCode"]) == 6
    assert body["holdUntil"].endswith("+00:00")

    dup = client.post(f"/api/v1/claims/{claim.id}/approve", headers=headers(staff))
    assert dup.status_code == 409
    assert dup.get_json()["code"] == "invalid_transition"

    scheduled = client.put(
        f"/api/v1/claims/{claim.id}/schedule",
        json={"at": "2030-05-01T14:30:00+00:00"},
        headers=headers(staff),
    )
    assert scheduled.status_code == 200
    assert scheduled.get_json()["claim"]["pickupScheduledAt"].startswith("2030-05-01T14:30:00")

    naive = client.put(f"/api/v1/claims/{claim.id}/schedule", json={"at": "2030-05-01T14:30:00"}, headers=headers(staff))
    assert naive.status_code == 400

    done = client.post(f"/api/v1/claims/pickup/{body['pickupCode'].lower()}", headers=headers(staff))
    assert done.status_code == 200
    assert done.get_json()["claim"]["status"] == "picked_up"
    assert done.get_json()["claim"]["statusLabel"] == "Picked Up"


def test_claimant_cannot_approve(client, make_claim, claimant, headers):
    claim = make_claim()
    resp = client.post(f"/api/v1/claims/{claim.id}/approve", headers=headers(claimant))
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "unauthorized"


def test_request_info_then_reply(client, make_claim, claimant, staff, headers):
    claim = make_claim(subject_id=claimant.subject_id)
    resp = client.post(
        f"/api/v1/claims/{claim.id}/request-info",
        json={"message": "What is written on the tag?"},
        headers=headers(staff),
    )
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["claim"]["status"] == "needs_info"
    assert body["message"]["senderRole"] == "staff"
    assert "messageError" not in body

    badge = client.get("/api/v1/messages/unread", headers=headers(claimant)).get_json()
    assert badge == {"total": 1, "byClaim": {str(claim.id): 1}}

    thread = client.get(f"/api/v1/claims/{claim.id}/messages", headers=headers(claimant)).get_json()
    assert [m["body"] for m in thread["messages"]] == ["What is written on the tag?"]
    assert thread["unread"] == 1

    seen = client.post(f"/api/v1/claims/{claim.id}/messages/seen", headers=headers(claimant))
    assert seen.get_json() == {"marked": 1}

    reply = client.post(
        f"/api/v1/claims/{claim.id}/messages",
        json={"body": "It says 'Property of J.'", "clientRef": "local-7"},
        headers=headers(claimant),
    )
    assert reply.status_code == 201
    assert reply.get_json()["clientRef"] == "local-7"
    assert reply.get_json()["message"]["seenByClaimant"] is True

    after = client.get(
        f"/api/v1/claims/{claim.id}/messages?afterId={body['message']['id']}",
        headers=headers(staff),
    ).get_json()
    assert [m["body"] for m in after["messages"]] == ["It says 'Property of J.'"]
    assert after["unread"] == 1


def test_empty_message_is_400(client, make_claim, claimant, headers):
    claim = make_claim(subject_id=claimant.subject_id)
    resp = client.post(f"/api/v1/claims/{claim.id}/messages", json={"body": "   "}, headers=headers(claimant))
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "validation_error"


def test_foreign_thread_is_403(client, make_claim, other_claimant, headers):
    claim = make_claim(subject_id="student-1")
    resp = client.get(f"/api/v1/claims/{claim.id}/messages", headers=headers(other_claimant))
    assert resp.status_code == 403


def test_inbox_over_http(client, make_claim, staff):
    claim = make_claim()
    client.post(f"/api/v1/claims/{claim.id}/messages", json={"body": "hello?"}, headers=_dev("student-1"))
    threads = client.get("/api/v1/messages/threads?unreadOnly=true", headers=_dev("staff-1", "staff")).get_json()["threads"]
    assert [(t["claimId"], t["unread"], t["lastBody"]) for t in threads] == [(claim.id, 1, "hello?")]

    bad = client.get("/api/v1/messages/threads?sort=sideways", headers=_dev("staff-1", "staff"))
    assert bad.status_code == 400


def test_store_outage_is_503(client, make_claim, staff, monkeypatch, headers):
    from claimdesk.errors import StoreUnavailable

    claim = make_claim()

    def down(*args, **kwargs):
        raise StoreUnavailable("connection refused")

    monkeypatch.setattr(claims, "reject", down)
    resp = client.post(f"/api/v1/claims/{claim.id}/reject", json={"reason": "x"}, headers=headers(staff))
    assert resp.status_code == 503
    assert resp.get_json()["code"] == "transient_failure"


def test_latest_claim_is_staff_only(client, make_claim, claimant, staff, headers):
    claim = make_claim(item_id=55)
    assert client.get("/api/v1/claims/items/55/latest", headers=headers(claimant)).status_code == 403
    body = client.get("/api/v1/claims/items/55/latest", headers=headers(staff)).get_json()
    assert body["claim"]["id"] == claim.id


def test_thread_stream_starts_with_resync(app, client, make_claim, claimant, staff, headers):
    claim = make_claim(subject_id=claimant.subject_id)
    resp = client.get(f"/api/v1/notifications/claims/{claim.id}/stream", headers=headers(staff))
    assert resp.status_code == 200
    assert resp.headers["Content-Type"].startswith("text/event-stream")
    stream = iter(resp.response)
    try:
        first = next(stream).decode()
        assert first.startswith("event: resync\n")
        assert bus.subscriber_count(bus.claim_topic(claim.id)) == 1

        client.post(f"/api/v1/claims/{claim.id}/messages", json={"body": "ping me"}, headers=headers(claimant))
        second = next(stream).decode()
        assert second.startswith("event: message\n")
        assert "ping me" in second
    finally:
        resp.close()
    assert bus.subscriber_count(bus.claim_topic(claim.id)) == 0


def test_stream_for_foreign_claim_is_rejected(client, make_claim, other_claimant, headers):
    claim = make_claim(subject_id="student-1")
    resp = client.get(f"/api/v1/notifications/claims/{claim.id}/stream", headers=headers(other_claimant))
    assert resp.status_code == 403
    assert bus.subscriber_count(bus.claim_topic(claim.id)) == 0


def test_dev_role_header_ignored_outside_testing(app, client, make_claim):
    make_claim(item_id=56)
    app.config["TESTING"] = False
    try:
        resp = client.get("/api/v1/claims/items/56/latest", headers=_dev("mallory", "admin"))
        assert resp.status_code == 403
        # The dev id shortcut itself still works in DEBUG, as a plain user
        own = client.get("/api/v1/messages/unread", headers=_dev("mallory", "admin"))
        assert own.status_code == 200
    finally:
        app.config["TESTING"] = True


def test_nul_in_message_is_400(client, make_claim, claimant, headers):
    claim = make_claim(subject_id=claimant.subject_id)
    resp = client.post(f"/api/v1/claims/{claim.id}/messages", json={"body": "hi\u0000there"}, headers=headers(claimant))
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "validation_error"
