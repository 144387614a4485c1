"""HTTP surface: auth, error contract, and the main flows end to end."""
import jwt
import pytest

from promptpro.core.config import settings


CONTENT = "Draft a friendly follow-up email."


@pytest.fixture
def users(make_user):
    for user_id in ("u1", "u2", "u3"):
        make_user(user_id)


def _create_team(client, auth_headers, owner="u1", name="Writers"):
    resp = client.post("/v1/teams", json={"name": name}, headers=auth_headers(owner))
    assert resp.status_code == 200
    return resp.json()["data"]["id"]


def test_healthz_and_readyz(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/readyz").json()["store"] == "memory"


def test_missing_auth_is_unauthorized(client):
    resp = client.post("/v1/teams", json={"name": "Writers"})
    assert resp.status_code == 401
    body = resp.json()
    assert body["error"]["code"] == "unauthorized"
    assert body["error"]["request_id"] == resp.headers["x-request-id"]


def test_request_id_is_echoed(client, auth_headers):
    resp = client.get("/v1/quota", headers={**auth_headers("ghost"), "x-request-id": "rid-42"})
    assert resp.headers["x-request-id"] == "rid-42"
    assert resp.json()["error"]["request_id"] == "rid-42"


def test_user_id_header_rejected_in_production(client, auth_headers, monkeypatch):
    monkeypatch.setattr(settings, "ENV", "production")
    resp = client.post("/v1/teams", json={"name": "Writers"}, headers=auth_headers("u1"))
    assert resp.status_code == 401


def test_bearer_jwt(client, users, monkeypatch):
    monkeypatch.setattr(settings, "JWT_SECRET_KEY", "test-secret")
    token = jwt.encode({"sub": "u1"}, "test-secret", algorithm="HS256")

    ok = client.post("/v1/teams", json={"name": "Writers"}, headers={"Authorization": f"Bearer {token}"})
    assert ok.status_code == 200
    assert ok.json()["data"]["members"][0]["user_id"] == "u1"

    bad = client.post("/v1/teams", json={"name": "Writers"}, headers={"Authorization": "Bearer not-a-jwt"})
    assert bad.status_code == 401


def test_team_membership_flow(client, users, auth_headers, audit_events):
    team_id = _create_team(client, auth_headers)

    added = client.post(f"/v1/teams/{team_id}/members", json={"email": "u2@example.com", "role": "admin"},
                        headers=auth_headers("u1"))
    assert added.status_code == 200

    members = client.get(f"/v1/teams/{team_id}/members", headers=auth_headers("u2")).json()
    assert [(m["user_id"], m["role"]) for m in members["data"]] == [("u1", "owner"), ("u2", "admin")]

    kick_owner = client.delete(f"/v1/teams/{team_id}/members/u1", headers=auth_headers("u2"))
    assert kick_owner.status_code == 403
    assert kick_owner.json()["error"]["code"] == "forbidden"

    left = client.delete(f"/v1/teams/{team_id}/members/u2", headers=auth_headers("u2"))
    assert left.status_code == 200
    assert [m["user_id"] for m in left.json()["data"]["members"]] == ["u1"]

    actions = [e["action"] for e in audit_events()]
    assert "remove_team_member_denied" in actions
    assert "leave_team" in actions


def test_team_membership_errors(client, users, auth_headers):
    team_id = _create_team(client, auth_headers)

    missing = client.post(f"/v1/teams/{team_id}/members", json={"email": "nobody@example.com"},
                          headers=auth_headers("u1"))
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "user_not_found"

    client.post(f"/v1/teams/{team_id}/members", json={"email": "u2@example.com"}, headers=auth_headers("u1"))
    dup = client.post(f"/v1/teams/{team_id}/members", json={"email": "u2@example.com"},
                      headers=auth_headers("u1"))
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "already_member"

    promote = client.patch(f"/v1/teams/{team_id}/members/u2", json={"role": "owner"}, headers=auth_headers("u1"))
    assert promote.status_code == 403

    gone = client.get("/v1/teams/nope/members", headers=auth_headers("u1"))
    assert gone.status_code == 404
    assert gone.json()["error"]["code"] == "team_not_found"

    assert client.delete(f"/v1/teams/{team_id}", headers=auth_headers("u2")).status_code == 403
    assert client.delete(f"/v1/teams/{team_id}", headers=auth_headers("u1")).status_code == 200


def test_prompt_quota_enforced(client, users, auth_headers, monkeypatch):
    monkeypatch.setattr(settings, "FREE_PERSONAL_PROMPT_LIMIT", 1)
    body = {"title": "Follow-up", "content": CONTENT, "tags": ["Email"]}

    created = client.post("/v1/prompts", json=body, headers=auth_headers("u1"))
    assert created.status_code == 200
    assert created.json()["data"]["tags"] == ["email"]

    denied = client.post("/v1/prompts", json=body, headers=auth_headers("u1"))
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "quota_exceeded"

    headroom = client.get("/v1/quota", headers=auth_headers("u1")).json()["data"]
    assert headroom["status"] == "at_limit"

    prompt_id = created.json()["data"]["id"]
    assert client.delete(f"/v1/prompts/{prompt_id}", headers=auth_headers("u2")).status_code == 403
    assert client.delete(f"/v1/prompts/{prompt_id}", headers=auth_headers("u1")).status_code == 200
    assert client.get("/v1/quota", headers=auth_headers("u1")).json()["data"]["current"] == 0


def test_team_quota_visible_to_members_only(client, users, auth_headers):
    team_id = _create_team(client, auth_headers)
    ok = client.get("/v1/quota", params={"team_id": team_id}, headers=auth_headers("u1"))
    assert ok.json()["data"]["scope"] == "team"
    assert client.get("/v1/quota", params={"team_id": team_id}, headers=auth_headers("u3")).status_code == 403


def test_owner_scope_tag_operations(client, users, auth_headers):
    for title, tags in (("First one", ["ml", "ai"]), ("Second one", ["ml"])):
        client.post("/v1/prompts", json={"title": title, "content": CONTENT, "tags": tags},
                    headers=auth_headers("u1"))

    listed = client.get("/v1/tags", headers=auth_headers("u1")).json()
    assert listed["data"] == [{"tag": "ml", "count": 2}, {"tag": "ai", "count": 1}]

    renamed = client.post("/v1/tags/rename", json={"old_tag": "ml", "new_tag": "machine-learning"},
                          headers=auth_headers("u1"))
    assert renamed.status_code == 200
    assert renamed.json()["data"]["status"] == "completed"

    invalid = client.post("/v1/tags/merge", json={"source_tags": ["ai", "x"], "target_tag": "ai"},
                          headers=auth_headers("u1"))
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "invalid_merge"

    deleted = client.delete("/v1/tags/ai", headers=auth_headers("u1"))
    assert deleted.status_code == 200
    assert client.get("/v1/tags", headers=auth_headers("u1")).json()["data"] == [
        {"tag": "machine-learning", "count": 2},
    ]


def test_global_tag_changes_need_platform_admin(client, users, auth_headers, monkeypatch):
    payload = {"old_tag": "ml", "new_tag": "machine-learning"}
    denied = client.post("/v1/tags/rename", params={"scope": "global"}, json=payload, headers=auth_headers("u1"))
    assert denied.status_code == 403

    monkeypatch.setattr(settings, "ADMIN_USER_IDS", "ops, u1")
    allowed = client.post("/v1/tags/rename", params={"scope": "global"}, json=payload, headers=auth_headers("u1"))
    assert allowed.status_code == 200

    bogus = client.get("/v1/tags", params={"scope": "planet"}, headers=auth_headers("u1"))
    assert bogus.status_code == 400


def test_team_tag_changes_need_admin(client, users, auth_headers):
    team_id = _create_team(client, auth_headers)
    client.post(f"/v1/teams/{team_id}/members", json={"email": "u2@example.com"}, headers=auth_headers("u1"))
    params = {"scope": "team", "team_id": team_id}

    assert client.get("/v1/tags", params=params, headers=auth_headers("u2")).status_code == 200
    assert client.delete("/v1/tags/ml", params=params, headers=auth_headers("u2")).status_code == 403
    assert client.delete("/v1/tags/ml", params=params, headers=auth_headers("u1")).status_code == 200
    assert client.get("/v1/tags", params=params, headers=auth_headers("u3")).status_code == 403


def test_billing_disabled(client, auth_headers, monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)

    webhook = client.post("/v1/billing/webhook", content=b"{}")
    assert webhook.status_code == 503
    assert webhook.json()["error"]["code"] == "billing_disabled"

    checkout = client.post(
        "/v1/billing/checkout",
        json={"team_id": "t1", "success_url": "http://ok", "cancel_url": "http://cancel"},
        headers=auth_headers("u1"),
    )
    assert checkout.status_code == 503
