"""
Tests for the Flask API – authentication, status mapping and error bodies.
"""

import pytest

from caregate import prescriptions
from caregate.api.app import create_app
from caregate.capabilities import CAP
from caregate.sessions import create_session


@pytest.fixture
def client(engine):
    return create_app(engine).test_client()


@pytest.fixture
def auth(engine):
    """Factory: bearer headers for a fresh session of *member*."""
    def _headers(member):
        return {"Authorization": f"Bearer {create_session(engine, member.id)}"}
    return _headers


def error_code(resp):
    return resp.get_json()["error"]["code"]


# ── Tests: info / health ─────────────────────────────────────────────

def test_index_and_health(client):
    assert client.get("/").get_json()["service"] == "caregate API"
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["checks"]["database"] is True


def test_unknown_route_and_method(client):
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert error_code(resp) == "NOT_FOUND"
    assert client.get("/api/auth/login").status_code == 405


# ── Tests: auth ──────────────────────────────────────────────────────

def test_login_returns_token_and_capabilities(client, member_with_key, pharmacy_org):
    member, api_key = member_with_key("desk@corner.test", "pharmacy", org_id=pharmacy_org.id)
    resp = client.post("/api/auth/login", json={"api_key": api_key})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["user"]["id"] == member.id
    assert CAP.PHARMACY_FILL in body["capabilities"]

    me = client.get("/api/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200
    assert me.get_json()["user"]["email"] == "desk@corner.test"


def test_login_with_bad_key(client):
    resp = client.post("/api/auth/login", json={"api_key": "cg_nope"})
    assert resp.status_code == 401
    assert error_code(resp) == "UNAUTHORIZED"


def test_login_requires_json(client):
    resp = client.post("/api/auth/login", data="api_key=x")
    assert resp.status_code == 400
    assert error_code(resp) == "BAD_REQUEST"


@pytest.mark.parametrize("headers", [
    {},
    {"Authorization": "Bearer not-a-session"},
    {"Authorization": "Token abc"},
    {"Authorization": "Bearer"},
])
def test_me_without_valid_session_is_401(client, headers):
    resp = client.get("/api/me", headers=headers)
    assert resp.status_code == 401
    assert error_code(resp) == "UNAUTHORIZED"


def test_logout_ends_session(client, auth, provider):
    headers = auth(provider)
    assert client.post("/api/auth/logout", headers=headers).status_code == 200
    assert client.get("/api/me", headers=headers).status_code == 401


# ── Tests: prescription status ───────────────────────────────────────

def test_status_update_maps_outcomes(client, auth, make_rx, pharmacist, patient_member):
    rx_id = make_rx("sent")
    url = f"/api/prescriptions/{rx_id}/status"

    ok = client.post(url, json={"status": "filling"}, headers=auth(pharmacist))
    assert ok.status_code == 200
    assert ok.get_json()["prescription"]["status"] == "filling"

    illegal = client.post(url, json={"status": "delivered"}, headers=auth(pharmacist))
    assert illegal.status_code == 403
    assert error_code(illegal) == "FORBIDDEN"

    denied = client.post(url, json={"status": "ready"}, headers=auth(patient_member))
    assert denied.status_code == 403

    missing = client.post("/api/prescriptions/nope/status", json={"status": "filling"}, headers=auth(pharmacist))
    assert missing.status_code == 404
    assert error_code(missing) == "NOT_FOUND"

    assert client.post(url, json={}, headers=auth(pharmacist)).status_code == 400
    assert client.post(url, json={"status": "ready"}).status_code == 401


def test_read_routes(client, auth, make_rx, patient, patient_member, pharmacist, pharmacy_org, other_pharmacist):
    rx_id = make_rx("sent")
    assert client.get(f"/api/prescriptions/{rx_id}", headers=auth(patient_member)).status_code == 200
    assert client.get(f"/api/prescriptions/{rx_id}", headers=auth(other_pharmacist)).status_code == 403

    own = client.get(f"/api/patients/{patient.id}/prescriptions", headers=auth(patient_member))
    assert [rx["id"] for rx in own.get_json()["prescriptions"]] == [rx_id]

    queue = client.get(f"/api/pharmacies/{pharmacy_org.id}/queue?status=sent", headers=auth(pharmacist))
    assert len(queue.get_json()["prescriptions"]) == 1
    bad = client.get(f"/api/pharmacies/{pharmacy_org.id}/queue?status=bogus", headers=auth(pharmacist))
    assert bad.status_code == 400


# ── Tests: members / organizations ───────────────────────────────────

def test_role_and_override_routes(client, auth, admin, nurse, clinic):
    resp = client.put(f"/api/members/{nurse.id}/role", json={"role": "provider"}, headers=auth(admin))
    assert resp.status_code == 200
    assert resp.get_json()["member"]["role"] == "provider"

    resp = client.put(f"/api/members/{nurse.id}/capabilities", json={"cap_deny": [CAP.RX_SIGN]}, headers=auth(admin))
    assert resp.get_json()["member"]["cap_deny"] == [CAP.RX_SIGN]

    resp = client.put(f"/api/organizations/{clinic.id}/capabilities", json={"cap_allow": [CAP.REPORT_VIEW]},
                      headers=auth(admin))
    assert resp.get_json()["organization"]["cap_allow"] == [CAP.REPORT_VIEW]

    bad = client.put(f"/api/members/{nurse.id}/role", json={"role": "wizard"}, headers=auth(admin))
    assert bad.status_code == 400


def test_org_members_requires_user_view(client, auth, admin, nurse, clinic):
    assert client.get(f"/api/organizations/{clinic.id}/members", headers=auth(admin)).status_code == 200
    denied = client.get(f"/api/organizations/{clinic.id}/members", headers=auth(nurse))
    assert denied.status_code == 403
    assert "user:view" in denied.get_json()["error"]["message"]


# ── Tests: security events ───────────────────────────────────────────

def test_security_events_are_owner_only(client, auth, owner, admin):
    resp = client.get("/api/security-events?limit=5", headers=auth(owner))
    assert resp.status_code == 200
    assert resp.get_json()["events"][0]["action"] == "PLATFORM_OWNER_SEED"

    assert client.get("/api/security-events", headers=auth(admin)).status_code == 403
    assert client.get("/api/security-events?limit=abc", headers=auth(owner)).status_code == 400


def test_unexpected_error_is_500(client, auth, provider, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(prescriptions, "get_prescription", boom)
    resp = client.get("/api/prescriptions/x", headers=auth(provider))
    assert resp.status_code == 500
    assert error_code(resp) == "INTERNAL"
    assert "kaboom" not in resp.get_data(as_text=True)
