"""
Tests for POST /token over HTTP: client authentication, wire format, headers and audit records.
"""
import base64

import pytest
from fastapi.testclient import TestClient

from op_server.audit import recent_events
from op_server.authorization import issue_authorization_code
from op_server.database import SessionLocal, init_db
from op_server.main import app
from op_server.seed import register_client
from op_server.token_endpoint import get_token_service
from op_server.token_service import TokenService

from conftest import CLIENT_ID, CODE_VERIFIER, REDIRECT_URI, default_code_options

CONFIDENTIAL_CLIENT_ID = "conf-client"
CONFIDENTIAL_SECRET = "conf-secret"


@pytest.fixture
def client(context):
    init_db()
    db = SessionLocal()
    try:
        register_client(db, CLIENT_ID, [REDIRECT_URI])
        register_client(db, "client456", ["https://other.example/cb"])
        register_client(db, CONFIDENTIAL_CLIENT_ID, [REDIRECT_URI], client_secret=CONFIDENTIAL_SECRET)
    finally:
        db.close()
    app.dependency_overrides[get_token_service] = lambda: TokenService(context)
    yield TestClient(app)
    app.dependency_overrides.clear()


def _code_form(code, client_id=CLIENT_ID, **extra):
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT_URI,
        "code_verifier": CODE_VERIFIER,
        "client_id": client_id,
    }
    data.update(extra)
    return data


def _basic(client_id, secret):
    raw = f"{client_id}:{secret}".encode("utf-8")
    return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}


def _last_event(client_id):
    db = SessionLocal()
    try:
        return recent_events(db, limit=1, client_id=client_id)[0]
    finally:
        db.close()


def test_code_exchange(client, context, issue_code):
    r = client.post("/token", data=_code_form(issue_code(context)))
    assert r.status_code == 200
    assert r.headers["cache-control"] == "no-store"
    assert r.headers["pragma"] == "no-cache"
    data = r.json()
    assert data["token_type"] == "Bearer"
    assert data["expires_in"] == 3600
    assert data["scope"] == "openid profile"
    assert "access_token" in data and "refresh_token" in data and "id_token" in data
    event = _last_event(CLIENT_ID)
    assert event["event_type"] == "token_issued"
    assert event["outcome"] == "success"


def test_code_replay_is_invalid_grant(client, context, issue_code):
    form = _code_form(issue_code(context))
    assert client.post("/token", data=form).status_code == 200
    r = client.post("/token", data=form)
    assert r.status_code == 400
    assert r.headers["cache-control"] == "no-store"
    assert r.json()["error"] == "invalid_grant"
    assert "error_description" in r.json()
    event = _last_event(CLIENT_ID)
    assert event["event_type"] == "token_denied"
    assert event["error"] == "invalid_grant"


def test_code_for_another_client(client, context, issue_code):
    r = client.post("/token", data=_code_form(issue_code(context), client_id="client456"))
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_grant"


def test_unknown_client_is_invalid_client(client, context, issue_code):
    r = client.post("/token", data=_code_form(issue_code(context), client_id="nobody"))
    assert r.status_code == 401
    assert r.json()["error"] == "invalid_client"
    assert "WWW-Authenticate" in r.headers


def test_missing_client_id_is_invalid_client(client, context, issue_code):
    form = _code_form(issue_code(context))
    del form["client_id"]
    r = client.post("/token", data=form)
    assert r.status_code == 401
    assert r.json()["error"] == "invalid_client"


def test_confidential_client_basic_auth(client, context, issue_code):
    code = issue_code(context, client_id=CONFIDENTIAL_CLIENT_ID)
    form = _code_form(code)
    del form["client_id"]
    r = client.post("/token", data=form, headers=_basic(CONFIDENTIAL_CLIENT_ID, CONFIDENTIAL_SECRET))
    assert r.status_code == 200
    assert "access_token" in r.json()


def test_confidential_client_secret_in_form(client, context, issue_code):
    code = issue_code(context, client_id=CONFIDENTIAL_CLIENT_ID)
    form = _code_form(code, client_id=CONFIDENTIAL_CLIENT_ID, client_secret=CONFIDENTIAL_SECRET)
    assert client.post("/token", data=form).status_code == 200


def test_confidential_client_wrong_secret(client, context, issue_code):
    code = issue_code(context, client_id=CONFIDENTIAL_CLIENT_ID)
    form = _code_form(code)
    del form["client_id"]
    r = client.post("/token", data=form, headers=_basic(CONFIDENTIAL_CLIENT_ID, "wrong"))
    assert r.status_code == 401
    assert r.json()["error"] == "invalid_client"


def test_confidential_client_without_secret(client, context, issue_code):
    code = issue_code(context, client_id=CONFIDENTIAL_CLIENT_ID)
    r = client.post("/token", data=_code_form(code, client_id=CONFIDENTIAL_CLIENT_ID))
    assert r.status_code == 401


def test_public_client_pkce_policy_uses_registration(client, make_context, issue_code):
    context = make_context(pkce_required="public-clients")
    app.dependency_overrides[get_token_service] = lambda: TokenService(context)
    options = default_code_options(code_challenge=None)
    public_code = issue_code(context, options=options)
    r = client.post("/token", data=_code_form(public_code, code_verifier=""))
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_grant"

    confidential_code = issue_code(context, client_id=CONFIDENTIAL_CLIENT_ID, options=options)
    form = _code_form(confidential_code, client_id=CONFIDENTIAL_CLIENT_ID, client_secret=CONFIDENTIAL_SECRET)
    del form["code_verifier"]
    assert client.post("/token", data=form).status_code == 200


def test_missing_grant_type(client):
    r = client.post("/token", data={"client_id": CLIENT_ID, "code": "x"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_unknown_grant_type_is_invalid_grant(client):
    r = client.post("/token", data={"grant_type": "password", "client_id": CLIENT_ID})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_grant"


def test_garbage_code(client):
    r = client.post("/token", data=_code_form("not-a-sealed-code"))
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_grant"


def test_refresh_grant(client, context, issue_code):
    refresh_token = client.post("/token", data=_code_form(issue_code(context))).json()["refresh_token"]
    r = client.post("/token", data={
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": CLIENT_ID,
        "scope": "openid",
    })
    assert r.status_code == 200
    data = r.json()
    assert data["scope"] == "openid"
    assert "id_token" not in data
    assert _last_event(CLIENT_ID)["event_type"] == "token_refreshed"


def test_refresh_grant_wider_scope(client, context, issue_code):
    refresh_token = client.post("/token", data=_code_form(issue_code(context))).json()["refresh_token"]
    r = client.post("/token", data={
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": CLIENT_ID,
        "scope": "openid profile email",
    })
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_scope"


def test_health_and_configured_service():
    """Startup builds the configured service (keystore files, SQL replay store)."""
    with TestClient(app) as c:
        r = c.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

        db = SessionLocal()
        try:
            register_client(db, CLIENT_ID, [REDIRECT_URI])
        finally:
            db.close()
        context = app.state.token_service.context
        code = issue_authorization_code(
            context,
            client_id=CLIENT_ID,
            subject="pairwise-7f3c",
            principal="alice",
            auth_time=context.now(),
            redirect_uri=REDIRECT_URI,
            scope="openid",
            options=default_code_options(),
        )
        form = _code_form(code)
        assert c.post("/token", data=form).status_code == 200
        r = c.post("/token", data=form)
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_grant"
