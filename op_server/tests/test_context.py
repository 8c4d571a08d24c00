"""
Tests for issuance policy, client registration and audit helpers.
"""
import pytest

from op_server.audit import EVENT_TOKEN_DENIED, OUTCOME_FAIL, log_audit, recent_events
from op_server.context import TokenPolicy
from op_server.database import SessionLocal, init_db
from op_server.models import Client
from op_server.seed import register_client, seed_from_env, verify_secret


def test_policy_defaults():
    policy = TokenPolicy.from_config()
    assert policy.access_token_ttl == 3600
    assert policy.refresh_token_ttl == 7200
    assert policy.authorization_code_ttl == 300
    assert not policy.rotate_refresh_tokens
    assert not policy.pkce_required_for(True)


@pytest.mark.parametrize("kwargs", [
    {"refresh_token_rotation": "sometimes"},
    {"pkce_required": "maybe"},
    {"access_token_ttl": 0},
    {"authorization_code_ttl": -1},
    {"refresh_token_ttl": -1},
    {"clock_skew_tolerance": -5},
])
def test_policy_rejects_invalid_values(kwargs):
    with pytest.raises(ValueError):
        TokenPolicy(**kwargs)


def test_pkce_required_for():
    assert TokenPolicy(pkce_required="all").pkce_required_for(False)
    assert TokenPolicy(pkce_required="public-clients").pkce_required_for(True)
    assert not TokenPolicy(pkce_required="public-clients").pkce_required_for(False)
    assert TokenPolicy(refresh_token_rotation="rotate-and-revoke").rotate_refresh_tokens


@pytest.fixture
def db():
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def test_register_client_is_idempotent(db):
    first = register_client(db, "seed-client", ["https://a.example/cb"], client_secret="s3cret")
    second = register_client(db, "seed-client", ["https://other.example/cb"])
    assert first.id == second.id
    assert second.get_redirect_uris_list() == ["https://a.example/cb"]
    assert second.is_confidential
    assert verify_secret("s3cret", second.client_secret_hash)
    assert not verify_secret("wrong", second.client_secret_hash)


def test_seed_from_env(db, monkeypatch):
    monkeypatch.setenv("OP_CLIENT_ID", "env-client")
    monkeypatch.setenv("OP_REDIRECT_URIS", "https://env.example/cb, https://env.example/cb2")
    seed_from_env(db)
    client = db.query(Client).filter(Client.client_id == "env-client").first()
    assert client.get_redirect_uris_list() == ["https://env.example/cb", "https://env.example/cb2"]
    assert not client.is_confidential


def test_audit_records_are_listed_newest_first(db):
    log_audit(db, EVENT_TOKEN_DENIED, client_id="audit-client", error="invalid_grant", outcome=OUTCOME_FAIL)
    log_audit(db, "token_issued", client_id="audit-client")
    events = recent_events(db, client_id="audit-client")
    assert [e["event_type"] for e in events[:2]] == ["token_issued", EVENT_TOKEN_DENIED]
    assert events[1]["error"] == "invalid_grant"
