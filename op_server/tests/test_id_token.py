"""
Tests for ID token assembly and RS256 signing.
"""
import jwt
import pytest

from op_server import id_token
from op_server.errors import MissingProfileContext
from op_server.keys import key_id, load_or_create_signing_key
from op_server.tokens import TokenOptions, authorization_code

from conftest import ACR, CLIENT_ID, ISSUER, NONCE, NOW, REDIRECT_URI, default_code_options


def _code(options):
    return authorization_code(
        id_generator=lambda: "code-jti",
        client_id=CLIENT_ID,
        issuer=ISSUER,
        subject="pairwise-7f3c",
        principal="alice",
        issued_at=NOW,
        expires_at=NOW + 300,
        auth_time=NOW - 30,
        redirect_uri=REDIRECT_URI,
        scope="openid profile",
        options=options,
    )


def _assemble(code, subject="pairwise-7f3c"):
    return id_token.assemble(
        code, issuer=ISSUER, client_id=CLIENT_ID, subject=subject, issued_at=NOW + 1, expires_at=NOW + 3601,
    )


def test_shell_carries_protocol_claims():
    shell = _assemble(_code(default_code_options()))
    assert shell["iss"] == ISSUER
    assert shell["sub"] == "pairwise-7f3c"
    assert shell["aud"] == [CLIENT_ID]
    assert shell["iat"] == NOW + 1
    assert shell["exp"] == NOW + 3601
    assert shell["auth_time"] == NOW - 30
    assert shell["nonce"] == NONCE
    assert shell["acr"] == ACR


def test_id_token_delivery_claims_override_generic_ones():
    shell = _assemble(_code(default_code_options()))
    assert shell["name"] == "Alice"
    assert shell["email"] == "alice@example.org"
    assert "phone_number" not in shell


def test_nonce_omitted_when_code_has_none():
    shell = _assemble(_code(default_code_options(nonce=None)))
    assert "nonce" not in shell


def test_delivered_claims_cannot_overwrite_protocol_claims():
    options = default_code_options(delivery_claims={"sub": "attacker", "iss": "https://evil.example"},
                                   delivery_claims_id={"aud": ["other"], "nonce": "forged"})
    shell = _assemble(_code(options))
    assert shell["sub"] == "pairwise-7f3c"
    assert shell["iss"] == ISSUER
    assert shell["aud"] == [CLIENT_ID]
    assert shell["nonce"] == NONCE


def test_missing_subject_is_profile_context_error():
    with pytest.raises(MissingProfileContext) as exc_info:
        _assemble(_code(TokenOptions(acr=ACR)), subject=None)
    assert exc_info.value.profile_error == "INVALID_PROFILE_CTX"


def test_signed_token_verifies_with_public_key(signer):
    token = signer.sign(_assemble(_code(default_code_options())))
    assert jwt.get_unverified_header(token)["kid"] == signer.kid
    decoded = jwt.decode(
        token, signer.public_key, algorithms=["RS256"], audience=CLIENT_ID, issuer=ISSUER,
        options={"verify_exp": False},
    )
    assert decoded["sub"] == "pairwise-7f3c"
    assert decoded["nonce"] == NONCE


def test_signing_key_persisted_and_reloaded(tmp_path):
    path = tmp_path / "signing.pem"
    key, kid = load_or_create_signing_key(str(path))
    assert path.exists()
    reloaded, reloaded_kid = load_or_create_signing_key(str(path))
    assert reloaded_kid == kid == key_id(reloaded)
