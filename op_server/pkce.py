"""
PKCE (RFC 7636) challenge computation and verification. Methods: plain, S256 (case-sensitive).
"""
import hashlib
import hmac
import secrets
from base64 import urlsafe_b64encode

from op_server.claims import CodeChallenge
from op_server.errors import IdentityMismatch, InvalidRequest

METHOD_PLAIN = "plain"
METHOD_S256 = "S256"
SUPPORTED_METHODS = (METHOD_PLAIN, METHOD_S256)


def generate_verifier() -> str:
    """43-char verifier (256 bits of entropy)."""
    return secrets.token_urlsafe(32)


def compute_challenge(code_verifier: str, method: str) -> str:
    if method == METHOD_PLAIN:
        return code_verifier
    if method == METHOD_S256:
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    raise InvalidRequest(f"unsupported code_challenge_method {method!r}")


def challenge(code_verifier: str, method: str = METHOD_S256) -> CodeChallenge:
    return CodeChallenge(value=compute_challenge(code_verifier, method), method=method)


def verify(code_challenge: CodeChallenge, code_verifier: str) -> bool:
    """True if the verifier matches the challenge. Unknown method raises InvalidRequest."""
    if code_challenge.method not in SUPPORTED_METHODS:
        raise InvalidRequest(f"unsupported code_challenge_method {code_challenge.method!r}")
    try:
        computed = compute_challenge(code_verifier, code_challenge.method)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed.encode("utf-8"), code_challenge.value.encode("utf-8"))


def check(code_challenge: CodeChallenge | None, code_verifier: str | None) -> None:
    """
    Enforce verifier-iff-challenge. A challenge without a verifier is InvalidRequest; a verifier that does
    not match is IdentityMismatch, and so is a verifier sent for a code that was issued without a challenge.
    """
    if code_challenge is None:
        if code_verifier:
            raise IdentityMismatch("code_verifier sent for a code issued without code_challenge")
        return
    if not code_verifier:
        raise InvalidRequest("code_verifier is required for this authorization code")
    if not verify(code_challenge, code_verifier):
        raise IdentityMismatch("PKCE verification failed")
