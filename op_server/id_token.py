"""
ID token assembly: builds the claim shell from a validated authorization code, then signs it (RS256).
"""
import logging
from typing import Any

import jwt
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from op_server.errors import MissingProfileContext
from op_server.tokens import Token

logger = logging.getLogger(__name__)

# Protocol members that delivered attributes may never overwrite
PROTECTED_CLAIMS = frozenset({"iss", "sub", "aud", "exp", "iat", "auth_time", "nonce", "acr", "azp", "jti", "at_hash"})


def assemble(
    parent: Token,
    *,
    issuer: str,
    client_id: str,
    subject: str | None,
    issued_at: int,
    expires_at: int,
) -> dict[str, Any]:
    """
    Return the ID token claim set for a grant. Delivered claims are flattened into top-level members;
    dl_claims_id wins over dl_claims on conflict. nonce and acr are copied only when the parent has them.
    """
    if not subject:
        raise MissingProfileContext("no subject available for the ID token")
    delivered: dict[str, Any] = {}
    delivered.update(parent.claims.delivery_claims or {})
    delivered.update(parent.claims.delivery_claims_id or {})
    shell = {k: v for k, v in delivered.items() if k not in PROTECTED_CLAIMS}
    shell.update({
        "iss": issuer,
        "sub": subject,
        "aud": [client_id],
        "iat": issued_at,
        "exp": expires_at,
        "auth_time": parent.claims.auth_time,
    })
    nonce = parent.claims.nonce
    if nonce is not None:
        shell["nonce"] = nonce
    acr = parent.claims.acr
    if acr is not None:
        shell["acr"] = acr
    logger.debug("Assembled ID token shell for client_id=%s (%d delivered claims)", client_id, len(delivered))
    return shell


class IdTokenSigner:
    """Signs ID token claim sets as compact JWS with a kid header."""

    algorithm = "RS256"

    def __init__(self, private_key: RSAPrivateKey, kid: str):
        self._private_key = private_key
        self.kid = kid

    @property
    def public_key(self):
        return self._private_key.public_key()

    def sign(self, claims: dict[str, Any]) -> str:
        token = jwt.encode(claims, self._private_key, algorithm=self.algorithm, headers={"kid": self.kid, "typ": "JWT"})
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        return token
