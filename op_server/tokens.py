"""
Authorization codes, access tokens and refresh tokens as one tagged type over the canonical claim set.

Tokens are minted by a per-kind builder (required inputs as arguments, optional members in TokenOptions)
or derived from a parent token. Derivation copies the parent's identity and authorization context, takes
fresh iat/exp/jti and never widens the scope.
"""
import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from op_server.claims import (
    KEY_ACR,
    KEY_AUDIENCE,
    KEY_AUTH_TIME,
    KEY_CLAIMS,
    KEY_CODE_CHALLENGE,
    KEY_CONSENTABLE_CLAIMS,
    KEY_CONSENTED_CLAIMS,
    KEY_DELIVERY_CLAIMS,
    KEY_DELIVERY_CLAIMS_ID,
    KEY_DELIVERY_CLAIMS_UI,
    KEY_EXPIRATION_TIME,
    KEY_ID,
    KEY_ISSUED_AT,
    KEY_ISSUER,
    KEY_NONCE,
    KEY_PRINCIPAL,
    KEY_REDIRECT_URI,
    KEY_SCOPE,
    KEY_SUBJECT,
    KEY_TYPE,
    ClaimSet,
    CodeChallenge,
    decode,
    encode,
    join_scope,
    split_scope,
)
from op_server.errors import InvalidArgument, ParseError, ScopeViolation
from op_server.sealer import DataSealer

logger = logging.getLogger(__name__)

IdGenerator = Callable[[], str]

# Members a derived token copies verbatim from its parent
INHERITED_MEMBERS = (
    KEY_ISSUER, KEY_SUBJECT, KEY_PRINCIPAL, KEY_AUDIENCE, KEY_NONCE, KEY_AUTH_TIME,
    KEY_REDIRECT_URI, KEY_CLAIMS, KEY_CONSENTABLE_CLAIMS, KEY_CONSENTED_CLAIMS,
)


class TokenKind(str, Enum):
    AUTHORIZATION_CODE = "ac"
    ACCESS_TOKEN = "at"
    REFRESH_TOKEN = "rt"


def secure_random_id() -> str:
    """160-bit random token id (URL-safe)."""
    return secrets.token_urlsafe(20)


@dataclass(frozen=True)
class TokenOptions:
    """Optional members. Which ones a kind may carry is enforced when the token is built."""

    acr: str | None = None
    nonce: str | None = None
    claims_request: dict | None = None
    delivery_claims: dict | None = None
    delivery_claims_id: dict | None = None
    delivery_claims_ui: dict | None = None
    consentable_claims: list[str] | None = None
    consented_claims: list[str] | None = None
    code_challenge: CodeChallenge | None = None

    def members(self) -> dict[str, Any]:
        values = {
            KEY_ACR: self.acr,
            KEY_NONCE: self.nonce,
            KEY_CLAIMS: self.claims_request,
            KEY_DELIVERY_CLAIMS: self.delivery_claims,
            KEY_DELIVERY_CLAIMS_ID: self.delivery_claims_id,
            KEY_DELIVERY_CLAIMS_UI: self.delivery_claims_ui,
            KEY_CONSENTABLE_CLAIMS: self.consentable_claims,
            KEY_CONSENTED_CLAIMS: self.consented_claims,
            KEY_CODE_CHALLENGE: str(self.code_challenge) if self.code_challenge is not None else None,
        }
        return {k: v for k, v in values.items() if v is not None}


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    claims: ClaimSet = field(repr=False)

    def __post_init__(self):
        if self.claims.token_type != self.kind.value:
            raise InvalidArgument(f"claim set of type {self.claims.token_type} cannot back a {self.kind.value} token")

    @property
    def jti(self) -> str:
        return self.claims.jti

    @property
    def client_id(self) -> str:
        return self.claims.client_id

    @property
    def scope(self) -> tuple[str, ...]:
        return self.claims.scope

    @property
    def expires_at(self) -> int:
        return self.claims.expires_at

    def is_expired(self, now: float, skew: int = 0) -> bool:
        """Half-open lifetime: alive while now < exp + skew."""
        return now >= self.claims.expires_at + skew

    def serialize(self) -> str:
        return encode(self.claims)

    def seal(self, sealer: DataSealer) -> str:
        """Opaque bearer form: sealer-wrapped UTF-8 JSON with exp bound into the envelope."""
        logger.debug("Sealing %s token jti=%s", self.kind.value, self.claims.jti)
        return sealer.wrap(self.serialize().encode("utf-8"), self.claims.expires_at)


def _build(kind: TokenKind, members: dict[str, Any]) -> Token:
    try:
        return Token(kind, ClaimSet.from_dict(members))
    except ParseError as e:
        raise InvalidArgument(f"cannot build {kind.value} token: {e}") from e
    except (TypeError, ValueError) as e:
        raise InvalidArgument(f"cannot build {kind.value} token: claim values must be JSON serializable") from e


def _scope_string(scope: str | Iterable[str]) -> str:
    if isinstance(scope, str):
        return join_scope(split_scope(scope))
    return join_scope(scope)


def mint(
    kind: TokenKind,
    *,
    id_generator: IdGenerator,
    client_id: str,
    issuer: str,
    subject: str,
    principal: str,
    issued_at: int,
    expires_at: int,
    auth_time: int,
    redirect_uri: str,
    scope: str | Iterable[str],
    options: TokenOptions | None = None,
) -> Token:
    """
    Build a new token of the given kind. Required inputs must be present and well formed, and optional
    members must be allowed for the kind; otherwise InvalidArgument.
    """
    required = {
        "id_generator": id_generator,
        "client_id": client_id,
        "issuer": issuer,
        "subject": subject,
        "principal": principal,
        "redirect_uri": redirect_uri,
    }
    missing = [name for name, value in required.items() if not value]
    if missing or scope is None or issued_at is None or expires_at is None or auth_time is None:
        raise InvalidArgument(f"Invalid parameters, programming error (missing: {', '.join(missing) or 'time/scope'})")
    if not isinstance(client_id, str):
        raise InvalidArgument("client_id must be a string")
    members: dict[str, Any] = {
        KEY_TYPE: kind.value,
        KEY_ID: id_generator(),
        KEY_AUDIENCE: [client_id],
        KEY_ISSUER: issuer,
        KEY_SUBJECT: subject,
        KEY_PRINCIPAL: principal,
        KEY_ISSUED_AT: issued_at,
        KEY_EXPIRATION_TIME: expires_at,
        KEY_AUTH_TIME: auth_time,
        KEY_REDIRECT_URI: redirect_uri,
        KEY_SCOPE: _scope_string(scope),
    }
    members.update((options or TokenOptions()).members())
    return _build(kind, members)


def authorization_code(**kwargs) -> Token:
    """Builder for an authorization code. acr is required (TokenOptions.acr)."""
    return mint(TokenKind.AUTHORIZATION_CODE, **kwargs)


def access_token(**kwargs) -> Token:
    return mint(TokenKind.ACCESS_TOKEN, **kwargs)


def refresh_token(**kwargs) -> Token:
    return mint(TokenKind.REFRESH_TOKEN, **kwargs)


def narrow_scope(parent: Token, requested: str | Iterable[str] | None) -> str:
    """Return the scope for a derived token: the parent's when not requested, else a subset of it."""
    parent_scope = parent.claims[KEY_SCOPE]
    if requested is None:
        return parent_scope
    wanted = split_scope(requested) if isinstance(requested, str) else tuple(dict.fromkeys(requested))
    granted = set(parent.scope)
    extra = [s for s in wanted if s not in granted]
    if extra:
        raise ScopeViolation(f"scope not granted to the parent token: {' '.join(extra)}")
    return join_scope(wanted)


def _inherit(parent: Token, kind: TokenKind, scope: str, issued_at: int, expires_at: int,
             id_generator: IdGenerator) -> dict[str, Any]:
    if parent.kind == TokenKind.ACCESS_TOKEN:
        raise InvalidArgument(f"a {kind.value} token cannot be derived from an access token")
    if issued_at is None or expires_at is None or id_generator is None:
        raise InvalidArgument("Invalid parameters, programming error")
    members = {key: parent.claims[key] for key in INHERITED_MEMBERS if key in parent.claims}
    members.update({
        KEY_TYPE: kind.value,
        KEY_ID: id_generator(),
        KEY_ISSUED_AT: issued_at,
        KEY_EXPIRATION_TIME: expires_at,
        KEY_SCOPE: scope,
    })
    return members


def derive_access_token(
    parent: Token,
    *,
    issued_at: int,
    expires_at: int,
    id_generator: IdGenerator = secure_random_id,
    scope: str | Iterable[str] | None = None,
    include_acr: bool = True,
) -> Token:
    """
    Access token from an authorization code (first redemption) or a refresh token.
    Delivery claims for both consumers and for UserInfo are copied; ID-token-only delivery claims are dropped.
    """
    members = _inherit(parent, TokenKind.ACCESS_TOKEN, narrow_scope(parent, scope), issued_at, expires_at,
                       id_generator)
    if include_acr and parent.claims.acr is not None:
        members[KEY_ACR] = parent.claims.acr
    for key in (KEY_DELIVERY_CLAIMS, KEY_DELIVERY_CLAIMS_UI):
        if key in parent.claims:
            members[key] = parent.claims[key]
    return _build(TokenKind.ACCESS_TOKEN, members)


def derive_refresh_token(
    parent: Token,
    *,
    issued_at: int,
    expires_at: int,
    id_generator: IdGenerator = secure_random_id,
    scope: str | Iterable[str] | None = None,
) -> Token:
    """Refresh token from an authorization code, or a rotated refresh token from its predecessor."""
    members = _inherit(parent, TokenKind.REFRESH_TOKEN, narrow_scope(parent, scope), issued_at, expires_at,
                       id_generator)
    members[KEY_ACR] = parent.claims.acr
    return _build(TokenKind.REFRESH_TOKEN, members)


def parse(kind: TokenKind, value: str | bytes, sealer: DataSealer | None = None) -> Token:
    """
    Parse a token of the expected kind from raw JSON, or from its sealed form when a sealer is given.
    SealerError propagates from unwrapping; a token of another kind is a ParseError.
    """
    if sealer is not None:
        if isinstance(value, bytes):
            value = value.decode("ascii", errors="replace")
        value = sealer.unwrap(value)
    claims = decode(value)
    if claims.token_type != kind.value:
        raise ParseError(f"expected a token of type {kind.value}, got {claims.token_type}")
    return Token(kind, claims)


def parse_authorization_code(value: str | bytes, sealer: DataSealer | None = None) -> Token:
    return parse(TokenKind.AUTHORIZATION_CODE, value, sealer)


def parse_access_token(value: str | bytes, sealer: DataSealer | None = None) -> Token:
    return parse(TokenKind.ACCESS_TOKEN, value, sealer)


def parse_refresh_token(value: str | bytes, sealer: DataSealer | None = None) -> Token:
    return parse(TokenKind.REFRESH_TOKEN, value, sealer)
