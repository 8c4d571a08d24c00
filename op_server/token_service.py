"""
Token endpoint state machine for the authorization_code and refresh_token grants.

    START -> GRANT_PARSED -> TOKEN_UNWRAPPED -> IDENTITY_VERIFIED -> REPLAY_RESERVED -> ISSUED -> DONE

Every failure ends in one terminal state named after its OAuth error code. handle() never raises: errors
are logged with their cause and turned into a TokenErrorResponse whose description is generic.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Union

from op_server import id_token, pkce
from op_server.claims import KEY_REDIRECT_URI, KEY_SCOPE
from op_server.context import TokenContext
from op_server.errors import (
    INVALID_CLIENT,
    INVALID_GRANT,
    INVALID_REQUEST,
    INVALID_SCOPE,
    SERVER_ERROR,
    IdentityMismatch,
    InvalidArgument,
    InvalidRequest,
    Replayed,
    TokenError,
    UnsupportedGrantType,
)
from op_server.replay import ReserveResult
from op_server.tokens import Token, TokenKind, derive_access_token, derive_refresh_token, parse

logger = logging.getLogger(__name__)

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"

_GRANT_KINDS = {
    GRANT_AUTHORIZATION_CODE: TokenKind.AUTHORIZATION_CODE,
    GRANT_REFRESH_TOKEN: TokenKind.REFRESH_TOKEN,
}

# Fixed per error code; the internal cause only goes to the log
ERROR_DESCRIPTIONS = {
    INVALID_REQUEST: "The request is missing a required parameter or is otherwise malformed",
    INVALID_CLIENT: "Client authentication failed",
    INVALID_GRANT: "The provided grant is invalid, expired, already used or was issued to another client",
    INVALID_SCOPE: "The requested scope exceeds the scope originally granted",
    SERVER_ERROR: None,
}


class State(str, enum.Enum):
    START = "START"
    GRANT_PARSED = "GRANT_PARSED"
    TOKEN_UNWRAPPED = "TOKEN_UNWRAPPED"
    IDENTITY_VERIFIED = "IDENTITY_VERIFIED"
    REPLAY_RESERVED = "REPLAY_RESERVED"
    ISSUED = "ISSUED"
    DONE = "DONE"
    # Terminal failure states
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_CLIENT = "INVALID_CLIENT"
    INVALID_GRANT = "INVALID_GRANT"
    INVALID_SCOPE = "INVALID_SCOPE"
    SERVER_ERROR = "SERVER_ERROR"


_FAILURE_STATES = {
    INVALID_REQUEST: State.INVALID_REQUEST,
    INVALID_CLIENT: State.INVALID_CLIENT,
    INVALID_GRANT: State.INVALID_GRANT,
    INVALID_SCOPE: State.INVALID_SCOPE,
    SERVER_ERROR: State.SERVER_ERROR,
}


@dataclass(frozen=True)
class TokenRequest:
    """A token request whose client has already been authenticated."""

    grant_type: str | None
    client_id: str
    code: str | None = None
    refresh_token: str | None = None
    redirect_uri: str | None = None
    code_verifier: str | None = None
    scope: str | None = None
    public_client: bool = False


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: int
    scope: str
    refresh_token: str | None = None
    id_token: str | None = None
    token_type: str = "Bearer"

    @property
    def status_code(self) -> int:
        return 200

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }
        if self.refresh_token is not None:
            body["refresh_token"] = self.refresh_token
        if self.id_token is not None:
            body["id_token"] = self.id_token
        return body


@dataclass(frozen=True)
class TokenErrorResponse:
    error: str
    state: State
    # Last state reached before failing
    failed_after: State = State.START
    error_description: str | None = None

    @classmethod
    def from_error(cls, error: TokenError, failed_after: State = State.START) -> "TokenErrorResponse":
        return cls(
            error=error.error,
            state=_FAILURE_STATES.get(error.error, State.SERVER_ERROR),
            failed_after=failed_after,
            error_description=ERROR_DESCRIPTIONS.get(error.error),
        )

    @property
    def status_code(self) -> int:
        if self.error == INVALID_CLIENT:
            return 401
        if self.error == SERVER_ERROR:
            return 500
        return 400

    def to_dict(self) -> dict[str, Any]:
        body = {"error": self.error}
        if self.error_description:
            body["error_description"] = self.error_description
        return body


TokenResult = Union[TokenResponse, TokenErrorResponse]


@dataclass
class _Trace:
    """Request-scoped progress, used for logging."""

    state: State = State.START
    jti: str | None = None
    grant_type: str | None = None
    minted: list[str] = field(default_factory=list)

    def log_fields(self, client_id: str) -> dict[str, Any]:
        return {"client_id": client_id, "jti": self.jti, "grant_type": self.grant_type, "state": self.state.value}


class TokenService:
    """Token endpoint core. Parallel-safe: per-request data is local, collaborators are shared read-only."""

    def __init__(self, context: TokenContext):
        self.context = context

    def handle(self, request: TokenRequest) -> TokenResult:
        now = self.context.now()
        trace = _Trace(grant_type=request.grant_type)
        try:
            response = self._process(request, now, trace)
        except TokenError as e:
            return self._fail(e, request, trace)
        except Exception:
            logger.exception(
                "Unexpected failure in token endpoint after %s", trace.state.value,
                extra=trace.log_fields(request.client_id),
            )
            return TokenErrorResponse(error=SERVER_ERROR, state=State.SERVER_ERROR, failed_after=trace.state)
        trace.state = State.DONE
        logger.info(
            "%s grant: issued %s for client_id=%s",
            request.grant_type, ", ".join(trace.minted), request.client_id,
            extra=trace.log_fields(request.client_id),
        )
        return response

    def _fail(self, error: TokenError, request: TokenRequest, trace: _Trace) -> TokenErrorResponse:
        fields = trace.log_fields(request.client_id)
        if error.client_fault:
            logger.warning(
                "Token request rejected after %s: %s (%s)", trace.state.value, error.error, error, extra=fields,
            )
        elif isinstance(error, InvalidArgument):
            logger.error("Programming error while issuing tokens: %s", error, exc_info=error, extra=fields)
        else:
            logger.error(
                "Token request failed after %s: %s (%s)", trace.state.value, type(error).__name__, error,
                exc_info=error, extra=fields,
            )
        return TokenErrorResponse.from_error(error, failed_after=trace.state)

    def _process(self, request: TokenRequest, now: int, trace: _Trace) -> TokenResponse:
        kind, value = self._parse_grant(request)
        trace.state = State.GRANT_PARSED

        parent = parse(kind, value, self.context.sealer)
        trace.jti = parent.jti
        trace.state = State.TOKEN_UNWRAPPED

        self._verify_identity(parent, request, now)
        trace.state = State.IDENTITY_VERIFIED

        if kind == TokenKind.AUTHORIZATION_CODE or self.context.policy.rotate_refresh_tokens:
            self._reserve(parent, now)
        trace.state = State.REPLAY_RESERVED

        response = self._issue(parent, request, now, trace)
        trace.state = State.ISSUED
        return response

    @staticmethod
    def _parse_grant(request: TokenRequest) -> tuple[TokenKind, str]:
        if not request.grant_type:
            raise InvalidRequest("grant_type is required")
        kind = _GRANT_KINDS.get(request.grant_type)
        if kind is None:
            raise UnsupportedGrantType(f"unsupported grant_type {request.grant_type!r}")
        if kind == TokenKind.AUTHORIZATION_CODE:
            if not request.code:
                raise InvalidRequest("code is required for the authorization_code grant")
            if not request.redirect_uri:
                raise InvalidRequest("redirect_uri is required for the authorization_code grant")
            return kind, request.code
        if not request.refresh_token:
            raise InvalidRequest("refresh_token is required for the refresh_token grant")
        return kind, request.refresh_token

    def _verify_identity(self, parent: Token, request: TokenRequest, now: int) -> None:
        skew = self.context.policy.clock_skew_tolerance
        if parent.client_id != request.client_id:
            raise IdentityMismatch(f"token issued to {parent.client_id!r}, presented by {request.client_id!r}")
        if parent.claims.issued_at > now + skew:
            raise IdentityMismatch("token issued in the future")
        if parent.is_expired(now, skew):
            raise IdentityMismatch("token expired")
        if parent.kind != TokenKind.AUTHORIZATION_CODE:
            return
        # Byte-exact comparison, no URI normalization
        if parent.claims[KEY_REDIRECT_URI] != request.redirect_uri:
            raise IdentityMismatch("redirect_uri does not match the authorization request")
        challenge = parent.claims.code_challenge
        if challenge is None and self.context.policy.pkce_required_for(request.public_client):
            raise IdentityMismatch("authorization code issued without code_challenge but PKCE is required")
        pkce.check(challenge, request.code_verifier)

    def _reserve(self, parent: Token, now: int) -> None:
        ttl = parent.expires_at + self.context.policy.clock_skew_tolerance - now
        if self.context.replay_store.try_reserve(parent.jti, ttl) == ReserveResult.ALREADY_PRESENT:
            raise Replayed(f"{parent.kind.value} token already redeemed")

    def _issue(self, parent: Token, request: TokenRequest, now: int, trace: _Trace) -> TokenResponse:
        ctx = self.context
        policy = ctx.policy
        requested = request.scope if request.scope and request.scope.strip() else None

        at = derive_access_token(
            parent,
            scope=requested,
            issued_at=now,
            expires_at=now + policy.access_token_ttl,
            id_generator=ctx.id_generator,
        )
        trace.minted.append(f"at jti={at.jti}")

        rt = None
        # Codes always yield a refresh token, refresh tokens only when rotating; ttl 0 disables both
        if policy.refresh_token_ttl > 0 and (
            parent.kind == TokenKind.AUTHORIZATION_CODE
            or (parent.kind == TokenKind.REFRESH_TOKEN and policy.rotate_refresh_tokens)
        ):
            rt = derive_refresh_token(
                parent, issued_at=now, expires_at=now + policy.refresh_token_ttl, id_generator=ctx.id_generator,
            )
        if rt is not None:
            trace.minted.append(f"rt jti={rt.jti}")

        signed_id_token = None
        if parent.kind == TokenKind.AUTHORIZATION_CODE and "openid" in at.scope:
            shell = id_token.assemble(
                parent,
                issuer=ctx.issuer,
                client_id=request.client_id,
                subject=parent.claims.subject,
                issued_at=now,
                expires_at=now + policy.id_token_ttl,
            )
            signed_id_token = ctx.signer.sign(shell)
            trace.minted.append("id_token")

        return TokenResponse(
            access_token=at.seal(ctx.sealer),
            expires_in=policy.access_token_ttl,
            scope=at.claims[KEY_SCOPE],
            refresh_token=rt.seal(ctx.sealer) if rt is not None else None,
            id_token=signed_id_token,
        )
