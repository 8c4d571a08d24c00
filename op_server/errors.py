"""
Error taxonomy for the token lifecycle. Each error carries the OAuth 2.0 error code it surfaces as
and whether the failure is attributable to the client (logged at WARNING) or to the server (ERROR).
Messages are for logs only; they are never copied into error_description.
"""

INVALID_REQUEST = "invalid_request"
INVALID_CLIENT = "invalid_client"
INVALID_GRANT = "invalid_grant"
INVALID_SCOPE = "invalid_scope"
SERVER_ERROR = "server_error"


class TokenError(Exception):
    """Base class. Subclasses fix the wire error code."""

    error = SERVER_ERROR
    client_fault = False


class InvalidArgument(TokenError):
    """A builder or derivation rejected a required field at issuance (programmer error)."""


class ParseError(TokenError):
    """Malformed JSON, missing required claim, wrong shape or wrong token type."""

    error = INVALID_GRANT
    client_fault = True


class SealerError(TokenError):
    """AEAD failure, unknown key id, malformed envelope or embedded expiry in the past."""

    error = INVALID_GRANT
    client_fault = True


class IdentityMismatch(TokenError):
    """aud, redirect_uri or PKCE verifier does not match the grant."""

    error = INVALID_GRANT
    client_fault = True


class ScopeViolation(TokenError):
    """Requested scope is not a subset of the parent token scope."""

    error = INVALID_SCOPE
    client_fault = True


class Replayed(TokenError):
    """The jti has already been reserved in the replay store."""

    error = INVALID_GRANT
    client_fault = True


class StoreError(TokenError):
    """Replay store I/O failure."""


class MissingProfileContext(TokenError):
    """ID token assembly attempted without a subject."""

    profile_error = "INVALID_PROFILE_CTX"


class InvalidRequest(TokenError):
    """Missing or malformed request parameter (e.g. code_challenge present but no code_verifier)."""

    error = INVALID_REQUEST
    client_fault = True


class InvalidClient(TokenError):
    """Client authentication failed."""

    error = INVALID_CLIENT
    client_fault = True


class UnsupportedGrantType(TokenError):
    """grant_type other than authorization_code or refresh_token. Reported as invalid_grant."""

    error = INVALID_GRANT
    client_fault = True
