"""
Token endpoint (POST /token): authorization_code and refresh_token grants over the sealed token lifecycle.
Client authentication happens here; everything after it is delegated to TokenService.
"""
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from op_server.audit import (
    EVENT_TOKEN_DENIED,
    EVENT_TOKEN_ISSUED,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
    log_audit,
)
from op_server.client_auth import authenticate_client
from op_server.database import get_db
from op_server.errors import InvalidClient
from op_server.token_service import (
    GRANT_REFRESH_TOKEN,
    TokenErrorResponse,
    TokenRequest,
    TokenService,
)

logger = logging.getLogger(__name__)
router = APIRouter()

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def get_token_service(request: Request) -> TokenService:
    """Dependency: the TokenService built at startup (overridable in tests)."""
    return request.app.state.token_service


def _error_response(result: TokenErrorResponse) -> JSONResponse:
    headers = dict(NO_STORE_HEADERS)
    if result.status_code == 401:
        headers["WWW-Authenticate"] = 'Basic realm="token"'
    return JSONResponse(result.to_dict(), status_code=result.status_code, headers=headers)


@router.post("/token")
def token(
    request: Request,
    grant_type: str | None = Form(None),
    code: str | None = Form(None),
    refresh_token: str | None = Form(None),
    redirect_uri: str | None = Form(None),
    code_verifier: str | None = Form(None),
    scope: str | None = Form(None),
    client_id: str | None = Form(None),
    client_secret: str | None = Form(None),
    db: Session = Depends(get_db),
    service: TokenService = Depends(get_token_service),
):
    """
    authorization_code: redeem a sealed code (once) for access_token, refresh_token and, with openid, id_token.
    refresh_token: exchange a sealed refresh token for a new access_token (and a rotated refresh_token when enabled).
    """
    try:
        client = authenticate_client(db, request, client_id, client_secret)
    except InvalidClient as e:
        logger.warning("Client authentication failed: %s", e, extra={"client_id": client_id})
        log_audit(db, EVENT_TOKEN_DENIED, client_id=client_id, error=e.error, outcome=OUTCOME_FAIL)
        return _error_response(TokenErrorResponse.from_error(e))

    result = service.handle(
        TokenRequest(
            grant_type=grant_type,
            client_id=client.client_id,
            code=code,
            refresh_token=refresh_token,
            redirect_uri=redirect_uri,
            code_verifier=code_verifier,
            scope=scope,
            public_client=not client.is_confidential,
        )
    )
    if isinstance(result, TokenErrorResponse):
        log_audit(db, EVENT_TOKEN_DENIED, client_id=client.client_id, error=result.error, outcome=OUTCOME_FAIL)
        return _error_response(result)

    event = EVENT_TOKEN_REFRESHED if grant_type == GRANT_REFRESH_TOKEN else EVENT_TOKEN_ISSUED
    log_audit(db, event, client_id=client.client_id, outcome=OUTCOME_SUCCESS)
    return JSONResponse(result.to_dict(), status_code=result.status_code, headers=NO_STORE_HEADERS)
