"""
OIDC UserInfo endpoint (GET /userinfo). Bearer sealed access token; returns sub plus the delivery claims
the access token carries for UserInfo.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from op_server.errors import ParseError, SealerError
from op_server.token_endpoint import get_token_service
from op_server.token_service import TokenService
from op_server.tokens import Token, parse_access_token

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBearer(auto_error=False)

_INVALID_TOKEN = {"WWW-Authenticate": 'Bearer error="invalid_token"'}


def _load_access_token(credentials: HTTPAuthorizationCredentials | None, service: TokenService) -> Token:
    """Unseal and validate the bearer access token; 401 if missing, invalid or expired."""
    if credentials is None:
        raise HTTPException(status_code=401, detail="Bearer token required", headers={"WWW-Authenticate": "Bearer"})
    ctx = service.context
    try:
        at = parse_access_token(credentials.credentials, ctx.sealer)
    except (SealerError, ParseError) as e:
        logger.debug("UserInfo token invalid: %s", e)
        raise HTTPException(status_code=401, detail="Invalid or expired token", headers=_INVALID_TOKEN)
    if at.is_expired(ctx.now(), ctx.policy.clock_skew_tolerance):
        raise HTTPException(status_code=401, detail="Invalid or expired token", headers=_INVALID_TOKEN)
    return at


@router.get("/userinfo")
def userinfo(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    service: TokenService = Depends(get_token_service),
):
    """
    Return sub and delivered claims. dl_claims_ui wins over dl_claims on conflict; sub is never overridden.
    """
    at = _load_access_token(credentials, service)
    claims = {}
    claims.update(at.claims.delivery_claims or {})
    claims.update(at.claims.delivery_claims_ui or {})
    claims["sub"] = at.claims.subject
    return claims
