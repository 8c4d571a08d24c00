"""
Authorization-endpoint side of the token lifecycle: mint and seal the authorization code once the user has
authenticated and consented. Request validation, login and consent UI live outside this service.
"""
import logging
from typing import Iterable

from op_server.context import TokenContext
from op_server.tokens import TokenOptions, authorization_code

logger = logging.getLogger(__name__)


def issue_authorization_code(
    context: TokenContext,
    *,
    client_id: str,
    subject: str,
    principal: str,
    auth_time: int,
    redirect_uri: str,
    scope: str | Iterable[str],
    options: TokenOptions,
) -> str:
    """
    Return the sealed authorization code. iat is now, exp is now + authorization_code_ttl.
    options must carry acr; InvalidArgument otherwise.
    """
    now = context.now()
    code = authorization_code(
        id_generator=context.id_generator,
        client_id=client_id,
        issuer=context.issuer,
        subject=subject,
        principal=principal,
        issued_at=now,
        expires_at=now + context.policy.authorization_code_ttl,
        auth_time=auth_time,
        redirect_uri=redirect_uri,
        scope=scope,
        options=options,
    )
    logger.info(
        "Authorization code issued for client_id=%s", client_id, extra={"client_id": client_id, "jti": code.jti},
    )
    return code.seal(context.sealer)
