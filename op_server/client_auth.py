"""
Client authentication at the token endpoint (RFC 6749 §2.3.1).
Credentials via Authorization: Basic base64(client_id:client_secret) or client_id + client_secret in form.
Public clients (no registered secret) identify themselves with client_id only.
"""
import base64
import binascii
import logging
from urllib.parse import unquote

from fastapi import Request
from sqlalchemy.orm import Session

from op_server.errors import InvalidClient
from op_server.models import Client
from op_server.seed import verify_secret

logger = logging.getLogger(__name__)


def _parse_basic(header_value: str) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>' (form-urlencoded parts). Returns None if not Basic."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(header_value.strip()[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    return unquote(client_id.strip()), unquote(client_secret)


def get_client_credentials(
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> tuple[str | None, str | None]:
    """(client_id, client_secret) from Authorization Basic, else from the form."""
    basic = _parse_basic(request.headers.get("Authorization", ""))
    if basic:
        return basic
    if client_id_form:
        return client_id_form.strip(), client_secret_form
    return None, None


def authenticate_client(
    db: Session,
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> Client:
    """Resolve and authenticate the client, or raise InvalidClient."""
    client_id, client_secret = get_client_credentials(request, client_id_form, client_secret_form)
    if not client_id:
        raise InvalidClient("client_id is required")
    client = db.query(Client).filter(Client.client_id == client_id).first()
    if client is None:
        raise InvalidClient(f"unknown client {client_id!r}")
    if client.is_confidential:
        if not client_secret or not verify_secret(client_secret, client.client_secret_hash):
            raise InvalidClient(f"invalid credentials for client {client_id!r}")
    return client
