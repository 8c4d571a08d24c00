"""
Client secret hashing and seeding of one OAuth client from environment. No hardcoded credentials.
Optional: OP_CLIENT_ID + OP_REDIRECT_URIS (comma-separated), OP_CLIENT_SECRET for a confidential client.
"""
import json
import logging
import os

import bcrypt
from sqlalchemy.orm import Session

from op_server.models import Client

logger = logging.getLogger(__name__)


def hash_secret(secret: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = secret.encode("utf-8")[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_secret(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))


def register_client(db: Session, client_id: str, redirect_uris: list[str], client_secret: str | None = None) -> Client:
    """Create the client if missing; an existing registration is returned unchanged."""
    client = db.query(Client).filter(Client.client_id == client_id).first()
    if client is not None:
        return client
    client = Client(
        client_id=client_id,
        redirect_uris=json.dumps(redirect_uris),
        client_secret_hash=hash_secret(client_secret) if client_secret else None,
    )
    db.add(client)
    db.commit()
    logger.info("Registered client: %s (confidential=%s)", client_id, client.is_confidential)
    return client


def seed_from_env(db: Session) -> None:
    client_id = os.environ.get("OP_CLIENT_ID")
    redirect_uris_str = os.environ.get("OP_REDIRECT_URIS")
    if not client_id or not redirect_uris_str:
        return
    uris = [u.strip() for u in redirect_uris_str.split(",") if u.strip()]
    if uris:
        register_client(db, client_id, uris, os.environ.get("OP_CLIENT_SECRET"))
