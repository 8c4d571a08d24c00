"""
RSA key used to sign ID tokens (RS256). Loaded from a PEM file or generated and persisted on first start;
no key material in code. Publication of the public key (JWKS) is handled outside this service.
"""
import hashlib
import logging
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, generate_private_key

logger = logging.getLogger(__name__)

_KEY_BITS = 2048


def _serialize_private(key: RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def key_id(key: RSAPrivateKey) -> str:
    """Stable kid derived from the public key (first 16 hex chars of SHA-256 over the DER SPKI)."""
    der = key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()[:16]


def generate_signing_key() -> RSAPrivateKey:
    return generate_private_key(public_exponent=65537, key_size=_KEY_BITS)


def load_or_create_signing_key(path: str | None) -> tuple[RSAPrivateKey, str]:
    """
    Load RSA private key from path, or generate and save. Returns (private_key, kid).
    """
    p = Path(path or ".op_signing_key.pem")
    if p.exists():
        key = serialization.load_pem_private_key(p.read_bytes(), password=None)
        if not isinstance(key, RSAPrivateKey):
            raise ValueError(f"signing key at {p} is not an RSA private key")
        return key, key_id(key)
    key = generate_signing_key()
    try:
        p.write_bytes(_serialize_private(key))
        logger.info("Generated and saved signing key to %s", p)
    except OSError as e:
        logger.warning("Could not save signing key to %s: %s", p, e)
    return key, key_id(key)
