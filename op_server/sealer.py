"""
Token sealer: AES-GCM authenticated encryption with the expiry embedded in the associated data.

Wrapped format (URL-safe base64, no padding):

    version (1) | kid length (1) | kid (utf-8) | expiry (8, big-endian seconds) | nonce (12) | ciphertext + tag

Everything before the nonce is authenticated as associated data, so neither the key id nor the expiry
can be altered without failing the tag. Several keys may decrypt; exactly one encrypts (role "current").
"""
import base64
import binascii
import json
import logging
import re
import secrets
import struct
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from op_server.errors import SealerError

logger = logging.getLogger(__name__)

ROLE_CURRENT = "current"
ROLE_DECRYPT_ONLY = "decrypt-only"

_VERSION = 1
_NONCE_BYTES = 12
_EXPIRY = struct.Struct(">Q")
_KEY_SIZES = (16, 24, 32)
_B64URL = re.compile(r"[A-Za-z0-9_-]*")


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """Decode unpadded base64url. Raises ValueError on bad or non-canonical input."""
    if not _B64URL.fullmatch(value) or len(value) % 4 == 1:
        raise ValueError("not unpadded base64url")
    data = base64.b64decode(value + "=" * (-len(value) % 4), altchars=b"-_", validate=True)
    # Non-zero trailing bits would let several strings decode to the same bytes
    if b64url_encode(data) != value:
        raise ValueError("non-canonical base64url")
    return data


@dataclass(frozen=True)
class SealerKey:
    kid: str
    secret: bytes
    role: str = ROLE_CURRENT

    def __post_init__(self):
        if not self.kid or len(self.kid.encode("utf-8")) > 255:
            raise ValueError("sealer key id must be 1..255 bytes")
        if len(self.secret) not in _KEY_SIZES:
            raise ValueError(f"sealer key {self.kid!r} must be 128, 192 or 256 bits")
        if self.role not in (ROLE_CURRENT, ROLE_DECRYPT_ONLY):
            raise ValueError(f"unknown sealer key role {self.role!r}")

    def __repr__(self) -> str:
        return f"SealerKey(kid={self.kid!r}, role={self.role!r})"


class DataSealer:
    """Wrap/unwrap opaque bytes. Read-only after construction except for atomic key rotation."""

    def __init__(
        self,
        keys: Iterable[SealerKey],
        *,
        clock: Callable[[], float] = time.time,
        skew: int = 0,
    ):
        self._clock = clock
        self._skew = skew
        self._lock = threading.Lock()
        self._state = self._build_state(list(keys))

    @staticmethod
    def _build_state(keys: list[SealerKey]) -> tuple[SealerKey, dict[str, AESGCM]]:
        current = [k for k in keys if k.role == ROLE_CURRENT]
        if len(current) != 1:
            raise ValueError("exactly one sealer key must have role 'current'")
        ciphers: dict[str, AESGCM] = {}
        for key in keys:
            if key.kid in ciphers:
                raise ValueError(f"duplicate sealer key id {key.kid!r}")
            ciphers[key.kid] = AESGCM(key.secret)
        return current[0], ciphers

    @property
    def current_kid(self) -> str:
        return self._state[0].kid

    @property
    def kids(self) -> list[str]:
        return list(self._state[1])

    def rotate(self, new_key: SealerKey) -> None:
        """Make new_key the encrypt key; the previous current key stays available for decryption."""
        if new_key.role != ROLE_CURRENT:
            raise ValueError(f"rotation needs a key with role {ROLE_CURRENT!r}, got {new_key.role!r}")
        with self._lock:
            current, ciphers = self._state
            if new_key.kid in ciphers:
                raise ValueError(f"duplicate sealer key id {new_key.kid!r}")
            keys = [SealerKey(current.kid, current.secret, ROLE_DECRYPT_ONLY), SealerKey(new_key.kid, new_key.secret)]
            next_ciphers = dict(ciphers)
            next_ciphers[new_key.kid] = AESGCM(new_key.secret)
            self._state = (keys[1], next_ciphers)
        logger.info("Sealer key rotated: current kid=%s, previous kid=%s kept for decryption", new_key.kid, current.kid)

    def retire(self, kid: str) -> None:
        """Drop a decrypt-only key. Tokens sealed with it stop unwrapping."""
        with self._lock:
            current, ciphers = self._state
            if kid == current.kid:
                raise ValueError("cannot retire the current sealer key")
            next_ciphers = {k: v for k, v in ciphers.items() if k != kid}
            self._state = (current, next_ciphers)

    def wrap(self, plaintext: bytes, expiry: int) -> str:
        """Encrypt plaintext under the current key; expiry (epoch seconds) is bound into the tag."""
        if expiry < 0:
            raise ValueError("expiry must be non-negative")
        current, ciphers = self._state
        kid = current.kid.encode("utf-8")
        header = bytes([_VERSION, len(kid)]) + kid + _EXPIRY.pack(int(expiry))
        nonce = secrets.token_bytes(_NONCE_BYTES)
        sealed = ciphers[current.kid].encrypt(nonce, plaintext, header)
        return b64url_encode(header + nonce + sealed)

    def unwrap(self, wrapped: str) -> bytes:
        """Return plaintext, or raise SealerError. Expiry is checked before anything is returned."""
        try:
            blob = b64url_decode(wrapped)
        except (ValueError, binascii.Error, UnicodeEncodeError) as e:
            raise SealerError("wrapped value is not base64url") from e
        if len(blob) < 2 or blob[0] != _VERSION:
            raise SealerError("unsupported sealer envelope version")
        kid_len = blob[1]
        header_len = 2 + kid_len + _EXPIRY.size
        if len(blob) < header_len + _NONCE_BYTES + 16:
            raise SealerError("sealer envelope truncated")
        try:
            kid = blob[2:2 + kid_len].decode("utf-8")
        except UnicodeDecodeError as e:
            raise SealerError("sealer key id is not utf-8") from e
        (expiry,) = _EXPIRY.unpack_from(blob, 2 + kid_len)
        _, ciphers = self._state
        cipher = ciphers.get(kid)
        if cipher is None:
            raise SealerError(f"unknown sealer key id {kid!r}")
        if self._clock() >= expiry + self._skew:
            raise SealerError("sealed value expired")
        header = blob[:header_len]
        nonce = blob[header_len:header_len + _NONCE_BYTES]
        try:
            return cipher.decrypt(nonce, blob[header_len + _NONCE_BYTES:], header)
        except InvalidTag as e:
            raise SealerError("sealer tag mismatch") from e


def generate_key(kid: str | None = None, role: str = ROLE_CURRENT) -> SealerKey:
    """Fresh AES-256 key with a random kid."""
    return SealerKey(kid or f"sealer-{secrets.token_hex(4)}", AESGCM.generate_key(bit_length=256), role)


def keys_from_json(document: dict) -> list[SealerKey]:
    """Parse {"keys": [{"kid", "key", "role"}]} where key is base64url."""
    entries = document.get("keys")
    if not isinstance(entries, list) or not entries:
        raise ValueError("sealer keystore must contain a non-empty 'keys' array")
    return [
        SealerKey(str(entry["kid"]), b64url_decode(str(entry["key"])), str(entry.get("role", ROLE_CURRENT)))
        for entry in entries
    ]


def keys_to_json(keys: Iterable[SealerKey]) -> dict:
    return {"keys": [{"kid": k.kid, "key": b64url_encode(k.secret), "role": k.role} for k in keys]}


def load_or_create_keystore(path: str | None) -> list[SealerKey]:
    """
    Load sealer keys from a JSON keystore, or generate one current key and save it.
    A keystore that exists but cannot be parsed is an error (silently replacing keys would void live tokens).
    """
    p = Path(path or ".op_sealer_keys.json")
    if p.exists():
        keys = keys_from_json(json.loads(p.read_text(encoding="utf-8")))
        logger.info("Loaded %d sealer key(s) from %s", len(keys), p)
        return keys
    key = generate_key()
    try:
        p.write_text(json.dumps(keys_to_json([key])), encoding="utf-8")
        logger.info("Generated and saved sealer key kid=%s to %s", key.kid, p)
    except OSError as e:
        logger.warning("Could not save sealer keystore to %s: %s", p, e)
    return [key]
