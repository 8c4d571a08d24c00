"""
OpenID Provider token service configuration.
No secrets in this file; key material comes from keystore files, credentials from env or DB.
"""
import os

# Issuer URL (public identifier, copied into every token as iss)
ISSUER = os.environ.get("OP_ISSUER", "http://127.0.0.1:9000").rstrip("/")

# Token lifetimes (seconds)
ACCESS_TOKEN_TTL = int(os.environ.get("OP_ACCESS_TOKEN_TTL", "3600"))
REFRESH_TOKEN_TTL = int(os.environ.get("OP_REFRESH_TOKEN_TTL", "7200"))
AUTHORIZATION_CODE_TTL = int(os.environ.get("OP_AUTHORIZATION_CODE_TTL", "300"))
ID_TOKEN_TTL = int(os.environ.get("OP_ID_TOKEN_TTL", "3600"))

# "off": refresh tokens are reusable until exp. "rotate-and-revoke": every refresh burns the old jti and mints a new rt.
REFRESH_TOKEN_ROTATION = os.environ.get("OP_REFRESH_TOKEN_ROTATION", "off").strip().lower()

# Tolerance applied to exp / iat checks (seconds)
CLOCK_SKEW_TOLERANCE = int(os.environ.get("OP_CLOCK_SKEW_TOLERANCE", "0"))

# "none" | "public-clients" | "all"
PKCE_REQUIRED = os.environ.get("OP_PKCE_REQUIRED", "none").strip().lower()

# JSON keystore for the token sealer. Generated with one fresh AES-256 key if missing.
SEALER_KEYSTORE_PATH = os.environ.get("OP_SEALER_KEYSTORE_PATH", ".op_sealer_keys.json")

# RSA private key PEM used to sign ID tokens. Generated and saved if missing.
SIGNING_KEY_PATH = os.environ.get("OP_SIGNING_KEY_PATH", ".op_signing_key.pem")

# Replay records, client registry and audit log
DATABASE_URL = os.environ.get("OP_DATABASE_URL", "sqlite:///./op_server.db")
