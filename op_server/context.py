"""
Explicit dependencies of the token lifecycle: issuer, clock, id generator, sealer, replay store,
ID token signer and the issuance policy. Nothing in the core reads process-wide state.
"""
import time
from dataclasses import dataclass, field
from typing import Callable

from op_server import config
from op_server.id_token import IdTokenSigner
from op_server.keys import load_or_create_signing_key
from op_server.replay import ReplayStore, SqlReplayStore
from op_server.sealer import DataSealer, load_or_create_keystore
from op_server.tokens import IdGenerator, secure_random_id

ROTATION_OFF = "off"
ROTATION_ROTATE_AND_REVOKE = "rotate-and-revoke"
ROTATION_MODES = (ROTATION_OFF, ROTATION_ROTATE_AND_REVOKE)

PKCE_NONE = "none"
PKCE_PUBLIC_CLIENTS = "public-clients"
PKCE_ALL = "all"
PKCE_MODES = (PKCE_NONE, PKCE_PUBLIC_CLIENTS, PKCE_ALL)


@dataclass(frozen=True)
class TokenPolicy:
    """Lifetimes in seconds. refresh_token_ttl = 0 disables refresh token issuance."""

    access_token_ttl: int = 3600
    refresh_token_ttl: int = 7200
    authorization_code_ttl: int = 300
    id_token_ttl: int = 3600
    refresh_token_rotation: str = ROTATION_OFF
    clock_skew_tolerance: int = 0
    pkce_required: str = PKCE_NONE

    def __post_init__(self):
        if self.refresh_token_rotation not in ROTATION_MODES:
            raise ValueError(f"refresh_token_rotation must be one of {ROTATION_MODES}")
        if self.pkce_required not in PKCE_MODES:
            raise ValueError(f"pkce_required must be one of {PKCE_MODES}")
        for name in ("access_token_ttl", "authorization_code_ttl", "id_token_ttl"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.refresh_token_ttl < 0 or self.clock_skew_tolerance < 0:
            raise ValueError("refresh_token_ttl and clock_skew_tolerance must not be negative")

    @property
    def rotate_refresh_tokens(self) -> bool:
        return self.refresh_token_rotation == ROTATION_ROTATE_AND_REVOKE

    def pkce_required_for(self, public_client: bool) -> bool:
        return self.pkce_required == PKCE_ALL or (self.pkce_required == PKCE_PUBLIC_CLIENTS and public_client)

    @classmethod
    def from_config(cls) -> "TokenPolicy":
        return cls(
            access_token_ttl=config.ACCESS_TOKEN_TTL,
            refresh_token_ttl=config.REFRESH_TOKEN_TTL,
            authorization_code_ttl=config.AUTHORIZATION_CODE_TTL,
            id_token_ttl=config.ID_TOKEN_TTL,
            refresh_token_rotation=config.REFRESH_TOKEN_ROTATION,
            clock_skew_tolerance=config.CLOCK_SKEW_TOLERANCE,
            pkce_required=config.PKCE_REQUIRED,
        )


@dataclass(frozen=True)
class TokenContext:
    issuer: str
    sealer: DataSealer
    replay_store: ReplayStore
    signer: IdTokenSigner
    policy: TokenPolicy = field(default_factory=TokenPolicy)
    clock: Callable[[], float] = time.time
    id_generator: IdGenerator = secure_random_id

    def now(self) -> int:
        return int(self.clock())


def context_from_config(session_factory) -> TokenContext:
    """Build the production context: keystore-backed sealer, SQL replay store, file-backed signing key."""
    policy = TokenPolicy.from_config()
    sealer = DataSealer(load_or_create_keystore(config.SEALER_KEYSTORE_PATH), skew=policy.clock_skew_tolerance)
    private_key, kid = load_or_create_signing_key(config.SIGNING_KEY_PATH)
    return TokenContext(
        issuer=config.ISSUER,
        sealer=sealer,
        replay_store=SqlReplayStore(session_factory),
        signer=IdTokenSigner(private_key, kid),
        policy=policy,
    )
