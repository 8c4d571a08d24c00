"""
Pytest configuration for op_server. In-memory SQLite and throwaway key files so tests don't touch the
working directory; a controllable clock and in-memory collaborators for the token lifecycle.
"""
import os
import tempfile

_KEY_DIR = tempfile.mkdtemp(prefix="op_server_tests_")

# In-memory SQLite; database.py uses StaticPool so all connections share the same DB
os.environ["OP_DATABASE_URL"] = "sqlite:///:memory:"
os.environ["OP_SEALER_KEYSTORE_PATH"] = os.path.join(_KEY_DIR, "sealer_keys.json")
os.environ["OP_SIGNING_KEY_PATH"] = os.path.join(_KEY_DIR, "signing_key.pem")
# Avoid seeding clients from the developer's environment
for _var in ("OP_CLIENT_ID", "OP_REDIRECT_URIS", "OP_CLIENT_SECRET"):
    os.environ.pop(_var, None)

import pytest  # noqa: E402

from op_server.authorization import issue_authorization_code  # noqa: E402
from op_server.claims import CodeChallenge  # noqa: E402
from op_server.context import TokenContext, TokenPolicy  # noqa: E402
from op_server.id_token import IdTokenSigner  # noqa: E402
from op_server.keys import generate_signing_key, key_id  # noqa: E402
from op_server.replay import MemoryReplayStore  # noqa: E402
from op_server.sealer import DataSealer, SealerKey  # noqa: E402
from op_server.tokens import TokenOptions  # noqa: E402

NOW = 1_700_000_000
ISSUER = "https://op.example"
CLIENT_ID = "client123"
REDIRECT_URI = "https://rp.example/cb"
# RFC 7636 Appendix B
CODE_VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
CODE_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
NONCE = "n-0S6_WzA2Mj"
ACR = "urn:mace:incommon:iap:silver"
SUBJECT = "pairwise-7f3c"
PRINCIPAL = "alice"


class FakeClock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(scope="session")
def signing_key():
    return generate_signing_key()


@pytest.fixture
def signer(signing_key):
    return IdTokenSigner(signing_key, key_id(signing_key))


@pytest.fixture
def sealer(clock):
    return DataSealer([SealerKey("test-key-1", bytes(range(32)))], clock=clock)


@pytest.fixture
def replay_store(clock):
    return MemoryReplayStore(clock)


@pytest.fixture
def make_context(clock, sealer, replay_store, signer):
    def _make(sealer=sealer, replay_store=replay_store, **policy):
        return TokenContext(
            issuer=ISSUER,
            sealer=sealer,
            replay_store=replay_store,
            signer=signer,
            policy=TokenPolicy(**policy),
            clock=clock,
        )

    return _make


@pytest.fixture
def context(make_context):
    return make_context()


def default_code_options(**overrides) -> TokenOptions:
    values = dict(
        acr=ACR,
        nonce=NONCE,
        code_challenge=CodeChallenge(CODE_CHALLENGE, "S256"),
        delivery_claims={"email": "alice@example.org", "name": "Alice (generic)"},
        delivery_claims_id={"name": "Alice"},
        delivery_claims_ui={"phone_number": "+358 40 123 4567"},
        consentable_claims=["email", "phone_number"],
        consented_claims=["email"],
    )
    values.update(overrides)
    return TokenOptions(**values)


@pytest.fixture
def issue_code():
    """Mint a sealed authorization code the way the authorization endpoint would."""

    def _issue(context, client_id=CLIENT_ID, scope="openid profile", redirect_uri=REDIRECT_URI, options=None):
        return issue_authorization_code(
            context,
            client_id=client_id,
            subject=SUBJECT,
            principal=PRINCIPAL,
            auth_time=context.now() - 30,
            redirect_uri=redirect_uri,
            scope=scope,
            options=options or default_code_options(),
        )

    return _issue
