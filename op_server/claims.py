"""
Canonical claim set shared by authorization codes, access tokens and refresh tokens, and its JSON codec.

A ClaimSet is an immutable mapping. decode() validates the required members for the declared type and
the JSON shape of every known member; unknown members are kept so they survive a decode/encode cycle.
"""
import copy
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Iterator
from urllib.parse import urlsplit

from op_server.errors import ParseError

KEY_TYPE = "type"
KEY_ISSUER = "iss"
KEY_SUBJECT = "sub"
KEY_PRINCIPAL = "principal"
KEY_AUDIENCE = "aud"
KEY_EXPIRATION_TIME = "exp"
KEY_ISSUED_AT = "iat"
KEY_ID = "jti"
KEY_ACR = "acr"
KEY_NONCE = "nonce"
KEY_AUTH_TIME = "auth_time"
KEY_REDIRECT_URI = "redirect_uri"
KEY_SCOPE = "scope"
KEY_CLAIMS = "claims"
KEY_DELIVERY_CLAIMS = "dl_claims"
KEY_DELIVERY_CLAIMS_ID = "dl_claims_id"
KEY_DELIVERY_CLAIMS_UI = "dl_claims_ui"
KEY_CONSENTABLE_CLAIMS = "cnsntl_claims"
KEY_CONSENTED_CLAIMS = "cnsntd_claims"
KEY_CODE_CHALLENGE = "code_challenge"

TYPE_AUTHORIZATION_CODE = "ac"
TYPE_ACCESS_TOKEN = "at"
TYPE_REFRESH_TOKEN = "rt"
TOKEN_TYPES = (TYPE_AUTHORIZATION_CODE, TYPE_ACCESS_TOKEN, TYPE_REFRESH_TOKEN)

_ALL = frozenset(TOKEN_TYPES)

# Members required for every token type
_REQUIRED_COMMON = (
    KEY_TYPE, KEY_ISSUER, KEY_SUBJECT, KEY_AUDIENCE, KEY_EXPIRATION_TIME, KEY_ISSUED_AT,
    KEY_ID, KEY_AUTH_TIME, KEY_REDIRECT_URI, KEY_SCOPE,
)
_REQUIRED_BY_TYPE = {
    TYPE_AUTHORIZATION_CODE: _REQUIRED_COMMON + (KEY_ACR,),
    TYPE_ACCESS_TOKEN: _REQUIRED_COMMON,
    TYPE_REFRESH_TOKEN: _REQUIRED_COMMON + (KEY_ACR,),
}

# Optional members and the token types allowed to carry them
OPTIONAL_MEMBERS = {
    KEY_PRINCIPAL: _ALL,
    KEY_ACR: frozenset({TYPE_ACCESS_TOKEN}),
    KEY_NONCE: _ALL,
    KEY_CLAIMS: _ALL,
    KEY_DELIVERY_CLAIMS: frozenset({TYPE_AUTHORIZATION_CODE, TYPE_ACCESS_TOKEN}),
    KEY_DELIVERY_CLAIMS_ID: frozenset({TYPE_AUTHORIZATION_CODE}),
    KEY_DELIVERY_CLAIMS_UI: frozenset({TYPE_AUTHORIZATION_CODE, TYPE_ACCESS_TOKEN}),
    KEY_CONSENTABLE_CLAIMS: _ALL,
    KEY_CONSENTED_CLAIMS: _ALL,
    KEY_CODE_CHALLENGE: frozenset({TYPE_AUTHORIZATION_CODE}),
}

_STRING_MEMBERS = (KEY_TYPE, KEY_ISSUER, KEY_SUBJECT, KEY_PRINCIPAL, KEY_ID, KEY_ACR, KEY_NONCE,
                   KEY_REDIRECT_URI, KEY_SCOPE, KEY_CODE_CHALLENGE)
_TIME_MEMBERS = (KEY_EXPIRATION_TIME, KEY_ISSUED_AT, KEY_AUTH_TIME)
_OBJECT_MEMBERS = (KEY_CLAIMS, KEY_DELIVERY_CLAIMS, KEY_DELIVERY_CLAIMS_ID, KEY_DELIVERY_CLAIMS_UI)
_ARRAY_MEMBERS = (KEY_CONSENTABLE_CLAIMS, KEY_CONSENTED_CLAIMS)

_ASCII_WHITESPACE = re.compile(r"[ \t\n\r\f\v]+")
# Controls, space, DEL and the ASCII characters RFC 3986 never allows in a URI
_URI_FORBIDDEN = re.compile(r'[\x00-\x20\x7f<>"{}|\\^`]')


@dataclass(frozen=True)
class CodeChallenge:
    """PKCE challenge bound to an authorization code. Serialized as "value:method"."""

    value: str
    method: str

    def __str__(self) -> str:
        return f"{self.value}:{self.method}"

    @classmethod
    def parse(cls, raw: str) -> "CodeChallenge":
        value, sep, method = raw.rpartition(":")
        if not sep or not value or not method:
            raise ParseError("code_challenge must have the form value:method")
        return cls(value=value, method=method)


def split_scope(scope: str) -> tuple[str, ...]:
    """Split the OAuth wire form on any ASCII whitespace; duplicates collapse, first occurrence wins."""
    seen: dict[str, None] = {}
    for item in _ASCII_WHITESPACE.split(scope):
        if item:
            seen.setdefault(item, None)
    return tuple(seen)


def join_scope(scopes: Iterable[str]) -> str:
    return " ".join(dict.fromkeys(s for s in scopes if s))


def is_time(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def check_redirect_uri(value: str) -> str:
    """Absolute URI without fragment, else ParseError. Returned unchanged (no normalization)."""
    if _URI_FORBIDDEN.search(value):
        raise ParseError("redirect_uri contains characters not allowed in a URI")
    try:
        parts = urlsplit(value)
        parts.port  # raises ValueError on a non-numeric or out-of-range port
    except ValueError as e:
        raise ParseError("redirect_uri is not a valid URI") from e
    if not parts.scheme or not (parts.netloc or parts.path):
        raise ParseError("redirect_uri must be an absolute URI")
    if "#" in value:
        raise ParseError("redirect_uri must not contain a fragment")
    return value


def _check_member(key: str, value: Any) -> None:
    if key in _STRING_MEMBERS:
        if not isinstance(value, str):
            raise ParseError(f"claim {key} must be a string")
    elif key in _TIME_MEMBERS:
        if not is_time(value):
            raise ParseError(f"claim {key} must be a non-negative integer")
    elif key in _OBJECT_MEMBERS:
        if not isinstance(value, dict):
            raise ParseError(f"claim {key} must be a JSON object")
    elif key in _ARRAY_MEMBERS:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ParseError(f"claim {key} must be an array of strings")
    elif key == KEY_AUDIENCE:
        if not isinstance(value, list) or len(value) != 1 or not isinstance(value[0], str):
            raise ParseError("claim aud must be an array holding exactly one client id")


def validate(claims: Mapping[str, Any]) -> None:
    """Check required members for the declared type and the shape of every known member."""
    token_type = claims.get(KEY_TYPE)
    if token_type not in _REQUIRED_BY_TYPE:
        raise ParseError(f"claim type must be one of {', '.join(TOKEN_TYPES)}")
    for key in _REQUIRED_BY_TYPE[token_type]:
        if claims.get(key) is None:
            raise ParseError(f"claim {key} must exist and not be null")
    for key, value in claims.items():
        if value is None:
            if key in OPTIONAL_MEMBERS:
                raise ParseError(f"claim {key} must be omitted rather than null")
            continue
        allowed = OPTIONAL_MEMBERS.get(key)
        if allowed is not None and token_type not in allowed and key not in _REQUIRED_BY_TYPE[token_type]:
            raise ParseError(f"claim {key} is not allowed in a token of type {token_type}")
        _check_member(key, value)
    if claims[KEY_ISSUED_AT] > claims[KEY_EXPIRATION_TIME]:
        raise ParseError("claim iat must not be after exp")
    if claims[KEY_AUTH_TIME] > claims[KEY_ISSUED_AT]:
        raise ParseError("claim auth_time must not be after iat")
    check_redirect_uri(claims[KEY_REDIRECT_URI])
    if KEY_CODE_CHALLENGE in claims:
        CodeChallenge.parse(claims[KEY_CODE_CHALLENGE])


class ClaimSet(Mapping):
    """Immutable, validated claim map with typed accessors. Construct with decode() or from_dict()."""

    __slots__ = ("_claims",)

    def __init__(self, claims: Mapping[str, Any]):
        # Deep copy through JSON so nested objects cannot be mutated behind our back
        self._claims = MappingProxyType(json.loads(json.dumps(dict(claims))))

    @classmethod
    def from_dict(cls, claims: Mapping[str, Any]) -> "ClaimSet":
        validate(claims)
        return cls(claims)

    def __getitem__(self, key: str) -> Any:
        return self._claims[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._claims)

    def __len__(self) -> int:
        return len(self._claims)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ClaimSet):
            return dict(self._claims) == dict(other._claims)
        if isinstance(other, Mapping):
            return dict(self._claims) == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(encode(self))

    def __repr__(self) -> str:
        return f"ClaimSet(type={self.get(KEY_TYPE)!r}, jti={self.get(KEY_ID)!r})"

    def to_dict(self) -> dict[str, Any]:
        return json.loads(json.dumps(dict(self._claims)))

    def _optional(self, key: str, kind: type) -> Any:
        value = self._claims.get(key)
        if value is None:
            return None
        if not isinstance(value, kind):
            raise ParseError(f"claim {key} has the wrong JSON type")
        return copy.deepcopy(value) if isinstance(value, (dict, list)) else value

    @property
    def token_type(self) -> str:
        return self._claims[KEY_TYPE]

    @property
    def issuer(self) -> str:
        return self._claims[KEY_ISSUER]

    @property
    def subject(self) -> str:
        return self._claims[KEY_SUBJECT]

    @property
    def principal(self) -> str | None:
        return self._optional(KEY_PRINCIPAL, str)

    @property
    def audience(self) -> list[str]:
        return list(self._claims[KEY_AUDIENCE])

    @property
    def client_id(self) -> str:
        return self._claims[KEY_AUDIENCE][0]

    @property
    def jti(self) -> str:
        return self._claims[KEY_ID]

    @property
    def issued_at(self) -> int:
        return self._claims[KEY_ISSUED_AT]

    @property
    def expires_at(self) -> int:
        return self._claims[KEY_EXPIRATION_TIME]

    @property
    def auth_time(self) -> int:
        return self._claims[KEY_AUTH_TIME]

    @property
    def acr(self) -> str | None:
        return self._optional(KEY_ACR, str)

    @property
    def nonce(self) -> str | None:
        return self._optional(KEY_NONCE, str)

    @property
    def redirect_uri(self) -> str:
        return check_redirect_uri(self._claims[KEY_REDIRECT_URI])

    @property
    def scope(self) -> tuple[str, ...]:
        return split_scope(self._claims[KEY_SCOPE])

    @property
    def claims_request(self) -> dict | None:
        return self._optional(KEY_CLAIMS, dict)

    @property
    def delivery_claims(self) -> dict | None:
        return self._optional(KEY_DELIVERY_CLAIMS, dict)

    @property
    def delivery_claims_id(self) -> dict | None:
        return self._optional(KEY_DELIVERY_CLAIMS_ID, dict)

    @property
    def delivery_claims_ui(self) -> dict | None:
        return self._optional(KEY_DELIVERY_CLAIMS_UI, dict)

    @property
    def consentable_claims(self) -> list[str] | None:
        return self._optional(KEY_CONSENTABLE_CLAIMS, list)

    @property
    def consented_claims(self) -> list[str] | None:
        return self._optional(KEY_CONSENTED_CLAIMS, list)

    @property
    def code_challenge(self) -> CodeChallenge | None:
        raw = self._optional(KEY_CODE_CHALLENGE, str)
        return CodeChallenge.parse(raw) if raw is not None else None


def encode(claims: Mapping[str, Any]) -> str:
    """Canonical JSON: sorted members, compact separators, UTF-8 kept as-is."""
    return json.dumps(dict(claims), sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def decode(data: str | bytes) -> ClaimSet:
    """Parse and validate a serialized claim set. Any failure is a ParseError."""
    try:
        obj = json.loads(data, parse_constant=_reject_constant)
    except (ValueError, UnicodeDecodeError) as e:
        raise ParseError("claim set is not valid JSON") from e
    if not isinstance(obj, dict):
        raise ParseError("claim set must be a JSON object")
    return ClaimSet.from_dict(obj)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")
