"""Capability Token Protocol: signed, single-use, time-boxed file URLs.

WHY: The receiving side of a relay must download a file that only the
sending workspace's bot token can read. Handing out that token is not an
option. Instead the sender mints a capability URL pointing at its own
/relay/file proxy: the URL names the file, carries an expiry and a
random single-use token, and is HMAC-signed with the shared relay secret.

HOW: sign_payload() computes HMAC-SHA256 over a fixed-order canonical
string ``teamId:fileId:expiresAt:filename:mimeType:size:token`` (absent
optional fields serialize as ""). build_proxy_url() embeds every field
plus ``sig`` in the query string. On access, parse_proxy_params() and
CapabilityProtocol.verify() reject missing fields, expiry and bad
signatures; claim/finalize/release then walk the token through its
lifecycle in the external store.

RULES:
- Signatures are compared in constant time; unequal lengths are rejected
  without looking at content
- Expiry is checked before the signature (an expired URL is "expired"
  whatever its signature)
- Token lifecycle: issued -> claimed -> finalized | released
- finalized and released are terminal; a token is never re-issued
- A claim holds for CLAIM_TTL_MS; an expired claim may be re-claimed
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, FrozenSet, Optional, Tuple
from urllib.parse import urlencode

from slack_relay.config import CLAIM_TTL_MS
from slack_relay.core.errors import CapabilityError

if TYPE_CHECKING:
    from slack_relay.stores.base import CapabilityTokenStore

logger = logging.getLogger(__name__)

PROXY_PATH = "/relay/file"


def now_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------


class TokenState(str, enum.Enum):
    """States of a capability token record.

    Inherits from str so values serialize cleanly.
    """

    ISSUED = "issued"
    CLAIMED = "claimed"
    FINALIZED = "finalized"
    RELEASED = "released"


TRANSITIONS: Dict[TokenState, FrozenSet[TokenState]] = {
    TokenState.ISSUED: frozenset({TokenState.CLAIMED}),
    TokenState.CLAIMED: frozenset({TokenState.FINALIZED, TokenState.RELEASED}),
    TokenState.FINALIZED: frozenset(),
    TokenState.RELEASED: frozenset(),
}


def can_transition(current: TokenState, target: TokenState) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class CapabilityToken:
    """One single-use token record, keyed by (team_id, file_id, token).

    claim_expires_at is set while CLAIMED; expires_at bounds the whole
    token's usefulness (epoch milliseconds for both).
    """

    team_id: str
    file_id: str
    token: str
    expires_at: int
    state: TokenState = TokenState.ISSUED
    claim_expires_at: Optional[int] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.team_id, self.file_id, self.token)


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProxyParams:
    """Plaintext fields of a capability URL (everything but the signature)."""

    team_id: str
    file_id: str
    expires_at: int
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None
    token: Optional[str] = None


def _normalize(value: object) -> str:
    return "" if value is None else str(value)


def build_signature_payload(params: ProxyParams) -> str:
    """Canonical ``teamId:fileId:expiresAt:filename:mimeType:size:token``."""
    return ":".join([
        params.team_id,
        params.file_id,
        _normalize(params.expires_at),
        _normalize(params.filename),
        _normalize(params.mime_type),
        _normalize(params.size),
        _normalize(params.token),
    ])


def sign_payload(secret: str, params: ProxyParams) -> str:
    """Hex HMAC-SHA256 of the canonical payload."""
    payload = build_signature_payload(params)
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def safe_equal(left: str, right: str) -> bool:
    """Constant-time string comparison.

    Unequal byte lengths return False immediately; the content of the
    inputs is never inspected in that case.
    """
    left_bytes = left.encode("utf-8")
    right_bytes = right.encode("utf-8")
    if len(left_bytes) != len(right_bytes):
        return False
    return hmac.compare_digest(left_bytes, right_bytes)


def verify_signature(secret: str, params: ProxyParams, signature: str) -> bool:
    return safe_equal(sign_payload(secret, params), signature)


def build_proxy_url(params: ProxyParams, secret: str, base_url: str) -> str:
    """Signed ``<base>/relay/file?...&sig=...`` URL for ``params``."""
    query = {
        "teamId": params.team_id,
        "fileId": params.file_id,
        "expiresAt": str(params.expires_at),
        "filename": params.filename or "",
        "mimeType": params.mime_type or "",
        "size": "" if params.size is None else str(params.size),
        "token": params.token or "",
        "sig": sign_payload(secret, params),
    }
    return "{}{}?{}".format(base_url.rstrip("/"), PROXY_PATH, urlencode(query))


def parse_proxy_params(query: Mapping[str, str]) -> Tuple[ProxyParams, str]:
    """Rebuild ProxyParams and the signature from request query parameters.

    Raises:
        CapabilityError("missing_params"): teamId, fileId, expiresAt, token
            or sig is absent, or a numeric field does not parse.
    """
    team_id = query.get("teamId") or ""
    file_id = query.get("fileId") or ""
    raw_expires = query.get("expiresAt") or ""
    token = query.get("token") or ""
    sig = query.get("sig") or ""
    raw_size = query.get("size") or ""

    if not (team_id and file_id and raw_expires and token and sig):
        raise CapabilityError("missing_params")

    try:
        expires_at = int(raw_expires)
        size = int(raw_size) if raw_size else None
    except ValueError:
        raise CapabilityError("missing_params", "expiresAt and size must be integers")
    if expires_at <= 0:
        raise CapabilityError("missing_params")

    params = ProxyParams(
        team_id=team_id,
        file_id=file_id,
        expires_at=expires_at,
        filename=query.get("filename") or None,
        mime_type=query.get("mimeType") or None,
        size=size,
        token=token,
    )
    return params, sig


# ---------------------------------------------------------------------------
# Protocol facade
# ---------------------------------------------------------------------------


@dataclass
class IssuedCapability:
    token: CapabilityToken
    url: str


class CapabilityProtocol:
    """Issues, verifies and walks capability tokens through their lifecycle.

    WHY: The outbound handler (issuing side) and the /relay/file route
    (redeeming side) must agree on signing, expiry and store transitions.

    HOW: Holds the shared secret, the public base URL and the token store.
    The store performs each transition atomically; a False from the store
    is a normal concurrency outcome, reported as token_unavailable.

    RULES:
    - issue() stores the token before the URL is handed out
    - claim() uses CLAIM_TTL_MS unless told otherwise
    - finalize()/release() are no-ops in the store when the token is not
      CLAIMED; they return False in that case
    """

    def __init__(
        self,
        secret: str,
        base_url: str,
        store: "CapabilityTokenStore",
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._secret = secret
        self._base_url = base_url
        self._store = store
        self._clock = clock

    def issue(
        self,
        team_id: str,
        file_id: str,
        ttl_s: int,
        filename: Optional[str] = None,
        mime_type: Optional[str] = None,
        size: Optional[int] = None,
    ) -> IssuedCapability:
        expires_at = self._clock() + ttl_s * 1000
        record = CapabilityToken(
            team_id=team_id,
            file_id=file_id,
            token=secrets.token_urlsafe(24),
            expires_at=expires_at,
        )
        self._store.create(record)
        params = ProxyParams(
            team_id=team_id,
            file_id=file_id,
            expires_at=expires_at,
            filename=filename,
            mime_type=mime_type,
            size=size,
            token=record.token,
        )
        return IssuedCapability(token=record, url=build_proxy_url(params, self._secret, self._base_url))

    def verify(self, params: ProxyParams, signature: str) -> None:
        """Raise CapabilityError unless the URL is unexpired and correctly signed."""
        if self._clock() > params.expires_at:
            raise CapabilityError("expired")
        if not verify_signature(self._secret, params, signature):
            raise CapabilityError("invalid_signature")

    def claim(self, params: ProxyParams, ttl_ms: int = CLAIM_TTL_MS) -> None:
        claimed = self._store.claim(params.team_id, params.file_id, params.token or "", ttl_ms)
        if not claimed:
            logger.info("Capability token unavailable for file %s", params.file_id)
            raise CapabilityError("token_unavailable")

    def finalize(self, params: ProxyParams) -> bool:
        return self._store.finalize(params.team_id, params.file_id, params.token or "")

    def release(self, params: ProxyParams) -> bool:
        return self._store.release(params.team_id, params.file_id, params.token or "")
