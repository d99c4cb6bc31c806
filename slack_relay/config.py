"""Configuration constants, relay defaults, and .env loading.

WHY: The relay needs secrets (Slack bot token, signing secret, shared
relay secret), a public base URL for signed file links, and tunables for
rate limiting and TTLs. Keeping them in one module makes them easy to
find and override per deployment.

HOW: python-dotenv loads the .env file on import. Plain defaults live as
module-level constants. load_settings() reads the environment into a
frozen RelaySettings dataclass and raises a clear ValueError for any
missing required value.

RULES:
- Secrets are loaded from the environment, never hardcoded
- Required: SLACK_BOT_TOKEN, SLACK_SIGNING_SECRET, RELAY_WEBHOOK_SECRET, APP_BASE_URL
- RELAY_FILE_TRANSPORT is "proxy" (signed URL) or "direct" (cross-workspace fetch)
- All defaults can be overridden via environment variables
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

# Load .env from the project root (where the server is started from)
load_dotenv()

# ---------------------------------------------------------------------------
# Relay defaults
# ---------------------------------------------------------------------------

MAX_RELAY_FILE_BYTES = 200 * 1024 * 1024
"""Hard ceiling for a single relayed attachment (200 MiB)."""

CLAIM_TTL_MS = 60_000
"""How long a claimed capability token guards an in-flight download."""

DEFAULT_PROXY_TTL_S = 15 * 60
DEFAULT_RATE_CAPACITY = 5
DEFAULT_RATE_PER_SECOND = 5.0
DEFAULT_PORT = 4000

TRANSPORT_PROXY = "proxy"
TRANSPORT_DIRECT = "direct"
_TRANSPORTS = (TRANSPORT_PROXY, TRANSPORT_DIRECT)

SOURCE_WORKSPACE_RESPONDER = "responder"

_REQUIRED = (
    "SLACK_BOT_TOKEN",
    "SLACK_SIGNING_SECRET",
    "RELAY_WEBHOOK_SECRET",
    "APP_BASE_URL",
)


@dataclass(frozen=True)
class RelaySettings:
    """Resolved runtime settings for one relay process.

    RULES:
    - rate_refill_per_ms is derived: RELAY_RATE_PER_SECOND / 1000
    - source_tokens maps a workspace label to its bot token (direct mode)
    - peer_url empty means outbound dispatch is disabled
    """

    slack_bot_token: str
    slack_signing_secret: str
    relay_secret: str
    app_base_url: str
    peer_url: str = ""
    file_transport: str = TRANSPORT_PROXY
    source_workspace: str = SOURCE_WORKSPACE_RESPONDER
    source_tokens: Dict[str, str] = field(default_factory=dict)
    rate_capacity: int = DEFAULT_RATE_CAPACITY
    rate_per_second: float = DEFAULT_RATE_PER_SECOND
    proxy_ttl_s: int = DEFAULT_PROXY_TTL_S
    port: int = DEFAULT_PORT

    @property
    def rate_refill_per_ms(self) -> float:
        return self.rate_per_second / 1000.0


def parse_source_tokens(raw: str) -> Dict[str, str]:
    """Parse ``workspace=token`` pairs separated by commas.

    Blank entries and entries without ``=`` are skipped.
    """
    tokens: Dict[str, str] = {}
    for pair in raw.split(","):
        pair = pair.strip()
        if "=" not in pair:
            continue
        workspace, token = pair.split("=", 1)
        if workspace.strip() and token.strip():
            tokens[workspace.strip()] = token.strip()
    return tokens


def load_settings() -> RelaySettings:
    """Load RelaySettings from the environment.

    WHY: The relay cannot run without its secrets. Failing at startup with
    the variable name is better than a 500 on the first request.

    HOW: Reads each variable with os.getenv, strips whitespace, collects
    missing required names and raises once with all of them.

    RULES:
    - Raises ValueError listing every missing required variable
    - Raises ValueError for an unknown RELAY_FILE_TRANSPORT value
    - Numeric variables fall back to their defaults when unset
    """
    values = {name: os.getenv(name, "").strip() for name in _REQUIRED}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ValueError(
            "Relay not configured. Missing environment variables: {}. "
            "Add them to the .env file in the app folder.".format(", ".join(missing))
        )

    transport = os.getenv("RELAY_FILE_TRANSPORT", TRANSPORT_PROXY).strip().lower()
    if transport not in _TRANSPORTS:
        raise ValueError(
            "RELAY_FILE_TRANSPORT must be one of {}, got '{}'".format(
                ", ".join(_TRANSPORTS), transport
            )
        )

    return RelaySettings(
        slack_bot_token=values["SLACK_BOT_TOKEN"],
        slack_signing_secret=values["SLACK_SIGNING_SECRET"],
        relay_secret=values["RELAY_WEBHOOK_SECRET"],
        app_base_url=values["APP_BASE_URL"],
        peer_url=os.getenv("RELAY_PEER_URL", "").strip(),
        file_transport=transport,
        source_workspace=os.getenv("SOURCE_WORKSPACE", SOURCE_WORKSPACE_RESPONDER).strip(),
        source_tokens=parse_source_tokens(os.getenv("RELAY_SOURCE_TOKENS", "")),
        rate_capacity=int(os.getenv("RELAY_RATE_CAPACITY", str(DEFAULT_RATE_CAPACITY))),
        rate_per_second=float(os.getenv("RELAY_RATE_PER_SECOND", str(DEFAULT_RATE_PER_SECOND))),
        proxy_ttl_s=int(os.getenv("RELAY_PROXY_TTL_S", str(DEFAULT_PROXY_TTL_S))),
        port=int(os.getenv("PORT", str(DEFAULT_PORT))),
    )
