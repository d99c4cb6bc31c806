"""Thread-safe in-memory stores for mappings, tokens, queue and installs.

WHY: The relay needs working stores for single-process deployments and
for tests. They also pin down the semantics a real backend must provide:
conditional (atomic) token transitions and idempotent enqueueing.

HOW: Each store keeps a plain dict guarded by a threading.Lock. Token
transitions are validated against the TokenState transition table while
the lock is held, which gives the same guarantee as a conditional update
in a database.

RULES:
- All reads and mutations acquire self._lock
- Token claim succeeds only from ISSUED, or from CLAIMED whose claim TTL
  has lapsed, and only before the token's expires_at
- finalize/release succeed only from CLAIMED
- cleanup_expired() drops token records past expires_at
- The outbound queue returns the existing id for a repeated relay_key
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from slack_relay.core.capability import (
    CapabilityToken,
    TokenState,
    can_transition,
    now_ms,
)
from slack_relay.core.envelope import RelayEnvelope
from slack_relay.stores.base import ChannelMapping, OutboundMessage, OutboundStatus

logger = logging.getLogger(__name__)


class InMemoryChannelMappingStore:
    """(team_id, user_id) -> ChannelMapping."""

    def __init__(self) -> None:
        self._mappings: Dict[Tuple[str, str], ChannelMapping] = {}
        self._lock = threading.Lock()

    def get(self, team_id: str, user_id: str) -> Optional[ChannelMapping]:
        with self._lock:
            return self._mappings.get((team_id, user_id))

    def set(self, mapping: ChannelMapping) -> None:
        with self._lock:
            self._mappings[(mapping.team_id, mapping.user_id)] = mapping
        logger.info(
            "Mapped %s/%s to channel %s", mapping.team_id, mapping.user_id, mapping.channel_id
        )


class InMemoryCapabilityTokenStore:
    """Capability token records with atomic state transitions."""

    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self._tokens: Dict[Tuple[str, str, str], CapabilityToken] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def create(self, record: CapabilityToken) -> None:
        with self._lock:
            if record.key in self._tokens:
                raise ValueError("Capability token already exists")
            self._tokens[record.key] = record

    def get(self, team_id: str, file_id: str, token: str) -> Optional[CapabilityToken]:
        with self._lock:
            return self._tokens.get((team_id, file_id, token))

    def claim(self, team_id: str, file_id: str, token: str, ttl_ms: int) -> bool:
        with self._lock:
            record = self._tokens.get((team_id, file_id, token))
            if record is None:
                return False
            now = self._clock()
            if now > record.expires_at:
                return False

            stale_claim = (
                record.state == TokenState.CLAIMED
                and record.claim_expires_at is not None
                and now > record.claim_expires_at
            )
            if not (can_transition(record.state, TokenState.CLAIMED) or stale_claim):
                return False

            record.state = TokenState.CLAIMED
            record.claim_expires_at = now + ttl_ms
            return True

    def finalize(self, team_id: str, file_id: str, token: str) -> bool:
        return self._settle(team_id, file_id, token, TokenState.FINALIZED)

    def release(self, team_id: str, file_id: str, token: str) -> bool:
        return self._settle(team_id, file_id, token, TokenState.RELEASED)

    def _settle(self, team_id: str, file_id: str, token: str, target: TokenState) -> bool:
        with self._lock:
            record = self._tokens.get((team_id, file_id, token))
            if record is None or not can_transition(record.state, target):
                return False
            record.state = target
            record.claim_expires_at = None
            return True

    def cleanup_expired(self) -> int:
        """Remove token records past their expires_at. Returns the count."""
        now = self._clock()
        with self._lock:
            expired = [key for key, rec in self._tokens.items() if now > rec.expires_at]
            for key in expired:
                del self._tokens[key]
        if expired:
            logger.info("Expired %d capability tokens", len(expired))
        return len(expired)


class InMemoryOutboundQueue:
    """Outbound envelopes keyed by id, deduplicated by relay_key."""

    def __init__(self) -> None:
        self._messages: Dict[str, OutboundMessage] = {}
        self._by_relay_key: Dict[str, str] = {}
        self._lock = threading.Lock()

    def enqueue(self, envelope: RelayEnvelope) -> str:
        with self._lock:
            existing = self._by_relay_key.get(envelope.relay_key)
            if existing is not None:
                logger.info("Relay key %s already queued as %s", envelope.relay_key, existing)
                return existing

            now = time.time()
            message = OutboundMessage(
                id=uuid.uuid4().hex,
                envelope=envelope,
                status=OutboundStatus.QUEUED,
                created_at=now,
                updated_at=now,
            )
            self._messages[message.id] = message
            self._by_relay_key[envelope.relay_key] = message.id
            return message.id

    def get(self, message_id: str) -> Optional[OutboundMessage]:
        with self._lock:
            return self._messages.get(message_id)

    def find(self, relay_key: str) -> Optional[OutboundMessage]:
        with self._lock:
            message_id = self._by_relay_key.get(relay_key)
            return self._messages.get(message_id) if message_id is not None else None

    def list_messages(self, status: Optional[OutboundStatus] = None) -> List[OutboundMessage]:
        """Snapshot of messages, oldest first, optionally filtered by status."""
        with self._lock:
            messages = sorted(self._messages.values(), key=lambda m: m.created_at)
        if status is not None:
            messages = [m for m in messages if m.status == status]
        return messages

    def was_dispatched(self, message_id: str) -> bool:
        with self._lock:
            message = self._messages.get(message_id)
            return message is not None and message.status == OutboundStatus.DISPATCHED

    def mark_dispatched(self, message_id: str) -> None:
        self._update(message_id, OutboundStatus.DISPATCHED, None)

    def mark_failed(self, message_id: str, error: str) -> None:
        self._update(message_id, OutboundStatus.FAILED, error)

    def _update(self, message_id: str, status: OutboundStatus, error: Optional[str]) -> None:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return
            message.status = status
            message.error = error
            message.attempts += 1
            message.updated_at = time.time()


@dataclass
class InMemoryInstallationStore:
    """Bot tokens per workspace label, for direct-transfer mode."""

    tokens: Dict[str, str] = field(default_factory=dict)

    def get_bot_token(self, workspace: str) -> Optional[str]:
        return self.tokens.get(workspace)
