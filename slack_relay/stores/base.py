"""Protocols for the external stores the relay depends on.

RULES:
- ChannelMappingStore.set is an upsert keyed by (team_id, user_id)
- CapabilityTokenStore transitions are atomic per (team_id, file_id, token)
  and return False, never raise, when the transition is not allowed
- OutboundQueue.enqueue is idempotent by relay_key
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol

if TYPE_CHECKING:
    from slack_relay.core.capability import CapabilityToken
    from slack_relay.core.envelope import RelayEnvelope


@dataclass(frozen=True)
class ChannelMapping:
    team_id: str
    user_id: str
    channel_id: str
    channel_name: Optional[str] = None


class OutboundStatus(str, enum.Enum):
    QUEUED = "queued"
    DISPATCHED = "dispatched"
    FAILED = "failed"


@dataclass
class OutboundMessage:
    id: str
    envelope: "RelayEnvelope"
    status: OutboundStatus
    created_at: float
    updated_at: float
    error: Optional[str] = None
    attempts: int = 0


class ChannelMappingStore(Protocol):
    def get(self, team_id: str, user_id: str) -> Optional[ChannelMapping]: ...

    def set(self, mapping: ChannelMapping) -> None: ...


class CapabilityTokenStore(Protocol):
    def create(self, record: "CapabilityToken") -> None: ...

    def claim(self, team_id: str, file_id: str, token: str, ttl_ms: int) -> bool: ...

    def finalize(self, team_id: str, file_id: str, token: str) -> bool: ...

    def release(self, team_id: str, file_id: str, token: str) -> bool: ...


class OutboundQueue(Protocol):
    def enqueue(self, envelope: "RelayEnvelope") -> str: ...

    def find(self, relay_key: str) -> Optional[OutboundMessage]: ...

    def was_dispatched(self, message_id: str) -> bool: ...

    def mark_dispatched(self, message_id: str) -> None: ...

    def mark_failed(self, message_id: str, error: str) -> None: ...


class InstallationStore(Protocol):
    def get_bot_token(self, workspace: str) -> Optional[str]: ...
