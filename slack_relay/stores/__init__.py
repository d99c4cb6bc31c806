"""Store contracts and in-memory implementations.

WHY: Channel mappings, capability tokens, queued outbound messages and
workspace installations are owned by an external datastore. The relay
only depends on the operations it needs, expressed as Protocols, so any
backend that honours the atomicity rules can be plugged in.

HOW: base.py declares the Protocols. memory.py provides thread-safe
in-memory versions used by default and in tests.
"""

from slack_relay.stores.base import (
    CapabilityTokenStore,
    ChannelMapping,
    ChannelMappingStore,
    InstallationStore,
    OutboundMessage,
    OutboundQueue,
    OutboundStatus,
)
from slack_relay.stores.memory import (
    InMemoryCapabilityTokenStore,
    InMemoryChannelMappingStore,
    InMemoryInstallationStore,
    InMemoryOutboundQueue,
)

__all__ = [
    "CapabilityTokenStore",
    "ChannelMapping",
    "ChannelMappingStore",
    "InMemoryCapabilityTokenStore",
    "InMemoryChannelMappingStore",
    "InMemoryInstallationStore",
    "InMemoryOutboundQueue",
    "InstallationStore",
    "OutboundMessage",
    "OutboundQueue",
    "OutboundStatus",
]
