"""Channel Provisioning Manager: one relay channel per (team, user).

WHY: Every user of the "user" workspace is mirrored by a dedicated
channel in the responder workspace. Provisioning must be idempotent:
redelivered events and concurrent requests for the same user must all
land in the same channel, and a half-finished earlier attempt must not
block later ones.

HOW: ensure_channel() reads the mapping store first. On a miss it
derives a deterministic channel name (``ob-<team>-<user>-<hash>``) and
creates it; if Slack reports ``name_taken`` it scans the paginated
channel list for that exact name instead of failing. The channel topic
is then set to ``relay:<team>:<user>`` so any channel can be recognised
as a relay channel from its topic alone, and the mapping is saved.

RULES:
- Nothing is cached between calls; the store is re-read every time
- Re-joining a mapped channel is best-effort (failures are logged)
- Every Slack call runs under the Backoff Executor with Slack predicates
- Channel names are lowercase [a-z0-9-_], base capped at 65 chars,
  followed by a 6-char SHA-256 suffix of ``team:user``
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from typing import Any, Dict, Optional

import aiohttp
from slack_sdk.errors import SlackApiError

from slack_relay.core.errors import ChannelProvisioningError
from slack_relay.core.retry import RetryPolicy, retry_with_backoff
from slack_relay.slack.errors import SLACK_RETRY_POLICY, slack_error_code
from slack_relay.stores.base import ChannelMapping, ChannelMappingStore

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "ob-"
TOPIC_PREFIX = "relay"
_MAX_BASE_LENGTH = 65
_LIST_PAGE_SIZE = 200

_ROUTING_TOPIC = re.compile(r"^relay:([^:]+):([^:]+)$")


# ---------------------------------------------------------------------------
# Naming and routing keys
# ---------------------------------------------------------------------------


def sanitize_channel_name(value: str) -> str:
    name = re.sub(r"[^a-z0-9_-]", "-", value.lower())
    name = re.sub(r"-+", "-", name)
    return name[:_MAX_BASE_LENGTH]


def hash_suffix(key: str, length: int = 6) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:length]


def build_channel_name(team_id: str, user_id: str) -> str:
    """Deterministic relay channel name, e.g. ``ob-t1-u1-3f2a9c``."""
    base = sanitize_channel_name("{}{}-{}".format(CHANNEL_PREFIX, team_id, user_id))
    return "{}-{}".format(base, hash_suffix("{}:{}".format(team_id, user_id)))


def routing_topic(team_id: str, user_id: str) -> str:
    return "{}:{}:{}".format(TOPIC_PREFIX, team_id, user_id)


def parse_routing_key(topic: Optional[str]) -> Optional[Dict[str, str]]:
    """Parse ``relay:<teamId>:<userId>``; None for anything else."""
    if not topic:
        return None
    match = _ROUTING_TOPIC.match(topic)
    if not match:
        return None
    return {"team_id": match.group(1), "user_id": match.group(2)}


def is_relay_channel(channel: Dict[str, Any]) -> bool:
    """A channel is a relay channel if its topic parses or its name has the prefix."""
    topic = (channel.get("topic") or {}).get("value")
    if parse_routing_key(topic if isinstance(topic, str) else None):
        return True
    name = channel.get("name")
    return isinstance(name, str) and name.startswith(CHANNEL_PREFIX)


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


class ChannelProvisioner:
    """Derives, creates or recovers the relay channel for a routing key.

    Args:
        client: slack_sdk AsyncWebClient (or anything with the same methods).
        store: Channel mapping store.
        policy: Retry policy for each Slack call.
    """

    def __init__(
        self,
        client: Any,
        store: ChannelMappingStore,
        policy: RetryPolicy = SLACK_RETRY_POLICY,
    ) -> None:
        self._client = client
        self._store = store
        self._policy = policy

    async def ensure_channel(self, team_id: str, user_id: str) -> str:
        existing = self._store.get(team_id, user_id)
        if existing is not None and existing.channel_id:
            await self._join_quietly(existing.channel_id)
            return existing.channel_id

        name = build_channel_name(team_id, user_id)
        channel_id = await self._create_or_find(name)

        await retry_with_backoff(
            lambda: self._client.conversations_setTopic(
                channel=channel_id, topic=routing_topic(team_id, user_id)
            ),
            self._policy,
        )

        self._store.set(ChannelMapping(
            team_id=team_id,
            user_id=user_id,
            channel_id=channel_id,
            channel_name=name,
        ))
        return channel_id

    async def _create_or_find(self, name: str) -> str:
        try:
            response = await retry_with_backoff(
                lambda: self._client.conversations_create(name=name),
                self._policy,
            )
        except SlackApiError as exc:
            if slack_error_code(exc) != "name_taken":
                raise
            logger.info("Channel %s already exists; scanning channel list", name)
            channel_id = await self.find_channel_by_name(name)
            if channel_id is None:
                raise ChannelProvisioningError(
                    message="Channel {} is taken but not visible to the bot".format(name)
                )
            await self._join_quietly(channel_id)
            return channel_id

        channel_id = (response.get("channel") or {}).get("id")
        if not channel_id:
            raise ChannelProvisioningError()
        logger.info("Created relay channel %s (%s)", name, channel_id)
        return channel_id

    async def find_channel_by_name(self, name: str) -> Optional[str]:
        """Scan the paginated channel list for an exact name match."""
        cursor = None
        while True:
            kwargs: Dict[str, Any] = {
                "types": "public_channel,private_channel",
                "exclude_archived": True,
                "limit": _LIST_PAGE_SIZE,
            }
            if cursor:
                kwargs["cursor"] = cursor
            page = await retry_with_backoff(
                lambda: self._client.conversations_list(**kwargs),
                self._policy,
            )
            for channel in page.get("channels") or []:
                if channel.get("name") == name:
                    return channel.get("id")
            cursor = (page.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return None

    async def _join_quietly(self, channel_id: str) -> None:
        try:
            await retry_with_backoff(
                lambda: self._client.conversations_join(channel=channel_id),
                self._policy,
            )
        except (SlackApiError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("Join of %s ignored: %s", channel_id, slack_error_code(exc) or exc)
