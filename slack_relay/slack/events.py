"""Slack event handlers: relay responder messages back to the peer.

WHY: When someone in the responder workspace writes in a relay channel,
the message has to travel back to the user it belongs to. The channel's
topic (``relay:<teamId>:<userId>``) says who that is.

HOW: create_bolt_app() builds a slack-bolt AsyncApp with a ``message``
event listener. The listener filters to human messages in relay
channels, reads the routing key from the channel topic, and hands text
and files to RelayService.relay_outbound().

RULES:
- Only plain user messages (no subtype, or file_share) are relayed
- Bot messages (bot_id set) are ignored, including our own
- Channels whose topic does not parse are skipped, even if the name has
  the relay prefix
- The relay key uses the Slack event_id, falling back to the message ts
- Failures are logged, never raised back into Bolt
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Dict

from slack_bolt.async_app import AsyncApp

from slack_relay.slack.channels import is_relay_channel, parse_routing_key

if TYPE_CHECKING:
    from slack_relay.server.relay import RelayService

logger = logging.getLogger(__name__)

_RELAYED_SUBTYPES = (None, "file_share")


def is_user_message(event: Dict[str, Any]) -> bool:
    return (
        event.get("type") == "message"
        and event.get("subtype") in _RELAYED_SUBTYPES
        and isinstance(event.get("user"), str)
        and not event.get("bot_id")
    )


def make_message_handler(
    relay: "RelayService",
) -> Callable[..., Awaitable[None]]:
    """Build the ``message`` listener bound to a RelayService."""

    async def handle_message(event: Dict[str, Any], body: Dict[str, Any], client: Any) -> None:
        if not event or not is_user_message(event):
            return
        channel = event.get("channel")
        if not isinstance(channel, str) or not channel:
            return

        try:
            info = await client.conversations_info(channel=channel)
            channel_info = info.get("channel")
            if not channel_info or not is_relay_channel(channel_info):
                return
            topic = (channel_info.get("topic") or {}).get("value")
            routing = parse_routing_key(topic if isinstance(topic, str) else None)
            if routing is None:
                return

            files = event.get("files")
            await relay.relay_outbound(
                team_id=routing["team_id"],
                user_id=routing["user_id"],
                text=event.get("text") if isinstance(event.get("text"), str) else None,
                slack_files=files if isinstance(files, list) else [],
                external_id=(body or {}).get("event_id") or event.get("ts"),
            )
        except Exception:
            logger.exception("Responder message handling failed for channel %s", channel)

    return handle_message


def create_bolt_app(bot_token: str, signing_secret: str, relay: "RelayService") -> AsyncApp:
    """Create the Bolt app serving /slack/events with all listeners registered."""
    app = AsyncApp(token=bot_token, signing_secret=signing_secret)
    app.event("message")(make_message_handler(relay))
    return app
