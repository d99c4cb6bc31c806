"""Relay Dispatch Flow: turn one relay event into committed side effects.

WHY: Both directions need the same careful sequencing. Inbound: throttle
the tenant, make sure the channel exists, post text, move files.
Outbound: work out who a responder message belongs to, wrap its files
for transport, queue it idempotently and push it to the peer relay.

HOW: RelayService composes the engine pieces (rate limiter, channel
provisioner, transfer pipeline, capability protocol, outbound queue).
RelayDispatcher POSTs an envelope to the peer's /relay/inbound endpoint
under the Backoff Executor.

RULES:
- Inbound waits for a token-bucket slot keyed ``relay-in:<teamId>``
- Channel provisioning and message posting retry under Slack policies
- Files are transferred in order; the first failure aborts the relay
- Outbound relay keys are ``teamId:userId:<event id or ts>``
- A relay key already dispatched is not dispatched again; a known but
  undelivered key is re-sent with its stored envelope, so files are
  wrapped (and capability tokens issued) once per relay key
- Outbound files are capability URLs (proxy) or source references
  (direct) depending on settings.file_transport
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from slack_relay.config import TRANSPORT_PROXY, RelaySettings
from slack_relay.core.capability import CapabilityProtocol
from slack_relay.core.envelope import (
    DirectFile,
    ProxyFile,
    RelayEnvelope,
    build_relay_key,
)
from slack_relay.core.errors import SourceFetchError
from slack_relay.core.rate_limit import RateLimiterRegistry, TokenBucketConfig
from slack_relay.core.retry import RetryPolicy, retry_with_backoff
from slack_relay.slack.channels import ChannelProvisioner
from slack_relay.slack.errors import HTTP_RETRY_POLICY, SLACK_RETRY_POLICY
from slack_relay.slack.transfer import FileTransferPipeline
from slack_relay.stores.base import OutboundQueue

logger = logging.getLogger(__name__)

INBOUND_PATH = "/relay/inbound"


class RelayDispatcher:
    """Delivers envelopes to the peer relay's inbound endpoint."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        peer_url: str,
        secret: str,
        policy: RetryPolicy = HTTP_RETRY_POLICY,
    ) -> None:
        self._http = http
        self._peer_url = peer_url.rstrip("/")
        self._secret = secret
        self._policy = policy

    @property
    def enabled(self) -> bool:
        return bool(self._peer_url)

    async def dispatch(self, envelope: RelayEnvelope) -> None:
        """POST the envelope; raises after the retry policy gives up."""
        url = self._peer_url + INBOUND_PATH
        headers = {"Authorization": "Bearer {}".format(self._secret)}

        async def post() -> None:
            resp = await self._http.post(url, json=envelope.to_wire(), headers=headers)
            if resp.status_code >= 400:
                raise SourceFetchError("dispatch_failed", resp.status_code)

        await retry_with_backoff(post, self._policy)


class RelayService:
    """End-to-end relay sequencing for both directions."""

    def __init__(
        self,
        settings: RelaySettings,
        slack: Any,
        limiter: RateLimiterRegistry,
        provisioner: ChannelProvisioner,
        transfer: FileTransferPipeline,
        capability: CapabilityProtocol,
        queue: OutboundQueue,
        dispatcher: RelayDispatcher,
        policy: RetryPolicy = SLACK_RETRY_POLICY,
    ) -> None:
        self._settings = settings
        self._slack = slack
        self._limiter = limiter
        self._provisioner = provisioner
        self._transfer = transfer
        self._capability = capability
        self._queue = queue
        self._dispatcher = dispatcher
        self._policy = policy
        self._bucket = TokenBucketConfig(
            capacity=settings.rate_capacity,
            refill_per_ms=settings.rate_refill_per_ms,
        )

    # ------------------------------------------------------------------
    # Inbound: peer -> this workspace
    # ------------------------------------------------------------------

    async def handle_inbound(self, envelope: RelayEnvelope) -> str:
        """Relay one inbound envelope; return the channel it landed in."""
        waited = await self._limiter.wait_for_slot(
            "relay-in:{}".format(envelope.team_id), self._bucket
        )
        if waited:
            logger.info("Throttled tenant %s for %dms", envelope.team_id, waited)

        # ensure_channel retries each Slack call itself.
        channel_id = await self._provisioner.ensure_channel(envelope.team_id, envelope.user_id)

        if envelope.text:
            await retry_with_backoff(
                lambda: self._slack.chat_postMessage(channel=channel_id, text=envelope.text),
                self._policy,
            )

        for file in envelope.files:
            await self._transfer.transfer(file, channel_id)

        logger.info(
            "Relayed %s into %s (%d files)", envelope.relay_key, channel_id, len(envelope.files)
        )
        return channel_id

    # ------------------------------------------------------------------
    # Outbound: this workspace -> peer
    # ------------------------------------------------------------------

    def wrap_files(self, team_id: str, slack_files: List[Dict[str, Any]]) -> List[Any]:
        """Turn Slack file objects into transport-tagged relay files.

        Files without an id are skipped.
        """
        wrapped: List[Any] = []
        for item in slack_files:
            if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                continue
            filename = item.get("name") if isinstance(item.get("name"), str) else None
            mime_type = item.get("mimetype") if isinstance(item.get("mimetype"), str) else None
            size = item.get("size") if isinstance(item.get("size"), int) else None

            if self._settings.file_transport == TRANSPORT_PROXY:
                issued = self._capability.issue(
                    team_id=team_id,
                    file_id=item["id"],
                    ttl_s=self._settings.proxy_ttl_s,
                    filename=filename,
                    mime_type=mime_type,
                    size=size,
                )
                wrapped.append(ProxyFile(
                    filename=filename,
                    mime_type=mime_type,
                    size=size,
                    proxy_url=issued.url,
                    expires_at=issued.token.expires_at,
                ))
            else:
                wrapped.append(DirectFile(
                    filename=filename,
                    mime_type=mime_type,
                    size=size,
                    source_file_id=item["id"],
                    source_workspace=self._settings.source_workspace,
                ))
        return wrapped

    async def relay_outbound(
        self,
        team_id: str,
        user_id: str,
        text: Optional[str],
        slack_files: List[Dict[str, Any]],
        external_id: Optional[str],
    ) -> Optional[str]:
        """Queue and dispatch one responder message. Returns the queue id.

        Returns None when there is nothing to relay.
        """
        relay_key = build_relay_key([team_id, user_id, external_id])
        existing = self._queue.find(relay_key)
        if existing is not None:
            if self._queue.was_dispatched(existing.id):
                logger.info("Relay key %s already dispatched", relay_key)
                return existing.id
            # Redelivery of an undelivered event reuses its capability URLs.
            message_id, envelope = existing.id, existing.envelope
        else:
            text = (text or "").strip() or None
            files = self.wrap_files(team_id, slack_files)
            if not text and not files:
                return None

            envelope = RelayEnvelope(
                relay_key=relay_key,
                team_id=team_id,
                user_id=user_id,
                direction="outbound",
                text=text,
                files=files,
                external_id=external_id,
            )
            message_id = self._queue.enqueue(envelope)

        if not self._dispatcher.enabled:
            logger.warning("RELAY_PEER_URL not set; %s stays queued", envelope.relay_key)
            return message_id

        try:
            await self._dispatcher.dispatch(envelope)
        except Exception as exc:
            self._queue.mark_failed(message_id, str(exc))
            raise
        self._queue.mark_dispatched(message_id)
        return message_id
