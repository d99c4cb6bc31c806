"""FastAPI application: inbound relay, file proxy, Slack events, health.

WHY: The peer relay, anonymous file receivers and Slack itself all reach
this process over HTTP. FastAPI gives request validation, OpenAPI docs
and streaming responses, and slack-bolt ships a FastAPI adapter for the
events endpoint.

HOW: build_services() wires the engine (stores, limiter, capability
protocol, provisioner, transfer pipeline, dispatcher) around one Slack
AsyncWebClient and one shared httpx.AsyncClient. create_app() mounts the
routes and keeps the services on app.state. A lifespan task drops
expired capability tokens every 5 minutes.

RULES:
- Every error body is {ok: false, error: <code>}
- /relay/inbound: 401 bad secret, 400 malformed, 503 anything transient
  (so the peer redelivers), 4xx for permanent resource errors
- /relay/file: claim before fetching; finalize only after the last byte
  was streamed; release on any failure after the claim
- token_unavailable is an expected outcome and is not logged as an error
"""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from slack_sdk.web.async_client import AsyncWebClient

from slack_relay import __version__
from slack_relay.config import RelaySettings, load_settings
from slack_relay.core.capability import (
    CapabilityProtocol,
    ProxyParams,
    parse_proxy_params,
    safe_equal,
)
from slack_relay.core.errors import (
    CapabilityError,
    MalformedRelayRequest,
    RelayError,
    SourceFetchError,
)
from slack_relay.core.rate_limit import RateLimiterRegistry
from slack_relay.core.retry import retry_with_backoff
from slack_relay.server.models import (
    ErrorResponse,
    HealthResponse,
    InboundRelayRequest,
    OkResponse,
)
from slack_relay.server.relay import RelayDispatcher, RelayService
from slack_relay.slack.channels import ChannelProvisioner
from slack_relay.slack.errors import SLACK_RETRY_POLICY
from slack_relay.slack.transfer import FileTransferPipeline, open_stream, resolve_file_info
from slack_relay.stores.memory import (
    InMemoryCapabilityTokenStore,
    InMemoryChannelMappingStore,
    InMemoryInstallationStore,
    InMemoryOutboundQueue,
)

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_S = 300


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


@dataclass
class RelayServices:
    """Everything the routes need, built once per process."""

    settings: RelaySettings
    slack: Any
    http: httpx.AsyncClient
    token_store: Any
    capability: CapabilityProtocol
    relay: RelayService
    bolt_handler: Optional[Any] = None


def build_services(
    settings: RelaySettings,
    slack: Optional[Any] = None,
    http: Optional[httpx.AsyncClient] = None,
    channel_store: Optional[Any] = None,
    token_store: Optional[Any] = None,
    queue: Optional[Any] = None,
    installations: Optional[Any] = None,
    limiter: Optional[RateLimiterRegistry] = None,
    with_bolt: bool = True,
) -> RelayServices:
    """Wire the relay engine. Any collaborator can be injected for tests."""
    if slack is None:
        slack = AsyncWebClient(token=settings.slack_bot_token)
    if http is None:
        http = httpx.AsyncClient(
            timeout=httpx.Timeout(300.0, connect=30.0),
            follow_redirects=True,
        )
    if channel_store is None:
        channel_store = InMemoryChannelMappingStore()
    if token_store is None:
        token_store = InMemoryCapabilityTokenStore()
    if queue is None:
        queue = InMemoryOutboundQueue()
    if installations is None:
        installations = InMemoryInstallationStore(dict(settings.source_tokens))
    if limiter is None:
        limiter = RateLimiterRegistry()

    capability = CapabilityProtocol(settings.relay_secret, settings.app_base_url, token_store)
    relay = RelayService(
        settings=settings,
        slack=slack,
        limiter=limiter,
        provisioner=ChannelProvisioner(slack, channel_store),
        transfer=FileTransferPipeline(slack, http, installations=installations),
        capability=capability,
        queue=queue,
        dispatcher=RelayDispatcher(http, settings.peer_url, settings.relay_secret),
    )

    bolt_handler = None
    if with_bolt:
        from slack_bolt.adapter.fastapi.async_handler import AsyncSlackRequestHandler

        from slack_relay.slack.events import create_bolt_app

        bolt_app = create_bolt_app(settings.slack_bot_token, settings.slack_signing_secret, relay)
        bolt_handler = AsyncSlackRequestHandler(bolt_app)

    return RelayServices(
        settings=settings,
        slack=slack,
        http=http,
        token_store=token_store,
        capability=capability,
        relay=relay,
        bolt_handler=bolt_handler,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": code})


def _provided_secret(request: Request) -> str:
    key = request.headers.get("x-relay-key")
    if key:
        return key
    authorization = request.headers.get("authorization") or ""
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer "):]
    return ""


def safe_filename(name: str) -> str:
    """Strip non-printable ASCII, quotes and backslashes for Content-Disposition."""
    cleaned = re.sub(r"[^\x20-\x7E]+", "", name)
    return re.sub(r'["\\]', "", cleaned).strip()


def _release_quietly(capability: CapabilityProtocol, params: ProxyParams) -> None:
    try:
        capability.release(params)
    except Exception:
        logger.exception("Failed to release capability token for file %s", params.file_id)


async def _periodic_cleanup(token_store: Any) -> None:
    """Drop expired capability tokens every CLEANUP_INTERVAL_S seconds."""
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_S)
        cleanup = getattr(token_store, "cleanup_expired", None)
        if cleanup is not None:
            cleanup()


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(services: RelayServices) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start periodic token cleanup; close the HTTP pool on shutdown."""
        task = asyncio.create_task(_periodic_cleanup(services.token_store))
        yield
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        await services.http.aclose()

    app = FastAPI(
        lifespan=lifespan,
        title="Slack Relay",
        description=(
            "Relays per-user conversations between two Slack workspaces. "
            "Peers post envelopes to /relay/inbound; attachments travel as "
            "signed single-use /relay/file URLs or direct file references."
        ),
        version=__version__,
    )
    app.state.services = services

    @app.post(
        "/relay/inbound",
        response_model=OkResponse,
        tags=["relay"],
        summary="Relay a message into this workspace",
        responses={
            400: {"model": ErrorResponse, "description": "Malformed request"},
            401: {"model": ErrorResponse, "description": "Missing or wrong relay secret"},
            503: {"model": ErrorResponse, "description": "Transient failure; redeliver"},
        },
    )
    async def relay_inbound(request: Request) -> Any:
        secret = services.settings.relay_secret
        provided = _provided_secret(request)
        if not secret or not provided or not safe_equal(provided, secret):
            return _error(401, "unauthorized")

        try:
            inbound = InboundRelayRequest.from_payload(await request.json())
        except ValueError:
            return _error(MalformedRelayRequest.status_code, MalformedRelayRequest.code)
        except MalformedRelayRequest as exc:
            return _error(exc.status_code, exc.code)

        try:
            await services.relay.handle_inbound(inbound.to_envelope())
        except SourceFetchError as exc:
            if exc.code == "proxy_fetch_failed" and exc.status == 401:
                # Peer refused the capability URL (expired or token_unavailable).
                logger.warning("Peer refused capability URL for team %s", inbound.team_id)
            else:
                logger.exception("Relay inbound failed")
            return _error(503, "retry")
        except RelayError as exc:
            if exc.status_code < 500:
                logger.warning("Relay inbound rejected: %s", exc.code)
                return _error(exc.status_code, exc.code)
            logger.exception("Relay inbound failed")
            return _error(503, "retry")
        except Exception:
            logger.exception("Relay inbound failed")
            return _error(503, "retry")

        return {"ok": True}

    @app.get(
        "/relay/file",
        tags=["relay"],
        summary="Download a file through a capability URL",
        responses={
            400: {"model": ErrorResponse, "description": "missing_params"},
            401: {"model": ErrorResponse, "description": "expired, invalid_signature or token_unavailable"},
            404: {"model": ErrorResponse, "description": "missing_file_url"},
            500: {"model": ErrorResponse, "description": "server_error"},
            502: {"model": ErrorResponse, "description": "file_fetch_failed"},
        },
    )
    async def relay_file(request: Request) -> Any:
        capability = services.capability
        try:
            params, signature = parse_proxy_params(request.query_params)
            capability.verify(params, signature)
            capability.claim(params)
        except CapabilityError as exc:
            return _error(exc.status_code, exc.code)

        try:
            info = await retry_with_backoff(
                lambda: resolve_file_info(services.slack, params.file_id),
                SLACK_RETRY_POLICY,
            )
            if not info.url:
                raise CapabilityError("missing_file_url")
            upstream = await open_stream(
                services.http,
                info.url,
                {"Authorization": "Bearer {}".format(services.settings.slack_bot_token)},
                "file_fetch_failed",
            )
        except CapabilityError as exc:
            _release_quietly(capability, params)
            return _error(exc.status_code, exc.code)
        except SourceFetchError as exc:
            _release_quietly(capability, params)
            logger.warning("Source fetch for %s failed with %s", params.file_id, exc.status)
            return _error(502, "file_fetch_failed")
        except Exception:
            _release_quietly(capability, params)
            logger.exception("Relay file proxy failed")
            return _error(500, "server_error")

        headers: Dict[str, str] = {}
        if info.size is not None:
            headers["content-length"] = str(info.size)
        name = safe_filename(info.name)
        if name:
            headers["content-disposition"] = 'attachment; filename="{}"'.format(name)

        async def body() -> AsyncIterator[bytes]:
            completed = False
            try:
                async for chunk in upstream.aiter_bytes():
                    yield chunk
                completed = True
            finally:
                await upstream.aclose()
                if completed:
                    capability.finalize(params)
                else:
                    logger.warning("Stream for %s aborted; releasing token", params.file_id)
                    _release_quietly(capability, params)

        return StreamingResponse(body(), media_type=info.mimetype, headers=headers)

    if services.bolt_handler is not None:
        @app.post("/slack/events", tags=["slack"], summary="Slack Events API endpoint")
        async def slack_events(request: Request) -> Any:
            return await services.bolt_handler.handle(request)

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["health"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        return HealthResponse()

    return app


def run_api() -> None:
    """Entry point for ``python -m slack_relay`` and the slack-relay script."""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    settings = load_settings()
    app = create_app(build_services(settings))
    logger.info("Starting relay on port %d (file transport: %s)", settings.port, settings.file_transport)
    if not settings.peer_url:
        logger.info("RELAY_PEER_URL not set; outbound messages will only be queued")
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
