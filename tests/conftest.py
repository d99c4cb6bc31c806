"""Shared test fixtures for the slack_relay test suite.

WHY: Most modules talk to Slack and to other HTTP servers. Tests need a
fake Slack client with realistic responses and a way to serve HTTP
bytes without the network.

HOW: FakeSlack implements the async AsyncWebClient methods the relay
calls and records every call. HTTP is served by httpx.MockTransport
handlers passed to a real httpx.AsyncClient.

RULES:
- Slack is never called for real (FakeSlack only)
- No test opens a network socket
- Every fixture returns a fresh object (no shared state between tests)
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
from slack_sdk.errors import SlackApiError

from slack_relay.config import RelaySettings

RELAY_SECRET = "relay-secret"
BASE_URL = "https://relay.example.com"
BOT_TOKEN = "xoxb-responder"


def slack_error(code: str, headers: Optional[Dict[str, str]] = None) -> SlackApiError:
    """Build a SlackApiError the way slack_sdk raises it for ``code``."""
    response = _FakeResponse({"ok": False, "error": code}, headers or {})
    return SlackApiError("The request to the Slack API failed.", response)


class _FakeResponse(dict):
    """dict with a ``headers`` attribute, like AsyncSlackResponse."""

    def __init__(self, data: Dict[str, Any], headers: Dict[str, str]) -> None:
        super().__init__(data)
        self.headers = headers


class FakeSlack:
    """In-memory stand-in for slack_sdk's AsyncWebClient.

    Failures can be queued per method with ``fail(method, error)``; each
    queued error is raised once, in order, before normal behaviour resumes.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.channels: Dict[str, Dict[str, Any]] = {}
        self.files: Dict[str, Dict[str, Any]] = {}
        self.messages: List[Dict[str, Any]] = []
        self.completed_uploads: List[Dict[str, Any]] = []
        self._failures: Dict[str, List[BaseException]] = {}
        self._counter = 0

    def fail(self, method: str, error: BaseException) -> None:
        self._failures.setdefault(method, []).append(error)

    def called(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def add_channel(self, name: str, topic: str = "") -> str:
        self._counter += 1
        channel_id = "C{:04d}".format(self._counter)
        self.channels[channel_id] = {"id": channel_id, "name": name, "topic": {"value": topic}}
        return channel_id

    async def _record(self, method: str, **kwargs: Any) -> None:
        self.calls.append((method, kwargs))
        await asyncio.sleep(0)
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    async def conversations_create(self, name: str, **kwargs: Any) -> Dict[str, Any]:
        await self._record("conversations_create", name=name)
        if any(c["name"] == name for c in self.channels.values()):
            raise slack_error("name_taken")
        channel_id = self.add_channel(name)
        return {"ok": True, "channel": dict(self.channels[channel_id])}

    async def conversations_setTopic(self, channel: str, topic: str) -> Dict[str, Any]:
        await self._record("conversations_setTopic", channel=channel, topic=topic)
        self.channels[channel]["topic"] = {"value": topic}
        return {"ok": True}

    async def conversations_join(self, channel: str) -> Dict[str, Any]:
        await self._record("conversations_join", channel=channel)
        return {"ok": True}

    async def conversations_info(self, channel: str) -> Dict[str, Any]:
        await self._record("conversations_info", channel=channel)
        if channel not in self.channels:
            raise slack_error("channel_not_found")
        return {"ok": True, "channel": dict(self.channels[channel])}

    async def conversations_list(self, **kwargs: Any) -> Dict[str, Any]:
        await self._record("conversations_list", **kwargs)
        # One channel per page so pagination is exercised.
        channels = sorted(self.channels.values(), key=lambda c: c["id"])
        start = int(kwargs.get("cursor") or 0)
        page = channels[start:start + 1]
        next_cursor = str(start + 1) if start + 1 < len(channels) else ""
        return {"ok": True, "channels": page, "response_metadata": {"next_cursor": next_cursor}}

    async def chat_postMessage(self, channel: str, text: str, **kwargs: Any) -> Dict[str, Any]:
        await self._record("chat_postMessage", channel=channel, text=text)
        self.messages.append({"channel": channel, "text": text})
        return {"ok": True, "ts": "1700000000.000100"}

    async def files_info(self, file: str) -> Dict[str, Any]:
        await self._record("files_info", file=file)
        if file not in self.files:
            raise slack_error("file_not_found")
        return {"ok": True, "file": dict(self.files[file])}

    async def files_getUploadURLExternal(self, filename: str, length: int) -> Dict[str, Any]:
        await self._record("files_getUploadURLExternal", filename=filename, length=length)
        self._counter += 1
        file_id = "F_UP{:04d}".format(self._counter)
        return {"ok": True, "upload_url": "https://uploads.slack.test/" + file_id, "file_id": file_id}

    async def files_completeUploadExternal(self, files: List[Dict[str, str]], channel_id: str) -> Dict[str, Any]:
        await self._record("files_completeUploadExternal", files=files, channel_id=channel_id)
        self.completed_uploads.append({"files": files, "channel_id": channel_id})
        return {"ok": True, "files": files}


class HttpRecorder:
    """Collects the requests seen by a MockTransport handler."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: List[httpx.Request] = []
        self._handler = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    def to(self, host: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]


def make_http(handler: Callable[[httpx.Request], httpx.Response]) -> Tuple[httpx.AsyncClient, HttpRecorder]:
    recorder = HttpRecorder(handler)
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder)), recorder


async def no_sleep(seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Proxy-transport settings with a peer configured."""
    return RelaySettings(
        slack_bot_token=BOT_TOKEN,
        slack_signing_secret="signing-secret",
        relay_secret=RELAY_SECRET,
        app_base_url=BASE_URL,
        peer_url="https://peer.example.com",
        source_tokens={"userApp": "xoxb-user-app"},
    )


@pytest.fixture
def fake_slack():
    return FakeSlack()
