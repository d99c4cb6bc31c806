"""Tests for the File Transfer Pipeline.

WHY: Attachments are the heaviest part of a relay. The pipeline must
refuse oversized or incomplete files before touching the network, and
must stream bytes into Slack's external upload URL without losing any.

HOW: FakeSlack plays the destination workspace (and the source workspace
in direct mode). Downloads and the upload POST are served by an
httpx.MockTransport handler that records each request.

RULES:
- No network access; MockTransport serves every URL
- Byte-for-byte equality is asserted between source and upload body
"""

from __future__ import annotations

import asyncio

import httpx
import pytest
from slack_sdk.errors import SlackApiError

from slack_relay.config import MAX_RELAY_FILE_BYTES
from slack_relay.core.envelope import DirectFile, ProxyFile
from slack_relay.core.errors import (
    FileTooLargeError,
    MissingFileMetadataError,
    SourceFetchError,
    TransferError,
)
from slack_relay.core.retry import RetryPolicy
from slack_relay.slack.errors import is_http_retryable, is_slack_retryable
from slack_relay.slack.transfer import FileTransferPipeline, check_size, resolve_file_info
from slack_relay.stores.memory import InMemoryInstallationStore
from conftest import FakeSlack, make_http, slack_error

PAYLOAD = b"%PDF-1.7 relay test payload"
PROXY_URL = "https://peer.example.com/relay/file?teamId=T1&fileId=F1&token=t&sig=s"


def _serve(uploads, source_status=200, upload_status=200):
    """Handler serving PAYLOAD for downloads and recording upload bodies."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "uploads.slack.test":
            uploads.append(request.content)
            return httpx.Response(upload_status, text="OK")
        return httpx.Response(source_status, content=PAYLOAD)

    return handler


def _pipeline(destination, http, **kwargs):
    kwargs.setdefault("slack_policy", RetryPolicy(base_delay_ms=0, jitter=0, is_retryable=is_slack_retryable))
    kwargs.setdefault("http_policy", RetryPolicy(base_delay_ms=0, jitter=0, is_retryable=is_http_retryable))
    return FileTransferPipeline(destination, http, **kwargs)


def _proxy_file(**overrides):
    data = {
        "filename": "report.pdf",
        "mime_type": "application/pdf",
        "size": len(PAYLOAD),
        "proxy_url": PROXY_URL,
    }
    data.update(overrides)
    return ProxyFile(**data)


class TestCheckSize:
    def test_within_limit(self):
        assert check_size(10) == 10

    def test_exactly_at_limit(self):
        assert check_size(MAX_RELAY_FILE_BYTES) == MAX_RELAY_FILE_BYTES

    def test_over_limit(self):
        with pytest.raises(FileTooLargeError) as exc_info:
            check_size(MAX_RELAY_FILE_BYTES + 1)
        assert exc_info.value.status_code == 413

    def test_missing_size(self):
        with pytest.raises(MissingFileMetadataError):
            check_size(None)


class TestResolveFileInfo:
    def test_prefers_download_url(self, fake_slack):
        fake_slack.files["F1"] = {
            "url_private": "https://files.slack.test/view",
            "url_private_download": "https://files.slack.test/download",
            "name": "a.txt",
            "mimetype": "text/plain",
            "size": 3,
        }
        info = asyncio.run(resolve_file_info(fake_slack, "F1"))
        assert info.url == "https://files.slack.test/download"
        assert info.size == 3

    def test_defaults(self, fake_slack):
        fake_slack.files["F1"] = {"url_private": "https://files.slack.test/view"}
        info = asyncio.run(resolve_file_info(fake_slack, "F1"))
        assert info.name == "file"
        assert info.mimetype == "application/octet-stream"
        assert info.size is None


# ---------------------------------------------------------------------------
# Proxy transport
# ---------------------------------------------------------------------------


class TestProxyTransfer:
    """Capability-URL files streamed into the destination."""

    def test_streams_bytes_into_upload_url(self, fake_slack):
        uploads = []
        http, recorder = make_http(_serve(uploads))
        pipeline = _pipeline(fake_slack, http)

        file_id = asyncio.run(pipeline.transfer(_proxy_file(), "C1"))

        assert uploads == [PAYLOAD]
        assert fake_slack.called("files_getUploadURLExternal") == [
            {"filename": "report.pdf", "length": len(PAYLOAD)}
        ]
        assert fake_slack.completed_uploads == [
            {"files": [{"id": file_id, "title": "report.pdf"}], "channel_id": "C1"}
        ]
        upload_request = recorder.to("uploads.slack.test")[0]
        assert upload_request.headers["content-type"] == "application/pdf"
        assert upload_request.headers["content-length"] == str(len(PAYLOAD))

    def test_oversized_file_never_downloaded(self, fake_slack):
        http, recorder = make_http(_serve([]))
        pipeline = _pipeline(fake_slack, http)

        with pytest.raises(FileTooLargeError):
            asyncio.run(pipeline.transfer(_proxy_file(size=MAX_RELAY_FILE_BYTES + 1), "C1"))

        assert recorder.requests == []
        assert fake_slack.calls == []

    def test_missing_size_rejected(self, fake_slack):
        http, recorder = make_http(_serve([]))
        with pytest.raises(MissingFileMetadataError) as exc_info:
            asyncio.run(_pipeline(fake_slack, http).transfer(_proxy_file(size=None), "C1"))
        assert exc_info.value.code == "missing_size"
        assert recorder.requests == []

    def test_expired_proxy_rejected(self, fake_slack):
        http, recorder = make_http(_serve([]))
        pipeline = _pipeline(fake_slack, http, clock=lambda: 2000.0)
        with pytest.raises(TransferError) as exc_info:
            asyncio.run(pipeline.transfer(_proxy_file(expires_at=1_000_000), "C1"))
        assert exc_info.value.code == "proxy_expired"
        assert exc_info.value.status_code == 410
        assert recorder.requests == []

    def test_proxy_fetch_not_retried(self, fake_slack):
        http, recorder = make_http(_serve([], source_status=503))
        with pytest.raises(SourceFetchError) as exc_info:
            asyncio.run(_pipeline(fake_slack, http).transfer(_proxy_file(), "C1"))
        assert exc_info.value.status == 503
        assert len(recorder.requests) == 1

    def test_slot_failure_leaves_proxy_url_unfetched(self, fake_slack):
        fake_slack.fail("files_getUploadURLExternal", slack_error("invalid_auth"))
        http, recorder = make_http(_serve([]))

        with pytest.raises(SlackApiError):
            asyncio.run(_pipeline(fake_slack, http).transfer(_proxy_file(), "C1"))

        assert recorder.requests == []

    def test_upload_failure_aborts(self, fake_slack):
        http, _ = make_http(_serve([], upload_status=500))
        with pytest.raises(SourceFetchError) as exc_info:
            asyncio.run(_pipeline(fake_slack, http).transfer(_proxy_file(), "C1"))
        assert exc_info.value.code == "upload_failed"
        assert fake_slack.completed_uploads == []


# ---------------------------------------------------------------------------
# Direct transport
# ---------------------------------------------------------------------------


class TestDirectTransfer:
    """Source-workspace files fetched with that workspace's bot token."""

    def _direct_file(self):
        return DirectFile(filename="notes.txt", source_file_id="F9", source_workspace="userApp")

    def _source(self, size=len(PAYLOAD)):
        source = FakeSlack()
        source.files["F9"] = {
            "url_private_download": "https://files.slack.test/F9",
            "name": "notes.txt",
            "mimetype": "text/plain",
            "size": size,
        }
        return source

    def test_fetches_with_source_token(self, fake_slack):
        uploads = []
        http, recorder = make_http(_serve(uploads))
        source = self._source()
        tokens = []

        def factory(token):
            tokens.append(token)
            return source

        pipeline = _pipeline(
            fake_slack, http,
            installations=InMemoryInstallationStore({"userApp": "xoxb-user-app"}),
            client_factory=factory,
        )
        asyncio.run(pipeline.transfer(self._direct_file(), "C1"))

        assert tokens == ["xoxb-user-app"]
        assert uploads == [PAYLOAD]
        download = recorder.to("files.slack.test")[0]
        assert download.headers["authorization"] == "Bearer xoxb-user-app"

    def test_missing_installation(self, fake_slack):
        http, _ = make_http(_serve([]))
        pipeline = _pipeline(fake_slack, http, installations=InMemoryInstallationStore())
        with pytest.raises(TransferError) as exc_info:
            asyncio.run(pipeline.transfer(self._direct_file(), "C1"))
        assert exc_info.value.code == "missing_source_installation"

    def test_oversized_direct_file_not_downloaded(self, fake_slack):
        http, recorder = make_http(_serve([]))
        source = self._source(size=MAX_RELAY_FILE_BYTES + 1)
        pipeline = _pipeline(
            fake_slack, http,
            installations=InMemoryInstallationStore({"userApp": "xoxb-user-app"}),
            client_factory=lambda token: source,
        )
        with pytest.raises(FileTooLargeError):
            asyncio.run(pipeline.transfer(self._direct_file(), "C1"))
        assert recorder.requests == []

    def test_source_download_retried_on_5xx(self, fake_slack):
        uploads = []
        statuses = [502, 200]

        def handler(request):
            if request.url.host == "uploads.slack.test":
                uploads.append(request.content)
                return httpx.Response(200)
            return httpx.Response(statuses.pop(0), content=PAYLOAD)

        http, recorder = make_http(handler)
        source = self._source()
        pipeline = _pipeline(
            fake_slack, http,
            installations=InMemoryInstallationStore({"userApp": "xoxb-user-app"}),
            client_factory=lambda token: source,
        )
        asyncio.run(pipeline.transfer(self._direct_file(), "C1"))

        assert len(recorder.to("files.slack.test")) == 2
        assert uploads == [PAYLOAD]
