"""File Transfer Pipeline: stream an attachment into another workspace.

WHY: Attachments have to move between two Slack workspaces that do not
share credentials. Files can be large, so bytes are streamed from the
source straight into the destination's external-upload endpoint instead
of being buffered in memory.

HOW: Two transports feed one upload path:
  proxy:  the file arrives as a signed capability URL (see
           core.capability); we GET it from the sender's proxy
  direct: the file arrives as (sourceWorkspace, sourceFileId); we look
           up that workspace's bot token, resolve the file's private URL
           with files.info and GET it with the bot token
Either way we first request an upload slot with
files.getUploadURLExternal, then open the source, POST its body into the
slot chunk by chunk, and finish with files.completeUploadExternal for
the target channel.

RULES:
- Size must be known up front; files over MAX_RELAY_FILE_BYTES are
  rejected before any download starts (never retried)
- Missing size or download URL is a permanent MissingFileMetadataError
- Slack calls and the direct download retry under their policies; the
  proxy download does not (its token is single use)
- Any stage failure aborts the transfer; there is no partial recovery
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from slack_sdk.web.async_client import AsyncWebClient

from slack_relay.config import MAX_RELAY_FILE_BYTES
from slack_relay.core.envelope import DirectFile, ProxyFile
from slack_relay.core.errors import (
    FileTooLargeError,
    MissingFileMetadataError,
    SourceFetchError,
    TransferError,
)
from slack_relay.core.retry import RetryPolicy, retry_with_backoff
from slack_relay.slack.errors import HTTP_RETRY_POLICY, SLACK_RETRY_POLICY
from slack_relay.stores.base import InstallationStore

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass
class SourceFileInfo:
    url: str
    name: str
    mimetype: str
    size: Optional[int]


async def resolve_file_info(client: Any, file_id: str) -> SourceFileInfo:
    """Look up a file's private download URL and metadata via files.info."""
    response = await client.files_info(file=file_id)
    data = response.get("file")
    if not data:
        raise TransferError("file_not_found")

    url = data.get("url_private_download") or data.get("url_private") or ""
    size = data.get("size")
    return SourceFileInfo(
        url=url if isinstance(url, str) else "",
        name=data.get("name") or "file",
        mimetype=data.get("mimetype") or DEFAULT_MIME_TYPE,
        size=size if isinstance(size, int) else None,
    )


def check_size(size: Optional[int], max_bytes: int = MAX_RELAY_FILE_BYTES) -> int:
    if size is None:
        raise MissingFileMetadataError("missing_size")
    if size > max_bytes:
        raise FileTooLargeError(
            message="File is {:,} bytes; the relay limit is {:,}".format(size, max_bytes)
        )
    return size


async def open_stream(
    http: httpx.AsyncClient, url: str, headers: Dict[str, str], code: str
) -> httpx.Response:
    """GET ``url`` as a stream; raise SourceFetchError(code, status) on 4xx/5xx.

    The caller owns the returned response and must aclose() it.
    """
    request = http.build_request("GET", url, headers=headers)
    response = await http.send(request, stream=True)
    if response.status_code >= 400:
        await response.aclose()
        raise SourceFetchError(code, response.status_code)
    return response


def _default_client_factory(token: str) -> Any:
    return AsyncWebClient(token=token)


class FileTransferPipeline:
    """Moves one RelayFile into a destination channel.

    Args:
        destination: Slack client for the receiving workspace.
        http: Shared httpx.AsyncClient used for downloads and uploads.
        installations: Bot tokens per workspace, for direct mode.
        client_factory: Builds a Slack client for a source bot token.
    """

    def __init__(
        self,
        destination: Any,
        http: httpx.AsyncClient,
        installations: Optional[InstallationStore] = None,
        client_factory: Callable[[str], Any] = _default_client_factory,
        slack_policy: RetryPolicy = SLACK_RETRY_POLICY,
        http_policy: RetryPolicy = HTTP_RETRY_POLICY,
        max_bytes: int = MAX_RELAY_FILE_BYTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._destination = destination
        self._http = http
        self._installations = installations
        self._client_factory = client_factory
        self._slack_policy = slack_policy
        self._http_policy = http_policy
        self._max_bytes = max_bytes
        self._clock = clock

    async def transfer(self, file: Any, channel_id: str) -> str:
        """Dispatch on the file's transport tag; return the new file id."""
        if isinstance(file, ProxyFile):
            return await self.transfer_proxy(file, channel_id)
        if isinstance(file, DirectFile):
            return await self.transfer_direct(file, channel_id)
        raise TransferError("unknown_transport")

    # ------------------------------------------------------------------
    # Capability-URL mode
    # ------------------------------------------------------------------

    async def transfer_proxy(self, file: ProxyFile, channel_id: str) -> str:
        if file.expires_at is not None and self._clock() * 1000 > file.expires_at:
            raise TransferError("proxy_expired", status_code=410)
        if not file.proxy_url:
            raise MissingFileMetadataError("missing_proxy")
        size = check_size(file.size, self._max_bytes)

        async def open_source() -> httpx.Response:
            return await open_stream(self._http, file.proxy_url, {}, "proxy_fetch_failed")

        return await self._stream_upload(
            open_source=open_source,
            filename=file.filename or "file",
            mimetype=file.mime_type or DEFAULT_MIME_TYPE,
            size=size,
            channel_id=channel_id,
        )

    # ------------------------------------------------------------------
    # Direct-transfer mode
    # ------------------------------------------------------------------

    async def transfer_direct(self, file: DirectFile, channel_id: str) -> str:
        token = self._installations.get_bot_token(file.source_workspace) if self._installations else None
        if not token:
            raise TransferError(
                "missing_source_installation",
                "No bot token for workspace {}".format(file.source_workspace),
            )
        source = self._client_factory(token)

        info = await retry_with_backoff(
            lambda: resolve_file_info(source, file.source_file_id),
            self._slack_policy,
        )
        if not info.url or info.size is None:
            raise MissingFileMetadataError()
        size = check_size(info.size, self._max_bytes)

        headers = {"Authorization": "Bearer {}".format(token)}

        async def open_source() -> httpx.Response:
            return await retry_with_backoff(
                lambda: open_stream(self._http, info.url, headers, "source_fetch_failed"),
                self._http_policy,
            )

        return await self._stream_upload(
            open_source=open_source,
            filename=info.name,
            mimetype=info.mimetype,
            size=size,
            channel_id=channel_id,
        )

    # ------------------------------------------------------------------
    # Shared upload path
    # ------------------------------------------------------------------

    async def _stream_upload(
        self,
        open_source: Callable[[], Awaitable[httpx.Response]],
        filename: str,
        mimetype: str,
        size: int,
        channel_id: str,
    ) -> str:
        # Slot first: opening a proxy source claims its single-use token.
        slot = await retry_with_backoff(
            lambda: self._destination.files_getUploadURLExternal(
                filename=filename, length=size
            ),
            self._slack_policy,
        )
        upload_url = slot.get("upload_url")
        file_id = slot.get("file_id")
        if not upload_url or not file_id:
            raise TransferError("missing_upload_url")

        source = await open_source()
        try:
            upload = await self._http.post(
                upload_url,
                content=source.aiter_bytes(),
                headers={"content-type": mimetype, "content-length": str(size)},
            )
            if upload.status_code >= 400:
                raise SourceFetchError("upload_failed", upload.status_code)
        finally:
            await source.aclose()

        await retry_with_backoff(
            lambda: self._destination.files_completeUploadExternal(
                files=[{"id": file_id, "title": filename}],
                channel_id=channel_id,
            ),
            self._slack_policy,
        )
        logger.info("Relayed %s (%d bytes) to %s as %s", filename, size, channel_id, file_id)
        return file_id
