"""Typed relay errors with a machine code and an HTTP status.

WHY: The HTTP layer must turn failures into ``{ok: false, error: code}``
bodies with the right status class: 4xx for permanent client or resource
errors, 503 for transient platform trouble. Carrying both on the
exception keeps that mapping in one place.

RULES:
- code is a short snake_case identifier safe to return to clients
- status_code is the HTTP status the route should answer with
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay failures that map to an HTTP response."""

    code = "server_error"
    status_code = 500

    def __init__(self, code: str | None = None, message: str | None = None,
                 status_code: int | None = None) -> None:
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.message = message or self.code
        super().__init__(self.message)


class MalformedRelayRequest(RelayError):
    """The inbound payload is missing required fields or is invalid."""

    code = "malformed_request"
    status_code = 400


class CapabilityError(RelayError):
    """Proxy URL rejected: missing params, expired, bad signature, used token.

    The code is one of missing_params, expired, invalid_signature,
    token_unavailable, missing_file_url, file_fetch_failed, server_error.
    """

    _STATUS = {
        "missing_params": 400,
        "expired": 401,
        "invalid_signature": 401,
        "token_unavailable": 401,
        "missing_file_url": 404,
        "file_fetch_failed": 502,
        "server_error": 500,
    }

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(code, message, status_code=self._STATUS.get(code, 500))


class ChannelProvisioningError(RelayError):
    """A relay channel could not be created or found."""

    code = "channel_create_failed"
    status_code = 503


class TransferError(RelayError):
    """A file transfer stage failed; the whole transfer is aborted."""

    code = "transfer_failed"
    status_code = 503


class FileTooLargeError(TransferError):
    """Reported size exceeds the relay ceiling. Never retried."""

    code = "file_too_large"
    status_code = 413


class MissingFileMetadataError(TransferError):
    """The source did not report a size or a download URL. Never retried."""

    code = "missing_file_metadata"
    status_code = 422


class SourceFetchError(TransferError):
    """An HTTP fetch or upload answered with a non-success status."""

    def __init__(self, code: str, status: int) -> None:
        self.status = status
        super().__init__(code, "{}:{}".format(code, status))
