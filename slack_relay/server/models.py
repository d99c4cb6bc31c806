"""Pydantic request/response models for the relay HTTP API.

WHY: The FastAPI routes need typed schemas for request validation,
response serialization, and the OpenAPI docs. The wire format is
camelCase (teamId, userId, relayKey) to match the peer relay.

RULES:
- All models use Field(description=...) for OpenAPI documentation
- Error bodies are always {ok: false, error: <code>}
- InboundRelayRequest tags untagged files with their transport
"""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from slack_relay import __version__
from slack_relay.core.envelope import (
    RelayEnvelope,
    RelayFile,
    WireModel,
    build_relay_key,
    infer_transport,
)
from slack_relay.core.errors import MalformedRelayRequest


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class InboundRelayRequest(WireModel):
    """Body of POST /relay/inbound.

    RULES:
    - teamId and userId are required and non-empty
    - relayKey defaults to ``teamId:userId`` when the peer omits it
    - files may be proxy-transport or direct-transport references
    """

    team_id: str = Field(min_length=1, description="Tenant (workspace) id of the user.")
    user_id: str = Field(min_length=1, description="User id within the tenant.")
    text: Optional[str] = Field(default=None, description="Message text to post.")
    files: List[RelayFile] = Field(
        default_factory=list,
        description="Attachment references (capability URL or source file id).",
    )
    relay_key: Optional[str] = Field(
        default=None,
        description="Idempotency key; identical for redeliveries of one event.",
    )

    @model_validator(mode="before")
    @classmethod
    def _tag_files(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("files"), list):
            data = dict(data)
            data["files"] = [infer_transport(f) for f in data["files"]]
        return data

    @classmethod
    def from_payload(cls, payload: Any) -> "InboundRelayRequest":
        """Validate a decoded JSON body.

        Raises:
            MalformedRelayRequest: ``missing_team_or_user`` when either id is
                absent or empty, ``malformed_request`` for anything else.
        """
        if not isinstance(payload, dict):
            raise MalformedRelayRequest()
        if not payload.get("teamId") or not payload.get("userId"):
            raise MalformedRelayRequest("missing_team_or_user")
        try:
            return cls.model_validate(payload)
        except ValidationError:
            raise MalformedRelayRequest()

    def to_envelope(self) -> RelayEnvelope:
        return RelayEnvelope(
            relay_key=self.relay_key or build_relay_key([self.team_id, self.user_id]),
            team_id=self.team_id,
            user_id=self.user_id,
            direction="inbound",
            text=self.text,
            files=self.files,
        )


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class OkResponse(BaseModel):
    ok: bool = Field(default=True, description="Always true on success.")


class ErrorResponse(BaseModel):
    """Consistent error body for every relay route."""

    ok: bool = Field(default=False, description="Always false on error.")
    error: str = Field(description="Machine-readable error code, e.g. 'expired'.")

    model_config = {"json_schema_extra": {
        "examples": [{"ok": False, "error": "invalid_signature"}],
    }}


class HealthResponse(BaseModel):
    ok: bool = Field(default=True, description="Service is up.")
    version: str = Field(default=__version__, description="Relay version.")
