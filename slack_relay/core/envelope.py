"""Relay envelope and attachment types shared by both relay directions.

WHY: Inbound and outbound relays exchange the same unit of delivery: the
routing key (team + user), optional text, and attachment references. The
two file transports (signed proxy URL vs. direct cross-workspace fetch)
are modelled as a tagged union so one pipeline can dispatch on a single
discriminant instead of probing optional fields.

HOW: Pydantic models with camelCase aliases matching the wire format.
RelayEnvelope fills in a missing ``transport`` tag from whichever
transport fields are present, so peers that omit it still validate.

RULES:
- Files are references, never raw bytes
- transport "proxy" requires proxyUrl; transport "direct" requires
  sourceFileId and sourceWorkspace
- size, when present, is >= 0
- relayKey is stable for retried deliveries of the same external event
"""

from __future__ import annotations

from typing import Annotated, Any, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Direction = Literal["inbound", "outbound"]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ProxyFile(WireModel):
    """Attachment reachable through a signed capability URL."""

    transport: Literal["proxy"] = "proxy"
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = Field(default=None, ge=0)
    proxy_url: str
    expires_at: Optional[int] = None


class DirectFile(WireModel):
    """Attachment fetched directly from the source workspace by file id."""

    transport: Literal["direct"] = "direct"
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = Field(default=None, ge=0)
    source_file_id: str
    source_workspace: str


RelayFile = Annotated[Union[ProxyFile, DirectFile], Field(discriminator="transport")]


def infer_transport(raw: Any) -> Any:
    """Add the ``transport`` tag to a raw file dict that lacks one."""
    if not isinstance(raw, dict) or raw.get("transport"):
        return raw
    tagged = dict(raw)
    if tagged.get("proxyUrl") or tagged.get("proxy_url"):
        tagged["transport"] = "proxy"
    elif tagged.get("sourceFileId") or tagged.get("source_file_id"):
        tagged["transport"] = "direct"
    return tagged


class RelayEnvelope(WireModel):
    relay_key: str
    team_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    direction: Direction
    text: Optional[str] = None
    files: List[RelayFile] = Field(default_factory=list)
    external_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _tag_files(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("files"), list):
            data = dict(data)
            data["files"] = [infer_transport(f) for f in data["files"]]
        return data


def build_relay_key(parts: Iterable[Optional[str]]) -> str:
    """Join the non-empty parts with ':' (e.g. ``T1:U1:Ev123``)."""
    return ":".join(p for p in parts if p)
