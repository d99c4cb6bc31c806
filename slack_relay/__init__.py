"""Slack Relay: bridges per-user conversations between two Slack workspaces.

WHY: A human in the "user" workspace should appear to converse with a
dedicated channel in the "responder" workspace. Neither workspace may see
the other's credentials, yet text and file attachments must flow both
ways reliably under rate limits and transient failures.

HOW: A small transport engine (core/) provides retries, rate limiting,
capability-signed file URLs and envelope types. The slack/ package uses
it to provision channels and stream files between workspaces. The
server/ package exposes the HTTP surface (inbound relay, file proxy,
Slack events) through FastAPI.

RULES:
- Every Slack call goes through the Backoff Executor
- File bytes are streamed, never fully buffered
- Stores are injected; the in-memory ones are the defaults
"""

__version__ = "0.1.0"
