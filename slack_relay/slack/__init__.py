"""Slack-facing side of the relay.

WHY: Channel provisioning, file transfer and event handling all talk to
the Slack Web API. Keeping them together keeps Slack-specific details
(error codes, Retry-After, external uploads) out of the core engine.

HOW: errors (retry predicates and policies), channels (Channel
Provisioning Manager), transfer (File Transfer Pipeline), events
(slack-bolt message listener).

RULES:
- All Slack calls use slack_sdk's AsyncWebClient
- All Slack calls run under the Backoff Executor
"""
