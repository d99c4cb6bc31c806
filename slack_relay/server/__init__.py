"""HTTP surface of the relay: FastAPI app, models and dispatch flow.

WHY: The peer relay posts envelopes to /relay/inbound, receivers fetch
capability URLs from /relay/file, and Slack delivers events to
/slack/events. All three live in one FastAPI application.

HOW: app.create_app() wires RelayServices built by build_services() into
the routes. relay.RelayService sequences both relay directions.
"""
