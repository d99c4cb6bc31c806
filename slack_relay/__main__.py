"""Package entry point for ``python -m slack_relay``.

Starts the FastAPI relay server with uvicorn on the configured port.
"""

from slack_relay.server.app import run_api

if __name__ == "__main__":
    run_api()
