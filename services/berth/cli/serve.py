"""
Run the Berth API server under uvicorn.

Run via: berth-server

WebSocket keepalive comes from settings.websocket: a ping every
ping_interval_seconds, and a peer that stays silent for read_timeout_seconds
in total is dropped.
"""

import uvicorn

from berth.config import settings


def main() -> None:
    ping_interval = settings.websocket.ping_interval_seconds
    ping_timeout = max(settings.websocket.read_timeout_seconds - ping_interval, 1.0)
    uvicorn.run(
        "berth.api.app:app",
        host=settings.host,
        port=settings.port,
        ws_ping_interval=ping_interval,
        ws_ping_timeout=ping_timeout,
        proxy_headers=True,
        log_config=None,
    )


if __name__ == "__main__":
    main()
