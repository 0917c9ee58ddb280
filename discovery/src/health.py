from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

LOGGER = logging.getLogger(__name__)

NOT_READY_BODY = b"initial API discovery pending\n"


class _TrackerHealthHandler(BaseHTTPRequestHandler):
    """Serves the endpoints kubelet and Prometheus poll on the discovery tracker.

    ``/readyz`` turns 200 once the tracker installed its first snapshot and stays
    there; later rebuild failures only make the snapshot stale, not unavailable.
    """

    tracker_ready: threading.Event

    def _write(
        self, status: int, body: bytes, content_type: str = "text/plain; charset=utf-8"
    ) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _metrics(self) -> None:
        # Resolved per request so the exposition function can be swapped in tests.
        import prometheus_client

        self._write(200, prometheus_client.generate_latest(), prometheus_client.CONTENT_TYPE_LATEST)

    def do_GET(self) -> None:
        route = self.path.split("?", 1)[0]
        if route == "/healthz":
            self._write(200, b"ok\n")
        elif route == "/readyz":
            if self.tracker_ready.is_set():
                self._write(200, b"ready\n")
            else:
                self._write(503, NOT_READY_BODY)
        elif route == "/metrics":
            self._metrics()
        else:
            self._write(404, b"not found\n")

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(ready: threading.Event) -> type[_TrackerHealthHandler]:
    """Return a handler class bound to the tracker's readiness event."""
    return type("BoundTrackerHealthHandler", (_TrackerHealthHandler,), {"tracker_ready": ready})


def start_health_server(ready: threading.Event, port: int) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
