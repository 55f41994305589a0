from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

StatusFn = Callable[[], dict[str, Any]]


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz`` and ``/metrics``.

    ``/readyz`` is 200 only when every watch finished its initial list and,
    with leader election enabled, this replica holds the lease.  Standby
    replicas therefore report 503 with ``leader: false`` in the body.
    """

    status_fn: StatusFn
    leader_event: threading.Event | None

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness(self) -> tuple[bool, dict[str, Any]]:
        status = dict(self.status_fn())
        leader = self.leader_event is None or self.leader_event.is_set()
        status["leader"] = leader
        return bool(status.get("ready")) and leader, status

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            ready, status = self._readiness()
            self._respond(
                200 if ready else 503,
                json.dumps(status, sort_keys=True).encode(),
                "application/json",
            )
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("haegress.health").debug(fmt, *args)


def make_health_handler(
    status_fn: StatusFn, leader: threading.Event | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to *status_fn* and the optional leader event."""

    class _BoundHealthHandler(_HealthHandler):
        leader_event = leader

    # staticmethod keeps the callable from being bound as a method
    _BoundHealthHandler.status_fn = staticmethod(status_fn)  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(
    status_fn: StatusFn, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler = make_health_handler(status_fn, leader)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler)  # noqa: S104
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", server.server_address[1])
    return server
