"""Minimal HTTP health endpoint for the container platform."""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

logger = logging.getLogger(__name__)


class HealthServer:
    """Serves ``GET /health`` from a daemon thread.

    ``guardian`` needs ``is_healthy()``, ``is_paused``, ``last_tick_at``
    and ``consecutive_errors``. It may be swapped with ``attach()`` when the
    guardian is restarted.
    """

    def __init__(self, port: int, guardian=None, host: str = ""):
        self.guardian = guardian
        self._server = ThreadingHTTPServer((host, port), self._handler_class())
        self._thread = None

    @property
    def port(self) -> int:
        return self._server.server_address[1]

    def attach(self, guardian):
        self.guardian = guardian

    def payload(self):
        guardian = self.guardian
        if guardian is None:
            return False, {"status": "starting"}
        healthy = guardian.is_healthy()
        last_tick = guardian.last_tick_at
        return healthy, {
            "status": "ok" if healthy else "unhealthy",
            "paused": guardian.is_paused,
            "last_tick_at": last_tick.isoformat() if last_tick else None,
            "consecutive_errors": guardian.consecutive_errors,
        }

    def _handler_class(self):
        health = self

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self):
                if self.path != "/health":
                    self.send_response(404)
                    self.end_headers()
                    return

                healthy, body = health.payload()
                data = json.dumps(body).encode()
                self.send_response(200 if healthy else 503)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(data)))
                self.end_headers()
                self.wfile.write(data)

            def log_message(self, *args):
                pass  # suppress HTTP access logs

        return _Handler

    def start(self):
        self._thread = threading.Thread(target=self._server.serve_forever, name="health", daemon=True)
        self._thread.start()
        logger.info(f"Health server listening on :{self.port}/health")

    def stop(self):
        self._server.shutdown()
        self._server.server_close()
