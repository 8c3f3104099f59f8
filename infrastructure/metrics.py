from __future__ import annotations

"""Prometheus metrics for instance claims and launch notifications."""

import logging
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler

from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, Counter, generate_latest

# Claim metrics
CLAIM_ATTEMPTS_TOTAL = Counter(
    "instance_claim_attempts_total",
    "Instance claim attempts",
    ["result"],
)

# Listener metrics
NOTIFICATIONS_TOTAL = Counter("instance_notifications_total", "Launch notifications received")
MESSAGES_TOTAL = Counter("instance_messages_total", "Launch notifications carrying a message")
HANDLER_ERRORS_TOTAL = Counter("instance_handler_errors_total", "Notification handlers that raised")

# Client metrics
NOTIFY_FAILURES_TOTAL = Counter(
    "instance_notify_failures_total",
    "Failed attempts to notify the primary instance",
    ["reason"],
)


class MetricsHandler(BaseHTTPRequestHandler):
    """Serves the default registry on /metrics."""

    def do_GET(self) -> None:
        if self.path != "/metrics":
            self.send_error(404)
            return
        try:
            data = generate_latest(REGISTRY)
            self.send_response(200)
            self.send_header("Content-Type", CONTENT_TYPE_LATEST)
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)
        except Exception as exc:
            logging.error(f"Metrics error: {exc}")
            self.send_error(500, "Internal Server Error")

    def log_message(self, format: str, *args) -> None:
        """Suppress default HTTP logging."""
        logging.debug(f"Metrics server: {format % args}")


class MetricsServer:
    """Prometheus metrics HTTP server on a background thread."""

    def __init__(self, addr: str = "127.0.0.1", port: int = 8000) -> None:
        self.addr = addr
        self.port = port
        self.server: HTTPServer | None = None
        self.thread: threading.Thread | None = None

    def start(self) -> None:
        if self.server is not None:
            return
        self.server = HTTPServer((self.addr, self.port), MetricsHandler)
        self.thread = threading.Thread(target=self.server.serve_forever, name="metrics-server", daemon=True)
        self.thread.start()
        logging.info(f"Metrics server started on http://{self.addr}:{self.server.server_port}")

    def stop(self) -> None:
        if self.server is None:
            return
        self.server.shutdown()
        self.server.server_close()
        self.server = None
        if self.thread is not None:
            self.thread.join(timeout=1.0)
            self.thread = None


def start_metrics_server(addr: str = "127.0.0.1", port: int = 8000) -> MetricsServer | None:
    """Start the metrics HTTP server.

    Args:
        addr: Network address to bind to (127.0.0.1 for localhost-only)
        port: Port to listen on

    Returns:
        MetricsServer instance, or None if the port could not be bound.
    """
    server = MetricsServer(addr=addr, port=port)
    try:
        server.start()
    except OSError as exc:
        logging.error(f"Failed to start metrics server: {exc}")
        return None
    return server
