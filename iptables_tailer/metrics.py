"""Prometheus packet drop counter and the Flask app that exposes it."""

import logging
import threading

from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)


class DropMetrics:
    """Owns its own registry so only the tailer's metrics are exposed."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self._registry = registry or CollectorRegistry()
        self._packet_drops = Counter(
            "packet_drops_count",
            "Counter for number of packet drops handled; excludes expired and duplicates.",
            ["src", "dst"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def process_packet_drop(self, src: str, dst: str):
        self._packet_drops.labels(src=src, dst=dst).inc()

    def get_count(self, src: str, dst: str) -> float:
        value = self._registry.get_sample_value(
            "packet_drops_count_total", {"src": src, "dst": dst}
        )
        return value or 0.0

    def render(self) -> bytes:
        return generate_latest(self._registry)


def create_metrics_app(metrics: DropMetrics) -> Flask:
    app = Flask(__name__)

    @app.route("/metrics")
    def scrape():
        return Response(metrics.render(), content_type=CONTENT_TYPE_LATEST)

    @app.route("/health")
    def health():
        return jsonify(status="ok")

    return app


def run_metrics_server(app: Flask, port: int) -> threading.Thread:
    """Serve the metrics app from a daemon thread."""
    t = threading.Thread(
        target=app.run,
        kwargs={"host": "0.0.0.0", "port": port, "use_reloader": False},
        daemon=True,
        name="metrics-server",
    )
    t.start()
    logger.info("Metrics server listening on :%d", port)
    return t
