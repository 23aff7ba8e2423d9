"""
Prometheus exporter for cl-autoloop

Serves gauges and counters in the Prometheus text format from a background
HTTP server. Standard library only. Metric names are prefixed with
'cl_autoloop_'.
"""

import socket
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Dict, Optional, Any


class MetricType:
    GAUGE = "gauge"
    COUNTER = "counter"


class PrometheusExporter:
    """
    Thread-safe metric store with an optional /metrics HTTP endpoint.

    Usage:
        exporter = PrometheusExporter(port=9810, plugin=plugin)
        exporter.start_server()
        exporter.inc_counter(MetricNames.DISPATCHES_TOTAL)
        exporter.set_gauge(MetricNames.IN_FLIGHT_SWAPS, 1)
    """

    def __init__(self, port: int = 9810, plugin=None):
        self.port = port
        self.plugin = plugin
        self._lock = threading.Lock()
        # name -> {"type", "help", "values": {frozenset(labels): value}}
        self._metrics: Dict[str, Dict[str, Any]] = {}
        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._running = False

    def _log(self, message: str, level: str = 'info'):
        if self.plugin:
            self.plugin.log(message, level=level)

    def _entry(self, name: str, metric_type: str, help_text: str) -> Dict[str, Any]:
        if name not in self._metrics:
            self._metrics[name] = {
                "type": metric_type,
                "help": help_text or METRIC_HELP.get(name, ""),
                "values": {}
            }
        return self._metrics[name]

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  help_text: str = "") -> None:
        label_key = frozenset((labels or {}).items())
        with self._lock:
            self._entry(name, MetricType.GAUGE, help_text)["values"][label_key] = value

    def inc_counter(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None,
                    help_text: str = "") -> None:
        label_key = frozenset((labels or {}).items())
        with self._lock:
            values = self._entry(name, MetricType.COUNTER, help_text)["values"]
            values[label_key] = values.get(label_key, 0) + value

    def get_metric(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        label_key = frozenset((labels or {}).items())
        with self._lock:
            if name in self._metrics:
                return self._metrics[name]["values"].get(label_key)
        return None

    def format_prometheus(self) -> str:
        """Render every metric in the Prometheus text exposition format."""
        lines = []
        with self._lock:
            for name, metric in sorted(self._metrics.items()):
                if metric["help"]:
                    lines.append(f"# HELP {name} {metric['help']}")
                lines.append(f"# TYPE {name} {metric['type']}")
                for label_key, value in sorted(metric["values"].items(),
                                               key=lambda x: str(x[0])):
                    if label_key:
                        label_part = ", ".join(f'{k}="{v}"' for k, v in sorted(label_key))
                        lines.append(f"{name}{{{label_part}}} {value}")
                    else:
                        lines.append(f"{name} {value}")
                lines.append("")
        return "\n".join(lines)

    def _create_request_handler(self):
        exporter = self

        class MetricsHandler(BaseHTTPRequestHandler):

            def log_message(self, format, *args):
                # Keep lightningd's log free of access lines
                pass

            def do_GET(self):
                try:
                    if self.path not in ('/', '/metrics'):
                        self.send_response(404)
                        self.end_headers()
                        return
                    body = exporter.format_prometheus().encode('utf-8')
                    self.send_response(200)
                    self.send_header('Content-Type', 'text/plain; charset=utf-8')
                    self.send_header('Content-Length', str(len(body)))
                    self.end_headers()
                    self.wfile.write(body)
                except (BrokenPipeError, ConnectionResetError):
                    pass

        return MetricsHandler

    def start_server(self) -> bool:
        """Start serving /metrics in a daemon thread. Returns False on bind failure."""
        if self._running:
            return True
        try:
            self._server = HTTPServer(('0.0.0.0', self.port), self._create_request_handler())
            self._server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            self._log(
                f"Failed to start Prometheus server on port {self.port}: {e}. "
                "Plugin continues without metrics.",
                level='error'
            )
            return False

        self._server_thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="autoloop-prometheus"
        )
        self._server_thread.start()
        self._running = True
        self._log(f"Prometheus metrics server started on port {self.port}")
        return True

    def stop_server(self):
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            self._running = False
            self._log("Prometheus metrics server stopped")

    def is_running(self) -> bool:
        return self._running


class MetricNames:
    """Metric names exported by the autolooper."""

    # Counters
    CYCLES_TOTAL = "cl_autoloop_cycles_total"
    QUOTES_TOTAL = "cl_autoloop_quotes_total"
    DISPATCHES_TOTAL = "cl_autoloop_dispatches_total"
    DISPATCH_FAILURES_TOTAL = "cl_autoloop_dispatch_failures_total"

    # Gauges
    BUDGET_SPENT_SATS = "cl_autoloop_budget_spent_sats"
    IN_FLIGHT_SWAPS = "cl_autoloop_in_flight_swaps"
    LAST_RUN_TIMESTAMP = "cl_autoloop_last_run_timestamp_seconds"


METRIC_HELP = {
    MetricNames.CYCLES_TOTAL: "Autoloop cycles started, labelled by outcome",
    MetricNames.QUOTES_TOTAL: "Loop out quotes requested",
    MetricNames.DISPATCHES_TOTAL: "Loop out swaps dispatched",
    MetricNames.DISPATCH_FAILURES_TOTAL: "Loop out dispatches rejected by the swap service",
    MetricNames.BUDGET_SPENT_SATS: "Fees counted against the budget (realized plus pending worst case)",
    MetricNames.IN_FLIGHT_SWAPS: "Autoloop swaps currently in flight",
    MetricNames.LAST_RUN_TIMESTAMP: "Unix timestamp of the last completed cycle",
}
