"""Prometheus self-monitoring for exports and the store connection."""
from typing import Optional
import logging
import time

import grpc
from prometheus_client import (
    Counter, Gauge, Histogram,
    CollectorRegistry, start_http_server, write_to_textfile
)

logger = logging.getLogger(__name__)

GRPC_HANDLING_BUCKETS = [0.001, 0.01, 0.1, 0.3, 0.6, 1, 3, 6, 9, 20, 30, 60, 90, 120]


class ExportMetrics:
    """Self-monitoring metrics for the export pipeline."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, prefix: str = ""):
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.series_total = Counter(
            f"{prefix}series_total",
            "Total number of series read from the store",
            registry=registry
        )

        self.samples_total = Counter(
            f"{prefix}samples_total",
            "Total number of samples decoded inside the requested range",
            registry=registry
        )

        self.rows_total = Counter(
            f"{prefix}rows_total",
            "Total number of rows handed to the sink",
            registry=registry
        )

        self.export_errors_total = Counter(
            f"{prefix}export_errors_total",
            "Total number of failed exports",
            ["kind"],
            registry=registry
        )

        self.export_duration_seconds = Histogram(
            f"{prefix}export_duration_seconds",
            "Duration of a whole export in seconds",
            buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 300, 900, 3600],
            registry=registry
        )

        self.schema_columns = Gauge(
            f"{prefix}schema_columns",
            "Number of label columns discovered so far",
            registry=registry
        )

    def record_series(self, samples: int, rows: int):
        """Record one fully processed series."""
        self.series_total.inc()
        self.samples_total.inc(samples)
        self.rows_total.inc(rows)

    def record_export_error(self, kind: str):
        """Record export error."""
        self.export_errors_total.labels(kind=kind).inc()

    def record_export_duration(self, duration: float):
        """Record export duration."""
        self.export_duration_seconds.observe(duration)

    def set_schema_columns(self, count: int):
        """Set discovered column count."""
        self.schema_columns.set(count)


class GRPCClientMetrics(grpc.UnaryStreamClientInterceptor):
    """Client-side gRPC metrics for server-streaming calls."""

    def __init__(self, registry: CollectorRegistry, prefix: str = ""):
        self.started_total = Counter(
            f"{prefix}grpc_client_started_total",
            "Total number of RPCs started on the client",
            ["grpc_method"],
            registry=registry
        )

        self.handled_total = Counter(
            f"{prefix}grpc_client_handled_total",
            "Total number of RPCs completed by the client, regardless of success or failure",
            ["grpc_method", "grpc_code"],
            registry=registry
        )

        self.handling_seconds = Histogram(
            f"{prefix}grpc_client_handling_seconds",
            "Histogram of response latency of RPCs until the stream completed",
            ["grpc_method"],
            buckets=GRPC_HANDLING_BUCKETS,
            registry=registry
        )

    def intercept_unary_stream(self, continuation, client_call_details, request):
        method = client_call_details.method
        self.started_total.labels(grpc_method=method).inc()
        start = time.monotonic()

        call = continuation(client_call_details, request)

        def on_done(finished):
            code = finished.code()
            self.handled_total.labels(
                grpc_method=method,
                grpc_code=code.name if code is not None else "UNKNOWN"
            ).inc()
            self.handling_seconds.labels(grpc_method=method).observe(time.monotonic() - start)

        call.add_done_callback(on_done)
        return call


def serve_metrics(registry: CollectorRegistry, port: int, addr: str = "0.0.0.0"):
    """Expose the registry over HTTP for the lifetime of the process."""
    start_http_server(port, addr=addr, registry=registry)
    logger.info(f"Self-metrics listening on {addr}:{port}/metrics")


def dump_metrics(registry: CollectorRegistry, path: str):
    """Write the registry in text format, e.g. for the node exporter textfile collector."""
    write_to_textfile(path, registry)
    logger.info(f"Self-metrics written to {path}")
