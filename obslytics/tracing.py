"""OpenTelemetry tracing setup using OTLP."""
from typing import Optional, Tuple
import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from obslytics.config import TracingConfig

logger = logging.getLogger(__name__)


def setup_tracing(config: TracingConfig) -> Tuple[trace.Tracer, Optional[TracerProvider]]:
    """
    Build the tracer handed to the store client.

    Returns a no-op tracer and no provider when tracing is disabled. The
    provider is not installed globally; the caller owns its shutdown.
    """
    if not config.enabled:
        return trace.NoOpTracer(), None

    resource = Resource.create({
        "service.name": config.service_name,
    })

    exporter = OTLPSpanExporter(
        endpoint=config.endpoint,
        insecure=config.insecure,
    )

    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    logger.info(f"OTEL tracing enabled, pushing spans to {config.endpoint}")
    return provider.get_tracer("obslytics"), provider
