"""OpenTelemetry tracing for the API and the metrics pipeline."""
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from audience.config import settings


def setup_tracing(app=None, engine=None) -> None:  # noqa: ANN001
    """
    Install an OTLP-exporting tracer provider.

    Called from the API lifespan and the worker startup hook when
    ``settings.otel_enabled`` is set. Without it, ``get_tracer`` returns the
    no-op tracer and pipeline spans cost nothing.

    Args:
        app: FastAPI application to instrument, if any
        engine: Async SQLAlchemy engine to instrument, if any
    """
    resource = Resource(attributes={SERVICE_NAME: settings.otel_service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{settings.otel_exporter_otlp_endpoint}/v1/traces"))
    )
    trace.set_tracer_provider(provider)

    if app is not None:
        FastAPIInstrumentor.instrument_app(app)
    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer(name: str, tracer_provider: Optional[trace.TracerProvider] = None) -> trace.Tracer:
    """
    Get a tracer instance for creating custom spans.

    Args:
        name: Tracer name (typically module name)
        tracer_provider: Explicit provider, mainly for tests

    Returns:
        Tracer: OpenTelemetry tracer instance
    """
    return trace.get_tracer(name, tracer_provider=tracer_provider)
