# ==== OPENTELEMETRY TRACING CONFIGURATION ==== #

"""
OpenTelemetry tracing configuration for the approval workflow service.

Sets up OTLP export and automatic instrumentation for SQLAlchemy, Redis and
HTTP clients when an exporter endpoint is configured. Local runs without an
APM endpoint keep the no-op tracer provider.
"""

from typing import Any, Dict

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from approvals.settings import Settings, get_settings


# ==== TRACING INITIALIZATION ==== #


def init_tracing(service_name: str, settings: Settings | None = None) -> bool:
    """
    Initialize OpenTelemetry tracing with an OTLP exporter.

    Args:
        service_name (str): Name of the service for tracing identification
        settings (Settings | None): Settings to read OTEL_* keys from

    Returns:
        bool: True when an exporter was installed
    """
    settings = settings or get_settings()
    endpoint = settings.OTEL_EXPORTER_OTLP_ENDPOINT

    # ⚠️ Allow local runs without SaaS APM
    if not endpoint:
        return False

    # --► RESOURCE ATTRIBUTES CONFIGURATION
    resource_attrs = _parse_resource_attributes(settings.OTEL_RESOURCE_ATTRIBUTES or "")
    resource_attrs["service.name"] = settings.OTEL_SERVICE_NAME or service_name

    # --► TRACER PROVIDER SETUP
    provider = TracerProvider(resource=Resource.create(resource_attrs))
    exporter = OTLPSpanExporter(
        endpoint=endpoint,
        headers=_parse_headers(settings.OTEL_EXPORTER_OTLP_HEADERS)
    )
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    # FastAPI instrumentation is done in main.py
    SQLAlchemyInstrumentor().instrument()
    RedisInstrumentor().instrument()
    HTTPXClientInstrumentor().instrument()
    return True


def _parse_headers(headers_str: str | None) -> Dict[str, str]:
    """Parse OTLP headers given as comma-separated key=value pairs."""
    headers: Dict[str, str] = {}
    if not headers_str:
        return headers

    for part in headers_str.split(","):
        if "=" in part:
            key, value = part.split("=", 1)
            headers[key.strip()] = value.strip()

    return headers


def _parse_resource_attributes(attrs_str: str) -> Dict[str, Any]:
    """Parse OTEL resource attributes given as comma-separated key=value pairs."""
    attrs: Dict[str, Any] = {}
    for part in filter(None, map(str.strip, attrs_str.split(","))):
        if "=" in part:
            key, value = part.split("=", 1)
            attrs[key] = value

    return attrs


def get_tracer(name: str) -> trace.Tracer:
    """Get a tracer instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Tracer instance
    """
    return trace.get_tracer(name)
