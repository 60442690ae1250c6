"""
Centralized Tracing Utility

Provides OpenTelemetry-based tracing for quota checks, retries and
session recovery. Supports configuration via settings and safe failure
handling: a broken tracer never breaks the traced operation.
"""

import logging
from typing import Optional
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.trace import Status, StatusCode, Tracer

from quota_orchestrator.config import settings

logger = logging.getLogger(__name__)

# Global tracer provider
_tracer_provider: Optional[TracerProvider] = None
_tracing_configured = False


def configure_tracing():
    """
    Configure OpenTelemetry tracing.

    Settings:
    - TRACING_ENABLED: Enable/disable tracing
    - TRACING_EXPORTER: console|none
    - TRACING_SERVICE_NAME: Service name

    Safe Failure: If configuration fails, tracing is disabled but app continues.
    """
    global _tracer_provider, _tracing_configured

    if _tracing_configured:
        return

    try:
        if not settings.TRACING_ENABLED:
            logger.info("Tracing is disabled via TRACING_ENABLED=false")
            _tracing_configured = True
            return

        exporter_type = settings.TRACING_EXPORTER.lower()
        resource = Resource(attributes={
            SERVICE_NAME: settings.TRACING_SERVICE_NAME
        })
        _tracer_provider = TracerProvider(resource=resource)

        if exporter_type == "console":
            span_processor = BatchSpanProcessor(ConsoleSpanExporter())
            _tracer_provider.add_span_processor(span_processor)
            logger.info("Console tracing configured")

        elif exporter_type == "none":
            logger.info("Tracing exporter set to 'none' - no spans will be exported")

        else:
            logger.warning(f"Unknown exporter type: {exporter_type}. Tracing disabled.")
            _tracer_provider = None

        if _tracer_provider:
            trace.set_tracer_provider(_tracer_provider)

        _tracing_configured = True
        logger.info(f"Tracing configured (service: {settings.TRACING_SERVICE_NAME})")

    except Exception as e:
        logger.error(f"Failed to configure tracing: {e}. Tracing will be disabled.")
        _tracer_provider = None
        _tracing_configured = True


def is_tracing_enabled() -> bool:
    return _tracer_provider is not None


def get_tracer(service_name: str) -> Tracer:
    """
    Get a tracer for the given component name.

    Returns a no-op tracer when tracing is disabled.
    """
    if not _tracing_configured:
        configure_tracing()

    return trace.get_tracer(service_name)


@contextmanager
def trace_span(
    tracer: Tracer,
    span_name: str,
    attributes: Optional[dict] = None,
    set_status_on_exception: bool = True
):
    """
    Context manager for creating a traced span with safe error handling.

    Yields the span, or None when tracing is disabled.

    Example:
        with trace_span(tracer, "quota.check", {"quota.service": "apollo"}) as span:
            add_span_attributes(span, {"quota.allowed": True})
    """
    if not is_tracing_enabled():
        yield None
        return

    with tracer.start_as_current_span(span_name, record_exception=False) as span:
        if attributes:
            add_span_attributes(span, attributes)
        try:
            yield span
        except BaseException as e:
            if set_status_on_exception:
                set_span_error(span, e)
            raise


def set_span_error(span, error: BaseException):
    """Mark a span as errored with exception details."""
    if span and is_tracing_enabled():
        try:
            span.set_status(Status(StatusCode.ERROR, str(error)))
            span.record_exception(error)
        except Exception as e:
            logger.error(f"Error setting span error: {e}")


def add_span_attributes(span, attributes: dict):
    """Add attributes to a span safely."""
    if span and is_tracing_enabled():
        try:
            for key, value in attributes.items():
                span.set_attribute(key, value)
        except Exception as e:
            logger.error(f"Error adding span attributes: {e}")
