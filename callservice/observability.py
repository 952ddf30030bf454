"""
Observability and monitoring setup for the call session service.
"""

import asyncio
from functools import wraps
from typing import Any, Callable, Dict, Optional

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from callservice.utils.redaction import redact_query

logger = structlog.get_logger()

# Global tracer and meter
tracer: Optional[trace.Tracer] = None
meter: Optional[metrics.Meter] = None

# Metrics instruments
request_counter: Optional[metrics.Counter] = None
request_duration: Optional[metrics.Histogram] = None
error_counter: Optional[metrics.Counter] = None
calls_started_counter: Optional[metrics.Counter] = None
calls_ended_counter: Optional[metrics.Counter] = None
call_duration_histogram: Optional[metrics.Histogram] = None
webhooks_counter: Optional[metrics.Counter] = None
webhook_duration: Optional[metrics.Histogram] = None
rate_limited_counter: Optional[metrics.Counter] = None


def setup_observability(
    service_name: str = "call-session-service",
    service_version: str = "1.0.0",
    otlp_endpoint: Optional[str] = None,
    enable_console_export: bool = False
) -> None:
    """
    Set up OpenTelemetry tracing and metrics.

    Args:
        service_name: Name of the service for tracing
        service_version: Version of the service
        otlp_endpoint: OTLP endpoint for trace/metric export
        enable_console_export: Whether to enable console export for development
    """
    global tracer, meter
    global request_counter, request_duration, error_counter
    global calls_started_counter, calls_ended_counter, call_duration_histogram
    global webhooks_counter, webhook_duration, rate_limited_counter

    logger.info(
        "Setting up observability",
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint
    )

    resource = Resource.create({
        "service.name": service_name,
        "service.version": service_version,
    })

    # Set up tracing
    trace_provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))

    if enable_console_export:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter
        trace_provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer(__name__)

    # Set up metrics
    metric_readers = []

    if otlp_endpoint:
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=OTLPMetricExporter(endpoint=otlp_endpoint),
                export_interval_millis=30000
            )
        )

    if enable_console_export:
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        metric_readers.append(
            PeriodicExportingMetricReader(
                exporter=ConsoleMetricExporter(),
                export_interval_millis=60000
            )
        )

    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=metric_readers))
    meter = metrics.get_meter(__name__)

    # Create metric instruments
    request_counter = meter.create_counter(
        name="http_requests_total",
        description="Total number of HTTP requests",
        unit="1"
    )

    request_duration = meter.create_histogram(
        name="http_request_duration_seconds",
        description="HTTP request duration in seconds",
        unit="s"
    )

    error_counter = meter.create_counter(
        name="http_errors_total",
        description="Total number of HTTP errors",
        unit="1"
    )

    calls_started_counter = meter.create_counter(
        name="calls_started_total",
        description="Total number of calls started",
        unit="1"
    )

    calls_ended_counter = meter.create_counter(
        name="calls_ended_total",
        description="Total number of calls reaching a terminal status",
        unit="1"
    )

    call_duration_histogram = meter.create_histogram(
        name="call_duration_seconds",
        description="Duration of completed calls",
        unit="s"
    )

    webhooks_counter = meter.create_counter(
        name="webhooks_received_total",
        description="Total number of provider webhooks received",
        unit="1"
    )

    webhook_duration = meter.create_histogram(
        name="webhook_processing_seconds",
        description="Webhook processing time in seconds",
        unit="s"
    )

    rate_limited_counter = meter.create_counter(
        name="rate_limited_requests_total",
        description="Requests rejected by the rate limiter",
        unit="1"
    )

    logger.info("Observability setup completed")


def instrument_fastapi_app(app) -> None:
    """
    Instrument FastAPI application with OpenTelemetry.

    Args:
        app: FastAPI application instance
    """
    if tracer is None:
        logger.warning("Tracer not initialized, call setup_observability() first")
        return

    FastAPIInstrumentor.instrument_app(app, server_request_hook=redact_span_target)
    HTTPXClientInstrumentor().instrument()
    LoggingInstrumentor().instrument(set_logging_format=True)

    logger.info("FastAPI application instrumented with OpenTelemetry")


def redact_span_target(span, scope: Dict[str, Any]) -> None:
    """Replace the request target recorded on the server span with a redacted one."""
    if span is None or not span.is_recording():
        return

    query = scope.get("query_string", b"").decode("latin-1")
    if not query:
        return

    redacted = redact_query(query)
    path = scope.get("path", "")
    host = dict(scope.get("headers") or []).get(b"host", b"").decode("latin-1")
    target = f"{path}?{redacted}"

    span.set_attribute("http.target", target)
    span.set_attribute("url.query", redacted)
    if host:
        span.set_attribute("http.url", f"{scope.get('scheme', 'http')}://{host}{target}")


def _annotate_failure(span, e: Exception) -> None:
    span.record_exception(e)
    span.set_attribute("success", False)
    span.set_attribute("error.type", type(e).__name__)
    span.set_attribute("error.message", str(e))


def trace_function(operation_name: Optional[str] = None):
    """
    Decorator to trace function execution.

    Args:
        operation_name: Optional custom operation name for the span
    """
    def decorator(func: Callable) -> Callable:
        span_name = operation_name or f"{func.__module__}.{func.__name__}"

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            if tracer is None:
                return await func(*args, **kwargs)

            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _annotate_failure(span, e)
                    raise
                span.set_attribute("success", True)
                return result

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            if tracer is None:
                return func(*args, **kwargs)

            with tracer.start_as_current_span(span_name) as span:
                span.set_attribute("function.name", func.__name__)
                span.set_attribute("function.module", func.__module__)
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    _annotate_failure(span, e)
                    raise
                span.set_attribute("success", True)
                return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def record_call_metrics(outcome: str, duration_seconds: Optional[int] = None) -> None:
    """
    Record a call lifecycle transition.

    Args:
        outcome: ``started``, ``completed`` or ``failed``
        duration_seconds: Call duration for completed calls
    """
    if outcome == "started":
        if calls_started_counter is not None:
            calls_started_counter.add(1)
        return

    if calls_ended_counter is not None:
        calls_ended_counter.add(1, {"status": outcome})
    if duration_seconds is not None and call_duration_histogram is not None:
        call_duration_histogram.record(duration_seconds, {"status": outcome})


def record_webhook_metrics(outcome: str, processing_time: float) -> None:
    """
    Record a webhook delivery.

    Args:
        outcome: ``processed``, ``miss``, ``invalid``, ``rejected`` or ``error``
        processing_time: Time taken in seconds
    """
    if webhooks_counter is None or webhook_duration is None:
        return

    attributes = {"outcome": outcome}
    webhooks_counter.add(1, attributes)
    webhook_duration.record(processing_time, attributes)


def record_rate_limited(bucket: str) -> None:
    """Count a request rejected by the rate limiter."""
    if rate_limited_counter is None:
        return
    rate_limited_counter.add(1, {"bucket": bucket})


def record_http_metrics(
    method: str,
    path: str,
    status_code: int,
    processing_time: float
) -> None:
    """
    Record HTTP request metrics.

    Args:
        method: HTTP method
        path: Request path
        status_code: HTTP status code
        processing_time: Request processing time in seconds
    """
    if request_counter is None or request_duration is None or error_counter is None:
        return

    attributes = {
        "method": method,
        "path": path,
        "status_code": str(status_code)
    }

    request_counter.add(1, attributes)
    request_duration.record(processing_time, attributes)

    if status_code >= 400:
        error_counter.add(1, {
            **attributes,
            "error_type": "client_error" if status_code < 500 else "server_error"
        })


def get_trace_context() -> Dict[str, Any]:
    """
    Get current trace context information.

    Returns:
        Dict with trace ID and span ID if available
    """
    current_span = trace.get_current_span()
    if current_span is None or not current_span.is_recording():
        return {}

    span_context = current_span.get_span_context()
    return {
        "trace_id": f"{span_context.trace_id:032x}",
        "span_id": f"{span_context.span_id:016x}",
    }


class TracingContextMiddleware:
    """
    Middleware to add tracing context to structured logs.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        trace_context = get_trace_context()
        if trace_context:
            structlog.contextvars.bind_contextvars(**trace_context)

        await self.app(scope, receive, send)
