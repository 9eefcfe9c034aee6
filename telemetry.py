#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry and Azure Application Insights.

This module configures tracing for aiohttp client requests and key pipeline
spans, exporting to Azure Monitor when an Application Insights connection
string is provided via environment variable. It also defines the metrics sink
that ingestion and scheduling report their counters to.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: content-library)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_METRICS_CONSOLE=true to also print metrics to stdout
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import functools
import logging
import threading
from typing import Dict, List, Optional, Protocol
import asyncio

from opentelemetry import metrics, trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

try:
    # Azure Monitor exporter is optional; only used when connection string is present
    from azure.monitor.opentelemetry.exporter import (  # type: ignore
        AzureMonitorMetricExporter,
        AzureMonitorTraceExporter,
    )
    _AZURE_AVAILABLE = True
    _AZURE_IMPORT_ERROR: Optional[str] = None
except ImportError as _imp_err:
    AzureMonitorTraceExporter = None  # type: ignore
    AzureMonitorMetricExporter = None  # type: ignore
    _AZURE_AVAILABLE = False
    _AZURE_IMPORT_ERROR = repr(_imp_err)

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None
_meter_provider: Optional[MeterProvider] = None

_logger = logging.getLogger(__name__)


def _connection_string() -> Optional[str]:
    conn = os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )
    if conn:
        return conn
    ikey = os.environ.get("APPLICATIONINSIGHTS_INSTRUMENTATIONKEY")
    return f"InstrumentationKey={ikey}" if ikey else None


def _metric_readers(conn: Optional[str]) -> List[MetricReader]:
    """Periodic readers for the configured metric exporters (may be empty)."""
    readers: List[MetricReader] = []
    if conn and _AZURE_AVAILABLE:
        try:
            exporter = AzureMonitorMetricExporter.from_connection_string(conn)  # type: ignore
            readers.append(PeriodicExportingMetricReader(exporter))
        except ValueError as e:
            _logger.warning("Telemetry init: failed to enable Azure metric exporter (%s)", e)
    if os.environ.get("OTEL_METRICS_CONSOLE", "false").lower() == "true":
        readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter()))
    return readers


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing, metrics and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider, _meter_provider
    if os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true":
        return
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "content-library")
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env

        # If a provider was already set by external auto-instrumentation, reuse it
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))

        conn = _connection_string()
        if conn and _AZURE_AVAILABLE:
            try:
                az_exporter = AzureMonitorTraceExporter.from_connection_string(conn)  # type: ignore
                provider.add_span_processor(BatchSpanProcessor(az_exporter))
                _logger.info("Telemetry initialized: Azure Monitor trace exporter enabled (service=%s)", svc)
            except ValueError as e:
                _logger.warning("Telemetry init: failed to enable Azure exporter (%s); spans will not be exported", e)
        else:
            _logger.debug("Telemetry initialized without exporter (service=%s); no spans will be exported", svc)
            if conn and _AZURE_IMPORT_ERROR:
                _logger.warning(
                    "Azure exporter package unavailable; install 'azure-monitor-opentelemetry-exporter'. Import error: %s",
                    _AZURE_IMPORT_ERROR,
                )

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        readers = _metric_readers(conn)
        _meter_provider = MeterProvider(resource=Resource.create(attrs), metric_readers=readers)
        metrics.set_meter_provider(_meter_provider)
        _logger.debug("Telemetry metrics initialized with %d reader(s)", len(readers))

        AioHttpClientInstrumentor().instrument()
        # Inject trace/span ids into log records as otelTraceID / otelSpanID without changing format
        LoggingInstrumentor().instrument()
        SQLite3Instrumentor().instrument()

        _initialized = True

        def _shutdown():
            # TracerProvider.shutdown() flushes BatchSpanProcessor
            if _provider:
                _provider.shutdown()
            if _meter_provider:
                _meter_provider.shutdown()

        atexit.register(_shutdown)


def get_tracer(name: str = "content-library"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[callable] = None,
):
    """Run the decorated sync or async function inside a span.

    ``attr_from_args`` receives the call's arguments and returns extra span
    attributes. Exceptions are recorded on the span and re-raised.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "content-library")

        def _span_attributes(args, kwargs) -> dict:
            attributes = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attributes.update(attr_from_args(*args, **kwargs) or {})
                except (TypeError, ValueError, KeyError, AttributeError) as e:
                    _logger.debug("Span %s: attribute callback failed: %s", name, e)
            return attributes

        def _failed(span, exc):
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR))

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with tracer.start_as_current_span(name, attributes=_span_attributes(args, kwargs)) as span:
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _failed(span, e)
                        raise

            return _async_wrapper

        @functools.wraps(func)
        def _wrapper(*args, **kwargs):
            with tracer.start_as_current_span(name, attributes=_span_attributes(args, kwargs)) as span:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _failed(span, e)
                    raise

        return _wrapper

    return _decorator


class MetricsSink(Protocol):
    """Where ingestion and scheduling report their counters.

    Passed explicitly to the components that use it; nothing in the pipeline
    keeps process-wide counters of its own.
    """

    def increment(self, name: str, value: int = 1, **attributes: str) -> None:
        ...


class NullMetrics:
    """Metrics sink that discards everything."""

    def increment(self, name: str, value: int = 1, **attributes: str) -> None:
        return None


class OpenTelemetryMetrics:
    """Metrics sink backed by OpenTelemetry counters.

    Counter names are prefixed with ``library.``; instruments are created
    lazily and cached. Counters come from ``meter_provider`` when given,
    otherwise from the global provider that ``init_telemetry`` installs.
    """

    def __init__(self, meter_name: str = "content-library", meter_provider: Optional[MeterProvider] = None) -> None:
        if meter_provider is not None:
            self._meter = meter_provider.get_meter(meter_name)
        else:
            self._meter = metrics.get_meter(meter_name)
        self._counters: Dict[str, object] = {}
        self._lock = threading.Lock()

    def increment(self, name: str, value: int = 1, **attributes: str) -> None:
        if value <= 0:
            return
        full_name = f"library.{name}"
        with self._lock:
            counter = self._counters.get(full_name)
            if counter is None:
                counter = self._meter.create_counter(full_name)
                self._counters[full_name] = counter
        counter.add(value, attributes=attributes or None)
