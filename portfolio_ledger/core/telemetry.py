"""OpenTelemetry wiring for the portfolio ledger service.

Tracing, metrics and log export are configured once per process. Domain code
only talks to the OpenTelemetry API (``trace.get_tracer`` /
``metrics.get_meter``) and stays a no-op until ``setup_telemetry`` installs
real providers.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry import metrics, trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.semconv.resource import ResourceAttributes
from sqlalchemy.ext.asyncio import AsyncEngine

from .. import __version__
from .config import LedgerSettings

logger = logging.getLogger(__name__)

_TELEMETRY_INITIALISED = False
_METRIC_EXPORT_INTERVAL_MS = 10000

# Health checks would otherwise dominate the trace volume.
_EXCLUDED_URLS = "health"


def ledger_resource(settings: LedgerSettings) -> Resource:
    """Resource attributes shared by every exported signal."""

    return Resource.create(
        {
            ResourceAttributes.SERVICE_NAME: settings.telemetry_service_name or settings.app_name,
            ResourceAttributes.SERVICE_NAMESPACE: "portfolio-ledger",
            ResourceAttributes.SERVICE_VERSION: __version__,
            "ledger.cost_mode": settings.cost_mode,
            "ledger.snapshot_policy": settings.snapshot_concurrency_policy,
        }
    )


def _exporter_options(settings: LedgerSettings) -> dict[str, Any]:
    options: dict[str, Any] = {"insecure": settings.telemetry_otlp_insecure}
    if settings.telemetry_otlp_endpoint:
        options["endpoint"] = settings.telemetry_otlp_endpoint
    return options


def _configure_tracing(resource: Resource, settings: LedgerSettings) -> TracerProvider:
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.telemetry_sample_ratio)),
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**_exporter_options(settings))))
    trace.set_tracer_provider(provider)
    return provider


def _configure_metrics(resource: Resource, settings: LedgerSettings) -> MeterProvider:
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(**_exporter_options(settings)),
        export_interval_millis=_METRIC_EXPORT_INTERVAL_MS,
    )
    provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(provider)
    return provider


def _configure_logs(resource: Resource, settings: LedgerSettings) -> None:
    provider = LoggerProvider(resource=resource)
    provider.add_log_record_processor(BatchLogRecordProcessor(OTLPLogExporter(**_exporter_options(settings))))
    set_logger_provider(provider)
    # Adds trace/span ids to log records without touching the stdout format.
    LoggingInstrumentor().instrument(set_logging_format=False)


def setup_telemetry(app: FastAPI, settings: LedgerSettings, engine: AsyncEngine | None = None) -> bool:
    """Install OTLP exporters and instrument the app and database engine.

    Returns ``True`` when telemetry is active after the call.
    """

    global _TELEMETRY_INITIALISED  # noqa: PLW0603

    if _TELEMETRY_INITIALISED:
        return True
    if not settings.telemetry_enabled:
        logger.info("Telemetry disabled via configuration")
        return False

    resource = ledger_resource(settings)
    tracer_provider = _configure_tracing(resource, settings)
    meter_provider = _configure_metrics(resource, settings)
    _configure_logs(resource, settings)

    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=tracer_provider,
        meter_provider=meter_provider,
        excluded_urls=_EXCLUDED_URLS,
    )
    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=tracer_provider)

    _TELEMETRY_INITIALISED = True
    logger.info(
        "Telemetry initialised",
        extra={"otlp_endpoint": settings.telemetry_otlp_endpoint, "sample_ratio": settings.telemetry_sample_ratio},
    )
    return True


__all__ = ["ledger_resource", "setup_telemetry"]
