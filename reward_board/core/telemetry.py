from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from reward_board.core.config import Settings

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s component=%(component)s "
    "trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
)
_ENDPOINT_ENV_VARS = ("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT", "OTEL_EXPORTER_OTLP_ENDPOINT")
_UNSET_TRACE_ID = "0" * 32
_UNSET_SPAN_ID = "0" * 16

_base_record_factory = logging.getLogRecordFactory()
_log_component: str | None = None


@dataclass(slots=True)
class TelemetryRuntime:
    component: str
    provider: TracerProvider | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_logging(*, component: str = "api") -> None:
    """Tag every log record with the deployable unit and the active span ids."""
    _install_log_correlation(component)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def setup_telemetry(settings: Settings, *, component: str) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(component=component)

    if settings.otel_log_correlation:
        _install_log_correlation(component)

    service_name = f"{settings.otel_service_name}-{component}"
    provider = TracerProvider(
        resource=Resource.create({SERVICE_NAME: service_name, DEPLOYMENT_ENVIRONMENT: settings.environment}),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    endpoint = resolve_otlp_endpoint(settings)
    if endpoint:
        headers = _parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=headers or None)))
    else:
        logging.getLogger(__name__).info("no OTLP endpoint configured; %s spans are not exported", service_name)
    trace.set_tracer_provider(provider)
    return TelemetryRuntime(component=component, provider=provider)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    runtime = setup_telemetry(settings, component="api")
    if runtime.enabled:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=runtime.provider)
    return runtime


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if runtime.enabled:
        FastAPIInstrumentor.uninstrument_app(app)
    shutdown_telemetry(runtime)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    runtime.provider.force_flush()
    runtime.provider.shutdown()


def resolve_otlp_endpoint(settings: Settings) -> str | None:
    """Settings win over the standard OTEL_* variables; traces-specific before generic."""
    candidates = [settings.otel_exporter_otlp_endpoint, *(os.getenv(name) for name in _ENDPOINT_ENV_VARS)]
    return next((candidate.strip() for candidate in candidates if candidate and candidate.strip()), None)


def _parse_headers(raw: str | None) -> dict[str, str]:
    if raw is None:
        return {}
    parsed: dict[str, str] = {}
    for item in raw.split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            parsed[key.strip()] = value.strip()
    return parsed


def _current_span_ids() -> tuple[str, str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return _UNSET_TRACE_ID, _UNSET_SPAN_ID
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


def _correlated_record(*args: object, **kwargs: object) -> logging.LogRecord:
    record = _base_record_factory(*args, **kwargs)
    record.component = _log_component or "-"
    record.trace_id, record.span_id = _current_span_ids()
    return record


def _install_log_correlation(component: str) -> None:
    global _log_component
    _log_component = component
    if logging.getLogRecordFactory() is not _correlated_record:
        logging.setLogRecordFactory(_correlated_record)
