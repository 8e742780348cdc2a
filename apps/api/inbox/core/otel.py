from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from threading import Lock
from typing import Any

from fastapi import FastAPI

from inbox.core.config import Settings
from inbox.db.session import get_engine

logger = logging.getLogger("inbox.api")


@dataclass(frozen=True)
class OTelSetupResult:
    enabled: bool
    reason: str
    shutdown: Callable[[], None] | None = None


_TRACER_PROVIDER: Any | None = None
_TRACER_PROVIDER_LOCK = Lock()
_SQLALCHEMY_INSTRUMENTED = False


def setup_otel(*, app: FastAPI, settings: Settings) -> OTelSetupResult:
    """Instrument the API app and the shared SQLAlchemy engine."""
    precheck = _precheck(settings)
    if precheck is not None:
        return precheck

    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    except Exception as exc:
        logger.warning("OpenTelemetry tracing setup skipped: %s", exc)
        return OTelSetupResult(enabled=False, reason="dependency_missing")

    provider = _provider_or_none(settings)
    if provider is None:
        return OTelSetupResult(enabled=False, reason="dependency_missing")

    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=provider,
        excluded_urls=settings.OTEL_EXCLUDED_URLS,
    )
    _instrument_engine(provider)

    logger.info(
        "OpenTelemetry tracing enabled for service=%s endpoint=%s",
        settings.OTEL_SERVICE_NAME,
        settings.OTEL_EXPORTER_OTLP_TRACES_ENDPOINT,
    )

    def _shutdown() -> None:
        with suppress(Exception):
            FastAPIInstrumentor.uninstrument_app(app)

    return OTelSetupResult(enabled=True, reason="enabled", shutdown=_shutdown)


def setup_worker_otel(*, settings: Settings) -> OTelSetupResult:
    """Worker processes only trace database work."""
    precheck = _precheck(settings)
    if precheck is not None:
        return precheck

    provider = _provider_or_none(settings)
    if provider is None:
        return OTelSetupResult(enabled=False, reason="dependency_missing")
    _instrument_engine(provider)
    return OTelSetupResult(enabled=True, reason="enabled")


def _precheck(settings: Settings) -> OTelSetupResult | None:
    if not settings.ENABLE_OTEL_TRACING:
        return OTelSetupResult(enabled=False, reason="disabled")
    if not settings.OTEL_EXPORTER_OTLP_TRACES_ENDPOINT.strip():
        logger.warning(
            "OpenTelemetry tracing is enabled but OTEL_EXPORTER_OTLP_TRACES_ENDPOINT is empty."
        )
        return OTelSetupResult(enabled=False, reason="missing_endpoint")
    return None


def _instrument_engine(provider: Any) -> None:
    global _SQLALCHEMY_INSTRUMENTED
    if _SQLALCHEMY_INSTRUMENTED:
        return
    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

    SQLAlchemyInstrumentor().instrument(engine=get_engine(), tracer_provider=provider)
    _SQLALCHEMY_INSTRUMENTED = True


def _provider_or_none(settings: Settings) -> Any | None:
    global _TRACER_PROVIDER
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
    except Exception as exc:
        logger.warning("OpenTelemetry tracing setup skipped: %s", exc)
        return None

    with _TRACER_PROVIDER_LOCK:
        if _TRACER_PROVIDER is not None:
            return _TRACER_PROVIDER

        resource = Resource.create(
            {
                SERVICE_NAME: settings.OTEL_SERVICE_NAME,
                SERVICE_VERSION: settings.VERSION,
            }
        )
        provider = TracerProvider(
            resource=resource,
            sampler=TraceIdRatioBased(settings.OTEL_TRACE_SAMPLE_RATIO),
        )

        exporter_kwargs: dict[str, Any] = {"endpoint": settings.OTEL_EXPORTER_OTLP_TRACES_ENDPOINT}
        otlp_headers = _parse_otlp_headers(settings.OTEL_EXPORTER_OTLP_HEADERS)
        if otlp_headers:
            exporter_kwargs["headers"] = otlp_headers

        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))
        trace.set_tracer_provider(provider)
        _TRACER_PROVIDER = provider
        return provider


def _parse_otlp_headers(raw_headers: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for token in raw_headers.split(","):
        piece = token.strip()
        if not piece:
            continue
        key, sep, value = piece.partition("=")
        if not sep or not key.strip() or not value.strip():
            logger.warning("Ignoring malformed OTLP header token: %s", piece)
            continue
        out[key.strip()] = value.strip()
    return out
