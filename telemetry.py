import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator
from urllib.parse import urlparse

SERVICE_NAME = "workshop-mod-updater"

_OTEL_READY = False
_OTEL_ENABLED = False


class _NoopSpan:
    def set_attribute(self, _key: str, _value: Any) -> None:
        return

    def record_exception(self, _exc: BaseException) -> None:
        return


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    trace = _load_trace_module()
    if trace is None:
        yield _NoopSpan()
        return

    tracer = trace.get_tracer(SERVICE_NAME)
    with tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def init_telemetry(service_version: str = "") -> bool:
    """Export spans to Uptrace when ``UPTRACE_DSN`` is set. Safe to call twice."""
    global _OTEL_READY, _OTEL_ENABLED

    if _OTEL_READY:
        return _OTEL_ENABLED

    _OTEL_READY = True
    dsn = os.environ.get("UPTRACE_DSN", "").strip()
    if not dsn:
        logging.debug("UPTRACE_DSN is not set, tracing export is disabled")
        _OTEL_ENABLED = False
        return False

    try:
        import uptrace

        uptrace.configure_opentelemetry(
            dsn=dsn,
            service_name=os.environ.get("OTEL_SERVICE_NAME", SERVICE_NAME).strip(),
            service_version=os.environ.get("OTEL_SERVICE_VERSION", service_version).strip(),
            deployment_environment=os.environ.get("OTEL_DEPLOYMENT_ENVIRONMENT", "").strip(),
        )
        _instrument_aiohttp()
        _OTEL_ENABLED = True
        logging.info("OpenTelemetry is enabled and exporting to Uptrace")
        return True
    except (ImportError, RuntimeError, ValueError, TypeError, AttributeError):
        logging.exception("Failed to initialize OpenTelemetry")
        _OTEL_ENABLED = False
        return False


def shutdown_telemetry() -> None:
    if not _OTEL_ENABLED:
        return

    try:
        import uptrace

        uptrace.shutdown()
    except (ImportError, RuntimeError, ValueError, TypeError, AttributeError):
        logging.exception("Failed to shutdown OpenTelemetry cleanly")


def _instrument_aiohttp() -> None:
    try:
        from opentelemetry.instrumentation.aiohttp_client import (
            AioHttpClientInstrumentor,
        )

        AioHttpClientInstrumentor().instrument(
            request_hook=_aiohttp_request_hook,
            response_hook=_aiohttp_response_hook,
        )
    except (ImportError, RuntimeError, ValueError, TypeError, AttributeError) as exc:
        logging.warning("aiohttp instrumentation is unavailable: %s", exc)


def _load_trace_module():
    try:
        from opentelemetry import trace

        return trace
    except ImportError:
        return None


def _aiohttp_request_hook(span: Any, params: Any) -> None:
    if span is None:
        return
    is_recording = getattr(span, "is_recording", None)
    if callable(is_recording) and not is_recording():
        return
    method = str(getattr(params, "method", "") or "HTTP").upper()
    parsed = urlparse(str(getattr(params, "url", "") or ""))
    route = normalize_route(parsed.path)
    try:
        span.update_name(f"{method} {parsed.netloc}{route}")
    except (AttributeError, RuntimeError, ValueError, TypeError):
        pass
    _set_span_attribute(span, "http.route", route)


def _aiohttp_response_hook(span: Any, params: Any) -> None:
    response = getattr(params, "response", None)
    status = getattr(response, "status", None)
    if span is not None and status is not None:
        _set_span_attribute(span, "http.response.status_code", int(status))


def _set_span_attribute(span: Any, key: str, value: Any) -> None:
    try:
        span.set_attribute(key, value)
    except (AttributeError, RuntimeError, ValueError, TypeError):
        pass


def normalize_route(path: str) -> str:
    parts = ["{id}" if part.isdigit() else part for part in (path or "").split("/") if part]
    return "/" + "/".join(parts)
