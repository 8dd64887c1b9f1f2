#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

This module configures tracing for aiohttp client requests, sqlite3 calls and
key application spans. Spans are kept in-process unless OTEL_CONSOLE_EXPORT is
enabled, in which case they are written to stdout for debugging.

Environment variables:
  - OTEL_SERVICE_NAME (default: feed-sync)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print finished spans
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from typing import Callable, Optional
import asyncio
import functools

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true":
        return
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "feed-sync")
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env
        resource = Resource.create(attrs)

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=resource)

        console_export = os.environ.get("OTEL_CONSOLE_EXPORT", "false").lower() == "true"
        if console_export:
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            _logger.info("Telemetry initialized with console exporter (service=%s)", svc)
        else:
            _logger.debug("Telemetry initialized without exporter (service=%s)", svc)

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        try:
            AioHttpClientInstrumentor().instrument()
        except Exception as e:
            _logger.debug("aiohttp instrumentation unavailable: %s", e)
        try:
            # Inject trace/span ids into log records as otelTraceID / otelSpanID without changing format
            LoggingInstrumentor().instrument()
        except Exception as e:
            _logger.debug("logging instrumentation unavailable: %s", e)
        try:
            SQLite3Instrumentor().instrument()
        except Exception as e:
            _logger.debug("sqlite3 instrumentation unavailable: %s", e)

        _initialized = True

        def _shutdown():
            # TracerProvider.shutdown() flushes BatchSpanProcessor
            if _provider:
                _provider.shutdown()

        atexit.register(_shutdown)


def get_tracer(name: str = "feed-sync"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def _span_attributes(static_attrs: Optional[dict], attr_from_args, args, kwargs) -> dict:
    attributes = dict(static_attrs or {})
    if attr_from_args is None:
        return attributes
    try:
        attributes.update(attr_from_args(*args, **kwargs) or {})
    except Exception as e:
        # Attribute extraction must never break the traced call
        _logger.debug("Skipping span attributes: %s", e)
    return attributes


def _mark_failed(span, error: Exception) -> None:
    if span is not None and span.is_recording():
        span.record_exception(error)
        span.set_status(Status(StatusCode.ERROR, str(error)))


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Wrap a sync or async callable in an OpenTelemetry span.

    Args:
        span_name: Span name, defaults to module.function
        tracer_name: Tracer to use, defaults to the first dotted part of the span name
        static_attrs: Attributes set on every span
        attr_from_args: Called with the wrapped call's arguments, returns extra attributes

    Exceptions are recorded on the span and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "feed-sync")

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                attributes = _span_attributes(static_attrs, attr_from_args, args, kwargs)
                with tracer.start_as_current_span(name, attributes=attributes, record_exception=False,
                                                    set_status_on_exception=False) as span:
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _mark_failed(span, e)
                        raise

            return _async_wrapper

        @functools.wraps(func)
        def _sync_wrapper(*args, **kwargs):
            attributes = _span_attributes(static_attrs, attr_from_args, args, kwargs)
            with tracer.start_as_current_span(name, attributes=attributes, record_exception=False,
                                                set_status_on_exception=False) as span:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _mark_failed(span, e)
                    raise

        return _sync_wrapper

    return _decorator
