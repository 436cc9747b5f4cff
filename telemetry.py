#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

This module configures tracing for aiohttp client requests, sqlite3 calls and
key scraper spans (ticks, per-feed fetches, database operations).

Environment variables:
  - OTEL_SERVICE_NAME (default: rss-aggregator)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print finished spans to stdout
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from typing import Optional
import asyncio

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

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "rss-aggregator")
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

        if os.environ.get("OTEL_CONSOLE_EXPORT", "false").lower() == "true":
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
            _logger.info("Telemetry initialized with console span exporter (service=%s)", svc)
        else:
            _logger.debug("Telemetry initialized without exporter (service=%s); spans stay in-process", svc)

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        # Instrumentation is best effort; a missing hook must not stop the scraper
        for instrumentor in (AioHttpClientInstrumentor(), LoggingInstrumentor(), SQLite3Instrumentor()):
            try:
                instrumentor.instrument()
            except Exception as e:
                _logger.debug("Telemetry: %s failed: %s", type(instrumentor).__name__, e)

        _initialized = True

        def _shutdown():
            # TracerProvider.shutdown() flushes BatchSpanProcessor
            if _provider:
                _provider.shutdown()

        atexit.register(_shutdown)


def get_tracer(name: str = "rss-aggregator"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[callable] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to span_name or 'rss-aggregator')
        static_attrs: Dict of attributes to set on the span
        attr_from_args: Callable taking (*args, **kwargs) and returning a dict
                        of attributes to set on the span

    Works with sync and async functions.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tname = tracer_name or name.split(".")[0] or "rss-aggregator"
        tracer = get_tracer(tname)

        def _set_attrs(span, args, kwargs):
            if not span:
                return
            try:
                if static_attrs:
                    for k, v in static_attrs.items():
                        span.set_attribute(k, v)
                if callable(attr_from_args):
                    dyn = attr_from_args(*args, **kwargs) or {}
                    for k, v in dyn.items():
                        span.set_attribute(k, v)
            except Exception:
                # Never break the app on attribute setting
                pass

        if asyncio.iscoroutinefunction(func):

            async def _aw(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        if span:
                            span.record_exception(e)
                            span.set_status(Status(StatusCode.ERROR))
                        raise

            _aw.__name__ = func.__name__
            _aw.__doc__ = func.__doc__
            _aw.__qualname__ = getattr(func, "__qualname__", func.__name__)
            return _aw
        else:

            def _w(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return func(*args, **kwargs)
                    except Exception as e:
                        if span:
                            span.record_exception(e)
                            span.set_status(Status(StatusCode.ERROR))
                        raise

            _w.__name__ = func.__name__
            _w.__doc__ = func.__doc__
            _w.__qualname__ = getattr(func, "__qualname__", func.__name__)
            return _w

    return _decorator
