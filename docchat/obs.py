"""Observability utilities providing optional Langfuse tracing and OpenTelemetry spans.

This module centralizes lightweight observability features:
- Langfuse integration via a minimal Trace wrapper that becomes a safe no-op when
  Langfuse is not configured by environment variables.
- OpenTelemetry span context manager. A basic console exporter is installed only
  when tracing is enabled, so users can plug in a different exporter externally.

Tracing never fails a request or an ingestion job: errors from either backend are
logged at debug level and dropped.

Environment/config dependencies are read from docchat.config.settings.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from langfuse import Langfuse
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from docchat.config import settings

logger = logging.getLogger(__name__)

_langfuse_client: Optional[Langfuse] = None
_otel_inited: bool = False


def tracing_enabled() -> bool:
    return bool(settings.LANGFUSE_HOST and settings.LANGFUSE_PUBLIC_KEY and settings.LANGFUSE_SECRET_KEY)


def _init_langfuse() -> Optional[Langfuse]:
    """Initialize and memoize a Langfuse client if configuration is present.

    Returns:
        Optional[Langfuse]: A Langfuse client instance when LANGFUSE_HOST,
            LANGFUSE_PUBLIC_KEY, LANGFUSE_SECRET_KEY are configured; otherwise None.
    """
    global _langfuse_client
    if _langfuse_client is not None:
        return _langfuse_client
    if not tracing_enabled():
        return None
    _langfuse_client = Langfuse(
        host=settings.LANGFUSE_HOST,
        public_key=settings.LANGFUSE_PUBLIC_KEY,
        secret_key=settings.LANGFUSE_SECRET_KEY,
    )
    return _langfuse_client


def _init_otel() -> None:
    """Install a console-exporting tracer provider once, when tracing is enabled."""
    global _otel_inited
    if _otel_inited or not tracing_enabled():
        return
    tp = TracerProvider()
    tp.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tp)
    _otel_inited = True


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[None]:
    """
    Lightweight context manager for an OpenTelemetry span.
    Without a configured provider the global no-op tracer is used.
    """
    _init_otel()
    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(name) as otel_span:
        for k, v in (attributes or {}).items():
            if v is not None:
                otel_span.set_attribute(k, v)
        yield


class Trace:
    """
    Minimal wrapper for a Langfuse trace with safe no-op methods if not configured.
    """

    def __init__(self, name: str, input: Optional[Dict[str, Any]] = None):
        """Create a trace that wraps optional Langfuse state.

        Args:
            name: Logical name of the trace.
            input: Initial input payload to attach to the trace.
        """
        self.name = name
        self.enabled = False
        self._root = None
        client = _init_langfuse()
        if client is None:
            return
        try:
            self._root = client.start_span(name=name, input=input or {})
            self.enabled = True
        except Exception:
            logger.debug("Langfuse trace %s could not be started", name, exc_info=True)

    def event(self, name: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Record a structured event on the trace if Langfuse is enabled."""
        if not self.enabled:
            return
        try:
            self._root.create_event(name=name, input=data or {})
        except Exception:
            logger.debug("Langfuse event %s dropped", name, exc_info=True)

    def generation(
        self,
        name: str,
        prompt: Any,
        output: str,
        metadata: Optional[Dict[str, Any]] = None,
        usage: Optional[Dict[str, int]] = None,
    ) -> None:
        """Record a model generation with its input, output and token usage.

        Uses settings.OPENAI_MODEL for the model field.
        """
        if not self.enabled:
            return
        try:
            gen = self._root.start_generation(
                name=name,
                model=settings.OPENAI_MODEL,
                input=prompt,
                metadata=metadata or {},
            )
            gen.update(output=output, usage_details=usage or None)
            gen.end()
        except Exception:
            logger.debug("Langfuse generation %s dropped", name, exc_info=True)

    def end(self, output: Optional[Dict[str, Any]] = None) -> None:
        """Finalize the trace, optionally updating a final output payload."""
        if not self.enabled:
            return
        try:
            self._root.update(output=output or {})
            self._root.end()
        except Exception:
            logger.debug("Langfuse trace %s could not be ended", self.name, exc_info=True)
