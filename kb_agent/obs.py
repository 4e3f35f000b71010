"""Logging setup and observability utilities (Langfuse traces, OpenTelemetry spans).

This module centralizes lightweight observability features:
- configure_logging: stdlib logging format shared by the API, worker and import CLI.
- configure_observability: one-time setup from Settings; Langfuse is enabled only when
  LANGFUSE_HOST/PUBLIC_KEY/SECRET_KEY are set, and a console span exporter only when
  OTEL_CONSOLE_EXPORT is true.
- span: OpenTelemetry span context manager.
- Trace: minimal Langfuse wrapper whose methods are safe no-ops when Langfuse is
  not configured. Observability failures are logged at debug level and never
  affect the request.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from langfuse import Langfuse
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from kb_agent.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_langfuse_client: Optional[Langfuse] = None
_model_name: str = ""
_otel_inited: bool = False


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def configure_observability(settings: Settings) -> None:
    """Initialize the Langfuse client and OpenTelemetry provider from settings.

    Safe to call more than once; later calls only replace the Langfuse client.
    """
    global _langfuse_client, _model_name, _otel_inited
    _model_name = settings.OPENAI_MODEL
    if settings.LANGFUSE_HOST and settings.LANGFUSE_PUBLIC_KEY and settings.LANGFUSE_SECRET_KEY:
        _langfuse_client = Langfuse(
            host=settings.LANGFUSE_HOST,
            public_key=settings.LANGFUSE_PUBLIC_KEY,
            secret_key=settings.LANGFUSE_SECRET_KEY,
        )
    if not _otel_inited:
        tp = TracerProvider()
        if settings.OTEL_CONSOLE_EXPORT:
            tp.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(tp)
        _otel_inited = True


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """Run the enclosed block inside an OpenTelemetry span.

    Without a configured provider the global no-op tracer is used.
    """
    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(name) as otel_span:
        for k, v in (attributes or {}).items():
            otel_span.set_attribute(k, v)
        yield otel_span


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
        self._span = None
        if _langfuse_client is not None:
            try:
                self._span = _langfuse_client.start_span(name=name, input=input or {})
                self.enabled = True
            except Exception:
                logger.debug("Langfuse trace %s could not be started", name, exc_info=True)

    def event(self, name: str, data: Optional[Dict[str, Any]] = None):
        """Record a structured event on the trace if Langfuse is enabled."""
        if not self.enabled:
            return
        try:
            self._span.create_event(name=name, input=data or {})
        except Exception:
            logger.debug("Langfuse event %s dropped", name, exc_info=True)

    def generation(self, name: str, prompt: str, output: str, metadata: Optional[Dict[str, Any]] = None):
        """Record a generation with input/output text and optional metadata."""
        if not self.enabled:
            return
        try:
            gen = self._span.start_generation(name=name, input=prompt, metadata=metadata or {}, model=_model_name)
            gen.update(output=output)
            gen.end()
        except Exception:
            logger.debug("Langfuse generation %s dropped", name, exc_info=True)

    def end(self, output: Optional[Dict[str, Any]] = None, error: Optional[str] = None):
        """Finalize the trace, optionally updating a final output payload.

        When error is given the trace is marked with level ERROR and the message.
        """
        if not self.enabled:
            return
        try:
            if error is not None:
                self._span.update(output=output or {}, level="ERROR", status_message=error)
            else:
                self._span.update(output=output or {})
            self._span.end()
        except Exception:
            logger.debug("Langfuse trace %s could not be closed", self.name, exc_info=True)
