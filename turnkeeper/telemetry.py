"""OpenTelemetry tracing for the Turnkeeper server.

Spans cover the slow async boundaries of a conversation:

  - ``turnkeeper.responder`` — one Responder call per accepted turn
  - ``turnkeeper.summary``   — the end-of-session summary
  - ``turnkeeper.tts``       — ``POST /api/tts`` synthesis

Spans opened through ``span()`` carry the session id, so a single
conversation can be followed in the collector. The exporter is picked by
``OTEL_EXPORTER``: ``console`` (default), ``otlp`` or ``none``.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)

from turnkeeper import __version__

logger = logging.getLogger(__name__)

_TRACER_NAME = "turnkeeper"
_initialized = False


def init_telemetry(service_name: str = "turnkeeper", exporter: Optional[str] = None) -> None:
    """Install the global TracerProvider once per process.

    Parameters
    ----------
    service_name : str
        Reported as ``service.name`` on every span.
    exporter : str, optional
        ``"otlp"`` (needs the ``otlp`` extra and ``OTEL_EXPORTER_OTLP_ENDPOINT``),
        ``"none"`` or ``"console"``. Defaults to ``OTEL_EXPORTER``.
    """
    global _initialized
    if _initialized:
        return

    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name, "service.version": __version__})
    )
    exporter_type = (exporter or os.environ.get("OTEL_EXPORTER", "console")).lower()

    if exporter_type == "otlp":
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning("[Telemetry] OTLP exporter not installed — spans go to the console.")
            exporter_type = "console"
        else:
            endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "http://localhost:4317")
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
            logger.info("[Telemetry] Shipping spans to %s", endpoint)

    if exporter_type == "console":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("[Telemetry] Printing spans to stdout.")
    elif exporter_type == "none":
        logger.info("[Telemetry] Span export disabled.")

    trace.set_tracer_provider(provider)
    _initialized = True


def get_tracer() -> trace.Tracer:
    """Return the Turnkeeper tracer (safe to call before ``init_telemetry``)."""
    return trace.get_tracer(_TRACER_NAME)


@contextmanager
def span(name: str, session_id: str = "", **attributes: Any) -> Iterator[trace.Span]:
    """Open *name* as the current span, tagged with the session id.

    ``None`` attribute values are dropped. An exception escaping the block is
    recorded on the span and re-raised.
    """
    attrs = {key: value for key, value in attributes.items() if value is not None}
    if session_id:
        attrs["session.id"] = session_id
    with get_tracer().start_as_current_span(name, attributes=attrs) as current:
        yield current
