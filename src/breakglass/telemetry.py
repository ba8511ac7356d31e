"""OpenTelemetry integration and the monitoring hook used by every component.

OTel packages are optional extras: when the `telemetry` extra is not installed
(or telemetry is disabled in config) `span()` still records tags locally so
callers and tests can inspect them, it just has nowhere to export them.
"""

from __future__ import annotations

import logging
from collections import deque
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator

if TYPE_CHECKING:
    from breakglass.config import Config

logger = logging.getLogger("breakglass.telemetry")

_tracer = None


def setup_telemetry(config: "Config") -> None:
    """Initialize the OTel tracer provider from config.

    No-op when telemetry.enabled is False or OTel packages are not installed.
    """
    global _tracer

    if not config.telemetry.enabled:
        return

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logger.warning(
            "opentelemetry packages not installed; telemetry disabled. "
            "Install with: pip install 'breakglass-cache[telemetry]'"
        )
        return

    provider = TracerProvider()

    if config.telemetry.otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=config.telemetry.otlp_endpoint))
            )
        except ImportError:
            logger.warning(
                "OTLP exporter not installed; traces will not be exported. "
                "Install with: pip install 'breakglass-cache[telemetry]'"
            )

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(config.telemetry.service_name)


def get_tracer():
    """Return the configured tracer, or None if telemetry is disabled."""
    return _tracer


class SpanRecorder:
    """Collects tags for one monitored operation and mirrors them to an OTel span."""

    def __init__(self, name: str, otel_span: Any = None) -> None:
        self.name = name
        self.tags: dict[str, Any] = {}
        self._otel_span = otel_span

    def set_tag(self, key: str, value: Any) -> None:
        self.tags[key] = value
        if self._otel_span is not None:
            # OTel attributes only accept primitives
            if not isinstance(value, (str, bool, int, float)):
                value = str(value)
            self._otel_span.set_attribute(key, value)

    def set_tags(self, **tags: Any) -> None:
        for key, value in tags.items():
            self.set_tag(key, value)


# Most recent finished spans, newest last.
_recent: deque[SpanRecorder] = deque(maxlen=256)


@contextmanager
def span(name: str, **tags: Any) -> Iterator[SpanRecorder]:
    """Open a monitored span. Exceptions propagate unchanged."""
    tracer = get_tracer()
    if tracer is None:
        recorder = SpanRecorder(name)
        recorder.set_tags(**tags)
        try:
            yield recorder
        finally:
            _remember(recorder)
        return

    with tracer.start_as_current_span(name) as otel_span:
        recorder = SpanRecorder(name, otel_span)
        recorder.set_tags(**tags)
        try:
            yield recorder
        finally:
            _remember(recorder)


def _remember(recorder: SpanRecorder) -> None:
    _recent.append(recorder)


def recent_spans(name: str | None = None) -> list[SpanRecorder]:
    """Return recently finished spans, optionally filtered by name."""
    if name is None:
        return list(_recent)
    return [s for s in _recent if s.name == name]


def clear_recent_spans() -> None:
    _recent.clear()
