"""OpenTelemetry tracing helpers for the verification pipeline.

Every retrieval stage opens one span through :func:`stage_span`:

- ``hybrid-search``        : one fusion call (both index lookups)
- ``rerank``               : one reranker call
- ``adaptive-retrieval``   : the whole attempt loop for one query
- ``multihop-retrieval``   : hop 1 plus the optional hop 2
- ``evidence-resolve``     : parent-context resolution
- ``verdict``              : verdict synthesis
- ``verification-pipeline``: parent span of a full `verify` call

Usage without a backend (development / testing):

    from rag_verifier.tracing import configure_tracing

    configure_tracing()   # uses ConsoleSpanExporter by default
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor, SpanExporter

# ---------------------------------------------------------------------------
# Attribute names
# ---------------------------------------------------------------------------

ATTR_INPUT_VALUE = "input.value"
ATTR_OUTPUT_VALUE = "output.value"
ATTR_RETRIEVAL_DOCUMENTS = "retrieval.documents"
ATTR_RETRIEVAL_ATTEMPTS = "retrieval.attempts"
ATTR_RETRIEVAL_STATUS = "retrieval.status"
ATTR_RETRIEVAL_CONFIDENCE = "retrieval.confidence"
ATTR_RETRIEVAL_HOPS = "retrieval.hops"
ATTR_VERDICT_LABEL = "verdict.label"
ATTR_VERDICT_RISK_FLAGS = "verdict.risk_flags"

# ---------------------------------------------------------------------------
# Provider lifecycle helpers
# ---------------------------------------------------------------------------

_provider: TracerProvider | None = None


def configure_tracing(
    endpoint: str | None = None,
    service_name: str = "rag-verifier",
    exporter: SpanExporter | None = None,
) -> TracerProvider:
    """Create and register a global TracerProvider.

    Args:
        endpoint: OTLP HTTP endpoint URL to send traces to. When *None* and no
            custom *exporter* is given, spans are printed to stdout via
            :class:`~opentelemetry.sdk.trace.export.ConsoleSpanExporter`.
        service_name: Label identifying this service in the tracing backend.
        exporter: An already-constructed span exporter, e.g. an
            ``InMemorySpanExporter`` in tests. When provided, *endpoint* is
            ignored.

    Returns:
        The configured provider, also set as the global OTel provider.
    """
    global _provider

    provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: service_name}))

    if exporter is not None:
        chosen_exporter: SpanExporter = exporter
    elif endpoint is not None:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        except ImportError as exc:  # pragma: no cover
            raise ImportError(
                "opentelemetry-exporter-otlp-proto-http is required to export "
                "traces to an OTLP endpoint. Install the `otlp` extra."
            ) from exc
        chosen_exporter = OTLPSpanExporter(endpoint=endpoint)
    else:
        chosen_exporter = ConsoleSpanExporter()

    provider.add_span_processor(SimpleSpanProcessor(chosen_exporter))
    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def get_tracer(name: str) -> trace.Tracer:
    """Return a tracer from the most recently configured provider.

    Falls back to the global (no-op unless configured) provider when
    :func:`configure_tracing` has not been called.
    """
    if _provider is not None:
        return _provider.get_tracer(name)
    return trace.get_tracer(name)


@contextmanager
def stage_span(name: str, tracer_name: str = "rag_verifier", **attributes) -> Iterator[trace.Span]:
    """Open a span for one pipeline stage.

    The span is marked OK when the block completes and ERROR, with the
    exception recorded, when it raises. `None` attribute values are skipped.
    """
    tracer = get_tracer(tracer_name)
    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.set_status(trace.StatusCode.ERROR, str(exc))
            span.record_exception(exc)
            raise
        span.set_status(trace.StatusCode.OK)
