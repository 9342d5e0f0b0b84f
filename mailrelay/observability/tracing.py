from __future__ import annotations

import hashlib
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Mapping, MutableMapping, Optional


try:
    from opentelemetry import propagate, trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.trace import NonRecordingSpan, Span, SpanContext, SpanKind, TraceFlags, TraceState
except Exception as e:  # pragma: no cover
    raise RuntimeError("opentelemetry-sdk is required (pyproject dependencies)") from e


TRACER_NAME = "mailrelay"

_provider_installed = False


@dataclass(frozen=True)
class TraceIds:
    trace_id_hex: str
    span_id_hex: str


def init_tracing(*, enabled: bool, service_name: str) -> None:
    """Install the SDK tracer provider once per process; a disabled call never uninstalls it."""

    global _provider_installed
    if not enabled or _provider_installed:
        return
    trace.set_tracer_provider(TracerProvider(resource=Resource.create({"service.name": service_name})))
    _provider_installed = True


def extract_context_from_headers(headers: Mapping[str, str]) -> Any:
    # W3C propagator field names are lower-case.
    return propagate.extract({str(k).lower(): str(v) for k, v in headers.items()})


def inject_context_into_headers(headers: MutableMapping[str, str]) -> None:
    propagate.inject(headers)


def _digest_int(key: str, *, nbytes: int) -> int:
    value = int.from_bytes(hashlib.sha256(key.encode("utf-8")).digest()[:nbytes], byteorder="big")
    return value or 1


def context_for_run_id(*, run_id: str) -> Any:
    """Deterministic remote parent so every span of one poll run shares a trace id."""

    parent = SpanContext(
        trace_id=_digest_int(f"mailrelay:run:{run_id}", nbytes=16),
        span_id=_digest_int(f"mailrelay:run_span:{run_id}", nbytes=8),
        is_remote=True,
        trace_flags=TraceFlags(TraceFlags.SAMPLED),
        trace_state=TraceState(),
    )
    return trace.set_span_in_context(NonRecordingSpan(parent))


def current_trace_ids() -> Optional[TraceIds]:
    sc = trace.get_current_span().get_span_context()
    if sc is None or not sc.is_valid:
        return None
    return TraceIds(trace_id_hex=f"{int(sc.trace_id):032x}", span_id_hex=f"{int(sc.span_id):016x}")


@contextmanager
def _span(name: str, *, context: Any, kind: SpanKind, attributes: Mapping[str, Any]) -> Iterator[Span]:
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(name, context=context, kind=kind) as span:
        for k, v in attributes.items():
            if v is not None:
                span.set_attribute(k, v)
        yield span


def request_span(*, method: str, path: str, headers: Mapping[str, str]):
    """Server span for one inbound HTTP request, parented on any `traceparent` it carries."""

    return _span(
        f"{method} {path}",
        context=extract_context_from_headers(headers),
        kind=SpanKind.SERVER,
        attributes={"http.request.method": method, "url.path": path},
    )


def poll_span(*, run_id: str, provider: str, mailbox_address: str, parent_context: Any = None):
    """Root span of one poll invocation.

    Without an explicit parent or an active span (scheduler runs), the span hangs off the
    run-id derived context so the whole run is addressable by its run id.
    """

    if parent_context is None and current_trace_ids() is None:
        parent_context = context_for_run_id(run_id=run_id)
    _, _, domain = mailbox_address.rpartition("@")
    return _span(
        "mailrelay.poll",
        context=parent_context,
        kind=SpanKind.INTERNAL,
        attributes={
            "mailrelay.run_id": run_id,
            "mailrelay.provider": provider,
            "mailrelay.mailbox_domain": domain.lower() or None,
        },
    )


def stage_span(stage: str, *, message_id: Optional[str] = None):
    return _span(
        f"mailrelay.{stage.lower()}",
        context=None,
        kind=SpanKind.INTERNAL,
        attributes={"mailrelay.stage": stage, "mailrelay.message_id": message_id},
    )
