from __future__ import annotations


try:
    from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
except Exception as e:  # pragma: no cover
    raise RuntimeError("prometheus_client is required (pyproject dependencies)") from e


poll_invocations_total = Counter(
    "poll_invocations_total",
    "Unread poll invocations by outcome.",
    labelnames=("outcome",),
)

processed_records_total = Counter(
    "processed_records_total",
    "Processed-message records written by status.",
    labelnames=("status",),
)

relay_deliveries_total = Counter(
    "relay_deliveries_total",
    "Webhook relay attempts by result.",
    labelnames=("result",),
)

token_refresh_total = Counter(
    "token_refresh_total",
    "OAuth access-token refresh attempts by result.",
    labelnames=("result",),
)

stage_latency_ms = Histogram(
    "stage_latency_ms",
    "Poll stage latency in milliseconds.",
    labelnames=("stage", "status"),
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2000, 5000, 10000, 30000),
)


def observe_stage(*, stage: str, duration_ms: int, status: str) -> None:
    if duration_ms < 0:
        return
    stage_latency_ms.labels(stage=stage, status=status).observe(duration_ms)


def inc_poll(*, outcome: str) -> None:
    poll_invocations_total.labels(outcome=outcome).inc()


def inc_records(*, status: str, count: int = 1) -> None:
    if count <= 0:
        return
    processed_records_total.labels(status=status).inc(count)


def inc_relay(*, result: str) -> None:
    relay_deliveries_total.labels(result=result).inc()


def inc_token_refresh(*, result: str) -> None:
    token_refresh_total.labels(result=result).inc()


def render_prometheus() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
