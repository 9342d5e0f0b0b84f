from __future__ import annotations

import argparse
import os
import time
from typing import Callable, Optional

from mailrelay.observability import tracing
from mailrelay.pipeline.unread_poll import PollOutcome, UnreadPollRunner
from mailrelay.runtime.config import load_runtime_config
from mailrelay.runtime.paths import resolve_config_path
from mailrelay.runtime.wiring import build_runtime


def poll_all_connections(
    *,
    store,
    runner: UnreadPollRunner,
    on_error: Optional[Callable[[object, Exception], None]] = None,
) -> list[PollOutcome]:
    """Run one invocation per linked mailbox; a failing mailbox never stops the others."""

    outcomes: list[PollOutcome] = []
    for connection in store.list_connections():
        try:
            outcomes.append(runner.run_once(connection=connection))
        except Exception as e:
            if on_error is not None:
                on_error(connection, e)
    return outcomes


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="mailrelay-scheduler")
    parser.add_argument("--config", default="configs/dev.yaml", help="Config file (repo-relative unless absolute).")
    parser.add_argument("--dry-run", action="store_true", help="Validate config and exit.")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit.")
    args = parser.parse_args(argv)

    cfg_path = resolve_config_path(args.config)
    config = load_runtime_config(path=cfg_path)

    if args.dry_run:
        print("MAILRELAY_SCHEDULER_DRY_RUN_OK")
        return 0

    tracing.init_tracing(enabled=config.observability.tracing_enabled, service_name="mailrelay-scheduler")
    if config.observability.metrics_enabled:
        try:
            from prometheus_client import start_http_server

            host = os.environ.get("MAILRELAY_METRICS_HOST", "0.0.0.0")
            port = int(os.environ.get("MAILRELAY_SCHEDULER_METRICS_PORT", "9100"))
            start_http_server(port, addr=host)
            print(f"MAILRELAY_SCHEDULER_METRICS_OK: http://{host}:{port}/metrics")
        except Exception as e:
            print(f"MAILRELAY_SCHEDULER_METRICS_FAILED: {e}")
            return 60

    try:
        runtime = build_runtime(config=config, with_verifier=False)
    except (RuntimeError, ValueError) as e:
        print(f"MAILRELAY_SCHEDULER_FAILED: {e}")
        return 2

    def _report(connection, error: Exception) -> None:
        print(f"MAILRELAY_POLL_FAILED: {connection.mailbox_address}: {type(error).__name__}")

    interval = config.mailrelay.poll.interval_seconds
    while True:
        poll_all_connections(store=runtime.store, runner=runtime.runner, on_error=_report)
        if args.once:
            return 0
        time.sleep(interval)


if __name__ == "__main__":
    raise SystemExit(main())
