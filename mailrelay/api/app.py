from __future__ import annotations

import argparse
import json
import threading
from dataclasses import dataclass
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlparse

from mailrelay.auth.bearer import BearerAuthError, bearer_token_from_headers
from mailrelay.observability import tracing
from mailrelay.observability.metrics import render_prometheus
from mailrelay.runtime.config import RuntimeConfig, load_runtime_config
from mailrelay.runtime.health import ok
from mailrelay.runtime.paths import resolve_config_path
from mailrelay.runtime.wiring import MailRelayRuntime, build_runtime
from mailrelay.vault.oauth_refresh import RefreshError
from mailrelay.vault.token_cipher import DecryptionError


class LazyRuntime:
    """Builds the runtime on first use; configuration errors surface per request."""

    def __init__(self, factory: Callable[[], MailRelayRuntime]) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._runtime: Optional[MailRelayRuntime] = None

    def get(self) -> MailRelayRuntime:
        with self._lock:
            if self._runtime is None:
                self._runtime = self._factory()
            return self._runtime


@dataclass(frozen=True)
class ApiContext:
    config: RuntimeConfig
    runtime: LazyRuntime


def _first_param(query: dict[str, list[str]], *names: str) -> Optional[str]:
    for name in names:
        values = query.get(name) or []
        for v in values:
            if v.strip():
                return v.strip()
    return None


def _make_handler(ctx: ApiContext):
    class Handler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
            return

        def _send_json(self, *, status: int, obj: Any) -> None:
            payload = json.dumps(obj, ensure_ascii=False).encode("utf-8")
            self.send_response(int(status))
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Content-Length", str(len(payload)))
            ids = tracing.current_trace_ids()
            if ids is not None:
                self.send_header("X-Trace-Id", ids.trace_id_hex)
                self.send_header("X-Span-Id", ids.span_id_hex)
            self.end_headers()
            self.wfile.write(payload)

        def _send_bytes(self, *, status: int, payload: bytes, content_type: str) -> None:
            self.send_response(int(status))
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def _handle(self) -> None:
            parsed = urlparse(self.path)
            path = parsed.path

            if path in ("/healthz", "/readyz"):
                self._send_json(status=HTTPStatus.OK, obj=ok(component="mailrelay-api").to_dict())
                return

            if path == "/metrics":
                if not ctx.config.observability.metrics_enabled:
                    self._send_json(status=HTTPStatus.NOT_FOUND, obj={"error": "NOT_FOUND"})
                    return
                payload, content_type = render_prometheus()
                self._send_bytes(status=HTTPStatus.OK, payload=payload, content_type=content_type)
                return

            if path == "/poll":
                self._poll(query=parse_qs(parsed.query, keep_blank_values=True))
                return

            self._send_json(status=HTTPStatus.NOT_FOUND, obj={"error": "NOT_FOUND"})

        def _poll(self, *, query: dict[str, list[str]]) -> None:
            try:
                runtime = ctx.runtime.get()
            except Exception:
                self._send_json(status=HTTPStatus.INTERNAL_SERVER_ERROR, obj={"error": "INTERNAL_ERROR"})
                return

            token = bearer_token_from_headers(dict(self.headers.items()))
            if token is None or runtime.verifier is None:
                self._send_json(status=HTTPStatus.UNAUTHORIZED, obj={"error": "UNAUTHORIZED"})
                return
            try:
                caller = runtime.verifier.verify(token=token)
            except BearerAuthError:
                self._send_json(status=HTTPStatus.UNAUTHORIZED, obj={"error": "UNAUTHORIZED"})
                return

            mailbox = _first_param(query, "mailbox", "email")
            if mailbox is None:
                self._send_json(status=HTTPStatus.BAD_REQUEST, obj={"error": "MISSING_MAILBOX"})
                return
            provider = _first_param(query, "provider")

            try:
                connections = runtime.store.find_connections(mailbox_address=mailbox)
                if provider is not None:
                    connections = [c for c in connections if c.provider == provider]
                if not connections:
                    self._send_json(status=HTTPStatus.NOT_FOUND, obj={"error": "CONNECTION_NOT_FOUND"})
                    return
                owned = [c for c in connections if c.user_id == caller.actor_id]
                if not owned:
                    self._send_json(status=HTTPStatus.UNAUTHORIZED, obj={"error": "MAILBOX_NOT_OWNED"})
                    return
                if len(owned) > 1:
                    self._send_json(
                        status=HTTPStatus.BAD_REQUEST,
                        obj={"error": "PROVIDER_REQUIRED", "providers": sorted(c.provider for c in owned)},
                    )
                    return

                outcome = runtime.runner.run_once(connection=owned[0])
            except RefreshError:
                self._send_json(
                    status=HTTPStatus.UNAUTHORIZED, obj={"error": "MAILBOX_CREDENTIAL_REFRESH_FAILED"}
                )
                return
            except DecryptionError:
                self._send_json(
                    status=HTTPStatus.INTERNAL_SERVER_ERROR, obj={"error": "CREDENTIAL_DECRYPTION_FAILED"}
                )
                return
            except Exception:
                self._send_json(status=HTTPStatus.INTERNAL_SERVER_ERROR, obj={"error": "INTERNAL_ERROR"})
                return

            self._send_json(status=HTTPStatus.OK, obj=outcome.to_dict())

        def _traced(self) -> None:
            with tracing.request_span(
                method=self.command, path=urlparse(self.path).path, headers=dict(self.headers.items())
            ):
                self._handle()

        def do_GET(self) -> None:  # noqa: N802 (BaseHTTPRequestHandler API)
            self._traced()

        def do_POST(self) -> None:  # noqa: N802 (BaseHTTPRequestHandler API)
            self._traced()

    return Handler


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="mailrelay-api")
    parser.add_argument("--config", default="configs/dev.yaml", help="Config file (repo-relative unless absolute).")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", default=8080, type=int)
    parser.add_argument("--dry-run", action="store_true", help="Validate config and exit.")
    args = parser.parse_args(argv)

    cfg_path: Path = resolve_config_path(args.config)
    config = load_runtime_config(path=cfg_path)

    if args.dry_run:
        print("MAILRELAY_API_DRY_RUN_OK")
        return 0

    tracing.init_tracing(enabled=config.observability.tracing_enabled, service_name="mailrelay-api")
    ctx = ApiContext(config=config, runtime=LazyRuntime(lambda: build_runtime(config=config)))

    server = ThreadingHTTPServer((str(args.host), int(args.port)), _make_handler(ctx))
    try:
        server.serve_forever(poll_interval=0.5)
    except KeyboardInterrupt:
        return 0
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
