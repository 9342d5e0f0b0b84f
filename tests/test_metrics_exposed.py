import dataclasses
import unittest
import urllib.error
import urllib.request
from pathlib import Path

from mailrelay.api.app import ApiContext, LazyRuntime
from mailrelay.observability.metrics import render_prometheus
from mailrelay.runtime.config import load_runtime_config
from mailrelay.runtime.wiring import MailRelayRuntime
from tests.api_test_server import run_api_server
from tests.fakes import Harness, gmail_message, route_gmail


class TestMetricsExposed(unittest.TestCase):
    def setUp(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]
        self.config = load_runtime_config(path=repo_root / "configs" / "dev.yaml")

    def test_api_metrics_endpoint_exposes_pipeline_metrics(self) -> None:
        h = Harness()
        conn = h.connect()
        h.mark_initialized()
        route_gmail(h.http, unread=["m1"], messages={"m1": gmail_message("m1")})
        h.runner.run_once(connection=conn)

        runtime = MailRelayRuntime(config=self.config, store=h.store, cipher=h.cipher, runner=h.runner, verifier=None)
        ctx = ApiContext(config=self.config, runtime=LazyRuntime(lambda: runtime))
        with run_api_server(ctx=ctx) as base_url:
            with urllib.request.urlopen(base_url + "/metrics", timeout=3) as resp:
                body = resp.read().decode("utf-8", errors="replace")

        for name in (
            "poll_invocations_total",
            "processed_records_total",
            "relay_deliveries_total",
            "token_refresh_total",
            "stage_latency_ms",
        ):
            self.assertIn(name, body)
        self.assertIn('poll_invocations_total{outcome="relayed"}', body)
        self.assertIn('relay_deliveries_total{result="delivered"}', body)

    def test_metrics_endpoint_disabled_by_config(self) -> None:
        obs = dataclasses.replace(self.config.observability, metrics_enabled=False)
        config = dataclasses.replace(self.config, observability=obs)
        ctx = ApiContext(config=config, runtime=LazyRuntime(lambda: None))

        with run_api_server(ctx=ctx) as base_url:
            with self.assertRaises(urllib.error.HTTPError) as cm:
                urllib.request.urlopen(base_url + "/metrics", timeout=3)
            cm.exception.close()
        self.assertEqual(cm.exception.code, 404)

    def test_render_prometheus_content_type(self) -> None:
        payload, content_type = render_prometheus()
        self.assertIn("text/plain", content_type)
        self.assertIn(b"stage_latency_ms", payload)


if __name__ == "__main__":
    unittest.main()
