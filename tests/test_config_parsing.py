import unittest
from pathlib import Path

from mailrelay.auth.config import parse_auth_config
from mailrelay.config import parse_mailrelay_config, require_env
from mailrelay.observability.config import parse_observability_config
from mailrelay.runtime.config import load_runtime_config
from mailrelay.runtime.wiring import build_runtime


def _doc(**mailrelay_overrides):
    doc = {
        "mailrelay": {
            "vault": {"encryption_key_env": "KEY"},
            "providers": {"gmail": {"client_id_env": "GID"}},
            "relay": {"webhook_url": "https://hooks.test/x"},
        }
    }
    doc["mailrelay"].update(mailrelay_overrides)
    return doc


class TestMailRelayConfig(unittest.TestCase):
    def test_defaults_apply(self) -> None:
        cfg = parse_mailrelay_config(_doc())
        self.assertEqual(cfg.store.backend, "memory")
        self.assertEqual(cfg.vault.key_derivation, "padded")
        self.assertEqual(cfg.poll.unread_limit, 50)
        self.assertEqual(cfg.providers["gmail"].token_url, "https://oauth2.googleapis.com/token")
        self.assertEqual(cfg.relay.notification_type, "new_unread_email")

    def test_invalid_values_are_rejected(self) -> None:
        for overrides in (
            {"store": {"backend": "sqlite"}},
            {"store": {"backend": "postgres"}},
            {"vault": {"encryption_key_env": "KEY", "key_derivation": "pbkdf2"}},
            {"providers": {"yahoo": {"client_id_env": "X"}}},
            {"providers": {}},
            {"poll": {"unread_limit": 0}},
            {"poll": {"unread_limit": 501}},
            {"relay": {"source": "x"}},
        ):
            with self.assertRaises(ValueError, msg=str(overrides)):
                parse_mailrelay_config(_doc(**overrides))

    def test_require_env(self) -> None:
        self.assertEqual(require_env("A", environ={"A": "1"}), "1")
        with self.assertRaises(RuntimeError) as cm:
            require_env("A", environ={})
        self.assertIn("missing required configuration: A", str(cm.exception))

    def test_auth_and_observability_sections(self) -> None:
        with self.assertRaises(ValueError):
            parse_auth_config({"auth": {"bearer": {"mode": "oidc"}}})
        auth = parse_auth_config({"auth": {"bearer": {"mode": "shared_secret", "shared_secret_env": "S"}}})
        self.assertEqual(tuple(auth.bearer.accepted_algorithms), ("HS256",))
        self.assertEqual(auth.bearer.jwks_refresh_cooldown_seconds, 30)
        with self.assertRaises(ValueError):
            parse_auth_config(
                {"auth": {"bearer": {"mode": "shared_secret", "shared_secret_env": "S", "jwks_refresh_cooldown_seconds": -1}}}
            )
        obs = parse_observability_config({})
        self.assertFalse(obs.tracing_enabled)


class TestRuntimeWiring(unittest.TestCase):
    def test_missing_secret_fails_runtime_build(self) -> None:
        cfg = load_runtime_config(path=Path(__file__).resolve().parents[1] / "configs" / "dev.yaml")
        with self.assertRaises(RuntimeError) as cm:
            build_runtime(config=cfg, environ={})
        self.assertIn("MAILRELAY_ENCRYPTION_KEY", str(cm.exception))

    def test_dev_config_builds_with_environment(self) -> None:
        cfg = load_runtime_config(path=Path(__file__).resolve().parents[1] / "configs" / "dev.yaml")
        environ = {
            "MAILRELAY_ENCRYPTION_KEY": "k",
            "MAILRELAY_GMAIL_CLIENT_ID": "g",
            "MAILRELAY_GMAIL_CLIENT_SECRET": "gs",
            "MAILRELAY_MICROSOFT_CLIENT_ID": "m",
            "MAILRELAY_MICROSOFT_CLIENT_SECRET": "ms",
            "MAILRELAY_WEBHOOK_URL": "https://hooks.test/x",
            "MAILRELAY_BEARER_SECRET": "b",
        }
        runtime = build_runtime(config=cfg, environ=environ)
        self.assertIsNotNone(runtime.verifier)
        self.assertEqual(runtime.store.list_connections(), [])
        self.assertEqual(runtime.cipher.decrypt(runtime.cipher.encrypt("t")), "t")


if __name__ == "__main__":
    unittest.main()
