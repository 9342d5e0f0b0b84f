from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from mailrelay.auth.config import AuthConfig, parse_auth_config
from mailrelay.config import MailRelayConfig, parse_mailrelay_config
from mailrelay.observability.config import ObservabilityConfig, parse_observability_config


@dataclass(frozen=True)
class RuntimeConfig:
    mailrelay: MailRelayConfig
    auth: AuthConfig
    observability: ObservabilityConfig


def load_runtime_config(*, path: Path) -> RuntimeConfig:
    try:
        import yaml
    except Exception as e:  # pragma: no cover
        raise RuntimeError(f"PyYAML dependency unavailable: {e}") from e

    doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    return RuntimeConfig(
        mailrelay=parse_mailrelay_config(doc),
        auth=parse_auth_config(doc),
        observability=parse_observability_config(doc),
    )


def validate_config_file(*, path: Path) -> None:
    _ = load_runtime_config(path=path)
