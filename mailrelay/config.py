from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from mailrelay.providers.adapter import PROVIDER_GMAIL, PROVIDER_MICROSOFT, PROVIDERS
from mailrelay.vault.token_cipher import KEY_DERIVATIONS


STORE_BACKENDS = ("memory", "postgres")

_PROVIDER_DEFAULTS: dict[str, dict[str, Optional[str]]] = {
    PROVIDER_GMAIL: {
        "api_base_url": "https://gmail.googleapis.com/gmail/v1",
        "token_url": "https://oauth2.googleapis.com/token",
        "scope": None,
    },
    PROVIDER_MICROSOFT: {
        "api_base_url": "https://graph.microsoft.com/v1.0",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "scope": "https://graph.microsoft.com/.default offline_access",
    },
}


def _require_dict(obj: Any, *, path: str) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise ValueError(f"{path} must be a mapping")
    return obj


def _require_str(obj: Any, *, path: str) -> str:
    if not isinstance(obj, str) or not obj:
        raise ValueError(f"{path} must be a non-empty string")
    return obj


def _require_optional_str(obj: Any, *, path: str) -> Optional[str]:
    if obj is None:
        return None
    if not isinstance(obj, str) or not obj:
        raise ValueError(f"{path} must be a non-empty string or null")
    return obj


def _require_int(obj: Any, *, path: str) -> int:
    if not isinstance(obj, int) or isinstance(obj, bool):
        raise ValueError(f"{path} must be an integer")
    return int(obj)


def _require_positive_number(obj: Any, *, path: str) -> float:
    if isinstance(obj, bool) or not isinstance(obj, (int, float)) or obj <= 0:
        raise ValueError(f"{path} must be a number > 0")
    return float(obj)


def require_env(name: str, *, environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    value = env.get(name)
    if not value:
        raise RuntimeError(f"missing required configuration: {name}")
    return value


@dataclass(frozen=True)
class StoreConfig:
    backend: str
    postgres_dsn_env: Optional[str]


@dataclass(frozen=True)
class VaultConfig:
    encryption_key_env: str
    key_derivation: str
    pbkdf2_salt: Optional[str]
    pbkdf2_iterations: int
    default_token_lifetime_seconds: int


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    api_base_url: str
    token_url: str
    client_id_env: str
    client_secret_env: Optional[str]
    scope: Optional[str]


@dataclass(frozen=True)
class PollConfig:
    unread_limit: int
    http_timeout_seconds: float
    interval_seconds: int


@dataclass(frozen=True)
class RelaySettings:
    webhook_url: Optional[str]
    webhook_url_env: Optional[str]
    source: str
    notification_type: str
    user_agent: str
    timeout_seconds: float

    def resolve_webhook_url(self, *, environ: Optional[Mapping[str, str]] = None) -> str:
        if self.webhook_url:
            return self.webhook_url
        return require_env(str(self.webhook_url_env), environ=environ)


@dataclass(frozen=True)
class MailRelayConfig:
    store: StoreConfig
    vault: VaultConfig
    providers: dict[str, ProviderConfig]
    poll: PollConfig
    relay: RelaySettings


def _parse_store(obj: Any) -> StoreConfig:
    store = _require_dict(obj or {}, path="mailrelay.store")
    backend = _require_str(store.get("backend", "memory"), path="mailrelay.store.backend")
    if backend not in STORE_BACKENDS:
        raise ValueError(f"mailrelay.store.backend must be one of: {', '.join(STORE_BACKENDS)}")
    dsn_env = _require_optional_str(store.get("postgres_dsn_env"), path="mailrelay.store.postgres_dsn_env")
    if backend == "postgres" and dsn_env is None:
        raise ValueError("mailrelay.store.backend=postgres requires mailrelay.store.postgres_dsn_env")
    return StoreConfig(backend=backend, postgres_dsn_env=dsn_env)


def _parse_vault(obj: Any) -> VaultConfig:
    vault = _require_dict(obj, path="mailrelay.vault")
    key_derivation = _require_str(vault.get("key_derivation", "padded"), path="mailrelay.vault.key_derivation")
    if key_derivation not in KEY_DERIVATIONS:
        raise ValueError(f"mailrelay.vault.key_derivation must be one of: {', '.join(KEY_DERIVATIONS)}")
    salt = _require_optional_str(vault.get("pbkdf2_salt"), path="mailrelay.vault.pbkdf2_salt")
    if key_derivation == "pbkdf2" and salt is None:
        raise ValueError("mailrelay.vault.key_derivation=pbkdf2 requires mailrelay.vault.pbkdf2_salt")
    iterations = _require_int(vault.get("pbkdf2_iterations", 100_000), path="mailrelay.vault.pbkdf2_iterations")
    if iterations <= 0:
        raise ValueError("mailrelay.vault.pbkdf2_iterations must be > 0")
    lifetime = _require_int(
        vault.get("default_token_lifetime_seconds", 3600),
        path="mailrelay.vault.default_token_lifetime_seconds",
    )
    if lifetime <= 0:
        raise ValueError("mailrelay.vault.default_token_lifetime_seconds must be > 0")
    return VaultConfig(
        encryption_key_env=_require_str(vault.get("encryption_key_env"), path="mailrelay.vault.encryption_key_env"),
        key_derivation=key_derivation,
        pbkdf2_salt=salt,
        pbkdf2_iterations=iterations,
        default_token_lifetime_seconds=lifetime,
    )


def _parse_providers(obj: Any) -> dict[str, ProviderConfig]:
    providers = _require_dict(obj, path="mailrelay.providers")
    if not providers:
        raise ValueError("mailrelay.providers must configure at least one provider")
    out: dict[str, ProviderConfig] = {}
    for name, raw in providers.items():
        if name not in PROVIDERS:
            raise ValueError(f"mailrelay.providers.{name} is not a supported provider")
        p = _require_dict(raw, path=f"mailrelay.providers.{name}")
        defaults = _PROVIDER_DEFAULTS[name]
        out[name] = ProviderConfig(
            name=name,
            api_base_url=_require_str(
                p.get("api_base_url", defaults["api_base_url"]), path=f"mailrelay.providers.{name}.api_base_url"
            ),
            token_url=_require_str(
                p.get("token_url", defaults["token_url"]), path=f"mailrelay.providers.{name}.token_url"
            ),
            client_id_env=_require_str(p.get("client_id_env"), path=f"mailrelay.providers.{name}.client_id_env"),
            client_secret_env=_require_optional_str(
                p.get("client_secret_env"), path=f"mailrelay.providers.{name}.client_secret_env"
            ),
            scope=_require_optional_str(p.get("scope", defaults["scope"]), path=f"mailrelay.providers.{name}.scope"),
        )
    return out


def _parse_poll(obj: Any) -> PollConfig:
    poll = _require_dict(obj or {}, path="mailrelay.poll")
    unread_limit = _require_int(poll.get("unread_limit", 50), path="mailrelay.poll.unread_limit")
    if unread_limit <= 0 or unread_limit > 500:
        raise ValueError("mailrelay.poll.unread_limit must be between 1 and 500")
    interval = _require_int(poll.get("interval_seconds", 60), path="mailrelay.poll.interval_seconds")
    if interval <= 0:
        raise ValueError("mailrelay.poll.interval_seconds must be > 0")
    return PollConfig(
        unread_limit=unread_limit,
        http_timeout_seconds=_require_positive_number(
            poll.get("http_timeout_seconds", 15), path="mailrelay.poll.http_timeout_seconds"
        ),
        interval_seconds=interval,
    )


def _parse_relay(obj: Any) -> RelaySettings:
    relay = _require_dict(obj, path="mailrelay.relay")
    webhook_url = _require_optional_str(relay.get("webhook_url"), path="mailrelay.relay.webhook_url")
    webhook_url_env = _require_optional_str(relay.get("webhook_url_env"), path="mailrelay.relay.webhook_url_env")
    if webhook_url is None and webhook_url_env is None:
        raise ValueError("mailrelay.relay requires webhook_url or webhook_url_env")
    return RelaySettings(
        webhook_url=webhook_url,
        webhook_url_env=webhook_url_env,
        source=_require_str(relay.get("source", "mailrelay"), path="mailrelay.relay.source"),
        notification_type=_require_str(
            relay.get("notification_type", "new_unread_email"), path="mailrelay.relay.notification_type"
        ),
        user_agent=_require_str(relay.get("user_agent", "mailrelay/1.0"), path="mailrelay.relay.user_agent"),
        timeout_seconds=_require_positive_number(
            relay.get("timeout_seconds", 15), path="mailrelay.relay.timeout_seconds"
        ),
    )


def parse_mailrelay_config(doc: Any) -> MailRelayConfig:
    doc = _require_dict(doc, path="config")
    section = _require_dict(doc.get("mailrelay"), path="mailrelay")
    return MailRelayConfig(
        store=_parse_store(section.get("store")),
        vault=_parse_vault(section.get("vault")),
        providers=_parse_providers(section.get("providers")),
        poll=_parse_poll(section.get("poll")),
        relay=_parse_relay(section.get("relay")),
    )


def load_mailrelay_config(*, path: Path) -> MailRelayConfig:
    try:
        import yaml
    except Exception as e:  # pragma: no cover
        raise RuntimeError(f"PyYAML dependency unavailable: {e}") from e

    return parse_mailrelay_config(yaml.safe_load(path.read_text(encoding="utf-8")))
