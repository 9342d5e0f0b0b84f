from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from mailrelay.auth.bearer import BearerVerifier
from mailrelay.config import MailRelayConfig, VaultConfig, require_env
from mailrelay.observability.event_log import FileEventLogger, PollEventSink
from mailrelay.pipeline.dedup_ledger import DedupLedger
from mailrelay.pipeline.initialization_gate import InitializationGate
from mailrelay.pipeline.unread_poll import UnreadPollRunner
from mailrelay.providers.adapter import PROVIDER_GMAIL, PROVIDER_MICROSOFT, MailProviderAdapter
from mailrelay.providers.gmail_adapter import GmailAdapter
from mailrelay.providers.m365_graph_adapter import M365GraphAdapter
from mailrelay.relay.dispatcher import RelayConfig, RelayDispatcher
from mailrelay.runtime.config import RuntimeConfig
from mailrelay.store.ingestion_store import InMemoryIngestionStore
from mailrelay.store.postgres_store import PostgresIngestionStore, PostgresIngestionStoreConfig
from mailrelay.transport.http import HttpCall, urllib_http_call
from mailrelay.vault.credential_vault import CredentialVault
from mailrelay.vault.oauth_refresh import OAuthRefreshClient
from mailrelay.vault.token_cipher import TokenCipher, derive_key


@dataclass(frozen=True)
class MailRelayRuntime:
    config: RuntimeConfig
    store: Any
    cipher: TokenCipher
    runner: UnreadPollRunner
    verifier: Optional[BearerVerifier]


def build_store(*, config: MailRelayConfig, environ: Optional[Mapping[str, str]] = None):
    if config.store.backend == "postgres":
        dsn = require_env(str(config.store.postgres_dsn_env), environ=environ)
        return PostgresIngestionStore(config=PostgresIngestionStoreConfig(dsn=dsn))
    return InMemoryIngestionStore()


def build_cipher(*, vault: VaultConfig, environ: Optional[Mapping[str, str]] = None) -> TokenCipher:
    secret = require_env(vault.encryption_key_env, environ=environ)
    key = derive_key(
        secret=secret,
        key_derivation=vault.key_derivation,
        pbkdf2_salt=vault.pbkdf2_salt or "",
        pbkdf2_iterations=vault.pbkdf2_iterations,
    )
    return TokenCipher(key=key)


def build_refreshers(
    *,
    config: MailRelayConfig,
    environ: Optional[Mapping[str, str]] = None,
    http_call: HttpCall = urllib_http_call,
) -> dict[str, OAuthRefreshClient]:
    out: dict[str, OAuthRefreshClient] = {}
    for name, p in config.providers.items():
        client_secret = None
        if p.client_secret_env is not None:
            client_secret = require_env(p.client_secret_env, environ=environ)
        out[name] = OAuthRefreshClient(
            token_url=p.token_url,
            client_id=require_env(p.client_id_env, environ=environ),
            client_secret=client_secret,
            scope=p.scope,
            timeout_seconds=config.poll.http_timeout_seconds,
            http_call=http_call,
        )
    return out


def build_adapters(*, config: MailRelayConfig, http_call: HttpCall = urllib_http_call) -> dict[str, MailProviderAdapter]:
    out: dict[str, MailProviderAdapter] = {}
    timeout = config.poll.http_timeout_seconds
    for name, p in config.providers.items():
        if name == PROVIDER_GMAIL:
            out[name] = GmailAdapter(base_url=p.api_base_url, timeout_seconds=timeout, http_call=http_call)
        elif name == PROVIDER_MICROSOFT:
            out[name] = M365GraphAdapter(base_url=p.api_base_url, timeout_seconds=timeout, http_call=http_call)
    return out


def build_runtime(
    *,
    config: RuntimeConfig,
    environ: Optional[Mapping[str, str]] = None,
    http_call: HttpCall = urllib_http_call,
    store: Any = None,
    with_verifier: bool = True,
) -> MailRelayRuntime:
    """Resolve secrets from the environment and assemble the poll pipeline.

    Raises RuntimeError("missing required configuration: ...") when a referenced secret is unset.
    """

    mr = config.mailrelay
    store = store if store is not None else build_store(config=mr, environ=environ)
    cipher = build_cipher(vault=mr.vault, environ=environ)

    vault = CredentialVault(
        cipher=cipher,
        store=store,
        refreshers=build_refreshers(config=mr, environ=environ, http_call=http_call),
        default_lifetime_seconds=mr.vault.default_token_lifetime_seconds,
    )
    ledger = DedupLedger(store=store)
    dispatcher = RelayDispatcher(
        config=RelayConfig(
            webhook_url=mr.relay.resolve_webhook_url(environ=environ),
            source=mr.relay.source,
            notification_type=mr.relay.notification_type,
            user_agent=mr.relay.user_agent,
            timeout_seconds=mr.relay.timeout_seconds,
        ),
        store=store,
        ledger=ledger,
        http_call=http_call,
    )

    event_sink: Optional[PollEventSink] = None
    if config.observability.event_log_dir is not None:
        event_sink = FileEventLogger(base_dir=Path(config.observability.event_log_dir))

    runner = UnreadPollRunner(
        vault=vault,
        adapters=build_adapters(config=mr, http_call=http_call),
        gate=InitializationGate(store=store),
        ledger=ledger,
        dispatcher=dispatcher,
        unread_limit=mr.poll.unread_limit,
        event_sink=event_sink,
    )

    verifier = None
    if with_verifier:
        bearer = config.auth.bearer
        shared_secret = None
        if bearer.mode == "shared_secret":
            shared_secret = require_env(str(bearer.shared_secret_env), environ=environ)
        verifier = BearerVerifier(config=bearer, shared_secret=shared_secret, http_call=http_call)

    return MailRelayRuntime(config=config, store=store, cipher=cipher, runner=runner, verifier=verifier)
