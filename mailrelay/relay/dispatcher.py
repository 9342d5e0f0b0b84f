from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

from mailrelay.normalize.normalized_event import NormalizedEvent, extract_email_address
from mailrelay.observability.metrics import inc_relay
from mailrelay.observability.tracing import inject_context_into_headers
from mailrelay.pipeline.dedup_ledger import DedupLedger
from mailrelay.relay.event_contract import validate_relay_event
from mailrelay.store.models import (
    STATUS_ERROR,
    STATUS_SENT,
    UNKNOWN,
    UNKNOWN_TENANT_NAME,
    ProcessedMessageRecord,
    TenantRef,
    mailbox_domain,
)
from mailrelay.transport.http import HttpCall, TransportError, urllib_http_call


class DeliveryError(RuntimeError):
    def __init__(self, message: str, *, http_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.http_status = http_status


@dataclass(frozen=True)
class RelayConfig:
    webhook_url: str
    source: str = "mailrelay"
    notification_type: str = "new_unread_email"
    user_agent: str = "mailrelay/1.0"
    timeout_seconds: float = 15.0


@dataclass(frozen=True)
class RelayContext:
    user_id: str
    tenant: TenantRef


@dataclass(frozen=True)
class DispatchResult:
    message_id: str
    claimed: bool
    delivered: bool
    http_status: Optional[int] = None
    error: Optional[str] = None


def encode_relay_body(body: dict[str, Any]) -> bytes:
    """UTF-8 JSON wire form; raises UnicodeEncodeError (a ValueError) for unencodable text."""

    return json.dumps(body, ensure_ascii=False).encode("utf-8")


class RelayDispatcher:
    """Delivers one normalized event to the downstream webhook, at most once.

    The `sent` record is claimed through the dedup ledger before the POST; only the
    invocation whose claim succeeds sends. A failed POST is reported in the result and
    never retried.
    """

    def __init__(
        self,
        *,
        config: RelayConfig,
        store,
        ledger: Optional[DedupLedger] = None,
        http_call: HttpCall = urllib_http_call,
    ) -> None:
        if not config.webhook_url:
            raise ValueError("relay webhook_url must be non-empty")
        self._config = config
        self._store = store
        self._ledger = ledger if ledger is not None else DedupLedger(store=store)
        self._http_call = http_call

    def resolve_context(self, *, event: NormalizedEvent, mailbox_address: str) -> RelayContext:
        # Misses, empty values and lookup failures all degrade to sentinels.
        user_id = UNKNOWN
        try:
            user_id = self._store.find_user_id_for_mailbox(mailbox_address=mailbox_address) or UNKNOWN
        except Exception:
            user_id = UNKNOWN

        tenant = TenantRef(tenant_id=UNKNOWN, name=UNKNOWN_TENANT_NAME)
        domain = mailbox_domain(extract_email_address(event.recipient))
        if domain:
            try:
                found = self._store.find_tenant_by_contact_domain(domain=domain)
            except Exception:
                found = None
            if found is not None:
                tenant = TenantRef(
                    tenant_id=found.tenant_id or UNKNOWN,
                    name=found.name or UNKNOWN_TENANT_NAME,
                )
        return RelayContext(user_id=user_id, tenant=tenant)

    def build_body(self, *, event: NormalizedEvent, context: RelayContext, connection_email: str) -> dict[str, Any]:
        body = {
            "message_id": event.message_id,
            "from": event.sender_address,
            "to": event.recipient,
            "subject": event.subject,
            "timestamp": event.timestamp,
            "content": event.body_text,
            "user_id": context.user_id,
            "client_id": context.user_id,
            "tenant_id": context.tenant.tenant_id,
            "tenant_name": context.tenant.name,
            "connection_email": connection_email,
            "source": self._config.source,
            "notification_type": self._config.notification_type,
        }
        validate_relay_event(body)
        encode_relay_body(body)
        return body

    def record_error(self, *, user_id: str, mailbox_address: str, message_id: str, error: str) -> bool:
        return self._ledger.claim(
            user_id=user_id,
            mailbox_address=mailbox_address,
            record=ProcessedMessageRecord(message_id=message_id, status=STATUS_ERROR, error_message=error),
        )

    def dispatch(self, *, user_id: str, mailbox_address: str, body: dict[str, Any]) -> DispatchResult:
        message_id = str(body["message_id"])
        data = encode_relay_body(body)
        claimed = self._ledger.claim(
            user_id=user_id,
            mailbox_address=mailbox_address,
            record=ProcessedMessageRecord(
                message_id=message_id,
                status=STATUS_SENT,
                payload={k: v for k, v in body.items() if k != "content"},
            ),
        )
        if not claimed:
            return DispatchResult(message_id=message_id, claimed=False, delivered=False)

        try:
            status = self._post(data)
        except DeliveryError as e:
            inc_relay(result="failed")
            return DispatchResult(
                message_id=message_id,
                claimed=True,
                delivered=False,
                http_status=e.http_status,
                error=str(e),
            )
        inc_relay(result="delivered")
        return DispatchResult(message_id=message_id, claimed=True, delivered=True, http_status=status)

    def _post(self, data: bytes) -> int:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._config.user_agent,
        }
        inject_context_into_headers(headers)
        try:
            resp = self._http_call(
                method="POST",
                url=self._config.webhook_url,
                headers=headers,
                body=data,
                timeout_seconds=self._config.timeout_seconds,
            )
        except TransportError as e:
            raise DeliveryError(str(e)) from e
        if not resp.ok:
            raise DeliveryError(
                f"HTTP {resp.status} from relay endpoint: {resp.text(limit=200)}",
                http_status=int(resp.status),
            )
        return int(resp.status)
