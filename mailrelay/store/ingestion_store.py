from __future__ import annotations

import threading
from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence

from mailrelay.store.models import (
    MailboxConnection,
    ProcessedMessageRecord,
    TenantRef,
    as_utc,
    mailbox_domain,
)


class IngestionStore(Protocol):
    """Persistence boundary for connections, processed-message records and markers.

    `put_*_if_absent` must be atomic and uniqueness-enforcing: it returns True only for the
    caller whose insert created the row.
    """

    def find_connections(self, *, mailbox_address: str) -> list[MailboxConnection]:
        raise NotImplementedError

    def list_connections(self) -> list[MailboxConnection]:
        raise NotImplementedError

    def update_connection_tokens(
        self,
        *,
        connection: MailboxConnection,
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str],
        expires_at: datetime,
    ) -> MailboxConnection:
        raise NotImplementedError

    def has_initialization_marker(self, *, user_id: str, mailbox_address: str) -> bool:
        raise NotImplementedError

    def put_initialization_marker_if_absent(
        self, *, user_id: str, mailbox_address: str, initialized_at: datetime
    ) -> bool:
        raise NotImplementedError

    def processed_message_ids(
        self, *, user_id: str, mailbox_address: str, message_ids: Sequence[str]
    ) -> set[str]:
        raise NotImplementedError

    def put_processed_record_if_absent(
        self, *, user_id: str, mailbox_address: str, record: ProcessedMessageRecord
    ) -> bool:
        raise NotImplementedError

    def get_processed_record(
        self, *, user_id: str, mailbox_address: str, message_id: str
    ) -> Optional[ProcessedMessageRecord]:
        raise NotImplementedError

    def find_tenant_by_contact_domain(self, *, domain: str) -> Optional[TenantRef]:
        raise NotImplementedError

    def find_user_id_for_mailbox(self, *, mailbox_address: str) -> Optional[str]:
        raise NotImplementedError


def _mailbox_key(mailbox_address: str) -> str:
    return mailbox_address.strip().lower()


class InMemoryIngestionStore:
    """Lock-guarded store for tests, local runs and the `memory` backend."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict[tuple[str, str, str], MailboxConnection] = {}
        self._records: dict[tuple[str, str, str], ProcessedMessageRecord] = {}
        self._markers: dict[tuple[str, str], datetime] = {}
        self._tenant_contacts: list[tuple[str, TenantRef]] = []

    def put_connection(self, connection: MailboxConnection) -> None:
        key = (connection.user_id, _mailbox_key(connection.mailbox_address), connection.provider)
        with self._lock:
            self._connections[key] = connection

    def add_tenant_contact(self, *, tenant: TenantRef, contact_email: str) -> None:
        with self._lock:
            self._tenant_contacts.append((contact_email, tenant))

    def find_connections(self, *, mailbox_address: str) -> list[MailboxConnection]:
        wanted = _mailbox_key(mailbox_address)
        with self._lock:
            out = [c for (_u, m, _p), c in self._connections.items() if m == wanted]
        return sorted(out, key=lambda c: (c.user_id, c.provider))

    def list_connections(self) -> list[MailboxConnection]:
        with self._lock:
            out = list(self._connections.values())
        return sorted(out, key=lambda c: (c.user_id, _mailbox_key(c.mailbox_address), c.provider))

    def update_connection_tokens(
        self,
        *,
        connection: MailboxConnection,
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str],
        expires_at: datetime,
    ) -> MailboxConnection:
        key = (connection.user_id, _mailbox_key(connection.mailbox_address), connection.provider)
        with self._lock:
            current = self._connections.get(key, connection)
            updated = current.with_tokens(
                access_token_encrypted=access_token_encrypted,
                refresh_token_encrypted=refresh_token_encrypted,
                expires_at=expires_at,
            )
            self._connections[key] = updated
        return updated

    def has_initialization_marker(self, *, user_id: str, mailbox_address: str) -> bool:
        with self._lock:
            return (user_id, _mailbox_key(mailbox_address)) in self._markers

    def put_initialization_marker_if_absent(
        self, *, user_id: str, mailbox_address: str, initialized_at: datetime
    ) -> bool:
        key = (user_id, _mailbox_key(mailbox_address))
        with self._lock:
            if key in self._markers:
                return False
            self._markers[key] = as_utc(initialized_at) or initialized_at
            return True

    def processed_message_ids(
        self, *, user_id: str, mailbox_address: str, message_ids: Sequence[str]
    ) -> set[str]:
        mbox = _mailbox_key(mailbox_address)
        with self._lock:
            return {mid for mid in message_ids if (user_id, mbox, mid) in self._records}

    def put_processed_record_if_absent(
        self, *, user_id: str, mailbox_address: str, record: ProcessedMessageRecord
    ) -> bool:
        key = (user_id, _mailbox_key(mailbox_address), record.message_id)
        with self._lock:
            if key in self._records:
                return False
            self._records[key] = record
            return True

    def get_processed_record(
        self, *, user_id: str, mailbox_address: str, message_id: str
    ) -> Optional[ProcessedMessageRecord]:
        with self._lock:
            return self._records.get((user_id, _mailbox_key(mailbox_address), message_id))

    def records_for(self, *, user_id: str, mailbox_address: str) -> list[ProcessedMessageRecord]:
        mbox = _mailbox_key(mailbox_address)
        with self._lock:
            items = [(k[2], r) for k, r in self._records.items() if k[0] == user_id and k[1] == mbox]
        return [r for _mid, r in sorted(items, key=lambda kv: kv[0])]

    def find_tenant_by_contact_domain(self, *, domain: str) -> Optional[TenantRef]:
        wanted = domain.strip().lower()
        if not wanted:
            return None
        with self._lock:
            contacts: Iterable[tuple[str, TenantRef]] = list(self._tenant_contacts)
        matches = [t for email, t in contacts if mailbox_domain(email) == wanted]
        if not matches:
            return None
        return sorted(matches, key=lambda t: t.tenant_id)[0]

    def find_user_id_for_mailbox(self, *, mailbox_address: str) -> Optional[str]:
        conns = self.find_connections(mailbox_address=mailbox_address)
        if not conns:
            return None
        return conns[0].user_id
