from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from mailrelay.store.models import (
    MailboxConnection,
    ProcessedMessageRecord,
    TenantRef,
    as_utc,
)


@dataclass(frozen=True)
class PostgresIngestionStoreConfig:
    dsn: str


def _mailbox_key(mailbox_address: str) -> str:
    return mailbox_address.strip().lower()


def _connection_from_row(row: Sequence[Any]) -> MailboxConnection:
    return MailboxConnection(
        user_id=str(row[0]),
        mailbox_address=str(row[1]),
        provider=str(row[2]),
        access_token_encrypted=row[3],
        refresh_token_encrypted=row[4],
        expires_at=as_utc(row[5]),
    )


_CONNECTION_COLUMNS = (
    "user_id, mailbox_address, provider, access_token_encrypted, refresh_token_encrypted, expires_at"
)


class PostgresIngestionStore:
    """IngestionStore backed by the tables in store/migrations.

    Each call opens its own connection; uniqueness is enforced by primary keys and
    `ON CONFLICT DO NOTHING`, so concurrent pollers never both win a claim.
    """

    def __init__(self, *, config: PostgresIngestionStoreConfig) -> None:
        self._config = config

    def _require_psycopg(self):
        try:
            import psycopg  # type: ignore
        except Exception as e:  # pragma: no cover
            raise RuntimeError("psycopg is required for PostgresIngestionStore (pyproject dependencies)") from e
        return psycopg

    def put_connection(self, connection: MailboxConnection) -> None:
        psycopg = self._require_psycopg()
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO mailrelay_mailbox_connections({_CONNECTION_COLUMNS}) "
                    "VALUES (%s, %s, %s, %s, %s, %s) "
                    "ON CONFLICT (user_id, mailbox_address, provider) DO UPDATE SET "
                    "access_token_encrypted = EXCLUDED.access_token_encrypted, "
                    "refresh_token_encrypted = EXCLUDED.refresh_token_encrypted, "
                    "expires_at = EXCLUDED.expires_at, updated_at = now()",
                    (
                        connection.user_id,
                        _mailbox_key(connection.mailbox_address),
                        connection.provider,
                        connection.access_token_encrypted,
                        connection.refresh_token_encrypted,
                        as_utc(connection.expires_at),
                    ),
                )

    def add_tenant_contact(self, *, tenant: TenantRef, contact_email: str) -> None:
        psycopg = self._require_psycopg()
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO mailrelay_tenant_contacts(tenant_id, tenant_name, contact_email) "
                    "VALUES (%s, %s, %s) ON CONFLICT (tenant_id, contact_email) DO NOTHING",
                    (tenant.tenant_id, tenant.name, contact_email.strip().lower()),
                )

    def find_connections(self, *, mailbox_address: str) -> list[MailboxConnection]:
        psycopg = self._require_psycopg()
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_CONNECTION_COLUMNS} FROM mailrelay_mailbox_connections "
                    "WHERE mailbox_address = %s ORDER BY user_id, provider",
                    (_mailbox_key(mailbox_address),),
                )
                return [_connection_from_row(r) for r in cur.fetchall()]

    def list_connections(self) -> list[MailboxConnection]:
        psycopg = self._require_psycopg()
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {_CONNECTION_COLUMNS} FROM mailrelay_mailbox_connections "
                    "ORDER BY user_id, mailbox_address, provider"
                )
                return [_connection_from_row(r) for r in cur.fetchall()]

    def update_connection_tokens(
        self,
        *,
        connection: MailboxConnection,
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str],
        expires_at: datetime,
    ) -> MailboxConnection:
        updated = connection.with_tokens(
            access_token_encrypted=access_token_encrypted,
            refresh_token_encrypted=refresh_token_encrypted,
            expires_at=expires_at,
        )
        psycopg = self._require_psycopg()
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE mailrelay_mailbox_connections SET access_token_encrypted = %s, "
                    "refresh_token_encrypted = %s, expires_at = %s, updated_at = now() "
                    "WHERE user_id = %s AND mailbox_address = %s AND provider = %s",
                    (
                        updated.access_token_encrypted,
                        updated.refresh_token_encrypted,
                        updated.expires_at,
                        connection.user_id,
                        _mailbox_key(connection.mailbox_address),
                        connection.provider,
                    ),
                )
        return updated

    def has_initialization_marker(self, *, user_id: str, mailbox_address: str) -> bool:
        psycopg = self._require_psycopg()
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM mailrelay_initialization_markers WHERE user_id = %s AND mailbox_address = %s",
                    (user_id, _mailbox_key(mailbox_address)),
                )
                return cur.fetchone() is not None

    def put_initialization_marker_if_absent(
        self, *, user_id: str, mailbox_address: str, initialized_at: datetime
    ) -> bool:
        psycopg = self._require_psycopg()
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO mailrelay_initialization_markers(user_id, mailbox_address, initialized_at) "
                    "VALUES (%s, %s, %s) ON CONFLICT (user_id, mailbox_address) DO NOTHING",
                    (user_id, _mailbox_key(mailbox_address), as_utc(initialized_at)),
                )
                return bool(cur.rowcount == 1)

    def processed_message_ids(
        self, *, user_id: str, mailbox_address: str, message_ids: Sequence[str]
    ) -> set[str]:
        ids = [str(m) for m in message_ids]
        if not ids:
            return set()
        psycopg = self._require_psycopg()
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT message_id FROM mailrelay_processed_messages "
                    "WHERE user_id = %s AND mailbox_address = %s AND message_id = ANY(%s)",
                    (user_id, _mailbox_key(mailbox_address), ids),
                )
                return {str(r[0]) for r in cur.fetchall()}

    def put_processed_record_if_absent(
        self, *, user_id: str, mailbox_address: str, record: ProcessedMessageRecord
    ) -> bool:
        psycopg = self._require_psycopg()
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO mailrelay_processed_messages"
                    "(user_id, mailbox_address, message_id, status, error_message, payload) "
                    "VALUES (%s, %s, %s, %s, %s, %s::jsonb) "
                    "ON CONFLICT (user_id, mailbox_address, message_id) DO NOTHING",
                    (
                        user_id,
                        _mailbox_key(mailbox_address),
                        record.message_id,
                        record.status,
                        record.error_message,
                        json.dumps(record.payload, ensure_ascii=False, sort_keys=True),
                    ),
                )
                return bool(cur.rowcount == 1)

    def get_processed_record(
        self, *, user_id: str, mailbox_address: str, message_id: str
    ) -> Optional[ProcessedMessageRecord]:
        psycopg = self._require_psycopg()
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT message_id, status, error_message, payload FROM mailrelay_processed_messages "
                    "WHERE user_id = %s AND mailbox_address = %s AND message_id = %s",
                    (user_id, _mailbox_key(mailbox_address), message_id),
                )
                row = cur.fetchone()
                if row is None:
                    return None
                payload = row[3]
                if isinstance(payload, str):
                    payload = json.loads(payload)
                return ProcessedMessageRecord(
                    message_id=str(row[0]),
                    status=str(row[1]),
                    error_message=row[2],
                    payload=dict(payload or {}),
                )

    def find_tenant_by_contact_domain(self, *, domain: str) -> Optional[TenantRef]:
        wanted = domain.strip().lower()
        if not wanted:
            return None
        psycopg = self._require_psycopg()
        with psycopg.connect(self._config.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT tenant_id, tenant_name FROM mailrelay_tenant_contacts "
                    "WHERE lower(split_part(contact_email, '@', 2)) = %s ORDER BY tenant_id LIMIT 1",
                    (wanted,),
                )
                row = cur.fetchone()
                if row is None:
                    return None
                return TenantRef(tenant_id=str(row[0]), name=str(row[1]))

    def find_user_id_for_mailbox(self, *, mailbox_address: str) -> Optional[str]:
        conns = self.find_connections(mailbox_address=mailbox_address)
        if not conns:
            return None
        return conns[0].user_id
