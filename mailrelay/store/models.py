from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional


STATUS_SENT = "sent"
STATUS_ERROR = "error"
STATUS_INITIALIZATION_SKIP = "initialization-skip"
RECORD_STATUSES = (STATUS_SENT, STATUS_ERROR, STATUS_INITIALIZATION_SKIP)

UNKNOWN = "unknown"
UNKNOWN_TENANT_NAME = "Unknown Tenant"


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class MailboxConnection:
    user_id: str
    mailbox_address: str
    provider: str
    access_token_encrypted: Optional[str]
    refresh_token_encrypted: Optional[str]
    expires_at: Optional[datetime]

    def with_tokens(
        self,
        *,
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str],
        expires_at: datetime,
    ) -> "MailboxConnection":
        return replace(
            self,
            access_token_encrypted=access_token_encrypted,
            refresh_token_encrypted=refresh_token_encrypted or self.refresh_token_encrypted,
            expires_at=as_utc(expires_at),
        )


@dataclass(frozen=True)
class ProcessedMessageRecord:
    message_id: str
    status: str
    error_message: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.message_id:
            raise ValueError("message_id must be non-empty")
        if self.status not in RECORD_STATUSES:
            raise ValueError(f"unsupported record status: {self.status}")


@dataclass(frozen=True)
class TenantRef:
    tenant_id: str
    name: str


def mailbox_domain(address: str) -> str:
    if "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].strip().strip(">").lower()
