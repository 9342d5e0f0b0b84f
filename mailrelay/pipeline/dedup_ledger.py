from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from mailrelay.store.models import ProcessedMessageRecord


@dataclass(frozen=True)
class LedgerSelection:
    pending: tuple[str, ...]
    already_processed: int

    @property
    def candidate(self) -> Optional[str]:
        return self.pending[0] if self.pending else None


class DedupLedger:
    """Per-(user, mailbox) processed-message set.

    Reads are plain membership tests; `claim` is the insert-if-absent write that decides
    which concurrent invocation owns a message id.
    """

    def __init__(self, *, store) -> None:
        self._store = store

    def select(self, *, user_id: str, mailbox_address: str, unread_ids: Sequence[str]) -> LedgerSelection:
        ids: list[str] = []
        for message_id in unread_ids:
            if message_id not in ids:
                ids.append(message_id)
        seen = self._store.processed_message_ids(
            user_id=user_id, mailbox_address=mailbox_address, message_ids=ids
        )
        pending = tuple(m for m in ids if m not in seen)
        return LedgerSelection(pending=pending, already_processed=len(ids) - len(pending))

    def claim(self, *, user_id: str, mailbox_address: str, record: ProcessedMessageRecord) -> bool:
        return self._store.put_processed_record_if_absent(
            user_id=user_id, mailbox_address=mailbox_address, record=record
        )
