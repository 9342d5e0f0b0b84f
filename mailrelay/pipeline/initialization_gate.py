from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Sequence

from mailrelay.store.models import STATUS_INITIALIZATION_SKIP, ProcessedMessageRecord


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GateResult:
    bootstrapped: bool
    skipped: int


class InitializationGate:
    """First contact with a mailbox records the current unread set as a silent baseline.

    Skip records are written before the marker; a run interrupted between the two is
    re-run safely because record inserts are insert-if-absent.
    """

    def __init__(self, *, store, now: Callable[[], datetime] = _utc_now) -> None:
        self._store = store
        self._now = now

    def apply(self, *, user_id: str, mailbox_address: str, unread_ids: Sequence[str]) -> GateResult:
        if self._store.has_initialization_marker(user_id=user_id, mailbox_address=mailbox_address):
            return GateResult(bootstrapped=False, skipped=0)

        initialized_at = self._now()
        skipped = 0
        for message_id in unread_ids:
            created = self._store.put_processed_record_if_absent(
                user_id=user_id,
                mailbox_address=mailbox_address,
                record=ProcessedMessageRecord(
                    message_id=message_id,
                    status=STATUS_INITIALIZATION_SKIP,
                    payload={"initialized_at": initialized_at.isoformat()},
                ),
            )
            if created:
                skipped += 1

        self._store.put_initialization_marker_if_absent(
            user_id=user_id,
            mailbox_address=mailbox_address,
            initialized_at=initialized_at,
        )
        return GateResult(bootstrapped=True, skipped=skipped)
