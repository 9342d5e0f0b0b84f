from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

import jsonschema

from mailrelay.normalize.normalized_event import build_normalized_event
from mailrelay.observability.event_log import (
    EVENT_STAGE_COMPLETE,
    EVENT_STAGE_FAILED,
    NullEventSink,
    PollEventSink,
    build_poll_event,
)
from mailrelay.observability.metrics import inc_poll, inc_records, observe_stage
from mailrelay.observability.tracing import poll_span, stage_span
from mailrelay.pipeline.dedup_ledger import DedupLedger
from mailrelay.pipeline.initialization_gate import InitializationGate
from mailrelay.providers.adapter import FetchError, ListingError, MailProviderAdapter
from mailrelay.relay.dispatcher import RelayDispatcher
from mailrelay.store.models import (
    STATUS_ERROR,
    STATUS_INITIALIZATION_SKIP,
    STATUS_SENT,
    MailboxConnection,
)
from mailrelay.vault.credential_vault import CredentialVault


OUTCOME_LISTING_FAILED = "listing_failed"
OUTCOME_INITIALIZED = "initialized"
OUTCOME_IDLE = "idle"
OUTCOME_ALREADY_PROCESSED = "already_processed"
OUTCOME_RELAYED = "relayed"
OUTCOME_ERROR = "error"

_MESSAGES = {
    OUTCOME_LISTING_FAILED: "Unread listing unavailable; will retry on next poll",
    OUTCOME_INITIALIZED: "Mailbox initialized; existing unread messages recorded without relay",
    OUTCOME_IDLE: "No new unread messages",
    OUTCOME_ALREADY_PROCESSED: "Message already processed by another invocation",
    OUTCOME_RELAYED: "Message relayed",
    OUTCOME_ERROR: "Message could not be normalized; recorded as error",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PollOutcome:
    outcome: str
    run_id: str
    user_id: str
    mailbox_address: str
    processed: int = 0
    skipped: int = 0
    pending: int = 0
    initialized: bool = False
    message_id: Optional[str] = None
    delivered: Optional[bool] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "message": _MESSAGES.get(self.outcome, self.outcome),
            "outcome": self.outcome,
            "processed": self.processed,
            "skipped": self.skipped,
            "pending": self.pending,
            "initialized": self.initialized,
            "message_id": self.message_id,
        }


class UnreadPollRunner:
    """One invocation: vault -> list -> gate -> ledger -> normalize -> relay for one mailbox.

    At most one new message is relayed per call; remaining candidates wait for later polls.
    Credential failures (DecryptionError, RefreshError) propagate to the caller.
    """

    def __init__(
        self,
        *,
        vault: CredentialVault,
        adapters: Mapping[str, MailProviderAdapter],
        gate: InitializationGate,
        ledger: DedupLedger,
        dispatcher: RelayDispatcher,
        unread_limit: int = 50,
        event_sink: Optional[PollEventSink] = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        if unread_limit <= 0:
            raise ValueError("unread_limit must be > 0")
        self._vault = vault
        self._adapters = dict(adapters)
        self._gate = gate
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._unread_limit = int(unread_limit)
        self._events: PollEventSink = event_sink or NullEventSink()
        self._now = now

    def _record(
        self,
        *,
        stage: str,
        connection: MailboxConnection,
        run_id: str,
        t0: float,
        failed: bool = False,
        fields: Optional[dict[str, Any]] = None,
    ) -> None:
        dur_ms = int((time.perf_counter() - t0) * 1000)
        status = "failed" if failed else "ok"
        observe_stage(stage=stage, duration_ms=dur_ms, status=status)
        self._events.append(
            build_poll_event(
                event_type=EVENT_STAGE_FAILED if failed else EVENT_STAGE_COMPLETE,
                stage=stage,
                mailbox_address=connection.mailbox_address,
                run_id=run_id,
                occurred_at=self._now(),
                duration_ms=dur_ms,
                status=status,
                fields=fields,
            )
        )

    def run_once(
        self,
        *,
        connection: MailboxConnection,
        run_id: Optional[str] = None,
        parent_context: Any = None,
    ) -> PollOutcome:
        run_id = run_id or uuid.uuid4().hex
        with poll_span(
            run_id=run_id,
            provider=connection.provider,
            mailbox_address=connection.mailbox_address,
            parent_context=parent_context,
        ):
            outcome = self._run(connection=connection, run_id=run_id)
        inc_poll(outcome=outcome.outcome)
        return outcome

    def _run(self, *, connection: MailboxConnection, run_id: str) -> PollOutcome:
        user_id = connection.user_id
        mailbox = connection.mailbox_address

        adapter = self._adapters.get(connection.provider)
        if adapter is None:
            raise ValueError(f"no adapter configured for provider: {connection.provider}")

        t0 = time.perf_counter()
        with stage_span("VAULT"):
            try:
                resolved = self._vault.resolve(connection)
            except Exception as e:
                self._record(
                    stage="VAULT",
                    connection=connection,
                    run_id=run_id,
                    t0=t0,
                    failed=True,
                    fields={"error_type": type(e).__name__},
                )
                inc_poll(outcome="credential_failed")
                raise
        self._record(
            stage="VAULT", connection=connection, run_id=run_id, t0=t0, fields={"refreshed": resolved.refreshed}
        )
        token = resolved.token

        t0 = time.perf_counter()
        with stage_span("LIST"):
            try:
                unread_ids = adapter.list_unread_ids(
                    access_token=token, mailbox_address=mailbox, limit=self._unread_limit
                )
            except ListingError as e:
                self._record(
                    stage="LIST",
                    connection=connection,
                    run_id=run_id,
                    t0=t0,
                    failed=True,
                    fields={"error": str(e)},
                )
                return PollOutcome(
                    outcome=OUTCOME_LISTING_FAILED, run_id=run_id, user_id=user_id, mailbox_address=mailbox
                )
        self._record(stage="LIST", connection=connection, run_id=run_id, t0=t0, fields={"unread": len(unread_ids)})

        t0 = time.perf_counter()
        with stage_span("GATE"):
            gate = self._gate.apply(user_id=user_id, mailbox_address=mailbox, unread_ids=unread_ids)
        self._record(
            stage="GATE",
            connection=connection,
            run_id=run_id,
            t0=t0,
            fields={"bootstrapped": gate.bootstrapped, "skipped": gate.skipped},
        )
        if gate.bootstrapped:
            inc_records(status=STATUS_INITIALIZATION_SKIP, count=gate.skipped)
            return PollOutcome(
                outcome=OUTCOME_INITIALIZED,
                run_id=run_id,
                user_id=user_id,
                mailbox_address=mailbox,
                skipped=gate.skipped,
                initialized=True,
            )

        t0 = time.perf_counter()
        with stage_span("LEDGER"):
            selection = self._ledger.select(user_id=user_id, mailbox_address=mailbox, unread_ids=unread_ids)
        self._record(
            stage="LEDGER",
            connection=connection,
            run_id=run_id,
            t0=t0,
            fields={"pending": len(selection.pending), "already_processed": selection.already_processed},
        )
        message_id = selection.candidate
        if message_id is None:
            return PollOutcome(
                outcome=OUTCOME_IDLE,
                run_id=run_id,
                user_id=user_id,
                mailbox_address=mailbox,
                skipped=selection.already_processed,
            )
        remaining = len(selection.pending) - 1

        t0 = time.perf_counter()
        with stage_span("NORMALIZE", message_id=message_id):
            try:
                message = adapter.fetch_message(
                    access_token=token, mailbox_address=mailbox, message_id=message_id
                )
                event = build_normalized_event(message)
                context = self._dispatcher.resolve_context(event=event, mailbox_address=mailbox)
                body = self._dispatcher.build_body(event=event, context=context, connection_email=mailbox)
            except (FetchError, ValueError, jsonschema.ValidationError) as e:
                error = f"{type(e).__name__}: {e}"
                self._record(
                    stage="NORMALIZE",
                    connection=connection,
                    run_id=run_id,
                    t0=t0,
                    failed=True,
                    fields={"message_id": message_id, "error": error},
                )
                recorded = self._dispatcher.record_error(
                    user_id=user_id, mailbox_address=mailbox, message_id=message_id, error=error
                )
                if not recorded:
                    return PollOutcome(
                        outcome=OUTCOME_ALREADY_PROCESSED,
                        run_id=run_id,
                        user_id=user_id,
                        mailbox_address=mailbox,
                        skipped=selection.already_processed,
                        pending=remaining,
                        message_id=message_id,
                    )
                inc_records(status=STATUS_ERROR)
                return PollOutcome(
                    outcome=OUTCOME_ERROR,
                    run_id=run_id,
                    user_id=user_id,
                    mailbox_address=mailbox,
                    processed=1,
                    skipped=selection.already_processed,
                    pending=remaining,
                    message_id=message_id,
                    error=error,
                )
        self._record(
            stage="NORMALIZE",
            connection=connection,
            run_id=run_id,
            t0=t0,
            fields={"message_id": message_id, "tenant_id": body["tenant_id"]},
        )

        t0 = time.perf_counter()
        with stage_span("RELAY", message_id=message_id):
            result = self._dispatcher.dispatch(user_id=user_id, mailbox_address=mailbox, body=body)
        if not result.claimed:
            self._record(
                stage="RELAY",
                connection=connection,
                run_id=run_id,
                t0=t0,
                fields={"message_id": message_id, "claimed": False},
            )
            return PollOutcome(
                outcome=OUTCOME_ALREADY_PROCESSED,
                run_id=run_id,
                user_id=user_id,
                mailbox_address=mailbox,
                skipped=selection.already_processed,
                pending=remaining,
                message_id=message_id,
            )

        inc_records(status=STATUS_SENT)
        self._record(
            stage="RELAY",
            connection=connection,
            run_id=run_id,
            t0=t0,
            failed=not result.delivered,
            fields={
                "message_id": message_id,
                "claimed": True,
                "delivered": result.delivered,
                "http_status": result.http_status,
                "error": result.error,
            },
        )
        return PollOutcome(
            outcome=OUTCOME_RELAYED,
            run_id=run_id,
            user_id=user_id,
            mailbox_address=mailbox,
            processed=1,
            skipped=selection.already_processed,
            pending=remaining,
            message_id=message_id,
            delivered=result.delivered,
            error=result.error,
        )
