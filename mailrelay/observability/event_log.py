from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from mailrelay.observability.tracing import current_trace_ids


EVENT_STAGE_COMPLETE = "STAGE_COMPLETE"
EVENT_STAGE_FAILED = "STAGE_FAILED"

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._@+-]")


def _format_datetime(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt.isoformat().replace("+00:00", "Z")


def mailbox_key(mailbox_address: str) -> str:
    key = _UNSAFE_PATH_CHARS.sub("_", mailbox_address.strip().lower())
    return key or "_"


@dataclass(frozen=True)
class PollEvent:
    event_type: str
    stage: str
    mailbox_address: str
    run_id: str
    occurred_at: str
    duration_ms: Optional[int]
    status: str
    trace_id: str
    span_id: str
    fields: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "stage": self.stage,
            "mailbox_address": self.mailbox_address,
            "run_id": self.run_id,
            "occurred_at": self.occurred_at,
            "duration_ms": self.duration_ms,
            "status": self.status,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "fields": dict(self.fields),
        }


def build_poll_event(
    *,
    event_type: str,
    stage: str,
    mailbox_address: str,
    run_id: str,
    occurred_at: datetime,
    duration_ms: Optional[int],
    status: str,
    fields: Optional[dict[str, Any]] = None,
) -> PollEvent:
    ids = current_trace_ids()
    return PollEvent(
        event_type=event_type,
        stage=stage,
        mailbox_address=mailbox_address,
        run_id=run_id,
        occurred_at=_format_datetime(occurred_at),
        duration_ms=duration_ms,
        status=status,
        trace_id=(ids.trace_id_hex if ids is not None else None) or run_id,
        span_id=(ids.span_id_hex if ids is not None else None) or f"{stage}:{event_type}",
        fields=fields or {},
    )


class PollEventSink(Protocol):
    def append(self, event: PollEvent) -> None:
        raise NotImplementedError


class NullEventSink:
    def append(self, event: PollEvent) -> None:
        return None


class FileEventLogger:
    """Append-only poll events per (mailbox, run_id)."""

    def __init__(self, *, base_dir: Path) -> None:
        self._base_dir = base_dir
        self._lock = threading.Lock()

    def path_for(self, *, mailbox_address: str, run_id: str) -> Path:
        return self._base_dir / "observability" / mailbox_key(mailbox_address) / f"{run_id}.jsonl"

    def append(self, event: PollEvent) -> None:
        path = self.path_for(mailbox_address=event.mailbox_address, run_id=event.run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(event.to_dict(), ensure_ascii=False) + "\n"
        with self._lock:
            with path.open("a", encoding="utf-8") as f:
                f.write(line)
