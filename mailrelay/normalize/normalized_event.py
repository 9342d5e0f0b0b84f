from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timezone
from email.header import decode_header, make_header
from email.utils import parsedate_to_datetime
from typing import Sequence

from mailrelay.normalize.mime_tree import first_body_text
from mailrelay.providers.adapter import HeaderField, ProviderMessage


_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")
_BRACKETED_RE = re.compile(r"<(.+?)>")
_ADDRESS_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_ENTITIES = (
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
)


@dataclass(frozen=True)
class NormalizedEvent:
    message_id: str
    sender: str
    sender_address: str
    recipient: str
    subject: str
    date: str
    timestamp: str
    body_text: str


def header_value(headers: Sequence[HeaderField], name: str) -> str:
    """Case-insensitive lookup; first occurrence wins, missing -> ''."""

    wanted = name.lower()
    for h in headers:
        if h.name.lower() == wanted:
            return h.value or ""
    return ""


def decode_encoded_words(value: str) -> str:
    if not value or "=?" not in value:
        return value
    try:
        decoded = str(make_header(decode_header(value)))
        decoded.encode("utf-8")
    except (LookupError, UnicodeError, ValueError):
        return value
    return decoded


def html_to_text(html: str) -> str:
    if not html:
        return ""
    text = _TAG_RE.sub(" ", html)
    for entity, replacement in _ENTITIES:
        text = text.replace(entity, replacement)
    return _WHITESPACE_RE.sub(" ", text).strip()


def extract_email_address(value: str) -> str:
    """Bare address from `"Name" <addr>` or `addr`; falls back to the raw value."""

    if not value:
        return ""
    m = _BRACKETED_RE.search(value)
    if m:
        return m.group(1)
    m = _ADDRESS_RE.search(value)
    if m:
        return m.group(0)
    return value


def normalize_timestamp(date_header: str) -> str:
    if not date_header:
        return ""
    try:
        dt = parsedate_to_datetime(date_header)
    except (TypeError, ValueError, IndexError):
        return date_header
    if dt is None:
        return date_header
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def build_normalized_event(message: ProviderMessage) -> NormalizedEvent:
    sender = decode_encoded_words(header_value(message.headers, "From"))
    recipient = decode_encoded_words(header_value(message.headers, "To"))
    subject = decode_encoded_words(header_value(message.headers, "Subject"))
    date = header_value(message.headers, "Date")

    return NormalizedEvent(
        message_id=message.message_id,
        sender=sender,
        sender_address=extract_email_address(sender),
        recipient=recipient,
        subject=subject,
        date=date,
        timestamp=normalize_timestamp(date),
        body_text=html_to_text(first_body_text(message.body)),
    )
