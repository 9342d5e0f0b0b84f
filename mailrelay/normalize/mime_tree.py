from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from email.message import Message
from typing import Any, Optional, Union


_CHARSET_RE = re.compile(r"charset\s*=\s*\"?([^\";]+)\"?", re.IGNORECASE)


@dataclass(frozen=True)
class LeafPart:
    """A MIME part that may carry inline content (base64url text as providers deliver it)."""

    mime_type: str
    data: Optional[str]
    charset: Optional[str] = None


@dataclass(frozen=True)
class ContainerPart:
    mime_type: str
    children: tuple["MimePart", ...]


MimePart = Union[LeafPart, ContainerPart]


def decode_base64url(data: str) -> bytes:
    """Decode base64url (or standard base64) tolerating missing padding.

    Raises ValueError on malformed input.
    """

    cleaned = "".join(data.split()).replace("-", "+").replace("_", "/")
    cleaned += "=" * ((4 - len(cleaned) % 4) % 4)
    try:
        return base64.b64decode(cleaned.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError("invalid base64url content") from e


def _decode_text(raw: bytes, *, charset: Optional[str]) -> str:
    if charset:
        try:
            text = raw.decode(charset)
            # Codecs such as utf-7 can yield lone surrogates, which no UTF-8 payload can carry.
            text.encode("utf-8")
            return text
        except (LookupError, UnicodeError):
            pass
    return raw.decode("utf-8", errors="replace")


def _charset_from_headers(headers: Any) -> Optional[str]:
    if not isinstance(headers, list):
        return None
    for h in headers:
        if not isinstance(h, dict):
            continue
        name = h.get("name")
        if isinstance(name, str) and name.lower() == "content-type":
            value = h.get("value")
            if isinstance(value, str):
                m = _CHARSET_RE.search(value)
                if m:
                    return m.group(1).strip().lower()
            return None
    return None


def part_from_gmail_payload(payload: Any) -> MimePart:
    """Build a part tree from a Gmail `payload` object; unknown shapes become empty leaves."""

    if not isinstance(payload, dict):
        return LeafPart(mime_type="", data=None)

    mime_type = payload.get("mimeType")
    mime_type = mime_type.lower() if isinstance(mime_type, str) else ""

    body = payload.get("body")
    data = body.get("data") if isinstance(body, dict) else None
    if isinstance(data, str) and data:
        return LeafPart(mime_type=mime_type, data=data, charset=_charset_from_headers(payload.get("headers")))

    parts = payload.get("parts")
    if isinstance(parts, list) and parts:
        return ContainerPart(
            mime_type=mime_type,
            children=tuple(part_from_gmail_payload(p) for p in parts),
        )
    return LeafPart(mime_type=mime_type, data=None)


def part_from_email_message(msg: Message) -> MimePart:
    """Build a part tree from a parsed RFC 822 message (Graph `$value` downloads)."""

    mime_type = msg.get_content_type()
    if msg.is_multipart():
        payload = msg.get_payload()
        children = payload if isinstance(payload, list) else []
        return ContainerPart(
            mime_type=mime_type,
            children=tuple(part_from_email_message(c) for c in children if isinstance(c, Message)),
        )

    if msg.get_content_disposition() == "attachment" or not mime_type.startswith("text/"):
        return LeafPart(mime_type=mime_type, data=None)

    raw = msg.get_payload(decode=True)
    if not raw:
        return LeafPart(mime_type=mime_type, data=None)
    return LeafPart(
        mime_type=mime_type,
        data=base64.urlsafe_b64encode(raw).decode("ascii"),
        charset=msg.get_content_charset(),
    )


def first_body_text(part: MimePart) -> str:
    """Depth-first, first-match search for decodable inline content.

    A leaf whose data does not decode counts as "no body" and the search moves on.
    """

    if isinstance(part, LeafPart):
        if not part.data:
            return ""
        try:
            raw = decode_base64url(part.data)
        except ValueError:
            return ""
        return _decode_text(raw, charset=part.charset)

    for child in part.children:
        text = first_body_text(child)
        if text:
            return text
    return ""
