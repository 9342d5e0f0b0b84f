from __future__ import annotations

import urllib.parse
from typing import Any

from mailrelay.normalize.mime_tree import part_from_gmail_payload
from mailrelay.providers.adapter import (
    PROVIDER_GMAIL,
    FetchError,
    HeaderField,
    ListingError,
    MailProviderAdapter,
    ProviderMessage,
)
from mailrelay.transport.http import HttpCall, HttpResponse, TransportError, urllib_http_call


DEFAULT_GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"


def _headers_from_payload(payload: Any) -> tuple[HeaderField, ...]:
    if not isinstance(payload, dict):
        return ()
    raw = payload.get("headers")
    if not isinstance(raw, list):
        return ()
    out: list[HeaderField] = []
    for h in raw:
        if not isinstance(h, dict):
            continue
        name = h.get("name")
        value = h.get("value")
        if not isinstance(name, str) or not name:
            continue
        out.append(HeaderField(name=name, value=value if isinstance(value, str) else ""))
    return tuple(out)


class GmailAdapter(MailProviderAdapter):
    """Gmail REST adapter for the authenticated mailbox (`users/me`)."""

    provider = PROVIDER_GMAIL

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_GMAIL_API_BASE_URL,
        timeout_seconds: float = 15.0,
        http_call: HttpCall = urllib_http_call,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = float(timeout_seconds)
        self._http_call = http_call

    def _get(self, *, url: str, access_token: str) -> HttpResponse:
        if not access_token:
            raise ValueError("access token must be non-empty")
        return self._http_call(
            method="GET",
            url=url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            body=None,
            timeout_seconds=self._timeout_seconds,
        )

    def list_unread_ids(self, *, access_token: str, mailbox_address: str, limit: int) -> list[str]:
        if limit <= 0:
            raise ValueError("limit must be positive")
        qs = urllib.parse.urlencode({"maxResults": str(limit), "labelIds": "UNREAD"})
        url = f"{self._base_url}/users/me/messages?{qs}"

        try:
            resp = self._get(url=url, access_token=access_token)
        except TransportError as e:
            raise ListingError(str(e)) from e
        if not resp.ok:
            raise ListingError(f"HTTP {resp.status} listing unread messages: {resp.text(limit=200)}")

        try:
            data = resp.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise ListingError("invalid JSON from message listing") from e
        if not isinstance(data, dict):
            raise ListingError("unexpected listing response shape")

        # Gmail omits `messages` entirely when nothing matches.
        values = data.get("messages") or []
        if not isinstance(values, list):
            raise ListingError("unexpected listing response: messages is not a list")

        out: list[str] = []
        for item in values:
            if not isinstance(item, dict):
                continue
            msg_id = item.get("id")
            if isinstance(msg_id, str) and msg_id and msg_id not in out:
                out.append(msg_id)
        return out[:limit]

    def fetch_message(self, *, access_token: str, mailbox_address: str, message_id: str) -> ProviderMessage:
        url = f"{self._base_url}/users/me/messages/{urllib.parse.quote(message_id, safe='')}?format=full"
        try:
            resp = self._get(url=url, access_token=access_token)
        except TransportError as e:
            raise FetchError(str(e)) from e
        if not resp.ok:
            raise FetchError(f"HTTP {resp.status} fetching message {message_id}")

        try:
            data = resp.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise FetchError(f"invalid JSON for message {message_id}") from e
        if not isinstance(data, dict):
            raise FetchError(f"unexpected message shape for {message_id}")

        payload = data.get("payload")
        return ProviderMessage(
            message_id=message_id,
            headers=_headers_from_payload(payload),
            body=part_from_gmail_payload(payload),
        )
