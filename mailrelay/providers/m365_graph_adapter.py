from __future__ import annotations

from email import policy
from email.parser import BytesParser
from urllib.parse import quote, urlencode

from mailrelay.normalize.mime_tree import part_from_email_message
from mailrelay.providers.adapter import (
    PROVIDER_MICROSOFT,
    FetchError,
    HeaderField,
    ListingError,
    MailProviderAdapter,
    ProviderMessage,
)
from mailrelay.transport.http import HttpCall, HttpResponse, TransportError, urllib_http_call


DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"


class M365GraphAdapter(MailProviderAdapter):
    """Microsoft Graph adapter; unread ids come from the Inbox folder, content from `$value`."""

    provider = PROVIDER_MICROSOFT

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_GRAPH_BASE_URL,
        folder_id: str = "Inbox",
        timeout_seconds: float = 15.0,
        http_call: HttpCall = urllib_http_call,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._folder_id = folder_id
        self._timeout_seconds = float(timeout_seconds)
        self._http_call = http_call

    def _get(self, *, url: str, access_token: str, accept: str) -> HttpResponse:
        if not access_token:
            raise ValueError("access token must be non-empty")
        return self._http_call(
            method="GET",
            url=url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": accept},
            body=None,
            timeout_seconds=self._timeout_seconds,
        )

    def _user_path(self, mailbox_address: str) -> str:
        return f"{self._base_url}/users/{quote(mailbox_address, safe='@')}"

    def list_unread_ids(self, *, access_token: str, mailbox_address: str, limit: int) -> list[str]:
        if limit <= 0:
            raise ValueError("limit must be positive")
        qs = urlencode({"$filter": "isRead eq false", "$select": "id", "$top": str(limit)})
        url = f"{self._user_path(mailbox_address)}/mailFolders/{self._folder_id}/messages?{qs}"

        try:
            resp = self._get(url=url, access_token=access_token, accept="application/json")
        except TransportError as e:
            raise ListingError(str(e)) from e
        if not resp.ok:
            raise ListingError(f"HTTP {resp.status} listing unread messages: {resp.text(limit=200)}")

        try:
            data = resp.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise ListingError("invalid JSON from Graph listing") from e
        values = data.get("value", []) if isinstance(data, dict) else None
        if not isinstance(values, list):
            raise ListingError("unexpected Graph listing response: value is not a list")

        out: list[str] = []
        for item in values:
            if not isinstance(item, dict):
                continue
            msg_id = item.get("id")
            if isinstance(msg_id, str) and msg_id and msg_id not in out:
                out.append(msg_id)
        return out[:limit]

    def fetch_message(self, *, access_token: str, mailbox_address: str, message_id: str) -> ProviderMessage:
        url = f"{self._user_path(mailbox_address)}/messages/{quote(message_id, safe='')}/$value"
        try:
            resp = self._get(url=url, access_token=access_token, accept="message/rfc822")
        except TransportError as e:
            raise FetchError(str(e)) from e
        if not resp.ok:
            raise FetchError(f"HTTP {resp.status} fetching message {message_id}")
        if not resp.body:
            raise FetchError(f"empty MIME content for message {message_id}")

        # compat32 keeps raw header text; encoded words are decoded during normalization.
        msg = BytesParser(policy=policy.compat32).parsebytes(resp.body)
        headers = tuple(HeaderField(name=str(k), value=str(v)) for k, v in msg.items())
        return ProviderMessage(message_id=message_id, headers=headers, body=part_from_email_message(msg))
