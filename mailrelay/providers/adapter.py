from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from mailrelay.normalize.mime_tree import MimePart


PROVIDER_GMAIL = "gmail"
PROVIDER_MICROSOFT = "microsoft"
PROVIDERS = (PROVIDER_GMAIL, PROVIDER_MICROSOFT)


class ListingError(RuntimeError):
    pass


class FetchError(RuntimeError):
    pass


@dataclass(frozen=True)
class HeaderField:
    name: str
    value: str


@dataclass(frozen=True)
class ProviderMessage:
    message_id: str
    headers: tuple[HeaderField, ...]
    body: MimePart


class MailProviderAdapter(ABC):
    """Adapter boundary for a remote mailbox API."""

    provider: str

    @abstractmethod
    def list_unread_ids(self, *, access_token: str, mailbox_address: str, limit: int) -> list[str]:
        """Return up to `limit` ids of currently unread messages.

        Raises ListingError on transport failures and non-2xx answers.
        """

    @abstractmethod
    def fetch_message(self, *, access_token: str, mailbox_address: str, message_id: str) -> ProviderMessage:
        """Return headers and the MIME part tree for one message, or raise FetchError."""
