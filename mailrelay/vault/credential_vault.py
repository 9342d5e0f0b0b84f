from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional

from mailrelay.observability.metrics import inc_token_refresh
from mailrelay.store.models import MailboxConnection, as_utc
from mailrelay.vault.oauth_refresh import OAuthRefreshClient, RefreshError
from mailrelay.vault.token_cipher import TokenCipher


DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessToken:
    token: str
    connection: MailboxConnection
    refreshed: bool


class CredentialVault:
    """Turns a stored MailboxConnection into a currently-valid plaintext access token.

    A refreshed token (and a rotated refresh token, when the provider issues one) is
    encrypted and persisted before it is returned. A failed refresh leaves the stored row
    untouched so the next invocation retries.
    """

    def __init__(
        self,
        *,
        cipher: TokenCipher,
        store,
        refreshers: Mapping[str, OAuthRefreshClient],
        default_lifetime_seconds: int = DEFAULT_TOKEN_LIFETIME_SECONDS,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        if default_lifetime_seconds <= 0:
            raise ValueError("default_lifetime_seconds must be > 0")
        self._cipher = cipher
        self._store = store
        self._refreshers = dict(refreshers)
        self._default_lifetime_seconds = int(default_lifetime_seconds)
        self._now = now

    def is_expired(self, connection: MailboxConnection) -> bool:
        expires_at = as_utc(connection.expires_at)
        if expires_at is None:
            return True
        return expires_at <= as_utc(self._now())

    def resolve(self, connection: MailboxConnection) -> AccessToken:
        # DecryptionError propagates: a wrong key is fatal for the invocation.
        if connection.access_token_encrypted and not self.is_expired(connection):
            token = self._cipher.decrypt(connection.access_token_encrypted)
            return AccessToken(token=token, connection=connection, refreshed=False)
        return self._refresh(connection)

    def _refresh(self, connection: MailboxConnection) -> AccessToken:
        if not connection.refresh_token_encrypted:
            inc_token_refresh(result="unavailable")
            raise RefreshError("access token expired and no refresh token is stored")

        refresher = self._refreshers.get(connection.provider)
        if refresher is None:
            inc_token_refresh(result="unavailable")
            raise RefreshError(f"no token endpoint configured for provider: {connection.provider}")

        refresh_token = self._cipher.decrypt(connection.refresh_token_encrypted)
        try:
            grant = refresher.refresh(refresh_token=refresh_token)
        except RefreshError:
            inc_token_refresh(result="failed")
            raise

        lifetime = grant.expires_in_seconds or self._default_lifetime_seconds
        expires_at = as_utc(self._now()) + timedelta(seconds=lifetime)
        rotated: Optional[str] = None
        if grant.refresh_token is not None and grant.refresh_token != refresh_token:
            rotated = self._cipher.encrypt(grant.refresh_token)

        updated = self._store.update_connection_tokens(
            connection=connection,
            access_token_encrypted=self._cipher.encrypt(grant.access_token),
            refresh_token_encrypted=rotated,
            expires_at=expires_at,
        )
        inc_token_refresh(result="refreshed")
        return AccessToken(token=grant.access_token, connection=updated, refreshed=True)
