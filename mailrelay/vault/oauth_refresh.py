from __future__ import annotations

import urllib.parse
from dataclasses import dataclass
from typing import Any, Optional

from mailrelay.transport.http import HttpCall, TransportError, urllib_http_call


class RefreshError(RuntimeError):
    pass


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in_seconds: Optional[int]
    refresh_token: Optional[str]


def _parse_expires_in(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


@dataclass(frozen=True)
class OAuthRefreshClient:
    """OAuth2 refresh_token grant against one provider token endpoint."""

    token_url: str
    client_id: str
    client_secret: Optional[str] = None
    scope: Optional[str] = None
    timeout_seconds: float = 15.0
    http_call: HttpCall = urllib_http_call

    def refresh(self, *, refresh_token: str) -> TokenGrant:
        if not refresh_token:
            raise RefreshError("no refresh token available")

        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }
        if self.client_secret is not None:
            form["client_secret"] = self.client_secret
        if self.scope is not None:
            form["scope"] = self.scope

        try:
            resp = self.http_call(
                method="POST",
                url=self.token_url,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
                body=urllib.parse.urlencode(form).encode("utf-8"),
                timeout_seconds=self.timeout_seconds,
            )
        except TransportError as e:
            raise RefreshError(f"token endpoint unreachable: {e}") from e

        if not resp.ok:
            raise RefreshError(f"HTTP {resp.status} from token endpoint: {resp.text(limit=200)}")

        try:
            obj = resp.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise RefreshError("invalid JSON from token endpoint") from e
        if not isinstance(obj, dict):
            raise RefreshError("invalid token endpoint response shape")

        access_token = obj.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise RefreshError("token endpoint did not return access_token")

        rotated = obj.get("refresh_token")
        if not isinstance(rotated, str) or not rotated:
            rotated = None

        return TokenGrant(
            access_token=access_token,
            expires_in_seconds=_parse_expires_in(obj.get("expires_in")),
            refresh_token=rotated,
        )

