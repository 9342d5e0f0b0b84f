from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from mailrelay.auth.config import BearerConfig
from mailrelay.transport.http import HttpCall, TransportError, urllib_http_call


class BearerAuthError(RuntimeError):
    pass


@dataclass(frozen=True)
class AuthenticatedCaller:
    actor_id: str
    claims: dict[str, Any]


def bearer_token_from_headers(headers: Mapping[str, str]) -> Optional[str]:
    auth = None
    for k, v in headers.items():
        if str(k).lower() == "authorization":
            auth = str(v)
            break
    if not auth:
        return None
    scheme, _, token = auth.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _require_pyjwt():
    try:
        import jwt  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError("PyJWT is required for bearer validation (pyproject dependencies)") from e
    return jwt


class BearerVerifier:
    """Validates inbound bearer JWTs.

    `shared_secret` mode checks an HMAC signature with a configured secret; `oidc` mode
    resolves signing keys through issuer discovery and JWKS.
    """

    def __init__(
        self,
        *,
        config: BearerConfig,
        shared_secret: Optional[str] = None,
        http_call: HttpCall = urllib_http_call,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if config.mode == "shared_secret" and not shared_secret:
            raise ValueError("shared_secret mode requires a non-empty shared secret")
        self._config = config
        self._shared_secret = shared_secret
        self._http_call = http_call
        self._monotonic = monotonic
        self._jwks_url: Optional[str] = None
        self._jwks_client = None
        self._jwks_created_at = 0.0

    def _jwks_uri(self) -> str:
        issuer_url = str(self._config.issuer_url).rstrip("/")
        url = issuer_url + "/.well-known/openid-configuration"
        try:
            resp = self._http_call(
                method="GET",
                url=url,
                headers={"Accept": "application/json"},
                body=None,
                timeout_seconds=float(self._config.http_timeout_seconds),
            )
        except TransportError as e:
            raise BearerAuthError(f"failed to fetch {url}") from e
        if not resp.ok:
            raise BearerAuthError(f"HTTP {resp.status} fetching {url}")
        try:
            doc = resp.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise BearerAuthError(f"invalid JSON from {url}") from e
        jwks_uri = doc.get("jwks_uri") if isinstance(doc, dict) else None
        if not isinstance(jwks_uri, str) or not jwks_uri:
            raise BearerAuthError("discovery missing jwks_uri")
        return jwks_uri

    def _new_jwks_client(self, jwt) -> Any:
        if self._jwks_url is None:
            self._jwks_url = self._jwks_uri()
        self._jwks_client = jwt.PyJWKClient(self._jwks_url, timeout=int(self._config.http_timeout_seconds))
        self._jwks_created_at = self._monotonic()
        return self._jwks_client

    def _signing_key(self, token: str) -> Any:
        if self._config.mode == "shared_secret":
            return self._shared_secret

        jwt = _require_pyjwt()
        client = self._jwks_client if self._jwks_client is not None else self._new_jwks_client(jwt)
        try:
            return client.get_signing_key_from_jwt(token).key
        except jwt.PyJWKClientError as e:
            # An unknown kid after key rotation: refetch the JWKS, at most once per cooldown.
            if self._monotonic() - self._jwks_created_at < self._config.jwks_refresh_cooldown_seconds:
                raise BearerAuthError(f"unable to resolve signing key: {type(e).__name__}") from e
        except Exception as e:
            raise BearerAuthError(f"unable to resolve signing key: {type(e).__name__}") from e

        try:
            return self._new_jwks_client(jwt).get_signing_key_from_jwt(token).key
        except Exception as e:
            raise BearerAuthError(f"unable to resolve signing key: {type(e).__name__}") from e

    def verify(self, *, token: str) -> AuthenticatedCaller:
        if not token:
            raise BearerAuthError("empty token")

        jwt = _require_pyjwt()
        key = self._signing_key(token)

        options: dict[str, Any] = {}
        if self._config.audience is None:
            options["verify_aud"] = False

        kwargs: dict[str, Any] = {}
        if self._config.issuer_url is not None:
            kwargs["issuer"] = self._config.issuer_url.rstrip("/")

        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=list(self._config.accepted_algorithms),
                audience=self._config.audience,
                options=options,
                leeway=int(self._config.leeway_seconds),
                **kwargs,
            )
        except jwt.PyJWTError as e:
            raise BearerAuthError(f"invalid token: {type(e).__name__}") from e

        if not isinstance(claims, dict):
            raise BearerAuthError("decoded claims is not an object")

        actor_id = claims.get(self._config.actor_id_claim)
        if not isinstance(actor_id, str) or not actor_id:
            raise BearerAuthError(f"missing actor_id claim: {self._config.actor_id_claim}")
        return AuthenticatedCaller(actor_id=actor_id, claims=dict(claims))
