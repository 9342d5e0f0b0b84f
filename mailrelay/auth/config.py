from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence


BEARER_MODES = ("shared_secret", "oidc")


def _require_dict(obj: Any, *, path: str) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise ValueError(f"{path} must be a mapping")
    return obj


def _require_str(obj: Any, *, path: str) -> str:
    if not isinstance(obj, str) or not obj:
        raise ValueError(f"{path} must be a non-empty string")
    return obj


def _require_int(obj: Any, *, path: str) -> int:
    if not isinstance(obj, int) or isinstance(obj, bool):
        raise ValueError(f"{path} must be an integer")
    return int(obj)


def _require_optional_str(obj: Any, *, path: str) -> Optional[str]:
    if obj is None:
        return None
    if not isinstance(obj, str) or not obj:
        raise ValueError(f"{path} must be a non-empty string or null")
    return obj


def _require_list_of_str(obj: Any, *, path: str) -> list[str]:
    if not isinstance(obj, list) or not all(isinstance(x, str) and x for x in obj):
        raise ValueError(f"{path} must be a list of non-empty strings")
    return list(obj)


@dataclass(frozen=True)
class BearerConfig:
    mode: str
    shared_secret_env: Optional[str]
    issuer_url: Optional[str]
    audience: Optional[str]
    actor_id_claim: str
    accepted_algorithms: Sequence[str]
    leeway_seconds: int
    http_timeout_seconds: int
    jwks_refresh_cooldown_seconds: int = 30


@dataclass(frozen=True)
class AuthConfig:
    bearer: BearerConfig


def parse_auth_config(doc: Any) -> AuthConfig:
    doc = _require_dict(doc, path="config")
    auth = _require_dict(doc.get("auth"), path="auth")
    bearer = _require_dict(auth.get("bearer"), path="auth.bearer")

    mode = _require_str(bearer.get("mode"), path="auth.bearer.mode")
    if mode not in BEARER_MODES:
        raise ValueError(f"auth.bearer.mode must be one of: {', '.join(BEARER_MODES)}")

    shared_secret_env = _require_optional_str(bearer.get("shared_secret_env"), path="auth.bearer.shared_secret_env")
    issuer_url = _require_optional_str(bearer.get("issuer_url"), path="auth.bearer.issuer_url")
    if mode == "shared_secret" and shared_secret_env is None:
        raise ValueError("auth.bearer.mode=shared_secret requires auth.bearer.shared_secret_env")
    if mode == "oidc" and issuer_url is None:
        raise ValueError("auth.bearer.mode=oidc requires auth.bearer.issuer_url")

    default_algs = ["HS256"] if mode == "shared_secret" else ["RS256"]
    accepted_algorithms = tuple(
        _require_list_of_str(bearer.get("accepted_algorithms", default_algs), path="auth.bearer.accepted_algorithms")
    )
    if not accepted_algorithms:
        raise ValueError("auth.bearer.accepted_algorithms must not be empty")

    leeway_seconds = _require_int(bearer.get("leeway_seconds", 30), path="auth.bearer.leeway_seconds")
    if leeway_seconds < 0:
        raise ValueError("auth.bearer.leeway_seconds must be >= 0")

    http_timeout_seconds = _require_int(bearer.get("http_timeout_seconds", 5), path="auth.bearer.http_timeout_seconds")
    if http_timeout_seconds <= 0:
        raise ValueError("auth.bearer.http_timeout_seconds must be > 0")

    jwks_refresh_cooldown_seconds = _require_int(
        bearer.get("jwks_refresh_cooldown_seconds", 30), path="auth.bearer.jwks_refresh_cooldown_seconds"
    )
    if jwks_refresh_cooldown_seconds < 0:
        raise ValueError("auth.bearer.jwks_refresh_cooldown_seconds must be >= 0")

    return AuthConfig(
        bearer=BearerConfig(
            mode=mode,
            shared_secret_env=shared_secret_env,
            issuer_url=issuer_url,
            audience=_require_optional_str(bearer.get("audience"), path="auth.bearer.audience"),
            actor_id_claim=_require_str(bearer.get("actor_id_claim", "sub"), path="auth.bearer.actor_id_claim"),
            accepted_algorithms=accepted_algorithms,
            leeway_seconds=leeway_seconds,
            http_timeout_seconds=http_timeout_seconds,
            jwks_refresh_cooldown_seconds=jwks_refresh_cooldown_seconds,
        )
    )


def load_auth_config(*, path: Path) -> AuthConfig:
    try:
        import yaml
    except Exception as e:  # pragma: no cover
        raise RuntimeError(f"PyYAML dependency unavailable: {e}") from e

    return parse_auth_config(yaml.safe_load(path.read_text(encoding="utf-8")))
