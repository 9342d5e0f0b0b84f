from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Optional, Protocol


class TransportError(RuntimeError):
    pass


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= int(self.status) < 300

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))

    def text(self, *, limit: int = 500) -> str:
        return self.body[:limit].decode("utf-8", errors="replace")


class HttpCall(Protocol):
    def __call__(
        self,
        *,
        method: str,
        url: str,
        headers: dict[str, str],
        body: Optional[bytes],
        timeout_seconds: float,
    ) -> HttpResponse:
        ...


def urllib_http_call(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: Optional[bytes],
    timeout_seconds: float,
) -> HttpResponse:
    """Perform one bounded HTTP exchange.

    Non-2xx answers come back as a response; connection failures and timeouts raise
    TransportError.
    """

    req = urllib.request.Request(url, data=body, headers=dict(headers), method=method)
    try:
        with urllib.request.urlopen(req, timeout=float(timeout_seconds)) as resp:
            return HttpResponse(status=int(resp.status), body=resp.read())
    except urllib.error.HTTPError as e:
        try:
            raw = e.read() or b""
        except Exception:
            raw = b""
        return HttpResponse(status=int(e.code), body=raw)
    except Exception as e:
        raise TransportError(f"{method} {url} failed: {type(e).__name__}: {e}") from e
