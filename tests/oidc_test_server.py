from __future__ import annotations

import json
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Iterator

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm


@dataclass
class OidcTestServer:
    issuer_url: str = ""
    keys: dict[str, Any] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def rotate_keys(self, *, kids: list[str]) -> None:
        new = {kid: rsa.generate_private_key(public_exponent=65537, key_size=2048) for kid in kids}
        with self.lock:
            self.keys = new

    def jwks(self) -> dict[str, Any]:
        out = []
        with self.lock:
            items = list(self.keys.items())
        for kid, key in items:
            jwk = json.loads(RSAAlgorithm.to_jwk(key.public_key()))
            jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
            out.append(jwk)
        return {"keys": out}

    def issue_token(self, *, sub: str, kid: str, audience: str | None = None, ttl_seconds: int = 300) -> str:
        with self.lock:
            key = self.keys[kid]
        now = int(time.time())
        claims: dict[str, Any] = {"iss": self.issuer_url, "sub": sub, "iat": now, "exp": now + ttl_seconds}
        if audience is not None:
            claims["aud"] = audience
        return jwt.encode(claims, key, algorithm="RS256", headers={"kid": kid})


@contextmanager
def run_oidc_test_server() -> Iterator[OidcTestServer]:
    state = OidcTestServer()
    state.rotate_keys(kids=["kid1"])

    class Handler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
            return

        def do_GET(self) -> None:  # noqa: N802
            if self.path == "/.well-known/openid-configuration":
                obj: Any = {"issuer": state.issuer_url, "jwks_uri": state.issuer_url + "/jwks"}
            elif self.path == "/jwks":
                obj = state.jwks()
            else:
                self.send_response(404)
                self.end_headers()
                return
            payload = json.dumps(obj).encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

    srv = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    host, port = srv.server_address
    state.issuer_url = f"http://{host}:{port}"
    t = threading.Thread(target=srv.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True)
    t.start()
    try:
        yield state
    finally:
        srv.shutdown()
        srv.server_close()
        t.join(timeout=2)
