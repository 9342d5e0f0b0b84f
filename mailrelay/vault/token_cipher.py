from __future__ import annotations

import base64
import binascii
import os

try:
    from cryptography.exceptions import InvalidTag
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM
    from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
except Exception as e:  # pragma: no cover
    raise RuntimeError("cryptography is required for the token vault (pyproject dependencies)") from e


NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32

KEY_DERIVATION_PADDED = "padded"
KEY_DERIVATION_PBKDF2 = "pbkdf2"
KEY_DERIVATIONS = (KEY_DERIVATION_PADDED, KEY_DERIVATION_PBKDF2)


class DecryptionError(RuntimeError):
    pass


def derive_key(
    *,
    secret: str,
    key_derivation: str = KEY_DERIVATION_PADDED,
    pbkdf2_salt: str = "",
    pbkdf2_iterations: int = 100_000,
) -> bytes:
    if not secret:
        raise ValueError("encryption secret must be non-empty")

    if key_derivation == KEY_DERIVATION_PADDED:
        key = secret.ljust(KEY_BYTES, "0")[:KEY_BYTES].encode("utf-8")
        if len(key) != KEY_BYTES:
            raise ValueError("padded key derivation requires a secret whose first 32 characters are ASCII")
        return key

    if key_derivation == KEY_DERIVATION_PBKDF2:
        if not pbkdf2_salt:
            raise ValueError("pbkdf2 key derivation requires a salt")
        if pbkdf2_iterations <= 0:
            raise ValueError("pbkdf2 iterations must be > 0")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_BYTES,
            salt=pbkdf2_salt.encode("utf-8"),
            iterations=int(pbkdf2_iterations),
        )
        return kdf.derive(secret.encode("utf-8"))

    raise ValueError(f"unsupported key derivation: {key_derivation}")


class TokenCipher:
    """AES-256-GCM for stored OAuth tokens.

    Text form is base64(nonce || ciphertext+tag) with a 12-byte random nonce.
    """

    def __init__(self, *, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise ValueError("token cipher key must be 32 bytes")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not isinstance(token, str) or not token:
            raise DecryptionError("empty ciphertext")
        try:
            raw = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError, ValueError) as e:
            raise DecryptionError("ciphertext is not valid base64") from e
        if len(raw) < NONCE_BYTES + TAG_BYTES:
            raise DecryptionError("ciphertext too short")

        nonce, sealed = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
        try:
            plain = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise DecryptionError("ciphertext failed authentication (wrong key or tampered data)") from e
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("decrypted token is not UTF-8") from e
