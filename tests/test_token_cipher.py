import base64
import unittest

from mailrelay.vault.token_cipher import (
    KEY_BYTES,
    NONCE_BYTES,
    TAG_BYTES,
    DecryptionError,
    TokenCipher,
    derive_key,
)


class TestTokenCipher(unittest.TestCase):
    def test_ciphertext_layout_is_nonce_then_sealed_payload(self) -> None:
        cipher = TokenCipher(key=derive_key(secret="k1"))
        token = cipher.encrypt("ya29.access")
        raw = base64.b64decode(token)
        self.assertEqual(len(raw), NONCE_BYTES + len("ya29.access") + TAG_BYTES)
        self.assertEqual(cipher.decrypt(token), "ya29.access")

    def test_encrypt_uses_fresh_nonce(self) -> None:
        cipher = TokenCipher(key=derive_key(secret="k1"))
        self.assertNotEqual(cipher.encrypt("same"), cipher.encrypt("same"))

    def test_wrong_key_fails_with_decryption_error(self) -> None:
        token = TokenCipher(key=derive_key(secret="k1")).encrypt("secret")
        with self.assertRaises(DecryptionError):
            TokenCipher(key=derive_key(secret="k2")).decrypt(token)

    def test_tampered_or_truncated_input_fails(self) -> None:
        cipher = TokenCipher(key=derive_key(secret="k1"))
        raw = bytearray(base64.b64decode(cipher.encrypt("secret")))
        raw[-1] ^= 0x01
        with self.assertRaises(DecryptionError):
            cipher.decrypt(base64.b64encode(bytes(raw)).decode("ascii"))
        with self.assertRaises(DecryptionError):
            cipher.decrypt(base64.b64encode(b"short").decode("ascii"))
        with self.assertRaises(DecryptionError):
            cipher.decrypt("!!! not base64 !!!")

    def test_padded_derivation_pads_and_truncates_to_key_size(self) -> None:
        self.assertEqual(derive_key(secret="abc"), b"abc" + b"0" * (KEY_BYTES - 3))
        self.assertEqual(derive_key(secret="x" * 40), b"x" * KEY_BYTES)

    def test_pbkdf2_derivation_requires_salt_and_is_deterministic(self) -> None:
        with self.assertRaises(ValueError):
            derive_key(secret="s", key_derivation="pbkdf2")
        k1 = derive_key(secret="s", key_derivation="pbkdf2", pbkdf2_salt="salt", pbkdf2_iterations=1000)
        k2 = derive_key(secret="s", key_derivation="pbkdf2", pbkdf2_salt="salt", pbkdf2_iterations=1000)
        self.assertEqual(k1, k2)
        self.assertEqual(len(k1), KEY_BYTES)

    def test_empty_secret_and_unknown_derivation_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            derive_key(secret="")
        with self.assertRaises(ValueError):
            derive_key(secret="s", key_derivation="rot13")


if __name__ == "__main__":
    unittest.main()
