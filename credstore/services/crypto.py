"""
AES-256-GCM encryption for stored platform credentials.

Encrypted wire format: ``{base64_iv}:{base64_ciphertext}``. The IV is
12 random bytes generated per call; the GCM tag travels at the end of the
ciphertext. The key comes from ``ENCRYPTION_KEY`` (base64 of 32 bytes)
and is never logged.
"""

import base64
import binascii
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
import structlog

from credstore.exceptions import DecryptionError

logger = structlog.get_logger()

IV_BYTES = 12
TOKEN_SEPARATOR = ":"

# Replaces the credentials field in any response for an encrypted record
REDACTED = "[ENCRYPTED]"


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def load_key(encoded_key: str) -> bytes:
    """Decode a base64 AES-256 key, raising ValueError when unusable."""
    if not encoded_key:
        raise ValueError("ENCRYPTION_KEY is not set")
    try:
        key = _b64decode(encoded_key.strip())
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError("ENCRYPTION_KEY is not valid base64") from e
    if len(key) != 32:
        raise ValueError("ENCRYPTION_KEY must decode to 32 bytes")
    return key


def is_encrypted_token(value: Any) -> bool:
    """Check whether a stored value has the ``iv:ciphertext`` wire shape."""
    if not isinstance(value, str) or value.count(TOKEN_SEPARATOR) != 1:
        return False
    iv_part, cipher_part = value.split(TOKEN_SEPARATOR)
    try:
        return len(_b64decode(iv_part)) == IV_BYTES and len(_b64decode(cipher_part)) > 16
    except (binascii.Error, UnicodeEncodeError):
        return False


class CredentialCipher:
    """Authenticated symmetric encryption for credential documents."""

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("AES-256-GCM requires a 32 byte key")
        self._aead = AESGCM(key)

    @classmethod
    def from_encoded_key(cls, encoded_key: str) -> "CredentialCipher":
        return cls(load_key(encoded_key))

    def __repr__(self) -> str:
        return "CredentialCipher(key=<redacted>)"

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Returns:
            ``iv:ciphertext`` with both parts base64 encoded
        """
        iv = os.urandom(IV_BYTES)
        ciphertext = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return (
            base64.b64encode(iv).decode("ascii")
            + TOKEN_SEPARATOR
            + base64.b64encode(ciphertext).decode("ascii")
        )

    def decrypt(self, token: str) -> str:
        """
        Decrypt an ``iv:ciphertext`` token.

        Raises:
            DecryptionError: On malformed tokens, tampered ciphertext or a wrong key
        """
        if not isinstance(token, str) or token.count(TOKEN_SEPARATOR) != 1:
            raise DecryptionError("Invalid encrypted data format")

        iv_part, cipher_part = token.split(TOKEN_SEPARATOR)
        try:
            iv = _b64decode(iv_part)
            ciphertext = _b64decode(cipher_part)
        except (binascii.Error, UnicodeEncodeError):
            raise DecryptionError("Invalid encrypted data format")

        if len(iv) != IV_BYTES:
            raise DecryptionError("Invalid encrypted data format")

        try:
            plaintext = self._aead.decrypt(iv, ciphertext, None)
        except InvalidTag:
            # Tampered ciphertext or a key that does not match
            raise DecryptionError("Credential authentication tag mismatch")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted credentials are not valid UTF-8")

    def encrypt_document(self, document: dict[str, Any]) -> str:
        return self.encrypt(json.dumps(document, separators=(",", ":"), ensure_ascii=False))

    def decrypt_document(self, token: str) -> dict[str, Any]:
        plaintext = self.decrypt(token)
        try:
            document = json.loads(plaintext)
        except ValueError:
            raise DecryptionError("Decrypted credentials are not valid JSON")
        if not isinstance(document, dict):
            raise DecryptionError("Decrypted credentials are not a JSON object")
        return document

    def open_stored(self, credentials: Any, encrypted: bool) -> dict[str, Any]:
        """
        Return the plain credential document for a stored record.

        Encrypted records must hold the wire token and plain records a JSON
        object; any other combination is refused rather than guessed at.
        """
        if credentials is None:
            return {}

        if encrypted:
            if not isinstance(credentials, str):
                raise DecryptionError(
                    "Record is flagged encrypted but holds a plain document"
                )
            return self.decrypt_document(credentials)

        if not isinstance(credentials, dict):
            raise DecryptionError(
                "Record is flagged plain but holds an opaque value"
            )
        return credentials
