"""Authenticated encryption of pending transaction records at rest (AES-256-GCM)."""

import base64
import binascii
import json
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from paygate.core.errors import ConfigurationError, DecryptionError

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


class TransactionEnvelope:
    """
    Seal and open transaction records.

    The envelope is a dict of base64 strings: ``nonce`` (96 bit, random per
    call), ``tag`` (128 bit) and ``ciphertext``. The key is decoded on first
    use; a missing or wrong-length key raises ConfigurationError.
    """

    def __init__(self, key_b64: str):
        self._key_b64 = key_b64
        self._aead: Optional[AESGCM] = None

    def _cipher(self) -> AESGCM:
        if self._aead is None:
            if not self._key_b64:
                raise ConfigurationError("PAYMENT_ENC_KEY is not set")
            try:
                key = base64.b64decode(self._key_b64, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ConfigurationError("PAYMENT_ENC_KEY is not valid base64") from e
            if len(key) != KEY_BYTES:
                raise ConfigurationError("PAYMENT_ENC_KEY must be a base64-encoded 32-byte key")
            self._aead = AESGCM(key)
        return self._aead

    def ensure_key(self) -> None:
        """Fail fast with ConfigurationError before any side effect depends on sealing."""
        self._cipher()

    def seal(self, record: Dict[str, Any]) -> Dict[str, str]:
        aead = self._cipher()
        nonce = os.urandom(NONCE_BYTES)
        plaintext = json.dumps(record, sort_keys=True).encode("utf-8")
        sealed = aead.encrypt(nonce, plaintext, None)
        return {
            "nonce": _b64(nonce),
            "tag": _b64(sealed[-TAG_BYTES:]),
            "ciphertext": _b64(sealed[:-TAG_BYTES]),
        }

    def open(self, envelope: Dict[str, str]) -> Dict[str, Any]:
        aead = self._cipher()
        try:
            nonce = base64.b64decode(envelope["nonce"], validate=True)
            tag = base64.b64decode(envelope["tag"], validate=True)
            ciphertext = base64.b64decode(envelope["ciphertext"], validate=True)
        except (KeyError, TypeError, binascii.Error, ValueError) as e:
            raise DecryptionError("Malformed transaction envelope") from e

        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise DecryptionError("Malformed transaction envelope")

        try:
            plaintext = aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Transaction envelope failed authentication") from e

        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecryptionError("Transaction envelope payload is not a record") from e
