"""Keyed integrity digests over transaction records (HMAC-SHA256)."""

import base64
import binascii
import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from paygate.core.errors import ConfigurationError

EXPECTED_KEY_BYTES = 64


def canonical_bytes(record: Dict[str, Any]) -> bytes:
    """Stable serialization: sorted keys, no whitespace, non-JSON types as strings."""
    return json.dumps(record, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


class IntegritySigner:
    """Sign and verify records with a key independent of the envelope key."""

    def __init__(self, key_b64: str):
        self._key_b64 = key_b64
        self._key: Optional[bytes] = None

    def _signing_key(self) -> bytes:
        if self._key is None:
            if not self._key_b64:
                raise ConfigurationError("PAYMENT_HMAC_KEY is not set")
            try:
                key = base64.b64decode(self._key_b64, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ConfigurationError("PAYMENT_HMAC_KEY is not valid base64") from e
            if len(key) != EXPECTED_KEY_BYTES:
                raise ConfigurationError("PAYMENT_HMAC_KEY must be a base64-encoded 64-byte key")
            self._key = key
        return self._key

    def sign(self, record: Dict[str, Any]) -> str:
        return hmac.new(self._signing_key(), canonical_bytes(record), hashlib.sha256).hexdigest()

    def verify(self, record: Dict[str, Any], digest: str) -> bool:
        expected = self.sign(record)
        if not isinstance(digest, str) or not digest.isascii():
            return False
        return hmac.compare_digest(expected, digest)
