"""Session token hashing and short-lived realtime channel tokens."""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

ALGORITHM = "HS256"
REALTIME_TOKEN_TYPE = "realtime"


def generate_session_token() -> str:
    """
    Generate an opaque bearer session token.

    Returns:
        str: Token in format sess_<64 hex characters>
    """
    return f"sess_{secrets.token_hex(32)}"


def hash_session_token(token: str) -> str:
    """
    Hash a session token using SHA-256.

    Args:
        token: The plaintext bearer token

    Returns:
        str: SHA-256 hash of the token as hex string
    """
    return hashlib.sha256(token.encode()).hexdigest()


def issue_realtime_token(uid: str, secret: str, ttl_seconds: int = 300) -> str:
    """Create a signed token scoping one realtime connection to ``uid``."""
    now = datetime.now(timezone.utc)
    payload = {
        "uid": uid,
        "type": REALTIME_TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(seconds=ttl_seconds),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_realtime_token(token: str, secret: str) -> Optional[str]:
    """
    Validate a realtime token.

    Returns:
        The uid the token is bound to, or None if it is expired, forged
        or not a realtime token.
    """
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        return None

    uid = payload.get("uid")
    if payload.get("type") != REALTIME_TOKEN_TYPE or not uid:
        return None
    return uid
