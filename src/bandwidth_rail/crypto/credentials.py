"""
Partner API Credentials

The API key is an identifier and is stored as-is for lookup. The API secret
is only ever stored as a SHA-256 digest and compared in constant time.
"""

import hashlib
import hmac
import secrets
from typing import Tuple


def generate_credentials() -> Tuple[str, str]:
    """Return a fresh (api_key, api_secret) pair, 32 random bytes each, hex encoded."""
    return secrets.token_hex(32), secrets.token_hex(32)


def hash_secret(api_secret: str) -> str:
    return hashlib.sha256(api_secret.encode("utf-8")).hexdigest()


def secret_matches(api_secret: str, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_secret(api_secret), stored_hash)
