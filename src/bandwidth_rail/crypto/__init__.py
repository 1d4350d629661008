"""
Cryptographic Helpers for Bandwidth Rail

- Partner API secret hashing and constant-time comparison
- Fernet encryption of payout payment details at rest
"""

from .credentials import generate_credentials, hash_secret, secret_matches
from .fields import PaymentDetailsCipher, mask_detail

__all__ = [
    "generate_credentials",
    "hash_secret",
    "secret_matches",
    "PaymentDetailsCipher",
    "mask_detail",
]
