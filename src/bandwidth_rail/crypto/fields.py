"""
Field Encryption for Payment Details

Payout destinations (PayPal email, wallet address, bank account) are PII.
They are stored as Fernet tokens and only decrypted when a payout is sent.
"""

import base64
import json
from typing import Dict, Optional
import structlog

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = structlog.get_logger()


class PaymentDetailsCipher:
    """Encrypts payment-detail mappings for storage."""

    SALT = b"bandwidth-rail-payment-details-v1"

    def __init__(self, secret: Optional[str] = None, key: Optional[bytes] = None):
        if key is None:
            if not secret:
                raise ValueError("secret or key required")
            key = self._derive_key(secret.encode("utf-8"))
        self._fernet = Fernet(key)

    def _derive_key(self, secret: bytes) -> bytes:
        """Derive the Fernet key from the configured secret."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.SALT,
            iterations=100000,
        )
        return base64.urlsafe_b64encode(kdf.derive(secret))

    def encrypt(self, details: Dict[str, str]) -> str:
        payload = json.dumps(details, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return self._fernet.encrypt(payload).decode("ascii")

    def decrypt(self, token: str) -> Dict[str, str]:
        try:
            payload = self._fernet.decrypt(token.encode("ascii"))
        except InvalidToken:
            logger.error("payment_details_decrypt_failed")
            raise
        return json.loads(payload.decode("utf-8"))


def mask_detail(value: str) -> str:
    """Mask a payment detail for display: `jo***@example.com`, `***6789`."""
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:2]}***@{domain}"
    if len(value) <= 4:
        return "***"
    return f"***{value[-4:]}"
