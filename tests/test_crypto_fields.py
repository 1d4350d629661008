"""
Tests for Payment Detail Encryption
"""

import pytest
from cryptography.fernet import Fernet, InvalidToken

from bandwidth_rail.crypto.fields import PaymentDetailsCipher, mask_detail


class TestPaymentDetailsCipher:
    """Test Fernet encryption of payment details."""

    def test_round_trip(self):
        cipher = PaymentDetailsCipher("secret")
        details = {"paypalEmail": "jo@example.com"}

        token = cipher.encrypt(details)

        assert "jo@example.com" not in token
        assert cipher.decrypt(token) == details

    def test_same_secret_decrypts(self):
        token = PaymentDetailsCipher("secret").encrypt({"bankAccount": "123"})

        assert PaymentDetailsCipher("secret").decrypt(token) == {"bankAccount": "123"}

    def test_wrong_secret_fails(self):
        token = PaymentDetailsCipher("secret").encrypt({"bankAccount": "123"})

        with pytest.raises(InvalidToken):
            PaymentDetailsCipher("other").decrypt(token)

    def test_explicit_key(self):
        cipher = PaymentDetailsCipher(key=Fernet.generate_key())

        assert cipher.decrypt(cipher.encrypt({"a": "b"})) == {"a": "b"}

    def test_requires_secret_or_key(self):
        with pytest.raises(ValueError):
            PaymentDetailsCipher()


class TestMaskDetail:

    @pytest.mark.parametrize("value,masked", [
        ("jo@example.com", "jo***@example.com"),
        ("GB29NWBK60161331926819", "***6819"),
        ("abc", "***"),
    ])
    def test_mask(self, value, masked):
        assert mask_detail(value) == masked
