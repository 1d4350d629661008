"""
Pytest Configuration and Fixtures
"""

import os
import sys
from typing import Optional

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("PAYMENT_DETAILS_SECRET", "test-payment-secret")

from bandwidth_rail.billing.settlement import SettlementEngine
from bandwidth_rail.config import RailConfig
from bandwidth_rail.core.locks import LedgerLocks
from bandwidth_rail.crypto.credentials import generate_credentials, hash_secret
from bandwidth_rail.crypto.fields import PaymentDetailsCipher
from bandwidth_rail.persistence.database import Database
from bandwidth_rail.persistence.models import (
    EarningsRecord,
    PartnerRecord,
    PartnerStatus,
    PricingTier,
    SessionRecord,
    new_id,
)
from bandwidth_rail.persistence.repository import (
    EarningsRepository,
    PartnerRepository,
    PayoutRepository,
    SessionRepository,
    UsageRepository,
)
from bandwidth_rail.relay.traffic import RelayRequest, RelayResponse, TrafficRelay

MB = 1024 * 1024


@pytest.fixture
def db(tmp_path):
    """A fresh SQLite database file per test (shared by all threads)."""
    database = Database(f"sqlite:///{tmp_path / 'rail.db'}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def config(tmp_path):
    return RailConfig(
        database_url=f"sqlite:///{tmp_path / 'rail.db'}",
        jwt_secret="test-jwt-secret",
        payment_details_secret="test-payment-secret",
    )


@pytest.fixture
def locks():
    return LedgerLocks()


@pytest.fixture
def partners(db):
    return PartnerRepository(db)


@pytest.fixture
def earnings(db):
    return EarningsRepository(db)


@pytest.fixture
def sessions(db):
    return SessionRepository(db)


@pytest.fixture
def usage(db):
    return UsageRepository(db)


@pytest.fixture
def payouts(db):
    return PayoutRepository(PaymentDetailsCipher("test-payment-secret"), db)


@pytest.fixture
def make_partner(partners):
    """Create a partner; returns (record, api_key, api_secret)."""

    def _make(
        balance: float = 10.0,
        tier: PricingTier = PricingTier.TIER1,
        status: PartnerStatus = PartnerStatus.ACTIVE,
        price_per_gb: Optional[float] = None,
    ):
        api_key, api_secret = generate_credentials()
        partner_id = new_id("ptr")
        record = partners.create(PartnerRecord(
            partner_id=partner_id,
            name="Acme Scraping",
            email=f"{partner_id}@acme.test",
            api_key=api_key,
            api_secret_hash=hash_secret(api_secret),
            status=status,
            pricing_tier=tier,
            price_per_gb=tier.price_per_gb if price_per_gb is None else price_per_gb,
            balance=balance,
        ))
        return record, api_key, api_secret

    return _make


@pytest.fixture
def make_session(sessions):
    """Create an active relay session for a contributor."""

    def _make(contributor_id: str, limit_gb: float = 50.0, relayed_mb: float = 0.0):
        return sessions.create(SessionRecord(
            session_id=new_id("ses"),
            contributor_id=contributor_id,
            bandwidth_limit_gb=limit_gb,
            bytes_relayed_mb=relayed_mb,
        ))

    return _make


@pytest.fixture
def seed_earnings(earnings):
    """Give a contributor a total_earned balance."""

    def _seed(contributor_id: str, total: float, today: float = 0.0):
        earnings.ensure(contributor_id)
        return earnings.save(EarningsRecord(
            contributor_id=contributor_id,
            today_earned=today,
            total_earned=total,
        ))

    return _seed


class FakeRelay(TrafficRelay):
    """Relay stand-in reporting fixed byte counts."""

    def __init__(self, request_bytes: int = 0, response_bytes: int = 0, status: int = 200,
                 data=None, error: Optional[Exception] = None):
        self.request_bytes = request_bytes
        self.response_bytes = response_bytes
        self.status = status
        self.data = data if data is not None else {"ok": True}
        self.error = error
        self.calls = []

    async def relay(self, contributor_id: str, request: RelayRequest) -> RelayResponse:
        self.calls.append((contributor_id, request))
        if self.error is not None:
            raise self.error
        return RelayResponse(
            status=self.status,
            data=self.data,
            request_bytes=self.request_bytes,
            response_bytes=self.response_bytes,
            response_size=self.response_bytes,
        )


@pytest.fixture
def fake_relay():
    return FakeRelay


@pytest.fixture
def settlement(db, partners, earnings, sessions, usage, locks):
    return SettlementEngine(db, partners, earnings, sessions, usage, locks)
