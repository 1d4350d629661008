"""
Persistence Layer for Bandwidth Rail

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, get_database
from .models import (
    PartnerRecord,
    PartnerStatus,
    PricingTier,
    EarningsRecord,
    SessionRecord,
    UsageRecord,
    UsageOutcome,
    PayoutRecord,
    PayoutStatus,
)
from .repository import (
    PartnerRepository,
    EarningsRepository,
    SessionRepository,
    UsageRepository,
    PayoutRepository,
)

__all__ = [
    "Database",
    "get_database",
    "PartnerRecord",
    "PartnerStatus",
    "PricingTier",
    "EarningsRecord",
    "SessionRecord",
    "UsageRecord",
    "UsageOutcome",
    "PayoutRecord",
    "PayoutStatus",
    "PartnerRepository",
    "EarningsRepository",
    "SessionRepository",
    "UsageRepository",
    "PayoutRepository",
]
