"""
Data Models for Persistence Layer

Ledger records as stored in the database. Money is in USD, volumes in MB/GB.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set
import uuid


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _iso(value: Any) -> Optional[str]:
    """PostgreSQL hands back datetimes, SQLite hands back strings."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class PartnerStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class PricingTier(Enum):
    """Partner pricing tiers and their price per billed GB (USD)."""
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"

    @property
    def price_per_gb(self) -> float:
        return {
            PricingTier.TIER1: 0.10,
            PricingTier.TIER2: 0.20,
            PricingTier.TIER3: 0.30,
        }[self]

    @property
    def label(self) -> str:
        return {
            PricingTier.TIER1: "Basic",
            PricingTier.TIER2: "Premium",
            PricingTier.TIER3: "Enterprise",
        }[self]


class PayoutStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def can_transition_to(self, target: "PayoutStatus") -> bool:
        return target in _PAYOUT_TRANSITIONS[self]


# pending -> processing -> {completed | failed}
_PAYOUT_TRANSITIONS: Dict[PayoutStatus, Set[PayoutStatus]] = {
    PayoutStatus.PENDING: {PayoutStatus.PROCESSING},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.COMPLETED: set(),
    PayoutStatus.FAILED: set(),
}

# Payouts still holding a reservation against earnings
IN_FLIGHT_STATUSES = (PayoutStatus.PENDING.value, PayoutStatus.PROCESSING.value)


class UsageOutcome(Enum):
    SETTLED = "settled"
    REJECTED = "rejected"


@dataclass
class PartnerRecord:
    """Persisted partner account."""
    partner_id: str
    name: str
    email: str
    api_key: str
    api_secret_hash: str
    status: PartnerStatus = PartnerStatus.ACTIVE
    pricing_tier: PricingTier = PricingTier.TIER1
    price_per_gb: float = 0.10
    balance: float = 0.0
    total_usage_gb: float = 0.0
    total_spent: float = 0.0
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status == PartnerStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        """Public view; credentials are never included."""
        return {
            "partner_id": self.partner_id,
            "name": self.name,
            "email": self.email,
            "status": self.status.value,
            "pricing_tier": self.pricing_tier.value,
            "price_per_gb": self.price_per_gb,
            "balance": self.balance,
            "total_usage_gb": self.total_usage_gb,
            "total_spent": self.total_spent,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.partner_id,
            self.name,
            self.email,
            self.api_key,
            self.api_secret_hash,
            self.status.value,
            self.pricing_tier.value,
            self.price_per_gb,
            self.balance,
            self.total_usage_gb,
            self.total_spent,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PartnerRecord":
        return cls(
            partner_id=row["partner_id"],
            name=row["name"],
            email=row["email"],
            api_key=row["api_key"],
            api_secret_hash=row["api_secret_hash"],
            status=PartnerStatus(row.get("status", "active")),
            pricing_tier=PricingTier(row.get("pricing_tier", "tier1")),
            price_per_gb=float(row["price_per_gb"]),
            balance=float(row["balance"]),
            total_usage_gb=float(row.get("total_usage_gb") or 0.0),
            total_spent=float(row.get("total_spent") or 0.0),
            created_at=_iso(row["created_at"]),
            updated_at=_iso(row["updated_at"]),
        )


@dataclass
class EarningsRecord:
    """Persisted contributor earnings account."""
    contributor_id: str
    today_earned: float = 0.0
    total_earned: float = 0.0
    earnings_day: str = field(default_factory=lambda: datetime.now(timezone.utc).date().isoformat())
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contributor_id": self.contributor_id,
            "today_earned": self.today_earned,
            "total_earned": self.total_earned,
            "earnings_day": self.earnings_day,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EarningsRecord":
        return cls(
            contributor_id=row["contributor_id"],
            today_earned=float(row.get("today_earned") or 0.0),
            total_earned=float(row.get("total_earned") or 0.0),
            earnings_day=row["earnings_day"],
            updated_at=_iso(row["updated_at"]),
        )


@dataclass
class SessionRecord:
    """Persisted relay session."""
    session_id: str
    contributor_id: str
    bandwidth_limit_gb: float
    is_active: bool = True
    bytes_relayed_mb: float = 0.0
    started_at: str = field(default_factory=utc_now)
    stopped_at: Optional[str] = None
    updated_at: str = field(default_factory=utc_now)

    @property
    def headroom_mb(self) -> float:
        return self.bandwidth_limit_gb * 1024 - self.bytes_relayed_mb

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "contributor_id": self.contributor_id,
            "is_active": self.is_active,
            "bandwidth_limit_gb": self.bandwidth_limit_gb,
            "bytes_relayed_mb": self.bytes_relayed_mb,
            "headroom_mb": self.headroom_mb,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.session_id,
            self.contributor_id,
            self.is_active,
            self.bandwidth_limit_gb,
            self.bytes_relayed_mb,
            self.started_at,
            self.stopped_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SessionRecord":
        return cls(
            session_id=row["session_id"],
            contributor_id=row["contributor_id"],
            bandwidth_limit_gb=float(row["bandwidth_limit_gb"]),
            is_active=bool(row.get("is_active", 0)),
            bytes_relayed_mb=float(row.get("bytes_relayed_mb") or 0.0),
            started_at=_iso(row["started_at"]),
            stopped_at=_iso(row.get("stopped_at")),
            updated_at=_iso(row["updated_at"]),
        )


@dataclass(frozen=True)
class UsageRecord:
    """
    One relayed exchange, as billed.

    Frozen: a usage record is never modified after it is written.
    """
    record_id: str
    partner_id: str
    contributor_id: str
    target_url: str
    method: str
    billed_volume_mb: float
    billed_volume_gb: float
    cost: float
    contributor_earnings: float
    platform_fee: float
    session_id: Optional[str] = None
    request_bytes: int = 0
    response_bytes: int = 0
    response_status: Optional[int] = None
    response_size: int = 0
    outcome: UsageOutcome = UsageOutcome.SETTLED
    reject_reason: Optional[str] = None
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "partner_id": self.partner_id,
            "contributor_id": self.contributor_id,
            "session_id": self.session_id,
            "target_url": self.target_url,
            "method": self.method,
            "request_bytes": self.request_bytes,
            "response_bytes": self.response_bytes,
            "response_status": self.response_status,
            "response_size": self.response_size,
            "billed_volume_mb": self.billed_volume_mb,
            "billed_volume_gb": self.billed_volume_gb,
            "cost": self.cost,
            "contributor_earnings": self.contributor_earnings,
            "platform_fee": self.platform_fee,
            "outcome": self.outcome.value,
            "reject_reason": self.reject_reason,
            "timestamp": self.timestamp,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.record_id,
            self.partner_id,
            self.contributor_id,
            self.session_id,
            self.target_url,
            self.method,
            self.request_bytes,
            self.response_bytes,
            self.response_status,
            self.response_size,
            self.billed_volume_mb,
            self.billed_volume_gb,
            self.cost,
            self.contributor_earnings,
            self.platform_fee,
            self.outcome.value,
            self.reject_reason,
            self.timestamp,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageRecord":
        return cls(
            record_id=row["record_id"],
            partner_id=row["partner_id"],
            contributor_id=row["contributor_id"],
            session_id=row.get("session_id"),
            target_url=row["target_url"],
            method=row["method"],
            request_bytes=int(row.get("request_bytes") or 0),
            response_bytes=int(row.get("response_bytes") or 0),
            response_status=row.get("response_status"),
            response_size=int(row.get("response_size") or 0),
            billed_volume_mb=float(row["billed_volume_mb"]),
            billed_volume_gb=float(row["billed_volume_gb"]),
            cost=float(row["cost"]),
            contributor_earnings=float(row["contributor_earnings"]),
            platform_fee=float(row["platform_fee"]),
            outcome=UsageOutcome(row.get("outcome", "settled")),
            reject_reason=row.get("reject_reason"),
            timestamp=_iso(row["timestamp"]),
        )


@dataclass
class PayoutRecord:
    """Persisted payout attempt. `payment_details` is held decrypted in memory."""
    payout_id: str
    contributor_id: str
    amount: float
    credits: int
    payment_method: str
    payment_details: Dict[str, str]
    status: PayoutStatus
    transaction_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    processed_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payout_id": self.payout_id,
            "contributor_id": self.contributor_id,
            "amount": self.amount,
            "credits": self.credits,
            "payment_method": self.payment_method,
            "status": self.status.value,
            "transaction_id": self.transaction_id,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "processed_at": self.processed_at,
        }
