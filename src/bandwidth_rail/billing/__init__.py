"""
Billing: metering, settlement and payouts.
"""

from .metering import MeteringEngine, UsageCalculator, UsageCharge, USER_SHARE
from .settlement import SettlementEngine, SettlementResult
from .payment_rails import (
    PaymentRail,
    RailResult,
    ManualRail,
    PayPalPayoutRail,
    StripeTransferRail,
    build_rails,
)
from .payouts import PayoutEngine, MINIMUM_PAYOUT, CREDITS_PER_USD

__all__ = [
    "MeteringEngine",
    "UsageCalculator",
    "UsageCharge",
    "USER_SHARE",
    "SettlementEngine",
    "SettlementResult",
    "PaymentRail",
    "RailResult",
    "ManualRail",
    "PayPalPayoutRail",
    "StripeTransferRail",
    "build_rails",
    "PayoutEngine",
    "MINIMUM_PAYOUT",
    "CREDITS_PER_USD",
]
