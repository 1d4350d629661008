"""
Metering Engine for Relayed Traffic

Turns the byte counts of one relayed exchange into billed volume, the
partner's cost, and the contributor/platform revenue split.

    billed_volume_mb     = (request_bytes + response_bytes) / (1024 * 1024)
    billed_volume_gb     = billed_volume_mb / 1024
    cost                 = billed_volume_gb * price_per_gb
    contributor_earnings = cost * USER_SHARE
    platform_fee         = cost - contributor_earnings
"""

from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, Optional
import structlog
import time

from ..errors import ValidationError

logger = structlog.get_logger()

BYTES_PER_MB = 1024 * 1024
MB_PER_GB = 1024

USER_SHARE = 0.70


@dataclass(frozen=True)
class UsageCharge:
    """Priced result of one exchange. Pure data, nothing has been applied."""
    request_bytes: int
    response_bytes: int
    billed_volume_mb: float
    billed_volume_gb: float
    price_per_gb: float
    cost: float
    contributor_earnings: float
    platform_fee: float

    @property
    def total_bytes(self) -> int:
        return self.request_bytes + self.response_bytes

    def display(self) -> Dict[str, str]:
        """Four-decimal strings, as returned to partners."""
        return {
            "dataUsedMB": f"{self.billed_volume_mb:.4f}",
            "cost": f"{self.cost:.4f}",
            "userEarnings": f"{self.contributor_earnings:.4f}",
        }


class UsageCalculator:
    """
    Prices relayed bytes.

    Stateless; the only input besides the byte counts is the partner's
    price per billed GB.
    """

    def __init__(self, user_share: float = USER_SHARE):
        if not 0.0 <= user_share <= 1.0:
            raise ValueError("user_share must be within [0, 1]")
        self.user_share = user_share

    def price(self, request_bytes: int, response_bytes: int, price_per_gb: float) -> UsageCharge:
        if request_bytes < 0 or response_bytes < 0:
            raise ValidationError("Byte counts cannot be negative")
        if price_per_gb < 0:
            raise ValidationError("Price per GB cannot be negative")

        billed_volume_mb = (request_bytes + response_bytes) / BYTES_PER_MB
        billed_volume_gb = billed_volume_mb / MB_PER_GB
        cost = billed_volume_gb * price_per_gb
        contributor_earnings = cost * self.user_share

        return UsageCharge(
            request_bytes=request_bytes,
            response_bytes=response_bytes,
            billed_volume_mb=billed_volume_mb,
            billed_volume_gb=billed_volume_gb,
            price_per_gb=price_per_gb,
            cost=cost,
            contributor_earnings=contributor_earnings,
            platform_fee=cost - contributor_earnings,
        )


class MeteringEngine:
    """
    Real-time metering of relayed exchanges.

    Tracks:
    - Exchanges per second
    - Billed volume
    - Cost and contributor earnings accumulation
    - Settlements rejected after a successful relay
    """

    def __init__(self, calculator: Optional[UsageCalculator] = None):
        self.calculator = calculator or UsageCalculator()
        self._lock = Lock()
        self._metrics: Dict[str, Any] = {
            "total_exchanges": 0,
            "total_billed_mb": 0.0,
            "total_cost": 0.0,
            "total_contributor_earnings": 0.0,
            "rejected_settlements": 0,
            "exchanges_per_second": 0.0,
            "last_exchange_at": None,
        }
        self._exchange_times: list = []
        self._window_seconds = 60

    def meter(self, request_bytes: int, response_bytes: int, price_per_gb: float) -> UsageCharge:
        """Price an exchange. Does not count it until `record_settled`."""
        return self.calculator.price(request_bytes, response_bytes, price_per_gb)

    def record_settled(self, charge: UsageCharge) -> None:
        now = time.time()

        with self._lock:
            self._metrics["total_exchanges"] += 1
            self._metrics["total_billed_mb"] += charge.billed_volume_mb
            self._metrics["total_cost"] += charge.cost
            self._metrics["total_contributor_earnings"] += charge.contributor_earnings
            self._metrics["last_exchange_at"] = now

            # Track for exchanges/sec calculation
            self._exchange_times.append(now)

            # Prune old times
            cutoff = now - self._window_seconds
            self._exchange_times = [t for t in self._exchange_times if t > cutoff]

            if len(self._exchange_times) > 1:
                time_span = self._exchange_times[-1] - self._exchange_times[0]
                if time_span > 0:
                    self._metrics["exchanges_per_second"] = len(self._exchange_times) / time_span

    def record_rejected(self) -> None:
        with self._lock:
            self._metrics["rejected_settlements"] += 1

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metering metrics."""
        with self._lock:
            return self._metrics.copy()
