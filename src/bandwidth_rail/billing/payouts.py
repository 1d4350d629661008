"""
Payout Engine

Converts accumulated contributor earnings into an external transfer.

    available = total_earned - sum(pending + processing payout amounts)
    eligible  = available >= MINIMUM_PAYOUT

Payout lifecycle (forward only):

    pending ----> processing ----> completed
       |              |
       +--------------+----------> failed

Synchronous rails create the row as `processing` and call the rail with that
specific payout id. Manual rails create it as `pending` and wait for
`confirm` / `reject`. Earnings are debited only when a payout completes.
"""

from typing import Any, Dict, List, Optional
import structlog

from ..core.locks import LedgerLocks
from ..crypto.fields import mask_detail
from ..errors import (
    ExternalServiceError,
    InvalidTransition,
    NotFoundError,
    PaymentOutcomeUnknown,
    ValidationError,
)
from ..persistence.database import Database
from ..persistence.models import PayoutRecord, PayoutStatus, new_id, utc_now
from ..persistence.repository import EarningsRepository, PayoutRepository
from .payment_rails import PaymentRail

logger = structlog.get_logger()

MINIMUM_PAYOUT = 5.0
CREDITS_PER_USD = 1000


def to_credits(amount: float) -> int:
    return int(round(amount * CREDITS_PER_USD))


class PayoutEngine:
    """Eligibility, payout requests and reconciliation."""

    def __init__(
        self,
        db: Database,
        earnings: EarningsRepository,
        payouts: PayoutRepository,
        locks: LedgerLocks,
        rails: Dict[str, PaymentRail],
        minimum_payout: float = MINIMUM_PAYOUT,
    ):
        self.db = db
        self.earnings = earnings
        self.payouts = payouts
        self.locks = locks
        self.rails = rails
        self.minimum_payout = minimum_payout

    def eligibility(self, contributor_id: str) -> Dict[str, Any]:
        """Pure query. Nets out every in-flight payout."""
        record = self.earnings.get(contributor_id)
        if record is None:
            return {
                "eligible": False,
                "available": 0.0,
                "minimum": self.minimum_payout,
                "message": "No earnings found",
            }

        available = record.total_earned - self.payouts.sum_in_flight(contributor_id)
        eligible = available >= self.minimum_payout
        if eligible:
            message = "Eligible for payout"
        else:
            message = f"Need ${self.minimum_payout - available:.2f} more to reach minimum"

        return {
            "eligible": eligible,
            "available": available,
            "minimum": self.minimum_payout,
            "message": message,
        }

    def _rail(self, method: Optional[str]) -> PaymentRail:
        rail = self.rails.get(method or "")
        if rail is None:
            raise ValidationError(
                f"Unsupported payment method: {method}",
                {"supported": sorted(self.rails)},
            )
        return rail

    def request_payout(
        self,
        contributor_id: str,
        amount: float,
        method: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Reserve earnings with a new payout row, then pay it.

        The eligibility read and row creation happen under the contributor's
        lock in one transaction, so concurrent requests see each other's
        reservations. The rail is called outside the lock.
        """
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise ValidationError("amount must be a number")
        if amount != amount or amount <= 0:
            raise ValidationError("amount must be positive")
        if amount < self.minimum_payout:
            raise ValidationError(
                f"Minimum payout is ${self.minimum_payout:.2f}",
                {"amount": amount},
            )

        with self.locks.contributors.hold(contributor_id):
            with self.db.transaction():
                self.earnings.get(contributor_id, for_update=True)
                status = self.eligibility(contributor_id)

                if amount > status["available"]:
                    raise ValidationError(
                        "Insufficient available earnings",
                        {"amount": amount, "available": status["available"]},
                    )

                rail = self._rail(method)
                clean_details = rail.validate_details(details)

                payout = self.payouts.create(PayoutRecord(
                    payout_id=new_id("pay"),
                    contributor_id=contributor_id,
                    amount=amount,
                    credits=to_credits(amount),
                    payment_method=rail.method,
                    payment_details=clean_details,
                    status=PayoutStatus.PROCESSING if rail.is_synchronous else PayoutStatus.PENDING,
                ))

        if not rail.is_synchronous:
            logger.info(
                "payout_awaiting_manual_processing",
                payout_id=payout.payout_id,
                method=rail.method,
            )
            return self._summary(payout)

        return self._send(rail, payout)

    def _send(self, rail: PaymentRail, payout: PayoutRecord) -> Dict[str, Any]:
        try:
            result = rail.send(payout)
        except PaymentOutcomeUnknown as e:
            logger.error(
                "payout_outcome_unknown",
                payout_id=payout.payout_id,
                method=rail.method,
                error=e.message,
            )
            return self._summary(payout)
        except ExternalServiceError as e:
            self._fail(payout.payout_id, PayoutStatus.PROCESSING, e.message)
            raise
        except Exception as e:
            self._fail(payout.payout_id, PayoutStatus.PROCESSING, str(e))
            raise ExternalServiceError(f"Payout failed: {e}") from e

        self._complete(payout.payout_id, PayoutStatus.PROCESSING, result.transaction_id)
        payout.status = PayoutStatus.COMPLETED
        payout.transaction_id = result.transaction_id
        return self._summary(payout)

    def _claim(self, payout_id: str, from_status: PayoutStatus) -> bool:
        """Move a pending payout to processing. Call inside a transaction."""
        if from_status == PayoutStatus.PENDING:
            return self.payouts.transition(payout_id, PayoutStatus.PENDING, PayoutStatus.PROCESSING)
        return True

    def _fail(self, payout_id: str, from_status: PayoutStatus, reason: str) -> bool:
        with self.db.transaction():
            changed = self._claim(payout_id, from_status) and self.payouts.transition(
                payout_id, PayoutStatus.PROCESSING, PayoutStatus.FAILED, error_message=reason,
            )
        if changed:
            logger.warning("payout_failed", payout_id=payout_id, error=reason)
        return changed

    def _complete(self, payout_id: str, from_status: PayoutStatus, transaction_id: str) -> bool:
        """Mark completed and debit earnings (floored at zero) together."""
        payout = self.payouts.get(payout_id)
        if payout is None:
            raise NotFoundError("Payout not found", {"payout_id": payout_id})

        # Contributor lock before the transaction, same order as settlement.
        with self.locks.contributors.hold(payout.contributor_id):
            with self.db.transaction():
                if not self._claim(payout_id, from_status):
                    return False
                if not self.payouts.transition(
                    payout_id, PayoutStatus.PROCESSING, PayoutStatus.COMPLETED,
                    transaction_id=transaction_id,
                ):
                    return False

                record = self.earnings.get(payout.contributor_id, for_update=True)
                if record is not None:
                    record.total_earned = max(0.0, record.total_earned - payout.amount)
                    record.updated_at = utc_now()
                    self.earnings.save(record)

        logger.info(
            "payout_completed",
            payout_id=payout_id,
            contributor_id=payout.contributor_id,
            amount=payout.amount,
            transaction_id=transaction_id,
        )
        return True

    def _summary(self, payout: PayoutRecord) -> Dict[str, Any]:
        return {
            "payoutId": payout.payout_id,
            "transactionId": payout.transaction_id,
            "amount": payout.amount,
            "credits": payout.credits,
            "status": payout.status.value,
        }

    def history(self, contributor_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 100))
        history = []
        for payout in self.payouts.list_for_contributor(contributor_id, limit):
            entry = payout.to_dict()
            entry["payment_details"] = {k: mask_detail(v) for k, v in payout.payment_details.items()}
            history.append(entry)
        return history

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _in_flight(self, payout_id: str, target: PayoutStatus) -> PayoutRecord:
        """Load a payout that can reach `target`, via processing if it is pending."""
        payout = self.payouts.get(payout_id)
        if payout is None:
            raise NotFoundError("Payout not found", {"payout_id": payout_id})
        status = payout.status
        if status == PayoutStatus.PENDING:
            status = PayoutStatus.PROCESSING
        if not status.can_transition_to(target):
            raise InvalidTransition(
                f"Cannot move payout from {payout.status.value} to {target.value}",
                {"payout_id": payout_id},
            )
        return payout

    def confirm(self, payout_id: str, transaction_id: str) -> PayoutRecord:
        """Record an out-of-band success for a pending or processing payout."""
        if not transaction_id:
            raise ValidationError("transaction_id is required")

        payout = self._in_flight(payout_id, PayoutStatus.COMPLETED)
        if not self._complete(payout_id, payout.status, transaction_id):
            raise InvalidTransition("Payout status changed concurrently", {"payout_id": payout_id})
        return self.payouts.get(payout_id)

    def reject(self, payout_id: str, reason: str) -> PayoutRecord:
        """Record an out-of-band failure. Earnings are untouched."""
        payout = self._in_flight(payout_id, PayoutStatus.FAILED)
        if not self._fail(payout_id, payout.status, reason or "Rejected"):
            raise InvalidTransition("Payout status changed concurrently", {"payout_id": payout_id})
        return self.payouts.get(payout_id)
