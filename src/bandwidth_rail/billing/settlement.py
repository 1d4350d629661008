"""
Settlement (Ledger Mutator)

Applies one metered exchange to the ledger as a single atomic unit:

    partner.balance        -= cost
    partner.total_usage_gb += billed_volume_gb
    partner.total_spent    += cost
    earnings.today_earned  += contributor_earnings
    earnings.total_earned  += contributor_earnings
    session.bytes_relayed  += billed_volume_mb
    + one appended UsageRecord

Preconditions are checked in order, each a hard reject:

    1. partner exists and is active
    2. contributor has an active relay session
    3. partner.balance > 0
    4. cost <= partner.balance

Checks 1-3 run once before the relay (so no bandwidth is spent on a request
that can never be billed) and all four run again against fresh rows inside
the transaction, under the partner and contributor locks.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
import structlog

from ..core.locks import LedgerLocks
from ..errors import InsufficientFunds, NotFoundError, RailError, ResourceUnavailable
from ..persistence.database import Database
from ..persistence.models import (
    EarningsRecord,
    PartnerRecord,
    SessionRecord,
    UsageOutcome,
    UsageRecord,
    new_id,
    utc_now,
)
from ..persistence.repository import (
    EarningsRepository,
    PartnerRepository,
    SessionRepository,
    UsageRepository,
)
from ..relay.traffic import RelayRequest, RelayResponse, TrafficRelay
from .metering import MeteringEngine, UsageCharge

logger = structlog.get_logger()


@dataclass
class SettlementResult:
    """A settled exchange and the relayed response to hand back."""
    charge: UsageCharge
    record_id: str
    partner_id: str
    contributor_id: str
    status: int
    data: Any

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "data": self.data,
            "status": self.status,
            "metadata": self.charge.display(),
        }


def credit_earnings(record: EarningsRecord, amount: float, now: Optional[datetime] = None) -> EarningsRecord:
    """Add a credit, resetting `today_earned` when the UTC day has changed."""
    now = now or datetime.now(timezone.utc)
    today = now.date().isoformat()
    if record.earnings_day != today:
        record.today_earned = 0.0
        record.earnings_day = today
    record.today_earned += amount
    record.total_earned += amount
    record.updated_at = now.isoformat()
    return record


class SettlementEngine:
    """Meters relayed exchanges and applies them to the ledger."""

    def __init__(
        self,
        db: Database,
        partners: PartnerRepository,
        earnings: EarningsRepository,
        sessions: SessionRepository,
        usage: UsageRepository,
        locks: LedgerLocks,
        metering: Optional[MeteringEngine] = None,
        audit_rejected: bool = True,
    ):
        self.db = db
        self.partners = partners
        self.earnings = earnings
        self.sessions = sessions
        self.usage = usage
        self.locks = locks
        self.metering = metering or MeteringEngine()
        self.audit_rejected = audit_rejected

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def _check_partner(self, partner: Optional[PartnerRecord], partner_id: str) -> PartnerRecord:
        if partner is None or not partner.is_active:
            raise NotFoundError("Partner not found or inactive", {"partner_id": partner_id})
        return partner

    def _check_session(self, session: Optional[SessionRecord], contributor_id: str) -> SessionRecord:
        if session is None:
            raise ResourceUnavailable(
                "Contributor is not actively sharing bandwidth",
                {"contributor_id": contributor_id},
            )
        return session

    def _check_positive_balance(self, partner: PartnerRecord) -> None:
        if partner.balance <= 0:
            raise InsufficientFunds("Partner has insufficient balance", {"balance": partner.balance})

    def precheck(self, partner_id: str, contributor_id: str) -> Tuple[PartnerRecord, SessionRecord]:
        """Preconditions 1-3, read-only, before any bandwidth is spent."""
        partner = self._check_partner(self.partners.get(partner_id), partner_id)
        session = self._check_session(self.sessions.get_active(contributor_id), contributor_id)
        self._check_positive_balance(partner)
        return partner, session

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle(
        self,
        partner_id: str,
        contributor_id: str,
        request: RelayRequest,
        response: RelayResponse,
    ) -> SettlementResult:
        """
        Apply a successfully relayed exchange.

        Raises NotFoundError, ResourceUnavailable or InsufficientFunds with
        nothing applied. The rejection is logged with enough detail to
        reconcile the relayed bytes and, if enabled, recorded as a
        `rejected` usage record.
        """
        try:
            with self.locks.settlement(partner_id, contributor_id):
                with self.db.transaction():
                    charge, record = self._apply(partner_id, contributor_id, request, response)
        except RailError as e:
            self._record_rejection(partner_id, contributor_id, request, response, e)
            raise

        self.metering.record_settled(charge)
        logger.info(
            "settlement_applied",
            record_id=record.record_id,
            partner_id=partner_id,
            contributor_id=contributor_id,
            billed_mb=charge.billed_volume_mb,
            cost=charge.cost,
            contributor_earnings=charge.contributor_earnings,
        )

        return SettlementResult(
            charge=charge,
            record_id=record.record_id,
            partner_id=partner_id,
            contributor_id=contributor_id,
            status=response.status,
            data=response.data,
        )

    def _apply(
        self,
        partner_id: str,
        contributor_id: str,
        request: RelayRequest,
        response: RelayResponse,
    ) -> Tuple[UsageCharge, UsageRecord]:
        partner = self._check_partner(self.partners.get(partner_id, for_update=True), partner_id)
        session = self._check_session(
            self.sessions.get_active(contributor_id, for_update=True), contributor_id
        )
        self._check_positive_balance(partner)

        charge = self.metering.meter(response.request_bytes, response.response_bytes, partner.price_per_gb)
        if charge.cost > partner.balance:
            raise InsufficientFunds(
                "Partner has insufficient balance for this request",
                {"balance": partner.balance, "cost": charge.cost},
            )

        if not self.partners.apply_charge(partner_id, charge.cost, charge.billed_volume_gb):
            raise InsufficientFunds(
                "Partner has insufficient balance for this request",
                {"balance": partner.balance, "cost": charge.cost},
            )

        self.earnings.ensure(contributor_id)
        earnings = self.earnings.get(contributor_id, for_update=True)
        self.earnings.save(credit_earnings(earnings, charge.contributor_earnings))

        if not self.sessions.add_relayed(session.session_id, charge.billed_volume_mb):
            raise ResourceUnavailable(
                "Contributor is not actively sharing bandwidth",
                {"contributor_id": contributor_id},
            )

        record = self.usage.append(self._usage_record(
            partner_id, contributor_id, session.session_id, request, response, charge,
        ))
        return charge, record

    def _usage_record(
        self,
        partner_id: str,
        contributor_id: str,
        session_id: Optional[str],
        request: RelayRequest,
        response: RelayResponse,
        charge: UsageCharge,
        outcome: UsageOutcome = UsageOutcome.SETTLED,
        reject_reason: Optional[str] = None,
    ) -> UsageRecord:
        return UsageRecord(
            record_id=new_id("usg"),
            partner_id=partner_id,
            contributor_id=contributor_id,
            session_id=session_id,
            target_url=request.target_url,
            method=request.method,
            request_bytes=response.request_bytes,
            response_bytes=response.response_bytes,
            response_status=response.status,
            response_size=response.response_size,
            billed_volume_mb=charge.billed_volume_mb,
            billed_volume_gb=charge.billed_volume_gb,
            cost=charge.cost,
            contributor_earnings=charge.contributor_earnings,
            platform_fee=charge.platform_fee,
            outcome=outcome,
            reject_reason=reject_reason,
            timestamp=utc_now(),
        )

    def _record_rejection(
        self,
        partner_id: str,
        contributor_id: str,
        request: RelayRequest,
        response: RelayResponse,
        error: RailError,
    ) -> None:
        self.metering.record_rejected()

        partner = self.partners.get(partner_id)
        price = partner.price_per_gb if partner else 0.0
        charge = self.metering.meter(response.request_bytes, response.response_bytes, price)

        logger.error(
            "settlement_rejected_after_relay",
            partner_id=partner_id,
            contributor_id=contributor_id,
            target=request.target_url,
            request_bytes=response.request_bytes,
            response_bytes=response.response_bytes,
            unbilled_cost=charge.cost,
            reason=error.message,
        )

        if not self.audit_rejected or partner is None:
            return

        try:
            with self.db.transaction():
                self.usage.append(self._usage_record(
                    partner_id, contributor_id, None, request, response, charge,
                    outcome=UsageOutcome.REJECTED, reject_reason=error.message,
                ))
        except Exception as e:
            logger.error("rejected_usage_record_failed", partner_id=partner_id, error=str(e))

    # ------------------------------------------------------------------
    # Full exchange
    # ------------------------------------------------------------------

    async def execute(
        self,
        partner_id: str,
        contributor_id: str,
        request: RelayRequest,
        relay: TrafficRelay,
    ) -> SettlementResult:
        """
        Precheck, relay, then settle.

        Precheck and settle run in worker threads; only the relay is awaited
        on the event loop. A relay failure raises ExternalServiceError
        before anything is written.
        """
        await asyncio.to_thread(self.precheck, partner_id, contributor_id)

        response = await relay.relay(contributor_id, request)

        return await asyncio.to_thread(self.settle, partner_id, contributor_id, request, response)
