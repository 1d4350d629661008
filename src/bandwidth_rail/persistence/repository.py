"""
Repository Layer for Bandwidth Rail

CRUD and guarded read-modify-write operations for every ledger aggregate.

Methods that take `for_update=True` lock the row on PostgreSQL. Callers that
read-then-write must do so inside `Database.transaction()`.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import structlog

from ..crypto.fields import PaymentDetailsCipher
from ..errors import InvalidTransition
from .database import Database, get_database
from .models import (
    EarningsRecord,
    IN_FLIGHT_STATUSES,
    PartnerRecord,
    PartnerStatus,
    PayoutRecord,
    PayoutStatus,
    SessionRecord,
    UsageOutcome,
    UsageRecord,
    utc_now,
    _iso,
)

logger = structlog.get_logger()


class _Repository:
    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def _locking(self, query: str, for_update: bool) -> str:
        if for_update and self.db.is_postgres:
            return query + " FOR UPDATE"
        return query


class PartnerRepository(_Repository):
    """Repository for partner accounts."""

    def create(self, partner: PartnerRecord) -> PartnerRecord:
        """Create a new partner account."""
        self.db.execute(
            """INSERT INTO partners
               (partner_id, name, email, api_key, api_secret_hash, status,
                pricing_tier, price_per_gb, balance, total_usage_gb,
                total_spent, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            partner.to_db_tuple()
        )
        logger.info("partner_created", partner_id=partner.partner_id, tier=partner.pricing_tier.value)
        return partner

    def get(self, partner_id: str, for_update: bool = False) -> Optional[PartnerRecord]:
        """Get a partner by ID."""
        results = self.db.execute(
            self._locking("SELECT * FROM partners WHERE partner_id = ?", for_update),
            (partner_id,)
        )
        return PartnerRecord.from_row(results[0]) if results else None

    def get_by_api_key(self, api_key: str) -> Optional[PartnerRecord]:
        """Get a partner by API key."""
        results = self.db.execute(
            "SELECT * FROM partners WHERE api_key = ?",
            (api_key,)
        )
        return PartnerRecord.from_row(results[0]) if results else None

    def apply_charge(self, partner_id: str, cost: float, billed_volume_gb: float) -> bool:
        """
        Debit a settled exchange from the partner.

        The balance guard is part of the UPDATE, so a stale read can never
        drive the balance below zero. Returns False if the guard failed.
        """
        rowcount = self.db.execute_rowcount(
            """UPDATE partners
               SET balance = balance - ?,
                   total_usage_gb = total_usage_gb + ?,
                   total_spent = total_spent + ?,
                   updated_at = ?
               WHERE partner_id = ? AND status = ? AND balance >= ?""",
            (cost, billed_volume_gb, cost, utc_now(), partner_id, PartnerStatus.ACTIVE.value, cost)
        )
        return rowcount == 1

    def add_balance(self, partner_id: str, amount: float) -> Optional[PartnerRecord]:
        """Top up a partner's prepaid balance."""
        self.db.execute(
            "UPDATE partners SET balance = balance + ?, updated_at = ? WHERE partner_id = ?",
            (amount, utc_now(), partner_id)
        )
        logger.info("partner_balance_added", partner_id=partner_id, amount=amount)
        return self.get(partner_id)


class EarningsRepository(_Repository):
    """Repository for contributor earnings accounts."""

    def get(self, contributor_id: str, for_update: bool = False) -> Optional[EarningsRecord]:
        results = self.db.execute(
            self._locking("SELECT * FROM contributor_earnings WHERE contributor_id = ?", for_update),
            (contributor_id,)
        )
        return EarningsRecord.from_row(results[0]) if results else None

    def ensure(self, contributor_id: str) -> None:
        """Create a zeroed earnings account if none exists."""
        record = EarningsRecord(contributor_id=contributor_id)
        self.db.execute(
            """INSERT INTO contributor_earnings
               (contributor_id, today_earned, total_earned, earnings_day, updated_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT (contributor_id) DO NOTHING""",
            (record.contributor_id, 0.0, 0.0, record.earnings_day, record.updated_at)
        )

    def save(self, record: EarningsRecord) -> EarningsRecord:
        self.db.execute(
            """UPDATE contributor_earnings
               SET today_earned = ?, total_earned = ?, earnings_day = ?, updated_at = ?
               WHERE contributor_id = ?""",
            (record.today_earned, record.total_earned, record.earnings_day,
             record.updated_at, record.contributor_id)
        )
        return record


class SessionRepository(_Repository):
    """Repository for relay sessions."""

    def create(self, session: SessionRecord) -> SessionRecord:
        self.db.execute(
            """INSERT INTO relay_sessions
               (session_id, contributor_id, is_active, bandwidth_limit_gb,
                bytes_relayed_mb, started_at, stopped_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            session.to_db_tuple()
        )
        return session

    def get_active(self, contributor_id: str, for_update: bool = False) -> Optional[SessionRecord]:
        """Get the contributor's active session, if any."""
        results = self.db.execute(
            self._locking(
                "SELECT * FROM relay_sessions WHERE contributor_id = ? AND is_active = ?",
                for_update,
            ),
            (contributor_id, True)
        )
        return SessionRecord.from_row(results[0]) if results else None

    def deactivate_all(self, contributor_id: str) -> int:
        """Stop every active session for a contributor."""
        now = utc_now()
        return self.db.execute_rowcount(
            """UPDATE relay_sessions
               SET is_active = ?, stopped_at = ?, updated_at = ?
               WHERE contributor_id = ? AND is_active = ?""",
            (False, now, now, contributor_id, True)
        )

    def add_relayed(self, session_id: str, volume_mb: float) -> bool:
        """Bump the running counter of an active session."""
        rowcount = self.db.execute_rowcount(
            """UPDATE relay_sessions
               SET bytes_relayed_mb = bytes_relayed_mb + ?, updated_at = ?
               WHERE session_id = ? AND is_active = ?""",
            (volume_mb, utc_now(), session_id, True)
        )
        return rowcount == 1

    def find_with_headroom(self, min_headroom_mb: float, limit: int = 100) -> List[SessionRecord]:
        """
        Sample up to `limit` active sessions with at least `min_headroom_mb`
        of quota left, in random order.
        """
        results = self.db.execute(
            """SELECT * FROM relay_sessions
               WHERE is_active = ?
                 AND (bandwidth_limit_gb * 1024 - bytes_relayed_mb) >= ?
               ORDER BY RANDOM()
               LIMIT ?""",
            (True, min_headroom_mb, limit)
        )
        return [SessionRecord.from_row(r) for r in results]

    def sum_relayed_since(self, contributor_id: str, since: str) -> float:
        """Total MB relayed by sessions that started at or after `since`."""
        results = self.db.execute(
            """SELECT SUM(bytes_relayed_mb) as total FROM relay_sessions
               WHERE contributor_id = ? AND started_at >= ?""",
            (contributor_id, since)
        )
        if results and results[0].get("total") is not None:
            return float(results[0]["total"])
        return 0.0

    def list_for_contributor(self, contributor_id: str, limit: int = 100) -> List[SessionRecord]:
        results = self.db.execute(
            "SELECT * FROM relay_sessions WHERE contributor_id = ? ORDER BY started_at DESC LIMIT ?",
            (contributor_id, limit)
        )
        return [SessionRecord.from_row(r) for r in results]


class UsageRepository(_Repository):
    """Repository for the append-only usage log."""

    def append(self, record: UsageRecord) -> UsageRecord:
        """Append a usage record."""
        self.db.execute(
            """INSERT INTO usage_records
               (record_id, partner_id, contributor_id, session_id, target_url,
                method, request_bytes, response_bytes, response_status,
                response_size, billed_volume_mb, billed_volume_gb, cost,
                contributor_earnings, platform_fee, outcome, reject_reason,
                timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        return record

    def get(self, record_id: str) -> Optional[UsageRecord]:
        results = self.db.execute(
            "SELECT * FROM usage_records WHERE record_id = ?",
            (record_id,)
        )
        return UsageRecord.from_row(results[0]) if results else None

    def get_by_partner(self, partner_id: str, limit: int = 1000) -> List[UsageRecord]:
        """Get usage records for a partner, newest first."""
        results = self.db.execute(
            "SELECT * FROM usage_records WHERE partner_id = ? ORDER BY timestamp DESC, record_id LIMIT ?",
            (partner_id, limit)
        )
        return [UsageRecord.from_row(r) for r in results]

    def get_by_contributor(self, contributor_id: str, limit: int = 1000) -> List[UsageRecord]:
        """Get usage records for a contributor, newest first."""
        results = self.db.execute(
            "SELECT * FROM usage_records WHERE contributor_id = ? ORDER BY timestamp DESC, record_id LIMIT ?",
            (contributor_id, limit)
        )
        return [UsageRecord.from_row(r) for r in results]

    def get_partner_summary(self, partner_id: str, start: str, end: str) -> Dict[str, Any]:
        """Aggregate settled usage for a partner within [start, end]."""
        results = self.db.execute(
            """SELECT
                COUNT(*) as total_requests,
                SUM(billed_volume_mb) as total_data_mb,
                SUM(cost) as total_cost,
                SUM(contributor_earnings) as total_user_earnings
               FROM usage_records
               WHERE partner_id = ? AND outcome = ?
                 AND timestamp >= ? AND timestamp <= ?""",
            (partner_id, UsageOutcome.SETTLED.value, start, end)
        )

        row = results[0] if results else {}
        return {
            "totalRequests": int(row.get("total_requests") or 0),
            "totalDataMB": float(row.get("total_data_mb") or 0.0),
            "totalCost": float(row.get("total_cost") or 0.0),
            "totalUserEarnings": float(row.get("total_user_earnings") or 0.0),
        }


class PayoutRepository(_Repository):
    """Repository for payout attempts. Payment details are encrypted at rest."""

    def __init__(self, cipher: PaymentDetailsCipher, db: Optional[Database] = None):
        super().__init__(db)
        self.cipher = cipher

    def _from_row(self, row: Dict[str, Any]) -> PayoutRecord:
        return PayoutRecord(
            payout_id=row["payout_id"],
            contributor_id=row["contributor_id"],
            amount=float(row["amount"]),
            credits=int(row["credits"]),
            payment_method=row["payment_method"],
            payment_details=self.cipher.decrypt(row["payment_details"]),
            status=PayoutStatus(row["status"]),
            transaction_id=row.get("transaction_id"),
            error_message=row.get("error_message"),
            created_at=_iso(row["created_at"]),
            updated_at=_iso(row["updated_at"]),
            processed_at=_iso(row.get("processed_at")),
        )

    def create(self, payout: PayoutRecord) -> PayoutRecord:
        self.db.execute(
            """INSERT INTO payouts
               (payout_id, contributor_id, amount, credits, payment_method,
                payment_details, status, transaction_id, error_message,
                created_at, updated_at, processed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                payout.payout_id,
                payout.contributor_id,
                payout.amount,
                payout.credits,
                payout.payment_method,
                self.cipher.encrypt(payout.payment_details),
                payout.status.value,
                payout.transaction_id,
                payout.error_message,
                payout.created_at,
                payout.updated_at,
                payout.processed_at,
            )
        )
        logger.info(
            "payout_created",
            payout_id=payout.payout_id,
            contributor_id=payout.contributor_id,
            amount=payout.amount,
            status=payout.status.value,
        )
        return payout

    def get(self, payout_id: str, for_update: bool = False) -> Optional[PayoutRecord]:
        results = self.db.execute(
            self._locking("SELECT * FROM payouts WHERE payout_id = ?", for_update),
            (payout_id,)
        )
        return self._from_row(results[0]) if results else None

    def sum_in_flight(self, contributor_id: str) -> float:
        """Sum of amounts reserved by pending/processing payouts."""
        results = self.db.execute(
            """SELECT SUM(amount) as total FROM payouts
               WHERE contributor_id = ? AND status IN (?, ?)""",
            (contributor_id, *IN_FLIGHT_STATUSES)
        )
        if results and results[0].get("total") is not None:
            return float(results[0]["total"])
        return 0.0

    def list_for_contributor(self, contributor_id: str, limit: int = 10) -> List[PayoutRecord]:
        """Most recent payouts first."""
        results = self.db.execute(
            "SELECT * FROM payouts WHERE contributor_id = ? ORDER BY created_at DESC LIMIT ?",
            (contributor_id, limit)
        )
        return [self._from_row(r) for r in results]

    def list_by_status(self, status: PayoutStatus, limit: int = 100) -> List[PayoutRecord]:
        results = self.db.execute(
            "SELECT * FROM payouts WHERE status = ? ORDER BY created_at ASC LIMIT ?",
            (status.value, limit)
        )
        return [self._from_row(r) for r in results]

    def transition(
        self,
        payout_id: str,
        from_status: PayoutStatus,
        to_status: PayoutStatus,
        transaction_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Compare-and-set a payout's status.

        Only succeeds if the stored status is still `from_status`. Raises
        InvalidTransition for a move the state machine does not allow.
        """
        if not from_status.can_transition_to(to_status):
            raise InvalidTransition(
                f"Cannot move payout from {from_status.value} to {to_status.value}",
                {"payout_id": payout_id},
            )

        now = utc_now()
        processed_at = now if to_status == PayoutStatus.COMPLETED else None
        rowcount = self.db.execute_rowcount(
            """UPDATE payouts
               SET status = ?,
                   transaction_id = COALESCE(?, transaction_id),
                   error_message = COALESCE(?, error_message),
                   processed_at = COALESCE(?, processed_at),
                   updated_at = ?
               WHERE payout_id = ? AND status = ?""",
            (to_status.value, transaction_id, error_message, processed_at,
             now, payout_id, from_status.value)
        )
        if rowcount == 1:
            logger.info(
                "payout_status_changed",
                payout_id=payout_id,
                from_status=from_status.value,
                to_status=to_status.value,
            )
        return rowcount == 1
