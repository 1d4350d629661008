"""
Tests for the Payout Engine

Eligibility nets out in-flight payouts; earnings are debited only when a
payout completes; a failed payout is never resurrected.
"""

import threading

import pytest
from structlog.testing import capture_logs

from bandwidth_rail.billing.payment_rails import ManualRail, PaymentRail, RailResult
from bandwidth_rail.billing.payouts import PayoutEngine, to_credits
from bandwidth_rail.errors import (
    ExternalServiceError,
    InvalidTransition,
    NotFoundError,
    PaymentOutcomeUnknown,
    ValidationError,
)
from bandwidth_rail.persistence.models import PayoutRecord, PayoutStatus, new_id

PAYPAL = {"paypalEmail": "contrib@example.com"}


class FakeRail(PaymentRail):
    """Synchronous rail with a scripted outcome."""

    method = "paypal"
    required_details = ("paypalEmail",)

    def __init__(self, error=None, started=None, release=None):
        self.error = error
        self.sent = []
        self.started = started
        self.release = release

    def send(self, payout):
        self.sent.append(payout.payout_id)
        if self.started is not None:
            self.started.set()
            self.release.wait(5)
        if self.error is not None:
            raise self.error
        return RailResult(transaction_id=f"batch-{payout.payout_id}")


@pytest.fixture
def rail():
    return FakeRail()


@pytest.fixture
def engine(db, earnings, payouts, locks, rail):
    return PayoutEngine(db, earnings, payouts, locks, {
        "paypal": rail,
        "crypto": ManualRail("crypto", "cryptoWallet"),
        "bank": ManualRail("bank", "bankAccount"),
    })


def _in_flight(payouts, amount, status=PayoutStatus.PROCESSING, contributor_id="contrib-1"):
    return payouts.create(PayoutRecord(
        payout_id=new_id("pay"),
        contributor_id=contributor_id,
        amount=amount,
        credits=to_credits(amount),
        payment_method="paypal",
        payment_details=PAYPAL,
        status=status,
    ))


class TestEligibility:
    """Test the pure eligibility query."""

    def test_no_earnings(self, engine):
        result = engine.eligibility("contrib-1")

        assert result == {"eligible": False, "available": 0.0, "minimum": 5.0, "message": "No earnings found"}

    def test_eligible(self, engine, seed_earnings):
        seed_earnings("contrib-1", 12.0)

        result = engine.eligibility("contrib-1")

        assert result["eligible"] is True
        assert result["available"] == pytest.approx(12.0)
        assert result["message"] == "Eligible for payout"

    def test_in_flight_payout_netted(self, engine, seed_earnings, payouts):
        """$12 earned, $8 processing: $4 available, $1 short."""
        seed_earnings("contrib-1", 12.0)
        _in_flight(payouts, 8.0)

        result = engine.eligibility("contrib-1")

        assert result["eligible"] is False
        assert result["available"] == pytest.approx(4.0)
        assert result["message"] == "Need $1.00 more to reach minimum"

    def test_pending_counts_failed_does_not(self, engine, seed_earnings, payouts):
        seed_earnings("contrib-1", 20.0)
        _in_flight(payouts, 3.0, PayoutStatus.PENDING)
        _in_flight(payouts, 100.0, PayoutStatus.FAILED)

        assert engine.eligibility("contrib-1")["available"] == pytest.approx(17.0)

    def test_exactly_minimum_is_eligible(self, engine, seed_earnings):
        seed_earnings("contrib-1", 5.0)

        assert engine.eligibility("contrib-1")["eligible"] is True


class TestRequestPayout:
    """Test payout request processing."""

    def test_below_minimum_rejected(self, engine, seed_earnings, payouts):
        """$3 requested with $10 available: rejected, nothing created."""
        seed_earnings("contrib-1", 10.0)

        with pytest.raises(ValidationError):
            engine.request_payout("contrib-1", 3.0, "paypal", PAYPAL)

        assert payouts.list_for_contributor("contrib-1") == []

    def test_above_available_rejected(self, engine, seed_earnings):
        seed_earnings("contrib-1", 10.0)

        with pytest.raises(ValidationError):
            engine.request_payout("contrib-1", 10.01, "paypal", PAYPAL)

    def test_missing_details_rejected(self, engine, seed_earnings, rail):
        seed_earnings("contrib-1", 10.0)

        with pytest.raises(ValidationError):
            engine.request_payout("contrib-1", 6.0, "paypal", {})

        assert rail.sent == []

    def test_minimum_checked_before_details(self, engine, seed_earnings, payouts):
        """Scenario D with missing details still reports the minimum."""
        seed_earnings("contrib-1", 10.0)

        with pytest.raises(ValidationError) as exc_info:
            engine.request_payout("contrib-1", 3.0, "paypal", {})

        assert exc_info.value.message == "Minimum payout is $5.00"
        assert payouts.list_for_contributor("contrib-1") == []

    def test_available_checked_before_method(self, engine, seed_earnings):
        seed_earnings("contrib-1", 10.0)

        with pytest.raises(ValidationError) as exc_info:
            engine.request_payout("contrib-1", 20.0, "cheque", {})

        assert exc_info.value.message == "Insufficient available earnings"

    def test_unknown_method_rejected(self, engine, seed_earnings):
        seed_earnings("contrib-1", 10.0)

        with pytest.raises(ValidationError):
            engine.request_payout("contrib-1", 6.0, "cheque", {"address": "x"})

    @pytest.mark.parametrize("amount", [0, -5, "abc", float("nan")])
    def test_bad_amount(self, engine, seed_earnings, amount):
        seed_earnings("contrib-1", 10.0)

        with pytest.raises(ValidationError):
            engine.request_payout("contrib-1", amount, "paypal", PAYPAL)

    def test_success_completes_and_debits(self, engine, seed_earnings, earnings, payouts, rail):
        seed_earnings("contrib-1", 10.0)

        result = engine.request_payout("contrib-1", 6.0, "paypal", PAYPAL)

        assert result["status"] == "completed"
        assert result["credits"] == 6000
        assert result["transactionId"] == f"batch-{result['payoutId']}"
        assert rail.sent == [result["payoutId"]]

        stored = payouts.get(result["payoutId"])
        assert stored.status == PayoutStatus.COMPLETED
        assert stored.processed_at is not None
        assert earnings.get("contrib-1").total_earned == pytest.approx(4.0)

    def test_rail_failure_marks_failed(self, engine, seed_earnings, earnings, payouts, rail):
        """A failed transfer leaves earnings untouched."""
        rail.error = ExternalServiceError("PayPal payout failed: RECEIVER_UNREGISTERED")
        seed_earnings("contrib-1", 10.0)

        with pytest.raises(ExternalServiceError):
            engine.request_payout("contrib-1", 6.0, "paypal", PAYPAL)

        stored = payouts.list_for_contributor("contrib-1")[0]
        assert stored.status == PayoutStatus.FAILED
        assert "RECEIVER_UNREGISTERED" in stored.error_message
        assert earnings.get("contrib-1").total_earned == pytest.approx(10.0)
        assert engine.eligibility("contrib-1")["available"] == pytest.approx(10.0)

    def test_unexpected_rail_exception_marks_failed(self, engine, seed_earnings, payouts, rail):
        rail.error = RuntimeError("boom")
        seed_earnings("contrib-1", 10.0)

        with pytest.raises(ExternalServiceError):
            engine.request_payout("contrib-1", 6.0, "paypal", PAYPAL)

        assert payouts.list_for_contributor("contrib-1")[0].status == PayoutStatus.FAILED

    def test_ambiguous_timeout_stays_processing(self, engine, seed_earnings, earnings, payouts, rail):
        """Unknown outcome: neither completed nor failed, reservation kept."""
        rail.error = PaymentOutcomeUnknown("read timed out")
        seed_earnings("contrib-1", 10.0)

        result = engine.request_payout("contrib-1", 6.0, "paypal", PAYPAL)

        assert result["status"] == "processing"
        assert payouts.get(result["payoutId"]).status == PayoutStatus.PROCESSING
        assert earnings.get("contrib-1").total_earned == pytest.approx(10.0)
        assert engine.eligibility("contrib-1")["available"] == pytest.approx(4.0)

    def test_manual_method_stays_pending(self, engine, seed_earnings, earnings, payouts):
        seed_earnings("contrib-1", 10.0)

        result = engine.request_payout("contrib-1", 7.0, "crypto", {"cryptoWallet": "0xabc"})

        assert result["status"] == "pending"
        assert result["transactionId"] is None
        assert payouts.get(result["payoutId"]).status == PayoutStatus.PENDING
        assert earnings.get("contrib-1").total_earned == pytest.approx(10.0)

    def test_earnings_floor_at_zero(self, engine, seed_earnings, earnings, payouts):
        """Completion never drives total_earned negative."""
        seed_earnings("contrib-1", 10.0)
        payout = _in_flight(payouts, 12.0, PayoutStatus.PENDING)

        engine.confirm(payout.payout_id, "tx-1")

        assert earnings.get("contrib-1").total_earned == 0.0


class TestNoDoubleSpend:
    """Test concurrent payout requests for one contributor."""

    def test_two_concurrent_8_dollar_requests(self, db, earnings, payouts, locks, seed_earnings):
        """$10 earned, two $8 requests: exactly one succeeds."""
        seed_earnings("contrib-1", 10.0)
        started = threading.Event()
        release = threading.Event()
        rail = FakeRail(started=started, release=release)
        engine = PayoutEngine(db, earnings, payouts, locks, {"paypal": rail})
        outcomes = []

        def request():
            try:
                outcomes.append(engine.request_payout("contrib-1", 8.0, "paypal", PAYPAL)["status"])
            except ValidationError:
                outcomes.append("rejected")

        first = threading.Thread(target=request)
        first.start()
        # The first payout's row exists and its rail call is in flight
        assert started.wait(5)
        second = threading.Thread(target=request)
        second.start()
        second.join(5)
        release.set()
        first.join(5)

        assert sorted(outcomes) == ["completed", "rejected"]
        assert earnings.get("contrib-1").total_earned == pytest.approx(2.0)

    def test_parallel_requests_never_overdraw(self, db, earnings, payouts, locks, seed_earnings):
        seed_earnings("contrib-1", 20.0)
        engine = PayoutEngine(db, earnings, payouts, locks, {"crypto": ManualRail("crypto", "cryptoWallet")})
        outcomes = []

        def request():
            try:
                engine.request_payout("contrib-1", 6.0, "crypto", {"cryptoWallet": "0xabc"})
                outcomes.append("ok")
            except ValidationError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=request) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 3
        assert payouts.sum_in_flight("contrib-1") == pytest.approx(18.0)


class TestReconciliation:
    """Test out-of-band confirm and reject."""

    def test_confirm_pending(self, engine, seed_earnings, earnings, payouts):
        seed_earnings("contrib-1", 10.0)
        payout = _in_flight(payouts, 6.0, PayoutStatus.PENDING)

        confirmed = engine.confirm(payout.payout_id, "wire-123")

        assert confirmed.status == PayoutStatus.COMPLETED
        assert confirmed.transaction_id == "wire-123"
        assert earnings.get("contrib-1").total_earned == pytest.approx(4.0)

    def test_confirm_pending_passes_through_processing(self, engine, seed_earnings, payouts):
        seed_earnings("contrib-1", 10.0)
        payout = _in_flight(payouts, 6.0, PayoutStatus.PENDING)

        with capture_logs() as logs:
            engine.confirm(payout.payout_id, "wire-123")

        steps = [
            (entry["from_status"], entry["to_status"])
            for entry in logs if entry["event"] == "payout_status_changed"
        ]
        assert steps == [("pending", "processing"), ("processing", "completed")]

    def test_reject_pending_passes_through_processing(self, engine, seed_earnings, payouts):
        seed_earnings("contrib-1", 10.0)
        payout = _in_flight(payouts, 6.0, PayoutStatus.PENDING)

        with capture_logs() as logs:
            engine.reject(payout.payout_id, "Wallet address invalid")

        steps = [
            (entry["from_status"], entry["to_status"])
            for entry in logs if entry["event"] == "payout_status_changed"
        ]
        assert steps == [("pending", "processing"), ("processing", "failed")]

    def test_confirm_processing_after_timeout(self, engine, seed_earnings, payouts):
        seed_earnings("contrib-1", 10.0)
        payout = _in_flight(payouts, 6.0, PayoutStatus.PROCESSING)

        assert engine.confirm(payout.payout_id, "batch-1").status == PayoutStatus.COMPLETED

    def test_reject_keeps_earnings(self, engine, seed_earnings, earnings, payouts):
        seed_earnings("contrib-1", 10.0)
        payout = _in_flight(payouts, 6.0, PayoutStatus.PENDING)

        rejected = engine.reject(payout.payout_id, "Wallet address invalid")

        assert rejected.status == PayoutStatus.FAILED
        assert rejected.error_message == "Wallet address invalid"
        assert earnings.get("contrib-1").total_earned == pytest.approx(10.0)

    def test_failed_cannot_be_resurrected(self, engine, seed_earnings, payouts):
        seed_earnings("contrib-1", 10.0)
        payout = _in_flight(payouts, 6.0, PayoutStatus.FAILED)

        with pytest.raises(InvalidTransition):
            engine.confirm(payout.payout_id, "tx")

    def test_completed_cannot_be_rejected(self, engine, seed_earnings, payouts):
        seed_earnings("contrib-1", 10.0)
        payout = _in_flight(payouts, 6.0, PayoutStatus.COMPLETED)

        with pytest.raises(InvalidTransition):
            engine.reject(payout.payout_id, "too late")

    def test_unknown_payout(self, engine):
        with pytest.raises(NotFoundError):
            engine.confirm("pay_missing", "tx")

    def test_confirm_requires_transaction_id(self, engine, payouts):
        payout = _in_flight(payouts, 6.0, PayoutStatus.PENDING)

        with pytest.raises(ValidationError):
            engine.confirm(payout.payout_id, "")


class TestHistory:
    """Test payout history."""

    def test_newest_first_and_limited(self, engine, seed_earnings):
        seed_earnings("contrib-1", 100.0)
        ids = [engine.request_payout("contrib-1", 5.0, "paypal", PAYPAL)["payoutId"] for _ in range(3)]

        history = engine.history("contrib-1", limit=2)

        assert [h["payout_id"] for h in history] == [ids[2], ids[1]]

    def test_details_masked(self, engine, seed_earnings):
        seed_earnings("contrib-1", 10.0)
        engine.request_payout("contrib-1", 5.0, "paypal", PAYPAL)

        entry = engine.history("contrib-1")[0]

        assert entry["payment_details"] == {"paypalEmail": "co***@example.com"}
