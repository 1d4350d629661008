"""
Tests for the operator CLI
"""

import json

import pytest

from bandwidth_rail.billing.payouts import to_credits
from bandwidth_rail.cli import main
from bandwidth_rail.core.auth import ContributorTokens
from bandwidth_rail.crypto.credentials import secret_matches
from bandwidth_rail.persistence.models import PayoutRecord, PayoutStatus, new_id


def _pending(payouts, amount=6.0):
    return payouts.create(PayoutRecord(
        payout_id=new_id("pay"),
        contributor_id="contrib-1",
        amount=amount,
        credits=to_credits(amount),
        payment_method="bank",
        payment_details={"bankAccount": "GB29NWBK60161331926819"},
        status=PayoutStatus.PENDING,
    ))


class TestPartnerCommands:

    def test_create_partner_prints_credentials_once(self, config, partners, capsys):
        code = main(["create-partner", "--name", "Acme", "--email", "ops@acme.test", "--tier", "tier2"], config)

        assert code == 0
        out = json.loads(capsys.readouterr().out)
        stored = partners.get(out["partner_id"])
        assert stored.balance == pytest.approx(100.0)
        assert stored.api_key == out["api_key"]
        assert secret_matches(out["api_secret"], stored.api_secret_hash)
        assert out["api_secret"] != stored.api_secret_hash

    def test_add_balance(self, config, make_partner, partners, capsys):
        partner, _, _ = make_partner(balance=1.0)

        assert main(["add-balance", partner.partner_id, "4.5"], config) == 0
        assert partners.get(partner.partner_id).balance == pytest.approx(5.5)

    def test_add_balance_unknown_partner(self, config, partners):
        assert main(["add-balance", "ptr_missing", "1"], config) == 1

    def test_add_balance_must_be_positive(self, config, make_partner):
        partner, _, _ = make_partner()

        assert main(["add-balance", partner.partner_id, "-1"], config) == 1


class TestTokenCommand:

    def test_issue_token(self, config, capsys):
        assert main(["issue-token", "contrib-9"], config) == 0

        token = capsys.readouterr().out.strip()
        assert ContributorTokens(config.jwt_secret).verify(token) == "contrib-9"


class TestPayoutCommands:
    """Test operator reconciliation of manual payouts."""

    def test_list_pending(self, config, payouts, capsys):
        payout = _pending(payouts)

        assert main(["list-payouts", "--status", "pending"], config) == 0
        listed = json.loads(capsys.readouterr().out)
        assert [p["payout_id"] for p in listed] == [payout.payout_id]

    def test_confirm_debits_earnings(self, config, payouts, earnings, seed_earnings):
        seed_earnings("contrib-1", 10.0)
        payout = _pending(payouts)

        assert main(["payout-confirm", payout.payout_id, "WIRE-77"], config) == 0

        stored = payouts.get(payout.payout_id)
        assert stored.status == PayoutStatus.COMPLETED
        assert stored.transaction_id == "WIRE-77"
        assert earnings.get("contrib-1").total_earned == pytest.approx(4.0)

    def test_reject(self, config, payouts, earnings, seed_earnings):
        seed_earnings("contrib-1", 10.0)
        payout = _pending(payouts)

        assert main(["payout-reject", payout.payout_id, "--reason", "Wrong IBAN"], config) == 0

        stored = payouts.get(payout.payout_id)
        assert stored.status == PayoutStatus.FAILED
        assert earnings.get("contrib-1").total_earned == pytest.approx(10.0)

    def test_unknown_payout_exits_nonzero(self, config, capsys):
        assert main(["payout-confirm", "pay_missing", "TX"], config) == 1
        assert capsys.readouterr().err.startswith("Error:")

    def test_no_command_prints_help(self, config):
        assert main([], config) == 1
