"""
Bandwidth Rail CLI

Commands:
  serve           - Run the API server
  create-partner  - Provision a partner account and print its credentials
  add-balance     - Top up a partner's prepaid balance
  issue-token     - Issue a contributor bearer token (operators/testing)
  list-payouts    - List payouts awaiting reconciliation
  payout-confirm  - Mark a pending/processing payout completed
  payout-reject   - Mark a pending/processing payout failed
"""

import argparse
import json
import sys
from typing import List, Optional

from .config import RailConfig


def _state(config: RailConfig):
    from .api.server import AppState
    return AppState(config, rails={})


def cmd_serve(args, config: RailConfig) -> int:
    """Run the API server."""
    import uvicorn

    port = args.port or config.port
    print(f"Starting Bandwidth Rail on {args.host}:{port}")

    uvicorn.run(
        "bandwidth_rail.api.server:app",
        host=args.host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )
    return 0


def cmd_create_partner(args, config: RailConfig) -> int:
    from .crypto.credentials import generate_credentials, hash_secret
    from .persistence.models import PartnerRecord, PricingTier, new_id

    state = _state(config)
    tier = PricingTier(args.tier)
    api_key, api_secret = generate_credentials()

    partner = state.partners.create(PartnerRecord(
        partner_id=new_id("ptr"),
        name=args.name,
        email=args.email,
        api_key=api_key,
        api_secret_hash=hash_secret(api_secret),
        pricing_tier=tier,
        price_per_gb=tier.price_per_gb,
        balance=args.balance,
    ))

    print(json.dumps({
        "partner_id": partner.partner_id,
        "tier": tier.label,
        "price_per_gb": partner.price_per_gb,
        "balance": partner.balance,
        "api_key": api_key,
        "api_secret": api_secret,
    }, indent=2))
    print("Store the API secret now; it cannot be shown again.", file=sys.stderr)
    return 0


def cmd_add_balance(args, config: RailConfig) -> int:
    if args.amount <= 0:
        print("Amount must be positive", file=sys.stderr)
        return 1

    state = _state(config)
    with state.locks.partners.hold(args.partner_id):
        partner = state.partners.add_balance(args.partner_id, args.amount)

    if partner is None:
        print(f"Partner not found: {args.partner_id}", file=sys.stderr)
        return 1
    print(json.dumps(partner.to_dict(), indent=2))
    return 0


def cmd_issue_token(args, config: RailConfig) -> int:
    from .core.auth import ContributorTokens

    tokens = ContributorTokens(config.jwt_secret, config.jwt_algorithm)
    print(tokens.issue(args.contributor_id, expires_hours=args.hours, email=args.email))
    return 0


def cmd_list_payouts(args, config: RailConfig) -> int:
    from .persistence.models import PayoutStatus

    state = _state(config)
    payouts = state.payouts.list_by_status(PayoutStatus(args.status), limit=args.limit)
    print(json.dumps([p.to_dict() for p in payouts], indent=2))
    return 0


def cmd_payout_confirm(args, config: RailConfig) -> int:
    state = _state(config)
    payout = state.payout_engine.confirm(args.payout_id, args.transaction_id)
    print(json.dumps(payout.to_dict(), indent=2))
    return 0


def cmd_payout_reject(args, config: RailConfig) -> int:
    state = _state(config)
    payout = state.payout_engine.reject(args.payout_id, args.reason)
    print(json.dumps(payout.to_dict(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bandwidth-rail",
        description="Bandwidth Rail - usage metering, settlement and payouts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # create-partner
    partner_parser = subparsers.add_parser("create-partner", help="Provision a partner")
    partner_parser.add_argument("--name", required=True)
    partner_parser.add_argument("--email", required=True)
    partner_parser.add_argument("--tier", default="tier1", choices=["tier1", "tier2", "tier3"])
    partner_parser.add_argument("--balance", type=float, default=100.0, help="Opening balance (USD)")

    # add-balance
    balance_parser = subparsers.add_parser("add-balance", help="Top up a partner balance")
    balance_parser.add_argument("partner_id")
    balance_parser.add_argument("amount", type=float)

    # issue-token
    token_parser = subparsers.add_parser("issue-token", help="Issue a contributor token")
    token_parser.add_argument("contributor_id")
    token_parser.add_argument("--hours", type=int, default=24 * 7)
    token_parser.add_argument("--email", default=None)

    # list-payouts
    list_parser = subparsers.add_parser("list-payouts", help="List payouts by status")
    list_parser.add_argument("--status", default="pending", choices=["pending", "processing", "completed", "failed"])
    list_parser.add_argument("--limit", type=int, default=100)

    # payout-confirm / payout-reject
    confirm_parser = subparsers.add_parser("payout-confirm", help="Mark a payout completed")
    confirm_parser.add_argument("payout_id")
    confirm_parser.add_argument("transaction_id")

    reject_parser = subparsers.add_parser("payout-reject", help="Mark a payout failed")
    reject_parser.add_argument("payout_id")
    reject_parser.add_argument("--reason", default="Rejected by operator")

    return parser


COMMANDS = {
    "serve": cmd_serve,
    "create-partner": cmd_create_partner,
    "add-balance": cmd_add_balance,
    "issue-token": cmd_issue_token,
    "list-payouts": cmd_list_payouts,
    "payout-confirm": cmd_payout_confirm,
    "payout-reject": cmd_payout_reject,
}


def main(argv: Optional[List[str]] = None, config: Optional[RailConfig] = None) -> int:
    from .errors import RailError

    parser = build_parser()
    args = parser.parse_args(argv)

    command = COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    try:
        return command(args, config or RailConfig.from_env())
    except RailError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
