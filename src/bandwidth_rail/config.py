"""
Runtime Configuration

All settings come from environment variables so the same build runs
locally (SQLite, sandbox rails) and in production (PostgreSQL, live rails).
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RailConfig:
    """Configuration for the metering, settlement and payout engines."""
    database_url: str = "sqlite:///bandwidth_rail.db"

    # Contributor bearer tokens
    jwt_secret: str = "dev-jwt-secret-change-in-production"
    jwt_algorithm: str = "HS256"

    # Bounded external calls
    relay_timeout_seconds: float = 30.0
    payout_timeout_seconds: float = 30.0

    # Contributor selection
    min_headroom_mb: float = 100.0
    selector_candidate_limit: int = 100
    selector_strategy: str = "random"
    default_bandwidth_limit_gb: float = 50.0

    audit_rejected_settlements: bool = True

    # Payment rails (a rail is only registered when its credentials are set)
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_env: str = "sandbox"
    stripe_api_key: Optional[str] = None

    payment_details_secret: str = "dev-payment-details-secret"

    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    port: int = 8000

    @classmethod
    def from_env(cls) -> "RailConfig":
        """Build configuration from the process environment."""
        return cls(
            database_url=os.environ.get("DATABASE_URL", "sqlite:///bandwidth_rail.db"),
            jwt_secret=os.environ.get("JWT_SECRET", "dev-jwt-secret-change-in-production"),
            jwt_algorithm=os.environ.get("JWT_ALGORITHM", "HS256"),
            relay_timeout_seconds=float(os.environ.get("RELAY_TIMEOUT_SECONDS", 30)),
            payout_timeout_seconds=float(os.environ.get("PAYOUT_TIMEOUT_SECONDS", 30)),
            min_headroom_mb=float(os.environ.get("MIN_HEADROOM_MB", 100)),
            selector_candidate_limit=int(os.environ.get("SELECTOR_CANDIDATE_LIMIT", 100)),
            selector_strategy=os.environ.get("SELECTOR_STRATEGY", "random"),
            default_bandwidth_limit_gb=float(os.environ.get("DEFAULT_BANDWIDTH_LIMIT_GB", 50)),
            audit_rejected_settlements=_env_bool("AUDIT_REJECTED_SETTLEMENTS", True),
            paypal_client_id=os.environ.get("PAYPAL_CLIENT_ID") or None,
            paypal_client_secret=os.environ.get("PAYPAL_CLIENT_SECRET") or None,
            paypal_env=os.environ.get("PAYPAL_ENV", "sandbox"),
            stripe_api_key=os.environ.get("STRIPE_API_KEY") or None,
            payment_details_secret=os.environ.get(
                "PAYMENT_DETAILS_SECRET", "dev-payment-details-secret"
            ),
            cors_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
            port=int(os.environ.get("PORT", 8000)),
        )
