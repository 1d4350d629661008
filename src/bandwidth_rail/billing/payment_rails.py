"""
Payment Rails

A rail moves money out to a contributor. Synchronous rails (PayPal, Stripe)
report the outcome on the call; manual rails (crypto, bank) only record the
request and are settled out of band through payout confirmation.

Outcome classes a synchronous rail may produce:

    RailResult            -> money moved, transaction id known
    ExternalServiceError  -> definitely not moved (rejected, or never sent)
    PaymentOutcomeUnknown -> request was sent, answer never arrived
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
import structlog

import httpx
import stripe

from ..config import RailConfig
from ..errors import ExternalServiceError, PaymentOutcomeUnknown, ValidationError
from ..persistence.models import PayoutRecord

logger = structlog.get_logger()

PAYPAL_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


@dataclass
class RailResult:
    transaction_id: str
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentRail(ABC):
    """One way of paying a contributor."""

    method: str = ""
    is_synchronous: bool = True
    required_details: Tuple[str, ...] = ()

    def validate_details(self, details: Optional[Dict[str, Any]]) -> Dict[str, str]:
        details = details or {}
        missing = [key for key in self.required_details if not str(details.get(key) or "").strip()]
        if missing:
            raise ValidationError(
                f"Missing payment details for {self.method}: {', '.join(missing)}",
                {"missing": missing},
            )
        return {str(k): str(v) for k, v in details.items() if v is not None}

    @abstractmethod
    def send(self, payout: PayoutRecord) -> RailResult:
        """Move `payout.amount` to the contributor."""


class ManualRail(PaymentRail):
    """Recorded only; an operator pays and then confirms the payout."""

    is_synchronous = False

    def __init__(self, method: str, detail_key: str):
        self.method = method
        self.required_details = (detail_key,)

    def send(self, payout: PayoutRecord) -> RailResult:
        raise ExternalServiceError(f"{self.method} payouts are processed manually")


class PayPalPayoutRail(PaymentRail):
    """PayPal Payouts API, paying to the contributor's PayPal email."""

    method = "paypal"
    required_details = ("paypalEmail",)

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        env: str = "sandbox",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        if env not in PAYPAL_BASE_URLS:
            raise ValueError(f"Unknown PayPal environment: {env}")
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = PAYPAL_BASE_URLS[env]
        self.timeout_seconds = timeout_seconds
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def _access_token(self) -> str:
        try:
            response = self._client.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"PayPal authentication failed: {e}") from e

        if response.status_code != 200:
            raise ExternalServiceError(
                "PayPal authentication failed",
                {"status": response.status_code},
            )
        return response.json()["access_token"]

    def _payout_body(self, payout: PayoutRecord) -> Dict[str, Any]:
        return {
            "sender_batch_header": {
                "sender_batch_id": f"batch_{payout.payout_id}",
                "email_subject": "You have a payout!",
                "email_message": "You have received a payout for sharing your bandwidth.",
            },
            "items": [
                {
                    "recipient_type": "EMAIL",
                    "amount": {"value": f"{payout.amount:.2f}", "currency": "USD"},
                    "receiver": payout.payment_details["paypalEmail"],
                    "note": "Bandwidth sharing earnings",
                    "sender_item_id": payout.payout_id,
                }
            ],
        }

    def send(self, payout: PayoutRecord) -> RailResult:
        token = self._access_token()

        try:
            response = self._client.post(
                f"{self.base_url}/v1/payments/payouts",
                json=self._payout_body(payout),
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
            )
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            raise ExternalServiceError(f"PayPal payout not sent: {e}") from e
        except httpx.HTTPError as e:
            raise PaymentOutcomeUnknown(
                f"PayPal payout outcome unknown: {e}",
                {"payout_id": payout.payout_id},
            ) from e

        if response.status_code != 201:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            raise ExternalServiceError(
                f"PayPal payout failed: {detail}",
                {"status": response.status_code},
            )

        data = response.json()
        batch_id = data.get("batch_header", {}).get("payout_batch_id")
        if not batch_id:
            raise PaymentOutcomeUnknown(
                "PayPal accepted the payout without a batch id",
                {"payout_id": payout.payout_id},
            )
        return RailResult(transaction_id=batch_id, raw=data)


class StripeTransferRail(PaymentRail):
    """Stripe Connect transfer to the contributor's connected account."""

    method = "stripe"
    required_details = ("stripeAccountId",)

    def __init__(
        self,
        api_key: str,
        timeout_seconds: float = 30.0,
        client: Optional[stripe.StripeClient] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout_seconds),
        )

    def send(self, payout: PayoutRecord) -> RailResult:
        try:
            transfer = self.client.transfers.create(
                params={
                    "amount": int(round(payout.amount * 100)),
                    "currency": "usd",
                    "destination": payout.payment_details["stripeAccountId"],
                    "metadata": {
                        "payout_id": payout.payout_id,
                        "contributor_id": payout.contributor_id,
                    },
                },
                options={"idempotency_key": payout.payout_id},
            )
        except stripe.APIConnectionError as e:
            raise PaymentOutcomeUnknown(
                f"Stripe transfer outcome unknown: {e}",
                {"payout_id": payout.payout_id},
            ) from e
        except stripe.StripeError as e:
            raise ExternalServiceError(f"Stripe transfer failed: {e}") from e

        return RailResult(transaction_id=transfer["id"], raw={"id": transfer["id"]})


def build_rails(config: RailConfig) -> Dict[str, PaymentRail]:
    """Register every rail the configuration has credentials for."""
    rails: Dict[str, PaymentRail] = {
        "crypto": ManualRail("crypto", "cryptoWallet"),
        "bank": ManualRail("bank", "bankAccount"),
    }

    if config.paypal_client_id and config.paypal_client_secret:
        rails["paypal"] = PayPalPayoutRail(
            config.paypal_client_id,
            config.paypal_client_secret,
            env=config.paypal_env,
            timeout_seconds=config.payout_timeout_seconds,
        )
    else:
        logger.warning("payment_rail_not_configured", method="paypal")

    if config.stripe_api_key:
        rails["stripe"] = StripeTransferRail(
            config.stripe_api_key,
            timeout_seconds=config.payout_timeout_seconds,
        )
    else:
        logger.warning("payment_rail_not_configured", method="stripe")

    logger.info("payment_rails_registered", methods=sorted(rails))
    return rails
