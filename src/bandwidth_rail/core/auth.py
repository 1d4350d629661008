"""
Authentication

Partners authenticate every request with an API key and secret.
Contributors present a bearer JWT issued by the account service; this
module only verifies it (issuance is exposed for operators and tests).
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import structlog

from jose import JWTError, jwt

from ..crypto.credentials import secret_matches
from ..errors import AuthError
from ..persistence.models import PartnerRecord
from ..persistence.repository import PartnerRepository

logger = structlog.get_logger()

CONTRIBUTOR_TOKEN_TYPE = "contributor_session"


class PartnerAuthenticator:
    """Validates a key/secret pair against an active partner account."""

    def __init__(self, partners: PartnerRepository):
        self.partners = partners

    def authenticate(self, api_key: Optional[str], api_secret: Optional[str]) -> PartnerRecord:
        if not api_key or not api_secret:
            raise AuthError("Missing API credentials")

        partner = self.partners.get_by_api_key(api_key)
        # Unknown keys are checked against a placeholder digest
        stored_hash = partner.api_secret_hash if partner else "0" * 64
        valid = secret_matches(api_secret, stored_hash)

        if partner is None or not valid:
            logger.warning("partner_auth_failed", reason="bad_credentials")
            raise AuthError("Invalid API credentials")

        if not partner.is_active:
            logger.warning("partner_auth_failed", partner_id=partner.partner_id, status=partner.status.value)
            raise AuthError("Invalid API credentials")

        return partner


class ContributorTokens:
    """Bearer-token verification for contributor endpoints."""

    def __init__(self, secret: str, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    def issue(self, contributor_id: str, expires_hours: int = 24 * 7, email: Optional[str] = None) -> str:
        now = datetime.now(timezone.utc)
        claims: Dict[str, Any] = {
            "sub": contributor_id,
            "type": CONTRIBUTOR_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(hours=max(expires_hours, 1))).timestamp()),
        }
        if email:
            claims["email"] = email
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> str:
        """Return the contributor id carried by a valid token."""
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError as exc:
            raise AuthError("Invalid token") from exc

        if payload.get("type") != CONTRIBUTOR_TOKEN_TYPE:
            raise AuthError("Invalid token")

        subject = str(payload.get("sub", "")).strip()
        if not subject:
            raise AuthError("Invalid token")
        return subject

    def verify_header(self, authorization: Optional[str]) -> str:
        """Parse an `Authorization: Bearer <token>` header."""
        if not authorization:
            raise AuthError("No token provided")
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthError("No token provided")
        return self.verify(token.strip())
