"""
BANDWIDTH RAIL - FastAPI Server

Partner-facing (x-api-key / x-api-secret):
- POST /partner/request      - Relay a request through a contributor and bill it
- GET  /partner/stats        - Balance and usage summary over a window

Contributor-facing (Authorization: Bearer <token>):
- POST /bandwidth/start      - Start sharing (activate a relay session)
- POST /bandwidth/stop       - Stop sharing
- GET  /bandwidth/data-shared
- GET  /earnings
- GET  /payout/eligibility
- POST /payout/request
- GET  /payout/history

System:
- GET  /health
- GET  /metrics
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
import structlog

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .. import __version__
from ..billing.metering import MeteringEngine
from ..billing.payment_rails import PaymentRail, build_rails
from ..billing.payouts import PayoutEngine
from ..billing.settlement import SettlementEngine
from ..config import RailConfig
from ..core.auth import ContributorTokens, PartnerAuthenticator
from ..core.locks import LedgerLocks
from ..core.selector import ContributorSelector, get_strategy
from ..core.sessions import SessionManager
from ..crypto.fields import PaymentDetailsCipher
from ..errors import RailError, ValidationError
from ..persistence.database import Database
from ..persistence.models import PartnerRecord
from ..persistence.repository import (
    EarningsRepository,
    PartnerRepository,
    PayoutRepository,
    SessionRepository,
    UsageRepository,
)
from ..relay.traffic import HttpxTrafficRelay, RelayRequest, TrafficRelay

logger = structlog.get_logger()

DEFAULT_STATS_WINDOW_DAYS = 30


# ============================================================================
# Pydantic Models
# ============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PartnerRequestBody(_CamelModel):
    """A request to relay through a contributor."""
    target_url: Optional[str] = Field(None, alias="targetUrl")
    method: Optional[str] = Field("GET")
    headers: Optional[Dict[str, Any]] = Field(default_factory=dict)
    body: Any = None
    contributor_id: Optional[str] = Field(None, alias="contributorId")


class PayoutRequestBody(_CamelModel):
    amount: float
    payment_method: str = Field(..., alias="paymentMethod")
    payment_details: Dict[str, Any] = Field(default_factory=dict, alias="paymentDetails")


class StartSharingBody(_CamelModel):
    bandwidth_limit_gb: Optional[float] = Field(None, alias="bandwidthLimitGB", gt=0)


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Wires repositories and engines to one database."""

    def __init__(
        self,
        config: RailConfig,
        relay: Optional[TrafficRelay] = None,
        rails: Optional[Dict[str, PaymentRail]] = None,
        db: Optional[Database] = None,
    ):
        self.config = config
        self.db = db or Database(config.database_url)
        self.db.initialize()

        self.locks = LedgerLocks()
        self.partners = PartnerRepository(self.db)
        self.earnings = EarningsRepository(self.db)
        self.sessions = SessionRepository(self.db)
        self.usage = UsageRepository(self.db)
        self.payouts = PayoutRepository(PaymentDetailsCipher(config.payment_details_secret), self.db)

        self.authenticator = PartnerAuthenticator(self.partners)
        self.tokens = ContributorTokens(config.jwt_secret, config.jwt_algorithm)
        self.selector = ContributorSelector(
            self.sessions,
            strategy=get_strategy(config.selector_strategy),
            min_headroom_mb=config.min_headroom_mb,
            candidate_limit=config.selector_candidate_limit,
        )
        self.metering = MeteringEngine()
        self.settlement = SettlementEngine(
            self.db,
            self.partners,
            self.earnings,
            self.sessions,
            self.usage,
            self.locks,
            metering=self.metering,
            audit_rejected=config.audit_rejected_settlements,
        )
        self.session_manager = SessionManager(
            self.db, self.sessions, self.locks, config.default_bandwidth_limit_gb,
        )
        self.payout_engine = PayoutEngine(
            self.db,
            self.earnings,
            self.payouts,
            self.locks,
            rails if rails is not None else build_rails(config),
        )
        self.relay = relay or HttpxTrafficRelay(timeout_seconds=config.relay_timeout_seconds)
        self.start_time = datetime.now(timezone.utc)


# ============================================================================
# Dependencies
# ============================================================================

def get_state(request: Request) -> AppState:
    state = getattr(request.app.state, "rail", None)
    if state is None:
        raise RailError("Application not initialized")
    return state


def get_partner(
    x_api_key: Optional[str] = Header(None, alias="x-api-key"),
    x_api_secret: Optional[str] = Header(None, alias="x-api-secret"),
    state: AppState = Depends(get_state),
) -> PartnerRecord:
    return state.authenticator.authenticate(x_api_key, x_api_secret)


def get_contributor(
    authorization: Optional[str] = Header(None),
    state: AppState = Depends(get_state),
) -> str:
    return state.tokens.verify_header(authorization)


def _parse_bound(value: Optional[str], end_of_day: bool) -> Optional[datetime]:
    if not value:
        return None
    try:
        if len(value) == 10:
            day = date.fromisoformat(value)
            return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid date: {value}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    # Stored timestamps are UTC isoformat strings, compared lexically.
    return parsed.astimezone(timezone.utc)


def stats_window(start_date: Optional[str], end_date: Optional[str]) -> Tuple[datetime, datetime]:
    """Default window is the last 30 days; a date-only end is inclusive."""
    end = _parse_bound(end_date, end_of_day=True) or datetime.now(timezone.utc)
    start = _parse_bound(start_date, end_of_day=False) or end - timedelta(days=DEFAULT_STATS_WINDOW_DAYS)
    if start > end:
        raise ValidationError("startDate must not be after endDate")
    return start, end


# ============================================================================
# Endpoints
# ============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(status="healthy", version=__version__, uptime_seconds=uptime)


@router.get("/metrics", tags=["System"])
async def get_metrics(state: AppState = Depends(get_state)):
    return {"success": True, "metering": state.metering.get_metrics()}


@router.post("/partner/request", tags=["Partner"])
async def partner_request(
    body: PartnerRequestBody,
    partner: PartnerRecord = Depends(get_partner),
    state: AppState = Depends(get_state),
):
    """
    Relay a request through a contributor and bill the partner.

    The contributor is chosen by the selector unless `contributorId` is
    given. Nothing is billed if the relay fails.
    """
    relay_request = RelayRequest.build(body.target_url, body.method, body.headers, body.body)
    contributor_id = await asyncio.to_thread(state.selector.select, body.contributor_id)

    result = await state.settlement.execute(
        partner.partner_id, contributor_id, relay_request, state.relay,
    )
    return result.to_response()


@router.get("/partner/stats", tags=["Partner"])
def partner_stats(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    partner: PartnerRecord = Depends(get_partner),
    state: AppState = Depends(get_state),
):
    start, end = stats_window(start_date, end_date)
    current = state.partners.get(partner.partner_id) or partner
    usage = state.usage.get_partner_summary(partner.partner_id, start.isoformat(), end.isoformat())

    return {
        "success": True,
        "partner": {
            "name": current.name,
            "pricingTier": current.pricing_tier.value,
            "pricePerGB": current.price_per_gb,
            "balance": current.balance,
            "totalUsageGB": current.total_usage_gb,
            "totalSpent": current.total_spent,
        },
        "usage": usage,
        "period": {"startDate": start.isoformat(), "endDate": end.isoformat()},
    }


@router.post("/bandwidth/start", tags=["Contributor"])
def start_sharing(
    body: Optional[StartSharingBody] = None,
    contributor_id: str = Depends(get_contributor),
    state: AppState = Depends(get_state),
):
    limit = body.bandwidth_limit_gb if body else None
    session = state.session_manager.start(contributor_id, limit)
    return {"success": True, "message": "Bandwidth sharing started", "session": session.to_dict()}


@router.post("/bandwidth/stop", tags=["Contributor"])
def stop_sharing(
    contributor_id: str = Depends(get_contributor),
    state: AppState = Depends(get_state),
):
    stopped = state.session_manager.stop(contributor_id)
    return {"success": True, "message": "Bandwidth sharing stopped", "stopped": stopped}


@router.get("/bandwidth/data-shared", tags=["Contributor"])
def data_shared(
    contributor_id: str = Depends(get_contributor),
    state: AppState = Depends(get_state),
):
    active = state.session_manager.active(contributor_id)
    return {
        "success": True,
        "dataSharedMB": state.session_manager.data_shared_today(contributor_id),
        "isSharing": active is not None,
    }


@router.get("/earnings", tags=["Contributor"])
def get_earnings(
    contributor_id: str = Depends(get_contributor),
    state: AppState = Depends(get_state),
):
    record = state.earnings.get(contributor_id)
    if record is None:
        return {"success": True, "todayEarned": 0.0, "totalEarned": 0.0}

    today = datetime.now(timezone.utc).date().isoformat()
    return {
        "success": True,
        "todayEarned": record.today_earned if record.earnings_day == today else 0.0,
        "totalEarned": record.total_earned,
    }


@router.get("/payout/eligibility", tags=["Payout"])
def payout_eligibility(
    contributor_id: str = Depends(get_contributor),
    state: AppState = Depends(get_state),
):
    return state.payout_engine.eligibility(contributor_id)


@router.post("/payout/request", tags=["Payout"])
def payout_request(
    body: PayoutRequestBody,
    contributor_id: str = Depends(get_contributor),
    state: AppState = Depends(get_state),
):
    result = state.payout_engine.request_payout(
        contributor_id, body.amount, body.payment_method, body.payment_details,
    )
    return {"success": True, **result}


@router.get("/payout/history", tags=["Payout"])
def payout_history(
    limit: int = Query(10, ge=1, le=100),
    contributor_id: str = Depends(get_contributor),
    state: AppState = Depends(get_state),
):
    return {"success": True, "payouts": state.payout_engine.history(contributor_id, limit)}


# ============================================================================
# Exception Handlers
# ============================================================================

async def rail_error_handler(request: Request, exc: RailError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_failed",
        path=request.url.path,
        error_type=type(exc).__name__,
        error=exc.message,
        status=exc.status_code,
        details=exc.details,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field_name = ".".join(str(p) for p in first.get("loc", ())[1:]) or "request"
        message = f"{field_name}: {first.get('msg', 'invalid')}"
    else:
        message = "Invalid request"
    logger.warning("request_invalid", path=request.url.path, error=message)
    return JSONResponse(status_code=400, content={"success": False, "error": message})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# ============================================================================
# Application Factory
# ============================================================================

def create_app(
    config: Optional[RailConfig] = None,
    relay: Optional[TrafficRelay] = None,
    rails: Optional[Dict[str, PaymentRail]] = None,
    db: Optional[Database] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or RailConfig.from_env()

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        logger.info("bandwidth_rail_starting", version=__version__)
        application.state.rail = AppState(config, relay=relay, rails=rails, db=db)
        yield
        await application.state.rail.relay.aclose()
        logger.info("bandwidth_rail_stopping")

    application = FastAPI(
        title="Bandwidth Rail",
        description="Usage metering, settlement and payouts for bandwidth sharing.",
        version=__version__,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(RailError, rail_error_handler)
    application.add_exception_handler(RequestValidationError, request_validation_handler)
    application.add_exception_handler(Exception, unhandled_error_handler)
    application.include_router(router)

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=RailConfig.from_env().port)
