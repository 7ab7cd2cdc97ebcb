"""
PHONEBOOTH - FastAPI Server

Thin HTTP serialization of the Accounting Service.

Endpoints:
- GET  /api/calls                  - Calls of the current user
- POST /api/calls                  - Start a call (ringing, or failed if unpriced)
- GET  /api/calls/{id}             - One call of the current user
- POST /api/calls/{id}/events      - Signaling event (answered, hangup, error)
- GET  /api/transactions           - Ledger history of the current user
- GET  /api/balance                - Balance with display-currency conversion
- GET/PUT /api/rates               - Pricing administration
- POST /api/users                  - Account creation
- POST /api/users/{id}/topups      - Credit an account
- POST /api/users/{id}/reconcile   - Rebuild a cached balance from the ledger

The current user arrives resolved in the X-User-Id header. Signaling and
administration endpoints require the X-API-Key header.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
import os
import structlog

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StrictInt

from .. import __version__
from ..core.calls import CallEvent
from ..core.errors import (
    BillingError,
    CallBusy,
    CallNotFound,
    LedgerError,
    LedgerInconsistency,
    StorageUnavailable,
    UserNotFound,
)
from ..core.ledger import TransactionType
from ..service import AccountingService

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class StartCallRequest(BaseModel):
    """Request to place a call."""
    model_config = ConfigDict(populate_by_name=True)

    callee_id: str = Field(..., alias="calleeID", description="Number being called")
    country_code: StrictInt = Field(..., alias="countryCode", gt=0, description="Destination dial code")
    country: Optional[str] = Field(None, description="ISO country, needed when a dial code is shared")


class CallEventRequest(BaseModel):
    """Lifecycle event from the signaling layer."""
    event: CallEvent


class RateRequest(BaseModel):
    country: str = Field(..., min_length=2, max_length=3)
    code: StrictInt = Field(..., gt=0)
    price: StrictInt = Field(..., ge=0, description="Minor units per billing unit")


class CreateUserRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    caller_id: str = Field(..., alias="callerId")
    currency: Optional[str] = None
    display_currency: Optional[str] = Field(None, alias="displayCurrency")


class AmountRequest(BaseModel):
    amount: StrictInt = Field(..., gt=0, description="Minor units")
    note: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    meter_running: bool
    meter_ticks: int
    uptime_seconds: float


# ============================================================================
# Application Factory
# ============================================================================

def create_app(service: Optional[AccountingService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Without a service one is built from the environment at startup. The
    billing meter runs for the lifetime of the application when
    configured to.
    """

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        state_service = service or AccountingService()
        application.state.service = state_service
        application.state.start_time = datetime.now(timezone.utc)
        logger.info("phonebooth_starting", version=__version__)
        if state_service.config.start_meter:
            state_service.start()
        yield
        logger.info("phonebooth_stopping")
        state_service.shutdown()

    application = FastAPI(
        title="Phonebooth",
        description="Prepaid call billing and balance accounting.",
        version=__version__,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(BillingError, billing_error_handler)
    application.include_router(router)
    return application


def error_status(error: BillingError) -> int:
    if isinstance(error, (CallNotFound, UserNotFound)):
        return 404
    if isinstance(error, (StorageUnavailable, CallBusy)):
        return 503
    if isinstance(error, LedgerInconsistency):
        return 500
    if isinstance(error, LedgerError):
        return 400
    return 409


async def billing_error_handler(request: Request, error: BillingError) -> JSONResponse:
    status = error_status(error)
    log = logger.error if status >= 500 else logger.info
    log("request_failed", path=request.url.path, error=type(error).__name__, detail=str(error))
    headers = {"Retry-After": "1"} if error.retryable else None
    return JSONResponse(
        status_code=status,
        content={"error": type(error).__name__, "detail": str(error), "retryable": error.retryable},
        headers=headers,
    )


# ============================================================================
# Dependencies
# ============================================================================

def get_service(request: Request) -> AccountingService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return service


def current_user(x_user_id: int = Header(..., alias="X-User-Id")) -> int:
    """User id resolved by the identity layer in front of this service."""
    return x_user_id


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

router = APIRouter()


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(request: Request, service: AccountingService = Depends(get_service)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - request.app.state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        meter_running=service.meter.running,
        meter_ticks=service.meter.ticks,
        uptime_seconds=uptime,
    )


@router.get("/api/calls", tags=["Calls"])
def list_calls(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(current_user),
    service: AccountingService = Depends(get_service),
):
    return [c.to_dict() for c in service.list_calls(user_id, limit=limit, offset=offset)]


@router.post("/api/calls", status_code=201, tags=["Calls"])
def start_call(
    request: StartCallRequest,
    user_id: int = Depends(current_user),
    service: AccountingService = Depends(get_service),
):
    """
    Start a call.

    The call is returned ringing, or already failed when no rate prices the
    destination.
    """
    call = service.start_call(user_id, request.callee_id, request.country_code, request.country)
    return call.to_dict()


@router.get("/api/calls/{call_id}", tags=["Calls"])
def get_call(
    call_id: int,
    user_id: int = Depends(current_user),
    service: AccountingService = Depends(get_service),
):
    return service.get_call(call_id, owner=user_id).to_dict()


@router.post("/api/calls/{call_id}/events", tags=["Signaling"])
def report_call_event(
    call_id: int,
    request: CallEventRequest,
    service: AccountingService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    return service.report_call_event(call_id, request.event).to_dict()


@router.get("/api/transactions", tags=["Ledger"])
def list_transactions(
    transaction_type: Optional[TransactionType] = Query(None, alias="transactionType"),
    call_id: Optional[int] = Query(None, alias="callId"),
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    user_id: int = Depends(current_user),
    service: AccountingService = Depends(get_service),
):
    history = service.list_transactions(
        user_id,
        transaction_type=transaction_type,
        call_id=call_id,
        since=since,
        until=until,
    )
    return [t.to_dict() for t in history]


@router.get("/api/balance", tags=["Ledger"])
def get_balance(
    user_id: int = Depends(current_user),
    service: AccountingService = Depends(get_service),
):
    return service.balance(user_id)


@router.get("/api/rates", tags=["Pricing"])
def list_rates(
    service: AccountingService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    return [r.to_dict() for r in service.list_rates()]


@router.put("/api/rates", tags=["Pricing"])
def set_rate(
    request: RateRequest,
    service: AccountingService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    try:
        rate = service.set_rate(request.country, request.code, request.price)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return rate.to_dict()


@router.post("/api/users", status_code=201, tags=["Accounts"])
def create_user(
    request: CreateUserRequest,
    service: AccountingService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    try:
        user = service.create_user(
            request.email,
            request.caller_id,
            currency=request.currency,
            display_currency=request.display_currency,
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return user.to_dict()


@router.post("/api/users/{user_id}/topups", status_code=201, tags=["Accounts"])
def top_up(
    user_id: int,
    request: AmountRequest,
    service: AccountingService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    transaction = service.top_up(user_id, request.amount, note=request.note)
    return transaction.to_dict()


@router.post("/api/users/{user_id}/reconcile", tags=["Accounts"])
def reconcile(
    user_id: int,
    service: AccountingService = Depends(get_service),
    api_key: str = Depends(verify_api_key),
):
    balance = service.reconcile(user_id)
    return {"owner": user_id, "balance": balance, "reconciledAt": datetime.now(timezone.utc).isoformat()}


app = create_app()


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "phonebooth.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
