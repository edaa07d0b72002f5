"""
Dealership Subscription Payments - FastAPI Backend
Sells dealership subscriptions through the Whish payment gateway

ARCHITECTURE:
- Payment Service: prices the plan, records a pending session, opens a
  gateway collect session with signed callback URLs
- Settlement Service: authenticates the gateway callback, asks the gateway
  for the real outcome, extends the subscription exactly once
- Database: MongoDB with payment_sessions and dealerships collections

The two endpoints share no in-process state; they meet only through the
payment_sessions row keyed by the external id.
"""

import logging
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Path, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, get_settings
from errors import NotFoundError, PaymentError
from gateway_client import GatewayClient
from models import MAX_ID, CallbackEnvelope, Plan
import database
import logging_config
import payment_service
import settlement_service

# Load environment variables
load_dotenv()
logging_config.configure(get_settings().log_level)

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.ensure_indexes(database.get_db())
    yield


# Initialize FastAPI app
app = FastAPI(
    title="Dealership Subscription Payments",
    description="Payment sessions and settlement callbacks for dealership subscriptions",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    request_id = logging_config.new_correlation_id()
    start_time = time.time()
    logger.info("Request start: %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
    except Exception:
        logger.exception("Unexpected error handling %s %s", request.method, request.url.path)
        response = JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "correlationId": request_id},
        )
    response.headers["X-Correlation-ID"] = request_id
    logger.info(
        "Request done: %s %s -> %s in %.0fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.time() - start_time) * 1000,
    )
    return response


# ============= Error handlers =============

@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    content = exc.to_dict()
    if exc.status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc.message)
        content["correlationId"] = logging_config.correlation_id.get()
    return JSONResponse(status_code=exc.status_code, content=content, headers=CORS_HEADERS)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    field = None
    if errors and errors[0].get("loc"):
        field = errors[0]["loc"][-1]
    if field == "plan":
        message = "Invalid plan (monthly|yearly)"
    elif isinstance(field, str) and field not in ("body", "query", "path"):
        message = f"Invalid {field}"
    else:
        message = "Invalid request body"
    logger.warning("Rejected request: %s", message)
    return JSONResponse(status_code=400, content={"error": message}, headers=CORS_HEADERS)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = "Method not allowed" if exc.status_code == 405 else exc.detail
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": message},
        headers=exc.headers,
    )


# ============= Dependencies =============

def get_database() -> Database:
    return database.get_db()


def get_gateway(settings: Settings = Depends(get_settings)) -> GatewayClient:
    return GatewayClient(settings)


# ============= Request/Response Models =============

class PaymentSessionRequest(BaseModel):
    """Request for opening a payment session"""
    model_config = ConfigDict(populate_by_name=True)

    dealer_id: StrictInt = Field(alias="dealerId")
    plan: Plan

    @field_validator("dealer_id")
    @classmethod
    def validate_dealer_id(cls, v):
        if not 0 < v <= MAX_ID:
            raise ValueError("dealerId must be a positive number")
        return v


class PaymentSessionResponse(BaseModel):
    """Hosted checkout URL handed to the app"""
    model_config = ConfigDict(populate_by_name=True)

    collect_url: str = Field(alias="collectUrl")
    external_id: int = Field(alias="externalId")


# ============= API Endpoints =============

@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "Dealership Subscription Payments",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.options("/payment-sessions")
async def payment_sessions_preflight():
    return Response(status_code=200, headers={
        **CORS_HEADERS,
        "Access-Control-Allow-Methods": "POST, OPTIONS",
    })


@app.post("/payment-sessions", response_model=PaymentSessionResponse)
async def create_payment_session(
    request: PaymentSessionRequest,
    settings: Settings = Depends(get_settings),
    db: Database = Depends(get_database),
    gateway: GatewayClient = Depends(get_gateway),
):
    """
    Open a gateway payment session for a subscription plan.

    The price comes from server configuration; the app only names the
    dealership and the plan. Returns the hosted checkout URL.
    """
    result = await payment_service.initiate_payment(
        settings,
        db,
        gateway,
        dealer_id=request.dealer_id,
        plan=request.plan,
    )
    return PaymentSessionResponse(
        collect_url=result.collect_url,
        external_id=result.external_id,
    )


@app.get("/payment-sessions/{external_id}")
async def get_payment_session(
    external_id: int = Path(gt=0, le=MAX_ID),
    db: Database = Depends(get_database),
):
    """Stored state of one payment session, for polling and support"""
    session = database.get_payment_session(db, external_id)
    if session is None:
        raise NotFoundError("Payment session not found")
    return {
        "externalId": session["external_id"],
        "dealerId": session["dealer_id"],
        "plan": session["plan"],
        "amount": session["amount"],
        "currency": session["currency"],
        "status": session["status"],
        "gatewayStatus": session.get("gateway_status"),
        "createdAt": session.get("created_at"),
        "processedAt": session.get("processed_at"),
        "errorMessage": session.get("error_message"),
    }


@app.options("/payment-callback")
async def payment_callback_preflight():
    return Response(status_code=200, headers={
        **CORS_HEADERS,
        "Access-Control-Allow-Methods": "GET, OPTIONS",
    })


@app.get("/payment-callback")
async def payment_callback(
    request: Request,
    settings: Settings = Depends(get_settings),
    db: Database = Depends(get_database),
    gateway: GatewayClient = Depends(get_gateway),
):
    """
    Gateway outcome callback.

    - Rejects a bad signature before touching anything
    - Confirms the outcome with the gateway's status endpoint
    - Extends the dealership subscription once per paid session
    """
    envelope = CallbackEnvelope.from_query(request.query_params)
    result = await settlement_service.process_callback(settings, db, gateway, envelope)
    return JSONResponse(
        status_code=result.http_status,
        content=result.to_dict(),
        headers=CORS_HEADERS,
    )


# ============= Debug Endpoints =============

@app.get("/debug/config")
async def get_config(settings: Settings = Depends(get_settings)):
    """Non-secret configuration (for debugging)"""
    return {
        "gateway_api_url": settings.whish_api_url,
        "has_channel": bool(settings.whish_channel),
        "has_secret": bool(settings.whish_secret),
        "has_website_url": bool(settings.whish_website_url),
        "has_success_callback": bool(settings.callback_success_url),
        "has_failure_callback": bool(settings.callback_failure_url),
        "signing_enabled": settings.signing_enabled,
        "prices_configured": {
            plan.value: settings.offer_for(plan) is not None for plan in Plan
        },
        "create_timeout_seconds": settings.create_timeout_seconds,
        "status_timeout_seconds": settings.status_timeout_seconds,
        "status_attempts": settings.status_attempts,
        "status_backoff_ms": settings.status_backoff_ms,
        "probe_enabled": settings.probe_enabled,
        "settlement_lease_seconds": settings.settlement_lease_seconds,
    }


# Run with: uvicorn main:app --app-dir backend --host 0.0.0.0 --port 8000
