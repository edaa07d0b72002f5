"""
Payment Service for Dealership Subscriptions
Opens a gateway payment session for a subscription purchase
"""
import logging
import threading
import time
import uuid
from typing import Any, Dict

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Settings
from errors import ConfigurationError, GatewayTransportError, InternalError, UpstreamError
from gateway_client import GatewayClient
from models import Plan
import database
import signing

logger = logging.getLogger(__name__)

INSERT_ATTEMPTS = 3

_last_external_id = 0
_external_id_lock = threading.Lock()


def mint_external_id() -> int:
    """
    Microsecond timestamp, strictly increasing within the process.

    Stays below 2**53 so JavaScript clients read it back exactly. The
    unique index on payment_sessions catches collisions across processes.
    """
    global _last_external_id
    with _external_id_lock:
        candidate = time.time_ns() // 1000
        if candidate <= _last_external_id:
            candidate = _last_external_id + 1
        _last_external_id = candidate
        return candidate


def generate_state() -> str:
    """Anti-replay nonce carried on the callback URL"""
    return str(uuid.uuid4())


class SessionResult:
    """Result of opening a payment session"""
    def __init__(self, collect_url: str, external_id: int):
        self.collect_url = collect_url
        self.external_id = external_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collectUrl": self.collect_url,
            "externalId": self.external_id,
        }


def build_callback_urls(settings: Settings, params: Dict[str, str]) -> Dict[str, str]:
    query = signing.signed_query(settings.hmac_secret, params)
    return {
        "successCallbackUrl": f"{settings.callback_success_url}?{query}",
        "failureCallbackUrl": f"{settings.failure_callback_base}?{query}",
    }


def _record_pending(db: Database, dealer_id: int, plan: Plan, amount: float, currency: str):
    for attempt in range(INSERT_ATTEMPTS):
        external_id = mint_external_id()
        state = generate_state()
        try:
            database.create_pending_session(
                db,
                external_id=external_id,
                dealer_id=dealer_id,
                plan=plan.value,
                amount=amount,
                currency=currency,
                state=state,
            )
            return external_id, state
        except DuplicateKeyError:
            logger.warning("External id %s already taken, minting another", external_id)
        except PyMongoError as e:
            logger.exception("Could not record pending payment session")
            raise InternalError(f"Could not record payment session: {e}") from e
    raise InternalError("Could not mint a unique external id")


async def initiate_payment(
    settings: Settings,
    db: Database,
    gateway: GatewayClient,
    dealer_id: int,
    plan: Plan,
) -> SessionResult:
    """
    Open a gateway payment session for a subscription purchase.

    Flow:
    1. Check configuration and price the plan server-side
    2. Record a pending session (the audit row survives a crash later on)
    3. Sign the callback parameters and build the callback URLs
    4. Ask the gateway for a hosted checkout URL

    A gateway rejection marks the session failed. A timeout leaves it
    pending, since the gateway may still have created the session.
    """
    missing = settings.missing_session_settings()
    if missing:
        logger.error("Missing required configuration: %s", ", ".join(missing))
        raise ConfigurationError(f"Missing required env: {', '.join(missing)}")

    offer = settings.offer_for(plan)
    if offer is None:
        logger.error("No price configured for plan %s", plan.value)
        raise ConfigurationError(f"Missing price for plan {plan.value}")

    external_id, state = _record_pending(db, dealer_id, plan, offer.amount, offer.currency)

    params = {
        "eid": str(external_id),
        "dealerId": str(dealer_id),
        "plan": plan.value,
        "state": state,
    }
    if not settings.signing_enabled:
        logger.warning("APP_HMAC_SECRET not set, callback URLs will be unsigned")

    payload = {
        "amount": offer.amount,
        "currency": offer.currency,
        "invoice": offer.invoice,
        "externalId": external_id,
        "successRedirectUrl": settings.success_redirect_url,
        "failureRedirectUrl": settings.failure_redirect_url,
    }
    payload.update(build_callback_urls(settings, params))

    if settings.probe_enabled:
        await gateway.probe()

    try:
        collect_url = await gateway.create_collect(payload)
    except GatewayTransportError:
        logger.error("Gateway unreachable for session %s, left pending", external_id)
        raise
    except UpstreamError as e:
        database.mark_session_failed(
            db,
            external_id,
            gateway_status=str(e.code) if e.code is not None else "error",
            error_message=e.detail or e.message,
        )
        logger.error(
            "Gateway rejected payment session %s: code=%s detail=%s",
            external_id,
            e.code,
            e.detail,
        )
        raise

    logger.info(
        "Payment session opened: external_id=%s dealer_id=%s plan=%s amount=%s",
        external_id,
        dealer_id,
        plan.value,
        offer.amount,
    )
    return SessionResult(collect_url=collect_url, external_id=external_id)
