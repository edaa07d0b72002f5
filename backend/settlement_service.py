"""
Settlement Service for Dealership Subscriptions
Adjudicates gateway callbacks and extends the paid subscription

The callback itself is never trusted to say a payment succeeded: it is
authenticated by signature, then the gateway's status endpoint is asked
for the actual outcome.
"""
import logging
from datetime import date, timedelta
from typing import Any, Dict, Optional

from pymongo.database import Database

from config import PLAN_PERIOD_DAYS, Settings
from errors import AuthenticationError, InternalError, NotFoundError, ValidationError
from gateway_client import GatewayClient
from models import (
    GATEWAY_FAILED,
    GATEWAY_PENDING,
    GATEWAY_SUCCESS,
    CallbackEnvelope,
    Plan,
    SessionStatus,
)
import database
import signing

logger = logging.getLogger(__name__)

# Outcome statuses reported to the caller
OUTCOME_SUCCESS = "success"
OUTCOME_ALREADY_PROCESSED = "already_processed"
OUTCOME_PENDING = "pending"
OUTCOME_FAILED = "failed"

EXTEND_ATTEMPTS = 5


class SettlementResult:
    """Outcome of one callback delivery"""
    def __init__(
        self,
        status: str,
        external_id: int,
        dealer_id: int,
        plan: Plan,
        message: str,
        processed_at: Optional[str] = None,
        subscription_end_date: Optional[date] = None,
    ):
        self.status = status
        self.external_id = external_id
        self.dealer_id = dealer_id
        self.plan = plan
        self.message = message
        self.processed_at = processed_at
        self.subscription_end_date = subscription_end_date

    @property
    def http_status(self) -> int:
        if self.status in (OUTCOME_SUCCESS, OUTCOME_ALREADY_PROCESSED):
            return 200
        return 202

    def to_dict(self) -> Dict[str, Any]:
        return {
            "externalId": self.external_id,
            "dealerId": self.dealer_id,
            "plan": self.plan.value,
            "status": self.status,
            "message": self.message,
            "processedAt": self.processed_at,
        }


def extend_subscription(current_end: Optional[date], plan: Plan, today: date) -> date:
    """
    New end date after paying for one period.

    Paid time stacks on whatever is left; an expired or missing end date
    starts from today.
    """
    base = current_end if current_end and current_end > today else today
    return base + timedelta(days=PLAN_PERIOD_DAYS[plan])


def _parse_end_date(raw: Optional[str]) -> Optional[date]:
    if not raw:
        return None
    return date.fromisoformat(str(raw)[:10])


def _isoformat(value) -> Optional[str]:
    return value.isoformat() + "Z" if value is not None else None


def authenticate(settings: Settings, envelope: CallbackEnvelope) -> None:
    """Raise AuthenticationError unless the callback signature matches"""
    if not settings.signing_enabled:
        logger.warning("APP_HMAC_SECRET not set, accepting unsigned callback %s", envelope.external_id)
        return
    if not signing.verify(settings.hmac_secret, envelope.signed_params(), envelope.signature):
        logger.warning("HMAC verification failed for callback %s", envelope.external_id)
        raise AuthenticationError("Invalid signature")
    logger.info("HMAC verified for callback %s", envelope.external_id)


def apply_extension(db: Database, external_id: int, dealer_id: int, plan: Plan) -> date:
    """
    Extend the dealership by one plan period.

    Compare-and-set on the stored end date, so a concurrent change to the
    same dealership makes this re-read instead of overwriting it. Every
    write is recorded on the payment session before it is attempted.
    """
    for _ in range(EXTEND_ATTEMPTS):
        dealership = database.get_dealership(db, dealer_id)
        if dealership is None:
            raise NotFoundError("Dealership not found")
        raw_end = dealership.get("subscription_end_date")
        today = database.utcnow().date()
        new_end = extend_subscription(_parse_end_date(raw_end), plan, today)
        if not database.record_extension(db, external_id, raw_end, new_end):
            raise InternalError(f"Payment session {external_id} changed during settlement")
        if database.compare_and_set_subscription(db, dealer_id, raw_end, new_end):
            logger.info(
                "Extended dealership %s subscription: %s -> %s (%s)",
                dealer_id,
                raw_end,
                new_end.isoformat(),
                plan.value,
            )
            return new_end
        logger.info("Dealership %s changed while extending, retrying", dealer_id)
    raise InternalError(f"Could not update dealership {dealer_id}")


def recorded_extension(
    db: Database,
    session: Dict[str, Any],
    dealer_id: int,
) -> Optional[date]:
    """
    End date an earlier, interrupted attempt already gave the dealership.

    Returns None when no attempt was recorded or the dealership still holds
    the end date that attempt started from, i.e. the extension never landed.
    """
    target = session.get("extension_to")
    if not target:
        return None
    dealership = database.get_dealership(db, dealer_id)
    if dealership is None:
        raise NotFoundError("Dealership not found")
    current = dealership.get("subscription_end_date")
    if current == session.get("extension_from"):
        return None
    if current == target:
        logger.info(
            "Extension for payment %s already applied to dealership %s",
            session["external_id"],
            dealer_id,
        )
    else:
        logger.error(
            "Dealership %s moved from %s to %s after payment %s recorded its "
            "extension, not extending again",
            dealer_id,
            target,
            current,
            session["external_id"],
        )
    return _parse_end_date(target)


async def process_callback(
    settings: Settings,
    db: Database,
    gateway: GatewayClient,
    envelope: CallbackEnvelope,
) -> SettlementResult:
    """
    Settle one gateway callback.

    Flow:
    1. Authenticate the signature (nothing is touched on mismatch)
    2. Load the session; an already settled one is an idempotent replay
    3. Ask the gateway for the real outcome
    4. On success, claim the session, extend the dealership, mark it settled
    """
    authenticate(settings, envelope)

    external_id = envelope.external_id
    session = database.get_payment_session(db, external_id)
    if session is None:
        logger.warning("Callback for unknown payment session %s", external_id)
        raise NotFoundError("Payment session not found")

    if session["dealer_id"] != envelope.dealer_id or session["plan"] != envelope.plan.value:
        logger.warning("Callback parameters do not match session %s", external_id)
        raise ValidationError("Callback parameters do not match payment session")

    def result(status: str, message: str, **kwargs) -> SettlementResult:
        kwargs.setdefault("processed_at", _isoformat(database.utcnow()))
        return SettlementResult(
            status=status,
            external_id=external_id,
            dealer_id=envelope.dealer_id,
            plan=envelope.plan,
            message=message,
            **kwargs,
        )

    if session["status"] == SessionStatus.SUCCESS.value:
        logger.info("Payment %s already processed", external_id)
        return result(
            OUTCOME_ALREADY_PROCESSED,
            "Payment already processed",
            processed_at=_isoformat(session.get("processed_at")),
        )
    if session["status"] == SessionStatus.FAILED.value:
        return result(
            OUTCOME_FAILED,
            "Payment already marked failed",
            processed_at=_isoformat(session.get("processed_at")),
        )

    gateway_status = await gateway.fetch_collect_status(external_id)
    logger.info("Gateway reports %s for payment %s", gateway_status, external_id)

    if gateway_status == GATEWAY_FAILED:
        database.mark_session_failed(db, external_id, gateway_status, "Payment failed at gateway")
        return result(OUTCOME_FAILED, "Payment status is failed")

    if gateway_status != GATEWAY_SUCCESS:
        database.record_gateway_status(db, external_id, gateway_status)
        message = (
            "Payment status is pending"
            if gateway_status == GATEWAY_PENDING
            else "Could not verify payment status"
        )
        return result(OUTCOME_PENDING, message)

    if database.get_dealership(db, envelope.dealer_id) is None:
        logger.error("Dealership %s not found for payment %s", envelope.dealer_id, external_id)
        raise NotFoundError("Dealership not found")

    if not database.claim_settlement(db, external_id, settings.settlement_lease_seconds):
        logger.info("Payment %s is settled or being settled elsewhere", external_id)
        return result(OUTCOME_ALREADY_PROCESSED, "Payment already processed")

    try:
        claimed = database.get_payment_session(db, external_id)
        new_end = recorded_extension(db, claimed, envelope.dealer_id)
        if new_end is None:
            new_end = apply_extension(db, external_id, envelope.dealer_id, envelope.plan)
    except Exception as e:
        database.release_settlement(db, external_id, f"Settlement failed: {e}")
        raise

    settled = database.complete_settlement(db, external_id, new_end)
    if settled is None:
        # only the lease holder moves a pending row to success
        logger.error("Payment %s was not pending at completion", external_id)
        raise InternalError(f"Payment session {external_id} changed during settlement")

    logger.info("Successfully processed payment %s", external_id)
    return result(
        OUTCOME_SUCCESS,
        "Payment processed successfully",
        processed_at=_isoformat(settled.get("processed_at")),
        subscription_end_date=new_end,
    )
