"""
Database Layer for Dealership Subscription Payments
Handles MongoDB operations for payment sessions and dealership subscriptions

Every state change on a payment session is a conditional update keyed on
its current status, so concurrent callbacks for the same transaction can
never both apply a settlement.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

from config import get_settings
from models import SessionStatus


PAYMENT_SESSIONS = "payment_sessions"
DEALERSHIPS = "dealerships"

SUBSCRIPTION_ACTIVE = "active"


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored by BSON"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DatabaseConnection:

    _instance = None
    _client = None
    _db = None

    def __new__(cls):
        if cls._instance is None:
            settings = get_settings()
            cls._instance = super().__new__(cls)
            cls._client = MongoClient(settings.mongo_uri)
            cls._db = cls._client[settings.database_name]
        return cls._instance

    @property
    def db(self):
        return self._db

    @property
    def client(self):
        return self._client


def get_db() -> Database:
    """Get database instance"""
    return DatabaseConnection().db


def ensure_indexes(db: Database) -> None:
    """One row per external id is enforced here"""
    sessions = db[PAYMENT_SESSIONS]
    sessions.create_index([("external_id", ASCENDING)], unique=True, name="uniq_external_id")
    sessions.create_index([("dealer_id", ASCENDING)], name="idx_dealer_id")
    sessions.create_index([("status", ASCENDING)], name="idx_status")


# ============= Payment sessions =============

def create_pending_session(
    db: Database,
    external_id: int,
    dealer_id: int,
    plan: str,
    amount: float,
    currency: str,
    state: str,
) -> Dict[str, Any]:
    """
    Insert the audit row for a new purchase attempt.

    Raises pymongo.errors.DuplicateKeyError if the external id is taken.
    """
    now = utcnow()
    session = {
        "external_id": external_id,
        "dealer_id": dealer_id,
        "plan": plan,
        "amount": amount,
        "currency": currency,
        "state": state,
        "status": SessionStatus.PENDING.value,
        "gateway_status": "pending",
        "created_at": now,
        "processed_at": None,
        "error_message": None,
        "settlement_lease_until": None,
        "extension_from": None,
        "extension_to": None,
    }
    db[PAYMENT_SESSIONS].insert_one(session)
    return session


def get_payment_session(db: Database, external_id: int) -> Optional[Dict[str, Any]]:
    return db[PAYMENT_SESSIONS].find_one({"external_id": external_id})


def mark_session_failed(
    db: Database,
    external_id: int,
    gateway_status: Optional[str],
    error_message: Optional[str] = None,
) -> bool:
    """pending -> failed; a settled or already failed row is left alone"""
    result = db[PAYMENT_SESSIONS].update_one(
        {"external_id": external_id, "status": SessionStatus.PENDING.value},
        {"$set": {
            "status": SessionStatus.FAILED.value,
            "gateway_status": gateway_status,
            "error_message": error_message,
            "processed_at": utcnow(),
        }}
    )
    return result.modified_count > 0


def record_gateway_status(db: Database, external_id: int, gateway_status: str) -> bool:
    """Note the last observed gateway status on a still-pending row"""
    result = db[PAYMENT_SESSIONS].update_one(
        {"external_id": external_id, "status": SessionStatus.PENDING.value},
        {"$set": {"gateway_status": gateway_status}}
    )
    return result.modified_count > 0


def claim_settlement(db: Database, external_id: int, lease_seconds: int) -> bool:
    """
    Take the exclusive right to settle a pending session.

    Only one caller can hold an unexpired lease. A lease left behind by a
    crashed worker expires and the session becomes claimable again.
    """
    now = utcnow()
    result = db[PAYMENT_SESSIONS].update_one(
        {
            "external_id": external_id,
            "status": SessionStatus.PENDING.value,
            "$or": [
                {"settlement_lease_until": None},
                {"settlement_lease_until": {"$lt": now}},
            ],
        },
        {"$set": {
            "settlement_lease_until": now + timedelta(seconds=lease_seconds),
            "gateway_status": "success",
        }}
    )
    return result.modified_count > 0


def record_extension(
    db: Database,
    external_id: int,
    expected_end_date: Optional[str],
    new_end_date: date,
) -> bool:
    """
    Write ahead the dealership change a settlement is about to make.

    A later claim of the same session compares the dealership against
    these fields to tell whether the change already landed.
    """
    result = db[PAYMENT_SESSIONS].update_one(
        {"external_id": external_id, "status": SessionStatus.PENDING.value},
        {"$set": {
            "extension_from": expected_end_date,
            "extension_to": new_end_date.isoformat(),
        }}
    )
    return result.matched_count > 0


def release_settlement(db: Database, external_id: int, error_message: str) -> None:
    db[PAYMENT_SESSIONS].update_one(
        {"external_id": external_id, "status": SessionStatus.PENDING.value},
        {"$set": {"settlement_lease_until": None, "error_message": error_message}}
    )


def complete_settlement(
    db: Database,
    external_id: int,
    subscription_end_date: date,
) -> Optional[Dict[str, Any]]:
    """pending -> success; returns the settled row or None if it was not pending"""
    return db[PAYMENT_SESSIONS].find_one_and_update(
        {"external_id": external_id, "status": SessionStatus.PENDING.value},
        {"$set": {
            "status": SessionStatus.SUCCESS.value,
            "gateway_status": "success",
            "processed_at": utcnow(),
            "subscription_end_date": subscription_end_date.isoformat(),
            "settlement_lease_until": None,
            "error_message": None,
        }},
        return_document=ReturnDocument.AFTER,
    )


# ============= Dealerships =============

def get_dealership(db: Database, dealer_id: int) -> Optional[Dict[str, Any]]:
    return db[DEALERSHIPS].find_one(
        {"_id": dealer_id},
        {"subscription_end_date": 1, "subscription_status": 1},
    )


def compare_and_set_subscription(
    db: Database,
    dealer_id: int,
    expected_end_date: Optional[str],
    new_end_date: date,
) -> bool:
    """
    Move the subscription end date only if nobody changed it since it was read.

    expected_end_date is the raw stored value (ISO date string or None).
    """
    result = db[DEALERSHIPS].update_one(
        {"_id": dealer_id, "subscription_end_date": expected_end_date},
        {"$set": {
            "subscription_end_date": new_end_date.isoformat(),
            "subscription_status": SUBSCRIPTION_ACTIVE,
        }}
    )
    return result.matched_count > 0
