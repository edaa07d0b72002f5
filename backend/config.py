"""
Configuration for Dealership Subscription Payments
"""
import logging
import math
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional

from models import Plan

logger = logging.getLogger(__name__)


DEFAULT_WHISH_API_URL = "https://whish.money/itel-service/api/"
DEFAULT_SUCCESS_REDIRECT_URL = "https://fleetapp.me/success"
DEFAULT_FAILURE_REDIRECT_URL = "https://fleetapp.me/failure"

# Subscription period granted per paid plan
PLAN_PERIOD_DAYS = {
    Plan.MONTHLY: 30,
    Plan.YEARLY: 365,
}

PLAN_INVOICES = {
    Plan.MONTHLY: "Monthly subscription",
    Plan.YEARLY: "Yearly subscription",
}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_price(name: str) -> Optional[float]:
    value = os.getenv(name)
    if not value:
        return None
    try:
        price = float(value)
    except ValueError:
        logger.error("Ignoring %s: %r is not a number", name, value)
        return None
    if not math.isfinite(price) or price <= 0:
        logger.error("Ignoring %s: %r is not a positive amount", name, value)
        return None
    return price


@dataclass(frozen=True)
class PlanOffer:
    """Price and invoice text for one plan"""
    plan: Plan
    amount: float
    currency: str
    invoice: str
    period_days: int


@dataclass(frozen=True)
class Settings:
    """
    Immutable process configuration.

    Built once from the environment and handed to each component
    explicitly. Credential fields may be empty; handlers check them per
    request and report a configuration error instead of failing at import.
    """
    mongo_uri: str = "mongodb://mongodb:27017"
    database_name: str = "payments_db"

    whish_api_url: str = DEFAULT_WHISH_API_URL
    whish_channel: Optional[str] = None
    whish_secret: Optional[str] = None
    whish_website_url: Optional[str] = None

    callback_success_url: Optional[str] = None
    callback_failure_url: Optional[str] = None
    success_redirect_url: str = DEFAULT_SUCCESS_REDIRECT_URL
    failure_redirect_url: str = DEFAULT_FAILURE_REDIRECT_URL

    hmac_secret: Optional[str] = None

    prices: Dict[Plan, Optional[float]] = field(default_factory=dict)
    currency: str = "USD"

    create_timeout_seconds: float = 10.0
    status_timeout_seconds: float = 10.0
    status_attempts: int = 3
    status_backoff_ms: int = 500
    probe_enabled: bool = True

    settlement_lease_seconds: int = 60
    log_level: str = "INFO"

    @property
    def signing_enabled(self) -> bool:
        return bool(self.hmac_secret)

    @property
    def failure_callback_base(self) -> Optional[str]:
        return self.callback_failure_url or self.callback_success_url

    @property
    def gateway_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "channel": self.whish_channel or "",
            "secret": self.whish_secret or "",
            "websiteurl": self.whish_website_url or "",
        }

    def missing_gateway_settings(self) -> List[str]:
        """Names of the variables a gateway call cannot do without"""
        required = {
            "WHISH_CHANNEL": self.whish_channel,
            "WHISH_SECRET": self.whish_secret,
            "WHISH_WEBSITEURL": self.whish_website_url,
        }
        return [name for name, value in required.items() if not value]

    def missing_session_settings(self) -> List[str]:
        missing = self.missing_gateway_settings()
        if not self.callback_success_url:
            missing.append("CALLBACK_SUCCESS_URL")
        return missing

    def offer_for(self, plan: Plan) -> Optional[PlanOffer]:
        """Server-side price for a plan, or None when it is not configured"""
        amount = self.prices.get(plan)
        if amount is None or amount <= 0:
            return None
        return PlanOffer(
            plan=plan,
            amount=amount,
            currency=self.currency,
            invoice=PLAN_INVOICES[plan],
            period_days=PLAN_PERIOD_DAYS[plan],
        )


def load_settings() -> Settings:
    """Read settings from the process environment"""
    return Settings(
        mongo_uri=os.getenv("MONGO_URI", "mongodb://mongodb:27017"),
        database_name=os.getenv("DATABASE_NAME", "payments_db"),
        whish_api_url=os.getenv("WHISH_API_URL", DEFAULT_WHISH_API_URL),
        whish_channel=os.getenv("WHISH_CHANNEL"),
        whish_secret=os.getenv("WHISH_SECRET"),
        whish_website_url=os.getenv("WHISH_WEBSITEURL"),
        callback_success_url=os.getenv("CALLBACK_SUCCESS_URL"),
        callback_failure_url=os.getenv("CALLBACK_FAILURE_URL"),
        success_redirect_url=os.getenv("SUCCESS_REDIRECT_URL", DEFAULT_SUCCESS_REDIRECT_URL),
        failure_redirect_url=os.getenv("FAILURE_REDIRECT_URL", DEFAULT_FAILURE_REDIRECT_URL),
        hmac_secret=os.getenv("APP_HMAC_SECRET") or None,
        prices={
            Plan.MONTHLY: _env_price("PRICE_MONTHLY_USD"),
            Plan.YEARLY: _env_price("PRICE_YEARLY_USD"),
        },
        create_timeout_seconds=float(os.getenv("GATEWAY_CREATE_TIMEOUT_SECONDS", "10")),
        status_timeout_seconds=float(os.getenv("GATEWAY_STATUS_TIMEOUT_SECONDS", "10")),
        status_attempts=int(os.getenv("GATEWAY_STATUS_ATTEMPTS", "3")),
        status_backoff_ms=int(os.getenv("GATEWAY_STATUS_BACKOFF_MS", "500")),
        probe_enabled=_env_bool("GATEWAY_PROBE_ENABLED", True),
        settlement_lease_seconds=int(os.getenv("SETTLEMENT_LEASE_SECONDS", "60")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings singleton, read on first use"""
    return load_settings()
