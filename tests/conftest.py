import asyncio
from datetime import date
from typing import Optional
from urllib.parse import parse_qsl, urlsplit

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from models import GATEWAY_SUCCESS, Plan
import database
import main

HMAC_SECRET = "test-hmac-secret"
COLLECT_URL = "https://pay.whish.test/collect/abc123"


class FakeGateway:
    """Stands in for GatewayClient; records every call"""

    def __init__(self):
        self.collect_url = COLLECT_URL
        self.status = GATEWAY_SUCCESS
        self.create_error = None
        self.create_calls = []
        self.status_calls = []
        self.probe_calls = 0

    async def probe(self):
        self.probe_calls += 1
        return 200

    async def create_collect(self, payload):
        self.create_calls.append(payload)
        await asyncio.sleep(0)
        if self.create_error is not None:
            raise self.create_error
        return self.collect_url

    async def fetch_collect_status(self, external_id):
        self.status_calls.append(external_id)
        await asyncio.sleep(0)
        return self.status


def make_settings(**overrides) -> Settings:
    values = dict(
        whish_api_url="https://gateway.test/itel-service/api/",
        whish_channel="10196",
        whish_secret="gateway-secret",
        whish_website_url="fleetapp.me",
        callback_success_url="https://api.test/payment-callback",
        hmac_secret=HMAC_SECRET,
        prices={Plan.MONTHLY: 1.0, Plan.YEARLY: 2500.0},
        status_backoff_ms=0,
    )
    values.update(overrides)
    return Settings(**values)


def add_dealership(db, dealer_id: int, end_date: Optional[date] = None):
    db[database.DEALERSHIPS].insert_one({
        "_id": dealer_id,
        "name": f"Dealer {dealer_id}",
        "subscription_end_date": end_date.isoformat() if end_date else None,
        "subscription_status": "inactive",
    })


def callback_query(gateway: FakeGateway, index: int = -1) -> dict:
    """Query parameters of the success callback URL handed to the gateway"""
    url = gateway.create_calls[index]["successCallbackUrl"]
    return dict(parse_qsl(urlsplit(url).query))


def today() -> date:
    return database.utcnow().date()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    test_db = client["payments_test"]
    database.ensure_indexes(test_db)
    return test_db


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(settings, db, gateway):
    """FastAPI application wired to the in-memory database and fake gateway"""
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    main.app.dependency_overrides[main.get_database] = lambda: db
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    yield main.app
    main.app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)
