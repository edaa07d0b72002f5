from urllib.parse import parse_qs, urlsplit

import pytest

from conftest import COLLECT_URL, HMAC_SECRET, FakeGateway, make_settings
from errors import ConfigurationError, GatewayTransportError, UpstreamError
from models import Plan
import database
import main
import payment_service
import signing


def sessions(db):
    return list(db[database.PAYMENT_SESSIONS].find())


def test_create_session_returns_checkout_url(client, db, gateway):
    response = client.post("/payment-sessions", json={"dealerId": 42, "plan": "monthly"})

    assert response.status_code == 200
    body = response.json()
    assert body["collectUrl"] == COLLECT_URL
    assert isinstance(body["externalId"], int)

    row = database.get_payment_session(db, body["externalId"])
    assert row["status"] == "pending"
    assert row["dealer_id"] == 42
    assert row["plan"] == "monthly"
    assert row["amount"] == 1.0
    assert row["currency"] == "USD"


def test_price_comes_from_configuration(client, gateway):
    client.post("/payment-sessions", json={"dealerId": 42, "plan": "yearly", "amount": 0.01})

    payload = gateway.create_calls[0]
    assert payload["amount"] == 2500.0
    assert payload["currency"] == "USD"
    assert payload["invoice"] == "Yearly subscription"
    assert payload["successRedirectUrl"] == "https://fleetapp.me/success"
    assert payload["failureRedirectUrl"] == "https://fleetapp.me/failure"


def test_callback_urls_are_signed(client, gateway):
    body = client.post("/payment-sessions", json={"dealerId": 42, "plan": "monthly"}).json()

    payload = gateway.create_calls[0]
    assert payload["externalId"] == body["externalId"]
    for key in ("successCallbackUrl", "failureCallbackUrl"):
        url = urlsplit(payload[key])
        assert f"{url.scheme}://{url.netloc}{url.path}" == "https://api.test/payment-callback"
        query = {k: v[0] for k, v in parse_qs(url.query).items()}
        assert query["eid"] == str(body["externalId"])
        assert query["dealerId"] == "42"
        assert query["plan"] == "monthly"
        assert query["state"]
        signature = query.pop("signature")
        assert signing.verify(HMAC_SECRET, query, signature)


def test_failure_callback_base_can_differ(client, gateway, app):
    custom = make_settings(callback_failure_url="https://api.test/payment-failed")
    app.dependency_overrides[main.get_settings] = lambda: custom

    client.post("/payment-sessions", json={"dealerId": 42, "plan": "monthly"})
    assert gateway.create_calls[0]["failureCallbackUrl"].startswith("https://api.test/payment-failed?")
    assert gateway.create_calls[0]["successCallbackUrl"].startswith("https://api.test/payment-callback?")


def test_unsigned_urls_without_secret(client, app, gateway):
    app.dependency_overrides[main.get_settings] = lambda: make_settings(hmac_secret=None)

    client.post("/payment-sessions", json={"dealerId": 42, "plan": "monthly"})
    query = parse_qs(urlsplit(gateway.create_calls[0]["successCallbackUrl"]).query)
    assert "signature" not in query


def test_probe_runs_before_create(client, gateway):
    client.post("/payment-sessions", json={"dealerId": 42, "plan": "monthly"})
    assert gateway.probe_calls == 1


def test_probe_can_be_disabled(client, app, gateway):
    app.dependency_overrides[main.get_settings] = lambda: make_settings(probe_enabled=False)
    client.post("/payment-sessions", json={"dealerId": 42, "plan": "monthly"})
    assert gateway.probe_calls == 0
    assert len(gateway.create_calls) == 1


@pytest.mark.parametrize("body", [
    {"dealerId": 42, "plan": "weekly"},
    {"dealerId": -1, "plan": "monthly"},
    {"dealerId": 0, "plan": "monthly"},
    {"dealerId": 1.5, "plan": "monthly"},
    {"dealerId": "abc", "plan": "monthly"},
    {"dealerId": "42", "plan": "monthly"},
    {"dealerId": True, "plan": "monthly"},
    {"dealerId": 2**63, "plan": "monthly"},
    {"plan": "monthly"},
    {"dealerId": 42},
    {},
])
def test_invalid_request_is_rejected_without_side_effects(client, db, gateway, body):
    response = client.post("/payment-sessions", json=body)

    assert response.status_code == 400
    assert "error" in response.json()
    assert sessions(db) == []
    assert gateway.create_calls == []
    assert gateway.probe_calls == 0


def test_invalid_plan_message(client):
    response = client.post("/payment-sessions", json={"dealerId": 42, "plan": "weekly"})
    assert response.json() == {"error": "Invalid plan (monthly|yearly)"}


def test_invalid_dealer_message(client):
    response = client.post("/payment-sessions", json={"dealerId": -1, "plan": "monthly"})
    assert response.json() == {"error": "Invalid dealerId"}


def test_malformed_json_is_rejected(client, db):
    response = client.post(
        "/payment-sessions",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert sessions(db) == []


def test_gateway_rejection_marks_session_failed(client, db, gateway):
    gateway.create_error = UpstreamError(
        "Create payment failed", code="INVALID_WEBSITE", detail="Website not registered"
    )
    response = client.post("/payment-sessions", json={"dealerId": 42, "plan": "monthly"})

    assert response.status_code == 502
    assert response.json() == {
        "error": "Create payment failed",
        "code": "INVALID_WEBSITE",
        "detail": "Website not registered",
    }
    [row] = sessions(db)
    assert row["status"] == "failed"
    assert row["gateway_status"] == "INVALID_WEBSITE"
    assert row["error_message"] == "Website not registered"


def test_gateway_timeout_leaves_session_pending(client, db, gateway):
    gateway.create_error = GatewayTransportError("Gateway request timed out")
    response = client.post("/payment-sessions", json={"dealerId": 42, "plan": "monthly"})

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Internal server error"
    assert "timed out" not in str(body)
    assert body["correlationId"] == response.headers["X-Correlation-ID"]
    [row] = sessions(db)
    assert row["status"] == "pending"


def test_missing_gateway_credentials_is_internal_error(client, app, db, gateway):
    app.dependency_overrides[main.get_settings] = lambda: make_settings(whish_secret=None)

    response = client.post("/payment-sessions", json={"dealerId": 42, "plan": "monthly"})
    assert response.status_code == 500
    assert "WHISH_SECRET" not in response.text
    assert sessions(db) == []
    assert gateway.create_calls == []


def test_missing_price_is_internal_error(client, app, db):
    app.dependency_overrides[main.get_settings] = lambda: make_settings(
        prices={Plan.MONTHLY: None, Plan.YEARLY: 2500.0}
    )
    response = client.post("/payment-sessions", json={"dealerId": 42, "plan": "monthly"})
    assert response.status_code == 500
    assert sessions(db) == []


def test_mint_external_id_never_repeats():
    ids = [payment_service.mint_external_id() for _ in range(10000)]
    assert len(set(ids)) == 10000
    assert ids == sorted(ids)
    assert max(ids) < 2 ** 53


@pytest.mark.asyncio
async def test_repeated_sessions_get_distinct_ids(db):
    gateway = FakeGateway()
    settings = make_settings(probe_enabled=False)
    ids = set()
    for _ in range(200):
        result = await payment_service.initiate_payment(settings, db, gateway, 42, Plan.MONTHLY)
        ids.add(result.external_id)
    assert len(ids) == 200
    assert db[database.PAYMENT_SESSIONS].count_documents({}) == 200


@pytest.mark.asyncio
async def test_taken_external_id_is_reminted(db, monkeypatch):
    database.create_pending_session(db, 555, 42, "monthly", 1.0, "USD", "x")
    minted = iter([555, 556])
    monkeypatch.setattr(payment_service, "mint_external_id", lambda: next(minted))

    result = await payment_service.initiate_payment(
        make_settings(probe_enabled=False), db, FakeGateway(), 42, Plan.MONTHLY
    )
    assert result.external_id == 556


@pytest.mark.asyncio
async def test_configuration_error_raised_directly(db):
    with pytest.raises(ConfigurationError):
        await payment_service.initiate_payment(
            make_settings(callback_success_url=None), db, FakeGateway(), 42, Plan.MONTHLY
        )
