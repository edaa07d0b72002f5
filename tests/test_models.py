import pytest

from errors import ValidationError
from models import CallbackEnvelope, Plan


def valid_query(**overrides):
    query = {
        "eid": "1760000000123456",
        "dealerId": "42",
        "plan": "yearly",
        "state": "nonce",
        "signature": "ab" * 32,
    }
    query.update(overrides)
    return {k: v for k, v in query.items() if v is not None}


def test_envelope_parses_valid_query():
    envelope = CallbackEnvelope.from_query(valid_query())
    assert envelope.external_id == 1760000000123456
    assert envelope.dealer_id == 42
    assert envelope.plan is Plan.YEARLY
    assert envelope.state == "nonce"
    assert envelope.signature == "ab" * 32


def test_envelope_state_and_signature_are_optional():
    envelope = CallbackEnvelope.from_query(valid_query(state=None, signature=None))
    assert envelope.state is None
    assert envelope.signature is None
    assert "state" in envelope.signed_params()


@pytest.mark.parametrize("missing", ["eid", "dealerId", "plan"])
def test_envelope_requires_core_parameters(missing):
    with pytest.raises(ValidationError) as exc:
        CallbackEnvelope.from_query(valid_query(**{missing: None}))
    assert missing in exc.value.message


@pytest.mark.parametrize("eid", ["abc", "12.5", "-3", "0", "1e9", "99999999999999999999"])
def test_envelope_rejects_non_numeric_eid(eid):
    with pytest.raises(ValidationError):
        CallbackEnvelope.from_query(valid_query(eid=eid))


def test_envelope_rejects_unknown_plan():
    with pytest.raises(ValidationError) as exc:
        CallbackEnvelope.from_query(valid_query(plan="weekly"))
    assert "plan" in exc.value.message


def test_signed_params_keep_raw_strings():
    envelope = CallbackEnvelope.from_query(valid_query(dealerId="042"))
    assert envelope.dealer_id == 42
    assert envelope.signed_params()["dealerId"] == "042"


def test_envelope_accepts_largest_int64_dealer():
    envelope = CallbackEnvelope.from_query(valid_query(dealerId=str(2**63 - 1)))
    assert envelope.dealer_id == 2**63 - 1


def test_envelope_rejects_dealer_beyond_int64():
    with pytest.raises(ValidationError) as exc:
        CallbackEnvelope.from_query(valid_query(dealerId=str(2**63)))
    assert "dealerId" in exc.value.message
