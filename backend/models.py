"""
Domain types shared by the session and settlement handlers
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional

from errors import ValidationError


class Plan(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SessionStatus(str, Enum):
    """Lifecycle of a payment session; success and failed are terminal"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


# Outcomes reported by the gateway status query
GATEWAY_SUCCESS = "success"
GATEWAY_FAILED = "failed"
GATEWAY_PENDING = "pending"
GATEWAY_ERROR = "error"

# Largest id that fits a BSON int64
MAX_ID = 2**63 - 1


def _parse_positive_int(raw: Optional[str], name: str) -> int:
    if raw is None or raw == "":
        raise ValidationError(f"Missing required parameter: {name}")
    value = raw.strip()
    if not (value.isascii() and value.isdigit()):
        raise ValidationError(f"Invalid {name} - must be numeric")
    number = int(value)
    if number <= 0:
        raise ValidationError(f"Invalid {name} - must be positive")
    if number > MAX_ID:
        raise ValidationError(f"Invalid {name} - out of range")
    return number


@dataclass(frozen=True)
class CallbackEnvelope:
    """Query parameters delivered by the gateway on the callback URL"""
    external_id: int
    dealer_id: int
    plan: Plan
    state: Optional[str]
    signature: Optional[str]
    # raw strings as received, which is what was signed
    raw_eid: str
    raw_dealer_id: str

    @classmethod
    def from_query(cls, query: Mapping[str, str]) -> "CallbackEnvelope":
        missing = [name for name in ("eid", "dealerId", "plan") if not query.get(name)]
        if missing:
            raise ValidationError(
                "Missing or invalid required parameters: " + ", ".join(missing)
            )

        plan = query["plan"]
        try:
            parsed_plan = Plan(plan)
        except ValueError:
            raise ValidationError("Invalid plan - must be monthly or yearly") from None

        return cls(
            external_id=_parse_positive_int(query.get("eid"), "eid"),
            dealer_id=_parse_positive_int(query.get("dealerId"), "dealerId"),
            plan=parsed_plan,
            state=query.get("state"),
            signature=query.get("signature"),
            raw_eid=query["eid"],
            raw_dealer_id=query["dealerId"],
        )

    def signed_params(self) -> Dict[str, Optional[str]]:
        """The parameter subset covered by the callback signature"""
        return {
            "eid": self.raw_eid,
            "dealerId": self.raw_dealer_id,
            "plan": self.plan.value,
            "state": self.state,
        }
