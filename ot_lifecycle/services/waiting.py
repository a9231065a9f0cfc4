"""Validation of the "put on hold" request."""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Union

from ot_lifecycle.models.enums import WaitingReason, coerce_member
from ot_lifecycle.services.errors import WorkOrderValidationError

MIN_WAITING_DESCRIPTION = 10


@dataclass(frozen=True)
class WaitingRequest:
    reason: WaitingReason
    description: str
    eta: datetime


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 timestamp; aware values are converted to naive UTC."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise TypeError(f"expected a timestamp, got {type(value).__name__}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def validate_waiting(reason: Any, description: Any, eta: Any, now: datetime) -> WaitingRequest:
    """Check all three waiting fields, reporting every problem at once."""
    errors: List[Dict[str, str]] = []

    parsed_reason = None
    try:
        parsed_reason = coerce_member(WaitingReason, reason)
    except (ValueError, KeyError, TypeError):
        allowed = ", ".join(r.value for r in WaitingReason)
        errors.append({"field": "reason", "message": f"must be one of {allowed}"})

    text = description.strip() if isinstance(description, str) else ""
    if len(text) < MIN_WAITING_DESCRIPTION:
        errors.append({
            "field": "description",
            "message": f"must be at least {MIN_WAITING_DESCRIPTION} characters",
        })

    parsed_eta = None
    if eta is None:
        errors.append({"field": "eta", "message": "is required"})
    else:
        try:
            parsed_eta = parse_timestamp(eta)
        except (TypeError, ValueError):
            errors.append({"field": "eta", "message": "is not a valid timestamp"})
        else:
            if parsed_eta <= now:
                errors.append({"field": "eta", "message": "must be in the future"})

    if errors:
        raise WorkOrderValidationError("Invalid waiting request", errors=errors)

    return WaitingRequest(reason=parsed_reason, description=text, eta=parsed_eta)
