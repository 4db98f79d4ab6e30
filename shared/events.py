import json
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal


def build_event(event_type: str, data: dict, occurred_at: datetime | None = None) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": (occurred_at or datetime.now(timezone.utc)).isoformat(),
        "data": data,
    }


def _encode(value):
    if isinstance(value, Decimal):
        # money travels as a string so consumers keep exact cents
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=_encode)
