import dataclasses
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from dateutil import parser

from .lifecycle import BookingStatus

CENTS = Decimal("0.01")
TENTHS = Decimal("0.1")

DEFAULT_DURATION_MINUTES = 60


def to_money(value) -> Decimal:
    if isinstance(value, float):
        # go through str so 0.1 stays 0.1
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Booking:
    customer_id: int
    provider_id: int
    scheduled_at: datetime
    address: str
    duration_minutes: int = DEFAULT_DURATION_MINUTES
    status: BookingStatus = BookingStatus.PENDING
    notes: str | None = None
    quoted_amount: Decimal | None = None
    final_amount: Decimal | None = None
    responded_at: datetime | None = None
    completed_at: datetime | None = None
    rating: int | None = None
    review: str | None = None
    cancellation_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = None

    @property
    def ends_at(self) -> datetime:
        return self.scheduled_at + timedelta(minutes=self.duration_minutes)

    def copy(self) -> "Booking":
        return dataclasses.replace(self)


@dataclass
class Provider:
    id: int
    user_id: int
    available: bool = True
    verified: bool = False
    hourly_rate: Decimal | None = None
    rating: Decimal = Decimal("0.0")
    total_ratings: int = 0
    updated_at: datetime | None = None

    def quote(self, duration_minutes: int) -> Decimal | None:
        if self.hourly_rate is None:
            return None
        return to_money(self.hourly_rate * Decimal(duration_minutes) / Decimal(60))

    def add_rating(self, stars: int) -> None:
        total = self.rating * self.total_ratings + Decimal(stars)
        self.total_ratings += 1
        self.rating = (total / self.total_ratings).quantize(TENTHS, rounding=ROUND_HALF_UP)

    def copy(self) -> "Provider":
        return dataclasses.replace(self)


@dataclass
class Page:
    items: list
    total: int
    page: int
    size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.size) if self.size else 0


# ---- cache payloads ----

_BOOKING_DATETIMES = ("scheduled_at", "responded_at", "completed_at", "created_at", "updated_at")
_BOOKING_MONEY = ("quoted_amount", "final_amount")


def booking_to_dict(booking: Booking) -> dict:
    data = dataclasses.asdict(booking)
    data["status"] = booking.status.value
    for name in _BOOKING_DATETIMES:
        if data[name] is not None:
            data[name] = data[name].isoformat()
    for name in _BOOKING_MONEY:
        if data[name] is not None:
            data[name] = str(data[name])
    return data


def booking_from_dict(data: dict) -> Booking:
    data = dict(data)
    data["status"] = BookingStatus(data["status"])
    for name in _BOOKING_DATETIMES:
        if data.get(name) is not None:
            data[name] = parser.isoparse(data[name])
    for name in _BOOKING_MONEY:
        if data.get(name) is not None:
            data[name] = Decimal(data[name])
    return Booking(**data)


def provider_to_dict(provider: Provider) -> dict:
    data = dataclasses.asdict(provider)
    data["hourly_rate"] = str(provider.hourly_rate) if provider.hourly_rate is not None else None
    data["rating"] = str(provider.rating)
    data["updated_at"] = provider.updated_at.isoformat() if provider.updated_at else None
    return data


def provider_from_dict(data: dict) -> Provider:
    data = dict(data)
    if data.get("hourly_rate") is not None:
        data["hourly_rate"] = Decimal(data["hourly_rate"])
    data["rating"] = Decimal(data.get("rating") or "0.0")
    if data.get("updated_at"):
        data["updated_at"] = parser.isoparse(data["updated_at"])
    return Provider(**data)
