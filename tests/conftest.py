import asyncio
from datetime import datetime, timezone

import pytest

from booking_service.repository import InMemoryBookingStore
from booking_service.services import BookingService
from shared.cache import MemoryCache

NOW = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingPublisher:
    """Publisher stub that keeps (event_type, booking_id, status) tuples."""

    enabled = True

    def __init__(self) -> None:
        self.events = []

    async def booking_event(self, event_type, booking) -> bool:
        self.events.append((event_type, booking.id, booking.status.value))
        return True


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def store() -> InMemoryBookingStore:
    return InMemoryBookingStore()


@pytest.fixture
def service(store, cache, clock, publisher) -> BookingService:
    svc = BookingService(store, cache=cache, clock=clock, publisher=publisher)
    # provider 7 is run by user 70 and charges 80/h
    asyncio.run(svc.upsert_provider(7, 70, hourly_rate="80.00"))
    return svc
