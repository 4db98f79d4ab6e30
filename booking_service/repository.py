"""
Booking store contract and the in-memory implementation.

A store hands out repositories through `transaction()`; everything written
through a repository becomes visible to others only when the block exits
without raising. Both stores expose the same repository methods:

    get_provider(provider_id, for_update=False) -> Provider | None
    save_provider(provider) -> Provider
    add(booking) -> Booking                       (assigns the id)
    get(booking_id, for_update=False) -> Booking | None
    update(booking) -> Booking                    (only MUTABLE_FIELDS are written)
    list_by_customer(customer_id, page, size, status=None) -> Page
    list_by_provider(provider_id, page, size) -> Page
    list_by_provider_and_status(provider_id, status) -> list[Booking]
    list_upcoming_for_provider(provider_id, now) -> list[Booking]
    find_overlapping(provider_id, start, end, statuses, exclude_id=None) -> list[Booking]

Listings are ordered by scheduled time, then id.
"""
import itertools
from contextlib import asynccontextmanager

from .lifecycle import BookingStatus
from .records import Page

MUTABLE_FIELDS = (
    "status",
    "final_amount",
    "responded_at",
    "completed_at",
    "rating",
    "review",
    "cancellation_reason",
    "updated_at",
)


def _chronological(bookings) -> list:
    return sorted(bookings, key=lambda b: (b.scheduled_at, b.id))


def _paginate(bookings: list, page: int, size: int) -> Page:
    start = page * size
    return Page(
        items=[b.copy() for b in bookings[start:start + size]],
        total=len(bookings),
        page=page,
        size=size,
    )


class InMemoryBookingStore:
    def __init__(self):
        self._bookings = {}
        self._providers = {}
        self._ids = itertools.count(1)

    @asynccontextmanager
    async def transaction(self):
        repo = InMemoryBookingRepository(self)
        yield repo
        repo._commit()

    async def close(self):
        pass


class InMemoryBookingRepository:
    def __init__(self, store: InMemoryBookingStore):
        self._store = store
        self._bookings = {}
        self._providers = {}

    def _commit(self):
        self._store._bookings.update(self._bookings)
        self._store._providers.update(self._providers)
        self._bookings.clear()
        self._providers.clear()

    def _visible(self):
        merged = dict(self._store._bookings)
        merged.update(self._bookings)
        return merged.values()

    # ---- providers ----

    async def get_provider(self, provider_id: int, for_update: bool = False):
        provider = self._providers.get(provider_id) or self._store._providers.get(provider_id)
        return provider.copy() if provider else None

    async def save_provider(self, provider):
        self._providers[provider.id] = provider.copy()
        return provider.copy()

    # ---- bookings ----

    async def add(self, booking):
        stored = booking.copy()
        stored.id = next(self._store._ids)
        self._bookings[stored.id] = stored
        return stored.copy()

    async def get(self, booking_id: int, for_update: bool = False):
        booking = self._bookings.get(booking_id) or self._store._bookings.get(booking_id)
        return booking.copy() if booking else None

    async def update(self, booking):
        current = await self.get(booking.id)
        if current is None:
            raise KeyError(f"Booking {booking.id} not found")
        for name in MUTABLE_FIELDS:
            setattr(current, name, getattr(booking, name))
        self._bookings[current.id] = current
        return current.copy()

    async def list_by_customer(self, customer_id: int, page: int, size: int, status: BookingStatus | None = None) -> Page:
        matches = [
            b for b in self._visible()
            if b.customer_id == customer_id and (status is None or b.status == status)
        ]
        return _paginate(_chronological(matches), page, size)

    async def list_by_provider(self, provider_id: int, page: int, size: int) -> Page:
        matches = [b for b in self._visible() if b.provider_id == provider_id]
        return _paginate(_chronological(matches), page, size)

    async def list_by_provider_and_status(self, provider_id: int, status: BookingStatus) -> list:
        matches = [
            b for b in self._visible()
            if b.provider_id == provider_id and b.status == status
        ]
        return [b.copy() for b in _chronological(matches)]

    async def list_upcoming_for_provider(self, provider_id: int, now) -> list:
        matches = [
            b for b in self._visible()
            if b.provider_id == provider_id
            and b.status == BookingStatus.CONFIRMED
            and b.scheduled_at > now
        ]
        return [b.copy() for b in _chronological(matches)]

    async def find_overlapping(self, provider_id: int, start, end, statuses, exclude_id: int | None = None) -> list:
        matches = [
            b for b in self._visible()
            if b.provider_id == provider_id
            and b.status in statuses
            and b.id != exclude_id
            and b.scheduled_at < end
            and b.ends_at > start
        ]
        return [b.copy() for b in _chronological(matches)]
