import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from booking_service.exceptions import (
    InvalidOperation,
    InvalidTransition,
    NotFound,
    PersistenceError,
    SchedulingConflict,
    Unauthorized,
    ValidationError,
)
from booking_service.lifecycle import TRANSITIONS, Actor, BookingEvent, BookingStatus
from booking_service.services import BookingService, booking_key, provider_key
from shared.locks import LockUnavailable

CUSTOMER = Actor.of(1, "CUSTOMER")
OTHER_CUSTOMER = Actor.of(2, "CUSTOMER")
PROVIDER = Actor.of(70, "SERVICE_PROVIDER")
OTHER_PROVIDER = Actor.of(80, "SERVICE_PROVIDER")
ADMIN = Actor.of(99, "ADMIN")


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2030, 1, 1, hour, minute, tzinfo=timezone.utc)


def book(service, hour, minute=0, actor=CUSTOMER, **kwargs):
    return asyncio.run(
        service.create_booking(actor, 7, at(hour, minute), "1 Main St", **kwargs)
    )


def confirmed(service, hour, minute=0, actor=CUSTOMER):
    booking = book(service, hour, minute, actor=actor)
    return asyncio.run(service.respond_to_booking(PROVIDER, booking.id, accept=True))


def completed(service, hour, amount="100"):
    booking = confirmed(service, hour)
    asyncio.run(service.start_service(PROVIDER, booking.id))
    return asyncio.run(service.complete_service(PROVIDER, booking.id, amount))


# ---- creation ----


def test_create_booking_is_pending_and_quoted(service, publisher) -> None:
    booking = book(service, 10, duration_minutes=90, notes="Leaking sink")

    assert booking.id == 1
    assert booking.status == BookingStatus.PENDING
    assert booking.customer_id == 1
    assert booking.ends_at == at(11, 30)
    assert booking.quoted_amount == Decimal("120.00")
    assert booking.notes == "Leaking sink"
    assert booking.created_at == booking.updated_at
    assert publisher.events == [("booking.requested", 1, "PENDING")]


def test_create_booking_without_rate_has_no_quote(service) -> None:
    asyncio.run(service.upsert_provider(8, 80))
    booking = asyncio.run(service.create_booking(CUSTOMER, 8, at(10), "1 Main St"))
    assert booking.quoted_amount is None


def test_confirmed_window_blocks_overlaps_but_not_back_to_back(service) -> None:
    first = confirmed(service, 10)
    assert first.status == BookingStatus.CONFIRMED

    with pytest.raises(SchedulingConflict):
        book(service, 10, 30, actor=OTHER_CUSTOMER)

    follow_up = book(service, 11, actor=OTHER_CUSTOMER)
    assert follow_up.status == BookingStatus.PENDING


def test_pending_requests_do_not_block_each_other(service) -> None:
    first = book(service, 10)
    second = book(service, 10, 30, actor=OTHER_CUSTOMER)
    assert first.status == second.status == BookingStatus.PENDING


def test_cancelled_booking_frees_the_slot(service) -> None:
    first = confirmed(service, 10)
    asyncio.run(service.cancel_booking(CUSTOMER, first.id, "Plans changed"))

    again = confirmed(service, 10, actor=OTHER_CUSTOMER)
    assert again.status == BookingStatus.CONFIRMED


@pytest.mark.parametrize(
    "scheduled_at,kwargs,address",
    [
        (datetime(2029, 12, 31, 9, 0, tzinfo=timezone.utc), {}, "1 Main St"),
        (at(8), {}, "1 Main St"),
        (at(10), {"duration_minutes": 0}, "1 Main St"),
        (at(10), {"duration_minutes": -30}, "1 Main St"),
        (at(10), {"duration_minutes": True}, "1 Main St"),
        (at(10), {}, "   "),
    ],
)
def test_create_booking_validation(service, scheduled_at, kwargs, address) -> None:
    with pytest.raises(ValidationError):
        asyncio.run(service.create_booking(CUSTOMER, 7, scheduled_at, address, **kwargs))


def test_create_booking_requires_customer_role(service) -> None:
    with pytest.raises(Unauthorized):
        book(service, 10, actor=PROVIDER)


def test_provider_cannot_book_itself(service) -> None:
    both = Actor.of(70, "CUSTOMER", "SERVICE_PROVIDER")
    with pytest.raises(Unauthorized):
        book(service, 10, actor=both)


def test_create_booking_unknown_provider(service) -> None:
    with pytest.raises(NotFound):
        asyncio.run(service.create_booking(CUSTOMER, 404, at(10), "1 Main St"))


def test_unavailable_provider_rejects_requests(service) -> None:
    asyncio.run(service.set_provider_availability(7, False))
    with pytest.raises(ValidationError):
        book(service, 10)


def test_naive_datetimes_are_taken_as_utc(service) -> None:
    booking = asyncio.run(
        service.create_booking(CUSTOMER, 7, datetime(2030, 1, 1, 10, 0), "1 Main St")
    )
    assert booking.scheduled_at == at(10)


# ---- transitions ----


def test_full_lifecycle_with_review(service, publisher) -> None:
    booking = book(service, 10)
    booking = asyncio.run(service.respond_to_booking(PROVIDER, booking.id, accept=True))
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.responded_at is not None

    booking = asyncio.run(service.start_service(PROVIDER, booking.id))
    assert booking.status == BookingStatus.IN_PROGRESS

    booking = asyncio.run(service.complete_service(PROVIDER, booking.id, "500"))
    assert booking.status == BookingStatus.COMPLETED
    assert booking.final_amount == Decimal("500.00")
    assert booking.completed_at is not None

    booking = asyncio.run(service.attach_review(CUSTOMER, booking.id, 5, "  Great job "))
    assert booking.rating == 5
    assert booking.review == "Great job"

    with pytest.raises(InvalidOperation):
        asyncio.run(service.attach_review(CUSTOMER, booking.id, 4))

    assert [e[0] for e in publisher.events] == [
        "booking.requested",
        "booking.confirmed",
        "booking.started",
        "booking.completed",
        "booking.reviewed",
    ]


def test_customer_completing_pending_booking_is_invalid_transition(service) -> None:
    booking = book(service, 10)
    with pytest.raises(InvalidTransition):
        asyncio.run(service.complete_service(CUSTOMER, booking.id, "100"))

    unchanged = asyncio.run(service.get_booking(CUSTOMER, booking.id))
    assert unchanged.status == BookingStatus.PENDING
    assert unchanged.final_amount is None


def test_only_owning_provider_can_accept(service) -> None:
    booking = book(service, 10)
    for actor in (CUSTOMER, OTHER_PROVIDER, ADMIN):
        with pytest.raises(Unauthorized):
            asyncio.run(service.respond_to_booking(actor, booking.id, accept=True))


def test_reject_is_terminal(service, publisher) -> None:
    booking = book(service, 10)
    booking = asyncio.run(service.respond_to_booking(PROVIDER, booking.id, accept=False))
    assert booking.status == BookingStatus.REJECTED
    assert booking.responded_at is not None
    assert publisher.events[-1] == ("booking.rejected", booking.id, "REJECTED")

    with pytest.raises(InvalidTransition):
        asyncio.run(service.respond_to_booking(PROVIDER, booking.id, accept=True))
    with pytest.raises(InvalidTransition):
        asyncio.run(service.cancel_booking(CUSTOMER, booking.id, "too late"))


def test_accept_rechecks_the_calendar(service) -> None:
    first = book(service, 10)
    second = book(service, 10, 30, actor=OTHER_CUSTOMER)

    asyncio.run(service.respond_to_booking(PROVIDER, first.id, accept=True))
    with pytest.raises(SchedulingConflict):
        asyncio.run(service.respond_to_booking(PROVIDER, second.id, accept=True))

    still = asyncio.run(service.get_booking(PROVIDER, second.id))
    assert still.status == BookingStatus.PENDING


def test_concurrent_accepts_confirm_exactly_one(service) -> None:
    first = book(service, 10)
    second = book(service, 10, 30, actor=OTHER_CUSTOMER)

    async def accept_both():
        return await asyncio.gather(
            service.respond_to_booking(PROVIDER, first.id, accept=True),
            service.respond_to_booking(PROVIDER, second.id, accept=True),
            return_exceptions=True,
        )

    results = asyncio.run(accept_both())
    conflicts = [r for r in results if isinstance(r, SchedulingConflict)]
    accepted = [r for r in results if not isinstance(r, Exception)]
    assert len(conflicts) == 1
    assert len(accepted) == 1
    assert accepted[0].status == BookingStatus.CONFIRMED


def test_concurrent_requests_for_a_confirmed_slot(service) -> None:
    confirmed(service, 10)

    async def request_many():
        return await asyncio.gather(
            *[
                service.create_booking(Actor.of(100 + i, "CUSTOMER"), 7, at(10, 15), "1 Main St")
                for i in range(5)
            ],
            return_exceptions=True,
        )

    results = asyncio.run(request_many())
    assert all(isinstance(r, SchedulingConflict) for r in results)


def test_complete_rejects_bad_amounts_and_keeps_status(service) -> None:
    booking = confirmed(service, 10)
    asyncio.run(service.start_service(PROVIDER, booking.id))

    for amount in ("-1", "abc", None):
        with pytest.raises(ValidationError):
            asyncio.run(service.complete_service(PROVIDER, booking.id, amount))

    still = asyncio.run(service.get_booking(PROVIDER, booking.id))
    assert still.status == BookingStatus.IN_PROGRESS
    assert still.final_amount is None


def test_complete_rounds_to_cents(service) -> None:
    booking = completed(service, 10, amount=Decimal("99.995"))
    assert booking.final_amount == Decimal("100.00")


def test_cancel_requires_reason(service) -> None:
    booking = book(service, 10)
    with pytest.raises(ValidationError):
        asyncio.run(service.cancel_booking(CUSTOMER, booking.id, "  "))

    booking = asyncio.run(service.cancel_booking(CUSTOMER, booking.id, " No longer needed "))
    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancellation_reason == "No longer needed"


def test_cancel_in_progress_is_for_provider_or_admin(service) -> None:
    booking = confirmed(service, 10)
    asyncio.run(service.start_service(PROVIDER, booking.id))

    with pytest.raises(Unauthorized):
        asyncio.run(service.cancel_booking(CUSTOMER, booking.id, "Changed my mind"))

    booking = asyncio.run(service.cancel_booking(ADMIN, booking.id, "Dispute"))
    assert booking.status == BookingStatus.CANCELLED


def test_strangers_cannot_cancel(service) -> None:
    booking = book(service, 10)
    with pytest.raises(Unauthorized):
        asyncio.run(service.cancel_booking(OTHER_CUSTOMER, booking.id, "Not mine"))


def test_transition_on_missing_booking(service) -> None:
    with pytest.raises(NotFound):
        asyncio.run(service.start_service(PROVIDER, 999))


# ---- reviews ----


def test_review_rules(service) -> None:
    pending = book(service, 9)
    with pytest.raises(InvalidOperation):
        asyncio.run(service.attach_review(CUSTOMER, pending.id, 5))

    done = completed(service, 10)
    with pytest.raises(Unauthorized):
        asyncio.run(service.attach_review(OTHER_CUSTOMER, done.id, 5))
    with pytest.raises(Unauthorized):
        asyncio.run(service.attach_review(PROVIDER, done.id, 5))
    for rating in (0, 6, True, 4.5):
        with pytest.raises(ValidationError):
            asyncio.run(service.attach_review(CUSTOMER, done.id, rating))


def test_reviews_update_provider_rating(service) -> None:
    first = completed(service, 10)
    second = completed(service, 12)

    asyncio.run(service.attach_review(CUSTOMER, first.id, 5))
    asyncio.run(service.attach_review(CUSTOMER, second.id, 4))

    provider = asyncio.run(service.get_provider(7))
    assert provider.rating == Decimal("4.5")
    assert provider.total_ratings == 2


# ---- reads ----


def test_get_booking_is_for_participants(service) -> None:
    booking = book(service, 10)

    for actor in (CUSTOMER, PROVIDER, ADMIN):
        assert asyncio.run(service.get_booking(actor, booking.id)).id == booking.id

    for actor in (OTHER_CUSTOMER, OTHER_PROVIDER):
        with pytest.raises(Unauthorized):
            asyncio.run(service.get_booking(actor, booking.id))

    with pytest.raises(NotFound):
        asyncio.run(service.get_booking(CUSTOMER, 999))


def test_transitions_evict_cached_booking(service, cache) -> None:
    booking = book(service, 10)
    asyncio.run(service.get_booking(CUSTOMER, booking.id))
    assert asyncio.run(cache.get(booking_key(booking.id)))["status"] == "PENDING"

    asyncio.run(service.respond_to_booking(PROVIDER, booking.id, accept=True))
    assert asyncio.run(cache.get(booking_key(booking.id))) is None

    fresh = asyncio.run(service.get_booking(CUSTOMER, booking.id))
    assert fresh.status == BookingStatus.CONFIRMED


def test_provider_sync_evicts_cached_provider(service, cache) -> None:
    asyncio.run(service.get_provider(7))
    assert asyncio.run(cache.get(provider_key(7))) is not None

    asyncio.run(service.upsert_provider(7, 70, hourly_rate="95"))
    assert asyncio.run(cache.get(provider_key(7))) is None
    assert asyncio.run(service.get_provider(7)).hourly_rate == Decimal("95.00")


def test_customer_listing_is_paged_in_schedule_order(service) -> None:
    late = book(service, 14)
    early = book(service, 10)
    middle = book(service, 12)
    book(service, 11, actor=OTHER_CUSTOMER)

    first = asyncio.run(service.list_by_customer(CUSTOMER, 1, page=0, size=2))
    second = asyncio.run(service.list_by_customer(CUSTOMER, 1, page=1, size=2))

    assert [b.id for b in first.items] == [early.id, middle.id]
    assert [b.id for b in second.items] == [late.id]
    assert first.total == 3
    assert first.total_pages == 2


def test_listing_authorization_and_paging_limits(service) -> None:
    with pytest.raises(Unauthorized):
        asyncio.run(service.list_by_customer(OTHER_CUSTOMER, 1))
    assert asyncio.run(service.list_by_customer(ADMIN, 1)).total == 0

    for page, size in ((-1, 10), (0, 0), (0, 101)):
        with pytest.raises(ValidationError):
            asyncio.run(service.list_by_customer(CUSTOMER, 1, page, size))

    with pytest.raises(Unauthorized):
        asyncio.run(service.list_by_provider(OTHER_PROVIDER, 7))
    with pytest.raises(Unauthorized):
        asyncio.run(service.list_by_provider(CUSTOMER, 7))
    with pytest.raises(NotFound):
        asyncio.run(service.list_by_provider(ADMIN, 404))


def test_provider_pending_and_upcoming(service, clock) -> None:
    pending = book(service, 9)
    upcoming = confirmed(service, 12)
    early = confirmed(service, 10)
    rejected = book(service, 14)
    asyncio.run(service.respond_to_booking(PROVIDER, rejected.id, accept=False))

    listed = asyncio.run(service.list_by_provider(PROVIDER, 7))
    assert [b.id for b in listed.items] == [pending.id, early.id, upcoming.id, rejected.id]

    pending_list = asyncio.run(service.list_pending_for_provider(PROVIDER, 7))
    assert [b.id for b in pending_list] == [pending.id]

    upcoming_list = asyncio.run(service.list_upcoming_for_provider(PROVIDER, 7))
    assert [b.id for b in upcoming_list] == [early.id, upcoming.id]

    clock.now = at(11)
    upcoming_list = asyncio.run(service.list_upcoming_for_provider(PROVIDER, 7))
    assert [b.id for b in upcoming_list] == [upcoming.id]


# ---- collaborators ----


class FailingPublisher:
    enabled = True

    async def booking_event(self, event_type, booking):
        raise RuntimeError("broker down")


class BusyLocks:
    @asynccontextmanager
    async def hold(self, key):
        raise LockUnavailable(key)
        yield


def test_publish_failure_does_not_fail_the_operation(store, clock) -> None:
    service = BookingService(store, clock=clock, publisher=FailingPublisher())
    asyncio.run(service.upsert_provider(7, 70))

    booking = book(service, 10)
    assert booking.status == BookingStatus.PENDING
    assert service.events_enabled is True


def test_busy_provider_lock_is_a_persistence_error(store, clock) -> None:
    service = BookingService(store, clock=clock, locks=BusyLocks())
    asyncio.run(service.upsert_provider(7, 70))

    with pytest.raises(PersistenceError):
        book(service, 10)


def test_service_without_cache_or_publisher(store, clock) -> None:
    service = BookingService(store, clock=clock)
    asyncio.run(service.upsert_provider(7, 70))

    booking = book(service, 10)
    assert asyncio.run(service.get_booking(CUSTOMER, booking.id)).id == booking.id
    assert service.events_enabled is False


def test_customer_listing_filters_by_status(service) -> None:
    pending = book(service, 9)
    first = confirmed(service, 10)
    second = confirmed(service, 12)
    book(service, 14, actor=OTHER_CUSTOMER)

    only_confirmed = asyncio.run(
        service.list_by_customer(CUSTOMER, 1, status=BookingStatus.CONFIRMED)
    )
    assert [b.id for b in only_confirmed.items] == [first.id, second.id]
    assert only_confirmed.total == 2

    only_pending = asyncio.run(service.list_by_customer(CUSTOMER, 1, status=BookingStatus.PENDING))
    assert [b.id for b in only_pending.items] == [pending.id]

    none_done = asyncio.run(service.list_by_customer(CUSTOMER, 1, status=BookingStatus.COMPLETED))
    assert none_done.items == []
    assert none_done.total == 0


# ---- failed transitions leave the record alone ----


def _reach(service, status: BookingStatus):
    booking = book(service, 10)
    if status == BookingStatus.PENDING:
        return booking
    if status == BookingStatus.REJECTED:
        return asyncio.run(service.respond_to_booking(PROVIDER, booking.id, accept=False))
    if status == BookingStatus.CANCELLED:
        return asyncio.run(service.cancel_booking(CUSTOMER, booking.id, "Not needed"))
    booking = asyncio.run(service.respond_to_booking(PROVIDER, booking.id, accept=True))
    if status == BookingStatus.CONFIRMED:
        return booking
    booking = asyncio.run(service.start_service(PROVIDER, booking.id))
    if status == BookingStatus.IN_PROGRESS:
        return booking
    return asyncio.run(service.complete_service(PROVIDER, booking.id, "250"))


def _fire(service, actor, booking_id: int, event: BookingEvent):
    if event == BookingEvent.ACCEPT:
        return service.respond_to_booking(actor, booking_id, accept=True)
    if event == BookingEvent.REJECT:
        return service.respond_to_booking(actor, booking_id, accept=False)
    if event == BookingEvent.START:
        return service.start_service(actor, booking_id)
    if event == BookingEvent.COMPLETE:
        return service.complete_service(actor, booking_id, "300")
    return service.cancel_booking(actor, booking_id, "Changed plans")


UNDEFINED_PAIRS = [
    pair
    for pair in itertools.product(BookingStatus, BookingEvent)
    if pair not in TRANSITIONS
]


@pytest.mark.parametrize("current,event", UNDEFINED_PAIRS)
@pytest.mark.parametrize("actor", [CUSTOMER, PROVIDER, ADMIN], ids=["customer", "provider", "admin"])
def test_undefined_transition_leaves_stored_booking_unchanged(
    service, store, publisher, current, event, actor
) -> None:
    booking = _reach(service, current)
    assert booking.status == current
    published = len(publisher.events)

    with pytest.raises(InvalidTransition):
        asyncio.run(_fire(service, actor, booking.id, event))

    async def stored():
        async with store.transaction() as repo:
            return await repo.get(booking.id)

    assert asyncio.run(stored()) == booking
    assert len(publisher.events) == published
