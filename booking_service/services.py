import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import InvalidOperation as DecimalError

from shared.locks import LocalKeyedLock, LockUnavailable

from .conflicts import ConflictChecker
from .exceptions import (
    InvalidOperation,
    NotFound,
    PersistenceError,
    SchedulingConflict,
    Unauthorized,
    ValidationError,
)
from .lifecycle import (
    Actor,
    BookingEvent,
    BookingStatus,
    Party,
    Role,
    authorize,
    next_status,
    parties,
)
from .records import (
    DEFAULT_DURATION_MINUTES,
    Booking,
    Provider,
    as_utc,
    booking_from_dict,
    booking_to_dict,
    provider_from_dict,
    provider_to_dict,
    to_money,
    utcnow,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

EVENT_TYPES = {
    BookingEvent.ACCEPT: "booking.confirmed",
    BookingEvent.REJECT: "booking.rejected",
    BookingEvent.START: "booking.started",
    BookingEvent.COMPLETE: "booking.completed",
    BookingEvent.CANCEL: "booking.cancelled",
}


def booking_key(booking_id: int) -> str:
    return f"booking:{booking_id}"


def provider_key(provider_id: int) -> str:
    return f"provider:{provider_id}"


def provider_lock_key(provider_id: int) -> str:
    return f"provider:{provider_id}:calendar"


class BookingService:
    """
    Booking lifecycle: creation with double-booking prevention, provider
    responses, service start/finish, cancellation and reviews.

    Every write that depends on a provider's calendar runs inside that
    provider's lock and a single store transaction, so the conflict check and
    the write it guards cannot interleave with another request for the same
    provider.
    """

    def __init__(
        self,
        store,
        *,
        cache=None,
        locks=None,
        publisher=None,
        clock=utcnow,
        conflicts: ConflictChecker | None = None,
        cache_ttl: int = 300,
    ):
        self._store = store
        self._cache = cache
        self._locks = locks or LocalKeyedLock()
        self._publisher = publisher
        self._clock = clock
        self._conflicts = conflicts or ConflictChecker()
        self._cache_ttl = cache_ttl

    @property
    def events_enabled(self) -> bool:
        return bool(self._publisher and self._publisher.enabled)

    def _now(self) -> datetime:
        return as_utc(self._clock())

    @asynccontextmanager
    async def _provider_calendar(self, provider_id: int):
        try:
            async with self._locks.hold(provider_lock_key(provider_id)):
                yield
        except LockUnavailable as exc:
            raise PersistenceError(
                f"Provider {provider_id} calendar is busy, retry shortly", cause=exc
            ) from exc

    async def _evict(self, *keys: str):
        if self._cache is None:
            return
        try:
            await self._cache.evict(*keys)
        except Exception:
            # stale entries still expire by TTL
            logger.exception("Cache eviction failed for %s", keys)

    async def _publish(self, event_type: str, booking: Booking):
        if self._publisher is None:
            return
        try:
            await self._publisher.booking_event(event_type, booking)
        except Exception:
            logger.exception("Publishing %s for booking %s failed", event_type, booking.id)

    # ---- providers ----

    async def upsert_provider(
        self,
        provider_id: int,
        user_id: int,
        *,
        available: bool = True,
        verified: bool = False,
        hourly_rate=None,
    ) -> Provider:
        """Create or refresh the local copy of a provider. Ratings stay owned by this service."""
        now = self._now()
        async with self._store.transaction() as repo:
            provider = await repo.get_provider(provider_id, for_update=True)
            if provider is None:
                provider = Provider(id=provider_id, user_id=user_id)
            provider.user_id = user_id
            provider.available = available
            provider.verified = verified
            provider.hourly_rate = to_money(hourly_rate) if hourly_rate is not None else None
            provider.updated_at = now
            provider = await repo.save_provider(provider)
        await self._evict(provider_key(provider_id))
        logger.info("Provider %s synced (available=%s)", provider_id, available)
        return provider

    async def set_provider_availability(self, provider_id: int, available: bool) -> Provider:
        async with self._store.transaction() as repo:
            provider = await repo.get_provider(provider_id, for_update=True)
            if provider is None:
                raise NotFound(f"Provider {provider_id} not found")
            provider.available = available
            provider.updated_at = self._now()
            provider = await repo.save_provider(provider)
        await self._evict(provider_key(provider_id))
        return provider

    async def get_provider(self, provider_id: int) -> Provider:
        if self._cache is not None:
            cached = await self._cache.get(provider_key(provider_id))
            if cached:
                return provider_from_dict(cached)

        async with self._store.transaction() as repo:
            provider = await repo.get_provider(provider_id)
        if provider is None:
            raise NotFound(f"Provider {provider_id} not found")

        if self._cache is not None:
            await self._cache.set(provider_key(provider_id), provider_to_dict(provider), self._cache_ttl)
        return provider

    # ---- creation ----

    async def create_booking(
        self,
        actor: Actor,
        provider_id: int,
        scheduled_at: datetime,
        address: str,
        *,
        duration_minutes: int = DEFAULT_DURATION_MINUTES,
        notes: str | None = None,
    ) -> Booking:
        if not actor.has_role(Role.CUSTOMER):
            raise Unauthorized("Only customers can request bookings")

        now = self._now()
        scheduled_at = as_utc(scheduled_at)
        if scheduled_at <= now:
            raise ValidationError("Scheduled time must be in the future")
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
            raise ValidationError("Duration must be a positive number of minutes")
        if not address or not address.strip():
            raise ValidationError("Address is required")

        ends_at = scheduled_at + timedelta(minutes=duration_minutes)

        async with self._provider_calendar(provider_id):
            async with self._store.transaction() as repo:
                provider = await repo.get_provider(provider_id, for_update=True)
                if provider is None:
                    raise NotFound(f"Provider {provider_id} not found")
                if provider.user_id == actor.user_id:
                    raise Unauthorized("Providers cannot book their own services")
                if not provider.available:
                    raise ValidationError(f"Provider {provider_id} is not accepting bookings")

                if await self._conflicts.has_conflict(repo, provider_id, scheduled_at, ends_at):
                    logger.warning(
                        "Rejected booking for provider %s at %s: schedule conflict",
                        provider_id,
                        scheduled_at.isoformat(),
                    )
                    raise SchedulingConflict(provider_id)

                booking = await repo.add(
                    Booking(
                        customer_id=actor.user_id,
                        provider_id=provider_id,
                        scheduled_at=scheduled_at,
                        duration_minutes=duration_minutes,
                        address=address.strip(),
                        notes=notes,
                        status=BookingStatus.PENDING,
                        quoted_amount=provider.quote(duration_minutes),
                        created_at=now,
                        updated_at=now,
                    )
                )

        logger.info(
            "Booking %s requested by customer %s with provider %s for %s",
            booking.id,
            booking.customer_id,
            provider_id,
            scheduled_at.isoformat(),
        )
        await self._publish("booking.requested", booking)
        return booking

    # ---- transitions ----

    async def _locate(self, booking_id: int) -> Booking:
        async with self._store.transaction() as repo:
            booking = await repo.get(booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    async def _transition(self, actor: Actor, booking_id: int, event: BookingEvent, apply=None, *, recheck_calendar=False) -> Booking:
        located = await self._locate(booking_id)

        async with self._provider_calendar(located.provider_id):
            async with self._store.transaction() as repo:
                booking = await repo.get(booking_id, for_update=True)
                provider = await repo.get_provider(booking.provider_id)
                previous = booking.status

                authorize(
                    previous,
                    event,
                    parties(actor, booking.customer_id, provider.user_id if provider else None),
                )

                if recheck_calendar and await self._conflicts.has_conflict(
                    repo, booking.provider_id, booking.scheduled_at, booking.ends_at, exclude_id=booking.id
                ):
                    logger.warning("Cannot confirm booking %s: provider calendar already taken", booking.id)
                    raise SchedulingConflict(booking.provider_id)

                now = self._now()
                changed = booking.copy()
                changed.status = next_status(previous, event)
                changed.updated_at = now
                if apply is not None:
                    apply(changed, now)
                booking = await repo.update(changed)

        await self._evict(booking_key(booking.id))
        logger.info(
            "Booking %s %s -> %s by user %s",
            booking.id,
            previous.value,
            booking.status.value,
            actor.user_id,
        )
        await self._publish(EVENT_TYPES[event], booking)
        return booking

    async def respond_to_booking(self, actor: Actor, booking_id: int, accept: bool) -> Booking:
        def stamp_response(booking, now):
            booking.responded_at = now

        if accept:
            return await self._transition(
                actor, booking_id, BookingEvent.ACCEPT, stamp_response, recheck_calendar=True
            )
        return await self._transition(actor, booking_id, BookingEvent.REJECT, stamp_response)

    async def start_service(self, actor: Actor, booking_id: int) -> Booking:
        return await self._transition(actor, booking_id, BookingEvent.START)

    async def complete_service(self, actor: Actor, booking_id: int, final_amount) -> Booking:
        def finish(booking, now):
            try:
                amount = to_money(final_amount)
            except (DecimalError, TypeError, ValueError):
                raise ValidationError(f"Invalid final amount: {final_amount!r}") from None
            if not amount.is_finite() or amount < 0:
                raise ValidationError("Final amount must be zero or more")
            booking.final_amount = amount
            booking.completed_at = now

        return await self._transition(actor, booking_id, BookingEvent.COMPLETE, finish)

    async def cancel_booking(self, actor: Actor, booking_id: int, reason: str) -> Booking:
        def record_reason(booking, now):
            if not reason or not reason.strip():
                raise ValidationError("A cancellation reason is required")
            booking.cancellation_reason = reason.strip()

        return await self._transition(actor, booking_id, BookingEvent.CANCEL, record_reason)

    async def attach_review(self, actor: Actor, booking_id: int, rating: int, text: str | None = None) -> Booking:
        located = await self._locate(booking_id)

        async with self._provider_calendar(located.provider_id):
            async with self._store.transaction() as repo:
                booking = await repo.get(booking_id, for_update=True)
                if Party.CUSTOMER not in parties(actor, booking.customer_id, None):
                    raise Unauthorized("Only the customer who booked can review it")
                if booking.status != BookingStatus.COMPLETED:
                    raise InvalidOperation(
                        f"Only completed bookings can be reviewed (status is {booking.status.value})"
                    )
                if booking.rating is not None:
                    raise InvalidOperation("This booking has already been reviewed")
                if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
                    raise ValidationError("Rating must be a whole number from 1 to 5")

                now = self._now()
                changed = booking.copy()
                changed.rating = rating
                changed.review = text.strip() if text and text.strip() else None
                changed.updated_at = now
                booking = await repo.update(changed)

                provider = await repo.get_provider(booking.provider_id, for_update=True)
                if provider is not None:
                    provider.add_rating(rating)
                    provider.updated_at = now
                    await repo.save_provider(provider)

        await self._evict(booking_key(booking.id), provider_key(booking.provider_id))
        logger.info("Booking %s reviewed with %s stars", booking.id, rating)
        await self._publish("booking.reviewed", booking)
        return booking

    # ---- reads ----

    async def get_booking(self, actor: Actor, booking_id: int) -> Booking:
        booking = None
        if self._cache is not None:
            cached = await self._cache.get(booking_key(booking_id))
            if cached:
                booking = booking_from_dict(cached)

        if booking is None:
            booking = await self._locate(booking_id)
            if self._cache is not None:
                await self._cache.set(booking_key(booking_id), booking_to_dict(booking), self._cache_ttl)

        provider = await self.get_provider(booking.provider_id)
        if not parties(actor, booking.customer_id, provider.user_id):
            raise Unauthorized("Not a participant of this booking")
        return booking

    @staticmethod
    def _check_page(page: int, size: int):
        if page < 0:
            raise ValidationError("Page index must be zero or more")
        if not 1 <= size <= MAX_PAGE_SIZE:
            raise ValidationError(f"Page size must be between 1 and {MAX_PAGE_SIZE}")

    async def _provider_for_owner(self, actor: Actor, provider_id: int) -> Provider:
        provider = await self.get_provider(provider_id)
        if not (
            actor.has_role(Role.ADMIN)
            or (actor.has_role(Role.SERVICE_PROVIDER) and provider.user_id == actor.user_id)
        ):
            raise Unauthorized("Only the provider can see its bookings")
        return provider

    async def list_by_customer(
        self,
        actor: Actor,
        customer_id: int,
        page: int = 0,
        size: int = 10,
        status: BookingStatus | None = None,
    ):
        self._check_page(page, size)
        if actor.user_id != customer_id and not actor.has_role(Role.ADMIN):
            raise Unauthorized("Customers can only list their own bookings")
        async with self._store.transaction() as repo:
            return await repo.list_by_customer(customer_id, page, size, status)

    async def list_by_provider(self, actor: Actor, provider_id: int, page: int = 0, size: int = 10):
        self._check_page(page, size)
        await self._provider_for_owner(actor, provider_id)
        async with self._store.transaction() as repo:
            return await repo.list_by_provider(provider_id, page, size)

    async def list_pending_for_provider(self, actor: Actor, provider_id: int) -> list:
        await self._provider_for_owner(actor, provider_id)
        async with self._store.transaction() as repo:
            return await repo.list_by_provider_and_status(provider_id, BookingStatus.PENDING)

    async def list_upcoming_for_provider(self, actor: Actor, provider_id: int) -> list:
        await self._provider_for_owner(actor, provider_id)
        now = self._now()
        async with self._store.transaction() as repo:
            return await repo.list_upcoming_for_provider(provider_id, now)
