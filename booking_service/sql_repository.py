import logging
from contextlib import asynccontextmanager

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .exceptions import PersistenceError, SchedulingConflict
from .lifecycle import BookingStatus
from .models import NO_OVERLAP_CONSTRAINT, BookingRow, ProviderRow
from .records import Booking, Page, Provider
from .repository import MUTABLE_FIELDS

logger = logging.getLogger(__name__)


def _to_booking(row: BookingRow) -> Booking:
    return Booking(
        id=row.id,
        customer_id=row.customer_id,
        provider_id=row.provider_id,
        scheduled_at=row.scheduled_at,
        duration_minutes=row.duration_minutes,
        status=BookingStatus(row.status),
        address=row.address,
        notes=row.notes,
        quoted_amount=row.quoted_amount,
        final_amount=row.final_amount,
        responded_at=row.responded_at,
        completed_at=row.completed_at,
        rating=row.rating,
        review=row.review,
        cancellation_reason=row.cancellation_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_provider(row: ProviderRow) -> Provider:
    return Provider(
        id=row.id,
        user_id=row.user_id,
        available=row.available,
        verified=row.verified,
        hourly_rate=row.hourly_rate,
        rating=row.rating,
        total_ratings=row.total_ratings,
        updated_at=row.updated_at,
    )


class SqlBookingStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self):
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield SqlBookingRepository(session)
        except SQLAlchemyError as exc:
            logger.exception("Booking store transaction failed")
            raise PersistenceError("Booking storage is unavailable", cause=exc) from exc

    async def close(self):
        pass


class SqlBookingRepository:
    def __init__(self, session):
        self._session = session

    async def _flush(self, provider_id: int):
        try:
            await self._session.flush()
        except IntegrityError as exc:
            # the exclusion constraint caught a race the lock did not
            if NO_OVERLAP_CONSTRAINT in str(exc.orig):
                raise SchedulingConflict(provider_id) from exc
            raise

    # ---- providers ----

    async def _provider_row(self, provider_id: int, for_update: bool = False):
        stmt = select(ProviderRow).where(ProviderRow.id == provider_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        res = await self._session.execute(stmt)
        return res.scalar_one_or_none()

    async def get_provider(self, provider_id: int, for_update: bool = False):
        row = await self._provider_row(provider_id, for_update)
        return _to_provider(row) if row else None

    async def save_provider(self, provider: Provider) -> Provider:
        row = await self._provider_row(provider.id)
        if row is None:
            row = ProviderRow(id=provider.id)
            self._session.add(row)
        row.user_id = provider.user_id
        row.available = provider.available
        row.verified = provider.verified
        row.hourly_rate = provider.hourly_rate
        row.rating = provider.rating
        row.total_ratings = provider.total_ratings
        row.updated_at = provider.updated_at
        await self._session.flush()
        return _to_provider(row)

    # ---- bookings ----

    async def add(self, booking: Booking) -> Booking:
        row = BookingRow(
            customer_id=booking.customer_id,
            provider_id=booking.provider_id,
            scheduled_at=booking.scheduled_at,
            duration_minutes=booking.duration_minutes,
            ends_at=booking.ends_at,
            status=booking.status.value,
            address=booking.address,
            notes=booking.notes,
            quoted_amount=booking.quoted_amount,
            final_amount=booking.final_amount,
            responded_at=booking.responded_at,
            completed_at=booking.completed_at,
            rating=booking.rating,
            review=booking.review,
            cancellation_reason=booking.cancellation_reason,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )
        self._session.add(row)
        await self._flush(booking.provider_id)
        return _to_booking(row)

    async def _booking_row(self, booking_id: int, for_update: bool = False):
        stmt = select(BookingRow).where(BookingRow.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        res = await self._session.execute(stmt)
        return res.scalar_one_or_none()

    async def get(self, booking_id: int, for_update: bool = False):
        row = await self._booking_row(booking_id, for_update)
        return _to_booking(row) if row else None

    async def update(self, booking: Booking) -> Booking:
        row = await self._booking_row(booking.id)
        if row is None:
            raise KeyError(f"Booking {booking.id} not found")
        for name in MUTABLE_FIELDS:
            value = getattr(booking, name)
            if name == "status":
                value = value.value
            setattr(row, name, value)
        await self._flush(booking.provider_id)
        return _to_booking(row)

    async def _page(self, condition, page: int, size: int) -> Page:
        total = await self._session.scalar(
            select(func.count()).select_from(BookingRow).where(condition)
        )
        res = await self._session.execute(
            select(BookingRow)
            .where(condition)
            .order_by(BookingRow.scheduled_at, BookingRow.id)
            .offset(page * size)
            .limit(size)
        )
        return Page(
            items=[_to_booking(row) for row in res.scalars()],
            total=total or 0,
            page=page,
            size=size,
        )

    async def list_by_customer(self, customer_id: int, page: int, size: int, status: BookingStatus | None = None) -> Page:
        condition = BookingRow.customer_id == customer_id
        if status is not None:
            condition = and_(condition, BookingRow.status == status.value)
        return await self._page(condition, page, size)

    async def list_by_provider(self, provider_id: int, page: int, size: int) -> Page:
        return await self._page(BookingRow.provider_id == provider_id, page, size)

    async def _list(self, *conditions) -> list:
        res = await self._session.execute(
            select(BookingRow)
            .where(*conditions)
            .order_by(BookingRow.scheduled_at, BookingRow.id)
        )
        return [_to_booking(row) for row in res.scalars()]

    async def list_by_provider_and_status(self, provider_id: int, status: BookingStatus) -> list:
        return await self._list(
            BookingRow.provider_id == provider_id,
            BookingRow.status == status.value,
        )

    async def list_upcoming_for_provider(self, provider_id: int, now) -> list:
        return await self._list(
            BookingRow.provider_id == provider_id,
            BookingRow.status == BookingStatus.CONFIRMED.value,
            BookingRow.scheduled_at > now,
        )

    async def find_overlapping(self, provider_id: int, start, end, statuses, exclude_id: int | None = None) -> list:
        conditions = [
            BookingRow.provider_id == provider_id,
            BookingRow.status.in_([s.value for s in statuses]),
            BookingRow.scheduled_at < end,
            BookingRow.ends_at > start,
        ]
        if exclude_id is not None:
            conditions.append(BookingRow.id != exclude_id)
        return await self._list(*conditions)
