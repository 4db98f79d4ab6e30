from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
)
from sqlalchemy.types import TypeDecorator

from shared.database import Base

from .records import as_utc

# Name of the PostgreSQL exclusion constraint created by migration 0001.
NO_OVERLAP_CONSTRAINT = "ex_bookings_provider_no_overlap"


class UTCDateTime(TypeDecorator):
    """Always hands back aware UTC datetimes, even on backends that drop the offset."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value) if value is not None else None

    def process_result_value(self, value, dialect):
        return as_utc(value) if value is not None else None


class ProviderRow(Base):
    __tablename__ = "providers"

    id = Column(Integer, primary_key=True, autoincrement=False)
    user_id = Column(Integer, nullable=False, unique=True, index=True)
    available = Column(Boolean, nullable=False, default=True)
    verified = Column(Boolean, nullable=False, default=False)
    hourly_rate = Column(Numeric(10, 2), nullable=True)
    rating = Column(Numeric(2, 1), nullable=False, default=0)
    total_ratings = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime(), nullable=True)


class BookingRow(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)

    customer_id = Column(Integer, nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False, index=True)

    scheduled_at = Column(UTCDateTime(), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    ends_at = Column(UTCDateTime(), nullable=False)  # scheduled_at + duration, kept for the overlap query

    status = Column(String(20), nullable=False, index=True)  # PENDING/CONFIRMED/REJECTED/IN_PROGRESS/COMPLETED/CANCELLED

    address = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)

    quoted_amount = Column(Numeric(10, 2), nullable=True)
    final_amount = Column(Numeric(10, 2), nullable=True)

    responded_at = Column(UTCDateTime(), nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)

    rating = Column(SmallInteger, nullable=True)
    review = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False)
    updated_at = Column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index("ix_bookings_provider_window", "provider_id", "scheduled_at", "ends_at"),
        Index("ix_bookings_customer_scheduled", "customer_id", "scheduled_at"),
        CheckConstraint("duration_minutes > 0", name="ck_bookings_duration_positive"),
        CheckConstraint("rating IS NULL OR rating BETWEEN 1 AND 5", name="ck_bookings_rating_range"),
    )
