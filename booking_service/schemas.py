from datetime import datetime
from decimal import Decimal
from typing import List

from pydantic import BaseModel, ConfigDict

from .lifecycle import BookingStatus


class CreateBookingRequest(BaseModel):
    provider_id: int
    scheduled_at: datetime
    duration_minutes: int = 60
    address: str
    notes: str | None = None


class CompleteBookingRequest(BaseModel):
    final_amount: Decimal


class CancelBookingRequest(BaseModel):
    reason: str


class ReviewRequest(BaseModel):
    rating: int
    review: str | None = None


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    customer_id: int
    provider_id: int
    scheduled_at: datetime
    duration_minutes: int
    ends_at: datetime
    status: BookingStatus
    address: str
    notes: str | None = None
    quoted_amount: Decimal | None = None
    final_amount: Decimal | None = None
    responded_at: datetime | None = None
    completed_at: datetime | None = None
    rating: int | None = None
    review: str | None = None
    cancellation_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class BookingPageResponse(BaseModel):
    items: List[BookingResponse]
    total: int
    page: int
    size: int
    total_pages: int
