from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from .exceptions import (
    BookingError,
    InvalidOperation,
    InvalidTransition,
    NotFound,
    PersistenceError,
    SchedulingConflict,
    Unauthorized,
    ValidationError,
)
from .lifecycle import Actor, BookingStatus
from .schemas import (
    BookingPageResponse,
    BookingResponse,
    CancelBookingRequest,
    CompleteBookingRequest,
    CreateBookingRequest,
    ReviewRequest,
)
from .security import get_actor
from .services import BookingService

router = APIRouter()

STATUS_CODES = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Unauthorized, status.HTTP_403_FORBIDDEN),
    (ValidationError, 422),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (SchedulingConflict, status.HTTP_409_CONFLICT),
    (InvalidOperation, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


@contextmanager
def booking_errors():
    try:
        yield
    except BookingError as exc:
        code = next(
            (c for kind, c in STATUS_CODES if isinstance(exc, kind)),
            status.HTTP_400_BAD_REQUEST,
        )
        raise HTTPException(status_code=code, detail=exc.message) from exc


def get_booking_service(request: Request) -> BookingService:
    return request.app.state.booking_service


def _page(result) -> BookingPageResponse:
    return BookingPageResponse(
        items=[BookingResponse.model_validate(b) for b in result.items],
        total=result.total,
        page=result.page,
        size=result.size,
        total_pages=result.total_pages,
    )


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: CreateBookingRequest,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        booking = await service.create_booking(
            actor,
            data.provider_id,
            data.scheduled_at,
            data.address,
            duration_minutes=data.duration_minutes,
            notes=data.notes,
        )
    return BookingResponse.model_validate(booking)


@router.get("/bookings/my", response_model=BookingPageResponse)
async def my_bookings(
    page: int = Query(default=0),
    size: int = Query(default=10),
    status_filter: BookingStatus | None = Query(default=None, alias="status"),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        result = await service.list_by_customer(actor, actor.user_id, page, size, status_filter)
    return _page(result)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        booking = await service.get_booking(actor, booking_id)
    return BookingResponse.model_validate(booking)


@router.put("/bookings/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        booking = await service.respond_to_booking(actor, booking_id, accept=True)
    return BookingResponse.model_validate(booking)


@router.put("/bookings/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        booking = await service.respond_to_booking(actor, booking_id, accept=False)
    return BookingResponse.model_validate(booking)


@router.put("/bookings/{booking_id}/start", response_model=BookingResponse)
async def start_booking(
    booking_id: int,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        booking = await service.start_service(actor, booking_id)
    return BookingResponse.model_validate(booking)


@router.put("/bookings/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: int,
    data: CompleteBookingRequest,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        booking = await service.complete_service(actor, booking_id, data.final_amount)
    return BookingResponse.model_validate(booking)


@router.put("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: int,
    data: CancelBookingRequest,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        booking = await service.cancel_booking(actor, booking_id, data.reason)
    return BookingResponse.model_validate(booking)


@router.put("/bookings/{booking_id}/review", response_model=BookingResponse)
async def review_booking(
    booking_id: int,
    data: ReviewRequest,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        booking = await service.attach_review(actor, booking_id, data.rating, data.review)
    return BookingResponse.model_validate(booking)


@router.get("/providers/{provider_id}/bookings", response_model=BookingPageResponse)
async def provider_bookings(
    provider_id: int,
    page: int = Query(default=0),
    size: int = Query(default=10),
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        result = await service.list_by_provider(actor, provider_id, page, size)
    return _page(result)


@router.get("/providers/{provider_id}/bookings/pending", response_model=list[BookingResponse])
async def provider_pending_bookings(
    provider_id: int,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        bookings = await service.list_pending_for_provider(actor, provider_id)
    return [BookingResponse.model_validate(b) for b in bookings]


@router.get("/providers/{provider_id}/bookings/upcoming", response_model=list[BookingResponse])
async def provider_upcoming_bookings(
    provider_id: int,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    with booking_errors():
        bookings = await service.list_upcoming_for_provider(actor, provider_id)
    return [BookingResponse.model_validate(b) for b in bookings]
