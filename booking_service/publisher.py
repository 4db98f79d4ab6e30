from shared.events import build_event, to_json
from shared.rabbitmq import RabbitPublisher

from .records import utcnow


def booking_event_data(booking) -> dict:
    return {
        "booking_id": booking.id,
        "customer_id": booking.customer_id,
        "provider_id": booking.provider_id,
        "status": booking.status.value,
        "scheduled_at": booking.scheduled_at,
        "ends_at": booking.ends_at,
        "quoted_amount": booking.quoted_amount,
        "final_amount": booking.final_amount,
        "rating": booking.rating,
        "cancellation_reason": booking.cancellation_reason,
    }


class BookingEventPublisher:
    def __init__(self, rabbit: RabbitPublisher, clock=utcnow):
        self._rabbit = rabbit
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._rabbit.enabled

    async def start(self):
        await self._rabbit.connect()

    async def booking_event(self, event_type: str, booking) -> bool:
        event = build_event(event_type, booking_event_data(booking), occurred_at=self._clock())
        return await self._rabbit.publish(event_type, to_json(event))

    async def close(self):
        await self._rabbit.close()
