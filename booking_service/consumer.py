import json
import logging
from functools import partial

import aio_pika

from shared.idempotency import claim_event, release_event
from shared.rabbitmq import EXCHANGE_NAME, connect

from .exceptions import BookingError

QUEUE_NAME = "booking_service_provider_events"
ROUTING_KEYS = ["provider.registered", "provider.updated", "provider.availability_changed"]

logger = logging.getLogger(__name__)


def _as_bool(value, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _as_id(value) -> int:
    if isinstance(value, bool):
        raise ValueError(f"not an id: {value!r}")
    return int(value)


async def apply_provider_event(service, cache, payload) -> bool:
    """
    Fold one provider event into the local projection.
    Returns False for events that were malformed, not ours, or already applied.
    Only failures of the store or the cache propagate.
    """
    if not isinstance(payload, dict):
        logger.warning("Dropping provider event that is not a JSON object")
        return False

    event_id = payload.get("event_id")
    event_type = payload.get("event_type")
    data = payload.get("data") or {}

    if not event_id or event_type not in ROUTING_KEYS or not isinstance(data, dict):
        return False

    try:
        provider_id = _as_id(data["provider_id"])
        user_id = None
        if event_type != "provider.availability_changed":
            user_id = _as_id(data["user_id"])
    except (KeyError, TypeError, ValueError):
        logger.warning("Dropping malformed %s %s", event_type, event_id)
        return False

    if not await claim_event(cache, event_id):
        return False

    try:
        if event_type == "provider.availability_changed":
            await service.set_provider_availability(
                provider_id, _as_bool(data.get("available"), True)
            )
        else:
            await service.upsert_provider(
                provider_id,
                user_id,
                available=_as_bool(data.get("available"), True),
                verified=_as_bool(data.get("verified"), False),
                hourly_rate=data.get("hourly_rate"),
            )
    except BookingError as exc:
        logger.warning("Provider event %s not applied: %s", event_id, exc.message)
        return False
    except Exception:
        # let a redelivery try again
        await release_event(cache, event_id)
        raise
    return True


async def handle_message(message: aio_pika.abc.AbstractIncomingMessage, service, cache):
    # only store or cache outages escape apply_provider_event, and those are worth a retry
    async with message.process(requeue=True):
        try:
            payload = json.loads(message.body.decode("utf-8"))
        except ValueError:
            logger.warning("Dropping undecodable message on %s", message.routing_key)
            return
        await apply_provider_event(service, cache, payload)


async def start_consumer(rabbit_url: str, service, cache):
    conn = await connect(rabbit_url)
    channel = await conn.channel()
    await channel.set_qos(prefetch_count=50)

    exchange = await channel.declare_exchange(
        EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
    )

    queue = await channel.declare_queue(QUEUE_NAME, durable=True)
    for rk in ROUTING_KEYS:
        await queue.bind(exchange, routing_key=rk)

    await queue.consume(partial(handle_message, service=service, cache=cache))
    logger.info("Provider event consumer started")
    return conn
