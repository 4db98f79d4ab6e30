import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from shared.cache import MemoryCache, RedisCache, get_redis
from shared.locks import LocalKeyedLock, RedisKeyedLock
from shared.rabbitmq import RabbitPublisher

from .config import (
    CACHE_TTL_SECONDS,
    LOCK_TIMEOUT_SECONDS,
    LOG_LEVEL,
    RABBIT_URL,
    REDIS_URL,
    SERVICE_NAME,
)
from .consumer import start_consumer
from .db import build_engine, build_session_factory
from .publisher import BookingEventPublisher
from .routes import router
from .services import BookingService
from .sql_repository import SqlBookingStore

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=LOG_LEVEL,
            format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    else:
        root_logger.setLevel(LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "booking_service", None) is not None:
        # wired by the caller (tests, embedding)
        yield
        return

    configure_logging()

    engine = build_engine()
    store = SqlBookingStore(build_session_factory(engine))

    if REDIS_URL:
        redis_client = get_redis(REDIS_URL)
        cache = RedisCache(redis_client, prefix="booking")
        locks = RedisKeyedLock(redis_client, timeout=LOCK_TIMEOUT_SECONDS)
    else:
        logger.warning("REDIS_URL not set; cache and provider locks are process-local")
        cache = MemoryCache()
        locks = LocalKeyedLock()

    publisher = BookingEventPublisher(RabbitPublisher(RABBIT_URL))
    try:
        await publisher.start()
    except Exception:
        logger.warning("RabbitMQ connect failed at startup; continuing without events")

    service = BookingService(
        store,
        cache=cache,
        locks=locks,
        publisher=publisher,
        cache_ttl=CACHE_TTL_SECONDS,
    )
    app.state.booking_service = service

    consumer_conn = None
    if RABBIT_URL:
        try:
            consumer_conn = await start_consumer(RABBIT_URL, service, cache)
        except Exception:
            logger.exception("Provider event consumer failed to start")

    logger.info("%s started", SERVICE_NAME)
    try:
        yield
    finally:
        app.state.booking_service = None
        if consumer_conn and not consumer_conn.is_closed:
            await consumer_conn.close()
        await publisher.close()
        await cache.close()
        await engine.dispose()
        logger.info("%s stopped", SERVICE_NAME)


def create_app(service: BookingService | None = None) -> FastAPI:
    app = FastAPI(title="Booking Service", lifespan=lifespan)
    app.state.booking_service = service
    app.include_router(router)

    @app.get("/health")
    async def health():
        svc = app.state.booking_service
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "events_enabled": bool(svc and svc.events_enabled),
        }

    return app


app = create_app()
