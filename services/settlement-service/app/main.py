import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shared.rabbitmq import RabbitPublisher
from shared.redis_client import get_redis

from .config import SERVICE_NAME, Settings, load_settings
from .db import build_session_factory
from .engines import Engines, build_engines
from .errors import EntitlementExhausted, SettlementError
from .routes import router
from .scheduler import payout_scheduler_loop

logger = logging.getLogger(__name__)


async def settlement_error_handler(request: Request, exc: SettlementError):
    body = {"detail": exc.message, "error": exc.code}
    if isinstance(exc, EntitlementExhausted):
        body["reason"] = exc.reason
    return JSONResponse(status_code=exc.status_code, content=body)


def create_app(settings: Settings | None = None, engines: Engines | None = None, publisher=None) -> FastAPI:
    """
    With `engines` given the app uses them as-is (no database, broker or
    scheduler is started); otherwise everything is built from settings on startup.
    """
    settings = settings or load_settings()
    publisher = publisher or RabbitPublisher(settings.rabbit_url, SERVICE_NAME)

    app = FastAPI(title="Settlement Service")
    app.include_router(router)
    app.add_exception_handler(SettlementError, settlement_error_handler)

    app.state.settings = settings
    app.state.engines = engines
    app.state.publisher = publisher

    stop_event = asyncio.Event()
    state = {"db_engine": None, "redis": None, "scheduler": None}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": SERVICE_NAME, "events_enabled": publisher.enabled}

    @app.on_event("startup")
    async def startup():
        try:
            await publisher.connect()
        except Exception as e:
            logger.warning("[%s] RabbitMQ not available at startup: %s", SERVICE_NAME, e)

        if app.state.engines is not None:
            return

        db_engine, session_factory = build_session_factory(settings.database_url)
        state["db_engine"] = db_engine
        redis_client = get_redis(settings.redis_url)
        state["redis"] = redis_client
        app.state.engines = build_engines(session_factory, settings, publisher, redis_client)

        if settings.payout_scheduler_interval_seconds > 0:
            state["scheduler"] = asyncio.create_task(
                payout_scheduler_loop(
                    stop_event,
                    app.state.engines.batches,
                    redis_client,
                    interval=settings.payout_scheduler_interval_seconds,
                )
            )
        logger.info("[%s] started (events=%s, redis=%s)", SERVICE_NAME, publisher.enabled, redis_client is not None)

    @app.on_event("shutdown")
    async def shutdown():
        stop_event.set()
        task = state["scheduler"]
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=10)
            except Exception as e:
                logger.warning("[%s] payout scheduler did not stop cleanly: %s", SERVICE_NAME, e)

        try:
            await publisher.close()
        except Exception as e:
            logger.warning("[%s] RabbitMQ close failed: %s", SERVICE_NAME, e)

        if state["redis"] is not None:
            try:
                await state["redis"].aclose()
            except Exception as e:
                logger.warning("[%s] Redis close failed: %s", SERVICE_NAME, e)

        if state["db_engine"] is not None:
            await state["db_engine"].dispose()

    return app


app = create_app()
