import asyncio
import logging

from shared.idempotency import acquire_once, release

from .batches import PayoutBatchEngine, is_run_due
from .errors import SettlementError

logger = logging.getLogger(__name__)

RUN_LOCK_TTL_SECONDS = 26 * 3600


def run_lock_key(day) -> str:
    return f"settlement:payout_run:{day.isoformat()}"


async def run_if_due(engine: PayoutBatchEngine, redis_client=None):
    """
    One scheduler tick. Returns the RunSummary when a run happened, else None.
    """
    today = engine.clock().date()
    rule = await engine.get_active_rule()
    if rule is None or not is_run_due(rule, today):
        return None

    key = run_lock_key(today)
    if not await acquire_once(redis_client, key, ttl_seconds=RUN_LOCK_TTL_SECONDS):
        return None

    try:
        return await engine.run_automated(trigger="scheduled", run_date=today, created_by="scheduler")
    except Exception:
        # let another instance (or the next tick) retry today's run
        await release(redis_client, key)
        raise


async def payout_scheduler_loop(stop_event: asyncio.Event, engine: PayoutBatchEngine, redis_client=None, interval: float = 300.0):
    while not stop_event.is_set():
        try:
            summary = await run_if_due(engine, redis_client)
            if summary is not None:
                logger.info(
                    "[settlement-service] scheduled payout run %s created %d batches",
                    summary.run_date,
                    len(summary.batches),
                )
        except SettlementError as e:
            logger.warning("[settlement-service] scheduled payout run rejected: %s", e.message)
        except Exception:
            logger.exception("[settlement-service] scheduled payout run failed")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
