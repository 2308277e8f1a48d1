"""Durable order reconciliation job queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from database import async_session_maker
from services.credits import ConsumptionEngine
from services.ledger_store import LedgerStore
from services.locks import KeyedLock
from services.reconciliation import OrderReconciliation, reconcile_order_by_id


logger = logging.getLogger(__name__)

RECONCILE_QUEUE_NAME = "order_reconcile_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_reconcile_queue() -> Queue:
    """Return the configured order reconciliation queue."""
    return Queue(
        name=RECONCILE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_order_reconcile_job(order_id: str) -> Job:
    """Enqueue a reconcile job; duplicates are safe because reconcile is idempotent."""
    queue = get_reconcile_queue()
    return queue.enqueue(
        "services.job_queue.process_order_reconcile_job",
        order_id,
        job_id=f"reconcile:{order_id}",
        retry=Retry(max=5, interval=[5, 30, 120, 600, 1800]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=86400 * 7,
    )


async def process_order_reconcile_job_async(order_id: str) -> bool:
    """Async reconcile executed by the RQ worker wrapper."""
    async with async_session_maker() as db:
        store = LedgerStore(db)
        engine = ConsumptionEngine(
            store,
            KeyedLock(),
            default_timeout=settings.LEDGER_OPERATION_TIMEOUT_SECONDS,
        )
        granted = await reconcile_order_by_id(db, OrderReconciliation(store, engine), order_id)
    logger.info("Reconcile job for order %s finished (granted=%s)", order_id, granted)
    return granted


def process_order_reconcile_job(order_id: str) -> bool:
    """RQ worker entrypoint for order reconciliation jobs."""
    return asyncio.run(process_order_reconcile_job_async(order_id))
