"""Background tasks for the bookkeeping engine.

Uses arq (async Redis queue) to process classified documents and to post
monthly periodization entries outside the request cycle.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from ledger.classification.schema import Classification
from ledger.periodization.store import get_periodizations_for_period, mark_entry_processed
from ledger.processing.service import process_classified_document
from ledger.rules.triggers import TriggerCounter
from ledger.shared.config import Settings, get_settings
from ledger.storage.factory import create_store
from ledger.storage.service import KeyValueStore

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = 86400


class JobResult(BaseModel):
    """Status of a background job as stored in Redis.

    Attributes:
        job_id: Accounting job identifier
        company_id: Owning company
        status: Job status (processing, completed, failed)
        final_action: Workflow disposition (if completed)
        job_status: Resulting accounting job status (if completed)
        errors: Failed pipeline steps
        error: Error message (if failed)
        created_at: Job start timestamp
        completed_at: Job completion timestamp
    """

    job_id: str
    company_id: str
    status: str
    final_action: str | None = None
    job_status: str | None = None
    errors: list[str] = []
    error: str | None = None
    created_at: str
    completed_at: str | None = None


def _now() -> str:
    return datetime.now(UTC).isoformat()


async def process_document(
    ctx: dict[str, Any],
    company_id: str,
    job_id: str,
    classification: dict[str, Any],
) -> dict[str, Any]:
    """Run a classified document through the processing pipeline.

    Args:
        ctx: arq context (contains redis connection)
        company_id: Owning company
        job_id: Accounting job identifier
        classification: Classification as JSON-compatible dict

    Returns:
        JobResult as dict
    """
    logger.info(f"Processing document job {job_id} for company {company_id}")

    settings: Settings = ctx.get("settings") or get_settings()
    store: KeyValueStore = ctx.get("store") or create_store(settings)
    trigger_counter: TriggerCounter | None = ctx.get("trigger_counter")
    redis = ctx["redis"]

    result = JobResult(
        job_id=job_id, company_id=company_id, status="processing", created_at=_now()
    )
    await redis.set(f"job:{job_id}", result.model_dump_json(), ex=JOB_TTL_SECONDS)

    try:
        processed = process_classified_document(
            store,
            company_id,
            job_id,
            Classification.model_validate(classification),
            trigger_counter,
            settings,
        )
        result.status = "completed"
        result.final_action = processed.final_action.value
        result.job_status = processed.status
        result.errors = processed.errors
    except Exception as e:
        logger.exception(f"Job {job_id} failed with error: {e}")
        result.status = "failed"
        result.error = str(e)

    result.completed_at = _now()
    await redis.set(f"job:{job_id}", result.model_dump_json(), ex=JOB_TTL_SECONDS)
    logger.info(f"Job {job_id} completed with status: {result.status}")

    return result.model_dump()


async def post_due_periodizations(
    ctx: dict[str, Any], company_id: str, period: str
) -> dict[str, Any]:
    """Mark every due periodization entry of a ``YYYY-MM`` month as processed.

    Returns:
        Number of entries posted and the schedules they belong to
    """
    settings: Settings = ctx.get("settings") or get_settings()
    store: KeyValueStore = ctx.get("store") or create_store(settings)

    due = get_periodizations_for_period(store, company_id, period)
    posted = []
    for item in due:
        mark_entry_processed(store, company_id, item.schedule.id, period)
        posted.append(item.schedule.id)

    logger.info(f"Posted {len(posted)} periodization entries for {company_id} {period}")
    return {"company_id": company_id, "period": period, "posted": len(posted), "schedules": posted}


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - initialize shared services."""
    logger.info("Initializing worker services...")
    settings = get_settings()
    ctx["settings"] = settings
    ctx["store"] = create_store(settings)
    ctx["trigger_counter"] = TriggerCounter(max_workers=settings.trigger_counter_workers)
    logger.info(f"Worker services initialized (storage: {settings.storage_backend})")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - drain pending trigger count updates."""
    logger.info("Worker shutting down...")
    trigger_counter: TriggerCounter | None = ctx.get("trigger_counter")
    if trigger_counter is not None:
        trigger_counter.wait(timeout=10)
        trigger_counter.shutdown()


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - Redis connection settings
    - Job timeout settings
    """

    functions = [process_document, post_due_periodizations]
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings = None
    max_jobs = 10
    job_timeout = 300

    @classmethod
    def get_redis_settings(cls) -> Any:
        """Get Redis settings from configuration."""
        from arq.connections import RedisSettings

        return RedisSettings.from_dsn(get_settings().redis_url)
