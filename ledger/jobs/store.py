"""Accounting job records in the key-value store."""

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from ledger.classification.schema import AccountingJob
from ledger.storage.service import KeyValueStore

logger = logging.getLogger(__name__)


def jobs_pk(company_id: str) -> str:
    return f"JOBS#{company_id}"


def save_job(store: KeyValueStore, job: AccountingJob) -> AccountingJob:
    """Create or replace a job record."""
    job = job.model_copy(update={"updated_at": datetime.now(UTC)})
    store.put_item(jobs_pk(job.company_id), job.job_id, job.model_dump(mode="json"))
    return job


def get_job(store: KeyValueStore, company_id: str, job_id: str) -> AccountingJob | None:
    item = store.get_item(jobs_pk(company_id), job_id)
    if not item:
        return None
    try:
        return AccountingJob.model_validate(item)
    except ValidationError:
        logger.warning(f"Incomplete job record {job_id} for company {company_id}")
        return None


def list_jobs(store: KeyValueStore, company_id: str) -> list[AccountingJob]:
    """All jobs of a company, ordered by job id.

    Partial records (a match back-reference written before the job itself)
    are skipped.
    """
    jobs = []
    for item in store.query(jobs_pk(company_id)):
        try:
            jobs.append(AccountingJob.model_validate(item))
        except ValidationError:
            logger.warning(f"Skipping incomplete job record {item.get('sk')}")
    return jobs


def update_job(store: KeyValueStore, company_id: str, job_id: str, updates: dict[str, Any]) -> None:
    """Set attributes on a job record without rewriting it."""
    store.update_item(
        jobs_pk(company_id),
        job_id,
        {**updates, "updated_at": datetime.now(UTC).isoformat()},
    )
