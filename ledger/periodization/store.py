"""Persisted periodization schedules, one partition per company."""

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel

from ledger.periodization.service import PeriodizationEntry, PeriodizationSchedule
from ledger.storage.service import KeyValueStore

logger = logging.getLogger(__name__)

ScheduleStatus = Literal["active", "completed", "cancelled"]

SCHEDULE_PREFIX = "SCHEDULE#"


class StoredPeriodization(PeriodizationSchedule):
    """A schedule together with its owner and lifecycle status."""

    company_id: str
    job_id: str | None = None
    supplier_name: str | None = None
    description: str | None = None
    status: ScheduleStatus = "active"
    created_at: datetime
    updated_at: datetime


class DuePeriodization(BaseModel):
    schedule: StoredPeriodization
    entry: PeriodizationEntry


class PeriodizationBalance(BaseModel):
    """Remaining unposted amounts across active schedules."""

    prepaid_expenses: Decimal = Decimal("0")
    accrued_expenses: Decimal = Decimal("0")
    prepaid_income: Decimal = Decimal("0")
    accrued_income: Decimal = Decimal("0")


def periodization_pk(company_id: str) -> str:
    return f"PERIODIZATION#{company_id}"


def schedule_sk(schedule_id: str) -> str:
    return f"{SCHEDULE_PREFIX}{schedule_id}"


def save_periodization(
    store: KeyValueStore,
    company_id: str,
    schedule: PeriodizationSchedule,
    job_id: str | None = None,
    supplier_name: str | None = None,
    description: str | None = None,
) -> StoredPeriodization:
    """Persist an accepted schedule as ``active``."""
    now = datetime.now(UTC)
    stored = StoredPeriodization(
        **schedule.model_dump(),
        company_id=company_id,
        job_id=job_id,
        supplier_name=supplier_name,
        description=description,
        created_at=now,
        updated_at=now,
    )
    store.put_item(
        periodization_pk(company_id), schedule_sk(schedule.id), stored.model_dump(mode="json")
    )
    logger.info(
        f"Saved periodization {schedule.id} for {company_id}: "
        f"{schedule.original_amount} over {schedule.total_months} months"
    )
    return stored


def get_periodization(
    store: KeyValueStore, company_id: str, schedule_id: str
) -> StoredPeriodization | None:
    item = store.get_item(periodization_pk(company_id), schedule_sk(schedule_id))
    return StoredPeriodization.model_validate(item) if item else None


def list_periodizations(
    store: KeyValueStore,
    company_id: str,
    status: ScheduleStatus | None = None,
    limit: int | None = None,
) -> list[StoredPeriodization]:
    """Stored schedules, filtered by status before ``limit`` is applied."""
    items = store.query(periodization_pk(company_id), sk_prefix=SCHEDULE_PREFIX)
    schedules = [StoredPeriodization.model_validate(item) for item in items]
    if status:
        schedules = [s for s in schedules if s.status == status]
    return schedules[:limit]


def get_periodizations_for_period(
    store: KeyValueStore, company_id: str, period: str
) -> list[DuePeriodization]:
    """Unprocessed entries of active schedules for a ``YYYY-MM`` month."""
    results = []
    for schedule in list_periodizations(store, company_id, status="active"):
        entry = next(
            (e for e in schedule.entries if e.period == period and not e.is_processed), None
        )
        if entry:
            results.append(DuePeriodization(schedule=schedule, entry=entry))
    return results


def mark_entry_processed(
    store: KeyValueStore, company_id: str, schedule_id: str, period: str
) -> StoredPeriodization | None:
    """Flip one month's entry to processed.

    The schedule becomes ``completed`` once every entry is processed.

    Returns:
        The updated schedule, or None if it does not exist
    """
    schedule = get_periodization(store, company_id, schedule_id)
    if schedule is None:
        return None

    entries = [
        e.model_copy(update={"is_processed": True}) if e.period == period else e
        for e in schedule.entries
    ]
    status: ScheduleStatus = "completed" if all(e.is_processed for e in entries) else "active"
    updated = schedule.model_copy(
        update={"entries": entries, "status": status, "updated_at": datetime.now(UTC)}
    )

    dumped = updated.model_dump(mode="json")
    store.update_item(
        periodization_pk(company_id),
        schedule_sk(schedule_id),
        {"entries": dumped["entries"], "status": status, "updated_at": dumped["updated_at"]},
    )
    return updated


def cancel_periodization(store: KeyValueStore, company_id: str, schedule_id: str) -> None:
    store.update_item(
        periodization_pk(company_id),
        schedule_sk(schedule_id),
        {"status": "cancelled", "updated_at": datetime.now(UTC).isoformat()},
    )
    logger.info(f"Cancelled periodization {schedule_id} for {company_id}")


def delete_periodization(store: KeyValueStore, company_id: str, schedule_id: str) -> None:
    store.delete_item(periodization_pk(company_id), schedule_sk(schedule_id))


def get_total_periodization_balance(store: KeyValueStore, company_id: str) -> PeriodizationBalance:
    """Sum unprocessed amounts of active schedules by account class.

    17xx accounts count as prepaid expenses and 29xx as accrued expenses.
    """
    balance = PeriodizationBalance()

    for schedule in list_periodizations(store, company_id, status="active"):
        remaining = sum(
            (e.debit_amount for e in schedule.entries if not e.is_processed), Decimal("0")
        )
        if not schedule.periodization_account.isdigit():
            logger.warning(
                f"Schedule {schedule.id} has non-numeric account "
                f"{schedule.periodization_account}, left out of the balance"
            )
            continue
        account = int(schedule.periodization_account)
        if 1700 <= account < 1800:
            balance.prepaid_expenses += remaining
        elif 2900 <= account < 3000:
            balance.accrued_expenses += remaining

    return balance
