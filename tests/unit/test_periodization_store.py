"""Unit tests for persisted periodization schedules."""

from datetime import date
from decimal import Decimal

import pytest

from ledger.periodization.service import create_periodization_schedule
from ledger.periodization.store import (
    StoredPeriodization,
    cancel_periodization,
    delete_periodization,
    get_periodization,
    get_periodizations_for_period,
    get_total_periodization_balance,
    list_periodizations,
    mark_entry_processed,
    save_periodization,
)
from ledger.storage.service import InMemoryKeyValueStore

COMPANY = "acme"


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    """Create empty in-memory store."""
    return InMemoryKeyValueStore()


@pytest.fixture
def saved(store: InMemoryKeyValueStore) -> StoredPeriodization:
    """Save a three-month insurance schedule."""
    schedule = create_periodization_schedule(
        3000, "6310", "1720", date(2024, 1, 1), date(2024, 3, 31)
    )
    return save_periodization(
        store, COMPANY, schedule, job_id="job-1", supplier_name="If", description="Försäkring Q1"
    )


class TestSaveAndGet:
    """Test schedule persistence."""

    def test_saved_as_active(
        self, store: InMemoryKeyValueStore, saved: StoredPeriodization
    ) -> None:
        """Should store new schedules as active with owner fields."""
        loaded = get_periodization(store, COMPANY, saved.id)

        assert loaded is not None
        assert loaded.status == "active"
        assert loaded.company_id == COMPANY
        assert loaded.job_id == "job-1"
        assert loaded.original_amount == Decimal("3000.00")
        assert len(loaded.entries) == 3

    def test_missing(self, store: InMemoryKeyValueStore) -> None:
        """Should return None for unknown schedules."""
        assert get_periodization(store, COMPANY, "period-missing") is None

    def test_tenant_isolation(
        self, store: InMemoryKeyValueStore, saved: StoredPeriodization
    ) -> None:
        """Should not expose schedules of another company."""
        assert get_periodization(store, "other", saved.id) is None
        assert list_periodizations(store, "other") == []

    def test_list_by_status(self, store: InMemoryKeyValueStore, saved: StoredPeriodization) -> None:
        """Should filter schedules by status."""
        cancel_periodization(store, COMPANY, saved.id)

        assert list_periodizations(store, COMPANY, status="active") == []
        assert [s.id for s in list_periodizations(store, COMPANY, status="cancelled")] == [saved.id]

    def test_limit_applies_after_status_filter(self, store: InMemoryKeyValueStore) -> None:
        """Should find active schedules stored after cancelled ones."""
        schedule = create_periodization_schedule(
            3000, "6310", "1720", date(2024, 1, 1), date(2024, 3, 31)
        )
        for schedule_id in ("period-a", "period-b", "period-c"):
            save_periodization(store, COMPANY, schedule.model_copy(update={"id": schedule_id}))
        cancel_periodization(store, COMPANY, "period-a")
        cancel_periodization(store, COMPANY, "period-b")

        active = list_periodizations(store, COMPANY, status="active", limit=1)

        assert [s.id for s in active] == ["period-c"]
        assert len(list_periodizations(store, COMPANY, limit=2)) == 2

    def test_delete(self, store: InMemoryKeyValueStore, saved: StoredPeriodization) -> None:
        """Should remove the schedule."""
        delete_periodization(store, COMPANY, saved.id)
        assert get_periodization(store, COMPANY, saved.id) is None


class TestProcessing:
    """Test monthly posting of entries."""

    def test_due_for_period(self, store: InMemoryKeyValueStore, saved: StoredPeriodization) -> None:
        """Should return the month's entry of active schedules."""
        due = get_periodizations_for_period(store, COMPANY, "2024-02")

        assert len(due) == 1
        assert due[0].schedule.id == saved.id
        assert due[0].entry.debit_amount == Decimal("1000.00")

    def test_processed_entry_not_due(
        self, store: InMemoryKeyValueStore, saved: StoredPeriodization
    ) -> None:
        """Should drop entries once processed."""
        updated = mark_entry_processed(store, COMPANY, saved.id, "2024-02")

        assert updated is not None
        assert updated.status == "active"
        assert get_periodizations_for_period(store, COMPANY, "2024-02") == []

    def test_completed_after_last_entry(
        self, store: InMemoryKeyValueStore, saved: StoredPeriodization
    ) -> None:
        """Should complete the schedule when every entry is processed."""
        for period in ("2024-01", "2024-02", "2024-03"):
            mark_entry_processed(store, COMPANY, saved.id, period)

        loaded = get_periodization(store, COMPANY, saved.id)
        assert loaded is not None
        assert loaded.status == "completed"
        assert all(e.is_processed for e in loaded.entries)

    def test_mark_missing_schedule(self, store: InMemoryKeyValueStore) -> None:
        """Should return None for unknown schedules."""
        assert mark_entry_processed(store, COMPANY, "period-missing", "2024-01") is None

    def test_cancelled_not_due(
        self, store: InMemoryKeyValueStore, saved: StoredPeriodization
    ) -> None:
        """Should ignore cancelled schedules."""
        cancel_periodization(store, COMPANY, saved.id)
        assert get_periodizations_for_period(store, COMPANY, "2024-01") == []


class TestBalance:
    """Test remaining balance aggregation."""

    def test_prepaid_and_accrued(
        self, store: InMemoryKeyValueStore, saved: StoredPeriodization
    ) -> None:
        """Should split remaining amounts by account class."""
        accrued = create_periodization_schedule(
            1200, "7010", "2910", date(2024, 1, 1), date(2024, 12, 31)
        )
        save_periodization(store, COMPANY, accrued)
        mark_entry_processed(store, COMPANY, saved.id, "2024-01")

        balance = get_total_periodization_balance(store, COMPANY)

        assert balance.prepaid_expenses == Decimal("2000.00")
        assert balance.accrued_expenses == Decimal("1200.00")
        assert balance.prepaid_income == Decimal("0")

    def test_inactive_schedules_excluded(
        self, store: InMemoryKeyValueStore, saved: StoredPeriodization
    ) -> None:
        """Should ignore cancelled schedules."""
        cancel_periodization(store, COMPANY, saved.id)
        assert get_total_periodization_balance(store, COMPANY).prepaid_expenses == Decimal("0")

    def test_non_numeric_account_skipped(
        self, store: InMemoryKeyValueStore, saved: StoredPeriodization
    ) -> None:
        """Should leave schedules with a non-numeric account out of the balance."""
        odd = create_periodization_schedule(
            600, "6310", "PREPAID", date(2024, 1, 1), date(2024, 6, 30)
        )
        save_periodization(store, COMPANY, odd)

        balance = get_total_periodization_balance(store, COMPANY)

        assert balance.prepaid_expenses == Decimal("3000.00")
        assert balance.accrued_expenses == Decimal("0")
