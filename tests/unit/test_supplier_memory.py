"""Unit tests for supplier memory."""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from ledger.storage.service import InMemoryKeyValueStore, StorageError
from ledger.suppliers.memory import (
    find_similar_supplier,
    get_known_suppliers,
    get_supplier_profile,
    is_known_supplier,
    normalize_supplier_name,
    record_correction,
    record_transaction,
    suggest_account_from_history,
)

COMPANY = "acme"


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    """Create empty in-memory store."""
    return InMemoryKeyValueStore()


@pytest.fixture
def failing_store() -> MagicMock:
    """Create store whose reads fail."""
    store = MagicMock()
    store.get_item.side_effect = StorageError("table unavailable")
    store.query.side_effect = StorageError("table unavailable")
    return store


class TestNormalizeName:
    """Test supplier name normalization."""

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("Vasakronan AB", "vasakronan"),
            ("Acme, Inc.", "acme"),
            ("Siemens GmbH", "siemens"),
            ("Åre Bygg AB", "årebygg"),
            ("  Telia   Sverige ", "teliasverige"),
            ("", ""),
        ],
    )
    def test_normalize(self, name: str, expected: str) -> None:
        """Should collapse names to comparison keys."""
        assert normalize_supplier_name(name) == expected


class TestRecordTransaction:
    """Test learning from bookings."""

    def test_creates_profile(self, store: InMemoryKeyValueStore) -> None:
        """Should create a profile on first booking."""
        profile = record_transaction(
            store, COMPANY, "Telia Sverige AB", "6212", "Telefon", Decimal("499")
        )

        assert profile.normalized_name == "teliasverige"
        assert profile.default_account == "6212"
        assert profile.total_transactions == 1
        assert is_known_supplier(store, COMPANY, "TELIA SVERIGE AB")

    def test_default_follows_most_used_account(self, store: InMemoryKeyValueStore) -> None:
        """Should switch the default to the most used account."""
        record_transaction(
            store, COMPANY, "Dustin", "5410", "Förbrukningsinventarier", Decimal("100")
        )
        record_transaction(store, COMPANY, "Dustin", "6250", "IT-tjänster", Decimal("200"))
        profile = record_transaction(
            store, COMPANY, "Dustin", "6250", "IT-tjänster", Decimal("300")
        )

        assert profile.default_account == "6250"
        assert profile.total_transactions == 3
        assert profile.total_amount == Decimal("600")
        assert profile.average_amount == Decimal("200")
        assert [a.count for a in profile.account_history] == [2, 1]

    def test_tenant_isolation(self, store: InMemoryKeyValueStore) -> None:
        """Should keep suppliers per company."""
        record_transaction(store, COMPANY, "Dustin", "5410", "Inventarier", Decimal("100"))
        assert is_known_supplier(store, "other", "Dustin") is False


class TestRecordCorrection:
    """Test learning from corrections."""

    def test_unknown_supplier(self, store: InMemoryKeyValueStore) -> None:
        """Should ignore corrections for unknown suppliers."""
        assert record_correction(store, COMPANY, "Nobody", "4010", "6250", "IT") is None

    def test_correction_outweighs_booking(self, store: InMemoryKeyValueStore) -> None:
        """Should make the corrected account the default."""
        record_transaction(store, COMPANY, "Dustin", "4010", "Inköp", Decimal("100"))

        profile = record_correction(store, COMPANY, "Dustin", "4010", "6250", "IT-tjänster")

        assert profile is not None
        assert profile.default_account == "6250"
        assert profile.account_history[0].count == 2


class TestSuggestions:
    """Test account suggestions and lookups."""

    def test_suggestion_confidence(self, store: InMemoryKeyValueStore) -> None:
        """Should scale confidence with the top account's share."""
        for account in ("6110", "6110", "6110", "6250"):
            record_transaction(store, COMPANY, "Staples", account, "Kontor", Decimal("10"))

        suggestion = suggest_account_from_history(store, COMPANY, "Staples")

        assert suggestion is not None
        assert suggestion.account == "6110"
        assert suggestion.usage_count == 3
        assert suggestion.source == "supplier_history"
        assert suggestion.confidence == pytest.approx(0.8875)

    def test_single_account_capped(self, store: InMemoryKeyValueStore) -> None:
        """Should cap confidence at 0.95."""
        record_transaction(store, COMPANY, "Staples", "6110", "Kontor", Decimal("10"))

        suggestion = suggest_account_from_history(store, COMPANY, "Staples")

        assert suggestion is not None
        assert suggestion.confidence == pytest.approx(0.95)

    def test_no_history(self, store: InMemoryKeyValueStore) -> None:
        """Should return None for unknown suppliers."""
        assert suggest_account_from_history(store, COMPANY, "Nobody") is None

    def test_storage_failure_means_unknown(self, failing_store: MagicMock) -> None:
        """Should treat storage failures as an unknown supplier."""
        assert get_supplier_profile(failing_store, COMPANY, "Dustin") is None
        assert is_known_supplier(failing_store, COMPANY, "Dustin") is False
        assert get_known_suppliers(failing_store, COMPANY) == []


class TestFindSimilar:
    """Test fuzzy supplier lookup."""

    @pytest.fixture(autouse=True)
    def _suppliers(self, store: InMemoryKeyValueStore) -> None:
        record_transaction(store, COMPANY, "Telia Sverige AB", "6212", "Telefon", Decimal("499"))
        record_transaction(store, COMPANY, "Vasakronan AB", "5010", "Lokalhyra", Decimal("15000"))

    def test_exact(self, store: InMemoryKeyValueStore) -> None:
        """Should match equal normalized names."""
        supplier = find_similar_supplier(store, COMPANY, "vasakronan")
        assert supplier is not None
        assert supplier.supplier_name == "Vasakronan AB"

    def test_substring(self, store: InMemoryKeyValueStore) -> None:
        """Should match when one name contains the other."""
        supplier = find_similar_supplier(store, COMPANY, "Telia")
        assert supplier is not None
        assert supplier.normalized_name == "teliasverige"

    def test_typo(self, store: InMemoryKeyValueStore) -> None:
        """Should tolerate small typos in short names."""
        supplier = find_similar_supplier(store, COMPANY, "Vasakrnan AB")
        assert supplier is not None
        assert supplier.normalized_name == "vasakronan"

    def test_no_match(self, store: InMemoryKeyValueStore) -> None:
        """Should return None for unrelated names."""
        assert find_similar_supplier(store, COMPANY, "Microsoft") is None
