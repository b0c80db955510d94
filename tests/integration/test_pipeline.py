"""End-to-end tests of the bookkeeping engine.

The in-memory tests run everywhere. The DynamoDB tests require:
- APP_DYNAMODB_ENDPOINT_URL pointing at DynamoDB Local
  (docker run -p 8000:8000 amazon/dynamodb-local)

Use pytest -v -m integration to run only integration tests.
"""

import os
import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import boto3
import pytest

from ledger.classification.schema import Classification, DocumentType, LineItem
from ledger.jobs.store import get_job
from ledger.matching.service import (
    BankTransaction,
    MatchConfidence,
    get_unmatched_invoices,
    get_unmatched_transactions,
    save_transactions,
)
from ledger.periodization.service import create_periodization_schedule
from ledger.periodization.store import (
    get_periodizations_for_period,
    get_total_periodization_balance,
    mark_entry_processed,
    save_periodization,
)
from ledger.processing.service import process_classified_document
from ledger.rules.engine import FinalAction, create_default_rules, get_rules
from ledger.rules.triggers import TriggerCounter
from ledger.shared.config import Settings
from ledger.storage.service import DynamoDBKeyValueStore, InMemoryKeyValueStore, KeyValueStore
from ledger.suppliers.memory import record_transaction
from ledger.vat.reporting import generate_report, generate_skv_export

pytestmark = pytest.mark.integration

COMPANY = "acme"

TELIA_INVOICE = Classification(
    doc_type=DocumentType.INVOICE,
    supplier="Telia Sverige AB",
    invoice_number="INV-2024-1001",
    invoice_date=date(2024, 11, 24),
    total_amount=Decimal("1890.00"),
    vat_amount=Decimal("378.00"),
    line_items=(
        LineItem(
            description="Mobiltelefoni november",
            amount=Decimal("1890.00"),
            suggested_account="6212",
            suggested_account_name="Mobiltelefon",
        ),
    ),
    overall_confidence=0.97,
)

RECEIPT = Classification(
    doc_type=DocumentType.RECEIPT,
    supplier="Pressbyrån",
    invoice_date=date(2024, 11, 25),
    total_amount=Decimal("300"),
    vat_amount=Decimal("60"),
    line_items=(LineItem(description="Kaffe", amount=Decimal("300"), suggested_account="5460"),),
    overall_confidence=0.96,
)

LICENSE_INVOICE = Classification(
    doc_type=DocumentType.INVOICE,
    supplier="Fortnox AB",
    description="Årslicens jan 2025 - dec 2025",
    invoice_date=date(2024, 12, 20),
    total_amount=Decimal("15000"),
    vat_amount=Decimal("3000"),
    line_items=(
        LineItem(description="Årslicens", amount=Decimal("15000"), suggested_account="5420"),
    ),
    overall_confidence=0.9,
)

TRANSACTIONS = [
    BankTransaction(
        transaction_id="tx-telia",
        account_id="SE-1930",
        date=date(2024, 11, 26),
        amount=Decimal("-1890.00"),
        reference="INV-2024-1001",
        counterparty="TELIA SVERIGE",
    ),
    BankTransaction(
        transaction_id="tx-rent",
        account_id="SE-1930",
        date=date(2024, 11, 28),
        amount=Decimal("-25000.00"),
        description="Hyra december",
    ),
]


def _seed(store: KeyValueStore) -> None:
    create_default_rules(store, COMPANY)
    record_transaction(store, COMPANY, "Telia Sverige AB", "6212", "Mobiltelefon", Decimal("1890"))
    save_transactions(store, COMPANY, TRANSACTIONS)


@pytest.fixture
def settings() -> Settings:
    """Create settings for integration tests."""
    return Settings(storage_backend="memory")


@pytest.fixture
def store() -> KeyValueStore:
    """Create seeded in-memory store."""
    store = InMemoryKeyValueStore()
    _seed(store)
    return store


@pytest.fixture
def trigger_counter() -> Generator[TriggerCounter, None, None]:
    """Create real trigger counter and drain it afterwards."""
    counter = TriggerCounter(max_workers=1)
    yield counter
    counter.shutdown()


class TestMonthlyClose:
    """Process a month of documents and close the VAT period."""

    def test_documents_to_vat_return(
        self, store: KeyValueStore, settings: Settings, trigger_counter: TriggerCounter
    ) -> None:
        """Should approve, match and report a month of purchases."""
        telia = process_classified_document(
            store, COMPANY, "job-telia", TELIA_INVOICE, trigger_counter, settings
        )
        receipt = process_classified_document(
            store, COMPANY, "job-receipt", RECEIPT, trigger_counter, settings
        )
        trigger_counter.wait(timeout=5)

        assert telia.final_action == FinalAction.AUTO_APPROVE
        assert telia.bank_match is not None
        assert telia.bank_match.confidence == MatchConfidence.EXACT
        assert receipt.final_action == FinalAction.AUTO_APPROVE
        assert receipt.bank_match is not None
        assert receipt.bank_match.matched is False

        job = get_job(store, COMPANY, "job-telia")
        assert job is not None
        assert job.status == "approved"
        assert job.bank_match_id == "tx-telia"

        triggered = {rule.name: rule.trigger_count for rule in get_rules(store, COMPANY)}
        assert triggered["High confidence + known supplier"] == 1
        assert triggered["Small receipts"] == 1

        summary = generate_report(store, COMPANY, date(2024, 11, 1), date(2024, 11, 30))
        assert summary.input_vat.total == Decimal("438.00")
        assert summary.output_vat.total == Decimal("0")
        assert summary.net_vat == Decimal("-438.00")
        assert {entry.job_id for entry in summary.entries} == {"job-telia", "job-receipt"}

        export = generate_skv_export(summary, "556677-8899")
        assert export.box48_input_vat == 438
        assert export.box49_net_vat == -438

        assert [item.id for item in get_unmatched_invoices(store, COMPANY, date(2024, 12, 5))] == [
            "job-receipt"
        ]
        assert [
            item.id for item in get_unmatched_transactions(store, COMPANY, date(2024, 12, 5))
        ] == ["tx-rent"]

    def test_periodized_license(
        self, store: KeyValueStore, settings: Settings, trigger_counter: TriggerCounter
    ) -> None:
        """Should suggest, schedule and post a prepaid annual license."""
        result = process_classified_document(
            store, COMPANY, "job-license", LICENSE_INVOICE, trigger_counter, settings
        )

        detection = result.periodization
        assert detection is not None
        assert detection.should_periodize
        assert detection.periodization_account is not None
        assert detection.suggested_period is not None
        assert detection.suggested_period.months == 12
        assert result.final_action == FinalAction.MANUAL_REVIEW

        assert result.vat is not None
        schedule = create_periodization_schedule(
            result.vat.net_amount,
            "5420",
            detection.periodization_account.account,
            detection.suggested_period.start_date,
            detection.suggested_period.end_date,
        )
        saved = save_periodization(
            store, COMPANY, schedule, job_id="job-license", supplier_name="Fortnox AB"
        )

        (due,) = get_periodizations_for_period(store, COMPANY, "2025-01")
        assert due.schedule.id == saved.id
        assert due.entry.debit_amount == Decimal("1000.00")
        assert due.entry.credit_account == "1790"

        mark_entry_processed(store, COMPANY, saved.id, "2025-01")

        balance = get_total_periodization_balance(store, COMPANY)
        assert balance.prepaid_expenses == Decimal("11000.00")


@pytest.mark.skipif(
    not os.getenv("APP_DYNAMODB_ENDPOINT_URL"),
    reason="APP_DYNAMODB_ENDPOINT_URL not set - skipping DynamoDB integration tests",
)
class TestDynamoDBBackend:
    """Run the engine against DynamoDB Local."""

    @pytest.fixture
    def dynamo_store(self) -> Generator[DynamoDBKeyValueStore, None, None]:
        """Create a throwaway table and a store bound to it."""
        settings = Settings(
            storage_backend="dynamodb",
            dynamodb_table=f"ledger-test-{uuid.uuid4().hex[:8]}",
            dynamodb_endpoint_url=os.environ["APP_DYNAMODB_ENDPOINT_URL"],
        )
        resource = boto3.resource(
            "dynamodb",
            region_name=settings.aws_region,
            endpoint_url=settings.dynamodb_endpoint_url,
        )
        table = resource.create_table(
            TableName=settings.dynamodb_table,
            KeySchema=[
                {"AttributeName": "pk", "KeyType": "HASH"},
                {"AttributeName": "sk", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "pk", "AttributeType": "S"},
                {"AttributeName": "sk", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        table.wait_until_exists()

        yield DynamoDBKeyValueStore(settings)

        table.delete()

    def test_process_and_report(self, dynamo_store: DynamoDBKeyValueStore) -> None:
        """Should keep money exact through DynamoDB round trips."""
        _seed(dynamo_store)

        result = process_classified_document(
            dynamo_store, COMPANY, "job-telia", TELIA_INVOICE, MagicMock(spec=TriggerCounter)
        )

        assert result.final_action == FinalAction.AUTO_APPROVE
        summary = generate_report(dynamo_store, COMPANY, date(2024, 11, 1), date(2024, 11, 30))
        assert summary.input_vat.total == Decimal("378.00")
