"""Unit tests for the rules engine API.

Tests cover:
- Health check endpoints
- VAT calculation, validation and reporting
- Periodization detection and schedules
- Rule management and evaluation
- Bank import and matching
- Document processing and queueing
- Prometheus metrics endpoint
"""

from collections.abc import Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from ledger.api import main
from ledger.api.main import app
from ledger.storage.service import InMemoryKeyValueStore, StorageError

COMPANY = "acme"

RECEIPT: dict[str, Any] = {
    "doc_type": "RECEIPT",
    "supplier": "Pressbyrån",
    "invoice_date": "2024-11-24",
    "total_amount": "300",
    "vat_amount": "60",
    "line_items": [{"description": "Kaffe", "amount": "300", "suggested_account": "5460"}],
    "overall_confidence": 0.96,
}


@pytest.fixture
def store() -> Generator[InMemoryKeyValueStore, None, None]:
    """Swap the API store for a fresh in-memory store."""
    memory_store = InMemoryKeyValueStore()
    with patch("ledger.api.main.store", memory_store), patch(
        "ledger.api.main.trigger_counter", MagicMock()
    ):
        yield memory_store


@pytest.fixture
def client(store: InMemoryKeyValueStore) -> TestClient:
    """Create test client."""
    return TestClient(app)


class TestHealth:
    """Test health endpoints."""

    def test_health_check(self, client: TestClient) -> None:
        """Should report service health."""
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "ledger-rules-engine"
        assert "version" in data

    def test_readiness_check(self, client: TestClient) -> None:
        """Should be ready with the in-memory store."""
        response = client.get("/ready")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["ready"] is True

    def test_metrics_endpoint(self, client: TestClient) -> None:
        """Should expose Prometheus metrics."""
        client.post("/api/v1/vat/calculate", json={"amount": 1250, "description": "Kontor"})

        response = client.get("/metrics")

        assert response.status_code == status.HTTP_200_OK
        assert "text/plain" in response.headers["content-type"]
        assert "vat_calculations_total" in response.text
        assert "http_requests_total" in response.text


class TestVatEndpoints:
    """Test VAT endpoints."""

    def test_calculate(self, client: TestClient) -> None:
        """Should split a gross amount and emit voucher lines."""
        response = client.post(
            "/api/v1/vat/calculate",
            json={
                "amount": 1250,
                "description": "Kontorshyra november",
                "supplier": "Vasakronan AB",
                "cost_account": "5010",
            },
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["calculation"]["net_amount"] == "1000.00"
        assert data["calculation"]["vat_amount"] == "250.00"
        assert data["calculation"]["is_reverse_charge"] is False
        assert [line["account"] for line in data["voucher_lines"]] == ["5010", "2641"]

    def test_calculate_reverse_charge(self, client: TestClient) -> None:
        """Should return reverse-charge legs."""
        response = client.post(
            "/api/v1/vat/calculate",
            json={
                "amount": 10000,
                "is_gross": False,
                "description": "Cloud subscription service",
                "supplier": "Acme GmbH",
                "supplier_country": "Germany",
            },
        )

        data = response.json()["calculation"]
        assert data["is_reverse_charge"] is True
        assert data["vat_amount"] == "0.00"
        assert [line["account"] for line in data["additional_lines"]] == ["2645", "2614"]

    def test_validate(self, client: TestClient) -> None:
        """Should validate a stated VAT amount."""
        response = client.post(
            "/api/v1/vat/validate", json={"net_amount": 1000, "vat_amount": 180}
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["is_valid"] is False
        assert data["suggested_rate"] == "REDUCED"

    def test_report_rejects_reversed_period(self, client: TestClient) -> None:
        """Should reject an end date before the start date."""
        response = client.get(
            f"/api/v1/companies/{COMPANY}/vat/report",
            params={"start": "2024-11-30", "end": "2024-11-01"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_skv_xml(self, client: TestClient) -> None:
        """Should render the VAT return as XML."""
        client.post(f"/api/v1/companies/{COMPANY}/documents/job-1/process", json=RECEIPT)

        response = client.get(
            f"/api/v1/companies/{COMPANY}/vat/skv",
            params={
                "start": "2024-11-01",
                "end": "2024-11-30",
                "organisation_number": "556677-8899",
                "format": "xml",
            },
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("application/xml")
        assert "<Period>202411</Period>" in response.text

    def test_skv_json(self, client: TestClient) -> None:
        """Should return the VAT return boxes as JSON by default."""
        response = client.get(
            f"/api/v1/companies/{COMPANY}/vat/skv",
            params={"start": "2024-11-01", "end": "2024-11-30", "organisation_number": "5566"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["box49_net_vat"] == 0


class TestPeriodizationEndpoints:
    """Test periodization endpoints."""

    def test_detect(self, client: TestClient) -> None:
        """Should detect a yearly license."""
        response = client.post(
            "/api/v1/periodization/detect",
            json={
                "description": "Årslicens jan 2024 - dec 2024",
                "amount": 12000,
                "invoice_date": "2024-01-05",
            },
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["should_periodize"] is True
        assert data["suggested_period"]["months"] == 12

    def test_schedule_lifecycle(self, client: TestClient) -> None:
        """Should create, list, process and cancel a schedule."""
        base = f"/api/v1/companies/{COMPANY}/periodizations"
        response = client.post(
            base,
            json={
                "amount": 12000,
                "cost_account": "5010",
                "start_date": "2024-01-01",
                "end_date": "2024-12-31",
            },
        )
        assert response.status_code == status.HTTP_201_CREATED
        schedule = response.json()
        assert schedule["periodization_account"] == "1710"
        assert len(schedule["entries"]) == 12

        due = client.get(f"{base}/due", params={"period": "2024-01"}).json()
        assert [d["schedule"]["id"] for d in due] == [schedule["id"]]

        processed = client.post(f"{base}/{schedule['id']}/entries/2024-01/processed")
        assert processed.json()["entries"][0]["is_processed"] is True

        balance = client.get(f"{base}/balance").json()
        assert balance["prepaid_expenses"] == "11000.00"

        assert client.post(f"{base}/{schedule['id']}/cancel").status_code == 204
        assert client.get(base, params={"status": "active"}).json() == []

    def test_missing_schedule(self, client: TestClient) -> None:
        """Should return 404 for unknown schedules."""
        base = f"/api/v1/companies/{COMPANY}/periodizations"

        assert client.get(f"{base}/period-missing").status_code == 404
        assert client.post(f"{base}/period-missing/cancel").status_code == 404

    def test_invalid_due_period(self, client: TestClient) -> None:
        """Should validate the period format."""
        response = client.get(
            f"/api/v1/companies/{COMPANY}/periodizations/due", params={"period": "2024-1"}
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    @pytest.mark.parametrize(
        "accounts",
        [{"cost_account": "COST"}, {"cost_account": "5010", "periodization_account": "PREPAID"}],
    )
    def test_non_bas_account_rejected(self, client: TestClient, accounts: dict[str, str]) -> None:
        """Should reject accounts that are not four-digit BAS numbers."""
        response = client.post(
            f"/api/v1/companies/{COMPANY}/periodizations",
            json={"amount": 1200, "start_date": "2024-01-01", "end_date": "2024-12-31", **accounts},
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestRuleEndpoints:
    """Test rule endpoints."""

    def test_defaults_and_evaluate(self, client: TestClient) -> None:
        """Should seed default rules and evaluate a document."""
        base = f"/api/v1/companies/{COMPANY}/rules"
        assert len(client.post(f"{base}/defaults").json()) == 5

        response = client.post(f"{base}/evaluate", json={"classification": RECEIPT})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["final_action"] == "auto_approve"
        assert len(data["matched_rules"]) == 5

    def test_confidence_override(self, client: TestClient) -> None:
        """Should use an explicit confidence when given."""
        base = f"/api/v1/companies/{COMPANY}/rules"
        client.post(f"{base}/defaults")

        response = client.post(
            f"{base}/evaluate", json={"classification": RECEIPT, "overall_confidence": 0.5}
        )

        assert response.json()["final_action"] == "flag_for_review"

    def test_create_update_delete(self, client: TestClient) -> None:
        """Should manage a custom rule."""
        base = f"/api/v1/companies/{COMPANY}/rules"
        created = client.post(
            base,
            json={
                "name": "Telia",
                "type": "supplier_whitelist",
                "priority": 4,
                "conditions": {"supplier_exact": ["Telia"]},
                "action": "auto_approve",
            },
        )
        assert created.status_code == status.HTTP_201_CREATED
        rule_id = created.json()["rule_id"]

        updated = client.patch(f"{base}/{rule_id}", json={"enabled": False})
        assert updated.json()["enabled"] is False
        assert updated.json()["priority"] == 4

        assert client.delete(f"{base}/{rule_id}").status_code == 204
        assert client.get(base).json() == []

    def test_update_missing(self, client: TestClient) -> None:
        """Should return 404 for unknown rules."""
        response = client.patch(
            f"/api/v1/companies/{COMPANY}/rules/rule-missing", json={"priority": 1}
        )
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestBankEndpoints:
    """Test bank endpoints."""

    def test_import_and_match(self, client: TestClient) -> None:
        """Should import transactions and match an invoice."""
        base = f"/api/v1/companies/{COMPANY}/bank"
        imported = client.post(
            f"{base}/transactions",
            json=[
                {
                    "transaction_id": "tx-1",
                    "account_id": "SE-1930",
                    "date": "2024-11-26",
                    "amount": "-1890.00",
                    "reference": "INV-2024-1001",
                }
            ],
        )
        assert imported.json() == {"imported": 1}

        response = client.post(
            f"{base}/match",
            json={
                "job_id": "job-1",
                "classification": {
                    "supplier": "Telia",
                    "invoice_number": "INV-2024-1001",
                    "invoice_date": "2024-11-24",
                    "total_amount": "1890.00",
                },
            },
        )

        data = response.json()
        assert data["matched"] is True
        assert data["confidence"] == "exact"
        assert data["match_score"] == 95

        unmatched = client.get(f"{base}/unmatched", params={"today": "2024-12-01"}).json()
        assert unmatched["transactions"] == []

    def test_manual_match_unknown(self, client: TestClient) -> None:
        """Should return 404 for unknown transactions."""
        response = client.post(
            f"/api/v1/companies/{COMPANY}/bank/manual-match",
            json={"job_id": "job-1", "transaction_id": "tx-missing"},
        )
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestDocumentEndpoints:
    """Test document processing endpoints."""

    def test_process(self, client: TestClient) -> None:
        """Should process a document synchronously."""
        client.post(f"/api/v1/companies/{COMPANY}/rules/defaults")

        response = client.post(f"/api/v1/companies/{COMPANY}/documents/job-1/process", json=RECEIPT)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["job_id"] == "job-1"
        assert data["status"] == "approved"
        assert data["final_action"] == "auto_approve"
        assert data["errors"] == []

    def test_enqueue_disabled(self, client: TestClient) -> None:
        """Should refuse queueing when the worker is disabled."""
        response = client.post(f"/api/v1/companies/{COMPANY}/documents/job-1/enqueue", json=RECEIPT)
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    def test_enqueue(self, client: TestClient) -> None:
        """Should enqueue the document for the worker."""
        mock_redis = AsyncMock()
        with (
            patch.object(main.settings, "queue_enabled", True),
            patch("ledger.api.main.create_pool", new_callable=AsyncMock) as mock_create_pool,
        ):
            mock_create_pool.return_value = mock_redis
            response = client.post(
                f"/api/v1/companies/{COMPANY}/documents/job-1/enqueue", json=RECEIPT
            )

        assert response.status_code == status.HTTP_202_ACCEPTED
        assert response.json() == {"job_id": "job-1", "status": "queued"}
        args = mock_redis.enqueue_job.call_args
        assert args.args[:3] == ("process_document", COMPANY, "job-1")
        assert args.kwargs["_job_id"] == f"process:{COMPANY}:job-1"
        mock_redis.close.assert_awaited_once()


def test_storage_failure_returns_503(client: TestClient) -> None:
    """Test that storage failures surface as 503."""
    failing = MagicMock()
    failing.query.side_effect = StorageError("down")
    with patch("ledger.api.main.store", failing):
        response = client.get(f"/api/v1/companies/{COMPANY}/periodizations")

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json() == {"detail": "Storage backend unavailable"}
