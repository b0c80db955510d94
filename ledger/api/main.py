"""FastAPI application for the bookkeeping rules engine.

Exposes:
- Health and readiness checks for Kubernetes
- VAT calculation, validation and reporting
- Periodization detection and schedules
- Approval rule management and evaluation
- Bank transaction import and matching
- Document processing, synchronous or through the background worker
- Prometheus metrics for monitoring
"""

import logging
import time
from datetime import date
from decimal import Decimal
from typing import Any, Literal

from arq import create_pool
from fastapi import FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ledger.api import metrics
from ledger.classification.schema import Classification
from ledger.matching.service import (
    BankTransaction,
    MatchResult,
    UnmatchedItem,
    get_unmatched_invoices,
    get_unmatched_transactions,
    manual_match,
    match_invoice_to_transaction,
    save_transactions,
)
from ledger.periodization.service import (
    PeriodizationDetection,
    create_periodization_schedule,
    detect_periodization_need,
    suggest_periodization_account,
)
from ledger.periodization.store import (
    DuePeriodization,
    PeriodizationBalance,
    ScheduleStatus,
    StoredPeriodization,
    cancel_periodization,
    get_periodization,
    get_periodizations_for_period,
    get_total_periodization_balance,
    list_periodizations,
    mark_entry_processed,
    save_periodization,
)
from ledger.processing.service import ProcessingResult, process_classified_document
from ledger.queue.tasks import WorkerSettings
from ledger.rules.engine import (
    ApprovalRule,
    RuleAction,
    RuleConditions,
    RuleDefinition,
    RuleEvaluationResult,
    RuleType,
    add_rule,
    create_default_rules,
    delete_rule,
    evaluate_rules,
    get_rules,
    update_rule,
)
from ledger.rules.triggers import TriggerCounter
from ledger.shared.config import get_settings
from ledger.storage.factory import create_store
from ledger.storage.service import StorageError
from ledger.vat.calculator import (
    VatCalculation,
    VatValidation,
    VoucherLine,
    calculate_complete_vat,
    generate_vat_voucher_lines,
    validate_vat_amount,
)
from ledger.vat.reporting import (
    ReportingPeriodType,
    SkvExportData,
    VatSummary,
    generate_report,
    generate_skv_export,
    generate_xml,
)

logger = logging.getLogger(__name__)

BAS_ACCOUNT_PATTERN = r"^\d{4}$"

settings = get_settings()
app = FastAPI(
    title="Ledger Rules Engine",
    description="Swedish VAT, periodization, auto-approval and bank matching engine",
    version=settings.service_version,
)

store = create_store(settings)
trigger_counter = TriggerCounter(max_workers=settings.trigger_counter_workers)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Record request count and duration per endpoint."""
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Storage backend unavailable"},
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool


class VatCalculateRequest(BaseModel):
    amount: Decimal
    is_gross: bool = True
    description: str = ""
    supplier: str | None = None
    supplier_country: str | None = None
    explicit_vat_rate: Decimal | None = None
    cost_account: str | None = Field(None, description="Emit voucher lines for this cost account")


class VatCalculateResponse(BaseModel):
    calculation: VatCalculation
    voucher_lines: list[VoucherLine] = Field(default_factory=list)


class VatValidateRequest(BaseModel):
    net_amount: Decimal
    vat_amount: Decimal
    gross_amount: Decimal | None = None
    tolerance: Decimal | None = None


class PeriodizationDetectRequest(BaseModel):
    description: str
    amount: Decimal
    invoice_date: date
    due_date: date | None = None
    supplier_name: str | None = None


class ScheduleRequest(BaseModel):
    amount: Decimal
    cost_account: str = Field(..., pattern=BAS_ACCOUNT_PATTERN, description="BAS cost account")
    periodization_account: str | None = Field(
        None,
        pattern=BAS_ACCOUNT_PATTERN,
        description="Defaults to the account paired with the cost account",
    )
    start_date: date
    end_date: date
    job_id: str | None = None
    supplier_name: str | None = None
    description: str | None = None


class RuleUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    type: RuleType | None = None
    enabled: bool | None = None
    priority: int | None = None
    conditions: RuleConditions | None = None
    action: RuleAction | None = None


class EvaluateRequest(BaseModel):
    classification: Classification
    overall_confidence: float | None = Field(
        None, description="Defaults to the classification's confidence", ge=0, le=1
    )


class ImportResponse(BaseModel):
    imported: int


class MatchRequest(BaseModel):
    job_id: str
    classification: Classification


class ManualMatchRequest(BaseModel):
    job_id: str
    transaction_id: str


class UnmatchedResponse(BaseModel):
    invoices: list[UnmatchedItem]
    transactions: list[UnmatchedItem]


class EnqueueResponse(BaseModel):
    job_id: str
    status: str


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint; not ready without a usable store."""
    return ReadinessResponse(ready=store.is_available())


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint."""
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


# VAT


@app.post("/api/v1/vat/calculate", response_model=VatCalculateResponse, tags=["VAT"])
def calculate_vat(request: VatCalculateRequest) -> VatCalculateResponse:
    """Calculate the VAT treatment of an amount.

    Detects the rate and reverse charge from the description, supplier and
    supplier country. With ``cost_account`` set, the purchase voucher lines
    are returned as well.
    """
    calculation = calculate_complete_vat(
        request.amount,
        request.is_gross,
        request.description,
        request.supplier,
        request.supplier_country,
        request.explicit_vat_rate,
    )
    rc_type = calculation.reverse_charge_type
    regime = rc_type.value if rc_type else "domestic"
    metrics.vat_calculations_total.labels(regime=regime).inc()

    voucher_lines = []
    if request.cost_account:
        voucher_lines = generate_vat_voucher_lines(calculation, request.cost_account)

    return VatCalculateResponse(calculation=calculation, voucher_lines=voucher_lines)


@app.post("/api/v1/vat/validate", response_model=VatValidation, tags=["VAT"])
def validate_vat(request: VatValidateRequest) -> VatValidation:
    tolerance = (
        request.tolerance if request.tolerance is not None else settings.vat_validation_tolerance
    )
    return validate_vat_amount(
        request.net_amount, request.vat_amount, request.gross_amount, tolerance
    )


@app.get(
    "/api/v1/companies/{company_id}/vat/report", response_model=VatSummary, tags=["VAT"]
)
def vat_report(
    company_id: str,
    start: date = Query(..., description="First day of the period"),
    end: date = Query(..., description="Last day of the period"),
    period_type: ReportingPeriodType = Query("monthly"),
) -> VatSummary:
    if end < start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end before start")
    return generate_report(store, company_id, start, end, period_type)


@app.get("/api/v1/companies/{company_id}/vat/skv", tags=["VAT"])
def vat_skv_export(
    company_id: str,
    start: date = Query(...),
    end: date = Query(...),
    organisation_number: str = Query(..., description="Company organisation number"),
    output_format: Literal["json", "xml"] = Query("json", alias="format"),
) -> Any:
    """Skatteverket VAT return for a period, as JSON boxes or XML."""
    if end < start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end before start")
    summary = generate_report(store, company_id, start, end)
    data: SkvExportData = generate_skv_export(summary, organisation_number)
    if output_format == "xml":
        return Response(content=generate_xml(data), media_type="application/xml")
    return data


# Periodization


@app.post(
    "/api/v1/periodization/detect", response_model=PeriodizationDetection, tags=["Periodization"]
)
def detect_periodization(request: PeriodizationDetectRequest) -> PeriodizationDetection:
    detection = detect_periodization_need(
        request.description,
        request.amount,
        request.invoice_date,
        request.due_date,
        request.supplier_name,
    )
    metrics.periodization_detections_total.labels(
        result="periodize" if detection.should_periodize else "none"
    ).inc()
    return detection


@app.post(
    "/api/v1/companies/{company_id}/periodizations",
    response_model=StoredPeriodization,
    status_code=status.HTTP_201_CREATED,
    tags=["Periodization"],
)
def create_schedule(company_id: str, request: ScheduleRequest) -> StoredPeriodization:
    """Create and store a schedule for an accepted periodization."""
    if request.end_date < request.start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="end_date before start_date"
        )
    periodization_account = (
        request.periodization_account
        or suggest_periodization_account(request.cost_account).account
    )
    schedule = create_periodization_schedule(
        request.amount,
        request.cost_account,
        periodization_account,
        request.start_date,
        request.end_date,
    )
    return save_periodization(
        store,
        company_id,
        schedule,
        job_id=request.job_id,
        supplier_name=request.supplier_name,
        description=request.description,
    )


@app.get(
    "/api/v1/companies/{company_id}/periodizations",
    response_model=list[StoredPeriodization],
    tags=["Periodization"],
)
def list_schedules(
    company_id: str,
    status_filter: ScheduleStatus | None = Query(None, alias="status"),
    limit: int = Query(500, ge=1, le=5000),
) -> list[StoredPeriodization]:
    return list_periodizations(store, company_id, status=status_filter, limit=limit)


@app.get(
    "/api/v1/companies/{company_id}/periodizations/due",
    response_model=list[DuePeriodization],
    tags=["Periodization"],
)
def due_schedules(
    company_id: str, period: str = Query(..., pattern=r"^\d{4}-\d{2}$")
) -> list[DuePeriodization]:
    return get_periodizations_for_period(store, company_id, period)


@app.get(
    "/api/v1/companies/{company_id}/periodizations/balance",
    response_model=PeriodizationBalance,
    tags=["Periodization"],
)
def periodization_balance(company_id: str) -> PeriodizationBalance:
    return get_total_periodization_balance(store, company_id)


@app.get(
    "/api/v1/companies/{company_id}/periodizations/{schedule_id}",
    response_model=StoredPeriodization,
    tags=["Periodization"],
)
def get_schedule(company_id: str, schedule_id: str) -> StoredPeriodization:
    schedule = get_periodization(store, company_id, schedule_id)
    if schedule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return schedule


@app.post(
    "/api/v1/companies/{company_id}/periodizations/{schedule_id}/entries/{period}/processed",
    response_model=StoredPeriodization,
    tags=["Periodization"],
)
def mark_processed(company_id: str, schedule_id: str, period: str) -> StoredPeriodization:
    schedule = mark_entry_processed(store, company_id, schedule_id, period)
    if schedule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    return schedule


@app.post(
    "/api/v1/companies/{company_id}/periodizations/{schedule_id}/cancel",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Periodization"],
)
def cancel_schedule(company_id: str, schedule_id: str) -> Response:
    if get_periodization(store, company_id, schedule_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Schedule not found")
    cancel_periodization(store, company_id, schedule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Rules


@app.get(
    "/api/v1/companies/{company_id}/rules", response_model=list[ApprovalRule], tags=["Rules"]
)
def list_rules(company_id: str) -> list[ApprovalRule]:
    return get_rules(store, company_id)


@app.post(
    "/api/v1/companies/{company_id}/rules",
    response_model=ApprovalRule,
    status_code=status.HTTP_201_CREATED,
    tags=["Rules"],
)
def create_rule(company_id: str, definition: RuleDefinition) -> ApprovalRule:
    return add_rule(store, company_id, definition)


@app.post(
    "/api/v1/companies/{company_id}/rules/defaults",
    response_model=list[ApprovalRule],
    status_code=status.HTTP_201_CREATED,
    tags=["Rules"],
)
def seed_default_rules(company_id: str) -> list[ApprovalRule]:
    return create_default_rules(store, company_id)


@app.patch(
    "/api/v1/companies/{company_id}/rules/{rule_id}",
    response_model=ApprovalRule,
    tags=["Rules"],
)
def edit_rule(company_id: str, rule_id: str, request: RuleUpdateRequest) -> ApprovalRule:
    rule = update_rule(store, company_id, rule_id, request.model_dump(exclude_unset=True))
    if rule is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    return rule


@app.delete(
    "/api/v1/companies/{company_id}/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Rules"],
)
def remove_rule(company_id: str, rule_id: str) -> Response:
    delete_rule(store, company_id, rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post(
    "/api/v1/companies/{company_id}/rules/evaluate",
    response_model=RuleEvaluationResult,
    tags=["Rules"],
)
def evaluate(company_id: str, request: EvaluateRequest) -> RuleEvaluationResult:
    confidence = (
        request.overall_confidence
        if request.overall_confidence is not None
        else request.classification.overall_confidence
    )
    result = evaluate_rules(store, company_id, request.classification, confidence, trigger_counter)
    metrics.rule_evaluations_total.labels(final_action=result.final_action.value).inc()
    return result


# Bank matching


@app.post(
    "/api/v1/companies/{company_id}/bank/transactions",
    response_model=ImportResponse,
    tags=["Bank"],
)
def import_transactions(company_id: str, transactions: list[BankTransaction]) -> ImportResponse:
    return ImportResponse(imported=save_transactions(store, company_id, transactions))


@app.post(
    "/api/v1/companies/{company_id}/bank/match", response_model=MatchResult, tags=["Bank"]
)
def match_invoice(company_id: str, request: MatchRequest) -> MatchResult:
    result = match_invoice_to_transaction(
        store,
        company_id,
        request.classification,
        request.job_id,
        settings.bank_match_days_before,
        settings.bank_match_days_after,
    )
    metrics.bank_matches_total.labels(confidence=result.confidence.value).inc()
    return result


@app.post(
    "/api/v1/companies/{company_id}/bank/manual-match",
    response_model=MatchResult,
    tags=["Bank"],
)
def match_manually(company_id: str, request: ManualMatchRequest) -> MatchResult:
    result = manual_match(store, company_id, request.job_id, request.transaction_id)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    metrics.bank_matches_total.labels(confidence=result.confidence.value).inc()
    return result


@app.get(
    "/api/v1/companies/{company_id}/bank/unmatched",
    response_model=UnmatchedResponse,
    tags=["Bank"],
)
def unmatched(company_id: str, today: date | None = Query(None)) -> UnmatchedResponse:
    today = today or date.today()
    return UnmatchedResponse(
        invoices=get_unmatched_invoices(store, company_id, today),
        transactions=get_unmatched_transactions(store, company_id, today),
    )


# Documents


@app.post(
    "/api/v1/companies/{company_id}/documents/{job_id}/process",
    response_model=ProcessingResult,
    tags=["Documents"],
)
def process_document(
    company_id: str, job_id: str, classification: Classification
) -> ProcessingResult:
    """Run a classified document through the whole engine.

    Calculates VAT, detects periodization, evaluates the approval rules and
    matches the document against imported bank transactions. A failing step
    is reported in ``errors`` and the document is flagged for review.
    """
    start_time = time.time()
    result = process_classified_document(
        store, company_id, job_id, classification, trigger_counter, settings
    )
    metrics.document_processing_duration_seconds.observe(time.time() - start_time)
    metrics.documents_processed_total.labels(status=result.status).inc()
    return result


@app.post(
    "/api/v1/companies/{company_id}/documents/{job_id}/enqueue",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Documents"],
)
async def enqueue_document(
    company_id: str, job_id: str, classification: Classification
) -> EnqueueResponse:
    """Queue a classified document for the background worker."""
    if not settings.queue_enabled:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Background queue disabled"
        )

    redis = await create_pool(WorkerSettings.get_redis_settings())
    try:
        await redis.enqueue_job(
            "process_document",
            company_id,
            job_id,
            classification.model_dump(mode="json"),
            _job_id=f"process:{company_id}:{job_id}",
        )
    finally:
        await redis.close()

    return EnqueueResponse(job_id=job_id, status="queued")
