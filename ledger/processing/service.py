"""Per-document processing pipeline.

Runs a classified document through VAT calculation, periodization detection,
rule evaluation and bank matching, then records the resulting job status.
A failing step is logged and recorded on the result; the document then
falls back to manual review instead of aborting the batch.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from ledger.classification.schema import AccountingJob, Classification
from ledger.jobs.store import get_job, save_job, update_job
from ledger.matching.service import MatchResult, match_invoice_to_transaction
from ledger.periodization.service import PeriodizationDetection, detect_periodization_need
from ledger.rules.engine import FinalAction, RuleEvaluationResult, evaluate_rules
from ledger.rules.triggers import TriggerCounter
from ledger.shared.config import Settings, get_settings
from ledger.storage.service import KeyValueStore
from ledger.vat.calculator import (
    VatCalculation,
    VatValidation,
    VoucherLine,
    calculate_complete_vat,
    generate_vat_voucher_lines,
    implied_vat_rate,
    is_balanced,
    to_decimal,
    validate_vat_amount,
)

logger = logging.getLogger(__name__)

DEFAULT_COST_ACCOUNT = "4010"
SUPPLIER_LIABILITY_ACCOUNT = "2440"

JOB_STATUS_BY_ACTION = {
    FinalAction.AUTO_APPROVE: "approved",
    FinalAction.FLAG_FOR_REVIEW: "ready",
    FinalAction.MANUAL_REVIEW: "ready",
    FinalAction.REJECT: "rejected",
}


class ProcessingResult(BaseModel):
    """Outcome of processing one classified document.

    Attributes:
        job_id: Job identifier
        company_id: Owning company
        status: Resulting job status
        final_action: Workflow disposition
        vat: VAT calculation
        vat_validation: Check of the VAT amount stated on the document
        voucher_lines: Proposed balanced purchase voucher
        periodization: Advisory periodization detection
        rule_evaluation: Rule engine decision with audit trail
        bank_match: Best bank transaction match
        warnings: Non-fatal findings
        errors: Steps that failed
    """

    job_id: str
    company_id: str
    status: str
    final_action: FinalAction
    vat: VatCalculation | None = None
    vat_validation: VatValidation | None = None
    voucher_lines: list[VoucherLine] = Field(default_factory=list)
    periodization: PeriodizationDetection | None = None
    rule_evaluation: RuleEvaluationResult | None = None
    bank_match: MatchResult | None = None
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


def build_purchase_voucher(
    classification: Classification, vat: VatCalculation
) -> list[VoucherLine]:
    """VAT voucher lines plus the supplier liability credit at gross."""
    line = classification.line_items[0] if classification.line_items else None
    lines = generate_vat_voucher_lines(
        vat,
        line.suggested_account if line else DEFAULT_COST_ACCOUNT,
        (line.suggested_account_name or "") if line else "",
    )
    lines.append(
        VoucherLine(
            account=SUPPLIER_LIABILITY_ACCOUNT,
            account_name="Leverantörsskulder",
            credit=vat.gross_amount,
            description=classification.supplier or "Supplier",
        )
    )
    return lines


def _register_job(
    store: KeyValueStore, company_id: str, job_id: str, classification: Classification
) -> None:
    existing = get_job(store, company_id, job_id)
    if existing:
        update_job(
            store,
            company_id,
            job_id,
            {"classification": classification.model_dump(mode="json"), "status": "pending"},
        )
    else:
        save_job(
            store,
            AccountingJob(
                job_id=job_id,
                company_id=company_id,
                classification=classification,
                created_at=datetime.now(UTC),
            ),
        )


def process_classified_document(
    store: KeyValueStore,
    company_id: str,
    job_id: str,
    classification: Classification,
    trigger_counter: TriggerCounter | None = None,
    settings: Settings | None = None,
) -> ProcessingResult:
    """Run the full engine over one classified document.

    Args:
        store: Key-value store
        company_id: Owning company
        job_id: Job identifier of the document
        classification: Classified document
        trigger_counter: Background rule trigger recorder
        settings: Application settings (defaults to environment)

    Returns:
        ProcessingResult; never raises for a failing step
    """
    settings = settings or get_settings()
    errors: list[str] = []
    warnings: list[str] = []

    def run(step: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            logger.exception(f"Step '{step}' failed for job {job_id}: {e}")
            errors.append(f"{step}: {e}")
            return None

    run("save_job", _register_job, store, company_id, job_id, classification)

    vat: VatCalculation | None = run(
        "vat",
        calculate_complete_vat,
        classification.total_amount,
        True,
        classification.text,
        classification.supplier,
        classification.supplier_country,
        implied_vat_rate(classification.total_amount, classification.vat_amount),
    )

    vat_validation = None
    voucher_lines: list[VoucherLine] = []
    if vat is not None:
        stated = classification.vat_amount
        if stated is not None and stated > 0 and not vat.is_reverse_charge:
            vat_validation = run(
                "vat_validation",
                validate_vat_amount,
                classification.total_amount - stated,
                stated,
                classification.total_amount,
                settings.vat_validation_tolerance,
            )
            if vat_validation is not None and not vat_validation.is_valid:
                warnings.append(
                    f"Stated VAT {stated} differs from expected {vat_validation.expected_vat}"
                )
            elif abs(vat.vat_amount - stated) > to_decimal(settings.vat_validation_tolerance):
                warnings.append(f"Calculated VAT {vat.vat_amount} differs from stated {stated}")

        voucher_lines = run("voucher", build_purchase_voucher, classification, vat) or []
        if voucher_lines and not is_balanced(voucher_lines):
            warnings.append("Voucher does not balance")

    periodization = run(
        "periodization",
        detect_periodization_need,
        classification.text,
        classification.total_amount,
        classification.invoice_date,
        classification.due_date,
        classification.supplier,
    )
    rule_evaluation = run(
        "rules",
        evaluate_rules,
        store,
        company_id,
        classification,
        classification.overall_confidence,
        trigger_counter,
    )

    bank_match = run(
        "bank_match",
        match_invoice_to_transaction,
        store,
        company_id,
        classification,
        job_id,
        settings.bank_match_days_before,
        settings.bank_match_days_after,
    )

    if rule_evaluation is not None:
        final_action = rule_evaluation.final_action
    else:
        final_action = FinalAction.MANUAL_REVIEW

    if final_action == FinalAction.AUTO_APPROVE and (errors or warnings):
        logger.warning(f"Job {job_id} downgraded from auto-approve: {errors + warnings}")
        final_action = FinalAction.FLAG_FOR_REVIEW
    elif errors and final_action != FinalAction.REJECT:
        final_action = FinalAction.FLAG_FOR_REVIEW

    status = JOB_STATUS_BY_ACTION[final_action]
    run("update_job", update_job, store, company_id, job_id, {"status": status})

    logger.info(f"Processed job {job_id} for {company_id}: {final_action} ({status})")

    return ProcessingResult(
        job_id=job_id,
        company_id=company_id,
        status=status,
        final_action=final_action,
        vat=vat,
        vat_validation=vat_validation,
        voucher_lines=voucher_lines,
        periodization=periodization,
        rule_evaluation=rule_evaluation,
        bank_match=bank_match,
        warnings=warnings,
        errors=errors,
    )


def process_batch(
    store: KeyValueStore,
    company_id: str,
    documents: list[tuple[str, Classification]],
    trigger_counter: TriggerCounter | None = None,
    settings: Settings | None = None,
) -> list[ProcessingResult]:
    """Process ``(job_id, classification)`` pairs independently."""
    return [
        process_classified_document(
            store, company_id, job_id, classification, trigger_counter, settings
        )
        for job_id, classification in documents
    ]
