"""Bank matching.

Scores bank transactions against a classified invoice and registers the best
match above the confidence threshold. Each invoice is matched greedily and
independently: two invoices evaluated separately may both pick the same
transaction.
"""

import logging
import re
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

from ledger.classification.schema import Classification
from ledger.jobs.store import list_jobs, update_job
from ledger.storage.service import KeyValueStore, StorageError

logger = logging.getLogger(__name__)

DEFAULT_DAYS_BEFORE = 7
DEFAULT_DAYS_AFTER = 14
DEFAULT_PAYMENT_TERM_DAYS = 30
DATE_GRACE_DAYS = 7

REFERENCE_SCORE = 50
SUPPLIER_TOKEN_SCORE = 5
SUPPLIER_MAX_SCORE = 15

# (max relative difference, score, detail), checked in order
AMOUNT_BANDS: tuple[tuple[Decimal, int, str], ...] = (
    (Decimal("0.001"), 30, "Exact amount"),
    (Decimal("0.01"), 20, "Amount within 1%"),
    (Decimal("0.05"), 10, "Amount within 5%"),
)

UNMATCHED_JOB_STATUSES = ("ready", "approved")


class MatchConfidence(StrEnum):
    EXACT = "exact"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class MatchType(StrEnum):
    OCR_REFERENCE = "ocr_reference"
    AMOUNT_DATE = "amount_date"
    SUPPLIER_AMOUNT = "supplier_amount"
    MANUAL = "manual"


# (minimum score, confidence, matched), checked in order
CONFIDENCE_BANDS: tuple[tuple[int, MatchConfidence, bool], ...] = (
    (80, MatchConfidence.EXACT, True),
    (60, MatchConfidence.HIGH, True),
    (40, MatchConfidence.MEDIUM, True),
    (20, MatchConfidence.LOW, False),
)


class BankTransaction(BaseModel):
    """A booked or pending transaction from the bank feed."""

    transaction_id: str
    account_id: str
    date: date
    amount: Decimal = Field(..., description="Signed amount, negative for payments")
    currency: str = "SEK"
    description: str = ""
    counterparty: str | None = None
    reference: str | None = Field(None, description="OCR reference or payment message")
    category: str | None = None
    status: Literal["pending", "booked"] = "booked"
    raw_data: dict[str, Any] | None = None
    matched_job_id: str | None = None
    matched_date: datetime | None = None


class MatchResult(BaseModel):
    """Outcome of matching an invoice against bank transactions.

    Attributes:
        matched: Whether the best candidate reached the matching threshold
        confidence: Confidence tier derived from the score
        match_type: Strongest signal behind the score
        transaction: Matched transaction (only when matched)
        match_score: Additive score, roughly 0-100
        match_details: Human-readable signals that contributed
    """

    matched: bool
    confidence: MatchConfidence
    match_type: MatchType | None = None
    transaction: BankTransaction | None = None
    match_score: int = 0
    match_details: list[str] = Field(default_factory=list)


class UnmatchedItem(BaseModel):
    type: Literal["invoice", "transaction"]
    id: str
    date: date
    amount: Decimal
    description: str
    days_old: int


def transactions_pk(company_id: str) -> str:
    return f"TRANSACTIONS#{company_id}"


def transaction_sk(transaction: BankTransaction) -> str:
    return f"{transaction.date.isoformat()}#{transaction.transaction_id}"


def normalize_reference(reference: str) -> str:
    """Keep only the digits of a payment reference."""
    return re.sub(r"\D", "", reference or "")


def _reference_matches(transaction: BankTransaction, classification: Classification) -> bool:
    reference = normalize_reference(transaction.reference or "")
    if not reference:
        return False
    for candidate in (classification.invoice_number, classification.payment_reference):
        normalized = normalize_reference(candidate or "")
        if normalized and (normalized in reference or reference in normalized):
            return True
    return False


def _amount_difference(invoice_amount: Decimal, transaction_amount: Decimal) -> Decimal:
    denominator = max(invoice_amount, transaction_amount)
    if denominator == 0:
        return Decimal("0") if invoice_amount == transaction_amount else Decimal("1")
    return abs(invoice_amount - transaction_amount) / denominator


def evaluate_match(classification: Classification, transaction: BankTransaction) -> MatchResult:
    """Score one transaction against an invoice.

    Signals are additive: OCR reference (+50), amount proximity (+30/+20/+10),
    date within the payment window (+15, or +10 within a 7-day grace band)
    and supplier name tokens found in the transaction text (+5 each, max +15).

    Args:
        classification: Classified invoice
        transaction: Candidate bank transaction

    Returns:
        MatchResult for this single candidate
    """
    details: list[str] = []
    score = 0

    reference_hit = _reference_matches(transaction, classification)
    if reference_hit:
        score += REFERENCE_SCORE
        details.append("OCR/reference matches")

    invoice_amount = abs(classification.total_amount)
    difference = _amount_difference(invoice_amount, abs(transaction.amount))
    exact_amount = False
    for limit, points, detail in AMOUNT_BANDS:
        if difference < limit:
            score += points
            details.append(detail)
            exact_amount = points == AMOUNT_BANDS[0][1]
            break

    invoice_date = classification.invoice_date
    due_date = classification.due_date or invoice_date + timedelta(days=DEFAULT_PAYMENT_TERM_DAYS)
    grace = timedelta(days=DATE_GRACE_DAYS)
    if invoice_date <= transaction.date <= due_date:
        score += 15
        details.append("Date within expected period")
    elif invoice_date - grace <= transaction.date <= due_date + grace:
        score += 10
        details.append("Date near expected period")

    transaction_text = f"{transaction.counterparty or ''} {transaction.description or ''}".lower()
    if transaction_text.strip():
        tokens = [w for w in (classification.supplier or "").lower().split() if len(w) > 2]
        matched_tokens = [w for w in tokens if w in transaction_text]
        if matched_tokens:
            score += min(SUPPLIER_MAX_SCORE, len(matched_tokens) * SUPPLIER_TOKEN_SCORE)
            details.append(f"Supplier matches: {', '.join(matched_tokens)}")

    confidence, matched = MatchConfidence.NONE, False
    for minimum, band, band_matched in CONFIDENCE_BANDS:
        if score >= minimum:
            confidence, matched = band, band_matched
            break

    if reference_hit:
        match_type = MatchType.OCR_REFERENCE
    elif exact_amount:
        match_type = MatchType.AMOUNT_DATE
    else:
        match_type = MatchType.SUPPLIER_AMOUNT

    return MatchResult(
        matched=matched,
        confidence=confidence,
        match_type=match_type,
        transaction=transaction if matched else None,
        match_score=score,
        match_details=details,
    )


def save_transactions(
    store: KeyValueStore, company_id: str, transactions: list[BankTransaction]
) -> int:
    """Store transactions from the bank feed.

    Re-importing a transaction keeps its match back-reference.
    """
    for transaction in transactions:
        fields = transaction.model_dump(
            mode="json", exclude={"matched_job_id", "matched_date"}
        )
        store.update_item(transactions_pk(company_id), transaction_sk(transaction), fields)
    logger.info(f"Saved {len(transactions)} bank transactions for {company_id}")
    return len(transactions)


def get_transactions_in_range(
    store: KeyValueStore, company_id: str, start: date, end: date
) -> list[BankTransaction]:
    """Transactions dated within [start, end], empty if the store fails."""
    try:
        items = store.query(
            transactions_pk(company_id),
            sk_between=(start.isoformat(), f"{end.isoformat()}#~"),
        )
    except StorageError as e:
        logger.error(f"Failed to load transactions for {company_id}: {e}")
        return []
    return [BankTransaction.model_validate(item) for item in items]


def _find_transaction(
    store: KeyValueStore, company_id: str, transaction_id: str
) -> BankTransaction | None:
    for item in store.query(transactions_pk(company_id)):
        if item.get("transaction_id") == transaction_id:
            return BankTransaction.model_validate(item)
    return None


def register_match(
    store: KeyValueStore,
    company_id: str,
    job_id: str,
    transaction: BankTransaction,
    confidence: MatchConfidence,
) -> None:
    """Cross-reference a job and a transaction."""
    now = datetime.now(UTC).isoformat()
    update_job(
        store,
        company_id,
        job_id,
        {
            "bank_match_id": transaction.transaction_id,
            "bank_match_confidence": confidence.value,
            "bank_match_date": now,
        },
    )
    store.update_item(
        transactions_pk(company_id),
        transaction_sk(transaction),
        {"matched_job_id": job_id, "matched_date": now},
    )
    logger.info(
        f"Matched job {job_id} to transaction {transaction.transaction_id} ({confidence})"
    )


def match_invoice_to_transaction(
    store: KeyValueStore,
    company_id: str,
    classification: Classification,
    job_id: str,
    days_before: int = DEFAULT_DAYS_BEFORE,
    days_after: int = DEFAULT_DAYS_AFTER,
) -> MatchResult:
    """Find and register the best bank transaction for an invoice.

    Candidates are transactions dated from ``days_before`` days before the
    invoice date through ``days_after`` days after the due date (or invoice
    date). The highest scoring candidate wins; it is registered only when
    its score reaches the matching threshold.

    Args:
        store: Key-value store
        company_id: Owning company
        classification: Classified invoice
        job_id: Job of the invoice
        days_before: Days before the invoice date to include
        days_after: Days after the due date to include

    Returns:
        Best MatchResult; ``matched=False, confidence=none`` when no
        transaction falls in the window
    """
    start = classification.invoice_date - timedelta(days=days_before)
    end = (classification.due_date or classification.invoice_date) + timedelta(days=days_after)

    transactions = get_transactions_in_range(store, company_id, start, end)
    if not transactions:
        return MatchResult(
            matched=False,
            confidence=MatchConfidence.NONE,
            match_details=[f"No bank transactions found between {start} and {end}"],
        )

    best = MatchResult(matched=False, confidence=MatchConfidence.NONE)
    for transaction in transactions:
        result = evaluate_match(classification, transaction)
        if result.match_score > best.match_score:
            best = result

    if best.matched and best.transaction:
        try:
            register_match(store, company_id, job_id, best.transaction, best.confidence)
        except StorageError as e:
            logger.error(f"Failed to register match for job {job_id}: {e}")
            best.match_details.append("Match could not be recorded")

    return best


def manual_match(
    store: KeyValueStore, company_id: str, job_id: str, transaction_id: str
) -> MatchResult | None:
    """Force-register a match chosen by an operator, bypassing scoring.

    Returns:
        An exact/manual MatchResult, or None if the transaction is unknown
    """
    transaction = _find_transaction(store, company_id, transaction_id)
    if transaction is None:
        return None

    register_match(store, company_id, job_id, transaction, MatchConfidence.EXACT)
    return MatchResult(
        matched=True,
        confidence=MatchConfidence.EXACT,
        match_type=MatchType.MANUAL,
        transaction=transaction,
        match_score=100,
        match_details=["Manually matched"],
    )


def get_unmatched_invoices(
    store: KeyValueStore, company_id: str, today: date
) -> list[UnmatchedItem]:
    """Ready or approved jobs without a bank match."""
    try:
        jobs = list_jobs(store, company_id)
    except StorageError as e:
        logger.error(f"Failed to load jobs for {company_id}: {e}")
        return []

    items = []
    for job in jobs:
        if job.bank_match_id or job.status not in UNMATCHED_JOB_STATUSES:
            continue
        classification = job.classification
        supplier = classification.supplier if classification else ""
        invoice_number = classification.invoice_number if classification else ""
        items.append(
            UnmatchedItem(
                type="invoice",
                id=job.job_id,
                date=classification.invoice_date if classification else job.created_at.date(),
                amount=classification.total_amount if classification else Decimal("0"),
                description=f"{supplier or 'Unknown'} - {invoice_number}",
                days_old=(today - job.created_at.date()).days,
            )
        )
    return items


def get_unmatched_transactions(
    store: KeyValueStore, company_id: str, today: date
) -> list[UnmatchedItem]:
    """Transactions not yet cross-referenced to a job."""
    try:
        records = store.query(transactions_pk(company_id))
    except StorageError as e:
        logger.error(f"Failed to load transactions for {company_id}: {e}")
        return []

    items = []
    for record in records:
        transaction = BankTransaction.model_validate(record)
        if transaction.matched_job_id:
            continue
        items.append(
            UnmatchedItem(
                type="transaction",
                id=transaction.transaction_id,
                date=transaction.date,
                amount=abs(transaction.amount),
                description=transaction.description or transaction.counterparty or "Unknown",
                days_old=(today - transaction.date).days,
            )
        )
    return items
