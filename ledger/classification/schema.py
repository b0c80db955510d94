"""Classified document models.

A classification is the structured output of the upstream OCR/AI
classification step. Every engine module consumes it read-only.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class DocumentType(StrEnum):
    """Kind of accounting document."""

    INVOICE = "INVOICE"
    CREDIT_NOTE = "CREDIT_NOTE"
    RECEIPT = "RECEIPT"
    BANK = "BANK"
    OTHER = "OTHER"


class LineItem(BaseModel):
    """Single line on a classified document."""

    model_config = ConfigDict(frozen=True)

    description: str = Field("", description="Line item text")
    amount: Decimal = Field(Decimal("0"), description="Line amount")
    suggested_account: str = Field(..., description="Suggested BAS ledger account")
    suggested_account_name: str | None = Field(None, description="Ledger account name")
    confidence: float = Field(1.0, description="Account suggestion confidence (0-1)", ge=0, le=1)


class Classification(BaseModel):
    """Structured document data produced by the classification step.

    Immutable once created.
    """

    model_config = ConfigDict(frozen=True)

    doc_type: DocumentType = Field(DocumentType.INVOICE, description="Document type")

    # Supplier information
    supplier: str = Field("", description="Supplier/vendor name")
    supplier_country: str | None = Field(None, description="Supplier country name or ISO code")
    supplier_vat_id: str | None = Field(None, description="Supplier VAT registration number")

    # Identification
    invoice_number: str = Field("", description="Invoice number as printed")
    payment_reference: str | None = Field(None, description="OCR payment reference")
    invoice_date: date = Field(..., description="Date the document was issued")
    due_date: date | None = Field(None, description="Payment due date")

    # Financial details
    currency: str = Field("SEK", description="Currency code (ISO 4217)")
    total_amount: Decimal = Field(..., description="Total amount including VAT")
    vat_amount: Decimal | None = Field(None, description="VAT amount stated on the document")
    line_items: tuple[LineItem, ...] = Field((), description="Document lines")

    description: str = Field("", description="Free-text description of the purchase")

    overall_confidence: float = Field(
        1.0, description="Overall classification confidence (0-1)", ge=0, le=1
    )

    @property
    def suggested_accounts(self) -> set[str]:
        """Union of the suggested ledger accounts across all line items."""
        return {item.suggested_account for item in self.line_items}

    @property
    def text(self) -> str:
        """Description and line item texts joined, used by keyword heuristics."""
        parts = [self.description, *(item.description for item in self.line_items)]
        return " ".join(p for p in parts if p)


class AccountingJob(BaseModel):
    """A document moving through the bookkeeping workflow.

    Attributes:
        job_id: Unique job identifier
        company_id: Owning tenant
        status: Workflow status
        classification: Classified document data
        created_at: Job creation timestamp
        bank_match_id: Matched bank transaction id (set once matched)
        bank_match_confidence: Confidence tier of the bank match
        bank_match_date: When the match was registered
    """

    job_id: str
    company_id: str
    status: str = "pending"  # pending, ready, approved, sent, rejected, failed
    classification: Classification | None = None
    created_at: datetime
    updated_at: datetime | None = None
    bank_match_id: str | None = None
    bank_match_confidence: str | None = None
    bank_match_date: datetime | None = None
