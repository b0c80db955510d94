"""Periodization of costs and income.

Detects when a document's cost covers several accounting periods and builds
month-by-month schedules that move the amount from a prepaid/accrued
account to the cost account. Detection is advisory; schedules are only
created once a detection has been accepted.
"""

import calendar
import logging
import re
import uuid
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel

from ledger.vat.calculator import Number, VoucherLine, round_money, to_decimal

logger = logging.getLogger(__name__)


class PeriodizationType(StrEnum):
    PREPAID_EXPENSE = "prepaid_expense"
    ACCRUED_EXPENSE = "accrued_expense"
    PREPAID_INCOME = "prepaid_income"
    ACCRUED_INCOME = "accrued_income"


class LedgerAccount(BaseModel):
    account: str
    name: str


PERIODIZATION_ACCOUNTS: dict[str, LedgerAccount] = {
    # Prepaid expenses (assets)
    "PREPAID_EXPENSES": LedgerAccount(account="1790", name="Övriga förutbetalda kostnader"),
    "PREPAID_RENT": LedgerAccount(account="1710", name="Förutbetalda hyreskostnader"),
    "PREPAID_INSURANCE": LedgerAccount(account="1720", name="Förutbetalda försäkringspremier"),
    "PREPAID_LEASING": LedgerAccount(account="1730", name="Förutbetalda leasingavgifter"),
    # Accrued expenses (liabilities)
    "ACCRUED_EXPENSES": LedgerAccount(account="2990", name="Övriga upplupna kostnader"),
    "ACCRUED_SALARIES": LedgerAccount(account="2910", name="Upplupna löner"),
    "ACCRUED_VACATION": LedgerAccount(account="2920", name="Upplupna semesterlöner"),
    "ACCRUED_SOCIAL": LedgerAccount(account="2940", name="Upplupna arbetsgivaravgifter"),
    "ACCRUED_INTEREST": LedgerAccount(account="2960", name="Upplupna räntekostnader"),
    # Prepaid income (liability) and accrued income (asset)
    "PREPAID_INCOME": LedgerAccount(account="2990", name="Förutbetalda intäkter"),
    "ACCRUED_INCOME": LedgerAccount(account="1790", name="Upplupna intäkter"),
}

EstimateKind = Literal["rent", "license", "insurance"]

TYPICAL_MONTHLY_COST: dict[str, Decimal] = {
    "rent": Decimal("15000"),
    "license": Decimal("1000"),
    "insurance": Decimal("5000"),
}

LARGE_RENT_AMOUNT = Decimal("10000")
LONG_PAYMENT_TERM_MONTHS = 3


class _KeywordRule(BaseModel):
    patterns: tuple[str, ...]
    type: PeriodizationType
    account: str
    estimate: EstimateKind | None = None


# Evaluated in order, first match wins.
PERIODIZATION_KEYWORDS: tuple[_KeywordRule, ...] = (
    _KeywordRule(
        patterns=(
            r"årsabonnemang",
            r"årslicens",
            r"årsprenumeration",
            r"annual (?:subscription|license)",
        ),
        type=PeriodizationType.PREPAID_EXPENSE,
        account="1790",
    ),
    _KeywordRule(
        patterns=(r"hyra", r"\blokal\b", r"\brent\b"),
        type=PeriodizationType.PREPAID_EXPENSE,
        account="1710",
        estimate="rent",
    ),
    _KeywordRule(
        patterns=(r"försäkring", r"insurance"),
        type=PeriodizationType.PREPAID_EXPENSE,
        account="1720",
    ),
    _KeywordRule(
        patterns=(r"leasing", r"\blease\b"),
        type=PeriodizationType.PREPAID_EXPENSE,
        account="1730",
    ),
    _KeywordRule(
        patterns=(r"support", r"underhåll", r"service"),
        type=PeriodizationType.PREPAID_EXPENSE,
        account="1790",
    ),
    _KeywordRule(
        patterns=(r"licens", r"license", r"subscription"),
        type=PeriodizationType.PREPAID_EXPENSE,
        account="1790",
    ),
)

MONTHS: dict[str, int] = {
    "jan": 1, "januari": 1, "january": 1,
    "feb": 2, "februari": 2, "february": 2,
    "mar": 3, "mars": 3, "march": 3,
    "apr": 4, "april": 4,
    "maj": 5, "may": 5,
    "jun": 6, "juni": 6, "june": 6,
    "jul": 7, "juli": 7, "july": 7,
    "aug": 8, "augusti": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "okt": 10, "oct": 10, "oktober": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}  # fmt: skip

_RANGE_SEP = r"\s*(?:-|–|—|till|to)\s*"
ISO_RANGE = re.compile(rf"(\d{{4}}-\d{{2}}-\d{{2}}){_RANGE_SEP}(\d{{4}}-\d{{2}}-\d{{2}})")
MONTH_RANGE = re.compile(
    rf"\b([a-zåäö]+)\.?\s+(\d{{4}}){_RANGE_SEP}([a-zåäö]+)\.?\s+(\d{{4}})\b", re.I
)
MONTH_RANGE_SAME_YEAR = re.compile(
    rf"\b([a-zåäö]+)\.?{_RANGE_SEP}([a-zåäö]+)\.?\s+(\d{{4}})\b", re.I
)
QUARTER = re.compile(r"\bQ([1-4])\s*(\d{4})\b", re.I)
BARE_YEAR = re.compile(r"(?<![\d-])((?:19|20)\d{2})(?![\d-])")


class SuggestedPeriod(BaseModel):
    start_date: date
    end_date: date
    months: int


class PeriodizationDetection(BaseModel):
    """Advisory decision on whether a document should be periodized.

    Attributes:
        should_periodize: Whether the cost spans several periods
        type: Kind of periodization
        periodization_account: Balance sheet account to park the amount on
        suggested_period: Period the cost covers
        reason: Human-readable explanation
        confidence: Detection confidence (0-1)
    """

    should_periodize: bool
    type: PeriodizationType | None = None
    periodization_account: LedgerAccount | None = None
    suggested_period: SuggestedPeriod | None = None
    reason: str | None = None
    confidence: float = 0.0


class PeriodizationEntry(BaseModel):
    date: date
    period: str  # YYYY-MM
    debit_account: str
    debit_amount: Decimal
    credit_account: str
    credit_amount: Decimal
    description: str
    is_processed: bool = False


class PeriodizationSchedule(BaseModel):
    """Month-by-month amortization of one amount.

    The entries always sum to ``original_amount`` exactly; the last entry
    absorbs the rounding remainder.
    """

    id: str
    original_amount: Decimal
    cost_account: str
    periodization_account: str
    start_date: date
    end_date: date
    total_months: int
    monthly_amount: Decimal
    entries: list[PeriodizationEntry]


def months_between(start: date, end: date) -> int:
    """Number of calendar months touched by [start, end], inclusive."""
    return (end.year - start.year) * 12 + (end.month - start.month) + 1


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _shift_month(year: int, month: int, offset: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


def _period_end(start: date, months: int) -> date:
    """Last day of the ``months``-th calendar month starting at ``start``."""
    year, month = _shift_month(start.year, start.month, months - 1)
    return _month_end(year, month)


def _period(start: date, end: date) -> SuggestedPeriod | None:
    if end < start:
        return None
    return SuggestedPeriod(start_date=start, end_date=end, months=months_between(start, end))


def extract_period(text: str, allow_bare_year: bool = True) -> SuggestedPeriod | None:
    """Find an explicit service period in free text.

    Recognizes, in order: ISO date ranges (``2024-01-01 - 2024-12-31``),
    month-name ranges (``jan 2024 - dec 2024``, ``januari-mars 2025``),
    quarters (``Q3 2024``) and, if allowed, a bare year (``2024``).
    """
    if not text:
        return None

    if match := ISO_RANGE.search(text):
        try:
            period = _period(date.fromisoformat(match[1]), date.fromisoformat(match[2]))
        except ValueError:
            period = None
        if period:
            return period

    if match := MONTH_RANGE.search(text):
        start_month = MONTHS.get(match[1].lower())
        end_month = MONTHS.get(match[3].lower())
        if start_month and end_month:
            try:
                period = _period(
                    date(int(match[2]), start_month, 1), _month_end(int(match[4]), end_month)
                )
            except ValueError:
                period = None
            if period:
                return period

    if match := MONTH_RANGE_SAME_YEAR.search(text):
        start_month = MONTHS.get(match[1].lower())
        end_month = MONTHS.get(match[2].lower())
        if start_month and end_month:
            year = int(match[3])
            try:
                period = _period(date(year, start_month, 1), _month_end(year, end_month))
            except ValueError:
                period = None
            if period:
                return period

    if match := QUARTER.search(text):
        quarter, year = int(match[1]), int(match[2])
        start_month = (quarter - 1) * 3 + 1
        try:
            return SuggestedPeriod(
                start_date=date(year, start_month, 1),
                end_date=_month_end(year, start_month + 2),
                months=3,
            )
        except ValueError:
            pass

    if allow_bare_year and (match := BARE_YEAR.search(text)):
        year = int(match[1])
        return SuggestedPeriod(start_date=date(year, 1, 1), end_date=date(year, 12, 31), months=12)

    return None


def estimate_months_from_amount(amount: Number, kind: EstimateKind) -> int:
    """Estimate how many months an amount covers from a typical monthly cost."""
    monthly = TYPICAL_MONTHLY_COST.get(kind, Decimal("5000"))
    return int((to_decimal(amount) / monthly).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _account(account: str) -> LedgerAccount:
    return LedgerAccount(account=account, name=get_periodization_account_name(account))


def get_periodization_account_name(account: str) -> str:
    for value in PERIODIZATION_ACCOUNTS.values():
        if value.account == account:
            return value.name
    return "Periodiseringskonto"


def detect_periodization_need(
    description: str,
    amount: Number,
    invoice_date: date,
    due_date: date | None = None,
    supplier_name: str | None = None,
) -> PeriodizationDetection:
    """Decide whether a cost should be spread over several periods.

    Checks, in order:
    1. Periodization keyword plus an explicit multi-month period (0.85)
    2. Rent keyword with a large amount, period estimated from typical rent (0.6)
    3. More than three months between invoice and due date (0.5)
    4. Explicit multi-month period without any keyword (0.75)

    Args:
        description: Document description
        amount: Document amount
        invoice_date: Invoice date
        due_date: Payment due date
        supplier_name: Supplier name

    Returns:
        PeriodizationDetection; ``should_periodize=False`` with confidence 0
        when nothing matched
    """
    text = f"{description or ''} {supplier_name or ''}".lower()
    amount = to_decimal(amount)

    for rule in PERIODIZATION_KEYWORDS:
        keyword = next((m[0] for p in rule.patterns if (m := re.search(p, text))), None)
        if keyword is None:
            continue

        period = extract_period(description)
        if period and period.months > 1:
            return PeriodizationDetection(
                should_periodize=True,
                type=rule.type,
                periodization_account=_account(rule.account),
                suggested_period=period,
                reason=f"Identified as '{keyword}' covering {period.months} months",
                confidence=0.85,
            )

        if rule.estimate == "rent" and amount > LARGE_RENT_AMOUNT:
            months = estimate_months_from_amount(amount, "rent")
            if months > 1:
                return PeriodizationDetection(
                    should_periodize=True,
                    type=rule.type,
                    periodization_account=_account(rule.account),
                    suggested_period=SuggestedPeriod(
                        start_date=invoice_date,
                        end_date=_period_end(invoice_date, months),
                        months=months,
                    ),
                    reason=f"High amount may indicate prepayment for {months} months",
                    confidence=0.6,
                )

    if due_date:
        months = months_between(invoice_date, due_date)
        if months > LONG_PAYMENT_TERM_MONTHS:
            return PeriodizationDetection(
                should_periodize=True,
                type=PeriodizationType.PREPAID_EXPENSE,
                periodization_account=PERIODIZATION_ACCOUNTS["PREPAID_EXPENSES"],
                suggested_period=SuggestedPeriod(
                    start_date=invoice_date, end_date=due_date, months=months
                ),
                reason=f"Invoice date and due date span {months} months",
                confidence=0.5,
            )

    period = extract_period(description, allow_bare_year=False)
    if period and period.months > 1:
        return PeriodizationDetection(
            should_periodize=True,
            type=PeriodizationType.PREPAID_EXPENSE,
            periodization_account=PERIODIZATION_ACCOUNTS["PREPAID_EXPENSES"],
            suggested_period=period,
            reason=f"Identified period: {period.start_date} - {period.end_date}",
            confidence=0.75,
        )

    return PeriodizationDetection(should_periodize=False, confidence=0.0)


def _split_amounts(original: Decimal, monthly_amount: Decimal, months: int) -> list[Decimal]:
    last = original - monthly_amount * (months - 1)
    if months == 1 or (last >= 0) == (original >= 0):
        return [monthly_amount] * (months - 1) + [last]

    # Rounding up every month would overshoot; spread whole öre, extras last.
    sign = -1 if original < 0 else 1
    base, extra = divmod(int(abs(original) * 100), months)
    cents = [base] * (months - extra) + [base + 1] * extra
    return [round_money(sign * Decimal(c) / 100) for c in cents]


def create_periodization_schedule(
    amount: Number,
    cost_account: str,
    periodization_account: str,
    start_date: date,
    end_date: date,
) -> PeriodizationSchedule:
    """Spread an amount evenly over the calendar months of [start_date, end_date].

    Every month but the last gets the rounded monthly amount; the last month
    gets whatever remains, so the entries sum to ``amount`` exactly. When the
    remainder would change sign (amounts of a few öre), whole öre are spread
    over the months instead, with the extra öre on the last ones.
    """
    original = round_money(amount)
    total_months = max(months_between(start_date, end_date), 1)
    monthly_amount = round_money(original / total_months)

    entries: list[PeriodizationEntry] = []
    amounts = _split_amounts(original, monthly_amount, total_months)

    for index, entry_amount in enumerate(amounts):
        year, month = _shift_month(start_date.year, start_date.month, index)
        period = f"{year}-{month:02d}"

        entries.append(
            PeriodizationEntry(
                date=date(year, month, 1),
                period=period,
                debit_account=cost_account,
                debit_amount=entry_amount,
                credit_account=periodization_account,
                credit_amount=entry_amount,
                description=f"Periodization {period}",
            )
        )

    return PeriodizationSchedule(
        id=f"period-{uuid.uuid4().hex[:12]}",
        original_amount=original,
        cost_account=cost_account,
        periodization_account=periodization_account,
        start_date=start_date,
        end_date=end_date,
        total_months=total_months,
        monthly_amount=monthly_amount,
        entries=entries,
    )


def generate_initial_periodization_voucher(
    amount: Number, periodization_account: str, payment_account: str = "1930"
) -> list[VoucherLine]:
    """Voucher parking the full amount on the periodization account at payment."""
    value = round_money(amount)
    return [
        VoucherLine(account=periodization_account, debit=value, description="Prepaid expense"),
        VoucherLine(account=payment_account, credit=value, description="Payment"),
    ]


def generate_monthly_periodization_voucher(entry: PeriodizationEntry) -> list[VoucherLine]:
    return [
        VoucherLine(
            account=entry.debit_account, debit=entry.debit_amount, description=entry.description
        ),
        VoucherLine(
            account=entry.credit_account, credit=entry.credit_amount, description=entry.description
        ),
    ]


def calculate_remaining_balance(schedule: PeriodizationSchedule) -> Decimal:
    processed = sum(
        (e.debit_amount for e in schedule.entries if e.is_processed), Decimal("0")
    )
    return schedule.original_amount - processed


def get_due_periodizations(
    schedules: list[PeriodizationSchedule], target_month: str
) -> list[PeriodizationEntry]:
    """Unprocessed entries across all schedules for a ``YYYY-MM`` month."""
    return [
        entry
        for schedule in schedules
        for entry in schedule.entries
        if entry.period == target_month and not entry.is_processed
    ]


_EXACT_ACCOUNT_MAP = {
    "5010": "PREPAID_RENT",  # Lokalhyra
    "5020": "PREPAID_RENT",
    "6310": "PREPAID_INSURANCE",  # Företagsförsäkringar
    "6311": "PREPAID_INSURANCE",
    "5210": "PREPAID_LEASING",
    "5220": "PREPAID_LEASING",
    "6250": "PREPAID_EXPENSES",  # IT-tjänster, licenser
}

_PREFIX_ACCOUNT_MAP = {
    "50": "PREPAID_RENT",
    "63": "PREPAID_INSURANCE",
    "52": "PREPAID_LEASING",
}


def suggest_periodization_account(cost_account: str) -> LedgerAccount:
    """Pair a cost account with its periodization account.

    Exact account matches win; otherwise the two-digit account class decides.
    """
    key = _EXACT_ACCOUNT_MAP.get(cost_account) or _PREFIX_ACCOUNT_MAP.get(
        cost_account[:2], "PREPAID_EXPENSES"
    )
    return PERIODIZATION_ACCOUNTS[key]
