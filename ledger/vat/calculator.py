"""Swedish VAT calculator.

Computes net/VAT/gross splits, detects the applicable VAT rate and special
regimes (reverse charge, EU acquisitions, construction services) and emits
voucher lines for posting.

Detection never raises: unrecognized input falls back to the standard 25%
rate without reverse charge, and confidence signaling is left to callers.

Rates and accounts follow the Swedish VAT Act and the BAS chart of accounts:
https://www.skatteverket.se/foretag/moms/saljavarorochtjanster/momssatspavarorochtjanster
"""

import logging
import re
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")

Number = Decimal | int | float | str


class VatRateType(StrEnum):
    """Canonical Swedish VAT rate categories."""

    STANDARD = "STANDARD"  # 25%
    REDUCED = "REDUCED"  # 12% food, restaurants, hotels
    LOW = "LOW"  # 6% books, newspapers, culture, public transport
    ZERO = "ZERO"  # 0% export, healthcare, education, insurance


class ReverseChargeType(StrEnum):
    """Reason the buyer is liable for VAT."""

    EU_SERVICE = "eu_service"
    EU_GOODS = "eu_goods"
    CONSTRUCTION = "construction"


VAT_RATES: dict[VatRateType, Decimal] = {
    VatRateType.STANDARD: Decimal("0.25"),
    VatRateType.REDUCED: Decimal("0.12"),
    VatRateType.LOW: Decimal("0.06"),
    VatRateType.ZERO: Decimal("0"),
}

EXPLICIT_RATE_TOLERANCE = Decimal("0.01")


class VatAccount(BaseModel):
    """BAS account number and name."""

    account: str
    name: str


VAT_ACCOUNTS: dict[str, VatAccount] = {
    # Input VAT (deductible)
    "INPUT_25": VatAccount(account="2641", name="Ingående moms 25%"),
    "INPUT_12": VatAccount(account="2642", name="Ingående moms 12%"),
    "INPUT_6": VatAccount(account="2643", name="Ingående moms 6%"),
    # Output VAT
    "OUTPUT_25": VatAccount(account="2611", name="Utgående moms 25%"),
    "OUTPUT_12": VatAccount(account="2621", name="Utgående moms 12%"),
    "OUTPUT_6": VatAccount(account="2631", name="Utgående moms 6%"),
    # Reverse charge / EU acquisitions
    "REVERSE_CHARGE_INPUT": VatAccount(
        account="2645", name="Ingående moms, omvänd skattskyldighet"
    ),
    "REVERSE_CHARGE_OUTPUT": VatAccount(
        account="2614", name="Utgående moms, omvänd skattskyldighet"
    ),
    # Purchase accounts for reverse-charge documents
    "PURCHASE_EU_GOODS": VatAccount(account="4515", name="Inköp av varor inom EU"),
    "PURCHASE_EU_SERVICES": VatAccount(account="4535", name="Inköp av tjänster inom EU"),
    "PURCHASE_CONSTRUCTION": VatAccount(account="4545", name="Inköp byggtjänster, omvänd moms"),
}

_INPUT_ACCOUNTS = {
    VatRateType.STANDARD: "INPUT_25",
    VatRateType.REDUCED: "INPUT_12",
    VatRateType.LOW: "INPUT_6",
}
_OUTPUT_ACCOUNTS = {
    VatRateType.STANDARD: "OUTPUT_25",
    VatRateType.REDUCED: "OUTPUT_12",
    VatRateType.LOW: "OUTPUT_6",
}


def _patterns(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# Evaluated in order, first match wins. STANDARD is the fallback.
VAT_RATE_KEYWORDS: tuple[tuple[VatRateType, tuple[re.Pattern[str], ...]], ...] = (
    (
        VatRateType.REDUCED,
        _patterns(
            r"restaurang",
            r"restaurant",
            r"\bhotell?\b",
            r"\bmat\b",
            r"livsmedel",
            r"catering",
            r"\bfood\b",
            r"\blunch\b",
            r"\b12\s?%",
        ),
    ),
    (
        VatRateType.LOW,
        _patterns(
            r"\bbok\b",
            r"\bböcker\b",
            r"\bbooks?\b",
            r"tidning",
            r"tidskrift",
            r"newspaper",
            r"magazine",
            r"teater",
            r"theat(?:re|er)",
            r"konsert",
            r"concert",
            r"museum",
            r"kollektivtrafik",
            r"public transport",
            r"\bsl\b",
            r"\btaxi\b",
            r"\b6\s?%",
        ),
    ),
    (
        VatRateType.ZERO,
        _patterns(
            r"export",
            r"sjukvård",
            r"tandvård",
            r"healthcare",
            r"dental",
            r"utbildning",
            r"education",
            r"försäkring",
            r"insurance",
            r"\b0\s?%",
        ),
    ),
)

CONSTRUCTION_KEYWORDS = _patterns(
    r"byggarbete",
    r"\bbygg(?:tjänst\w*|nation|entreprenad)?\b",
    r"renovering",
    r"målning",
    r"\bel-?arbete",
    r"\bvvs\b",
    r"entreprenad",
    r"installation",
    r"montering",
    r"construction (?:work|services?)",
)

REVERSE_CHARGE_KEYWORDS = _patterns(
    r"reverse charge",
    r"omvänd skattskyldighet",
    r"omvänd moms",
    r"vat reverse",
    r"intra-community",
    r"eu-tjänst",
)

SERVICE_KEYWORDS = _patterns(
    r"service",
    r"tjänst",
    r"licen[sc]",
    r"subscription",
    r"abonnemang",
    r"\bsaas\b",
    r"consult",
    r"konsult",
    r"software",
)

EU_COUNTRY_NAMES = (
    "tyskland", "germany", "frankrike", "france", "spanien", "spain",
    "italien", "italy", "nederländerna", "netherlands", "holland", "belgien", "belgium",
    "österrike", "austria", "polen", "poland", "danmark", "denmark",
    "finland", "irland", "ireland", "portugal", "grekland", "greece",
    "luxemburg", "luxembourg", "estland", "estonia", "lettland", "latvia",
    "litauen", "lithuania", "tjeckien", "czech", "slovakien", "slovakia",
    "slovenien", "slovenia", "ungern", "hungary", "rumänien", "romania",
    "bulgarien", "bulgaria", "kroatien", "croatia", "cypern", "cyprus", "malta",
)  # fmt: skip

EU_COUNTRY_CODES = frozenset(
    {
        "AT", "BE", "BG", "CY", "CZ", "DE", "DK", "EE", "ES", "FI", "FR", "GR", "EL", "HR",
        "HU", "IE", "IT", "LT", "LU", "LV", "MT", "NL", "PL", "PT", "RO", "SI", "SK",
    }
)  # fmt: skip


class VoucherLine(BaseModel):
    """One debit or credit leg of a voucher."""

    account: str
    account_name: str = ""
    debit: Decimal = Decimal("0")
    credit: Decimal = Decimal("0")
    description: str = ""


class VatSplit(BaseModel):
    """Net/VAT/gross split of an amount."""

    net_amount: Decimal
    vat_amount: Decimal
    gross_amount: Decimal


class ReverseChargeDetection(BaseModel):
    is_reverse_charge: bool
    type: ReverseChargeType | None = None


class VatCalculation(BaseModel):
    """Complete VAT treatment of a purchase document.

    Attributes:
        net_amount: Amount excluding VAT
        vat_amount: Input VAT on the face of the invoice (0 for reverse charge)
        gross_amount: Amount including VAT
        vat_rate: Applied VAT rate as a fraction
        vat_rate_type: Canonical rate category
        vat_account: Target VAT account (None for zero-rated documents)
        is_reverse_charge: Buyer reports both input and output VAT
        is_eu_purchase: Reverse charge due to an EU acquisition
        is_construction: Reverse charge due to construction services
        reverse_charge_type: Reason for reverse charge, if any
        purchase_account: Suggested purchase account for reverse-charge documents
        additional_lines: Mirrored input/output VAT legs for reverse charge
    """

    net_amount: Decimal
    vat_amount: Decimal
    gross_amount: Decimal
    vat_rate: Decimal
    vat_rate_type: VatRateType
    vat_account: VatAccount | None
    is_reverse_charge: bool = False
    is_eu_purchase: bool = False
    is_construction: bool = False
    reverse_charge_type: ReverseChargeType | None = None
    purchase_account: VatAccount | None = None
    additional_lines: list[VoucherLine] = []


class VatValidation(BaseModel):
    is_valid: bool
    expected_vat: Decimal
    difference: Decimal
    suggested_rate: VatRateType
    actual_rate: Decimal


class VatReportingPeriod(BaseModel):
    year: int
    period: Literal["monthly", "quarterly", "yearly"]
    period_number: int
    period_label: str


def to_decimal(value: Number) -> Decimal:
    """Convert a numeric value to Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_money(value: Number) -> Decimal:
    """Round to whole öre using round-half-up."""
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def calculate_vat_from_gross(
    gross_amount: Number, vat_rate: Number = VAT_RATES[VatRateType.STANDARD]
) -> VatSplit:
    """Split a VAT-inclusive amount into net and VAT.

    Args:
        gross_amount: Amount including VAT
        vat_rate: VAT rate as a fraction (0.25 for 25%)

    Returns:
        VatSplit with rounded net and VAT amounts
    """
    gross = to_decimal(gross_amount)
    rate = to_decimal(vat_rate)
    vat = round_money(gross * rate / (1 + rate))
    net = round_money(gross - vat)
    return VatSplit(net_amount=net, vat_amount=vat, gross_amount=round_money(gross))


def calculate_vat_from_net(
    net_amount: Number, vat_rate: Number = VAT_RATES[VatRateType.STANDARD]
) -> VatSplit:
    """Add VAT to a net amount.

    Args:
        net_amount: Amount excluding VAT
        vat_rate: VAT rate as a fraction (0.25 for 25%)

    Returns:
        VatSplit with rounded VAT and gross amounts
    """
    net = to_decimal(net_amount)
    vat = round_money(net * to_decimal(vat_rate))
    gross = round_money(net + vat)
    return VatSplit(net_amount=round_money(net), vat_amount=vat, gross_amount=gross)


def _text(*parts: str | None) -> str:
    return " ".join(p for p in parts if p).lower()


def detect_vat_rate(
    description: str | None,
    supplier: str | None = None,
    line_item_description: str | None = None,
) -> VatRateType:
    """Detect the VAT rate category from document text.

    Keyword groups are checked in order (12%, 6%, 0%); the first hit wins and
    anything unrecognized is standard rated.
    """
    text = _text(description, supplier, line_item_description)

    for rate_type, patterns in VAT_RATE_KEYWORDS:
        if any(p.search(text) for p in patterns):
            return rate_type

    return VatRateType.STANDARD


def _is_eu_country(country: str) -> bool:
    normalized = country.strip()
    if normalized.upper() in EU_COUNTRY_CODES:
        return True
    lowered = normalized.lower()
    return any(name in lowered for name in EU_COUNTRY_NAMES)


def detect_reverse_charge(
    description: str | None,
    supplier: str | None = None,
    supplier_country: str | None = None,
) -> ReverseChargeDetection:
    """Detect whether the buyer is liable for VAT (reverse charge).

    Order matters: construction services first, then EU supplier country
    (service vs goods by description), then explicit reverse-charge phrasing.
    """
    text = _text(description, supplier)

    if any(p.search(text) for p in CONSTRUCTION_KEYWORDS):
        return ReverseChargeDetection(is_reverse_charge=True, type=ReverseChargeType.CONSTRUCTION)

    if supplier_country and _is_eu_country(supplier_country):
        is_service = any(p.search(text) for p in SERVICE_KEYWORDS)
        return ReverseChargeDetection(
            is_reverse_charge=True,
            type=ReverseChargeType.EU_SERVICE if is_service else ReverseChargeType.EU_GOODS,
        )

    if any(p.search(text) for p in REVERSE_CHARGE_KEYWORDS):
        return ReverseChargeDetection(is_reverse_charge=True, type=ReverseChargeType.EU_SERVICE)

    return ReverseChargeDetection(is_reverse_charge=False)


def _snap_explicit_rate(explicit_vat_rate: Number) -> VatRateType:
    rate = to_decimal(explicit_vat_rate)
    if rate > 1:
        rate = rate / 100

    closest = min(VAT_RATES, key=lambda t: abs(VAT_RATES[t] - rate))
    if abs(VAT_RATES[closest] - rate) <= EXPLICIT_RATE_TOLERANCE:
        return closest

    logger.warning(f"Unrecognized VAT rate {explicit_vat_rate}, falling back to standard rate")
    return VatRateType.STANDARD


def get_vat_account(
    rate_type: VatRateType, direction: Literal["input", "output"] = "input"
) -> VatAccount | None:
    """Look up the VAT account for a rate and direction (None for zero-rated)."""
    table = _INPUT_ACCOUNTS if direction == "input" else _OUTPUT_ACCOUNTS
    key = table.get(rate_type)
    return VAT_ACCOUNTS[key] if key else None


def _reverse_charge_purchase_account(rc_type: ReverseChargeType) -> VatAccount:
    if rc_type == ReverseChargeType.CONSTRUCTION:
        return VAT_ACCOUNTS["PURCHASE_CONSTRUCTION"]
    if rc_type == ReverseChargeType.EU_GOODS:
        return VAT_ACCOUNTS["PURCHASE_EU_GOODS"]
    return VAT_ACCOUNTS["PURCHASE_EU_SERVICES"]


def calculate_complete_vat(
    amount: Number,
    is_gross: bool,
    description: str | None,
    supplier: str | None = None,
    supplier_country: str | None = None,
    explicit_vat_rate: Number | None = None,
) -> VatCalculation:
    """Complete VAT calculation including reverse charge.

    Args:
        amount: Document amount
        is_gross: Whether ``amount`` includes VAT
        description: Document description used for keyword detection
        supplier: Supplier name
        supplier_country: Supplier country name or ISO code
        explicit_vat_rate: Rate stated on the document, if known

    Returns:
        VatCalculation. For reverse charge the primary VAT amount is 0, net
        equals the input amount and ``additional_lines`` holds an input VAT
        debit and an output VAT credit at 25% of net.
    """
    reverse_charge = detect_reverse_charge(description, supplier, supplier_country)

    if explicit_vat_rate is not None:
        vat_rate_type = _snap_explicit_rate(explicit_vat_rate)
    else:
        vat_rate_type = detect_vat_rate(description, supplier)
    vat_rate = VAT_RATES[vat_rate_type]

    if reverse_charge.is_reverse_charge:
        split = VatSplit(
            net_amount=round_money(amount),
            vat_amount=Decimal("0.00"),
            gross_amount=round_money(amount),
        )
    elif is_gross:
        split = calculate_vat_from_gross(amount, vat_rate)
    else:
        split = calculate_vat_from_net(amount, vat_rate)

    if not reverse_charge.is_reverse_charge:
        return VatCalculation(
            **split.model_dump(),
            vat_rate=vat_rate,
            vat_rate_type=vat_rate_type,
            vat_account=get_vat_account(vat_rate_type, "input"),
        )

    rc_type = reverse_charge.type or ReverseChargeType.EU_SERVICE
    reverse_vat = round_money(split.net_amount * VAT_RATES[VatRateType.STANDARD])
    rc_input = VAT_ACCOUNTS["REVERSE_CHARGE_INPUT"]
    rc_output = VAT_ACCOUNTS["REVERSE_CHARGE_OUTPUT"]

    additional_lines = [
        VoucherLine(
            account=rc_input.account,
            account_name=rc_input.name,
            debit=reverse_vat,
            credit=Decimal("0"),
            description="Input VAT, reverse charge",
        ),
        VoucherLine(
            account=rc_output.account,
            account_name=rc_output.name,
            debit=Decimal("0"),
            credit=reverse_vat,
            description="Output VAT, reverse charge",
        ),
    ]

    return VatCalculation(
        **split.model_dump(),
        vat_rate=vat_rate,
        vat_rate_type=vat_rate_type,
        vat_account=rc_input,
        is_reverse_charge=True,
        is_eu_purchase=rc_type in (ReverseChargeType.EU_SERVICE, ReverseChargeType.EU_GOODS),
        is_construction=rc_type == ReverseChargeType.CONSTRUCTION,
        reverse_charge_type=rc_type,
        purchase_account=_reverse_charge_purchase_account(rc_type),
        additional_lines=additional_lines,
    )


def implied_vat_rate(gross_amount: Number, vat_amount: Number | None) -> Decimal | None:
    """Rate implied by a VAT amount stated on a gross document.

    Returns:
        ``vat / (gross - vat)``, or None when no positive VAT below the gross
        amount is stated
    """
    if vat_amount is None:
        return None
    gross = to_decimal(gross_amount)
    vat = to_decimal(vat_amount)
    if vat <= 0 or vat >= gross:
        return None
    return vat / (gross - vat)


def validate_vat_amount(
    net_amount: Number,
    vat_amount: Number,
    gross_amount: Number | None = None,
    tolerance: Number = 1,
) -> VatValidation:
    """Check a stated VAT amount against the closest canonical rate.

    Args:
        net_amount: Stated net amount (derived from gross - VAT when not positive)
        vat_amount: Stated VAT amount
        gross_amount: Stated gross amount
        tolerance: Allowed absolute difference in kronor

    Returns:
        VatValidation with the expected VAT and the rate it implies
    """
    net = to_decimal(net_amount)
    vat = to_decimal(vat_amount)
    if net <= 0 and gross_amount is not None:
        net = to_decimal(gross_amount) - vat

    actual_rate = vat / net if net > 0 else Decimal("0")
    suggested = min(VAT_RATES, key=lambda t: abs(VAT_RATES[t] - actual_rate))
    expected_vat = round_money(net * VAT_RATES[suggested])
    difference = abs(vat - expected_vat)

    return VatValidation(
        is_valid=difference <= to_decimal(tolerance),
        expected_vat=expected_vat,
        difference=difference,
        suggested_rate=suggested,
        actual_rate=actual_rate,
    )


def generate_vat_voucher_lines(
    vat_calculation: VatCalculation,
    cost_account: str,
    cost_account_name: str = "",
) -> list[VoucherLine]:
    """Build the debit side of a purchase voucher.

    Emits the cost line at net, the input VAT line (skipped for reverse
    charge or zero VAT), then any reverse-charge legs. Callers add the
    liability/payment credit and check ``is_balanced`` before posting.
    """
    lines = [
        VoucherLine(
            account=cost_account,
            account_name=cost_account_name,
            debit=vat_calculation.net_amount,
            description="Purchase",
        )
    ]

    if (
        vat_calculation.vat_amount > 0
        and not vat_calculation.is_reverse_charge
        and vat_calculation.vat_account is not None
    ):
        percent = (vat_calculation.vat_rate * 100).quantize(Decimal("1"))
        lines.append(
            VoucherLine(
                account=vat_calculation.vat_account.account,
                account_name=vat_calculation.vat_account.name,
                debit=vat_calculation.vat_amount,
                description=f"Input VAT {percent}%",
            )
        )

    lines.extend(vat_calculation.additional_lines)
    return lines


def voucher_totals(lines: list[VoucherLine]) -> tuple[Decimal, Decimal]:
    """Return (total debit, total credit)."""
    debit = sum((line.debit for line in lines), Decimal("0"))
    credit = sum((line.credit for line in lines), Decimal("0"))
    return debit, credit


def is_balanced(lines: list[VoucherLine]) -> bool:
    debit, credit = voucher_totals(lines)
    return round_money(debit) == round_money(credit)


def get_vat_reporting_period(document_date: date) -> VatReportingPeriod:
    """Monthly VAT reporting period a document date belongs to."""
    return VatReportingPeriod(
        year=document_date.year,
        period="monthly",
        period_number=document_date.month,
        period_label=f"{document_date.year}-{document_date.month:02d}",
    )
