"""VAT reporting (momsrapportering).

Aggregates approved documents into a VAT summary per reporting period and
renders the Skatteverket VAT return boxes.
"""

import calendar
import logging
import xml.etree.ElementTree as ET
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from pydantic import BaseModel, Field

from ledger.classification.schema import AccountingJob
from ledger.jobs.store import list_jobs
from ledger.storage.service import KeyValueStore
from ledger.vat.calculator import (
    VAT_RATES,
    ReverseChargeType,
    VatRateType,
    calculate_complete_vat,
    implied_vat_rate,
    round_money,
)

logger = logging.getLogger(__name__)

ReportingPeriodType = Literal["monthly", "quarterly", "yearly"]

REPORTABLE_STATUSES = ("approved", "sent")

INPUT_VAT_ACCOUNT = "2640"
EU_PURCHASE_VAT_ACCOUNT = "2645"
REVERSE_OUTPUT_VAT_ACCOUNT = "2614"

SKV_NAMESPACE = "http://xmls.skatteverket.se/moms"


class VatEntry(BaseModel):
    job_id: str
    document_date: date
    supplier: str
    description: str
    net_amount: Decimal
    vat_amount: Decimal
    vat_rate: Decimal
    vat_account: str
    is_input_vat: bool
    reverse_charge_type: ReverseChargeType | None = None


class VatBucket(BaseModel):
    net: Decimal = Decimal("0")
    vat: Decimal = Decimal("0")
    count: int = 0

    def add(self, entry: VatEntry) -> None:
        self.net += entry.net_amount
        self.vat += entry.vat_amount
        self.count += 1


class OutputVat(BaseModel):
    rate25: VatBucket = Field(default_factory=VatBucket)
    rate12: VatBucket = Field(default_factory=VatBucket)
    rate6: VatBucket = Field(default_factory=VatBucket)
    reverse_charge: VatBucket = Field(default_factory=VatBucket)
    total: Decimal = Decimal("0")


class InputVat(BaseModel):
    domestic: VatBucket = Field(default_factory=VatBucket)
    eu_goods: VatBucket = Field(default_factory=VatBucket)
    eu_services: VatBucket = Field(default_factory=VatBucket)
    construction: VatBucket = Field(default_factory=VatBucket)
    total: Decimal = Decimal("0")


class ReportPeriod(BaseModel):
    start: date
    end: date
    type: ReportingPeriodType


class VatSummary(BaseModel):
    """VAT totals for one company and reporting period."""

    company_id: str
    period: ReportPeriod
    output_vat: OutputVat
    input_vat: InputVat
    net_vat: Decimal
    entries: list[VatEntry]
    generated_at: datetime


class SkvExportData(BaseModel):
    """Skatteverket VAT return boxes, in whole kronor."""

    period: str
    organisation_number: str
    box05_sales_25: int = 0
    box06_sales_12: int = 0
    box07_sales_6: int = 0
    box10_vat_25: int = 0
    box11_vat_12: int = 0
    box12_vat_6: int = 0
    box20_eu_purchase_goods: int = 0
    box21_eu_purchase_services: int = 0
    box24_domestic_reverse_charge_services: int = 0
    box30_reverse_charge_vat_25: int = 0
    box48_input_vat: int = 0
    box49_net_vat: int = 0


def _whole_kronor(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _document_entries(job: AccountingJob) -> list[VatEntry]:
    classification = job.classification
    if classification is None:
        return []

    vat_calc = calculate_complete_vat(
        classification.total_amount,
        True,
        classification.text,
        classification.supplier,
        classification.supplier_country,
        implied_vat_rate(classification.total_amount, classification.vat_amount),
    )
    common = {
        "job_id": job.job_id,
        "document_date": classification.invoice_date,
        "supplier": classification.supplier or "Unknown",
        "description": classification.doc_type.value,
    }

    if vat_calc.is_reverse_charge:
        reverse_vat = round_money(vat_calc.net_amount * VAT_RATES[VatRateType.STANDARD])
        return [
            VatEntry(
                **common,
                net_amount=vat_calc.net_amount,
                vat_amount=reverse_vat,
                vat_rate=VAT_RATES[VatRateType.STANDARD],
                vat_account=EU_PURCHASE_VAT_ACCOUNT,
                is_input_vat=True,
                reverse_charge_type=vat_calc.reverse_charge_type,
            ),
            VatEntry(
                **common,
                net_amount=vat_calc.net_amount,
                vat_amount=reverse_vat,
                vat_rate=VAT_RATES[VatRateType.STANDARD],
                vat_account=REVERSE_OUTPUT_VAT_ACCOUNT,
                is_input_vat=False,
                reverse_charge_type=vat_calc.reverse_charge_type,
            ),
        ]

    stated_vat = classification.vat_amount
    vat_amount = stated_vat if stated_vat is not None and stated_vat > 0 else vat_calc.vat_amount
    if vat_amount <= 0:
        return []

    return [
        VatEntry(
            **common,
            net_amount=round_money(classification.total_amount - vat_amount),
            vat_amount=round_money(vat_amount),
            vat_rate=vat_calc.vat_rate,
            vat_account=INPUT_VAT_ACCOUNT,
            is_input_vat=True,
        )
    ]


def extract_vat_entries(jobs: list[AccountingJob]) -> list[VatEntry]:
    """Turn approved or sent jobs into VAT entries.

    Reverse-charge documents yield an input and an output leg at 25% of net;
    documents without VAT yield nothing.
    """
    entries: list[VatEntry] = []
    for job in jobs:
        if job.status not in REPORTABLE_STATUSES:
            continue
        entries.extend(_document_entries(job))
    return entries


def calculate_summary(
    entries: list[VatEntry],
    company_id: str,
    start: date,
    end: date,
    period_type: ReportingPeriodType = "monthly",
) -> VatSummary:
    output_vat = OutputVat()
    input_vat = InputVat()

    for entry in entries:
        if entry.is_input_vat:
            if entry.reverse_charge_type == ReverseChargeType.EU_GOODS:
                input_vat.eu_goods.add(entry)
            elif entry.reverse_charge_type == ReverseChargeType.EU_SERVICE:
                input_vat.eu_services.add(entry)
            elif entry.reverse_charge_type == ReverseChargeType.CONSTRUCTION:
                input_vat.construction.add(entry)
            else:
                input_vat.domestic.add(entry)
            input_vat.total += entry.vat_amount
        else:
            if entry.vat_account == REVERSE_OUTPUT_VAT_ACCOUNT:
                output_vat.reverse_charge.add(entry)
            elif entry.vat_rate == VAT_RATES[VatRateType.STANDARD]:
                output_vat.rate25.add(entry)
            elif entry.vat_rate == VAT_RATES[VatRateType.REDUCED]:
                output_vat.rate12.add(entry)
            elif entry.vat_rate == VAT_RATES[VatRateType.LOW]:
                output_vat.rate6.add(entry)
            output_vat.total += entry.vat_amount

    return VatSummary(
        company_id=company_id,
        period=ReportPeriod(start=start, end=end, type=period_type),
        output_vat=output_vat,
        input_vat=input_vat,
        net_vat=round_money(output_vat.total - input_vat.total),
        entries=entries,
        generated_at=datetime.now(UTC),
    )


def generate_report(
    store: KeyValueStore,
    company_id: str,
    start: date,
    end: date,
    period_type: ReportingPeriodType = "monthly",
) -> VatSummary:
    """Build the VAT summary for approved documents dated within [start, end]."""
    jobs = [
        job
        for job in list_jobs(store, company_id)
        if job.classification is not None and start <= job.classification.invoice_date <= end
    ]
    entries = extract_vat_entries(jobs)
    logger.info(
        f"VAT report for {company_id} {start}..{end}: {len(entries)} entries from {len(jobs)} jobs"
    )
    return calculate_summary(entries, company_id, start, end, period_type)


def generate_skv_export(summary: VatSummary, organisation_number: str) -> SkvExportData:
    """Map a VAT summary onto the Skatteverket return boxes."""
    output_vat = summary.output_vat
    input_vat = summary.input_vat
    start = summary.period.start

    return SkvExportData(
        period=f"{start.year}{start.month:02d}",
        organisation_number=organisation_number,
        box05_sales_25=_whole_kronor(output_vat.rate25.net),
        box06_sales_12=_whole_kronor(output_vat.rate12.net),
        box07_sales_6=_whole_kronor(output_vat.rate6.net),
        box10_vat_25=_whole_kronor(output_vat.rate25.vat),
        box11_vat_12=_whole_kronor(output_vat.rate12.vat),
        box12_vat_6=_whole_kronor(output_vat.rate6.vat),
        box20_eu_purchase_goods=_whole_kronor(input_vat.eu_goods.net),
        box21_eu_purchase_services=_whole_kronor(input_vat.eu_services.net),
        box24_domestic_reverse_charge_services=_whole_kronor(input_vat.construction.net),
        box30_reverse_charge_vat_25=_whole_kronor(output_vat.reverse_charge.vat),
        box48_input_vat=_whole_kronor(input_vat.total),
        box49_net_vat=_whole_kronor(summary.net_vat),
    )


def generate_xml(data: SkvExportData) -> str:
    """Render the VAT return as Skatteverket ``Momsdeklaration`` XML."""
    root = ET.Element("Momsdeklaration", {"xmlns": SKV_NAMESPACE})
    fields = [
        ("Period", data.period),
        ("Organisationsnummer", data.organisation_number),
        ("ForsMomsEjAnnan", data.box05_sales_25),
        ("ForsMomsplikt12", data.box06_sales_12),
        ("ForsMomsplikt6", data.box07_sales_6),
        ("MomsUtgHog", data.box10_vat_25),
        ("MomsUtgMedel", data.box11_vat_12),
        ("MomsUtgLag", data.box12_vat_6),
        ("InkopVaruAnnatEg", data.box20_eu_purchase_goods),
        ("InkopTjanstAnnatEg", data.box21_eu_purchase_services),
        ("InkopTjanstSverige", data.box24_domestic_reverse_charge_services),
        ("MomsInkopUtgHog", data.box30_reverse_charge_vat_25),
        ("MomsIngAvdr", data.box48_input_vat),
        ("MomsBetala", data.box49_net_vat),
    ]
    for tag, value in fields:
        ET.SubElement(root, tag).text = str(value)

    ET.indent(root)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode")


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def reporting_periods(
    today: date, count: int = 6, period_type: ReportingPeriodType = "monthly"
) -> list[tuple[date, date]]:
    """The ``count`` most recent reporting periods, newest first."""
    periods: list[tuple[date, date]] = []

    for i in range(count):
        if period_type == "monthly":
            index = today.year * 12 + (today.month - 1) - i
            year, month = divmod(index, 12)
            periods.append((date(year, month + 1, 1), _month_end(year, month + 1)))
        elif period_type == "quarterly":
            index = today.year * 4 + (today.month - 1) // 3 - i
            year, quarter = divmod(index, 4)
            start_month = quarter * 3 + 1
            periods.append((date(year, start_month, 1), _month_end(year, start_month + 2)))
        else:
            year = today.year - i
            periods.append((date(year, 1, 1), date(year, 12, 31)))

    return periods


def get_historical_reports(
    store: KeyValueStore,
    company_id: str,
    today: date,
    number_of_periods: int = 6,
    period_type: ReportingPeriodType = "monthly",
) -> list[VatSummary]:
    return [
        generate_report(store, company_id, start, end, period_type)
        for start, end in reporting_periods(today, number_of_periods, period_type)
    ]
