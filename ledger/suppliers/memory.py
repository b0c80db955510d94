"""Supplier memory.

Remembers which ledger accounts a company has used for each supplier and
learns from operator corrections. The rule engine asks it whether a supplier
is already known to the company.
"""

import logging
import re
from datetime import UTC, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field
from rapidfuzz.distance import Levenshtein

from ledger.storage.service import KeyValueStore, StorageError

logger = logging.getLogger(__name__)

SupplierDocType = Literal["INVOICE", "RECEIPT", "OTHER"]

CORRECTION_WEIGHT = 2
FUZZY_MAX_LENGTH = 15
FUZZY_MAX_DISTANCE = 2

_COMPANY_SUFFIX = re.compile(r"(?:ab|inc\.?|ltd\.?|gmbh)$")
_NON_NAME_CHARS = re.compile(r"[^a-z0-9åäö]")


class AccountHistoryEntry(BaseModel):
    account: str
    account_name: str
    count: int
    last_used: datetime


class SupplierProfile(BaseModel):
    """Per-company learned profile of a supplier."""

    supplier_id: str
    supplier_name: str
    normalized_name: str
    org_number: str | None = None

    default_account: str
    default_account_name: str
    account_history: list[AccountHistoryEntry] = Field(default_factory=list)

    typical_doc_type: SupplierDocType = "INVOICE"

    total_transactions: int = 0
    total_amount: Decimal = Decimal("0")
    average_amount: Decimal = Decimal("0")

    created_at: datetime
    updated_at: datetime
    last_transaction_at: datetime


class AccountSuggestion(BaseModel):
    account: str
    account_name: str
    confidence: float
    source: Literal["supplier_history", "category_match", "default"]
    usage_count: int | None = None


def supplier_pk(company_id: str) -> str:
    return f"SUPPLIER#{company_id}"


def normalize_supplier_name(name: str) -> str:
    """Collapse a supplier name to a comparison key.

    Lowercases, drops whitespace and a trailing company form
    (AB, Inc, Ltd, GmbH), then strips punctuation.
    """
    normalized = re.sub(r"\s+", "", (name or "").lower())
    normalized = _COMPANY_SUFFIX.sub("", normalized)
    return _NON_NAME_CHARS.sub("", normalized)


def _save_profile(store: KeyValueStore, company_id: str, profile: SupplierProfile) -> None:
    store.put_item(
        supplier_pk(company_id), profile.normalized_name, profile.model_dump(mode="json")
    )


def get_supplier_profile(
    store: KeyValueStore, company_id: str, supplier_name: str
) -> SupplierProfile | None:
    """Look up a supplier's profile; storage failures count as unknown."""
    normalized = normalize_supplier_name(supplier_name)
    if not normalized:
        return None
    try:
        item = store.get_item(supplier_pk(company_id), normalized)
    except StorageError as e:
        logger.error(f"Failed to load supplier profile '{supplier_name}' for {company_id}: {e}")
        return None
    return SupplierProfile.model_validate(item) if item else None


def is_known_supplier(store: KeyValueStore, company_id: str, supplier_name: str) -> bool:
    return get_supplier_profile(store, company_id, supplier_name) is not None


def _bump_account(
    profile: SupplierProfile, account: str, account_name: str, weight: int, now: datetime
) -> None:
    entry = next((a for a in profile.account_history if a.account == account), None)
    if entry:
        entry.count += weight
        entry.last_used = now
    else:
        profile.account_history.append(
            AccountHistoryEntry(
                account=account, account_name=account_name, count=weight, last_used=now
            )
        )
    profile.account_history.sort(key=lambda a: a.count, reverse=True)


def record_transaction(
    store: KeyValueStore,
    company_id: str,
    supplier_name: str,
    account: str,
    account_name: str,
    amount: Decimal,
    doc_type: SupplierDocType = "INVOICE",
    org_number: str | None = None,
) -> SupplierProfile:
    """Register an approved booking and update the supplier's profile.

    Creates the profile on first sight; afterwards the most used account
    becomes the default.
    """
    normalized = normalize_supplier_name(supplier_name)
    now = datetime.now(UTC)
    profile = get_supplier_profile(store, company_id, supplier_name)

    if profile is None:
        profile = SupplierProfile(
            supplier_id=f"{company_id}-{normalized}",
            supplier_name=supplier_name,
            normalized_name=normalized,
            org_number=org_number,
            default_account=account,
            default_account_name=account_name,
            account_history=[
                AccountHistoryEntry(
                    account=account, account_name=account_name, count=1, last_used=now
                )
            ],
            typical_doc_type=doc_type,
            total_transactions=1,
            total_amount=amount,
            average_amount=amount,
            created_at=now,
            updated_at=now,
            last_transaction_at=now,
        )
        logger.info(f"Created supplier profile for {supplier_name}")
    else:
        _bump_account(profile, account, account_name, 1, now)
        top = profile.account_history[0]
        profile.default_account = top.account
        profile.default_account_name = top.account_name
        profile.total_transactions += 1
        profile.total_amount += amount
        profile.average_amount = profile.total_amount / profile.total_transactions
        profile.last_transaction_at = now
        profile.updated_at = now

    _save_profile(store, company_id, profile)
    return profile


def record_correction(
    store: KeyValueStore,
    company_id: str,
    supplier_name: str,
    original_account: str,
    corrected_account: str,
    corrected_account_name: str,
) -> SupplierProfile | None:
    """Learn from an operator changing the suggested account.

    A correction weighs twice as much as a regular booking. Unknown
    suppliers are ignored.
    """
    profile = get_supplier_profile(store, company_id, supplier_name)
    if profile is None:
        return None

    now = datetime.now(UTC)
    _bump_account(profile, corrected_account, corrected_account_name, CORRECTION_WEIGHT, now)
    if profile.account_history[0].account == corrected_account:
        profile.default_account = corrected_account
        profile.default_account_name = corrected_account_name
    profile.updated_at = now

    _save_profile(store, company_id, profile)
    logger.info(
        f"Recorded correction for {supplier_name}: {original_account} -> {corrected_account}"
    )
    return profile


def suggest_account_from_history(
    store: KeyValueStore, company_id: str, supplier_name: str
) -> AccountSuggestion | None:
    profile = get_supplier_profile(store, company_id, supplier_name)
    if profile is None:
        return None

    if profile.account_history:
        top = profile.account_history[0]
        total_usage = sum(a.count for a in profile.account_history)
        return AccountSuggestion(
            account=top.account,
            account_name=top.account_name,
            confidence=min(0.95, 0.7 + (top.count / total_usage) * 0.25),
            source="supplier_history",
            usage_count=top.count,
        )

    return AccountSuggestion(
        account=profile.default_account,
        account_name=profile.default_account_name,
        confidence=0.8,
        source="supplier_history",
    )


def get_known_suppliers(
    store: KeyValueStore, company_id: str, limit: int = 100
) -> list[SupplierProfile]:
    try:
        items = store.query(supplier_pk(company_id), limit=limit)
    except StorageError as e:
        logger.error(f"Failed to list suppliers for {company_id}: {e}")
        return []
    return [SupplierProfile.model_validate(item) for item in items]


def find_similar_supplier(
    store: KeyValueStore, company_id: str, supplier_name: str
) -> SupplierProfile | None:
    """Find a known supplier whose name is close to ``supplier_name``.

    A candidate matches on equal normalized names, when one name contains
    the other, or, for short names, within a Levenshtein distance of 2.
    """
    normalized = normalize_supplier_name(supplier_name)
    if not normalized:
        return None

    for supplier in get_known_suppliers(store, company_id):
        candidate = supplier.normalized_name
        if candidate == normalized:
            return supplier
        if candidate and (candidate in normalized or normalized in candidate):
            return supplier
        if len(normalized) < FUZZY_MAX_LENGTH and len(candidate) < FUZZY_MAX_LENGTH:
            if Levenshtein.distance(normalized, candidate) <= FUZZY_MAX_DISTANCE:
                return supplier

    return None
