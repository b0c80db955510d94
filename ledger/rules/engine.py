"""Auto-approval rule engine.

Evaluates a company's prioritized approval rules against a classified
document. Every enabled rule is evaluated and recorded for the audit trail;
the matching rule with the lowest priority number then decides the action.
A document below the confidence floor is always flagged for review, whatever
the rules say.
"""

import logging
import re
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from ledger.classification.schema import Classification, DocumentType
from ledger.rules.triggers import TriggerCounter, rules_pk
from ledger.storage.service import KeyValueStore, StorageError
from ledger.suppliers.memory import is_known_supplier

logger = logging.getLogger(__name__)

CONFIDENCE_FLOOR = 0.7
KNOWN_SUPPLIER_CONFIDENCE = 0.9


class RuleType(StrEnum):
    SUPPLIER_WHITELIST = "supplier_whitelist"
    AMOUNT_THRESHOLD = "amount_threshold"
    ACCOUNT_AUTO = "account_auto"
    CONFIDENCE_THRESHOLD = "confidence_threshold"
    KNOWN_SUPPLIER = "known_supplier"
    COMBINED = "combined"


class RuleAction(StrEnum):
    AUTO_APPROVE = "auto_approve"
    FLAG_FOR_REVIEW = "flag_for_review"
    REJECT = "reject"


class FinalAction(StrEnum):
    AUTO_APPROVE = "auto_approve"
    MANUAL_REVIEW = "manual_review"
    FLAG_FOR_REVIEW = "flag_for_review"
    REJECT = "reject"


# Higher wins when rules tie on priority.
ACTION_SEVERITY = {
    RuleAction.AUTO_APPROVE: 0,
    RuleAction.FLAG_FOR_REVIEW: 1,
    RuleAction.REJECT: 2,
}


class RuleConditions(BaseModel):
    """Conditions of a rule; unset conditions are not checked."""

    supplier_pattern: str | None = Field(None, description="Case-insensitive supplier regex")
    supplier_exact: list[str] = Field(
        default_factory=list, description="Supplier names matched as substrings"
    )
    max_amount: Decimal | None = Field(None, description="Maximum total amount (inclusive)")
    min_amount: Decimal | None = Field(None, description="Minimum total amount (inclusive)")
    accounts: list[str] = Field(
        default_factory=list, description="Ledger accounts, any line item must use one"
    )
    min_confidence: float | None = Field(None, description="Minimum overall confidence", ge=0, le=1)
    doc_types: list[DocumentType] = Field(
        default_factory=list, description="Allowed document types"
    )
    operator: Literal["AND", "OR"] = Field("AND", description="How conditions are combined")


class RuleDefinition(BaseModel):
    """Operator-supplied part of an approval rule."""

    name: str
    description: str = ""
    type: RuleType
    enabled: bool = True
    priority: int = Field(..., description="Lower is evaluated first and wins")
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    action: RuleAction
    created_by: str = "system"


class ApprovalRule(RuleDefinition):
    """Persisted approval rule of one company."""

    rule_id: str
    company_id: str
    created_at: datetime
    updated_at: datetime
    trigger_count: int = 0
    last_triggered_at: datetime | None = None


class RuleMatch(BaseModel):
    rule: ApprovalRule
    matched: bool
    reason: str


class RuleEvaluationResult(BaseModel):
    """Outcome of evaluating a company's rules against one document.

    Attributes:
        should_auto_approve: Whether the document may skip manual review
        matched_rules: Every enabled rule with its match result and reason
        final_action: Resulting disposition
        confidence: Overall classification confidence used
        summary: Human-readable explanation of the decision
    """

    should_auto_approve: bool
    matched_rules: list[RuleMatch]
    final_action: FinalAction
    confidence: float
    summary: str


DEFAULT_RULES: tuple[RuleDefinition, ...] = (
    RuleDefinition(
        name="High confidence + known supplier",
        description="Auto-approve when confidence is >95% and the supplier is known",
        type=RuleType.COMBINED,
        priority=1,
        conditions=RuleConditions(min_confidence=0.95, operator="AND"),
        action=RuleAction.AUTO_APPROVE,
    ),
    RuleDefinition(
        name="Small receipts",
        description="Auto-approve receipts up to 500 SEK with confidence >80%",
        type=RuleType.COMBINED,
        priority=2,
        conditions=RuleConditions(
            max_amount=Decimal("500"),
            min_confidence=0.8,
            doc_types=[DocumentType.RECEIPT],
            operator="AND",
        ),
        action=RuleAction.AUTO_APPROVE,
    ),
    RuleDefinition(
        name="Cloud services",
        description="Auto-approve invoices from AWS, Google, Microsoft booked to account 6250",
        type=RuleType.SUPPLIER_WHITELIST,
        priority=3,
        conditions=RuleConditions(
            supplier_pattern="(aws|amazon|google|microsoft|azure|github|vercel)",
            accounts=["6250"],
            operator="AND",
        ),
        action=RuleAction.AUTO_APPROVE,
    ),
    RuleDefinition(
        name="Large amounts - manual review",
        description="Flag documents of 50 000 SEK or more for manual review",
        type=RuleType.AMOUNT_THRESHOLD,
        priority=0,
        conditions=RuleConditions(min_amount=Decimal("50000")),
        action=RuleAction.FLAG_FOR_REVIEW,
    ),
    RuleDefinition(
        name="Low confidence",
        description="Flag documents the classification is unsure about (<70%)",
        type=RuleType.CONFIDENCE_THRESHOLD,
        priority=0,
        conditions=RuleConditions(min_confidence=0),
        action=RuleAction.FLAG_FOR_REVIEW,
    ),
)

_default_counter: TriggerCounter | None = None


def get_trigger_counter() -> TriggerCounter:
    """Get the process-wide trigger counter, creating it on first use."""
    global _default_counter
    if _default_counter is None:
        _default_counter = TriggerCounter()
    return _default_counter


def _supplier_pattern_matches(pattern: str, supplier: str, rule_id: str) -> bool:
    try:
        return re.search(pattern, supplier, re.IGNORECASE) is not None
    except re.error as e:
        logger.warning(f"Rule {rule_id} has an invalid supplier pattern {pattern!r}: {e}")
        return False


def evaluate_rule(
    rule: ApprovalRule,
    classification: Classification,
    confidence: float,
    is_known_supplier: bool,
) -> RuleMatch:
    """Evaluate one rule's conditions against a document.

    A rule with ``min_confidence == 0`` and action ``flag_for_review`` is a
    low-confidence catch-all and matches when confidence is below the floor.
    Combined rules requiring confidence of 0.9 or more also require a known
    supplier. A rule without conditions always matches.

    Args:
        rule: Rule to evaluate
        classification: Classified document
        confidence: Overall classification confidence
        is_known_supplier: Whether the supplier is known to the company

    Returns:
        RuleMatch with the names of the passed or failed conditions
    """
    conditions = rule.conditions
    supplier = classification.supplier or ""
    results: list[tuple[str, bool]] = []

    if conditions.supplier_pattern:
        results.append(
            (
                "supplier_pattern",
                _supplier_pattern_matches(conditions.supplier_pattern, supplier, rule.rule_id),
            )
        )

    if conditions.supplier_exact:
        lowered = supplier.lower()
        results.append(
            ("supplier_exact", any(s.lower() in lowered for s in conditions.supplier_exact))
        )

    if conditions.max_amount is not None:
        results.append(("max_amount", classification.total_amount <= conditions.max_amount))

    if conditions.min_amount is not None:
        results.append(("min_amount", classification.total_amount >= conditions.min_amount))

    if conditions.accounts:
        used = classification.suggested_accounts
        results.append(("accounts", any(a in used for a in conditions.accounts)))

    if conditions.min_confidence is not None:
        if conditions.min_confidence == 0 and rule.action == RuleAction.FLAG_FOR_REVIEW:
            results.append(("low_confidence", confidence < CONFIDENCE_FLOOR))
        else:
            results.append(("min_confidence", confidence >= conditions.min_confidence))

    if conditions.doc_types:
        results.append(("doc_type", classification.doc_type in conditions.doc_types))

    if (
        rule.type == RuleType.COMBINED
        and conditions.min_confidence
        and conditions.min_confidence >= KNOWN_SUPPLIER_CONFIDENCE
    ):
        results.append(("known_supplier", is_known_supplier))

    if not results:
        return RuleMatch(rule=rule, matched=True, reason="No conditions - always matches")

    passed = [name for name, ok in results if ok]
    failed = [name for name, ok in results if not ok]
    if conditions.operator == "OR":
        matched = bool(passed)
    else:
        matched = not failed

    reason = f"Matched: {', '.join(passed)}" if matched else f"Missed: {', '.join(failed)}"
    return RuleMatch(rule=rule, matched=matched, reason=reason)


def _select_winner(matches: list[RuleMatch]) -> list[RuleMatch]:
    """Matched rules sharing the lowest priority, most severe action first."""
    matched = [m for m in matches if m.matched]
    if not matched:
        return []
    best_priority = min(m.rule.priority for m in matched)
    winners = [m for m in matched if m.rule.priority == best_priority]
    return sorted(winners, key=lambda m: ACTION_SEVERITY[m.rule.action], reverse=True)


def _build_summary(
    final_action: FinalAction,
    winners: list[RuleMatch],
    matches: list[RuleMatch],
    confidence: float,
) -> str:
    if final_action == FinalAction.AUTO_APPROVE:
        names = [m.rule.name for m in winners if m.rule.action == RuleAction.AUTO_APPROVE]
        return f"Auto-approved: {', '.join(names)}"

    if final_action == FinalAction.REJECT:
        names = [m.rule.name for m in winners if m.rule.action == RuleAction.REJECT]
        return f"Rejected: {', '.join(names)}"

    if final_action == FinalAction.FLAG_FOR_REVIEW:
        names = [
            m.rule.name
            for m in matches
            if m.matched and m.rule.action == RuleAction.FLAG_FOR_REVIEW
        ]
        if confidence < CONFIDENCE_FLOOR:
            names.insert(0, f"confidence {confidence:.2f} below {CONFIDENCE_FLOOR:.2f}")
        return f"Flagged: {', '.join(names)}"

    return "No rule matched - manual review"


def evaluate_rules(
    store: KeyValueStore,
    company_id: str,
    classification: Classification,
    overall_confidence: float,
    trigger_counter: TriggerCounter | None = None,
) -> RuleEvaluationResult:
    """Decide the workflow disposition of a document.

    Evaluates every enabled rule first, then lets the matching rule with the
    lowest priority number decide. Equal priorities resolve to the most
    conservative action. Trigger counts of all matched rules are recorded in
    the background.

    Args:
        store: Key-value store holding rules and supplier profiles
        company_id: Owning company
        classification: Classified document
        overall_confidence: Classification confidence (0-1)
        trigger_counter: Background trigger recorder (process default if None)

    Returns:
        RuleEvaluationResult; documents below 0.7 confidence are always
        ``flag_for_review``
    """
    rules = get_rules(store, company_id)
    known_supplier = is_known_supplier(store, company_id, classification.supplier)

    matches = [
        evaluate_rule(rule, classification, overall_confidence, known_supplier)
        for rule in rules
        if rule.enabled
    ]

    counter = trigger_counter or get_trigger_counter()
    for match in matches:
        if match.matched:
            counter.record(store, company_id, match.rule.rule_id)

    winners = _select_winner(matches)
    if winners:
        final_action = FinalAction(winners[0].rule.action.value)
    else:
        final_action = FinalAction.MANUAL_REVIEW

    if overall_confidence < CONFIDENCE_FLOOR:
        if final_action != FinalAction.FLAG_FOR_REVIEW:
            logger.warning(
                f"Confidence {overall_confidence:.2f} below floor for "
                f"{classification.supplier or 'unknown supplier'}, overriding {final_action}"
            )
        final_action = FinalAction.FLAG_FOR_REVIEW

    return RuleEvaluationResult(
        should_auto_approve=final_action == FinalAction.AUTO_APPROVE,
        matched_rules=matches,
        final_action=final_action,
        confidence=overall_confidence,
        summary=_build_summary(final_action, winners, matches, overall_confidence),
    )


def get_rules(store: KeyValueStore, company_id: str) -> list[ApprovalRule]:
    """All rules of a company sorted by ascending priority.

    Returns an empty list when the store is unavailable, so every document
    falls through to manual review.
    """
    try:
        items = store.query(rules_pk(company_id))
    except StorageError as e:
        logger.error(f"Failed to load rules for {company_id}: {e}")
        return []

    rules = []
    for item in items:
        try:
            rules.append(ApprovalRule.model_validate(item))
        except ValidationError:
            logger.warning(f"Skipping invalid rule record {item.get('sk')} for {company_id}")
    return sorted(rules, key=lambda r: r.priority)


def _new_rule_id() -> str:
    return f"rule-{uuid.uuid4().hex[:12]}"


def add_rule(store: KeyValueStore, company_id: str, definition: RuleDefinition) -> ApprovalRule:
    now = datetime.now(UTC)
    rule = ApprovalRule(
        **definition.model_dump(),
        rule_id=_new_rule_id(),
        company_id=company_id,
        created_at=now,
        updated_at=now,
    )
    store.put_item(rules_pk(company_id), rule.rule_id, rule.model_dump(mode="json"))
    return rule


def create_default_rules(
    store: KeyValueStore, company_id: str, created_by: str = "system"
) -> list[ApprovalRule]:
    """Seed a company with the default rule set."""
    rules = [
        add_rule(store, company_id, definition.model_copy(update={"created_by": created_by}))
        for definition in DEFAULT_RULES
    ]
    logger.info(f"Created {len(rules)} default rules for company {company_id}")
    return rules


def update_rule(
    store: KeyValueStore, company_id: str, rule_id: str, changes: dict[str, Any]
) -> ApprovalRule | None:
    """Apply operator edits to a rule.

    Identity and bookkeeping fields cannot be changed.

    Returns:
        The updated rule, or None if it does not exist
    """
    item = store.get_item(rules_pk(company_id), rule_id)
    if not item:
        return None

    current = ApprovalRule.model_validate(item)
    protected = {"rule_id", "company_id", "created_at", "trigger_count", "last_triggered_at"}
    allowed = {k: v for k, v in changes.items() if k not in protected}

    updated = ApprovalRule.model_validate(
        {**current.model_dump(), **allowed, "updated_at": datetime.now(UTC)}
    )
    store.put_item(rules_pk(company_id), rule_id, updated.model_dump(mode="json"))
    return updated


def delete_rule(store: KeyValueStore, company_id: str, rule_id: str) -> None:
    store.delete_item(rules_pk(company_id), rule_id)
    logger.info(f"Deleted rule {rule_id} for company {company_id}")
