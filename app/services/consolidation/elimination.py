"""
GroupLedger - Elimination Rule Engine

Matches intercompany balances against a group's elimination rules and
produces balanced elimination adjustments.

Rules run strictly in ascending priority. Each automatic adjustment is applied
to the working balances before the next condition is evaluated, so later
rules see balances already cleared by earlier ones. Manual rules produce
proposals only.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID, uuid4

from app.services.consolidation.ledger import AccountCategory, AccountInfo
from app.services.consolidation.values import (
    ZERO,
    EliminationType,
    UNSET,
    ValidationIssue,
    is_set,
    to_decimal,
)
from app.services.consolidation.group import utcnow
from app.utils.error_handling import ValidationException

logger = logging.getLogger(__name__)


# ===========================================
# ACCOUNT SELECTORS
# ===========================================

class SelectorKind(str, Enum):
    BY_CODE = "by_code"
    BY_RANGE = "by_range"
    BY_CATEGORY = "by_category"


@dataclass(frozen=True)
class AccountSelector:
    """Selects accounts by exact code, inclusive code range or category."""
    kind: SelectorKind
    code: Optional[str] = None
    range_from: Optional[str] = None
    range_to: Optional[str] = None
    category: Optional[AccountCategory] = None

    def __post_init__(self):
        if self.kind == SelectorKind.BY_CODE and not self.code:
            raise ValidationException("by_code selector requires a code", field="code")
        if self.kind == SelectorKind.BY_RANGE:
            if not self.range_from or not self.range_to:
                raise ValidationException("by_range selector requires range_from and range_to", field="range_from")
            if self.range_from > self.range_to:
                raise ValidationException("range_from must not exceed range_to", field="range_from")
        if self.kind == SelectorKind.BY_CATEGORY and self.category is None:
            raise ValidationException("by_category selector requires a category", field="category")

    @classmethod
    def by_code(cls, code: str) -> "AccountSelector":
        return cls(SelectorKind.BY_CODE, code=code)

    @classmethod
    def by_range(cls, range_from: str, range_to: str) -> "AccountSelector":
        return cls(SelectorKind.BY_RANGE, range_from=range_from, range_to=range_to)

    @classmethod
    def by_category(cls, category: AccountCategory) -> "AccountSelector":
        return cls(SelectorKind.BY_CATEGORY, category=category)

    def matches(self, code: str, account: Optional[AccountInfo]) -> bool:
        if self.kind == SelectorKind.BY_CODE:
            return code == self.code
        if self.kind == SelectorKind.BY_RANGE:
            return self.range_from <= code <= self.range_to
        return account is not None and account.category == self.category

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind.value}
        if self.kind == SelectorKind.BY_CODE:
            data["code"] = self.code
        elif self.kind == SelectorKind.BY_RANGE:
            data["range_from"] = self.range_from
            data["range_to"] = self.range_to
        else:
            data["category"] = self.category.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountSelector":
        kind = SelectorKind(data["kind"])
        category = data.get("category")
        return cls(
            kind=kind,
            code=data.get("code"),
            range_from=data.get("range_from"),
            range_to=data.get("range_to"),
            category=AccountCategory(category) if category else None,
        )


def select_codes(
    selectors: Iterable[AccountSelector],
    balances: Dict[str, Decimal],
    accounts: Dict[str, AccountInfo],
) -> List[str]:
    """Codes present in balances matched by any selector, sorted."""
    selectors = list(selectors)
    return sorted(
        code for code in balances
        if any(s.matches(code, accounts.get(code)) for s in selectors)
    )


# ===========================================
# TRIGGER CONDITIONS
# ===========================================

@dataclass(frozen=True)
class TriggerCondition:
    """
    Fires when the absolute net balance across its source accounts meets or
    exceeds the minimum amount. A missing threshold means zero.
    """
    description: str
    source_accounts: tuple = ()
    minimum_amount: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, "source_accounts", tuple(self.source_accounts))
        if self.minimum_amount is not None:
            minimum = to_decimal(self.minimum_amount, "minimum_amount")
            if minimum < ZERO:
                raise ValidationException("minimum_amount cannot be negative", field="minimum_amount")
            object.__setattr__(self, "minimum_amount", minimum)

    def net_balance(
        self,
        balances: Dict[str, Decimal],
        accounts: Dict[str, AccountInfo],
        fallback: Iterable[AccountSelector] = (),
    ) -> Decimal:
        selectors = self.source_accounts or tuple(fallback)
        return sum((balances[c] for c in select_codes(selectors, balances, accounts)), ZERO)

    def fires(self, net: Decimal) -> bool:
        threshold = self.minimum_amount if self.minimum_amount is not None else ZERO
        return abs(net) >= threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "source_accounts": [s.to_dict() for s in self.source_accounts],
            "minimum_amount": str(self.minimum_amount) if self.minimum_amount is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriggerCondition":
        minimum = data.get("minimum_amount")
        return cls(
            description=data.get("description", ""),
            source_accounts=tuple(AccountSelector.from_dict(s) for s in data.get("source_accounts", [])),
            minimum_amount=Decimal(minimum) if minimum is not None else None,
        )


# ===========================================
# RULES
# ===========================================

@dataclass
class RulePatch:
    name: Any = UNSET
    description: Any = UNSET
    elimination_type: Any = UNSET
    trigger_conditions: Any = UNSET
    source_accounts: Any = UNSET
    target_accounts: Any = UNSET
    debit_account_code: Any = UNSET
    credit_account_code: Any = UNSET
    is_automatic: Any = UNSET
    priority: Any = UNSET


@dataclass
class EliminationRule:
    """A configured intercompany elimination for one consolidation group."""
    id: UUID
    group_id: UUID
    name: str
    elimination_type: EliminationType
    debit_account_code: str
    credit_account_code: str
    trigger_conditions: List[TriggerCondition] = field(default_factory=list)
    source_accounts: List[AccountSelector] = field(default_factory=list)
    target_accounts: List[AccountSelector] = field(default_factory=list)
    description: Optional[str] = None
    is_automatic: bool = True
    priority: int = 100
    is_active: bool = True
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, group_id: UUID, name: str, elimination_type: EliminationType,
               debit_account_code: str, credit_account_code: str, **kwargs) -> "EliminationRule":
        rule = cls(
            id=uuid4(),
            group_id=group_id,
            name=(name or "").strip(),
            elimination_type=elimination_type,
            debit_account_code=debit_account_code,
            credit_account_code=credit_account_code,
            **kwargs,
        )
        rule.validate()
        return rule

    def validate(self) -> None:
        if not self.name:
            raise ValidationException("Rule name is required", field="name")
        if not self.debit_account_code or not self.credit_account_code:
            raise ValidationException("Debit and credit accounts are required", field="debit_account_code")
        if self.debit_account_code == self.credit_account_code:
            raise ValidationException("Debit and credit accounts must differ", field="credit_account_code")
        if self.priority < 0:
            raise ValidationException("Priority must be zero or greater", field="priority")
        if not self.trigger_conditions and not self.source_accounts:
            raise ValidationException(
                "A rule needs source accounts or at least one trigger condition",
                field="source_accounts",
            )
        for condition in self.trigger_conditions:
            if not condition.source_accounts and not self.source_accounts:
                raise ValidationException(
                    f"Trigger condition '{condition.description}' has no source accounts",
                    field="trigger_conditions",
                )

    def apply_patch(self, patch: RulePatch) -> List[str]:
        changed = []
        for name in (
            "name", "description", "elimination_type", "trigger_conditions", "source_accounts",
            "target_accounts", "debit_account_code", "credit_account_code", "is_automatic", "priority",
        ):
            value = getattr(patch, name)
            if is_set(value) and value != getattr(self, name):
                setattr(self, name, value)
                changed.append(name)
        if changed:
            self.validate()
            self.updated_at = utcnow()
        return changed

    def effective_conditions(self) -> List[TriggerCondition]:
        if self.trigger_conditions:
            return list(self.trigger_conditions)
        return [TriggerCondition(description=self.name, source_accounts=tuple(self.source_accounts))]

    def snapshot(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "elimination_type": self.elimination_type.value,
            "trigger_conditions": [c.to_dict() for c in self.trigger_conditions],
            "source_accounts": [s.to_dict() for s in self.source_accounts],
            "target_accounts": [s.to_dict() for s in self.target_accounts],
            "debit_account_code": self.debit_account_code,
            "credit_account_code": self.credit_account_code,
            "is_automatic": self.is_automatic,
            "priority": self.priority,
            "is_active": self.is_active,
        }


def rule_sort_key(rule: EliminationRule):
    return (rule.priority, rule.name, str(rule.id))


# ===========================================
# ADJUSTMENTS
# ===========================================

class AdjustmentStatus(str, Enum):
    APPLIED = "applied"
    PROPOSED = "proposed"


@dataclass(frozen=True)
class EliminationAdjustment:
    """Balanced two-line elimination entry: Dr one account, Cr another."""
    id: UUID
    rule_id: UUID
    rule_name: str
    elimination_type: EliminationType
    description: str
    debit_account_code: str
    credit_account_code: str
    amount: Decimal
    currency: str
    is_automatic: bool
    status: AdjustmentStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "rule_id": str(self.rule_id),
            "rule_name": self.rule_name,
            "elimination_type": self.elimination_type.value,
            "description": self.description,
            "debit_account_code": self.debit_account_code,
            "credit_account_code": self.credit_account_code,
            "amount": str(self.amount),
            "currency": self.currency,
            "is_automatic": self.is_automatic,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EliminationAdjustment":
        return cls(
            id=UUID(data["id"]),
            rule_id=UUID(data["rule_id"]),
            rule_name=data["rule_name"],
            elimination_type=EliminationType(data["elimination_type"]),
            description=data["description"],
            debit_account_code=data["debit_account_code"],
            credit_account_code=data["credit_account_code"],
            amount=Decimal(data["amount"]),
            currency=data["currency"],
            is_automatic=data["is_automatic"],
            status=AdjustmentStatus(data["status"]),
        )


@dataclass
class EliminationResult:
    applied: List[EliminationAdjustment] = field(default_factory=list)
    proposed: List[EliminationAdjustment] = field(default_factory=list)
    processed_rule_ids: List[UUID] = field(default_factory=list)
    skipped_rule_ids: List[UUID] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    balances: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def total_eliminated(self) -> Decimal:
        return sum((a.amount for a in self.applied), ZERO)


def post_adjustment(balances: Dict[str, Decimal], debit_code: str, credit_code: str, amount: Decimal) -> None:
    """Apply Dr/Cr of a positive amount to signed balances in place."""
    balances[debit_code] = balances.get(debit_code, ZERO) + amount
    balances[credit_code] = balances.get(credit_code, ZERO) - amount


class EliminationEngine:
    """Evaluates a group's rules against pre-elimination consolidated balances."""

    def evaluate(
        self,
        rules: Iterable[EliminationRule],
        balances: Dict[str, Decimal],
        accounts: Dict[str, AccountInfo],
        currency: str,
    ) -> EliminationResult:
        working = dict(balances)
        result = EliminationResult()

        for rule in sorted((r for r in rules if r.is_active), key=rule_sort_key):
            fired = False
            for condition in rule.effective_conditions():
                selectors = condition.source_accounts or tuple(rule.source_accounts)
                net = condition.net_balance(working, accounts, rule.source_accounts)
                if net == ZERO or not condition.fires(net):
                    continue

                fired = True
                amount = abs(net)
                adjustment = EliminationAdjustment(
                    id=uuid4(),
                    rule_id=rule.id,
                    rule_name=rule.name,
                    elimination_type=rule.elimination_type,
                    description=condition.description or rule.name,
                    debit_account_code=rule.debit_account_code,
                    credit_account_code=rule.credit_account_code,
                    amount=amount,
                    currency=currency,
                    is_automatic=rule.is_automatic,
                    status=AdjustmentStatus.APPLIED if rule.is_automatic else AdjustmentStatus.PROPOSED,
                )

                if not rule.is_automatic:
                    result.proposed.append(adjustment)
                    continue

                post_adjustment(working, rule.debit_account_code, rule.credit_account_code, amount)
                result.applied.append(adjustment)

                after = sum(
                    (working[c] for c in select_codes(selectors, working, accounts)),
                    ZERO,
                )
                if abs(after) > abs(net):
                    result.warnings.append(ValidationIssue.warning(
                        "ELIMINATION_INCREASED_BALANCE",
                        f"Rule '{rule.name}' increased the net source balance from {net} to {after}; "
                        f"check the debit/credit direction",
                        entity_reference=str(rule.id),
                    ))

            if fired:
                result.processed_rule_ids.append(rule.id)
            else:
                result.skipped_rule_ids.append(rule.id)

        result.balances = working
        logger.info(
            f"Elimination pass: {len(result.applied)} applied, {len(result.proposed)} proposed, "
            f"{len(result.skipped_rule_ids)} rule(s) skipped"
        )
        return result
