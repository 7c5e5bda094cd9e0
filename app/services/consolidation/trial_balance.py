"""
GroupLedger - Consolidated Trial Balance Builder

Merges per-company (weighted, translated) balances with elimination and NCI
adjustments into one ledger keyed by account code.

Sign convention: debit positive, credit negative. Balances are kept exact;
the balancing check rounds the total to the currency's minor unit.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from app.services.consolidation.ledger import (
    AccountCategory,
    AccountInfo,
    AccountType,
    CashFlowCategory,
    placeholder_account,
)
from app.services.consolidation.values import ZERO, Money, PeriodRef
from app.services.consolidation.group import utcnow


@dataclass(frozen=True)
class TrialBalanceLine:
    account_code: str
    account_name: str
    account_type: AccountType
    account_category: AccountCategory
    aggregated_balance: Decimal = ZERO
    elimination_amount: Decimal = ZERO
    nci_amount: Decimal = ZERO
    is_cash_flow_relevant: bool = True
    cash_flow_category: Optional[CashFlowCategory] = None
    is_cash_equivalent: bool = False
    is_intercompany: bool = False

    @property
    def consolidated_balance(self) -> Decimal:
        return self.aggregated_balance + self.elimination_amount + self.nci_amount

    @property
    def debit_balance(self) -> Decimal:
        return self.consolidated_balance if self.consolidated_balance > ZERO else ZERO

    @property
    def credit_balance(self) -> Decimal:
        return -self.consolidated_balance if self.consolidated_balance < ZERO else ZERO

    def account_info(self) -> AccountInfo:
        return AccountInfo(
            code=self.account_code,
            name=self.account_name,
            account_type=self.account_type,
            category=self.account_category,
            is_cash_flow_relevant=self.is_cash_flow_relevant,
            cash_flow_category=self.cash_flow_category,
            is_cash_equivalent=self.is_cash_equivalent,
            is_intercompany=self.is_intercompany,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_code": self.account_code,
            "account_name": self.account_name,
            "account_type": self.account_type.value,
            "account_category": self.account_category.value,
            "aggregated_balance": str(self.aggregated_balance),
            "elimination_amount": str(self.elimination_amount),
            "nci_amount": str(self.nci_amount),
            "consolidated_balance": str(self.consolidated_balance),
            "is_cash_flow_relevant": self.is_cash_flow_relevant,
            "cash_flow_category": self.cash_flow_category.value if self.cash_flow_category else None,
            "is_cash_equivalent": self.is_cash_equivalent,
            "is_intercompany": self.is_intercompany,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrialBalanceLine":
        cash_flow_category = data.get("cash_flow_category")
        return cls(
            account_code=data["account_code"],
            account_name=data["account_name"],
            account_type=AccountType(data["account_type"]),
            account_category=AccountCategory(data["account_category"]),
            aggregated_balance=Decimal(data["aggregated_balance"]),
            elimination_amount=Decimal(data["elimination_amount"]),
            nci_amount=Decimal(data["nci_amount"]),
            is_cash_flow_relevant=data.get("is_cash_flow_relevant", True),
            cash_flow_category=CashFlowCategory(cash_flow_category) if cash_flow_category else None,
            is_cash_equivalent=data.get("is_cash_equivalent", False),
            is_intercompany=data.get("is_intercompany", False),
        )


@dataclass
class ConsolidatedTrialBalance:
    """The consolidated ledger produced by exactly one run."""
    run_id: UUID
    group_id: UUID
    period: PeriodRef
    as_of_date: date
    currency: str
    lines: List[TrialBalanceLine] = field(default_factory=list)
    total_eliminations: Decimal = ZERO
    total_nci_adjustments: Decimal = ZERO
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def total_debits(self) -> Decimal:
        return sum((line.debit_balance for line in self.lines), ZERO)

    @property
    def total_credits(self) -> Decimal:
        return sum((line.credit_balance for line in self.lines), ZERO)

    @property
    def imbalance(self) -> Decimal:
        """Exact sum of all signed balances."""
        return sum((line.consolidated_balance for line in self.lines), ZERO)

    def is_balanced(self) -> bool:
        return Money(self.imbalance, self.currency).round_to_minor().is_zero

    def balances(self) -> Dict[str, Decimal]:
        return {line.account_code: line.consolidated_balance for line in self.lines}

    def line(self, account_code: str) -> Optional[TrialBalanceLine]:
        for line in self.lines:
            if line.account_code == account_code:
                return line
        return None

    def balance_of(self, account_code: str) -> Decimal:
        line = self.line(account_code)
        return line.consolidated_balance if line else ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "group_id": str(self.group_id),
            "period": {"year": self.period.year, "period": self.period.period},
            "as_of_date": self.as_of_date.isoformat(),
            "currency": self.currency,
            "lines": [line.to_dict() for line in self.lines],
            "total_debits": str(self.total_debits),
            "total_credits": str(self.total_credits),
            "total_eliminations": str(self.total_eliminations),
            "total_nci_adjustments": str(self.total_nci_adjustments),
            "is_balanced": self.is_balanced(),
            "generated_at": self.generated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsolidatedTrialBalance":
        return cls(
            run_id=UUID(data["run_id"]),
            group_id=UUID(data["group_id"]),
            period=PeriodRef(**data["period"]),
            as_of_date=date.fromisoformat(data["as_of_date"]),
            currency=data["currency"],
            lines=[TrialBalanceLine.from_dict(line) for line in data.get("lines", [])],
            total_eliminations=Decimal(data.get("total_eliminations", "0")),
            total_nci_adjustments=Decimal(data.get("total_nci_adjustments", "0")),
            generated_at=datetime.fromisoformat(data["generated_at"]),
        )


# ===========================================
# BUILDER
# ===========================================

def aggregate_balances(contributions: Iterable[Dict[str, Decimal]]) -> Dict[str, Decimal]:
    """Sum per-company balances by account code."""
    totals: Dict[str, Decimal] = {}
    for balances in contributions:
        for code, amount in balances.items():
            totals[code] = totals.get(code, ZERO) + amount
    return totals


def _fold_adjustments(adjustments: Iterable[Any]) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = {}
    for adjustment in adjustments:
        totals[adjustment.debit_account_code] = totals.get(adjustment.debit_account_code, ZERO) + adjustment.amount
        totals[adjustment.credit_account_code] = totals.get(adjustment.credit_account_code, ZERO) - adjustment.amount
    return totals


def build_consolidated_trial_balance(
    contributions: Iterable[Dict[str, Decimal]],
    elimination_adjustments: Iterable[Any],
    nci_adjustments: Iterable[Any],
    accounts: Dict[str, AccountInfo],
    currency: str,
    run_id: UUID,
    group_id: UUID,
    period: PeriodRef,
    as_of_date: date,
    generated_at: Optional[datetime] = None,
) -> ConsolidatedTrialBalance:
    """
    Fold company balances, then elimination adjustments, then NCI adjustments.

    Adjustments are any objects exposing debit_account_code,
    credit_account_code and a positive amount.
    """
    elimination_adjustments = list(elimination_adjustments)
    nci_adjustments = list(nci_adjustments)

    aggregated = aggregate_balances(contributions)
    eliminations = _fold_adjustments(elimination_adjustments)
    nci = _fold_adjustments(nci_adjustments)

    lines = []
    for code in sorted(set(aggregated) | set(eliminations) | set(nci)):
        agg = aggregated.get(code, ZERO)
        elim = eliminations.get(code, ZERO)
        nci_amount = nci.get(code, ZERO)
        if agg == ZERO and elim == ZERO and nci_amount == ZERO:
            continue
        account = accounts.get(code) or placeholder_account(code)
        lines.append(TrialBalanceLine(
            account_code=code,
            account_name=account.name,
            account_type=account.account_type,
            account_category=account.category,
            aggregated_balance=agg,
            elimination_amount=elim,
            nci_amount=nci_amount,
            is_cash_flow_relevant=account.is_cash_flow_relevant,
            cash_flow_category=account.cash_flow_category,
            is_cash_equivalent=account.is_cash_equivalent,
            is_intercompany=account.is_intercompany,
        ))

    return ConsolidatedTrialBalance(
        run_id=run_id,
        group_id=group_id,
        period=period,
        as_of_date=as_of_date,
        currency=currency,
        lines=lines,
        total_eliminations=sum((a.amount for a in elimination_adjustments), ZERO),
        total_nci_adjustments=sum((a.amount for a in nci_adjustments), ZERO),
        generated_at=generated_at or utcnow(),
    )
