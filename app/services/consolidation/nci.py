"""
GroupLedger - Non-Controlling Interest & Equity Method

NCI is carved out of fully consolidated subsidiaries in two parts:
- the NCI share of the subsidiary's equity accounts is reclassified to the
  NCI equity account;
- the NCI share of the subsidiary's net income is allocated from income to
  the NCI equity account.
Together they equal NCI% x net assets and keep the ledger zero-sum.

Equity-method investees contribute a single investment line instead of
their own line items.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from app.services.consolidation.ledger import AccountInfo, AccountType, SystemAccounts, placeholder_account
from app.services.consolidation.values import ZERO, Percentage


@dataclass(frozen=True)
class LedgerAdjustment:
    """A positive amount debited to one account and credited to another."""
    debit_account_code: str
    credit_account_code: str
    amount: Decimal
    description: str
    company_id: Optional[UUID] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "debit_account_code": self.debit_account_code,
            "credit_account_code": self.credit_account_code,
            "amount": str(self.amount),
            "description": self.description,
            "company_id": str(self.company_id) if self.company_id else None,
        }


def signed_adjustment(
    debit_code: str,
    credit_code: str,
    amount: Decimal,
    description: str,
    company_id: Optional[UUID] = None,
) -> Optional[LedgerAdjustment]:
    """Dr/Cr for a positive amount, reversed for a negative one, None for zero."""
    if amount == ZERO:
        return None
    if amount < ZERO:
        debit_code, credit_code, amount = credit_code, debit_code, -amount
    return LedgerAdjustment(debit_code, credit_code, amount, description, company_id)


def _type_of(code: str, accounts: Dict[str, AccountInfo]) -> AccountType:
    return accounts.get(code, placeholder_account(code)).account_type


def net_income(balances: Dict[str, Decimal], accounts: Dict[str, AccountInfo]) -> Decimal:
    """Revenue less expenses; credit balances are negative so the sum is negated."""
    total = sum(
        (b for code, b in balances.items()
         if _type_of(code, accounts) in (AccountType.REVENUE, AccountType.EXPENSE)),
        ZERO,
    )
    return -total


def equity_balances(balances: Dict[str, Decimal], accounts: Dict[str, AccountInfo]) -> Dict[str, Decimal]:
    return {
        code: b for code, b in balances.items()
        if _type_of(code, accounts) == AccountType.EQUITY and b != ZERO
    }


def total_equity(balances: Dict[str, Decimal], accounts: Dict[str, AccountInfo]) -> Decimal:
    """Equity account balances presented positive (excludes current-period income)."""
    return -sum(equity_balances(balances, accounts).values(), ZERO)


@dataclass(frozen=True)
class NCICalculation:
    company_id: UUID
    nci_percentage: Decimal
    net_income: Decimal
    equity: Decimal
    nci_share_of_net_income: Decimal
    nci_share_of_equity: Decimal

    @property
    def net_assets(self) -> Decimal:
        return self.equity + self.net_income

    @property
    def total_nci(self) -> Decimal:
        return self.nci_share_of_net_income + self.nci_share_of_equity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company_id": str(self.company_id),
            "nci_percentage": str(self.nci_percentage),
            "net_income": str(self.net_income),
            "equity": str(self.equity),
            "net_assets": str(self.net_assets),
            "nci_share_of_net_income": str(self.nci_share_of_net_income),
            "nci_share_of_equity": str(self.nci_share_of_equity),
            "total_nci": str(self.total_nci),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NCICalculation":
        return cls(
            company_id=UUID(data["company_id"]),
            nci_percentage=Decimal(data["nci_percentage"]),
            net_income=Decimal(data["net_income"]),
            equity=Decimal(data["equity"]),
            nci_share_of_net_income=Decimal(data["nci_share_of_net_income"]),
            nci_share_of_equity=Decimal(data["nci_share_of_equity"]),
        )


def calculate_nci(
    company_id: UUID,
    nci_percentage: Percentage,
    balances: Dict[str, Decimal],
    accounts: Dict[str, AccountInfo],
    system: SystemAccounts,
) -> Tuple[NCICalculation, List[LedgerAdjustment]]:
    """
    NCI for one fully consolidated subsidiary.

    `balances` are the subsidiary's translated, unweighted balances.
    """
    income = net_income(balances, accounts)
    nci_income = nci_percentage.of_amount(income)

    adjustments: List[LedgerAdjustment] = []
    nci_equity = ZERO
    for code, balance in sorted(equity_balances(balances, accounts).items()):
        share = nci_percentage.of_amount(-balance)
        nci_equity += share
        adjustment = signed_adjustment(
            code, system.nci_equity.code, share,
            f"NCI share ({nci_percentage}) of equity account {code}", company_id,
        )
        if adjustment:
            adjustments.append(adjustment)

    adjustment = signed_adjustment(
        system.nci_income.code, system.nci_equity.code, nci_income,
        f"NCI share ({nci_percentage}) of net income", company_id,
    )
    if adjustment:
        adjustments.append(adjustment)

    calculation = NCICalculation(
        company_id=company_id,
        nci_percentage=nci_percentage.value,
        net_income=income,
        equity=-sum(equity_balances(balances, accounts).values(), ZERO),
        nci_share_of_net_income=nci_income,
        nci_share_of_equity=nci_equity,
    )
    return calculation, adjustments


def equity_method_line(
    ownership: Percentage,
    balances: Dict[str, Decimal],
    accounts: Dict[str, AccountInfo],
    system: SystemAccounts,
) -> Dict[str, Decimal]:
    """
    Contribution of an equity-method investee: Dr investment for the owned
    share of net assets, Cr share of profit and Cr equity-method reserve.
    """
    income_share = ownership.of_amount(net_income(balances, accounts))
    equity_share = ownership.of_amount(total_equity(balances, accounts))
    contribution = {
        system.equity_method_investment.code: income_share + equity_share,
        system.equity_method_income.code: -income_share,
        system.equity_method_reserve.code: -equity_share,
    }
    return {code: amount for code, amount in contribution.items() if amount != ZERO}
