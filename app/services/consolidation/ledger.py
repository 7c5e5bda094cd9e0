"""
GroupLedger - Ledger Read Model

Account classification and per-company trial balances as the consolidation
engine sees them. Balances are signed: debit positive, credit negative.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, Optional
from uuid import UUID

from app.config import settings
from app.services.consolidation.values import ZERO, Money


class AccountType(str, Enum):
    """Top-level account classification."""
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"
    REVENUE = "revenue"
    EXPENSE = "expense"


class AccountCategory(str, Enum):
    """Statement line grouping for an account."""
    CURRENT_ASSET = "current_asset"
    NON_CURRENT_ASSET = "non_current_asset"
    FIXED_ASSET = "fixed_asset"
    INTANGIBLE_ASSET = "intangible_asset"
    CURRENT_LIABILITY = "current_liability"
    NON_CURRENT_LIABILITY = "non_current_liability"
    CONTRIBUTED_CAPITAL = "contributed_capital"
    RETAINED_EARNINGS = "retained_earnings"
    OTHER_COMPREHENSIVE_INCOME = "other_comprehensive_income"
    TREASURY_STOCK = "treasury_stock"
    NON_CONTROLLING_INTEREST = "non_controlling_interest"
    OPERATING_REVENUE = "operating_revenue"
    OTHER_REVENUE = "other_revenue"
    COST_OF_GOODS_SOLD = "cost_of_goods_sold"
    OPERATING_EXPENSE = "operating_expense"
    DEPRECIATION_AMORTIZATION = "depreciation_amortization"
    INTEREST_EXPENSE = "interest_expense"
    TAX_EXPENSE = "tax_expense"
    OTHER_EXPENSE = "other_expense"
    NCI_SHARE_OF_INCOME = "nci_share_of_income"


class CashFlowCategory(str, Enum):
    OPERATING = "operating"
    INVESTING = "investing"
    FINANCING = "financing"
    NON_CASH = "non_cash"


CATEGORY_ACCOUNT_TYPE: Dict[AccountCategory, AccountType] = {
    AccountCategory.CURRENT_ASSET: AccountType.ASSET,
    AccountCategory.NON_CURRENT_ASSET: AccountType.ASSET,
    AccountCategory.FIXED_ASSET: AccountType.ASSET,
    AccountCategory.INTANGIBLE_ASSET: AccountType.ASSET,
    AccountCategory.CURRENT_LIABILITY: AccountType.LIABILITY,
    AccountCategory.NON_CURRENT_LIABILITY: AccountType.LIABILITY,
    AccountCategory.CONTRIBUTED_CAPITAL: AccountType.EQUITY,
    AccountCategory.RETAINED_EARNINGS: AccountType.EQUITY,
    AccountCategory.OTHER_COMPREHENSIVE_INCOME: AccountType.EQUITY,
    AccountCategory.TREASURY_STOCK: AccountType.EQUITY,
    AccountCategory.NON_CONTROLLING_INTEREST: AccountType.EQUITY,
    AccountCategory.OPERATING_REVENUE: AccountType.REVENUE,
    AccountCategory.OTHER_REVENUE: AccountType.REVENUE,
    AccountCategory.COST_OF_GOODS_SOLD: AccountType.EXPENSE,
    AccountCategory.OPERATING_EXPENSE: AccountType.EXPENSE,
    AccountCategory.DEPRECIATION_AMORTIZATION: AccountType.EXPENSE,
    AccountCategory.INTEREST_EXPENSE: AccountType.EXPENSE,
    AccountCategory.TAX_EXPENSE: AccountType.EXPENSE,
    AccountCategory.OTHER_EXPENSE: AccountType.EXPENSE,
    AccountCategory.NCI_SHARE_OF_INCOME: AccountType.EXPENSE,
}

DEFAULT_CATEGORY: Dict[AccountType, AccountCategory] = {
    AccountType.ASSET: AccountCategory.CURRENT_ASSET,
    AccountType.LIABILITY: AccountCategory.CURRENT_LIABILITY,
    AccountType.EQUITY: AccountCategory.RETAINED_EARNINGS,
    AccountType.REVENUE: AccountCategory.OPERATING_REVENUE,
    AccountType.EXPENSE: AccountCategory.OPERATING_EXPENSE,
}


@dataclass(frozen=True)
class AccountInfo:
    """Chart-of-accounts entry with the classification flags reports rely on."""
    code: str
    name: str
    account_type: AccountType
    category: AccountCategory
    is_cash_flow_relevant: bool = True
    cash_flow_category: Optional[CashFlowCategory] = None
    is_cash_equivalent: bool = False
    is_intercompany: bool = False

    @property
    def is_balance_sheet(self) -> bool:
        return self.account_type in (AccountType.ASSET, AccountType.LIABILITY, AccountType.EQUITY)

    @property
    def is_income_statement(self) -> bool:
        return not self.is_balance_sheet


@dataclass(frozen=True)
class CompanyInfo:
    """Company as exposed by the company repository."""
    id: UUID
    organization_id: UUID
    name: str
    functional_currency: str
    is_active: bool = True


@dataclass
class CompanyTrialBalance:
    """A company's trial balance in its functional currency."""
    company_id: UUID
    currency: str
    as_of_date: date
    balances: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def total(self) -> Decimal:
        return sum(self.balances.values(), ZERO)

    @property
    def is_empty(self) -> bool:
        return not any(self.balances.values())

    def is_balanced(self) -> bool:
        return Money(self.total, self.currency).round_to_minor().is_zero


# ===========================================
# SYSTEM ACCOUNTS
# ===========================================

def _system_account(code: str, name: str, category: AccountCategory,
                    cash_flow_category: Optional[CashFlowCategory] = None) -> AccountInfo:
    return AccountInfo(
        code=code,
        name=name,
        account_type=CATEGORY_ACCOUNT_TYPE[category],
        category=category,
        is_cash_flow_relevant=True,
        cash_flow_category=cash_flow_category,
    )


class SystemAccounts:
    """Accounts the engine posts to that need not exist in any member's chart."""

    def __init__(
        self,
        nci_equity: str = settings.nci_equity_account_code,
        nci_income: str = settings.nci_income_account_code,
        cta: str = settings.cta_account_code,
        equity_method_investment: str = settings.equity_method_investment_account_code,
        equity_method_income: str = settings.equity_method_income_account_code,
        equity_method_reserve: str = settings.equity_method_reserve_account_code,
    ):
        self.nci_equity = _system_account(
            nci_equity, "Non-controlling interest", AccountCategory.NON_CONTROLLING_INTEREST,
            CashFlowCategory.NON_CASH,
        )
        self.nci_income = _system_account(
            nci_income, "Net income attributable to non-controlling interest",
            AccountCategory.NCI_SHARE_OF_INCOME,
        )
        self.cta = _system_account(
            cta, "Cumulative translation adjustment", AccountCategory.OTHER_COMPREHENSIVE_INCOME,
            CashFlowCategory.NON_CASH,
        )
        self.equity_method_investment = _system_account(
            equity_method_investment, "Investments in equity-method investees",
            AccountCategory.NON_CURRENT_ASSET, CashFlowCategory.NON_CASH,
        )
        self.equity_method_income = _system_account(
            equity_method_income, "Share of profit of equity-method investees",
            AccountCategory.OTHER_REVENUE,
        )
        self.equity_method_reserve = _system_account(
            equity_method_reserve, "Equity-method reserve",
            AccountCategory.OTHER_COMPREHENSIVE_INCOME, CashFlowCategory.NON_CASH,
        )

    def all(self) -> Iterable[AccountInfo]:
        return (
            self.nci_equity,
            self.nci_income,
            self.cta,
            self.equity_method_investment,
            self.equity_method_income,
            self.equity_method_reserve,
        )

    def as_chart(self) -> Dict[str, AccountInfo]:
        return {a.code: a for a in self.all()}


def placeholder_account(code: str) -> AccountInfo:
    """Metadata for a code no chart defines; classified as a current asset."""
    return AccountInfo(
        code=code,
        name=f"Unmapped account {code}",
        account_type=AccountType.ASSET,
        category=AccountCategory.CURRENT_ASSET,
        is_cash_flow_relevant=False,
    )
