"""
GroupLedger - Consolidated Financial Statements

Read-only transforms from a completed run's consolidated trial balance into
the balance sheet, income statement, cash flow statement (indirect method)
and statement of changes in equity.

Trial balance amounts are signed (debit positive). Statements present them
in their natural sign: assets and expenses as debits, liabilities, equity
and revenue as credits.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from app.services.consolidation.group import utcnow
from app.services.consolidation.ledger import AccountCategory, AccountType, CashFlowCategory
from app.services.consolidation.trial_balance import ConsolidatedTrialBalance, TrialBalanceLine
from app.services.consolidation.values import ZERO, Money, PeriodRef, round_to_minor
from app.utils.error_handling import BalanceNotBalancedException, ErrorCode


class StatementType(str, Enum):
    BALANCE_SHEET = "balance_sheet"
    INCOME_STATEMENT = "income_statement"
    CASH_FLOW = "cash_flow"
    EQUITY_STATEMENT = "equity_statement"


class LineStyle(str, Enum):
    NORMAL = "normal"
    SUBTOTAL = "subtotal"
    TOTAL = "total"
    HEADER = "header"


def _fmt(amount: Decimal, currency: str) -> str:
    return str(round_to_minor(amount, currency))


@dataclass
class ReportLineItem:
    description: str
    amount: Decimal = ZERO
    account_code: Optional[str] = None
    style: LineStyle = LineStyle.NORMAL
    indent_level: int = 0

    def to_dict(self, currency: str) -> Dict[str, Any]:
        return {
            "description": self.description,
            "account_code": self.account_code,
            "amount": _fmt(self.amount, currency),
            "style": self.style.value,
            "indent_level": self.indent_level,
        }


@dataclass
class ReportSection:
    title: str
    line_items: List[ReportLineItem] = field(default_factory=list)
    subtotal: Decimal = ZERO

    def to_dict(self, currency: str) -> Dict[str, Any]:
        return {
            "title": self.title,
            "line_items": [item.to_dict(currency) for item in self.line_items],
            "subtotal": _fmt(self.subtotal, currency),
        }


@dataclass
class FinancialStatement:
    """A sectioned report plus its headline figures."""
    statement_type: StatementType
    run_id: UUID
    group_id: UUID
    period: PeriodRef
    as_of_date: date
    currency: str
    sections: List[ReportSection] = field(default_factory=list)
    totals: Dict[str, Decimal] = field(default_factory=dict)
    comparative_run_id: Optional[UUID] = None
    generated_at: datetime = field(default_factory=utcnow)

    def section(self, title: str) -> Optional[ReportSection]:
        for section in self.sections:
            if section.title == title:
                return section
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement_type": self.statement_type.value,
            "run_id": str(self.run_id),
            "group_id": str(self.group_id),
            "period": {"year": self.period.year, "period": self.period.period},
            "as_of_date": self.as_of_date.isoformat(),
            "currency": self.currency,
            "sections": [s.to_dict(self.currency) for s in self.sections],
            "totals": {k: _fmt(v, self.currency) for k, v in self.totals.items()},
            "comparative_run_id": str(self.comparative_run_id) if self.comparative_run_id else None,
            "generated_at": self.generated_at.isoformat(),
        }


def _section(
    title: str,
    lines: List[TrialBalanceLine],
    present: Callable[[TrialBalanceLine], Decimal],
    indent_level: int = 1,
) -> ReportSection:
    items = [
        ReportLineItem(
            description=line.account_name,
            amount=present(line),
            account_code=line.account_code,
            indent_level=indent_level,
        )
        for line in lines
    ]
    return ReportSection(title=title, line_items=items, subtotal=sum((i.amount for i in items), ZERO))


def _debit(line: TrialBalanceLine) -> Decimal:
    return line.consolidated_balance


def _credit(line: TrialBalanceLine) -> Decimal:
    return -line.consolidated_balance


def _total_line(description: str, amount: Decimal, style: LineStyle = LineStyle.TOTAL) -> ReportSection:
    return ReportSection(
        title=description,
        line_items=[ReportLineItem(description=description, amount=amount, style=style)],
        subtotal=amount,
    )


# ===========================================
# CLASSIFICATION
# ===========================================

NON_CURRENT_ASSET_CATEGORIES = frozenset({
    AccountCategory.NON_CURRENT_ASSET,
    AccountCategory.FIXED_ASSET,
    AccountCategory.INTANGIBLE_ASSET,
})

EQUITY_COLUMNS: Dict[str, AccountCategory] = {
    "share_capital": AccountCategory.CONTRIBUTED_CAPITAL,
    "retained_earnings": AccountCategory.RETAINED_EARNINGS,
    "accumulated_oci": AccountCategory.OTHER_COMPREHENSIVE_INCOME,
    "treasury_stock": AccountCategory.TREASURY_STOCK,
    "non_controlling_interest": AccountCategory.NON_CONTROLLING_INTEREST,
}


def _is_nci_income(line: TrialBalanceLine) -> bool:
    return line.account_category == AccountCategory.NCI_SHARE_OF_INCOME


def _income_lines(tb: ConsolidatedTrialBalance) -> List[TrialBalanceLine]:
    return [l for l in tb.lines if l.account_type in (AccountType.REVENUE, AccountType.EXPENSE)]


def profit_for_period(tb: ConsolidatedTrialBalance) -> Decimal:
    """Consolidated net income before attribution to NCI."""
    return -sum((l.consolidated_balance for l in _income_lines(tb) if not _is_nci_income(l)), ZERO)


def nci_share_of_income(tb: ConsolidatedTrialBalance) -> Decimal:
    return sum((l.consolidated_balance for l in tb.lines if _is_nci_income(l)), ZERO)


def parent_net_income(tb: ConsolidatedTrialBalance) -> Decimal:
    return profit_for_period(tb) - nci_share_of_income(tb)


def _expense_bucket(line: TrialBalanceLine) -> str:
    category = line.account_category
    if category == AccountCategory.COST_OF_GOODS_SOLD:
        return "cost_of_sales"
    if category in (AccountCategory.OPERATING_EXPENSE, AccountCategory.DEPRECIATION_AMORTIZATION):
        return "operating_expenses"
    if category == AccountCategory.TAX_EXPENSE:
        return "tax"
    if category == AccountCategory.NCI_SHARE_OF_INCOME:
        return "nci"
    if category in (AccountCategory.INTEREST_EXPENSE, AccountCategory.OTHER_EXPENSE):
        return "other"
    return "operating_expenses"


def _revenue_bucket(line: TrialBalanceLine) -> str:
    return "other" if line.account_category == AccountCategory.OTHER_REVENUE else "revenue"


# ===========================================
# BALANCE SHEET
# ===========================================

def generate_balance_sheet(tb: ConsolidatedTrialBalance) -> FinancialStatement:
    """
    Assets = Liabilities + Equity, where equity includes current-period
    earnings attributable to the parent and the NCI line.

    Raises BalanceNotBalancedException when the two sides differ by half a
    minor unit or more.
    """
    assets = [l for l in tb.lines if l.account_type == AccountType.ASSET]
    liabilities = [l for l in tb.lines if l.account_type == AccountType.LIABILITY]
    equity = [
        l for l in tb.lines
        if l.account_type == AccountType.EQUITY and l.account_category != AccountCategory.NON_CONTROLLING_INTEREST
    ]
    nci = [l for l in tb.lines if l.account_category == AccountCategory.NON_CONTROLLING_INTEREST]

    current_assets = _section(
        "Current assets", [l for l in assets if l.account_category not in NON_CURRENT_ASSET_CATEGORIES], _debit,
    )
    non_current_assets = _section(
        "Non-current assets", [l for l in assets if l.account_category in NON_CURRENT_ASSET_CATEGORIES], _debit,
    )
    current_liabilities = _section(
        "Current liabilities",
        [l for l in liabilities if l.account_category != AccountCategory.NON_CURRENT_LIABILITY],
        _credit,
    )
    non_current_liabilities = _section(
        "Non-current liabilities",
        [l for l in liabilities if l.account_category == AccountCategory.NON_CURRENT_LIABILITY],
        _credit,
    )

    parent_equity = _section("Equity", equity, _credit)
    earnings = parent_net_income(tb)
    parent_equity.line_items.append(ReportLineItem("Current period earnings", earnings, indent_level=1))
    parent_equity.subtotal += earnings

    nci_section = _section("Non-controlling interest", nci, _credit)

    total_assets = current_assets.subtotal + non_current_assets.subtotal
    total_liabilities = current_liabilities.subtotal + non_current_liabilities.subtotal
    total_equity = parent_equity.subtotal + nci_section.subtotal
    total_liabilities_and_equity = total_liabilities + total_equity

    difference = Money(total_assets, tb.currency) - Money(total_liabilities_and_equity, tb.currency)
    if not difference.round_to_minor().is_zero:
        raise BalanceNotBalancedException(
            f"Consolidated balance sheet does not balance: assets {total_assets} vs "
            f"liabilities and equity {total_liabilities_and_equity} ({tb.currency})",
            difference=difference.amount,
            code=ErrorCode.BALANCE_SHEET_NOT_BALANCED,
        )

    return FinancialStatement(
        statement_type=StatementType.BALANCE_SHEET,
        run_id=tb.run_id,
        group_id=tb.group_id,
        period=tb.period,
        as_of_date=tb.as_of_date,
        currency=tb.currency,
        sections=[
            current_assets,
            non_current_assets,
            _total_line("Total assets", total_assets),
            current_liabilities,
            non_current_liabilities,
            _total_line("Total liabilities", total_liabilities, LineStyle.SUBTOTAL),
            parent_equity,
            nci_section,
            _total_line("Total equity", total_equity, LineStyle.SUBTOTAL),
            _total_line("Total liabilities and equity", total_liabilities_and_equity),
        ],
        totals={
            "total_assets": total_assets,
            "total_liabilities": total_liabilities,
            "parent_equity": parent_equity.subtotal,
            "non_controlling_interest": nci_section.subtotal,
            "total_equity": total_equity,
            "total_liabilities_and_equity": total_liabilities_and_equity,
        },
    )


# ===========================================
# INCOME STATEMENT
# ===========================================

def generate_income_statement(tb: ConsolidatedTrialBalance) -> FinancialStatement:
    buckets: Dict[str, List[TrialBalanceLine]] = {
        "revenue": [], "cost_of_sales": [], "operating_expenses": [], "other": [], "tax": [], "nci": [],
    }
    for line in _income_lines(tb):
        if line.account_type == AccountType.REVENUE:
            buckets[_revenue_bucket(line)].append(line)
        else:
            buckets[_expense_bucket(line)].append(line)

    revenue = _section("Revenue", buckets["revenue"], _credit)
    cost_of_sales = _section("Cost of sales", buckets["cost_of_sales"], _debit)
    operating_expenses = _section("Operating expenses", buckets["operating_expenses"], _debit)
    # Income positive, expense negative
    other = _section("Other income and expense", buckets["other"], _credit)
    tax = _section("Income tax expense", buckets["tax"], _debit)
    attributable_to_nci = sum((_debit(l) for l in buckets["nci"]), ZERO)

    gross_profit = revenue.subtotal - cost_of_sales.subtotal
    operating_income = gross_profit - operating_expenses.subtotal
    income_before_tax = operating_income + other.subtotal
    net_income = income_before_tax - tax.subtotal
    attributable_to_parent = net_income - attributable_to_nci

    attribution = ReportSection(
        title="Net income attributable to",
        line_items=[
            ReportLineItem("Owners of the parent", attributable_to_parent, indent_level=1),
            ReportLineItem("Non-controlling interest", attributable_to_nci, indent_level=1),
        ],
        subtotal=net_income,
    )

    return FinancialStatement(
        statement_type=StatementType.INCOME_STATEMENT,
        run_id=tb.run_id,
        group_id=tb.group_id,
        period=tb.period,
        as_of_date=tb.as_of_date,
        currency=tb.currency,
        sections=[
            revenue,
            cost_of_sales,
            _total_line("Gross profit", gross_profit, LineStyle.SUBTOTAL),
            operating_expenses,
            _total_line("Operating income", operating_income, LineStyle.SUBTOTAL),
            other,
            _total_line("Income before tax", income_before_tax, LineStyle.SUBTOTAL),
            tax,
            _total_line("Net income", net_income),
            attribution,
        ],
        totals={
            "revenue": revenue.subtotal,
            "gross_profit": gross_profit,
            "operating_income": operating_income,
            "income_before_tax": income_before_tax,
            "net_income": net_income,
            "attributable_to_parent": attributable_to_parent,
            "attributable_to_nci": attributable_to_nci,
        },
    )


# ===========================================
# CASH FLOW (INDIRECT)
# ===========================================

def _default_cash_flow_category(line: TrialBalanceLine) -> CashFlowCategory:
    if line.account_category in (AccountCategory.CURRENT_ASSET, AccountCategory.CURRENT_LIABILITY):
        return CashFlowCategory.OPERATING
    if line.account_category in NON_CURRENT_ASSET_CATEGORIES:
        return CashFlowCategory.INVESTING
    return CashFlowCategory.FINANCING


def generate_cash_flow_statement(
    tb: ConsolidatedTrialBalance,
    prior: Optional[ConsolidatedTrialBalance] = None,
    comparative_run_id: Optional[UUID] = None,
) -> FinancialStatement:
    """
    Operating activities start from profit for the period; every
    cash-flow-relevant, non-cash balance-sheet account contributes the
    negative of its movement against `prior` (an empty ledger when None).

    The NCI share of income is folded into the NCI equity movement since
    profit for the period already includes it. When `prior` belongs to an
    earlier fiscal year its earnings are assumed closed into retained
    earnings and are backed out of the financing section.
    """
    prior_lines = {l.account_code: l for l in prior.lines} if prior else {}
    same_year = prior is not None and prior.period.year == tb.period.year

    profit = profit_for_period(tb)
    prior_profit = profit_for_period(prior) if prior else ZERO
    period_profit = profit - prior_profit if same_year else profit

    operating_adjustments: List[ReportLineItem] = []
    working_capital: List[ReportLineItem] = []
    investing: List[ReportLineItem] = []
    financing: List[ReportLineItem] = []

    def movement(code: str, current: Decimal) -> Decimal:
        previous = prior_lines[code].consolidated_balance if code in prior_lines else ZERO
        return current - previous

    current_lines = {l.account_code: l for l in tb.lines}
    nci_income_codes = {l.account_code for l in tb.lines if _is_nci_income(l)}
    nci_income_codes |= {code for code, l in prior_lines.items() if _is_nci_income(l)}

    beginning_cash = sum((l.consolidated_balance for l in prior_lines.values() if l.is_cash_equivalent), ZERO)
    ending_cash = sum((l.consolidated_balance for l in tb.lines if l.is_cash_equivalent), ZERO)

    nci_movement = -sum(
        (movement(code, current_lines[code].consolidated_balance if code in current_lines else ZERO)
         for code in sorted(nci_income_codes)),
        ZERO,
    )

    for code in sorted(set(current_lines) | set(prior_lines)):
        line = current_lines.get(code) or prior_lines[code]
        if line.account_type not in (AccountType.ASSET, AccountType.LIABILITY, AccountType.EQUITY):
            continue
        if line.is_cash_equivalent or not line.is_cash_flow_relevant:
            continue
        current = current_lines[code].consolidated_balance if code in current_lines else ZERO
        effect = -movement(code, current)
        if line.account_category == AccountCategory.NON_CONTROLLING_INTEREST:
            effect += nci_movement
            nci_movement = ZERO
        if effect == ZERO:
            continue
        item = ReportLineItem(line.account_name, effect, account_code=code, indent_level=1)
        category = line.cash_flow_category or _default_cash_flow_category(line)
        if category == CashFlowCategory.NON_CASH:
            operating_adjustments.append(item)
        elif category == CashFlowCategory.OPERATING:
            working_capital.append(item)
        elif category == CashFlowCategory.INVESTING:
            investing.append(item)
        else:
            financing.append(item)

    if nci_movement != ZERO:
        financing.append(ReportLineItem("Non-controlling interest share of income", nci_movement, indent_level=1))
    if prior is not None and not same_year and prior_profit != ZERO:
        financing.append(ReportLineItem(
            "Prior-year earnings transferred to retained earnings", -prior_profit, indent_level=1,
        ))

    operating_items = [ReportLineItem("Net income", period_profit, indent_level=1)]
    operating_items += operating_adjustments + working_capital
    operating = ReportSection(
        "Cash flows from operating activities",
        operating_items,
        sum((i.amount for i in operating_items), ZERO),
    )
    investing_section = ReportSection(
        "Cash flows from investing activities", investing, sum((i.amount for i in investing), ZERO),
    )
    financing_section = ReportSection(
        "Cash flows from financing activities", financing, sum((i.amount for i in financing), ZERO),
    )

    net_change = operating.subtotal + investing_section.subtotal + financing_section.subtotal
    unreconciled = (ending_cash - beginning_cash) - net_change

    return FinancialStatement(
        statement_type=StatementType.CASH_FLOW,
        run_id=tb.run_id,
        group_id=tb.group_id,
        period=tb.period,
        as_of_date=tb.as_of_date,
        currency=tb.currency,
        sections=[
            operating,
            investing_section,
            financing_section,
            _total_line("Net change in cash", net_change, LineStyle.SUBTOTAL),
            _total_line("Cash at beginning of period", beginning_cash, LineStyle.NORMAL),
            _total_line("Cash at end of period", ending_cash),
        ],
        totals={
            "net_income": period_profit,
            "operating_activities": operating.subtotal,
            "investing_activities": investing_section.subtotal,
            "financing_activities": financing_section.subtotal,
            "net_change_in_cash": net_change,
            "beginning_cash": beginning_cash,
            "ending_cash": ending_cash,
            "unreconciled_difference": unreconciled,
        },
        comparative_run_id=comparative_run_id,
    )


# ===========================================
# STATEMENT OF CHANGES IN EQUITY
# ===========================================

@dataclass
class EquityStatementRow:
    description: str
    amounts: Dict[str, Decimal]
    style: LineStyle = LineStyle.NORMAL

    @property
    def total(self) -> Decimal:
        return sum(self.amounts.values(), ZERO)


@dataclass
class EquityStatement:
    run_id: UUID
    group_id: UUID
    period: PeriodRef
    as_of_date: date
    currency: str
    columns: List[str]
    rows: List[EquityStatementRow]
    comparative_run_id: Optional[UUID] = None
    generated_at: datetime = field(default_factory=utcnow)

    statement_type = StatementType.EQUITY_STATEMENT

    def row(self, description: str) -> Optional[EquityStatementRow]:
        for row in self.rows:
            if row.description == description:
                return row
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statement_type": self.statement_type.value,
            "run_id": str(self.run_id),
            "group_id": str(self.group_id),
            "period": {"year": self.period.year, "period": self.period.period},
            "as_of_date": self.as_of_date.isoformat(),
            "currency": self.currency,
            "columns": self.columns + ["total"],
            "rows": [
                {
                    "description": row.description,
                    "style": row.style.value,
                    "amounts": {
                        **{c: _fmt(row.amounts.get(c, ZERO), self.currency) for c in self.columns},
                        "total": _fmt(row.total, self.currency),
                    },
                }
                for row in self.rows
            ],
            "comparative_run_id": str(self.comparative_run_id) if self.comparative_run_id else None,
            "generated_at": self.generated_at.isoformat(),
        }


def _equity_position(tb: Optional[ConsolidatedTrialBalance]) -> Dict[str, Decimal]:
    """Closing equity by column, with current-period earnings in retained earnings."""
    position = {column: ZERO for column in EQUITY_COLUMNS}
    if tb is None:
        return position
    for line in tb.lines:
        for column, category in EQUITY_COLUMNS.items():
            if line.account_category == category:
                position[column] += _credit(line)
    position["retained_earnings"] += parent_net_income(tb)
    return position


def generate_equity_statement(
    tb: ConsolidatedTrialBalance,
    prior: Optional[ConsolidatedTrialBalance] = None,
    comparative_run_id: Optional[UUID] = None,
) -> EquityStatement:
    columns = list(EQUITY_COLUMNS)
    opening = _equity_position(prior)
    closing = _equity_position(tb)

    same_year = prior is not None and prior.period.year == tb.period.year
    parent_income = parent_net_income(tb) - (parent_net_income(prior) if same_year else ZERO)
    nci_income = nci_share_of_income(tb) - (nci_share_of_income(prior) if same_year else ZERO)

    net_income = {column: ZERO for column in columns}
    net_income["retained_earnings"] = parent_income
    net_income["non_controlling_interest"] = nci_income

    oci = {column: ZERO for column in columns}
    oci["accumulated_oci"] = closing["accumulated_oci"] - opening["accumulated_oci"]

    other = {
        column: closing[column] - opening[column] - net_income[column] - oci[column]
        for column in columns
    }

    return EquityStatement(
        run_id=tb.run_id,
        group_id=tb.group_id,
        period=tb.period,
        as_of_date=tb.as_of_date,
        currency=tb.currency,
        columns=columns,
        rows=[
            EquityStatementRow("Opening balance", opening, LineStyle.SUBTOTAL),
            EquityStatementRow("Net income", net_income),
            EquityStatementRow("Other comprehensive income", oci),
            EquityStatementRow("Other movements", other),
            EquityStatementRow("Closing balance", closing, LineStyle.TOTAL),
        ],
        comparative_run_id=comparative_run_id,
    )
