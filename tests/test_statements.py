"""
GroupLedger - Consolidated Statement Tests

Tests for balance sheet, income statement, cash flow and equity statement
generation from a consolidated trial balance.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from app.services.consolidation.ledger import SystemAccounts
from app.services.consolidation.nci import calculate_nci, signed_adjustment
from app.services.consolidation.statements import (
    StatementType,
    generate_balance_sheet,
    generate_cash_flow_statement,
    generate_equity_statement,
    generate_income_statement,
)
from app.services.consolidation.trial_balance import build_consolidated_trial_balance
from app.services.consolidation.values import Percentage, PeriodRef
from app.utils.error_handling import BalanceNotBalancedException, ErrorCode

from conftest import CHART, PARENT_BALANCES, SUBSIDIARY_BALANCES


SYSTEM = SystemAccounts()
ACCOUNTS = {a.code: a for a in list(CHART) + list(SYSTEM.all())}
GROUP_ID = uuid4()


def _decimals(balances):
    return {code: Decimal(str(v)) for code, v in balances.items()}


def _tb(contributions, period=PeriodRef(2025, 3), eliminations=(), nci=()):
    return build_consolidated_trial_balance(
        contributions=contributions,
        elimination_adjustments=list(eliminations),
        nci_adjustments=list(nci),
        accounts=ACCOUNTS,
        currency="USD",
        run_id=uuid4(),
        group_id=GROUP_ID,
        period=period,
        as_of_date=date(2025, 3, 31),
    )


@pytest.fixture
def group_tb():
    """Parent plus an 80%-owned subsidiary, intercompany balances eliminated."""
    _, nci = calculate_nci(uuid4(), Percentage.of(20), _decimals(SUBSIDIARY_BALANCES), ACCOUNTS, SYSTEM)
    return _tb(
        [_decimals(PARENT_BALANCES), _decimals(SUBSIDIARY_BALANCES)],
        eliminations=[signed_adjustment("2300", "1300", Decimal("10000"), "Intercompany balances")],
        nci=nci,
    )


class TestBalanceSheet:
    """Test the consolidated balance sheet."""

    def test_assets_equal_liabilities_plus_equity(self, group_tb):
        sheet = generate_balance_sheet(group_tb)
        totals = sheet.totals
        assert totals["total_assets"] == Decimal("150000")
        assert totals["total_liabilities"] == Decimal("20000")
        assert totals["parent_equity"] == Decimal("122000")
        assert totals["non_controlling_interest"] == Decimal("8000")
        assert totals["total_liabilities_and_equity"] == totals["total_assets"]

    def test_current_period_earnings_in_parent_equity(self, group_tb):
        sheet = generate_balance_sheet(group_tb)
        equity = sheet.section("Equity")
        earnings = [i for i in equity.line_items if i.description == "Current period earnings"]
        assert earnings[0].amount == Decimal("14000")

    def test_nci_presented_separately(self, group_tb):
        sheet = generate_balance_sheet(group_tb)
        nci = sheet.section("Non-controlling interest")
        assert [i.account_code for i in nci.line_items] == ["3900"]
        assert all(i.account_code != "3900" for i in sheet.section("Equity").line_items)

    def test_fixed_assets_are_non_current(self, group_tb):
        sheet = generate_balance_sheet(group_tb)
        assert sheet.section("Non-current assets").subtotal == Decimal("50000")
        assert sheet.section("Current assets").subtotal == Decimal("100000")

    def test_one_dollar_imbalance_raises(self):
        tb = _tb([{"1000": Decimal("100"), "3000": Decimal("-99")}])
        with pytest.raises(BalanceNotBalancedException) as exc_info:
            generate_balance_sheet(tb)
        assert exc_info.value.code == ErrorCode.BALANCE_SHEET_NOT_BALANCED

    def test_sub_cent_difference_tolerated(self):
        tb = _tb([{"1000": Decimal("100.004"), "3000": Decimal("-100")}])
        sheet = generate_balance_sheet(tb)
        assert sheet.statement_type == StatementType.BALANCE_SHEET

    def test_to_dict_formats_minor_units(self, group_tb):
        data = generate_balance_sheet(group_tb).to_dict()
        assert data["statement_type"] == "balance_sheet"
        assert data["totals"]["total_assets"] == "150000.00"
        assert data["period"] == {"year": 2025, "period": 3}


class TestIncomeStatement:
    """Test the consolidated income statement."""

    def test_totals_and_attribution(self, group_tb):
        statement = generate_income_statement(group_tb)
        totals = statement.totals
        assert totals["revenue"] == Decimal("60000")
        assert totals["gross_profit"] == Decimal("60000")
        assert totals["operating_income"] == Decimal("15000")
        assert totals["net_income"] == Decimal("15000")
        assert totals["attributable_to_nci"] == Decimal("1000")
        assert totals["attributable_to_parent"] == Decimal("14000")

    def test_equity_method_income_is_other_income(self):
        tb = _tb([
            _decimals(PARENT_BALANCES),
            {"1950": Decimal("12000"), "4950": Decimal("-1500"), "3960": Decimal("-10500")},
        ])
        statement = generate_income_statement(tb)
        assert statement.section("Other income and expense").subtotal == Decimal("1500")
        assert statement.totals["net_income"] == Decimal("11500")


class TestCashFlowStatement:
    """Test the indirect-method cash flow statement."""

    def test_first_period_reconciles_to_cash(self, group_tb):
        statement = generate_cash_flow_statement(group_tb)
        totals = statement.totals
        assert totals["net_income"] == Decimal("15000")
        assert totals["investing_activities"] == Decimal("-50000")
        assert totals["beginning_cash"] == 0
        assert totals["ending_cash"] == Decimal("80000")
        assert totals["net_change_in_cash"] == Decimal("80000")
        assert totals["unreconciled_difference"] == 0

    def test_same_year_prior_uses_period_movements(self, group_tb):
        prior = _tb([{"1000": Decimal("50000"), "3000": Decimal("-50000")}], period=PeriodRef(2025, 2))
        statement = generate_cash_flow_statement(group_tb, prior, comparative_run_id=prior.run_id)
        totals = statement.totals
        assert totals["beginning_cash"] == Decimal("50000")
        assert totals["net_change_in_cash"] == Decimal("30000")
        assert totals["unreconciled_difference"] == 0
        assert statement.comparative_run_id == prior.run_id

    def test_prior_year_earnings_backed_out(self, group_tb):
        prior = _tb(
            [{"1000": Decimal("60000"), "3000": Decimal("-50000"), "4000": Decimal("-10000")}],
            period=PeriodRef(2024, 12),
        )
        statement = generate_cash_flow_statement(group_tb, prior)
        financing = statement.section("Cash flows from financing activities")
        transfer = [i for i in financing.line_items if i.description.startswith("Prior-year earnings")]
        assert transfer[0].amount == Decimal("-10000")
        assert statement.totals["net_income"] == Decimal("15000")
        assert statement.totals["unreconciled_difference"] == 0


class TestEquityStatement:
    """Test the statement of changes in equity."""

    def test_columns_and_rows(self, group_tb):
        statement = generate_equity_statement(group_tb)
        assert statement.columns == [
            "share_capital", "retained_earnings", "accumulated_oci", "treasury_stock", "non_controlling_interest",
        ]
        assert [r.description for r in statement.rows] == [
            "Opening balance", "Net income", "Other comprehensive income", "Other movements", "Closing balance",
        ]

    def test_closing_equals_balance_sheet_equity(self, group_tb):
        statement = generate_equity_statement(group_tb)
        closing = statement.row("Closing balance")
        assert closing.amounts["share_capital"] == Decimal("80000")
        assert closing.amounts["retained_earnings"] == Decimal("42000")
        assert closing.amounts["non_controlling_interest"] == Decimal("8000")
        assert closing.total == generate_balance_sheet(group_tb).totals["total_equity"]

    def test_rows_reconcile(self, group_tb):
        statement = generate_equity_statement(group_tb)
        net_income = statement.row("Net income")
        assert net_income.amounts["retained_earnings"] == Decimal("14000")
        assert net_income.amounts["non_controlling_interest"] == Decimal("1000")
        for column in statement.columns:
            moved = sum(
                statement.row(d).amounts[column]
                for d in ("Opening balance", "Net income", "Other comprehensive income", "Other movements")
            )
            assert moved == statement.row("Closing balance").amounts[column]

    def test_to_dict_includes_total_column(self, group_tb):
        data = generate_equity_statement(group_tb).to_dict()
        assert data["columns"][-1] == "total"
        assert data["rows"][-1]["amounts"]["total"] == "130000.00"
