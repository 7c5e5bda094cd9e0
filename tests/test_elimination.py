"""
GroupLedger - Elimination Engine Tests

Tests for rule ordering, trigger thresholds and manual proposals.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from app.services.consolidation.elimination import (
    AccountSelector,
    AdjustmentStatus,
    EliminationEngine,
    EliminationRule,
    RulePatch,
    TriggerCondition,
)
from app.services.consolidation.ledger import AccountCategory
from app.services.consolidation.values import EliminationType
from app.utils.error_handling import ValidationException

from conftest import CHART


ACCOUNTS = {a.code: a for a in CHART}
GROUP_ID = uuid4()


def _balances(**values):
    return {code.lstrip("_"): Decimal(str(v)) for code, v in values.items()}


def _receivable_rule(name="Receivables vs payables", priority=10, **kwargs) -> EliminationRule:
    return EliminationRule.create(
        group_id=GROUP_ID,
        name=name,
        elimination_type=EliminationType.INTERCOMPANY_RECEIVABLE_PAYABLE,
        debit_account_code="2300",
        credit_account_code="1300",
        source_accounts=[AccountSelector.by_code("1300")],
        priority=priority,
        **kwargs,
    )


def _payable_rule(name="Payables to receivables", priority=20) -> EliminationRule:
    return EliminationRule.create(
        group_id=GROUP_ID,
        name=name,
        elimination_type=EliminationType.INTERCOMPANY_RECEIVABLE_PAYABLE,
        debit_account_code="2300",
        credit_account_code="1200",
        source_accounts=[AccountSelector.by_code("2300")],
        priority=priority,
    )


class TestAccountSelector:
    """Test account selection."""

    def test_by_range_is_inclusive(self):
        selector = AccountSelector.by_range("1000", "1300")
        assert selector.matches("1000", None)
        assert selector.matches("1300", None)
        assert not selector.matches("1600", None)

    def test_by_category(self):
        selector = AccountSelector.by_category(AccountCategory.CURRENT_LIABILITY)
        assert selector.matches("2300", ACCOUNTS["2300"])
        assert not selector.matches("1300", ACCOUNTS["1300"])
        assert not selector.matches("9999", None)

    def test_inverted_range_rejected(self):
        with pytest.raises(ValidationException):
            AccountSelector.by_range("2000", "1000")


class TestRuleValidation:
    """Test rule construction rules."""

    def test_rule_needs_sources(self):
        with pytest.raises(ValidationException):
            EliminationRule.create(
                group_id=GROUP_ID,
                name="No sources",
                elimination_type=EliminationType.INTERCOMPANY_DIVIDEND,
                debit_account_code="4000",
                credit_account_code="3100",
            )

    def test_debit_and_credit_must_differ(self):
        with pytest.raises(ValidationException):
            EliminationRule.create(
                group_id=GROUP_ID,
                name="Same account",
                elimination_type=EliminationType.INTERCOMPANY_DIVIDEND,
                debit_account_code="1300",
                credit_account_code="1300",
                source_accounts=[AccountSelector.by_code("1300")],
            )

    def test_patch_revalidates(self):
        rule = _receivable_rule()
        with pytest.raises(ValidationException):
            rule.apply_patch(RulePatch(credit_account_code="2300"))

    def test_condition_without_sources_uses_rule_sources(self):
        rule = _receivable_rule(trigger_conditions=[TriggerCondition("Material balances", minimum_amount=Decimal("5"))])
        result = EliminationEngine().evaluate([rule], _balances(_1300=10000, _2300=-10000), ACCOUNTS, "USD")
        assert result.applied[0].amount == Decimal("10000")
        assert result.applied[0].description == "Material balances"


class TestEliminationEngine:
    """Test rule evaluation against working balances."""

    def test_receivable_payable_cleared(self):
        """A $10,000 receivable against a $10,000 payable nets both to zero."""
        result = EliminationEngine().evaluate(
            [_receivable_rule()], _balances(_1300=10000, _2300=-10000), ACCOUNTS, "USD",
        )
        assert len(result.applied) == 1
        entry = result.applied[0]
        assert entry.amount == Decimal("10000")
        assert (entry.debit_account_code, entry.credit_account_code) == ("2300", "1300")
        assert result.balances["1300"] == 0
        assert result.balances["2300"] == 0
        assert result.total_eliminated == Decimal("10000")

    def test_priority_order_changes_outcome(self):
        """Later rules see balances already cleared by earlier ones."""
        balances = _balances(_1200=0, _1300=10000, _2300=-10000)

        receivables_first = EliminationEngine().evaluate(
            [_payable_rule(priority=20), _receivable_rule(priority=10)], balances, ACCOUNTS, "USD",
        )
        assert [a.rule_name for a in receivables_first.applied] == ["Receivables vs payables"]
        assert receivables_first.balances["1200"] == 0

        payables_first = EliminationEngine().evaluate(
            [_payable_rule(priority=5), _receivable_rule(priority=10)], balances, ACCOUNTS, "USD",
        )
        assert [a.rule_name for a in payables_first.applied] == [
            "Payables to receivables", "Receivables vs payables",
        ]
        assert payables_first.balances["1200"] == Decimal("-10000")
        assert payables_first.balances["2300"] == Decimal("10000")

    def test_equal_priority_ordered_by_name(self):
        b = _receivable_rule(name="B rule", priority=1)
        a = _payable_rule(name="A rule", priority=1)
        result = EliminationEngine().evaluate([b, a], _balances(_1300=10000, _2300=-10000), ACCOUNTS, "USD")
        assert result.applied[0].rule_name == "A rule"

    def test_threshold_not_met_skips_rule(self):
        rule = _receivable_rule(trigger_conditions=[TriggerCondition(
            "Only above 50k",
            source_accounts=(AccountSelector.by_code("1300"),),
            minimum_amount=Decimal("50000"),
        )])
        result = EliminationEngine().evaluate([rule], _balances(_1300=10000, _2300=-10000), ACCOUNTS, "USD")
        assert result.applied == []
        assert result.skipped_rule_ids == [rule.id]
        assert result.balances["1300"] == Decimal("10000")

    def test_threshold_is_inclusive(self):
        rule = _receivable_rule(trigger_conditions=[TriggerCondition(
            "At least 10k",
            source_accounts=(AccountSelector.by_code("1300"),),
            minimum_amount=Decimal("10000"),
        )])
        result = EliminationEngine().evaluate([rule], _balances(_1300=10000, _2300=-10000), ACCOUNTS, "USD")
        assert result.processed_rule_ids == [rule.id]

    def test_zero_net_never_fires(self):
        result = EliminationEngine().evaluate([_receivable_rule()], _balances(_1300=0), ACCOUNTS, "USD")
        assert result.applied == []
        assert result.proposed == []

    def test_manual_rule_only_proposes(self):
        """Manual rules never touch the balances."""
        rule = _receivable_rule(is_automatic=False)
        result = EliminationEngine().evaluate([rule], _balances(_1300=10000, _2300=-10000), ACCOUNTS, "USD")
        assert result.applied == []
        assert len(result.proposed) == 1
        assert result.proposed[0].status == AdjustmentStatus.PROPOSED
        assert result.balances["1300"] == Decimal("10000")

    def test_inactive_rules_ignored(self):
        rule = _receivable_rule()
        rule.is_active = False
        result = EliminationEngine().evaluate([rule], _balances(_1300=10000), ACCOUNTS, "USD")
        assert result.applied == []
        assert result.skipped_rule_ids == []

    def test_wrong_direction_warns(self):
        """A rule crediting a payable it was meant to clear grows the balance."""
        rule = EliminationRule.create(
            group_id=GROUP_ID,
            name="Backwards",
            elimination_type=EliminationType.INTERCOMPANY_RECEIVABLE_PAYABLE,
            debit_account_code="1200",
            credit_account_code="2300",
            source_accounts=[AccountSelector.by_code("2300")],
        )
        result = EliminationEngine().evaluate([rule], _balances(_2300=-10000), ACCOUNTS, "USD")
        assert result.balances["2300"] == Decimal("-20000")
        assert [w.code for w in result.warnings] == ["ELIMINATION_INCREASED_BALANCE"]

    def test_input_balances_not_mutated(self):
        balances = _balances(_1300=10000, _2300=-10000)
        EliminationEngine().evaluate([_receivable_rule()], balances, ACCOUNTS, "USD")
        assert balances["1300"] == Decimal("10000")
