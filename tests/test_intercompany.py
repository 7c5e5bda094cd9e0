"""
GroupLedger - Intercompany Matching Tests

Tests for pairing both sides of intercompany transactions and for the
discrepancies reported when the two sides disagree.
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

from app.services.consolidation.intercompany import (
    DiscrepancyType,
    IntercompanyTransaction,
    IntercompanyTransactionType,
    MatchingConfig,
    MatchingReport,
    match_transactions,
)
from app.utils.error_handling import ValidationException


PARENT = uuid4()
SUBSIDIARY = uuid4()
NOW = datetime(2025, 3, 31, 12, 0, tzinfo=timezone.utc)


def _tx(from_id, to_id, amount, day=10, currency="USD", tx_type=IntercompanyTransactionType.SALE_PURCHASE):
    return IntercompanyTransaction.create(from_id, to_id, tx_type, date(2025, 3, day), amount, currency)


class TestTransaction:
    """Test intercompany transaction construction."""

    def test_same_company_rejected(self):
        with pytest.raises(ValidationException):
            _tx(PARENT, PARENT, "100")

    @pytest.mark.parametrize("amount", ["0", "-50"])
    def test_amount_must_be_positive(self, amount):
        with pytest.raises(ValidationException) as exc_info:
            _tx(PARENT, SUBSIDIARY, amount)
        assert exc_info.value.field == "amount"


class TestMatchingConfig:
    """Test tolerance configuration."""

    @pytest.mark.parametrize("percent", ["-1", "100.5"])
    def test_amount_tolerance_range(self, percent):
        with pytest.raises(ValidationException):
            MatchingConfig(amount_tolerance_percent=Decimal(percent))

    def test_negative_date_tolerance(self):
        with pytest.raises(ValidationException):
            MatchingConfig(date_tolerance_days=-1)

    def test_tolerance_for_amount(self):
        config = MatchingConfig(amount_tolerance_percent=Decimal("2.5"))
        tolerance = config.tolerance_for(_tx(PARENT, SUBSIDIARY, "1000").amount)
        assert tolerance.amount == Decimal("25")
        assert tolerance.currency == "USD"


class TestMatching:
    """Test pairing of counterpart records."""

    def test_exact_match(self):
        sale = _tx(PARENT, SUBSIDIARY, "1000", day=10)
        purchase = _tx(SUBSIDIARY, PARENT, "1000", day=11)
        result = match_transactions([purchase, sale], now=NOW)

        assert len(result.matched_pairs) == 1
        pair = result.matched_pairs[0]
        assert pair.from_transaction == sale
        assert pair.to_transaction == purchase
        assert pair.is_exact
        assert pair.within_tolerance

        report = result.report
        assert report.total_transactions == 2
        assert report.matched_count == 1
        assert report.unmatched_count == 0
        assert report.match_rate == Decimal("100")
        assert report.is_fully_matched
        assert not report.has_discrepancies
        assert report.total_variance == {}
        assert report.matched_at == NOW

    def test_variance_within_tolerance(self):
        sale = _tx(PARENT, SUBSIDIARY, "1000", day=10)
        purchase = _tx(SUBSIDIARY, PARENT, "995", day=11)
        config = MatchingConfig(amount_tolerance_percent=Decimal("1"))
        result = match_transactions([sale, purchase], config)

        pair = result.matched_pairs[0]
        assert pair.within_tolerance
        assert pair.variance.amount == Decimal("5")
        assert pair.variance_percentage == Decimal("0.5")
        assert result.partial_matches == [pair]
        assert result.report.partial_match_count == 1
        assert result.report.total_variance == {"USD": Decimal("5")}
        assert not result.report.has_discrepancies
        assert not result.report.is_fully_matched

    def test_variance_over_tolerance_reported(self):
        sale = _tx(PARENT, SUBSIDIARY, "1000", day=10)
        purchase = _tx(SUBSIDIARY, PARENT, "900", day=11)
        config = MatchingConfig(amount_tolerance_percent=Decimal("1"))
        result = match_transactions([sale, purchase], config)

        assert len(result.matched_pairs) == 1
        assert not result.matched_pairs[0].within_tolerance
        discrepancy = result.report.discrepancies[0]
        assert discrepancy["discrepancy_type"] == DiscrepancyType.AMOUNT_MISMATCH.value
        assert discrepancy["expected_amount"] == "1000"
        assert discrepancy["actual_amount"] == "900"
        assert discrepancy["variance"] == "100"
        assert discrepancy["date_difference"] == 1
        assert discrepancy["related_transaction_ids"] == [str(sale.id), str(purchase.id)]

    def test_zero_tolerance_flags_any_difference(self):
        sale = _tx(PARENT, SUBSIDIARY, "1000.00", day=10)
        purchase = _tx(SUBSIDIARY, PARENT, "999.99", day=10)
        result = match_transactions([sale, purchase])
        assert len(result.report.discrepancies) == 1

    def test_missing_counterpart(self):
        sale = _tx(PARENT, SUBSIDIARY, "1000")
        result = match_transactions([sale])

        assert result.matched_pairs == []
        assert [u.transaction for u in result.unmatched] == [sale]
        report = result.report
        assert report.unmatched_count == 1
        assert report.match_rate == Decimal("0")
        discrepancy = report.discrepancies[0]
        assert discrepancy["discrepancy_type"] == DiscrepancyType.MISSING_COUNTERPART.value
        assert discrepancy["actual_amount"] is None
        assert discrepancy["date_difference"] is None
        assert str(SUBSIDIARY) in discrepancy["description"]

    def test_same_direction_never_pairs(self):
        result = match_transactions([_tx(PARENT, SUBSIDIARY, "1000"), _tx(PARENT, SUBSIDIARY, "1000")])
        assert result.matched_pairs == []
        assert result.report.unmatched_count == 2

    def test_dates_outside_tolerance(self):
        sale = _tx(PARENT, SUBSIDIARY, "1000", day=1)
        purchase = _tx(SUBSIDIARY, PARENT, "1000", day=10)

        assert match_transactions([sale, purchase]).report.unmatched_count == 2
        widened = match_transactions([sale, purchase], MatchingConfig(date_tolerance_days=10))
        assert widened.report.matched_count == 1

    def test_currency_must_agree(self):
        sale = _tx(PARENT, SUBSIDIARY, "1000", currency="USD")
        purchase = _tx(SUBSIDIARY, PARENT, "1000", currency="EUR")
        assert match_transactions([sale, purchase]).matched_pairs == []

    def test_type_must_agree(self):
        sale = _tx(PARENT, SUBSIDIARY, "1000")
        loan = _tx(SUBSIDIARY, PARENT, "1000", tx_type=IntercompanyTransactionType.LOAN)
        assert match_transactions([sale, loan]).matched_pairs == []

    def test_closest_amount_wins(self):
        """Of two candidate counterparts the one with the smaller variance is paired."""
        sale = _tx(PARENT, SUBSIDIARY, "1000", day=10)
        short = _tx(SUBSIDIARY, PARENT, "900", day=11)
        exact = _tx(SUBSIDIARY, PARENT, "1000", day=11)
        result = match_transactions([short, exact, sale])

        assert result.matched_pairs[0].to_transaction == exact
        assert [u.transaction for u in result.unmatched] == [short]

    def test_no_transactions(self):
        report = match_transactions([]).report
        assert report.total_transactions == 0
        assert report.match_rate == Decimal("100")
        assert report.is_fully_matched


class TestMatchingReport:
    """Test the stored form of a matching report."""

    def test_restored_from_stored_form(self):
        sale = _tx(PARENT, SUBSIDIARY, "1000", day=10)
        purchase = _tx(SUBSIDIARY, PARENT, "990", day=11)
        config = MatchingConfig(date_tolerance_days=5, amount_tolerance_percent=Decimal("0.5"))
        report = match_transactions([sale, purchase], config, now=NOW).report

        restored = MatchingReport.from_dict(report.to_dict())
        assert restored.config == config
        assert restored.matched_at == NOW
        assert restored.total_variance == {"USD": Decimal("10")}
        assert restored.discrepancies == report.discrepancies
