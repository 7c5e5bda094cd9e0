"""
GroupLedger - Intercompany Transaction Matching

Each side of an intercompany transaction is recorded by the company that
booked it: a sale from A to B appears once as A -> B in A's books and once
as B -> A in B's books. Matching pairs the two records so that missing
counterparts and amount differences surface before eliminations are posted.

Two records are candidates when they run in opposite directions between the
same companies, share a transaction type and currency, and are dated within
the configured number of days of each other. Among candidates the smallest
variance wins. A variance within the tolerance counts as matched; a larger
one stays paired but is reported as an amount discrepancy.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID, uuid4

from app.services.consolidation.group import utcnow
from app.services.consolidation.values import HUNDRED, ZERO, Money, to_decimal
from app.utils.error_handling import ValidationException


class IntercompanyTransactionType(str, Enum):
    SALE_PURCHASE = "sale_purchase"
    LOAN = "loan"
    MANAGEMENT_FEE = "management_fee"
    DIVIDEND = "dividend"
    CAPITAL_CONTRIBUTION = "capital_contribution"
    COST_ALLOCATION = "cost_allocation"
    ROYALTY = "royalty"


class DiscrepancyType(str, Enum):
    AMOUNT_MISMATCH = "amount_mismatch"
    MISSING_COUNTERPART = "missing_counterpart"


@dataclass(frozen=True)
class IntercompanyTransaction:
    """One company's record of a transaction with another group company."""
    id: UUID
    from_company_id: UUID
    to_company_id: UUID
    transaction_type: IntercompanyTransactionType
    transaction_date: date
    amount: Money
    description: Optional[str] = None

    @classmethod
    def create(
        cls,
        from_company_id: UUID,
        to_company_id: UUID,
        transaction_type: IntercompanyTransactionType,
        transaction_date: date,
        amount: Any,
        currency: str,
        description: Optional[str] = None,
    ) -> "IntercompanyTransaction":
        if from_company_id == to_company_id:
            raise ValidationException(
                "An intercompany transaction needs two different companies", field="to_company_id",
            )
        money = Money(to_decimal(amount), currency)
        if money.amount <= ZERO:
            raise ValidationException("Intercompany amount must be positive", field="amount")
        return cls(
            id=uuid4(),
            from_company_id=from_company_id,
            to_company_id=to_company_id,
            transaction_type=transaction_type,
            transaction_date=transaction_date,
            amount=money,
            description=description,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "from_company_id": str(self.from_company_id),
            "to_company_id": str(self.to_company_id),
            "transaction_type": self.transaction_type.value,
            "transaction_date": self.transaction_date.isoformat(),
            "amount": str(self.amount.amount),
            "currency": self.amount.currency,
        }


@dataclass(frozen=True)
class MatchingConfig:
    date_tolerance_days: int = 3
    amount_tolerance_percent: Decimal = ZERO

    def __post_init__(self):
        tolerance = to_decimal(self.amount_tolerance_percent, "amount_tolerance_percent")
        if tolerance < ZERO or tolerance > HUNDRED:
            raise ValidationException(
                "Amount tolerance must be between 0 and 100 percent", field="amount_tolerance_percent",
            )
        if self.date_tolerance_days < 0:
            raise ValidationException("Date tolerance cannot be negative", field="date_tolerance_days")
        object.__setattr__(self, "amount_tolerance_percent", tolerance)

    def tolerance_for(self, amount: Money) -> Money:
        return abs(amount).scale(self.amount_tolerance_percent / HUNDRED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date_tolerance_days": self.date_tolerance_days,
            "amount_tolerance_percent": str(self.amount_tolerance_percent),
        }


@dataclass(frozen=True)
class MatchedPair:
    from_transaction: IntercompanyTransaction
    to_transaction: IntercompanyTransaction
    variance: Money
    within_tolerance: bool

    @property
    def is_exact(self) -> bool:
        return self.variance.is_zero

    @property
    def variance_percentage(self) -> Optional[Decimal]:
        base = self.from_transaction.amount.amount
        if base == ZERO:
            return None
        return self.variance.amount / base * HUNDRED


@dataclass(frozen=True)
class UnmatchedTransaction:
    transaction: IntercompanyTransaction
    reason: str = "No matching counterpart transaction found"


@dataclass(frozen=True)
class DiscrepancyDetail:
    discrepancy_type: DiscrepancyType
    from_company_id: UUID
    to_company_id: UUID
    transaction_type: IntercompanyTransactionType
    expected_amount: Money
    actual_amount: Optional[Money]
    variance: Money
    expected_date: date
    actual_date: Optional[date]
    description: str
    related_transaction_ids: Tuple[UUID, ...] = ()

    @property
    def date_difference(self) -> Optional[int]:
        if self.actual_date is None:
            return None
        return (self.actual_date - self.expected_date).days

    def to_dict(self) -> Dict[str, Any]:
        return {
            "discrepancy_type": self.discrepancy_type.value,
            "from_company_id": str(self.from_company_id),
            "to_company_id": str(self.to_company_id),
            "transaction_type": self.transaction_type.value,
            "currency": self.expected_amount.currency,
            "expected_amount": str(self.expected_amount.amount),
            "actual_amount": str(self.actual_amount.amount) if self.actual_amount is not None else None,
            "variance": str(self.variance.amount),
            "expected_date": self.expected_date.isoformat(),
            "actual_date": self.actual_date.isoformat() if self.actual_date else None,
            "date_difference": self.date_difference,
            "description": self.description,
            "related_transaction_ids": [str(i) for i in self.related_transaction_ids],
        }


@dataclass
class MatchingReport:
    """Summary attached to a run; stored as plain data."""
    matched_at: datetime
    config: MatchingConfig
    total_transactions: int = 0
    matched_count: int = 0
    unmatched_count: int = 0
    partial_match_count: int = 0
    # currency -> summed variance of matched pairs
    total_variance: Dict[str, Decimal] = field(default_factory=dict)
    discrepancies: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def match_rate(self) -> Decimal:
        if self.total_transactions == 0:
            return HUNDRED
        return Decimal(self.matched_count * 2) / Decimal(self.total_transactions) * HUNDRED

    @property
    def is_fully_matched(self) -> bool:
        return self.unmatched_count == 0 and self.partial_match_count == 0

    @property
    def has_discrepancies(self) -> bool:
        return bool(self.discrepancies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched_at": self.matched_at.isoformat(),
            "config": self.config.to_dict(),
            "total_transactions": self.total_transactions,
            "matched_count": self.matched_count,
            "unmatched_count": self.unmatched_count,
            "partial_match_count": self.partial_match_count,
            "match_rate": str(self.match_rate.quantize(Decimal("0.01"))),
            "is_fully_matched": self.is_fully_matched,
            "total_variance": {c: str(v) for c, v in self.total_variance.items()},
            "discrepancies": list(self.discrepancies),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchingReport":
        config = data.get("config") or {}
        return cls(
            matched_at=datetime.fromisoformat(data["matched_at"]),
            config=MatchingConfig(
                date_tolerance_days=int(config.get("date_tolerance_days", 3)),
                amount_tolerance_percent=Decimal(config.get("amount_tolerance_percent", "0")),
            ),
            total_transactions=data.get("total_transactions", 0),
            matched_count=data.get("matched_count", 0),
            unmatched_count=data.get("unmatched_count", 0),
            partial_match_count=data.get("partial_match_count", 0),
            total_variance={c: Decimal(v) for c, v in (data.get("total_variance") or {}).items()},
            discrepancies=list(data.get("discrepancies") or []),
        )


@dataclass
class MatchingResult:
    matched_pairs: List[MatchedPair]
    unmatched: List[UnmatchedTransaction]
    report: MatchingReport

    @property
    def exact_matches(self) -> List[MatchedPair]:
        return [p for p in self.matched_pairs if p.is_exact]

    @property
    def partial_matches(self) -> List[MatchedPair]:
        return [p for p in self.matched_pairs if not p.is_exact]


def _is_candidate(tx: IntercompanyTransaction, other: IntercompanyTransaction, config: MatchingConfig) -> bool:
    if tx.from_company_id != other.to_company_id or tx.to_company_id != other.from_company_id:
        return False
    if tx.transaction_type != other.transaction_type:
        return False
    if tx.amount.currency != other.amount.currency:
        return False
    return abs((tx.transaction_date - other.transaction_date).days) <= config.date_tolerance_days


def _missing_counterpart(unmatched: UnmatchedTransaction) -> DiscrepancyDetail:
    tx = unmatched.transaction
    return DiscrepancyDetail(
        discrepancy_type=DiscrepancyType.MISSING_COUNTERPART,
        from_company_id=tx.from_company_id,
        to_company_id=tx.to_company_id,
        transaction_type=tx.transaction_type,
        expected_amount=tx.amount,
        actual_amount=None,
        variance=tx.amount,
        expected_date=tx.transaction_date,
        actual_date=None,
        description=(
            f"Company {tx.to_company_id} has no record matching "
            f"{tx.transaction_type.value} of {tx.amount} on {tx.transaction_date}"
        ),
        related_transaction_ids=(tx.id,),
    )


def _amount_mismatch(pair: MatchedPair) -> DiscrepancyDetail:
    from_tx, to_tx = pair.from_transaction, pair.to_transaction
    return DiscrepancyDetail(
        discrepancy_type=DiscrepancyType.AMOUNT_MISMATCH,
        from_company_id=from_tx.from_company_id,
        to_company_id=from_tx.to_company_id,
        transaction_type=from_tx.transaction_type,
        expected_amount=from_tx.amount,
        actual_amount=to_tx.amount,
        variance=pair.variance,
        expected_date=from_tx.transaction_date,
        actual_date=to_tx.transaction_date,
        description=f"Amount variance of {pair.variance} between companies exceeds tolerance",
        related_transaction_ids=(from_tx.id, to_tx.id),
    )


def match_transactions(
    transactions: Iterable[IntercompanyTransaction],
    config: Optional[MatchingConfig] = None,
    now: Optional[datetime] = None,
) -> MatchingResult:
    """Pair each transaction with its counterpart record and report what does not agree."""
    config = config or MatchingConfig()
    ordered = sorted(transactions, key=lambda t: (t.transaction_date, str(t.from_company_id), str(t.id)))

    matched: List[MatchedPair] = []
    unmatched: List[UnmatchedTransaction] = []
    used: set = set()

    for tx in ordered:
        if tx.id in used:
            continue
        candidates = [
            other for other in ordered
            if other.id not in used and other.id != tx.id and _is_candidate(tx, other, config)
        ]
        if not candidates:
            continue
        best = min(candidates, key=lambda o: (abs(tx.amount - o.amount).amount, o.transaction_date, str(o.id)))
        variance = tx.amount - best.amount
        matched.append(MatchedPair(
            from_transaction=tx,
            to_transaction=best,
            variance=variance,
            within_tolerance=abs(variance).amount <= config.tolerance_for(tx.amount).amount,
        ))
        used.update((tx.id, best.id))

    for tx in ordered:
        if tx.id not in used:
            # The counterparty never booked its side
            unmatched.append(UnmatchedTransaction(transaction=tx))

    discrepancies = [_missing_counterpart(u) for u in unmatched]
    discrepancies.extend(_amount_mismatch(p) for p in matched if not p.within_tolerance)

    total_variance: Dict[str, Money] = {}
    for pair in matched:
        if not pair.is_exact:
            currency = pair.variance.currency
            total_variance[currency] = total_variance.get(currency, Money.zero(currency)) + pair.variance

    report = MatchingReport(
        matched_at=now or utcnow(),
        config=config,
        total_transactions=len(ordered),
        matched_count=len(matched),
        unmatched_count=len(unmatched),
        partial_match_count=sum(1 for p in matched if not p.is_exact),
        total_variance={c: m.amount for c, m in total_variance.items() if not m.is_zero},
        discrepancies=[d.to_dict() for d in discrepancies],
    )
    return MatchingResult(matched_pairs=matched, unmatched=unmatched, report=report)
