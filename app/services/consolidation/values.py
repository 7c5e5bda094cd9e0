"""
GroupLedger - Consolidation Value Objects

Ownership percentages, money, period references, consolidation methods,
elimination types and validation issues shared by the consolidation engine.

All monetary arithmetic uses Decimal; floats are rejected at construction.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Union

from app.utils.error_handling import CurrencyMismatchException, ValidationException, ErrorCode


HUNDRED = Decimal("100")
ZERO = Decimal("0")

# ISO 4217 currencies whose minor unit is not two decimals
_MINOR_UNITS: Dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
    "CLP": 0,
    "ISK": 0,
    "UGX": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
    "JOD": 3,
    "TND": 3,
    "LYD": 3,
}


class _Unset:
    """Marker for a patch field that was not supplied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def is_set(value: Any) -> bool:
    """True when a patch field was supplied (explicit None counts as supplied)."""
    return value is not UNSET


def to_decimal(value: Union[Decimal, int, str], field_name: str = "amount") -> Decimal:
    """Coerce to Decimal without ever passing through float."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationException(
            f"{field_name} must be a decimal string or integer, not {type(value).__name__}",
            field=field_name,
            code=ErrorCode.INVALID_AMOUNT,
        )
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationException(f"Invalid decimal value for {field_name}: {value!r}", field=field_name)


def minor_units(currency: str) -> int:
    """Number of decimal places of the currency's minor unit."""
    return _MINOR_UNITS.get(currency.upper(), 2)


def minor_unit_quantum(currency: str) -> Decimal:
    """Smallest representable amount of the currency, e.g. 0.01 for USD."""
    return Decimal(1).scaleb(-minor_units(currency))


def round_to_minor(amount: Decimal, currency: str) -> Decimal:
    """Round half-up to the currency's minor unit."""
    return amount.quantize(minor_unit_quantum(currency), rounding=ROUND_HALF_UP)


def validate_currency_code(code: str) -> str:
    """Validate an ISO 4217 alphabetic code and normalise to upper case."""
    if not isinstance(code, str) or len(code) != 3 or not code.isalpha():
        raise ValidationException(f"Invalid currency code: {code!r}", field="currency")
    return code.upper()


# ===========================================
# ENUMS
# ===========================================

class ConsolidationMethod(str, Enum):
    """How a member company's balances enter the consolidated ledger."""
    FULL = "full"
    PROPORTIONAL = "proportional"
    EQUITY = "equity"
    COST = "cost"


class EliminationType(str, Enum):
    """Category of intercompany elimination a rule performs."""
    INTERCOMPANY_RECEIVABLE_PAYABLE = "intercompany_receivable_payable"
    INTERCOMPANY_REVENUE_EXPENSE = "intercompany_revenue_expense"
    INTERCOMPANY_DIVIDEND = "intercompany_dividend"
    INVESTMENT_IN_SUBSIDIARY = "investment_in_subsidiary"
    UNREALIZED_PROFIT_INVENTORY = "unrealized_profit_inventory"
    UNREALIZED_PROFIT_FIXED_ASSETS = "unrealized_profit_fixed_assets"


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


# ===========================================
# PERCENTAGE
# ===========================================

@dataclass(frozen=True)
class Percentage:
    """
    A percentage in the closed range [0, 100] with two-decimal precision.

    Stored as Decimal so that complements such as 100 - 66.67 stay exact.
    """
    value: Decimal

    def __post_init__(self):
        value = to_decimal(self.value, "percentage")
        if value < ZERO or value > HUNDRED:
            raise ValidationException(
                f"Percentage must be between 0 and 100, got {value}",
                field="percentage",
            )
        object.__setattr__(self, "value", value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

    @classmethod
    def of(cls, value: Union["Percentage", Decimal, int, str]) -> "Percentage":
        if isinstance(value, Percentage):
            return value
        return cls(to_decimal(value, "percentage"))

    def complement(self) -> "Percentage":
        """100 minus this percentage."""
        return Percentage(HUNDRED - self.value)

    def as_fraction(self) -> Decimal:
        return self.value / HUNDRED

    def of_amount(self, amount: Decimal) -> Decimal:
        """Apply this percentage to an amount without rounding."""
        return amount * self.value / HUNDRED

    @property
    def is_zero(self) -> bool:
        return self.value == ZERO

    @property
    def is_full(self) -> bool:
        return self.value == HUNDRED

    def __str__(self) -> str:
        return f"{self.value}%"


# ===========================================
# MONEY
# ===========================================

@dataclass(frozen=True)
class Money:
    """Arbitrary-precision amount tagged with an ISO 4217 currency."""
    amount: Decimal
    currency: str

    def __post_init__(self):
        object.__setattr__(self, "amount", to_decimal(self.amount))
        object.__setattr__(self, "currency", validate_currency_code(self.currency))

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(ZERO, currency)

    def _check(self, other: "Money") -> None:
        if other.currency != self.currency:
            raise CurrencyMismatchException(self.currency, other.currency)

    def __add__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: "Money") -> "Money":
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> "Money":
        return Money(-self.amount, self.currency)

    def __abs__(self) -> "Money":
        return Money(abs(self.amount), self.currency)

    def scale(self, factor: Decimal) -> "Money":
        return Money(self.amount * to_decimal(factor, "factor"), self.currency)

    def round_to_minor(self) -> "Money":
        return Money(round_to_minor(self.amount, self.currency), self.currency)

    @property
    def is_zero(self) -> bool:
        return self.amount == ZERO

    def __str__(self) -> str:
        return f"{self.currency} {self.amount}"


# ===========================================
# PERIOD
# ===========================================

@dataclass(frozen=True, order=True)
class PeriodRef:
    """Fiscal year plus period number (1-12, 13 for an adjustment period)."""
    year: int
    period: int

    def __post_init__(self):
        if self.year < 1900 or self.year > 9999:
            raise ValidationException(f"Invalid fiscal year: {self.year}", field="year", code=ErrorCode.INVALID_PERIOD)
        if self.period < 1 or self.period > 13:
            raise ValidationException(
                f"Period must be between 1 and 13, got {self.period}",
                field="period",
                code=ErrorCode.INVALID_PERIOD,
            )

    def __str__(self) -> str:
        return f"FY{self.year}-P{self.period:02d}"


def fiscal_year_start(as_of: date, start_month: int = 1) -> date:
    """First day of the fiscal year containing as_of."""
    if start_month < 1 or start_month > 12:
        raise ValidationException(f"Invalid fiscal year start month: {start_month}", field="start_month")
    year = as_of.year if as_of.month >= start_month else as_of.year - 1
    return date(year, start_month, 1)


# ===========================================
# VALIDATION ISSUES
# ===========================================

@dataclass(frozen=True)
class ValidationIssue:
    """A single finding produced while validating a run."""
    severity: IssueSeverity
    code: str
    message: str
    entity_reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "entity_reference": self.entity_reference,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationIssue":
        return cls(
            severity=IssueSeverity(data["severity"]),
            code=data["code"],
            message=data["message"],
            entity_reference=data.get("entity_reference"),
        )

    @classmethod
    def error(cls, code: str, message: str, entity_reference: Optional[str] = None) -> "ValidationIssue":
        return cls(IssueSeverity.ERROR, code, message, entity_reference)

    @classmethod
    def warning(cls, code: str, message: str, entity_reference: Optional[str] = None) -> "ValidationIssue":
        return cls(IssueSeverity.WARNING, code, message, entity_reference)


@dataclass
class ValidationResult:
    """Outcome of the Validate step; valid means no error-severity issue."""
    issues: list = field(default_factory=list)

    @property
    def errors(self) -> list:
        return [i for i in self.issues if i.severity == IssueSeverity.ERROR]

    @property
    def warnings(self) -> list:
        return [i for i in self.issues if i.severity == IssueSeverity.WARNING]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "issues": [i.to_dict() for i in self.issues],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationResult":
        return cls(issues=[ValidationIssue.from_dict(i) for i in data.get("issues", [])])
