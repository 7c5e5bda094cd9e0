"""
GroupLedger - Currency Translation

Translates a company's trial balance into the group reporting currency using
the current-rate method:
- assets and liabilities at the closing rate
- revenue and expenses at the period-average rate
- equity at the historical rate
The difference these mixed rates leave behind is posted to the cumulative
translation adjustment (CTA) account so the translated ledger still nets to
zero.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Tuple

from app.services.consolidation.ledger import AccountInfo, AccountType, placeholder_account
from app.services.consolidation.values import ZERO


ONE = Decimal("1")


@dataclass(frozen=True)
class TranslationRates:
    """Rates converting one unit of the company currency into the reporting currency."""
    closing: Decimal
    average: Optional[Decimal] = None
    historical: Optional[Decimal] = None

    @classmethod
    def identity(cls) -> "TranslationRates":
        return cls(closing=ONE, average=ONE, historical=ONE)

    def rate_for(self, account_type: AccountType) -> Decimal:
        if account_type in (AccountType.REVENUE, AccountType.EXPENSE):
            return self.average or self.closing
        if account_type == AccountType.EQUITY:
            return self.historical or self.closing
        return self.closing

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "closing": str(self.closing),
            "average": str(self.average) if self.average is not None else None,
            "historical": str(self.historical) if self.historical is not None else None,
        }


def translate_balances(
    balances: Dict[str, Decimal],
    accounts: Dict[str, AccountInfo],
    rates: TranslationRates,
    cta_account_code: str,
) -> Tuple[Dict[str, Decimal], Decimal]:
    """
    Translate signed balances; returns the translated map (including the CTA
    posting) and the CTA amount itself.
    """
    translated: Dict[str, Decimal] = {}
    for code, balance in balances.items():
        account = accounts.get(code, placeholder_account(code))
        translated[code] = balance * rates.rate_for(account.account_type)

    cta = -sum(translated.values(), ZERO)
    if cta != ZERO:
        translated[cta_account_code] = translated.get(cta_account_code, ZERO) + cta
    return translated, cta
