"""
GroupLedger - Company, Chart of Accounts & Ledger Balance Models

Read side of the general ledger consumed by consolidation:
- Companies owned by an organization
- Harmonised chart of accounts with statement classification flags
- Cumulative account balance snapshots
- Exchange rates
- Intercompany transactions as booked by each company
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, Date, ForeignKey, Numeric, String,
    Enum as SQLEnum, UniqueConstraint, Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import BaseModel
from app.services.consolidation.intercompany import IntercompanyTransactionType
from app.services.consolidation.ledger import AccountCategory, AccountType, CashFlowCategory


class RateType(str, Enum):
    """How an exchange rate was derived."""
    SPOT = "spot"
    AVERAGE = "average"
    HISTORICAL = "historical"


class Company(BaseModel):
    """A legal entity owned by an organization."""

    __tablename__ = "companies"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    functional_currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="ISO 4217 code the company keeps its books in",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ChartOfAccounts(BaseModel):
    """
    Chart of Accounts entry for a company.

    Account codes are harmonised across the companies of an organization so
    the consolidation engine can merge balances by code.
    """

    __tablename__ = "chart_of_accounts"

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Account Identification
    account_code: Mapped[str] = mapped_column(
        String(20), nullable=False,
        comment="Group-wide account code (e.g., 1000, 1100, 2000)",
    )
    account_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Classification
    account_type: Mapped[AccountType] = mapped_column(
        SQLEnum(AccountType), nullable=False,
    )
    account_category: Mapped[AccountCategory] = mapped_column(
        SQLEnum(AccountCategory), nullable=False,
    )

    # Cash flow statement classification
    is_cash_flow_relevant: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    cash_flow_category: Mapped[Optional[CashFlowCategory]] = mapped_column(
        SQLEnum(CashFlowCategory), nullable=True,
    )
    is_cash_equivalent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Intercompany
    is_intercompany: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
        comment="Balance should be fully eliminated on consolidation",
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint('company_id', 'account_code', name='uq_coa_company_code'),
    )


class AccountBalance(BaseModel):
    """
    Cumulative balance of one account as of a date.
    Denormalized from journal entries for reporting.
    """

    __tablename__ = "account_balances"

    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    account_code: Mapped[str] = mapped_column(String(20), nullable=False)
    balance_date: Mapped[date] = mapped_column(Date, nullable=False)

    debit_balance: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        default=Decimal("0.00"),
        nullable=False,
    )
    credit_balance: Mapped[Decimal] = mapped_column(
        Numeric(precision=18, scale=2),
        default=Decimal("0.00"),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint('company_id', 'account_code', 'balance_date', name='uq_account_balance'),
        Index('ix_ab_company_date', 'company_id', 'balance_date'),
    )


class ExchangeRate(BaseModel):
    """
    Exchange rate: 1 from_currency = rate to_currency.
    """
    __tablename__ = "exchange_rates"

    from_currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="Source currency (e.g., EUR)"
    )
    to_currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        comment="Target currency (e.g., USD)"
    )
    rate: Mapped[Decimal] = mapped_column(
        Numeric(18, 8),
        nullable=False,
        comment="1 from_currency = rate to_currency"
    )
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    rate_type: Mapped[RateType] = mapped_column(
        SQLEnum(RateType), default=RateType.SPOT, nullable=False,
    )
    source: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="central bank, manual, api"
    )

    __table_args__ = (
        Index('ix_fx_pair_date', 'from_currency', 'to_currency', 'rate_date'),
    )


class IntercompanyTransactionRecord(BaseModel):
    """
    One company's side of a transaction with another group company.
    The counterparty books the mirror record with the companies swapped.
    """
    __tablename__ = "intercompany_transactions"

    from_company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    to_company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id", ondelete="CASCADE"),
        nullable=False,
    )
    transaction_type: Mapped[IntercompanyTransactionType] = mapped_column(
        SQLEnum(IntercompanyTransactionType), nullable=False,
    )
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=18, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    __table_args__ = (
        Index('ix_ic_from_date', 'from_company_id', 'transaction_date'),
    )
