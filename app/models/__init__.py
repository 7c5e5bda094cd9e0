"""
GroupLedger - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from app.models.base import BaseModel, TimestampMixin, AuditMixin
from app.models.accounting import (
    Company,
    ChartOfAccounts,
    AccountBalance,
    ExchangeRate,
    RateType,
    IntercompanyTransactionRecord,
)
from app.models.consolidation import (
    ConsolidationGroupRecord,
    ConsolidationMemberRecord,
    EliminationRuleRecord,
    ConsolidationRunRecord,
)
from app.models.audit import AuditLog, AuditAction

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "AuditMixin",
    "Company",
    "ChartOfAccounts",
    "AccountBalance",
    "ExchangeRate",
    "RateType",
    "IntercompanyTransactionRecord",
    "ConsolidationGroupRecord",
    "ConsolidationMemberRecord",
    "EliminationRuleRecord",
    "ConsolidationRunRecord",
    "AuditLog",
    "AuditAction",
]
