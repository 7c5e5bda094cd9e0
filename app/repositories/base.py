"""
GroupLedger - Repository Interfaces

Abstract collaborators consumed by the consolidation service. Each has a
SQLAlchemy implementation (app.repositories.sql) and an in-memory
implementation (app.repositories.memory).
"""

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import AsyncContextManager, List, Optional
from uuid import UUID

from app.services.consolidation.elimination import EliminationRule
from app.services.consolidation.group import ConsolidationGroup
from app.services.consolidation.intercompany import IntercompanyTransaction
from app.services.consolidation.ledger import AccountInfo, CompanyInfo, CompanyTrialBalance
from app.services.consolidation.run import ConsolidationRun, RunStatus
from app.services.consolidation.values import PeriodRef


class CompanyRepository(ABC):
    """Company existence and lookup."""

    @abstractmethod
    async def exists(self, organization_id: UUID, company_id: UUID) -> bool:
        """True if the company exists and belongs to the organization."""

    @abstractmethod
    async def find_by_id(self, company_id: UUID) -> Optional[CompanyInfo]:
        pass


class AccountRepository(ABC):
    """Chart of accounts and trial balances."""

    @abstractmethod
    async def list_accounts(self, company_id: UUID) -> List[AccountInfo]:
        pass

    @abstractmethod
    async def get_trial_balance(self, company_id: UUID, as_of_date: date) -> Optional[CompanyTrialBalance]:
        """Signed balances (debit positive) as of the date, or None if the company has none."""


class ExchangeRateRepository(ABC):
    """Date-keyed exchange rate lookup. 1 from_currency = rate to_currency."""

    @abstractmethod
    async def get_rate(self, from_currency: str, to_currency: str, on_date: date) -> Optional[Decimal]:
        """Closest rate on or before the date, falling back to the inverse pair."""

    @abstractmethod
    async def get_average_rate(
        self, from_currency: str, to_currency: str, start_date: date, end_date: date,
    ) -> Optional[Decimal]:
        """Average of the rates published within the window, or None."""


class ConsolidationRepository(ABC):
    """Persistence of consolidation groups and runs."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[None]:
        """Unit of work: commit on success, roll back on error."""

    # Groups

    @abstractmethod
    async def add_group(self, group: ConsolidationGroup) -> None:
        pass

    @abstractmethod
    async def get_group(self, group_id: UUID) -> Optional[ConsolidationGroup]:
        pass

    @abstractmethod
    async def list_groups(self, organization_id: UUID, include_inactive: bool = False) -> List[ConsolidationGroup]:
        pass

    @abstractmethod
    async def group_name_exists(self, organization_id: UUID, name: str, exclude_id: Optional[UUID] = None) -> bool:
        pass

    @abstractmethod
    async def save_group(self, group: ConsolidationGroup, expected_version: int) -> ConsolidationGroup:
        """
        Persist a mutated group if its stored version still equals
        expected_version, bumping the version. Raises VersionConflictException.
        """

    # Runs

    @abstractmethod
    async def add_run(self, run: ConsolidationRun, supersede_existing: bool = False) -> None:
        """
        Insert a run atomically with the (group, period) uniqueness check.

        Raises RunAlreadyExistsException when an active run exists and
        supersede_existing is false; otherwise active runs are superseded.
        """

    @abstractmethod
    async def get_run(self, run_id: UUID) -> Optional[ConsolidationRun]:
        pass

    @abstractmethod
    async def save_run(self, run: ConsolidationRun) -> bool:
        """
        Persist a run unless the stored copy is already terminal. Returns
        False, writing nothing, when another writer finished or cancelled
        the run first.
        """

    @abstractmethod
    async def delete_run(self, run_id: UUID) -> None:
        pass

    @abstractmethod
    async def list_runs(
        self,
        group_id: UUID,
        status: Optional[RunStatus] = None,
        year: Optional[int] = None,
        period: Optional[int] = None,
    ) -> List[ConsolidationRun]:
        """Runs of a group, newest period first."""

    @abstractmethod
    async def get_latest_completed_run(
        self, group_id: UUID, before: Optional[PeriodRef] = None,
    ) -> Optional[ConsolidationRun]:
        """Latest non-superseded completed run, optionally strictly before a period."""

    @abstractmethod
    async def count_runs(self, group_id: UUID, status: Optional[RunStatus] = None) -> int:
        pass

    @abstractmethod
    async def rule_referenced_by_runs(self, rule_id: UUID) -> bool:
        pass


class EliminationRuleRepository(ABC):
    """Persistence of elimination rules."""

    @abstractmethod
    async def add_rules(self, rules: List[EliminationRule]) -> None:
        """Insert all rules or none."""

    @abstractmethod
    async def get_rule(self, rule_id: UUID) -> Optional[EliminationRule]:
        pass

    @abstractmethod
    async def list_rules(self, group_id: UUID, active_only: bool = False) -> List[EliminationRule]:
        """Rules of a group ordered by priority."""

    @abstractmethod
    async def rule_name_exists(self, group_id: UUID, name: str, exclude_id: Optional[UUID] = None) -> bool:
        pass

    @abstractmethod
    async def save_rule(self, rule: EliminationRule) -> None:
        pass

    @abstractmethod
    async def delete_rule(self, rule_id: UUID) -> None:
        pass


class IntercompanyTransactionRepository(ABC):
    """Intercompany transactions as booked by each company."""

    @abstractmethod
    async def list_transactions(
        self, company_ids: List[UUID], start_date: date, end_date: date,
    ) -> List[IntercompanyTransaction]:
        """Transactions dated within the window whose two companies are both listed."""


__all__ = [
    "CompanyRepository",
    "AccountRepository",
    "ExchangeRateRepository",
    "ConsolidationRepository",
    "EliminationRuleRepository",
    "IntercompanyTransactionRepository",
]
