"""
GroupLedger - In-Memory Repositories

Dictionary-backed implementations of the repository interfaces. Used by the
test suite and for local experiments without a database. Stored objects are
deep-copied on the way in and out so callers never share state with the
store, mirroring a real database round-trip.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from app.repositories.base import (
    AccountRepository,
    CompanyRepository,
    ConsolidationRepository,
    EliminationRuleRepository,
    ExchangeRateRepository,
    IntercompanyTransactionRepository,
)
from app.services.audit_service import AuditLogService, AuditRecord
from app.services.consolidation.elimination import EliminationRule, rule_sort_key
from app.services.consolidation.group import ConsolidationGroup
from app.services.consolidation.intercompany import IntercompanyTransaction, IntercompanyTransactionType
from app.services.consolidation.ledger import AccountInfo, CompanyInfo, CompanyTrialBalance
from app.services.consolidation.run import ConsolidationRun, RunStatus
from app.services.consolidation.values import PeriodRef
from app.utils.error_handling import (
    AuditLogException,
    RunAlreadyExistsException,
    VersionConflictException,
)


@dataclass
class InMemoryStore:
    """Shared state for the in-memory repositories."""
    companies: Dict[UUID, CompanyInfo] = field(default_factory=dict)
    accounts: Dict[UUID, List[AccountInfo]] = field(default_factory=dict)
    # company_id -> [(balance_date, {code: signed balance})]
    trial_balances: Dict[UUID, List[Tuple[date, Dict[str, Decimal]]]] = field(default_factory=dict)
    # (from, to) -> [(rate_date, rate)]
    rates: Dict[Tuple[str, str], List[Tuple[date, Decimal]]] = field(default_factory=dict)
    groups: Dict[UUID, ConsolidationGroup] = field(default_factory=dict)
    runs: Dict[UUID, ConsolidationRun] = field(default_factory=dict)
    rules: Dict[UUID, EliminationRule] = field(default_factory=dict)
    audit_entries: List[AuditRecord] = field(default_factory=list)
    intercompany_transactions: List[IntercompanyTransaction] = field(default_factory=list)

    # ===========================================
    # SEEDING HELPERS
    # ===========================================

    def add_company(self, company: CompanyInfo, accounts: Optional[List[AccountInfo]] = None) -> CompanyInfo:
        self.companies[company.id] = company
        if accounts is not None:
            self.accounts[company.id] = list(accounts)
        return company

    def set_trial_balance(self, company_id: UUID, balance_date: date, balances: Dict[str, Any]) -> None:
        entries = self.trial_balances.setdefault(company_id, [])
        entries.append((balance_date, {code: Decimal(str(v)) for code, v in balances.items()}))
        entries.sort(key=lambda e: e[0])

    def add_rate(self, from_currency: str, to_currency: str, rate_date: date, rate: Any) -> None:
        entries = self.rates.setdefault((from_currency, to_currency), [])
        entries.append((rate_date, Decimal(str(rate))))
        entries.sort(key=lambda e: e[0])

    def add_intercompany_transaction(
        self,
        from_company_id: UUID,
        to_company_id: UUID,
        transaction_date: date,
        amount: Any,
        currency: str = "USD",
        transaction_type: IntercompanyTransactionType = IntercompanyTransactionType.SALE_PURCHASE,
    ) -> IntercompanyTransaction:
        tx = IntercompanyTransaction.create(
            from_company_id, to_company_id, transaction_type, transaction_date, amount, currency,
        )
        self.intercompany_transactions.append(tx)
        return tx

    def snapshot(self) -> Dict[str, Any]:
        return {
            "groups": copy.deepcopy(self.groups),
            "runs": copy.deepcopy(self.runs),
            "rules": copy.deepcopy(self.rules),
            "audit_entries": list(self.audit_entries),
        }

    def restore(self, state: Dict[str, Any]) -> None:
        self.groups = state["groups"]
        self.runs = state["runs"]
        self.rules = state["rules"]
        self.audit_entries = state["audit_entries"]


class InMemoryCompanyRepository(CompanyRepository):

    def __init__(self, store: InMemoryStore):
        self.store = store

    async def exists(self, organization_id: UUID, company_id: UUID) -> bool:
        company = self.store.companies.get(company_id)
        return company is not None and company.organization_id == organization_id

    async def find_by_id(self, company_id: UUID) -> Optional[CompanyInfo]:
        return self.store.companies.get(company_id)


class InMemoryAccountRepository(AccountRepository):

    def __init__(self, store: InMemoryStore):
        self.store = store

    async def list_accounts(self, company_id: UUID) -> List[AccountInfo]:
        return list(self.store.accounts.get(company_id, []))

    async def get_trial_balance(self, company_id: UUID, as_of_date: date) -> Optional[CompanyTrialBalance]:
        company = self.store.companies.get(company_id)
        if company is None:
            return None
        eligible = [e for e in self.store.trial_balances.get(company_id, []) if e[0] <= as_of_date]
        if not eligible:
            return None
        balance_date, balances = eligible[-1]
        return CompanyTrialBalance(
            company_id=company_id,
            currency=company.functional_currency,
            as_of_date=as_of_date,
            balances=dict(balances),
        )


class InMemoryExchangeRateRepository(ExchangeRateRepository):

    def __init__(self, store: InMemoryStore):
        self.store = store

    def _latest(self, from_currency: str, to_currency: str, on_date: date) -> Optional[Decimal]:
        eligible = [r for d, r in self.store.rates.get((from_currency, to_currency), []) if d <= on_date]
        return eligible[-1] if eligible else None

    async def get_rate(self, from_currency: str, to_currency: str, on_date: date) -> Optional[Decimal]:
        if from_currency == to_currency:
            return Decimal("1")
        rate = self._latest(from_currency, to_currency, on_date)
        if rate is not None:
            return rate
        reverse = self._latest(to_currency, from_currency, on_date)
        if reverse is not None and reverse > 0:
            return Decimal("1") / reverse
        return None

    async def get_average_rate(
        self, from_currency: str, to_currency: str, start_date: date, end_date: date,
    ) -> Optional[Decimal]:
        if from_currency == to_currency:
            return Decimal("1")
        rates = [r for d, r in self.store.rates.get((from_currency, to_currency), []) if start_date <= d <= end_date]
        if rates:
            return sum(rates, Decimal("0")) / len(rates)
        reverse = [r for d, r in self.store.rates.get((to_currency, from_currency), []) if start_date <= d <= end_date]
        if reverse and all(r > 0 for r in reverse):
            return sum((Decimal("1") / r for r in reverse), Decimal("0")) / len(reverse)
        return None


class InMemoryConsolidationRepository(ConsolidationRepository):

    def __init__(self, store: InMemoryStore):
        self.store = store
        self._lock = asyncio.Lock()
        self._depth = 0

    @asynccontextmanager
    async def transaction(self):
        outermost = self._depth == 0
        state = self.store.snapshot() if outermost else None
        self._depth += 1
        try:
            yield
        except BaseException:
            if outermost:
                self.store.restore(state)
            raise
        finally:
            self._depth -= 1

    # Groups

    async def add_group(self, group: ConsolidationGroup) -> None:
        self.store.groups[group.id] = copy.deepcopy(group)

    async def get_group(self, group_id: UUID) -> Optional[ConsolidationGroup]:
        group = self.store.groups.get(group_id)
        return copy.deepcopy(group) if group else None

    async def list_groups(self, organization_id: UUID, include_inactive: bool = False) -> List[ConsolidationGroup]:
        groups = [
            g for g in self.store.groups.values()
            if g.organization_id == organization_id and (include_inactive or g.is_active)
        ]
        return [copy.deepcopy(g) for g in sorted(groups, key=lambda g: g.name)]

    async def group_name_exists(self, organization_id: UUID, name: str, exclude_id: Optional[UUID] = None) -> bool:
        return any(
            g.organization_id == organization_id and g.name.lower() == name.lower() and g.id != exclude_id
            for g in self.store.groups.values()
        )

    async def save_group(self, group: ConsolidationGroup, expected_version: int) -> ConsolidationGroup:
        async with self._lock:
            stored = self.store.groups.get(group.id)
            actual = stored.version if stored else None
            if actual != expected_version:
                raise VersionConflictException("ConsolidationGroup", group.id, expected_version, actual)
            group.version = expected_version + 1
            self.store.groups[group.id] = copy.deepcopy(group)
        return group

    # Runs

    def _active_runs(self, group_id: UUID, period: PeriodRef) -> List[ConsolidationRun]:
        return [
            r for r in self.store.runs.values()
            if r.group_id == group_id and r.period == period and r.is_active
        ]

    async def add_run(self, run: ConsolidationRun, supersede_existing: bool = False) -> None:
        async with self._lock:
            existing = self._active_runs(run.group_id, run.period)
            if existing and not supersede_existing:
                raise RunAlreadyExistsException(run.group_id, str(run.period), existing[0].id)
            for prior in existing:
                prior.is_superseded = True
            self.store.runs[run.id] = copy.deepcopy(run)

    async def get_run(self, run_id: UUID) -> Optional[ConsolidationRun]:
        run = self.store.runs.get(run_id)
        return copy.deepcopy(run) if run else None

    async def save_run(self, run: ConsolidationRun) -> bool:
        stored = self.store.runs.get(run.id)
        if stored is None or stored.is_terminal:
            return False
        # Superseding is owned by add_run; a stale copy must not clear it
        if stored.is_superseded:
            run.is_superseded = True
        self.store.runs[run.id] = copy.deepcopy(run)
        return True

    async def delete_run(self, run_id: UUID) -> None:
        self.store.runs.pop(run_id, None)

    async def list_runs(
        self,
        group_id: UUID,
        status: Optional[RunStatus] = None,
        year: Optional[int] = None,
        period: Optional[int] = None,
    ) -> List[ConsolidationRun]:
        runs = [
            r for r in self.store.runs.values()
            if r.group_id == group_id
            and (status is None or r.status == status)
            and (year is None or r.period.year == year)
            and (period is None or r.period.period == period)
        ]
        runs.sort(key=lambda r: (r.period, r.initiated_at), reverse=True)
        return [copy.deepcopy(r) for r in runs]

    async def get_latest_completed_run(
        self, group_id: UUID, before: Optional[PeriodRef] = None,
    ) -> Optional[ConsolidationRun]:
        candidates = [
            r for r in self.store.runs.values()
            if r.group_id == group_id
            and r.status == RunStatus.COMPLETED
            and not r.is_superseded
            and (before is None or r.period < before)
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda r: (r.period, r.completed_at))
        return copy.deepcopy(latest)

    async def count_runs(self, group_id: UUID, status: Optional[RunStatus] = None) -> int:
        return sum(
            1 for r in self.store.runs.values()
            if r.group_id == group_id and (status is None or r.status == status)
        )

    async def rule_referenced_by_runs(self, rule_id: UUID) -> bool:
        return any(
            e.rule_id == rule_id
            for r in self.store.runs.values()
            for e in (r.elimination_entries + r.proposed_eliminations)
        )


class InMemoryEliminationRuleRepository(EliminationRuleRepository):

    def __init__(self, store: InMemoryStore):
        self.store = store

    async def add_rules(self, rules: List[EliminationRule]) -> None:
        for rule in rules:
            self.store.rules[rule.id] = copy.deepcopy(rule)

    async def get_rule(self, rule_id: UUID) -> Optional[EliminationRule]:
        rule = self.store.rules.get(rule_id)
        return copy.deepcopy(rule) if rule else None

    async def list_rules(self, group_id: UUID, active_only: bool = False) -> List[EliminationRule]:
        rules = [
            r for r in self.store.rules.values()
            if r.group_id == group_id and (r.is_active or not active_only)
        ]
        return [copy.deepcopy(r) for r in sorted(rules, key=rule_sort_key)]

    async def rule_name_exists(self, group_id: UUID, name: str, exclude_id: Optional[UUID] = None) -> bool:
        return any(
            r.group_id == group_id and r.name.lower() == name.lower() and r.id != exclude_id
            for r in self.store.rules.values()
        )

    async def save_rule(self, rule: EliminationRule) -> None:
        rule.version += 1
        self.store.rules[rule.id] = copy.deepcopy(rule)

    async def delete_rule(self, rule_id: UUID) -> None:
        self.store.rules.pop(rule_id, None)


class InMemoryIntercompanyTransactionRepository(IntercompanyTransactionRepository):

    def __init__(self, store: InMemoryStore):
        self.store = store

    async def list_transactions(
        self, company_ids: List[UUID], start_date: date, end_date: date,
    ) -> List[IntercompanyTransaction]:
        companies = set(company_ids)
        return [
            tx for tx in self.store.intercompany_transactions
            if tx.from_company_id in companies
            and tx.to_company_id in companies
            and start_date <= tx.transaction_date <= end_date
        ]


class InMemoryAuditLogService(AuditLogService):
    """Audit log kept in the store; `fail` simulates an unavailable audit sink."""

    def __init__(self, store: InMemoryStore):
        self.store = store
        self.fail = False

    async def _write(self, record: AuditRecord) -> None:
        if self.fail:
            raise AuditLogException("Audit sink unavailable")
        self.store.audit_entries.append(record)

    @property
    def entries(self) -> List[AuditRecord]:
        return list(self.store.audit_entries)
