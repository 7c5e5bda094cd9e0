"""
GroupLedger - SQLAlchemy Repositories

AsyncSession-backed implementations of the repository interfaces.

Write methods only flush; the surrounding `transaction()` block of the
consolidation repository commits or rolls back. All repositories built for a
request share one session so a mutation and its audit entry land in the same
transaction.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.accounting import (
    AccountBalance,
    ChartOfAccounts,
    Company,
    ExchangeRate,
    IntercompanyTransactionRecord,
)
from app.models.consolidation import (
    ConsolidationGroupRecord,
    ConsolidationMemberRecord,
    ConsolidationRunRecord,
    EliminationRuleRecord,
)
from app.repositories.base import (
    AccountRepository,
    CompanyRepository,
    ConsolidationRepository,
    EliminationRuleRepository,
    ExchangeRateRepository,
    IntercompanyTransactionRepository,
)
from app.services.cache_service import cached_fx_rate
from app.services.consolidation.elimination import (
    AccountSelector,
    EliminationAdjustment,
    EliminationRule,
    TriggerCondition,
    rule_sort_key,
)
from app.services.consolidation.group import (
    ConsolidationGroup,
    ConsolidationMember,
    VIEDetermination,
)
from app.services.consolidation.intercompany import (
    IntercompanyTransaction,
    IntercompanyTransactionType,
    MatchingReport,
)
from app.services.consolidation.ledger import AccountInfo, CompanyInfo, CompanyTrialBalance
from app.services.consolidation.nci import NCICalculation
from app.services.consolidation.run import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ConsolidationRun,
    ConsolidationRunOptions,
    ConsolidationRunStep,
    RunStatus,
)
from app.services.consolidation.trial_balance import ConsolidatedTrialBalance
from app.services.consolidation.values import (
    ConsolidationMethod,
    EliminationType,
    Money,
    PeriodRef,
    Percentage,
    ValidationResult,
)
from app.utils.error_handling import RunAlreadyExistsException, VersionConflictException

logger = logging.getLogger(__name__)

_ACTIVE_STATUS_VALUES = [s.value for s in ACTIVE_STATUSES]
_TERMINAL_STATUS_VALUES = [s.value for s in TERMINAL_STATUSES]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ===========================================
# COMPANIES, ACCOUNTS, RATES
# ===========================================

class SqlCompanyRepository(CompanyRepository):

    def __init__(self, db: AsyncSession):
        self.db = db

    async def exists(self, organization_id, company_id) -> bool:
        result = await self.db.execute(
            select(Company.id).where(
                and_(Company.id == company_id, Company.organization_id == organization_id)
            )
        )
        return result.scalar_one_or_none() is not None

    async def find_by_id(self, company_id) -> Optional[CompanyInfo]:
        company = await self.db.get(Company, company_id)
        if company is None:
            return None
        return CompanyInfo(
            id=company.id,
            organization_id=company.organization_id,
            name=company.name,
            functional_currency=company.functional_currency,
            is_active=company.is_active,
        )


class SqlAccountRepository(AccountRepository):

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_accounts(self, company_id) -> List[AccountInfo]:
        result = await self.db.execute(
            select(ChartOfAccounts)
            .where(
                and_(
                    ChartOfAccounts.company_id == company_id,
                    ChartOfAccounts.is_active == True,  # noqa: E712
                )
            )
            .order_by(ChartOfAccounts.account_code)
        )
        return [
            AccountInfo(
                code=row.account_code,
                name=row.account_name,
                account_type=row.account_type,
                category=row.account_category,
                is_cash_flow_relevant=row.is_cash_flow_relevant,
                cash_flow_category=row.cash_flow_category,
                is_cash_equivalent=row.is_cash_equivalent,
                is_intercompany=row.is_intercompany,
            )
            for row in result.scalars().all()
        ]

    async def get_trial_balance(self, company_id, as_of_date: date) -> Optional[CompanyTrialBalance]:
        """Latest snapshot of each account on or before the date."""
        company = await self.db.get(Company, company_id)
        if company is None:
            return None

        latest = (
            select(
                AccountBalance.account_code,
                func.max(AccountBalance.balance_date).label("balance_date"),
            )
            .where(
                and_(
                    AccountBalance.company_id == company_id,
                    AccountBalance.balance_date <= as_of_date,
                )
            )
            .group_by(AccountBalance.account_code)
            .subquery()
        )
        result = await self.db.execute(
            select(AccountBalance).join(
                latest,
                and_(
                    AccountBalance.account_code == latest.c.account_code,
                    AccountBalance.balance_date == latest.c.balance_date,
                ),
            ).where(AccountBalance.company_id == company_id)
        )
        rows = result.scalars().all()
        if not rows:
            return None

        return CompanyTrialBalance(
            company_id=company_id,
            currency=company.functional_currency,
            as_of_date=as_of_date,
            balances={
                row.account_code: Decimal(row.debit_balance) - Decimal(row.credit_balance)
                for row in rows
            },
        )


class SqlExchangeRateRepository(ExchangeRateRepository):

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _closest(self, from_currency: str, to_currency: str, on_date: date) -> Optional[Decimal]:
        result = await self.db.execute(
            select(ExchangeRate.rate)
            .where(
                and_(
                    ExchangeRate.from_currency == from_currency,
                    ExchangeRate.to_currency == to_currency,
                    ExchangeRate.rate_date <= on_date,
                )
            )
            .order_by(ExchangeRate.rate_date.desc())
            .limit(1)
        )
        rate = result.scalar_one_or_none()
        return Decimal(rate) if rate is not None else None

    @cached_fx_rate()
    async def get_rate(self, from_currency: str, to_currency: str, on_date: date) -> Optional[Decimal]:
        rate = await self._closest(from_currency, to_currency, on_date)
        if rate is not None:
            return rate

        # Try reverse rate
        reverse = await self._closest(to_currency, from_currency, on_date)
        if reverse is not None and reverse > 0:
            return Decimal("1") / reverse

        logger.warning(f"No exchange rate found for {from_currency}/{to_currency} on or before {on_date}")
        return None

    async def _window(self, from_currency: str, to_currency: str, start_date: date, end_date: date) -> List[Decimal]:
        result = await self.db.execute(
            select(ExchangeRate.rate).where(
                and_(
                    ExchangeRate.from_currency == from_currency,
                    ExchangeRate.to_currency == to_currency,
                    ExchangeRate.rate_date >= start_date,
                    ExchangeRate.rate_date <= end_date,
                )
            )
        )
        return [Decimal(r) for r in result.scalars().all()]

    async def get_average_rate(
        self, from_currency: str, to_currency: str, start_date: date, end_date: date,
    ) -> Optional[Decimal]:
        if from_currency == to_currency:
            return Decimal("1")

        rates = await self._window(from_currency, to_currency, start_date, end_date)
        if rates:
            return sum(rates, Decimal("0")) / len(rates)

        reverse = await self._window(to_currency, from_currency, start_date, end_date)
        if reverse and all(r > 0 for r in reverse):
            return sum((Decimal("1") / r for r in reverse), Decimal("0")) / len(reverse)
        return None


class SqlIntercompanyTransactionRepository(IntercompanyTransactionRepository):

    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_transactions(
        self, company_ids: List, start_date: date, end_date: date,
    ) -> List[IntercompanyTransaction]:
        if not company_ids:
            return []
        result = await self.db.execute(
            select(IntercompanyTransactionRecord)
            .where(
                and_(
                    IntercompanyTransactionRecord.from_company_id.in_(company_ids),
                    IntercompanyTransactionRecord.to_company_id.in_(company_ids),
                    IntercompanyTransactionRecord.transaction_date >= start_date,
                    IntercompanyTransactionRecord.transaction_date <= end_date,
                )
            )
            .order_by(IntercompanyTransactionRecord.transaction_date)
        )
        return [
            IntercompanyTransaction(
                id=row.id,
                from_company_id=row.from_company_id,
                to_company_id=row.to_company_id,
                transaction_type=IntercompanyTransactionType(row.transaction_type),
                transaction_date=row.transaction_date,
                amount=Money(Decimal(row.amount), row.currency),
                description=row.description,
            )
            for row in result.scalars().all()
        ]


# ===========================================
# MAPPERS
# ===========================================

def _member_to_domain(record: ConsolidationMemberRecord) -> ConsolidationMember:
    return ConsolidationMember(
        company_id=record.company_id,
        ownership_percentage=Percentage.of(Decimal(record.ownership_percentage)),
        non_controlling_interest_percentage=Percentage.of(Decimal(record.non_controlling_interest_percentage)),
        acquisition_date=record.acquisition_date,
        consolidation_method=ConsolidationMethod(record.consolidation_method) if record.consolidation_method else None,
        goodwill_amount=Decimal(record.goodwill_amount) if record.goodwill_amount is not None else None,
        vie_determination=VIEDetermination.from_dict(record.vie_determination),
    )


def _member_to_record(group_id, position: int, member: ConsolidationMember) -> ConsolidationMemberRecord:
    return ConsolidationMemberRecord(
        group_id=group_id,
        company_id=member.company_id,
        position=position,
        ownership_percentage=member.ownership_percentage.value,
        non_controlling_interest_percentage=member.non_controlling_interest_percentage.value,
        consolidation_method=member.consolidation_method.value if member.consolidation_method else None,
        acquisition_date=member.acquisition_date,
        goodwill_amount=member.goodwill_amount,
        vie_determination=member.vie_determination.to_dict() if member.vie_determination else None,
    )


def _group_to_domain(record: ConsolidationGroupRecord) -> ConsolidationGroup:
    return ConsolidationGroup(
        id=record.id,
        organization_id=record.organization_id,
        name=record.name,
        reporting_currency=record.reporting_currency,
        consolidation_method=ConsolidationMethod(record.consolidation_method),
        parent_company_id=record.parent_company_id,
        members=[_member_to_domain(m) for m in sorted(record.members, key=lambda m: m.position)],
        description=record.description,
        is_active=record.is_active,
        version=record.version,
        created_by=record.created_by_id,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


def _rule_to_domain(record: EliminationRuleRecord) -> EliminationRule:
    return EliminationRule(
        id=record.id,
        group_id=record.group_id,
        name=record.name,
        description=record.description,
        elimination_type=EliminationType(record.elimination_type),
        trigger_conditions=[TriggerCondition.from_dict(c) for c in record.trigger_conditions or []],
        source_accounts=[AccountSelector.from_dict(s) for s in record.source_accounts or []],
        target_accounts=[AccountSelector.from_dict(s) for s in record.target_accounts or []],
        debit_account_code=record.debit_account_code,
        credit_account_code=record.credit_account_code,
        is_automatic=record.is_automatic,
        priority=record.priority,
        is_active=record.is_active,
        version=record.version,
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


def _copy_rule(rule: EliminationRule, record: EliminationRuleRecord) -> None:
    record.group_id = rule.group_id
    record.name = rule.name
    record.description = rule.description
    record.elimination_type = rule.elimination_type.value
    record.trigger_conditions = [c.to_dict() for c in rule.trigger_conditions]
    record.source_accounts = [s.to_dict() for s in rule.source_accounts]
    record.target_accounts = [s.to_dict() for s in rule.target_accounts]
    record.debit_account_code = rule.debit_account_code
    record.credit_account_code = rule.credit_account_code
    record.is_automatic = rule.is_automatic
    record.priority = rule.priority
    record.is_active = rule.is_active
    record.version = rule.version


def _run_to_domain(record: ConsolidationRunRecord) -> ConsolidationRun:
    return ConsolidationRun(
        id=record.id,
        group_id=record.group_id,
        organization_id=record.organization_id,
        period=PeriodRef(record.period_year, record.period_number),
        as_of_date=record.as_of_date,
        options=ConsolidationRunOptions.from_dict(record.options),
        status=RunStatus(record.status),
        steps=[ConsolidationRunStep.from_dict(s) for s in record.steps or []],
        validation_result=(
            ValidationResult.from_dict(record.validation_result) if record.validation_result else None
        ),
        consolidated_trial_balance=(
            ConsolidatedTrialBalance.from_dict(record.consolidated_trial_balance)
            if record.consolidated_trial_balance else None
        ),
        elimination_entries=[EliminationAdjustment.from_dict(e) for e in record.elimination_entries or []],
        proposed_eliminations=[EliminationAdjustment.from_dict(e) for e in record.proposed_eliminations or []],
        nci_calculations=[NCICalculation.from_dict(n) for n in record.nci_calculations or []],
        intercompany_matching=(
            MatchingReport.from_dict(record.intercompany_matching) if record.intercompany_matching else None
        ),
        initiated_by=record.initiated_by,
        initiated_at=_aware(record.initiated_at),
        started_at=_aware(record.started_at),
        completed_at=_aware(record.completed_at),
        total_duration_ms=record.total_duration_ms,
        error_message=record.error_message,
        group_version=record.group_version,
        is_superseded=record.is_superseded,
    )


def _copy_run(run: ConsolidationRun, record: ConsolidationRunRecord) -> None:
    """Copy mutable run state; is_superseded is owned by add_run."""
    record.status = run.status.value
    record.options = run.options.to_dict()
    record.steps = [s.to_dict() for s in run.steps]
    record.validation_result = run.validation_result.to_dict() if run.validation_result else None
    record.consolidated_trial_balance = (
        run.consolidated_trial_balance.to_dict() if run.consolidated_trial_balance else None
    )
    record.elimination_entries = [e.to_dict() for e in run.elimination_entries]
    record.proposed_eliminations = [e.to_dict() for e in run.proposed_eliminations]
    record.nci_calculations = [n.to_dict() for n in run.nci_calculations]
    record.intercompany_matching = run.intercompany_matching.to_dict() if run.intercompany_matching else None
    record.started_at = run.started_at
    record.completed_at = run.completed_at
    record.total_duration_ms = run.total_duration_ms
    record.error_message = run.error_message
    record.group_version = run.group_version


# ===========================================
# CONSOLIDATION GROUPS AND RUNS
# ===========================================

class SqlConsolidationRepository(ConsolidationRepository):

    def __init__(self, db: AsyncSession):
        self.db = db
        self._depth = 0

    @asynccontextmanager
    async def transaction(self):
        outermost = self._depth == 0
        self._depth += 1
        try:
            yield
            if outermost:
                await self.db.commit()
        except BaseException:
            if outermost:
                await self.db.rollback()
            raise
        finally:
            self._depth -= 1

    # Groups

    async def _group_record(self, group_id) -> Optional[ConsolidationGroupRecord]:
        result = await self.db.execute(
            select(ConsolidationGroupRecord)
            .where(ConsolidationGroupRecord.id == group_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def add_group(self, group: ConsolidationGroup) -> None:
        record = ConsolidationGroupRecord(
            id=group.id,
            organization_id=group.organization_id,
            name=group.name,
            description=group.description,
            reporting_currency=group.reporting_currency,
            consolidation_method=group.consolidation_method.value,
            parent_company_id=group.parent_company_id,
            is_active=group.is_active,
            version=group.version,
            created_by_id=group.created_by,
            updated_by_id=group.created_by,
            created_at=group.created_at,
            updated_at=group.updated_at,
            members=[_member_to_record(group.id, i, m) for i, m in enumerate(group.members)],
        )
        self.db.add(record)
        await self.db.flush()

    async def get_group(self, group_id) -> Optional[ConsolidationGroup]:
        record = await self._group_record(group_id)
        return _group_to_domain(record) if record else None

    async def list_groups(self, organization_id, include_inactive: bool = False) -> List[ConsolidationGroup]:
        query = select(ConsolidationGroupRecord).where(
            ConsolidationGroupRecord.organization_id == organization_id
        )
        if not include_inactive:
            query = query.where(ConsolidationGroupRecord.is_active == True)  # noqa: E712
        result = await self.db.execute(
            query.order_by(ConsolidationGroupRecord.name).execution_options(populate_existing=True)
        )
        return [_group_to_domain(r) for r in result.scalars().all()]

    async def group_name_exists(self, organization_id, name: str, exclude_id=None) -> bool:
        query = select(ConsolidationGroupRecord.id).where(
            and_(
                ConsolidationGroupRecord.organization_id == organization_id,
                func.lower(ConsolidationGroupRecord.name) == name.lower(),
            )
        )
        if exclude_id is not None:
            query = query.where(ConsolidationGroupRecord.id != exclude_id)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none() is not None

    async def save_group(self, group: ConsolidationGroup, expected_version: int) -> ConsolidationGroup:
        result = await self.db.execute(
            update(ConsolidationGroupRecord)
            .where(
                and_(
                    ConsolidationGroupRecord.id == group.id,
                    ConsolidationGroupRecord.version == expected_version,
                )
            )
            .values(
                name=group.name,
                description=group.description,
                reporting_currency=group.reporting_currency,
                consolidation_method=group.consolidation_method.value,
                is_active=group.is_active,
                updated_at=group.updated_at,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            actual = await self.db.execute(
                select(ConsolidationGroupRecord.version).where(ConsolidationGroupRecord.id == group.id)
            )
            raise VersionConflictException(
                "ConsolidationGroup", group.id, expected_version, actual.scalar_one_or_none(),
            )

        # Members are rewritten wholesale to keep their order
        await self.db.execute(
            delete(ConsolidationMemberRecord)
            .where(ConsolidationMemberRecord.group_id == group.id)
            .execution_options(synchronize_session=False)
        )
        for position, member in enumerate(group.members):
            self.db.add(_member_to_record(group.id, position, member))
        await self.db.flush()

        group.version = expected_version + 1
        return group

    # Runs

    def _active_runs_query(self, group_id, period: PeriodRef):
        return select(ConsolidationRunRecord).where(
            and_(
                ConsolidationRunRecord.group_id == group_id,
                ConsolidationRunRecord.period_year == period.year,
                ConsolidationRunRecord.period_number == period.period,
                ConsolidationRunRecord.is_superseded == False,  # noqa: E712
                ConsolidationRunRecord.status.in_(_ACTIVE_STATUS_VALUES),
            )
        )

    async def add_run(self, run: ConsolidationRun, supersede_existing: bool = False) -> None:
        result = await self.db.execute(self._active_runs_query(run.group_id, run.period))
        existing = result.scalars().all()
        if existing and not supersede_existing:
            raise RunAlreadyExistsException(run.group_id, str(run.period), existing[0].id)
        for prior in existing:
            prior.is_superseded = True
        if existing:
            await self.db.flush()
            logger.info(f"Superseded {len(existing)} run(s) of group {run.group_id} for {run.period}")

        record = ConsolidationRunRecord(
            id=run.id,
            group_id=run.group_id,
            organization_id=run.organization_id,
            period_year=run.period.year,
            period_number=run.period.period,
            as_of_date=run.as_of_date,
            initiated_by=run.initiated_by,
            initiated_at=run.initiated_at,
            is_superseded=run.is_superseded,
        )
        _copy_run(run, record)
        # The partial unique index catches a concurrent insert for the same slot
        try:
            async with self.db.begin_nested():
                self.db.add(record)
        except IntegrityError:
            competing = await self.db.execute(self._active_runs_query(run.group_id, run.period))
            other = competing.scalars().first()
            raise RunAlreadyExistsException(run.group_id, str(run.period), other.id if other else None)

    async def get_run(self, run_id) -> Optional[ConsolidationRun]:
        result = await self.db.execute(
            select(ConsolidationRunRecord)
            .where(ConsolidationRunRecord.id == run_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        return _run_to_domain(record) if record else None

    async def save_run(self, run: ConsolidationRun) -> bool:
        # Row lock so a concurrent cancel and a step completion serialise
        result = await self.db.execute(
            select(ConsolidationRunRecord)
            .where(ConsolidationRunRecord.id == run.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None or record.status in _TERMINAL_STATUS_VALUES:
            return False
        _copy_run(run, record)
        await self.db.flush()
        return True

    async def delete_run(self, run_id) -> None:
        await self.db.execute(
            delete(ConsolidationRunRecord)
            .where(ConsolidationRunRecord.id == run_id)
            .execution_options(synchronize_session="fetch")
        )

    async def list_runs(
        self,
        group_id,
        status: Optional[RunStatus] = None,
        year: Optional[int] = None,
        period: Optional[int] = None,
    ) -> List[ConsolidationRun]:
        query = select(ConsolidationRunRecord).where(ConsolidationRunRecord.group_id == group_id)
        if status is not None:
            query = query.where(ConsolidationRunRecord.status == status.value)
        if year is not None:
            query = query.where(ConsolidationRunRecord.period_year == year)
        if period is not None:
            query = query.where(ConsolidationRunRecord.period_number == period)
        result = await self.db.execute(
            query.order_by(
                ConsolidationRunRecord.period_year.desc(),
                ConsolidationRunRecord.period_number.desc(),
                ConsolidationRunRecord.initiated_at.desc(),
            ).execution_options(populate_existing=True)
        )
        return [_run_to_domain(r) for r in result.scalars().all()]

    async def get_latest_completed_run(self, group_id, before: Optional[PeriodRef] = None) -> Optional[ConsolidationRun]:
        query = select(ConsolidationRunRecord).where(
            and_(
                ConsolidationRunRecord.group_id == group_id,
                ConsolidationRunRecord.status == RunStatus.COMPLETED.value,
                ConsolidationRunRecord.is_superseded == False,  # noqa: E712
            )
        )
        if before is not None:
            query = query.where(
                or_(
                    ConsolidationRunRecord.period_year < before.year,
                    and_(
                        ConsolidationRunRecord.period_year == before.year,
                        ConsolidationRunRecord.period_number < before.period,
                    ),
                )
            )
        result = await self.db.execute(
            query.order_by(
                ConsolidationRunRecord.period_year.desc(),
                ConsolidationRunRecord.period_number.desc(),
                ConsolidationRunRecord.completed_at.desc(),
            ).limit(1)
        )
        record = result.scalar_one_or_none()
        return _run_to_domain(record) if record else None

    async def count_runs(self, group_id, status: Optional[RunStatus] = None) -> int:
        query = select(func.count(ConsolidationRunRecord.id)).where(ConsolidationRunRecord.group_id == group_id)
        if status is not None:
            query = query.where(ConsolidationRunRecord.status == status.value)
        result = await self.db.execute(query)
        return result.scalar_one()

    async def rule_referenced_by_runs(self, rule_id) -> bool:
        # Entries are JSON; scan the runs of the rule's group
        group_id = select(EliminationRuleRecord.group_id).where(
            EliminationRuleRecord.id == rule_id
        ).scalar_subquery()
        result = await self.db.execute(
            select(
                ConsolidationRunRecord.elimination_entries,
                ConsolidationRunRecord.proposed_eliminations,
            ).where(ConsolidationRunRecord.group_id == group_id)
        )
        needle = str(rule_id)
        for applied, proposed in result.all():
            for entry in (applied or []) + (proposed or []):
                if entry.get("rule_id") == needle:
                    return True
        return False


# ===========================================
# ELIMINATION RULES
# ===========================================

class SqlEliminationRuleRepository(EliminationRuleRepository):

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add_rules(self, rules: List[EliminationRule]) -> None:
        for rule in rules:
            record = EliminationRuleRecord(
                id=rule.id,
                created_at=rule.created_at,
                updated_at=rule.updated_at,
            )
            _copy_rule(rule, record)
            self.db.add(record)
        await self.db.flush()

    async def get_rule(self, rule_id) -> Optional[EliminationRule]:
        result = await self.db.execute(
            select(EliminationRuleRecord)
            .where(EliminationRuleRecord.id == rule_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        return _rule_to_domain(record) if record else None

    async def list_rules(self, group_id, active_only: bool = False) -> List[EliminationRule]:
        query = select(EliminationRuleRecord).where(EliminationRuleRecord.group_id == group_id)
        if active_only:
            query = query.where(EliminationRuleRecord.is_active == True)  # noqa: E712
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return sorted((_rule_to_domain(r) for r in result.scalars().all()), key=rule_sort_key)

    async def rule_name_exists(self, group_id, name: str, exclude_id=None) -> bool:
        query = select(EliminationRuleRecord.id).where(
            and_(
                EliminationRuleRecord.group_id == group_id,
                func.lower(EliminationRuleRecord.name) == name.lower(),
            )
        )
        if exclude_id is not None:
            query = query.where(EliminationRuleRecord.id != exclude_id)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none() is not None

    async def save_rule(self, rule: EliminationRule) -> None:
        record = await self.db.get(EliminationRuleRecord, rule.id)
        if record is None:
            return
        rule.version += 1
        _copy_rule(rule, record)
        record.updated_at = rule.updated_at
        await self.db.flush()

    async def delete_rule(self, rule_id) -> None:
        await self.db.execute(
            delete(EliminationRuleRecord)
            .where(EliminationRuleRecord.id == rule_id)
            .execution_options(synchronize_session="fetch")
        )
