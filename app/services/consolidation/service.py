"""
GroupLedger - Consolidation Service

Command and query surface of the consolidation subsystem: groups and
members, elimination rules, runs and consolidated reports.

Every operation is scoped to an organization; entities of another
organization are reported as not found.

Audit policy:
- group, member and rule mutations are financial configuration: the audit
  entry is written in the same transaction and a failed write rolls the
  mutation back;
- run lifecycle changes are informational: a failed audit write is logged
  and the operation proceeds.
"""

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from app.repositories.base import (
    AccountRepository,
    CompanyRepository,
    ConsolidationRepository,
    EliminationRuleRepository,
    ExchangeRateRepository,
    IntercompanyTransactionRepository,
)
from app.services.audit_service import AuditLogService
from app.services.cache_service import CacheService
from app.services.consolidation.elimination import EliminationRule, RulePatch
from app.services.consolidation.group import (
    ConsolidationGroup,
    ConsolidationMember,
    GroupPatch,
    MemberPatch,
    utcnow,
)
from app.services.consolidation.ledger import SystemAccounts
from app.services.consolidation.orchestrator import ConsolidationRunOrchestrator
from app.services.consolidation.run import ConsolidationRun, ConsolidationRunOptions, RunStatus
from app.services.consolidation.statements import (
    StatementType,
    generate_balance_sheet,
    generate_cash_flow_statement,
    generate_equity_statement,
    generate_income_statement,
)
from app.services.consolidation.trial_balance import ConsolidatedTrialBalance
from app.services.consolidation.values import ConsolidationMethod, PeriodRef
from app.utils.error_handling import (
    AuditLogException,
    BusinessRuleException,
    CompanyNotFoundException,
    DuplicateEntryException,
    ErrorCode,
    GroupInactiveException,
    GroupNotFoundException,
    HasCompletedRunsException,
    InvalidRunTransitionException,
    NoTrialBalanceException,
    RuleNotFoundException,
    RunNotCompletedException,
    RunNotFoundException,
    ValidationException,
)

logger = logging.getLogger(__name__)

GROUP_ENTITY = "consolidation_group"
RULE_ENTITY = "elimination_rule"
RUN_ENTITY = "consolidation_run"


class ConsolidationService:
    """Service for consolidation groups, elimination rules, runs and reports."""

    def __init__(
        self,
        consolidation_repo: ConsolidationRepository,
        company_repo: CompanyRepository,
        account_repo: AccountRepository,
        rate_repo: ExchangeRateRepository,
        rule_repo: EliminationRuleRepository,
        audit: AuditLogService,
        cache: Optional[CacheService] = None,
        system_accounts: Optional[SystemAccounts] = None,
        clock: Callable = utcnow,
        intercompany_repo: Optional[IntercompanyTransactionRepository] = None,
        fiscal_year_start_month: Optional[int] = None,
    ):
        self.consolidation_repo = consolidation_repo
        self.company_repo = company_repo
        self.rule_repo = rule_repo
        self.audit = audit
        self.cache = cache
        self.clock = clock
        self.orchestrator = ConsolidationRunOrchestrator(
            consolidation_repo=consolidation_repo,
            company_repo=company_repo,
            account_repo=account_repo,
            rate_repo=rate_repo,
            rule_repo=rule_repo,
            audit=audit,
            system_accounts=system_accounts,
            clock=clock,
            intercompany_repo=intercompany_repo,
            fiscal_year_start_month=fiscal_year_start_month,
        )

    # =========================================================================
    # GROUPS
    # =========================================================================

    async def create_group(
        self,
        organization_id: UUID,
        name: str,
        reporting_currency: str,
        consolidation_method: ConsolidationMethod,
        parent_company_id: UUID,
        members: Optional[List[ConsolidationMember]] = None,
        description: Optional[str] = None,
        user_id: Optional[UUID] = None,
    ) -> ConsolidationGroup:
        """Create a group after validating the parent and every member company."""
        if not await self.company_repo.exists(organization_id, parent_company_id):
            raise CompanyNotFoundException(parent_company_id, parent=True)
        for member in members or []:
            await self._require_company(organization_id, member.company_id)

        group = ConsolidationGroup.create(
            organization_id=organization_id,
            name=name,
            reporting_currency=reporting_currency,
            consolidation_method=consolidation_method,
            parent_company_id=parent_company_id,
            members=members,
            description=description,
            created_by=user_id,
        )
        await self._require_unique_group_name(organization_id, group.name)

        async with self.consolidation_repo.transaction():
            await self.consolidation_repo.add_group(group)
            await self.audit.log_create(
                organization_id=organization_id,
                entity_type=GROUP_ENTITY,
                entity_id=group.id,
                new_values=group.snapshot(),
                user_id=user_id,
                description=f"Created consolidation group '{group.name}'",
            )

        logger.info(f"Created consolidation group {group.id} ({group.name}) with {len(group.members)} member(s)")
        return group

    async def update_group(
        self,
        organization_id: UUID,
        group_id: UUID,
        patch: GroupPatch,
        expected_version: Optional[int] = None,
        user_id: Optional[UUID] = None,
    ) -> ConsolidationGroup:
        group = await self.get_group(organization_id, group_id)
        version = self._check_version(group, expected_version)
        before = group.snapshot()

        changed = group.apply_patch(patch)
        if not changed:
            return group
        if "name" in changed:
            await self._require_unique_group_name(organization_id, group.name, exclude_id=group.id)

        return await self._save_group(
            group, version, before, user_id, f"Updated consolidation group ({', '.join(changed)})",
        )

    async def activate_group(
        self,
        organization_id: UUID,
        group_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> ConsolidationGroup:
        group = await self.get_group(organization_id, group_id)
        version = group.version
        if not group.activate():
            return group
        return await self._save_group_status(group, version, "inactive", "active", user_id)

    async def deactivate_group(
        self,
        organization_id: UUID,
        group_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> ConsolidationGroup:
        """Deactivation leaves in-flight runs untouched; it only blocks new runs."""
        group = await self.get_group(organization_id, group_id)
        version = group.version
        if not group.deactivate():
            return group
        return await self._save_group_status(group, version, "active", "inactive", user_id)

    async def delete_group(
        self,
        organization_id: UUID,
        group_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> ConsolidationGroup:
        """
        Groups are never hard-deleted. A group without completed runs is
        soft-deleted by deactivating it.
        """
        group = await self.get_group(organization_id, group_id)
        completed = await self.consolidation_repo.count_runs(group.id, RunStatus.COMPLETED)
        if completed:
            raise HasCompletedRunsException(group.id, completed)

        version = group.version
        before = group.snapshot()
        group.deactivate()
        async with self.consolidation_repo.transaction():
            saved = await self.consolidation_repo.save_group(group, version)
            await self.audit.log_delete(
                organization_id=organization_id,
                entity_type=GROUP_ENTITY,
                entity_id=group.id,
                old_values=before,
                user_id=user_id,
                description=f"Deleted (deactivated) consolidation group '{group.name}'",
            )
        logger.info(f"Soft-deleted consolidation group {group.id}")
        return saved

    async def list_groups(self, organization_id: UUID, include_inactive: bool = False) -> List[ConsolidationGroup]:
        groups = await self.consolidation_repo.list_groups(organization_id, include_inactive)
        for group in groups:
            await self._attach_rule_ids(group)
        return groups

    async def get_group(self, organization_id: UUID, group_id: UUID) -> ConsolidationGroup:
        group = await self.consolidation_repo.get_group(group_id)
        if group is None or group.organization_id != organization_id:
            raise GroupNotFoundException(group_id)
        await self._attach_rule_ids(group)
        return group

    # =========================================================================
    # MEMBERS
    # =========================================================================

    async def add_member(
        self,
        organization_id: UUID,
        group_id: UUID,
        member: ConsolidationMember,
        expected_version: Optional[int] = None,
        user_id: Optional[UUID] = None,
    ) -> ConsolidationGroup:
        group = await self.get_group(organization_id, group_id)
        version = self._check_version(group, expected_version)
        await self._require_company(organization_id, member.company_id)
        before = group.snapshot()
        group.add_member(member)
        return await self._save_group(group, version, before, user_id, f"Added member {member.company_id}")

    async def update_member(
        self,
        organization_id: UUID,
        group_id: UUID,
        company_id: UUID,
        patch: MemberPatch,
        expected_version: Optional[int] = None,
        user_id: Optional[UUID] = None,
    ) -> ConsolidationGroup:
        group = await self.get_group(organization_id, group_id)
        version = self._check_version(group, expected_version)
        before = group.snapshot()
        group.update_member(company_id, patch)
        return await self._save_group(group, version, before, user_id, f"Updated member {company_id}")

    async def remove_member(
        self,
        organization_id: UUID,
        group_id: UUID,
        company_id: UUID,
        expected_version: Optional[int] = None,
        user_id: Optional[UUID] = None,
    ) -> ConsolidationGroup:
        group = await self.get_group(organization_id, group_id)
        version = self._check_version(group, expected_version)
        before = group.snapshot()
        group.remove_member(company_id)
        return await self._save_group(group, version, before, user_id, f"Removed member {company_id}")

    # =========================================================================
    # ELIMINATION RULES
    # =========================================================================

    async def create_elimination_rule(
        self,
        organization_id: UUID,
        group_id: UUID,
        user_id: Optional[UUID] = None,
        **attributes: Any,
    ) -> EliminationRule:
        """
        Create one rule. `attributes` are the EliminationRule fields: name,
        elimination_type, debit_account_code, credit_account_code and
        optionally trigger_conditions, source_accounts, target_accounts,
        description, is_automatic, priority.
        """
        rules = await self.bulk_create_elimination_rules(
            organization_id, [dict(attributes, group_id=group_id)], user_id=user_id,
        )
        return rules[0]

    async def bulk_create_elimination_rules(
        self,
        organization_id: UUID,
        drafts: List[Dict[str, Any]],
        user_id: Optional[UUID] = None,
    ) -> List[EliminationRule]:
        """
        Create several rules, possibly across groups, all or nothing.

        Every referenced group and every rule is validated before anything
        is written; the inserts and their audit entries share one
        transaction.
        """
        if not drafts:
            raise ValidationException("At least one elimination rule is required", field="rules")

        groups: Dict[UUID, ConsolidationGroup] = {}
        for draft in drafts:
            group_id = draft.get("group_id")
            if group_id is None:
                raise ValidationException("group_id is required for every rule", field="group_id")
            if group_id not in groups:
                groups[group_id] = await self.get_group(organization_id, group_id)

        rules: List[EliminationRule] = []
        seen = set()
        for draft in drafts:
            attributes = dict(draft)
            group_id = attributes.pop("group_id")
            rule = EliminationRule.create(group_id=group_id, **attributes)
            key = (group_id, rule.name.lower())
            if key in seen or await self.rule_repo.rule_name_exists(group_id, rule.name):
                raise DuplicateEntryException("EliminationRule", "name", rule.name)
            seen.add(key)
            rules.append(rule)

        async with self.consolidation_repo.transaction():
            await self.rule_repo.add_rules(rules)
            for rule in rules:
                await self.audit.log_create(
                    organization_id=organization_id,
                    entity_type=RULE_ENTITY,
                    entity_id=rule.id,
                    new_values=rule.snapshot(),
                    user_id=user_id,
                    description=f"Created elimination rule '{rule.name}' for group {rule.group_id}",
                )

        logger.info(f"Created {len(rules)} elimination rule(s) across {len(groups)} group(s)")
        return rules

    async def update_elimination_rule(
        self,
        organization_id: UUID,
        rule_id: UUID,
        patch: RulePatch,
        user_id: Optional[UUID] = None,
    ) -> EliminationRule:
        rule = await self.get_elimination_rule(organization_id, rule_id)
        before = rule.snapshot()
        changed = rule.apply_patch(patch)
        if not changed:
            return rule
        if "name" in changed and await self.rule_repo.rule_name_exists(rule.group_id, rule.name, exclude_id=rule.id):
            raise DuplicateEntryException("EliminationRule", "name", rule.name)
        return await self._save_rule(organization_id, rule, before, user_id, f"Updated rule ({', '.join(changed)})")

    async def activate_elimination_rule(
        self,
        organization_id: UUID,
        rule_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> EliminationRule:
        return await self._set_rule_active(organization_id, rule_id, True, user_id)

    async def deactivate_elimination_rule(
        self,
        organization_id: UUID,
        rule_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> EliminationRule:
        return await self._set_rule_active(organization_id, rule_id, False, user_id)

    async def update_priority(
        self,
        organization_id: UUID,
        rule_id: UUID,
        priority: int,
        user_id: Optional[UUID] = None,
    ) -> EliminationRule:
        """Lower numbers run first."""
        return await self.update_elimination_rule(
            organization_id, rule_id, RulePatch(priority=priority), user_id=user_id,
        )

    async def delete_elimination_rule(
        self,
        organization_id: UUID,
        rule_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> None:
        """Rules referenced by any run's eliminations are kept for history; deactivate them instead."""
        rule = await self.get_elimination_rule(organization_id, rule_id)
        if await self.consolidation_repo.rule_referenced_by_runs(rule.id):
            raise BusinessRuleException(
                f"Elimination rule '{rule.name}' is referenced by consolidation runs; deactivate it instead",
                rule="RULE_UNUSED",
                code=ErrorCode.RULE_IN_USE,
            )
        async with self.consolidation_repo.transaction():
            await self.rule_repo.delete_rule(rule.id)
            await self.audit.log_delete(
                organization_id=organization_id,
                entity_type=RULE_ENTITY,
                entity_id=rule.id,
                old_values=rule.snapshot(),
                user_id=user_id,
                description=f"Deleted elimination rule '{rule.name}'",
            )
        logger.info(f"Deleted elimination rule {rule.id}")

    async def list_elimination_rules(
        self,
        organization_id: UUID,
        group_id: UUID,
        active_only: bool = False,
    ) -> List[EliminationRule]:
        await self.get_group(organization_id, group_id)
        return await self.rule_repo.list_rules(group_id, active_only=active_only)

    async def get_elimination_rule(self, organization_id: UUID, rule_id: UUID) -> EliminationRule:
        rule = await self.rule_repo.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundException(rule_id)
        group = await self.consolidation_repo.get_group(rule.group_id)
        if group is None or group.organization_id != organization_id:
            raise RuleNotFoundException(rule_id)
        return rule

    # =========================================================================
    # RUNS
    # =========================================================================

    async def initiate_run(
        self,
        organization_id: UUID,
        group_id: UUID,
        period: PeriodRef,
        as_of_date: date,
        options: Optional[ConsolidationRunOptions] = None,
        user_id: Optional[UUID] = None,
    ) -> ConsolidationRun:
        """
        Create a Pending run. Raises RunAlreadyExistsException when an active
        run exists for the period, unless options.force_regeneration
        supersedes it.
        """
        group = await self.get_group(organization_id, group_id)
        if not group.is_active:
            raise GroupInactiveException(group.id)

        options = options or ConsolidationRunOptions()
        run = ConsolidationRun.create(
            group_id=group.id,
            organization_id=organization_id,
            period=period,
            as_of_date=as_of_date,
            options=options,
            initiated_by=user_id,
            now=self.clock(),
        )
        async with self.consolidation_repo.transaction():
            await self.consolidation_repo.add_run(run, supersede_existing=options.force_regeneration)

        await self._audit_run(
            self.audit.log_create,
            run.id,
            organization_id=organization_id,
            entity_type=RUN_ENTITY,
            entity_id=run.id,
            new_values={
                "group_id": str(group.id),
                "period": str(period),
                "as_of_date": as_of_date.isoformat(),
                "options": options.to_dict(),
                "status": run.status.value,
            },
            user_id=user_id,
            description=f"Initiated consolidation run for {period}",
        )
        logger.info(f"Initiated consolidation run {run.id} for group {group.id} period {period}")
        return run

    async def execute_run(
        self,
        organization_id: UUID,
        run_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> ConsolidationRun:
        """Execute a Pending run through the pipeline; returns it in its final state."""
        run = await self.get_run(organization_id, run_id)
        return await self.orchestrator.execute(run, user_id=user_id)

    async def cancel_run(
        self,
        organization_id: UUID,
        run_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> ConsolidationRun:
        run = await self.get_run(organization_id, run_id)
        previous = run.status
        run.cancel(self.clock())
        async with self.consolidation_repo.transaction():
            saved = await self.consolidation_repo.save_run(run)
        if not saved:
            # The run finished between the read and the write
            stored = await self.get_run(organization_id, run_id)
            raise InvalidRunTransitionException(run.id, stored.status.value, "cancel", code=ErrorCode.CANNOT_CANCEL)

        await self._audit_run(
            self.audit.log_status_change,
            run.id,
            organization_id=organization_id,
            entity_type=RUN_ENTITY,
            entity_id=run.id,
            from_status=previous.value,
            to_status=run.status.value,
            user_id=user_id,
            description=f"Cancelled consolidation run for {run.period}",
        )
        logger.info(f"Cancelled consolidation run {run.id}")
        return run

    async def delete_run(
        self,
        organization_id: UUID,
        run_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> None:
        run = await self.get_run(organization_id, run_id)
        run.ensure_deletable()
        async with self.consolidation_repo.transaction():
            await self.consolidation_repo.delete_run(run.id)

        await self._audit_run(
            self.audit.log_delete,
            run.id,
            organization_id=organization_id,
            entity_type=RUN_ENTITY,
            entity_id=run.id,
            old_values={"status": run.status.value, "period": str(run.period)},
            user_id=user_id,
            description=f"Deleted consolidation run for {run.period}",
        )
        if self.cache is not None:
            await self.cache.invalidate_run_reports(run.id)
        logger.info(f"Deleted consolidation run {run.id}")

    async def list_runs(
        self,
        organization_id: UUID,
        group_id: UUID,
        status: Optional[RunStatus] = None,
        year: Optional[int] = None,
        period: Optional[int] = None,
    ) -> List[ConsolidationRun]:
        await self.get_group(organization_id, group_id)
        return await self.consolidation_repo.list_runs(group_id, status=status, year=year, period=period)

    async def get_run(self, organization_id: UUID, run_id: UUID) -> ConsolidationRun:
        run = await self.consolidation_repo.get_run(run_id)
        if run is None or run.organization_id != organization_id:
            raise RunNotFoundException(run_id)
        return run

    async def get_latest_completed_run(self, organization_id: UUID, group_id: UUID) -> Optional[ConsolidationRun]:
        await self.get_group(organization_id, group_id)
        return await self.consolidation_repo.get_latest_completed_run(group_id)

    async def get_consolidated_trial_balance(self, organization_id: UUID, run_id: UUID) -> ConsolidatedTrialBalance:
        run = await self._completed_run(organization_id, run_id)
        return run.consolidated_trial_balance

    # =========================================================================
    # REPORTS
    # =========================================================================

    async def get_balance_sheet(self, organization_id: UUID, run_id: UUID) -> Dict[str, Any]:
        run = await self._completed_run(organization_id, run_id)
        return await self._cached_report(
            run, StatementType.BALANCE_SHEET, None,
            lambda: generate_balance_sheet(run.consolidated_trial_balance),
        )

    async def get_income_statement(self, organization_id: UUID, run_id: UUID) -> Dict[str, Any]:
        run = await self._completed_run(organization_id, run_id)
        return await self._cached_report(
            run, StatementType.INCOME_STATEMENT, None,
            lambda: generate_income_statement(run.consolidated_trial_balance),
        )

    async def get_cash_flow_statement(self, organization_id: UUID, run_id: UUID) -> Dict[str, Any]:
        run = await self._completed_run(organization_id, run_id)
        prior = await self.consolidation_repo.get_latest_completed_run(run.group_id, before=run.period)
        prior_id = prior.id if prior else None
        return await self._cached_report(
            run, StatementType.CASH_FLOW, prior_id,
            lambda: generate_cash_flow_statement(
                run.consolidated_trial_balance,
                prior.consolidated_trial_balance if prior else None,
                comparative_run_id=prior_id,
            ),
        )

    async def get_equity_statement(self, organization_id: UUID, run_id: UUID) -> Dict[str, Any]:
        run = await self._completed_run(organization_id, run_id)
        prior = await self.consolidation_repo.get_latest_completed_run(run.group_id, before=run.period)
        prior_id = prior.id if prior else None
        return await self._cached_report(
            run, StatementType.EQUITY_STATEMENT, prior_id,
            lambda: generate_equity_statement(
                run.consolidated_trial_balance,
                prior.consolidated_trial_balance if prior else None,
                comparative_run_id=prior_id,
            ),
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _require_company(self, organization_id: UUID, company_id: UUID) -> None:
        if not await self.company_repo.exists(organization_id, company_id):
            raise CompanyNotFoundException(company_id)

    async def _require_unique_group_name(
        self, organization_id: UUID, name: str, exclude_id: Optional[UUID] = None,
    ) -> None:
        if await self.consolidation_repo.group_name_exists(organization_id, name, exclude_id=exclude_id):
            raise DuplicateEntryException(
                "ConsolidationGroup", "name", name, code=ErrorCode.DUPLICATE_GROUP_NAME,
            )

    @staticmethod
    def _check_version(group: ConsolidationGroup, expected_version: Optional[int]) -> int:
        """The version the save must match: the caller's if given, else the one just read."""
        return group.version if expected_version is None else expected_version

    async def _attach_rule_ids(self, group: ConsolidationGroup) -> None:
        group.elimination_rule_ids = [r.id for r in await self.rule_repo.list_rules(group.id)]

    async def _save_group(
        self,
        group: ConsolidationGroup,
        expected_version: int,
        before: Dict[str, Any],
        user_id: Optional[UUID],
        description: str,
    ) -> ConsolidationGroup:
        async with self.consolidation_repo.transaction():
            saved = await self.consolidation_repo.save_group(group, expected_version)
            await self.audit.log_update(
                organization_id=group.organization_id,
                entity_type=GROUP_ENTITY,
                entity_id=group.id,
                old_values=before,
                new_values=group.snapshot(),
                user_id=user_id,
                description=description,
            )
        logger.info(f"Consolidation group {group.id}: {description} (version {saved.version})")
        return saved

    async def _save_group_status(
        self,
        group: ConsolidationGroup,
        expected_version: int,
        from_status: str,
        to_status: str,
        user_id: Optional[UUID],
    ) -> ConsolidationGroup:
        async with self.consolidation_repo.transaction():
            saved = await self.consolidation_repo.save_group(group, expected_version)
            await self.audit.log_status_change(
                organization_id=group.organization_id,
                entity_type=GROUP_ENTITY,
                entity_id=group.id,
                from_status=from_status,
                to_status=to_status,
                user_id=user_id,
                description=f"Consolidation group '{group.name}' is now {to_status}",
            )
        logger.info(f"Consolidation group {group.id} {from_status} -> {to_status}")
        return saved

    async def _save_rule(
        self,
        organization_id: UUID,
        rule: EliminationRule,
        before: Dict[str, Any],
        user_id: Optional[UUID],
        description: str,
    ) -> EliminationRule:
        async with self.consolidation_repo.transaction():
            await self.rule_repo.save_rule(rule)
            await self.audit.log_update(
                organization_id=organization_id,
                entity_type=RULE_ENTITY,
                entity_id=rule.id,
                old_values=before,
                new_values=rule.snapshot(),
                user_id=user_id,
                description=description,
            )
        return rule

    async def _set_rule_active(
        self,
        organization_id: UUID,
        rule_id: UUID,
        active: bool,
        user_id: Optional[UUID],
    ) -> EliminationRule:
        rule = await self.get_elimination_rule(organization_id, rule_id)
        if rule.is_active == active:
            return rule
        before = rule.snapshot()
        rule.is_active = active
        rule.updated_at = utcnow()
        state = "activated" if active else "deactivated"
        return await self._save_rule(organization_id, rule, before, user_id, f"Elimination rule {state}")

    async def _audit_run(self, log: Callable, run_id: UUID, **entry: Any) -> None:
        """Run lifecycle audit entries are best effort."""
        try:
            async with self.consolidation_repo.transaction():
                await log(**entry)
        except AuditLogException as e:
            logger.warning(f"Audit log write failed for consolidation run {run_id}: {e.message}")

    async def _completed_run(self, organization_id: UUID, run_id: UUID) -> ConsolidationRun:
        run = await self.get_run(organization_id, run_id)
        if run.status != RunStatus.COMPLETED:
            raise RunNotCompletedException(run.id, run.status.value)
        if run.consolidated_trial_balance is None or run.consolidated_trial_balance.is_empty:
            raise NoTrialBalanceException(run.id)
        return run

    async def _cached_report(
        self,
        run: ConsolidationRun,
        statement_type: StatementType,
        comparative_run_id: Optional[UUID],
        generate: Callable,
    ) -> Dict[str, Any]:
        if self.cache is not None:
            cached = await self.cache.get_report(run.id, statement_type.value, comparative_run_id)
            if cached is not None:
                return cached

        report = generate().to_dict()

        if self.cache is not None:
            await self.cache.set_report(run.id, statement_type.value, report, comparative_run_id)
        return report
