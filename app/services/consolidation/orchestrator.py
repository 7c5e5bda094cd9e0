"""
GroupLedger - Consolidation Run Orchestrator

Drives a Pending run through the fixed pipeline:

    CollectBalances -> TranslateCurrency -> EliminateIntercompany -> ApplyNCI -> Validate

Every step transition is persisted, so an interrupted run can be inspected
step by step. A step raising an application error fails the step and the
run with that error's message; any other exception fails them with a generic
message and is re-raised.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional
from uuid import UUID

from app.repositories.base import (
    AccountRepository,
    CompanyRepository,
    ConsolidationRepository,
    EliminationRuleRepository,
    ExchangeRateRepository,
    IntercompanyTransactionRepository,
)
from app.config import settings
from app.services.audit_service import AuditLogService
from app.services.consolidation.elimination import EliminationEngine
from app.services.consolidation.group import ConsolidationGroup, ConsolidationMember, utcnow
from app.services.consolidation.intercompany import match_transactions
from app.services.consolidation.ledger import AccountInfo, SystemAccounts
from app.services.consolidation.nci import LedgerAdjustment, NCICalculation, calculate_nci, equity_method_line
from app.services.consolidation.run import ConsolidationRun, RunStatus, StepType
from app.services.consolidation.translation import TranslationRates, translate_balances
from app.services.consolidation.trial_balance import (
    ConsolidatedTrialBalance,
    aggregate_balances,
    build_consolidated_trial_balance,
)
from app.services.consolidation.values import (
    ZERO,
    ConsolidationMethod,
    Percentage,
    ValidationIssue,
    ValidationResult,
    fiscal_year_start,
    round_to_minor,
)
from app.utils.error_handling import (
    AppException,
    AuditLogException,
    BalanceNotBalancedException,
    BusinessRuleException,
    CompanyNotFoundException,
    ErrorCode,
    ExchangeRateNotFoundException,
    GroupNotFoundException,
)

logger = logging.getLogger(__name__)

FULL = Percentage.of(100)


@dataclass
class Participant:
    """A company taking part in a run: the parent or one member."""
    company_id: UUID
    method: ConsolidationMethod
    ownership: Percentage
    member: Optional[ConsolidationMember] = None
    currency: Optional[str] = None
    balances: Optional[Dict[str, Decimal]] = None
    translated: Optional[Dict[str, Decimal]] = None

    @property
    def is_parent(self) -> bool:
        return self.member is None

    @property
    def weight(self) -> Optional[Percentage]:
        """Share of line items consolidated, None for equity-method investees."""
        if self.method == ConsolidationMethod.FULL:
            return FULL
        if self.method == ConsolidationMethod.PROPORTIONAL:
            return self.ownership
        return None


@dataclass
class RunContext:
    """Working state shared by the steps of one execution."""
    run: ConsolidationRun
    group: ConsolidationGroup
    participants: List[Participant] = field(default_factory=list)
    chart: Dict[str, AccountInfo] = field(default_factory=dict)
    issues: List[ValidationIssue] = field(default_factory=list)
    equity_method_lines: List[Dict[str, Decimal]] = field(default_factory=list)
    nci_adjustments: List[LedgerAdjustment] = field(default_factory=list)
    trial_balance: Optional[ConsolidatedTrialBalance] = None

    @property
    def currency(self) -> str:
        return self.group.reporting_currency

    def contributions(self) -> List[Dict[str, Decimal]]:
        """Weighted, translated balances of every line-item participant."""
        contributions = []
        for participant in self.participants:
            weight = participant.weight
            if weight is None or participant.translated is None:
                continue
            contributions.append({
                code: weight.of_amount(amount) for code, amount in participant.translated.items()
            })
        return contributions + self.equity_method_lines


class ConsolidationRunOrchestrator:
    """Executes consolidation runs step by step."""

    def __init__(
        self,
        consolidation_repo: ConsolidationRepository,
        company_repo: CompanyRepository,
        account_repo: AccountRepository,
        rate_repo: ExchangeRateRepository,
        rule_repo: EliminationRuleRepository,
        audit: AuditLogService,
        intercompany_repo: Optional[IntercompanyTransactionRepository] = None,
        system_accounts: Optional[SystemAccounts] = None,
        clock: Callable[[], datetime] = utcnow,
        fiscal_year_start_month: Optional[int] = None,
    ):
        self.consolidation_repo = consolidation_repo
        self.company_repo = company_repo
        self.account_repo = account_repo
        self.rate_repo = rate_repo
        self.rule_repo = rule_repo
        self.audit = audit
        self.intercompany_repo = intercompany_repo
        self.fiscal_year_start_month = fiscal_year_start_month or settings.fiscal_year_start_month
        self.system = system_accounts or SystemAccounts()
        self.clock = clock
        self.engine = EliminationEngine()

    # ===========================================
    # ENTRY POINT
    # ===========================================

    async def execute(self, run: ConsolidationRun, user_id: Optional[UUID] = None) -> ConsolidationRun:
        """
        Run the pipeline for a Pending run. Returns the run in its final
        state, which may be Failed or Cancelled.
        """
        group = await self.consolidation_repo.get_group(run.group_id)
        if group is None:
            raise GroupNotFoundException(run.group_id)

        run.start(self.clock())
        run.group_version = group.version
        if not await self._persist(run):
            return await self._stored(run)
        await self._audit_status(run, RunStatus.PENDING, user_id)
        logger.info(f"Consolidation run {run.id} started for group {group.id} period {run.period}")

        ctx = RunContext(run=run, group=group)
        steps = [
            (StepType.COLLECT_BALANCES, self._collect_balances),
            (StepType.TRANSLATE_CURRENCY, self._translate_currency),
            (StepType.ELIMINATE_INTERCOMPANY, self._eliminate_intercompany),
            (StepType.APPLY_NCI, self._apply_nci),
            (StepType.VALIDATE, self._validate),
        ]

        for step_type, handler in steps:
            cancelled = await self._cancelled(run)
            if cancelled is not None:
                logger.info(f"Consolidation run {run.id} was cancelled before step {step_type.value}")
                return cancelled

            run.begin_step(step_type, self.clock())
            if not await self._persist(run):
                return await self._stored(run)
            try:
                outcome = await handler(ctx)
            except AppException as e:
                logger.warning(f"Consolidation run {run.id} step {step_type.value} failed: {e.message}")
                return await self._fail(run, step_type, e.message, user_id)
            except Exception:
                logger.exception(f"Unexpected error in consolidation run {run.id} step {step_type.value}")
                await self._fail(run, step_type, f"Unexpected error during step {step_type.value}", user_id)
                raise

            skipped, details = outcome
            if skipped:
                run.skip_step(step_type, self.clock(), details)
            else:
                run.complete_step(step_type, self.clock(), details)
            if not await self._persist(run):
                logger.info(f"Consolidation run {run.id} was cancelled during step {step_type.value}")
                return await self._stored(run)

        return await self._finish(ctx, user_id)

    async def _finish(self, ctx: RunContext, user_id: Optional[UUID]) -> ConsolidationRun:
        run = ctx.run
        cancelled = await self._cancelled(run)
        if cancelled is not None:
            logger.info(f"Consolidation run {run.id} was cancelled before completion")
            return cancelled

        tb = ctx.trial_balance
        if tb is None or not tb.is_balanced():
            imbalance = tb.imbalance if tb is not None else ZERO
            message = f"Consolidated trial balance does not balance (difference {imbalance} {ctx.currency})"
            run.fail(self.clock(), message)
            if not await self._persist(run):
                return await self._stored(run)
            await self._audit_status(run, RunStatus.IN_PROGRESS, user_id)
            logger.warning(f"Consolidation run {run.id} failed: {message}")
            return run

        run.complete(self.clock(), tb)
        if not await self._persist(run):
            logger.info(f"Consolidation run {run.id} was cancelled before its result was stored")
            return await self._stored(run)
        await self._audit_status(run, RunStatus.IN_PROGRESS, user_id)
        logger.info(
            f"Consolidation run {run.id} completed in {run.total_duration_ms}ms: "
            f"{len(tb.lines)} lines, {len(run.elimination_entries)} elimination(s)"
        )
        return run

    # ===========================================
    # STEPS
    # ===========================================

    async def _collect_balances(self, ctx: RunContext):
        group = ctx.group
        participants = [Participant(group.parent_company_id, ConsolidationMethod.FULL, FULL)]
        for member in group.members:
            participants.append(Participant(
                company_id=member.company_id,
                method=group.member_method(member),
                ownership=member.ownership_percentage,
                member=member,
            ))

        chart: Dict[str, AccountInfo] = {}
        collected = 0
        for participant in participants:
            company = await self.company_repo.find_by_id(participant.company_id)
            if company is None:
                raise CompanyNotFoundException(participant.company_id, parent=participant.is_parent)
            participant.currency = company.functional_currency

            # Cost-method investments stay at cost in the parent's own ledger
            if participant.method == ConsolidationMethod.COST:
                continue

            # First definition of a group-wide code wins, parent first
            for account in await self.account_repo.list_accounts(company.id):
                chart.setdefault(account.code, account)

            tb = await self.account_repo.get_trial_balance(company.id, ctx.run.as_of_date)
            if tb is None or tb.is_empty:
                ctx.issues.append(ValidationIssue.warning(
                    "MEMBER_TRIAL_BALANCE_EMPTY",
                    f"Company '{company.name}' has no trial balance as of {ctx.run.as_of_date}",
                    entity_reference=str(company.id),
                ))
                continue
            if not tb.is_balanced():
                ctx.issues.append(ValidationIssue.error(
                    "MEMBER_TRIAL_BALANCE_NOT_BALANCED",
                    f"Trial balance of company '{company.name}' is out of balance by {tb.total} {tb.currency}",
                    entity_reference=str(company.id),
                ))
            participant.currency = tb.currency
            participant.balances = dict(tb.balances)
            collected += 1

        for account in self.system.all():
            chart.setdefault(account.code, account)

        ctx.participants = participants
        ctx.chart = chart
        return False, f"Collected {collected} of {len(participants)} trial balance(s)"

    async def _translate_currency(self, ctx: RunContext):
        foreign = [
            p for p in ctx.participants
            if p.balances is not None and p.currency != ctx.currency
        ]
        for participant in ctx.participants:
            if participant.balances is not None and participant.currency == ctx.currency:
                participant.translated = dict(participant.balances)
        if not foreign:
            return True, f"All companies report in {ctx.currency}"

        as_of = ctx.run.as_of_date
        # Income statement balances cover the fiscal year to date
        year_start = fiscal_year_start(as_of, self.fiscal_year_start_month)
        for participant in foreign:
            closing = await self.rate_repo.get_rate(participant.currency, ctx.currency, as_of)
            if closing is None:
                raise ExchangeRateNotFoundException(participant.currency, ctx.currency, as_of)
            average = await self.rate_repo.get_average_rate(
                participant.currency, ctx.currency, year_start, as_of,
            )
            historical = None
            if participant.member is not None:
                historical = await self.rate_repo.get_rate(
                    participant.currency, ctx.currency, participant.member.acquisition_date,
                )
            rates = TranslationRates(closing=closing, average=average, historical=historical)
            participant.translated, cta = translate_balances(
                participant.balances, ctx.chart, rates, self.system.cta.code,
            )
            logger.info(
                f"Translated company {participant.company_id} from {participant.currency} "
                f"to {ctx.currency} (closing {closing}, CTA {cta})"
            )
        return False, f"Translated {len(foreign)} company ledger(s) into {ctx.currency}"

    async def _match_intercompany(self, ctx: RunContext) -> Optional[str]:
        """Pair both sides of each intercompany transaction dated in the fiscal year to date."""
        if self.intercompany_repo is None:
            return None
        company_ids = [p.company_id for p in ctx.participants if p.weight is not None]
        as_of = ctx.run.as_of_date
        transactions = await self.intercompany_repo.list_transactions(
            company_ids, fiscal_year_start(as_of, self.fiscal_year_start_month), as_of,
        )
        if not transactions:
            return None

        matching = match_transactions(transactions, ctx.run.options.matching_config(), now=self.clock())
        report = matching.report
        ctx.run.intercompany_matching = report
        for discrepancy in report.discrepancies:
            ctx.issues.append(ValidationIssue.warning(
                "INTERCOMPANY_DISCREPANCY",
                discrepancy["description"],
                entity_reference=",".join(discrepancy["related_transaction_ids"]),
            ))
        if report.has_discrepancies:
            logger.warning(
                f"Consolidation run {ctx.run.id}: {len(report.discrepancies)} intercompany discrepancy(ies)"
            )
        return (
            f"{report.matched_count} intercompany pair(s) matched, "
            f"{report.unmatched_count} unmatched, {len(report.discrepancies)} discrepancy(ies)"
        )

    async def _eliminate_intercompany(self, ctx: RunContext):
        matching = await self._match_intercompany(ctx)
        rules = await self.rule_repo.list_rules(ctx.group.id, active_only=True)
        if not rules:
            if matching is not None:
                return False, f"{matching}; no active elimination rules"
            return True, "No active elimination rules"

        pre_elimination = aggregate_balances(ctx.contributions())
        result = self.engine.evaluate(rules, pre_elimination, ctx.chart, ctx.currency)
        ctx.run.elimination_entries = result.applied
        ctx.run.proposed_eliminations = result.proposed
        ctx.issues.extend(result.warnings)
        details = (
            f"{len(result.applied)} elimination(s) applied totalling {result.total_eliminated}, "
            f"{len(result.proposed)} proposed"
        )
        return False, f"{matching}; {details}" if matching is not None else details

    async def _apply_nci(self, ctx: RunContext):
        calculations: List[NCICalculation] = []
        equity_method_count = 0

        for participant in ctx.participants:
            if participant.translated is None or participant.member is None:
                continue
            if participant.method == ConsolidationMethod.FULL:
                nci_percentage = participant.member.non_controlling_interest_percentage
                if nci_percentage.is_zero:
                    continue
                calculation, adjustments = calculate_nci(
                    participant.company_id, nci_percentage, participant.translated, ctx.chart, self.system,
                )
                calculations.append(calculation)
                ctx.nci_adjustments.extend(adjustments)
            elif (
                participant.method == ConsolidationMethod.EQUITY
                and ctx.run.options.include_equity_method_investments
            ):
                line = equity_method_line(participant.ownership, participant.translated, ctx.chart, self.system)
                if line:
                    ctx.equity_method_lines.append(line)
                    equity_method_count += 1

        ctx.run.nci_calculations = calculations
        ctx.trial_balance = build_consolidated_trial_balance(
            contributions=ctx.contributions(),
            elimination_adjustments=ctx.run.elimination_entries,
            nci_adjustments=ctx.nci_adjustments,
            accounts=ctx.chart,
            currency=ctx.currency,
            run_id=ctx.run.id,
            group_id=ctx.group.id,
            period=ctx.run.period,
            as_of_date=ctx.run.as_of_date,
            generated_at=self.clock(),
        )

        if not ctx.nci_adjustments and not equity_method_count:
            return True, "No non-controlling interests or equity-method investees"
        total = sum((c.total_nci for c in calculations), ZERO)
        return False, (
            f"NCI posted for {len(calculations)} subsidiary(ies) totalling {total}; "
            f"{equity_method_count} equity-method investee(s)"
        )

    async def _validate(self, ctx: RunContext):
        run = ctx.run
        tb = ctx.trial_balance
        if run.options.skip_validation:
            return True, "Validation skipped by request"

        issues = list(ctx.issues)
        if not tb.is_balanced():
            issues.append(ValidationIssue.error(
                "TRIAL_BALANCE_NOT_BALANCED",
                f"Consolidated trial balance is out of balance by {round_to_minor(tb.imbalance, tb.currency)} "
                f"{tb.currency}",
            ))
        for line in tb.lines:
            if line.is_intercompany and round_to_minor(line.consolidated_balance, tb.currency) != ZERO:
                issues.append(ValidationIssue.warning(
                    "UNMATCHED_INTERCOMPANY_BALANCE",
                    f"Intercompany account {line.account_code} retains a balance of "
                    f"{line.consolidated_balance} after eliminations",
                    entity_reference=line.account_code,
                ))
        if run.proposed_eliminations:
            issues.append(ValidationIssue.warning(
                "PROPOSED_ELIMINATIONS_PENDING",
                f"{len(run.proposed_eliminations)} manual elimination(s) await confirmation",
            ))

        result = ValidationResult(issues=issues)
        run.validation_result = result

        if result.errors:
            codes = ", ".join(sorted({i.code for i in result.errors}))
            if any(i.code == "TRIAL_BALANCE_NOT_BALANCED" for i in result.errors):
                raise BalanceNotBalancedException(f"Validation failed: {codes}", difference=tb.imbalance)
            raise BusinessRuleException(f"Validation failed: {codes}", rule="VALIDATION", code=ErrorCode.VALIDATION_ERROR)
        if result.warnings and not run.options.continue_on_warnings:
            codes = ", ".join(sorted({i.code for i in result.warnings}))
            raise BusinessRuleException(
                f"Validation produced warnings and continue_on_warnings is off: {codes}",
                rule="CONTINUE_ON_WARNINGS",
                code=ErrorCode.VALIDATION_ERROR,
            )
        return False, f"{len(result.warnings)} warning(s)"

    # ===========================================
    # PERSISTENCE
    # ===========================================

    async def _cancelled(self, run: ConsolidationRun) -> Optional[ConsolidationRun]:
        """The stored run if it has been cancelled since execution began."""
        stored = await self.consolidation_repo.get_run(run.id)
        if stored is not None and stored.status == RunStatus.CANCELLED:
            return stored
        return None

    async def _stored(self, run: ConsolidationRun) -> ConsolidationRun:
        """The stored copy of a run whose write was refused."""
        stored = await self.consolidation_repo.get_run(run.id)
        return stored if stored is not None else run

    async def _persist(self, run: ConsolidationRun) -> bool:
        """False when the stored run was already finished by another writer."""
        async with self.consolidation_repo.transaction():
            return await self.consolidation_repo.save_run(run)

    async def _fail(
        self, run: ConsolidationRun, step_type: StepType, message: str, user_id: Optional[UUID],
    ) -> ConsolidationRun:
        now = self.clock()
        run.fail_step(step_type, now, message)
        run.fail(now, message)
        if not await self._persist(run):
            return await self._stored(run)
        await self._audit_status(run, RunStatus.IN_PROGRESS, user_id)
        return run

    async def _audit_status(self, run: ConsolidationRun, from_status: RunStatus, user_id: Optional[UUID]) -> None:
        """Run status changes are informational; a failed audit write is logged, not raised."""
        try:
            async with self.consolidation_repo.transaction():
                await self.audit.log_status_change(
                    organization_id=run.organization_id,
                    entity_type="consolidation_run",
                    entity_id=run.id,
                    from_status=from_status.value,
                    to_status=run.status.value,
                    user_id=user_id,
                    description=f"Consolidation run {run.period}: {from_status.value} -> {run.status.value}",
                )
        except AuditLogException as e:
            logger.warning(f"Audit log write failed for consolidation run {run.id}: {e.message}")
