"""
GroupLedger - Consolidation Run State Machine

A run consolidates one group for one period. Status moves
Pending -> InProgress -> Completed | Failed, and Pending | InProgress ->
Cancelled. Completed, Failed and Cancelled are terminal.

The five pipeline steps execute strictly in order; a step may only start once
every earlier step is Completed or Skipped.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from app.services.consolidation.elimination import EliminationAdjustment
from app.services.consolidation.group import utcnow
from app.services.consolidation.intercompany import MatchingConfig, MatchingReport
from app.services.consolidation.nci import NCICalculation
from app.services.consolidation.trial_balance import ConsolidatedTrialBalance
from app.services.consolidation.values import ZERO, PeriodRef, ValidationResult, to_decimal
from app.utils.error_handling import BusinessRuleException, ErrorCode, InvalidRunTransitionException


class RunStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})
CANCELLABLE_STATUSES = frozenset({RunStatus.PENDING, RunStatus.IN_PROGRESS})
DELETABLE_STATUSES = frozenset({RunStatus.PENDING, RunStatus.FAILED})
# Statuses that occupy the (group, period) slot
ACTIVE_STATUSES = frozenset({RunStatus.PENDING, RunStatus.IN_PROGRESS, RunStatus.COMPLETED})


class StepType(str, Enum):
    COLLECT_BALANCES = "collect_balances"
    TRANSLATE_CURRENCY = "translate_currency"
    ELIMINATE_INTERCOMPANY = "eliminate_intercompany"
    APPLY_NCI = "apply_nci"
    VALIDATE = "validate"


STEP_ORDER: List[StepType] = [
    StepType.COLLECT_BALANCES,
    StepType.TRANSLATE_CURRENCY,
    StepType.ELIMINATE_INTERCOMPANY,
    StepType.APPLY_NCI,
    StepType.VALIDATE,
]


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


def _elapsed_ms(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class ConsolidationRunStep:
    step_type: StepType
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    details: Optional[str] = None

    @property
    def is_done(self) -> bool:
        return self.status in (StepStatus.COMPLETED, StepStatus.SKIPPED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_type": self.step_type.value,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsolidationRunStep":
        return cls(
            step_type=StepType(data["step_type"]),
            status=StepStatus(data["status"]),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            duration_ms=data.get("duration_ms"),
            error_message=data.get("error_message"),
            details=data.get("details"),
        )


@dataclass(frozen=True)
class ConsolidationRunOptions:
    skip_validation: bool = False
    continue_on_warnings: bool = True
    include_equity_method_investments: bool = True
    force_regeneration: bool = False
    intercompany_date_tolerance_days: int = 3
    intercompany_amount_tolerance_percent: Decimal = ZERO

    def matching_config(self) -> MatchingConfig:
        return MatchingConfig(
            date_tolerance_days=self.intercompany_date_tolerance_days,
            amount_tolerance_percent=self.intercompany_amount_tolerance_percent,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skip_validation": self.skip_validation,
            "continue_on_warnings": self.continue_on_warnings,
            "include_equity_method_investments": self.include_equity_method_investments,
            "force_regeneration": self.force_regeneration,
            "intercompany_date_tolerance_days": self.intercompany_date_tolerance_days,
            "intercompany_amount_tolerance_percent": str(self.intercompany_amount_tolerance_percent),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ConsolidationRunOptions":
        data = dict(data or {})
        if "intercompany_amount_tolerance_percent" in data:
            data["intercompany_amount_tolerance_percent"] = to_decimal(
                data["intercompany_amount_tolerance_percent"], "intercompany_amount_tolerance_percent",
            )
        return cls(**data)


@dataclass
class ConsolidationRun:
    """One consolidation of a group for a period, with its pipeline state."""
    id: UUID
    group_id: UUID
    organization_id: UUID
    period: PeriodRef
    as_of_date: date
    options: ConsolidationRunOptions
    status: RunStatus = RunStatus.PENDING
    steps: List[ConsolidationRunStep] = field(default_factory=list)
    validation_result: Optional[ValidationResult] = None
    consolidated_trial_balance: Optional[ConsolidatedTrialBalance] = None
    elimination_entries: List[EliminationAdjustment] = field(default_factory=list)
    proposed_eliminations: List[EliminationAdjustment] = field(default_factory=list)
    nci_calculations: List[NCICalculation] = field(default_factory=list)
    intercompany_matching: Optional[MatchingReport] = None
    initiated_by: Optional[UUID] = None
    initiated_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    group_version: Optional[int] = None
    is_superseded: bool = False

    @classmethod
    def create(
        cls,
        group_id: UUID,
        organization_id: UUID,
        period: PeriodRef,
        as_of_date: date,
        options: Optional[ConsolidationRunOptions] = None,
        initiated_by: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> "ConsolidationRun":
        return cls(
            id=uuid4(),
            group_id=group_id,
            organization_id=organization_id,
            period=period,
            as_of_date=as_of_date,
            options=options or ConsolidationRunOptions(),
            steps=[ConsolidationRunStep(step_type=s) for s in STEP_ORDER],
            initiated_by=initiated_by,
            initiated_at=now or utcnow(),
        )

    # ===========================================
    # QUERIES
    # ===========================================

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES and not self.is_superseded

    @property
    def can_cancel(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    @property
    def can_delete(self) -> bool:
        return self.status in DELETABLE_STATUSES

    @property
    def elimination_entry_ids(self) -> List[UUID]:
        return [e.id for e in self.elimination_entries]

    @property
    def current_step(self) -> Optional[ConsolidationRunStep]:
        for step in self.steps:
            if step.status == StepStatus.IN_PROGRESS:
                return step
        return None

    @property
    def progress_percent(self) -> int:
        if not self.steps:
            return 0
        done = sum(1 for s in self.steps if s.is_done)
        return int(done * 100 / len(self.steps))

    def get_step(self, step_type: StepType) -> ConsolidationRunStep:
        for step in self.steps:
            if step.step_type == step_type:
                return step
        raise KeyError(step_type)

    # ===========================================
    # RUN TRANSITIONS
    # ===========================================

    def _require(self, allowed, action: str, code: ErrorCode = ErrorCode.INVALID_RUN_TRANSITION) -> None:
        if self.status not in allowed:
            raise InvalidRunTransitionException(self.id, self.status.value, action, code=code)

    def start(self, now: datetime) -> None:
        self._require({RunStatus.PENDING}, "start")
        self.status = RunStatus.IN_PROGRESS
        self.started_at = now

    def complete(self, now: datetime, trial_balance: ConsolidatedTrialBalance) -> None:
        self._require({RunStatus.IN_PROGRESS}, "complete")
        incomplete = [s.step_type.value for s in self.steps if not s.is_done]
        if incomplete:
            raise BusinessRuleException(
                f"Consolidation run '{self.id}' cannot complete with unfinished steps: {', '.join(incomplete)}",
                rule="ALL_STEPS_FINISHED",
                code=ErrorCode.INVALID_RUN_TRANSITION,
            )
        self.consolidated_trial_balance = trial_balance
        self.status = RunStatus.COMPLETED
        self._finish(now)

    def fail(self, now: datetime, message: str) -> None:
        self._require(CANCELLABLE_STATUSES, "fail")
        self.status = RunStatus.FAILED
        self.error_message = message
        self._finish(now)

    def cancel(self, now: datetime) -> None:
        self._require(CANCELLABLE_STATUSES, "cancel", code=ErrorCode.CANNOT_CANCEL)
        self.status = RunStatus.CANCELLED
        self._finish(now)

    def ensure_deletable(self) -> None:
        self._require(DELETABLE_STATUSES, "delete", code=ErrorCode.CANNOT_DELETE)

    def _finish(self, now: datetime) -> None:
        self.completed_at = now
        self.total_duration_ms = _elapsed_ms(self.started_at, now)

    # ===========================================
    # STEP TRANSITIONS
    # ===========================================

    def begin_step(self, step_type: StepType, now: datetime) -> ConsolidationRunStep:
        self._require({RunStatus.IN_PROGRESS}, f"run step {step_type.value} of")
        for step in self.steps:
            if step.step_type == step_type:
                break
            if not step.is_done:
                raise BusinessRuleException(
                    f"Step {step_type.value} cannot start before {step.step_type.value} has finished",
                    rule="SEQUENTIAL_STEPS",
                    code=ErrorCode.INVALID_RUN_TRANSITION,
                )
        step = self.get_step(step_type)
        if step.status != StepStatus.PENDING:
            raise InvalidRunTransitionException(self.id, step.status.value, f"restart step {step_type.value}")
        step.status = StepStatus.IN_PROGRESS
        step.started_at = now
        return step

    def complete_step(self, step_type: StepType, now: datetime, details: Optional[str] = None) -> None:
        step = self._active_step(step_type)
        step.status = StepStatus.COMPLETED
        step.details = details
        self._close_step(step, now)

    def skip_step(self, step_type: StepType, now: datetime, reason: Optional[str] = None) -> None:
        step = self._active_step(step_type)
        step.status = StepStatus.SKIPPED
        step.details = reason
        self._close_step(step, now)

    def fail_step(self, step_type: StepType, now: datetime, message: str) -> None:
        step = self._active_step(step_type)
        step.status = StepStatus.FAILED
        step.error_message = message
        self._close_step(step, now)

    def _active_step(self, step_type: StepType) -> ConsolidationRunStep:
        step = self.get_step(step_type)
        if step.status != StepStatus.IN_PROGRESS:
            raise InvalidRunTransitionException(self.id, step.status.value, f"finish step {step_type.value}")
        return step

    @staticmethod
    def _close_step(step: ConsolidationRunStep, now: datetime) -> None:
        step.completed_at = now
        step.duration_ms = _elapsed_ms(step.started_at, now)
