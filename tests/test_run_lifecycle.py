"""
GroupLedger - Consolidation Run State Machine Tests

Tests for run and step transitions.
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from uuid import uuid4

from app.services.consolidation.run import (
    ConsolidationRun,
    ConsolidationRunOptions,
    RunStatus,
    STEP_ORDER,
    StepStatus,
    StepType,
)
from app.services.consolidation.trial_balance import ConsolidatedTrialBalance
from app.services.consolidation.values import PeriodRef
from app.utils.error_handling import BusinessRuleException, ErrorCode, InvalidRunTransitionException


T0 = datetime(2025, 4, 1, 9, 0, tzinfo=timezone.utc)


def _run() -> ConsolidationRun:
    return ConsolidationRun.create(
        group_id=uuid4(),
        organization_id=uuid4(),
        period=PeriodRef(2025, 3),
        as_of_date=date(2025, 3, 31),
        now=T0,
    )


def _empty_tb(run: ConsolidationRun) -> ConsolidatedTrialBalance:
    return ConsolidatedTrialBalance(
        run_id=run.id, group_id=run.group_id, period=run.period, as_of_date=run.as_of_date, currency="USD",
    )


def _finish_all_steps(run: ConsolidationRun) -> None:
    for step_type in STEP_ORDER:
        run.begin_step(step_type, T0)
        run.complete_step(step_type, T0 + timedelta(milliseconds=5))


class TestRunCreation:
    """Test new runs."""

    def test_new_run_is_pending_with_five_steps(self):
        run = _run()
        assert run.status == RunStatus.PENDING
        assert [s.step_type for s in run.steps] == STEP_ORDER
        assert all(s.status == StepStatus.PENDING for s in run.steps)
        assert run.progress_percent == 0
        assert run.options == ConsolidationRunOptions()

    def test_options_round_trip(self):
        options = ConsolidationRunOptions(skip_validation=True, force_regeneration=True)
        assert ConsolidationRunOptions.from_dict(options.to_dict()) == options


class TestRunTransitions:
    """Test Pending -> InProgress -> Completed | Failed | Cancelled."""

    def test_happy_path(self):
        run = _run()
        run.start(T0)
        _finish_all_steps(run)
        run.complete(T0 + timedelta(seconds=2), _empty_tb(run))
        assert run.status == RunStatus.COMPLETED
        assert run.total_duration_ms == 2000
        assert run.progress_percent == 100
        assert run.is_terminal

    def test_cannot_complete_with_unfinished_steps(self):
        run = _run()
        run.start(T0)
        with pytest.raises(BusinessRuleException):
            run.complete(T0, _empty_tb(run))

    def test_cancel_from_pending(self):
        run = _run()
        run.cancel(T0)
        assert run.status == RunStatus.CANCELLED
        assert run.completed_at == T0

    def test_cancel_twice_fails(self):
        run = _run()
        run.cancel(T0)
        with pytest.raises(InvalidRunTransitionException) as exc_info:
            run.cancel(T0)
        assert exc_info.value.code == ErrorCode.CANNOT_CANCEL

    def test_completed_run_cannot_be_deleted(self):
        run = _run()
        run.start(T0)
        _finish_all_steps(run)
        run.complete(T0, _empty_tb(run))
        with pytest.raises(InvalidRunTransitionException) as exc_info:
            run.ensure_deletable()
        assert exc_info.value.code == ErrorCode.CANNOT_DELETE

    def test_failed_run_can_be_deleted(self):
        run = _run()
        run.start(T0)
        run.fail(T0, "boom")
        run.ensure_deletable()
        assert run.error_message == "boom"

    def test_start_twice_fails(self):
        run = _run()
        run.start(T0)
        with pytest.raises(InvalidRunTransitionException):
            run.start(T0)

    def test_completed_run_not_active_when_superseded(self):
        run = _run()
        assert run.is_active
        run.is_superseded = True
        assert not run.is_active


class TestStepTransitions:
    """Test the sequential step pipeline."""

    def test_steps_must_run_in_order(self):
        run = _run()
        run.start(T0)
        with pytest.raises(BusinessRuleException):
            run.begin_step(StepType.TRANSLATE_CURRENCY, T0)

    def test_skipped_step_unblocks_next(self):
        run = _run()
        run.start(T0)
        run.begin_step(StepType.COLLECT_BALANCES, T0)
        run.complete_step(StepType.COLLECT_BALANCES, T0)
        run.begin_step(StepType.TRANSLATE_CURRENCY, T0)
        run.skip_step(StepType.TRANSLATE_CURRENCY, T0, "All companies report in USD")
        step = run.begin_step(StepType.ELIMINATE_INTERCOMPANY, T0)
        assert step.status == StepStatus.IN_PROGRESS
        assert run.current_step.step_type == StepType.ELIMINATE_INTERCOMPANY
        assert run.get_step(StepType.TRANSLATE_CURRENCY).details == "All companies report in USD"

    def test_steps_require_in_progress_run(self):
        run = _run()
        with pytest.raises(InvalidRunTransitionException):
            run.begin_step(StepType.COLLECT_BALANCES, T0)

    def test_step_cannot_restart(self):
        run = _run()
        run.start(T0)
        run.begin_step(StepType.COLLECT_BALANCES, T0)
        run.fail_step(StepType.COLLECT_BALANCES, T0 + timedelta(milliseconds=40), "no data")
        step = run.get_step(StepType.COLLECT_BALANCES)
        assert step.status == StepStatus.FAILED
        assert step.duration_ms == 40
        with pytest.raises(InvalidRunTransitionException):
            run.begin_step(StepType.COLLECT_BALANCES, T0)

    def test_finish_requires_active_step(self):
        run = _run()
        run.start(T0)
        with pytest.raises(InvalidRunTransitionException):
            run.complete_step(StepType.COLLECT_BALANCES, T0)
