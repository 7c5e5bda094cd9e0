"""
GroupLedger - Multi-Company Consolidation Router

API endpoints for consolidation groups, elimination rules, consolidation
runs and the consolidated reports of completed runs.

The organization and acting user come from the X-Organization-ID and
X-User-ID headers set by the upstream gateway.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.config import settings
from app.dependencies import RequestContext, get_consolidation_service, get_request_context
from app.schemas.consolidation import (
    BulkRuleCreate,
    GroupCreate,
    GroupResponse,
    GroupUpdate,
    MemberCreate,
    MemberUpdate,
    PriorityUpdate,
    RuleCreate,
    RuleResponse,
    RuleUpdate,
    RunCreate,
    RunResponse,
)
from app.services.consolidation.run import RunStatus
from app.services.consolidation.service import ConsolidationService

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/api/v1/consolidation",
    tags=["Consolidation"],
)


# ============================================================================
# Consolidation Groups
# ============================================================================

@router.post("/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    data: GroupCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """
    Create a consolidation group.

    The parent company is consolidated implicitly at 100% and must not be
    listed among the members.
    """
    group = await service.create_group(
        organization_id=ctx.organization_id,
        name=data.name,
        reporting_currency=data.reporting_currency,
        consolidation_method=data.consolidation_method,
        parent_company_id=data.parent_company_id,
        members=[m.to_domain() for m in data.members],
        description=data.description,
        user_id=ctx.user_id,
    )
    return GroupResponse.from_domain(group)


@router.get("/groups", response_model=List[GroupResponse])
async def list_groups(
    include_inactive: bool = Query(default=False),
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """List the organization's consolidation groups."""
    groups = await service.list_groups(ctx.organization_id, include_inactive=include_inactive)
    return [GroupResponse.from_domain(g) for g in groups]


@router.get("/groups/{group_id}", response_model=GroupResponse)
async def get_group(
    group_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    group = await service.get_group(ctx.organization_id, group_id)
    return GroupResponse.from_domain(group)


@router.patch("/groups/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: UUID,
    data: GroupUpdate,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Update group attributes. Pass expected_version to guard against concurrent edits."""
    group = await service.update_group(
        ctx.organization_id,
        group_id,
        data.to_patch(),
        expected_version=data.expected_version,
        user_id=ctx.user_id,
    )
    return GroupResponse.from_domain(group)


@router.post("/groups/{group_id}/activate", response_model=GroupResponse)
async def activate_group(
    group_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    group = await service.activate_group(ctx.organization_id, group_id, user_id=ctx.user_id)
    return GroupResponse.from_domain(group)


@router.post("/groups/{group_id}/deactivate", response_model=GroupResponse)
async def deactivate_group(
    group_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    group = await service.deactivate_group(ctx.organization_id, group_id, user_id=ctx.user_id)
    return GroupResponse.from_domain(group)


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Soft-delete a group. Groups with completed runs are kept for history."""
    await service.delete_group(ctx.organization_id, group_id, user_id=ctx.user_id)


# ============================================================================
# Group Members
# ============================================================================

@router.post("/groups/{group_id}/members", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def add_member(
    group_id: UUID,
    data: MemberCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Add a member company; its NCI percentage is 100 minus ownership."""
    group = await service.add_member(
        ctx.organization_id,
        group_id,
        data.to_domain(),
        expected_version=data.expected_version,
        user_id=ctx.user_id,
    )
    return GroupResponse.from_domain(group)


@router.patch("/groups/{group_id}/members/{company_id}", response_model=GroupResponse)
async def update_member(
    group_id: UUID,
    company_id: UUID,
    data: MemberUpdate,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    group = await service.update_member(
        ctx.organization_id,
        group_id,
        company_id,
        data.to_patch(),
        expected_version=data.expected_version,
        user_id=ctx.user_id,
    )
    return GroupResponse.from_domain(group)


@router.delete("/groups/{group_id}/members/{company_id}", response_model=GroupResponse)
async def remove_member(
    group_id: UUID,
    company_id: UUID,
    expected_version: Optional[int] = Query(default=None, ge=1),
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    group = await service.remove_member(
        ctx.organization_id,
        group_id,
        company_id,
        expected_version=expected_version,
        user_id=ctx.user_id,
    )
    return GroupResponse.from_domain(group)


# ============================================================================
# Elimination Rules
# ============================================================================

@router.post("/groups/{group_id}/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_elimination_rule(
    group_id: UUID,
    data: RuleCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    rule = await service.create_elimination_rule(
        ctx.organization_id, group_id, user_id=ctx.user_id, **data.to_attributes(),
    )
    return RuleResponse.from_domain(rule)


@router.post("/rules/bulk", response_model=List[RuleResponse], status_code=status.HTTP_201_CREATED)
async def bulk_create_elimination_rules(
    data: BulkRuleCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Create several rules at once; if any rule is invalid none is created."""
    rules = await service.bulk_create_elimination_rules(
        ctx.organization_id, data.to_drafts(), user_id=ctx.user_id,
    )
    return [RuleResponse.from_domain(r) for r in rules]


@router.get("/groups/{group_id}/rules", response_model=List[RuleResponse])
async def list_elimination_rules(
    group_id: UUID,
    active_only: bool = Query(default=False),
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Rules of a group in execution order (ascending priority)."""
    rules = await service.list_elimination_rules(ctx.organization_id, group_id, active_only=active_only)
    return [RuleResponse.from_domain(r) for r in rules]


@router.get("/rules/{rule_id}", response_model=RuleResponse)
async def get_elimination_rule(
    rule_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    rule = await service.get_elimination_rule(ctx.organization_id, rule_id)
    return RuleResponse.from_domain(rule)


@router.patch("/rules/{rule_id}", response_model=RuleResponse)
async def update_elimination_rule(
    rule_id: UUID,
    data: RuleUpdate,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    rule = await service.update_elimination_rule(
        ctx.organization_id, rule_id, data.to_patch(), user_id=ctx.user_id,
    )
    return RuleResponse.from_domain(rule)


@router.put("/rules/{rule_id}/priority", response_model=RuleResponse)
async def update_rule_priority(
    rule_id: UUID,
    data: PriorityUpdate,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    rule = await service.update_priority(ctx.organization_id, rule_id, data.priority, user_id=ctx.user_id)
    return RuleResponse.from_domain(rule)


@router.post("/rules/{rule_id}/activate", response_model=RuleResponse)
async def activate_elimination_rule(
    rule_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    rule = await service.activate_elimination_rule(ctx.organization_id, rule_id, user_id=ctx.user_id)
    return RuleResponse.from_domain(rule)


@router.post("/rules/{rule_id}/deactivate", response_model=RuleResponse)
async def deactivate_elimination_rule(
    rule_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    rule = await service.deactivate_elimination_rule(ctx.organization_id, rule_id, user_id=ctx.user_id)
    return RuleResponse.from_domain(rule)


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_elimination_rule(
    rule_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    await service.delete_elimination_rule(ctx.organization_id, rule_id, user_id=ctx.user_id)


# ============================================================================
# Consolidation Runs
# ============================================================================

@router.post("/groups/{group_id}/runs", response_model=RunResponse, status_code=status.HTTP_201_CREATED)
async def create_run(
    group_id: UUID,
    data: RunCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """
    Initiate a consolidation run for a period.

    By default the run executes within the request and the response carries
    its final state. With execute_immediately=false the run is queued to a
    worker when background execution is enabled, otherwise left Pending for
    a later POST /runs/{id}/execute.
    """
    run = await service.initiate_run(
        ctx.organization_id,
        group_id,
        data.period.to_domain(),
        data.as_of_date,
        options=data.options.to_domain(),
        user_id=ctx.user_id,
    )

    if data.execute_immediately:
        run = await service.execute_run(ctx.organization_id, run.id, user_id=ctx.user_id)
        return RunResponse.from_domain(run)

    if settings.consolidation_background_execution:
        from app.tasks.consolidation_tasks import enqueue_consolidation_run

        enqueue_consolidation_run(run.id, ctx.organization_id, ctx.user_id)
        return RunResponse.from_domain(run, queued=True)

    return RunResponse.from_domain(run)


@router.get("/groups/{group_id}/runs", response_model=List[RunResponse])
async def list_runs(
    group_id: UUID,
    run_status: Optional[RunStatus] = Query(default=None, alias="status"),
    year: Optional[int] = Query(default=None, ge=1900, le=9999),
    period: Optional[int] = Query(default=None, ge=1, le=13),
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Runs of a group, newest period first."""
    runs = await service.list_runs(ctx.organization_id, group_id, status=run_status, year=year, period=period)
    return [RunResponse.from_domain(r) for r in runs]


@router.get("/groups/{group_id}/runs/latest", response_model=Optional[RunResponse])
async def get_latest_completed_run(
    group_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Latest completed run of the group, or null."""
    run = await service.get_latest_completed_run(ctx.organization_id, group_id)
    return RunResponse.from_domain(run) if run else None


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    run = await service.get_run(ctx.organization_id, run_id)
    return RunResponse.from_domain(run)


@router.post("/runs/{run_id}/execute", response_model=RunResponse)
async def execute_run(
    run_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Execute a Pending run through the five pipeline steps."""
    run = await service.execute_run(ctx.organization_id, run_id, user_id=ctx.user_id)
    return RunResponse.from_domain(run)


@router.post("/runs/{run_id}/cancel", response_model=RunResponse)
async def cancel_run(
    run_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    run = await service.cancel_run(ctx.organization_id, run_id, user_id=ctx.user_id)
    return RunResponse.from_domain(run)


@router.delete("/runs/{run_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_run(
    run_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Only Pending and Failed runs can be deleted."""
    await service.delete_run(ctx.organization_id, run_id, user_id=ctx.user_id)


# ============================================================================
# Consolidated Reports
# ============================================================================

@router.get("/runs/{run_id}/trial-balance")
async def get_consolidated_trial_balance(
    run_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
) -> Dict[str, Any]:
    """
    Consolidated trial balance of a completed run.

    Each line carries the aggregated balance, the elimination and NCI
    adjustments, and the resulting consolidated balance.
    """
    trial_balance = await service.get_consolidated_trial_balance(ctx.organization_id, run_id)
    return trial_balance.to_dict()


@router.get("/runs/{run_id}/reports/balance-sheet")
async def get_balance_sheet(
    run_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
) -> Dict[str, Any]:
    """
    Consolidated balance sheet.

    Presents assets, liabilities, equity attributable to owners of the
    parent and non-controlling interest. Fails with
    BALANCE_SHEET_NOT_BALANCED if assets differ from liabilities plus equity.
    """
    return await service.get_balance_sheet(ctx.organization_id, run_id)


@router.get("/runs/{run_id}/reports/income-statement")
async def get_income_statement(
    run_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
) -> Dict[str, Any]:
    """Consolidated income statement with the parent/NCI split of net income."""
    return await service.get_income_statement(ctx.organization_id, run_id)


@router.get("/runs/{run_id}/reports/cash-flow")
async def get_cash_flow_statement(
    run_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
) -> Dict[str, Any]:
    """Indirect-method cash flow statement against the previous completed run."""
    return await service.get_cash_flow_statement(ctx.organization_id, run_id)


@router.get("/runs/{run_id}/reports/equity-statement")
async def get_equity_statement(
    run_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    service: ConsolidationService = Depends(get_consolidation_service),
) -> Dict[str, Any]:
    """Statement of changes in equity by component, including NCI."""
    return await service.get_equity_statement(ctx.organization_id, run_id)
