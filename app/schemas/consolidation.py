"""
GroupLedger - Consolidation Schemas

Pydantic schemas for consolidation groups, elimination rules, runs and
reports.

PATCH schemas distinguish an absent field (leave unchanged) from an explicit
null by looking at `model_fields_set`.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.services.consolidation.elimination import (
    AccountSelector,
    EliminationAdjustment,
    EliminationRule,
    RulePatch,
    SelectorKind,
    TriggerCondition,
)
from app.services.consolidation.group import (
    ConsolidationGroup,
    ConsolidationMember,
    GroupPatch,
    MemberPatch,
    VIEDetermination,
)
from app.services.consolidation.ledger import AccountCategory
from app.services.consolidation.run import (
    ConsolidationRun,
    ConsolidationRunOptions,
    ConsolidationRunStep,
    RunStatus,
    StepStatus,
    StepType,
)
from app.services.consolidation.values import (
    ConsolidationMethod,
    EliminationType,
    IssueSeverity,
    PeriodRef,
    UNSET,
)


def _patch_value(schema: BaseModel, name: str, convert=None) -> Any:
    """UNSET when the client omitted the field, else the (converted) value."""
    if name not in schema.model_fields_set:
        return UNSET
    value = getattr(schema, name)
    if convert is not None and value is not None:
        return convert(value)
    return value


# =============================================================================
# SHARED
# =============================================================================

class PeriodSchema(BaseModel):
    """Fiscal year plus period number (13 is the adjustment period)."""
    year: int = Field(..., ge=1900, le=9999)
    period: int = Field(..., ge=1, le=13)

    def to_domain(self) -> PeriodRef:
        return PeriodRef(self.year, self.period)


class VIEDeterminationSchema(BaseModel):
    is_primary_beneficiary: bool
    has_controlling_financial_interest: bool
    notes: Optional[str] = None

    def to_domain(self) -> VIEDetermination:
        return VIEDetermination(
            is_primary_beneficiary=self.is_primary_beneficiary,
            has_controlling_financial_interest=self.has_controlling_financial_interest,
            notes=self.notes,
        )


# =============================================================================
# GROUP SCHEMAS
# =============================================================================

class MemberCreate(BaseModel):
    """Add a member company to a consolidation group."""
    company_id: UUID
    ownership_percentage: Decimal = Field(..., ge=0, le=100)
    acquisition_date: date
    consolidation_method: Optional[ConsolidationMethod] = Field(
        default=None, description="Overrides the group method when set",
    )
    goodwill_amount: Optional[Decimal] = Field(default=None, ge=0)
    vie_determination: Optional[VIEDeterminationSchema] = None
    expected_version: Optional[int] = Field(default=None, ge=1)

    def to_domain(self) -> ConsolidationMember:
        return ConsolidationMember.create(
            company_id=self.company_id,
            ownership_percentage=self.ownership_percentage,
            acquisition_date=self.acquisition_date,
            consolidation_method=self.consolidation_method,
            goodwill_amount=self.goodwill_amount,
            vie_determination=self.vie_determination.to_domain() if self.vie_determination else None,
        )


class MemberUpdate(BaseModel):
    """Partial member update; NCI always follows ownership."""
    ownership_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    consolidation_method: Optional[ConsolidationMethod] = None
    acquisition_date: Optional[date] = None
    goodwill_amount: Optional[Decimal] = Field(default=None, ge=0)
    vie_determination: Optional[VIEDeterminationSchema] = None
    expected_version: Optional[int] = Field(default=None, ge=1)

    def to_patch(self) -> MemberPatch:
        return MemberPatch(
            ownership_percentage=_patch_value(self, "ownership_percentage"),
            consolidation_method=_patch_value(self, "consolidation_method"),
            acquisition_date=_patch_value(self, "acquisition_date"),
            goodwill_amount=_patch_value(self, "goodwill_amount"),
            vie_determination=_patch_value(self, "vie_determination", lambda v: v.to_domain()),
        )


class GroupCreate(BaseModel):
    """Create a consolidation group."""
    name: str = Field(..., min_length=1, max_length=255)
    reporting_currency: str = Field(..., min_length=3, max_length=3)
    consolidation_method: ConsolidationMethod = ConsolidationMethod.FULL
    parent_company_id: UUID
    description: Optional[str] = None
    members: List[MemberCreate] = Field(default_factory=list)


class GroupUpdate(BaseModel):
    """Partial group update."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    reporting_currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    consolidation_method: Optional[ConsolidationMethod] = None
    expected_version: Optional[int] = Field(default=None, ge=1)

    def to_patch(self) -> GroupPatch:
        return GroupPatch(
            name=_patch_value(self, "name"),
            description=_patch_value(self, "description"),
            reporting_currency=_patch_value(self, "reporting_currency"),
            consolidation_method=_patch_value(self, "consolidation_method"),
        )


class MemberResponse(BaseModel):
    company_id: UUID
    ownership_percentage: Decimal
    non_controlling_interest_percentage: Decimal
    acquisition_date: date
    consolidation_method: Optional[ConsolidationMethod]
    effective_method: ConsolidationMethod
    goodwill_amount: Optional[Decimal]
    vie_determination: Optional[VIEDeterminationSchema]


class GroupResponse(BaseModel):
    """Consolidation group response."""
    id: UUID
    organization_id: UUID
    name: str
    description: Optional[str]
    reporting_currency: str
    consolidation_method: ConsolidationMethod
    parent_company_id: UUID
    members: List[MemberResponse]
    elimination_rule_ids: List[UUID]
    is_active: bool
    version: int
    created_by: Optional[UUID]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, group: ConsolidationGroup) -> "GroupResponse":
        return cls(
            id=group.id,
            organization_id=group.organization_id,
            name=group.name,
            description=group.description,
            reporting_currency=group.reporting_currency,
            consolidation_method=group.consolidation_method,
            parent_company_id=group.parent_company_id,
            members=[
                MemberResponse(
                    company_id=m.company_id,
                    ownership_percentage=m.ownership_percentage.value,
                    non_controlling_interest_percentage=m.non_controlling_interest_percentage.value,
                    acquisition_date=m.acquisition_date,
                    consolidation_method=m.consolidation_method,
                    effective_method=group.member_method(m),
                    goodwill_amount=m.goodwill_amount,
                    vie_determination=(
                        VIEDeterminationSchema(**m.vie_determination.to_dict()) if m.vie_determination else None
                    ),
                )
                for m in group.members
            ],
            elimination_rule_ids=list(group.elimination_rule_ids),
            is_active=group.is_active,
            version=group.version,
            created_by=group.created_by,
            created_at=group.created_at,
            updated_at=group.updated_at,
        )


# =============================================================================
# ELIMINATION RULE SCHEMAS
# =============================================================================

class AccountSelectorSchema(BaseModel):
    """Selects accounts by exact code, inclusive code range or category."""
    kind: SelectorKind
    code: Optional[str] = None
    range_from: Optional[str] = None
    range_to: Optional[str] = None
    category: Optional[AccountCategory] = None

    def to_domain(self) -> AccountSelector:
        return AccountSelector(
            kind=self.kind,
            code=self.code,
            range_from=self.range_from,
            range_to=self.range_to,
            category=self.category,
        )


class TriggerConditionSchema(BaseModel):
    description: str = ""
    source_accounts: List[AccountSelectorSchema] = Field(default_factory=list)
    minimum_amount: Optional[Decimal] = Field(default=None, ge=0)

    def to_domain(self) -> TriggerCondition:
        return TriggerCondition(
            description=self.description,
            source_accounts=tuple(s.to_domain() for s in self.source_accounts),
            minimum_amount=self.minimum_amount,
        )


def _selectors(items: Optional[List[AccountSelectorSchema]]) -> List[AccountSelector]:
    return [s.to_domain() for s in items or []]


def _conditions(items: Optional[List[TriggerConditionSchema]]) -> List[TriggerCondition]:
    return [c.to_domain() for c in items or []]


class RuleCreate(BaseModel):
    """Create an elimination rule."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    elimination_type: EliminationType
    trigger_conditions: List[TriggerConditionSchema] = Field(default_factory=list)
    source_accounts: List[AccountSelectorSchema] = Field(default_factory=list)
    target_accounts: List[AccountSelectorSchema] = Field(default_factory=list)
    debit_account_code: str = Field(..., min_length=1, max_length=20)
    credit_account_code: str = Field(..., min_length=1, max_length=20)
    is_automatic: bool = True
    priority: int = Field(default=100, ge=0)

    def to_attributes(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "elimination_type": self.elimination_type,
            "trigger_conditions": _conditions(self.trigger_conditions),
            "source_accounts": _selectors(self.source_accounts),
            "target_accounts": _selectors(self.target_accounts),
            "debit_account_code": self.debit_account_code,
            "credit_account_code": self.credit_account_code,
            "is_automatic": self.is_automatic,
            "priority": self.priority,
        }


class BulkRuleItem(RuleCreate):
    group_id: UUID


class BulkRuleCreate(BaseModel):
    """Create several rules, possibly across groups, all or nothing."""
    rules: List[BulkRuleItem] = Field(..., min_length=1)

    def to_drafts(self) -> List[Dict[str, Any]]:
        return [dict(item.to_attributes(), group_id=item.group_id) for item in self.rules]


class RuleUpdate(BaseModel):
    """Partial rule update."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    elimination_type: Optional[EliminationType] = None
    trigger_conditions: Optional[List[TriggerConditionSchema]] = None
    source_accounts: Optional[List[AccountSelectorSchema]] = None
    target_accounts: Optional[List[AccountSelectorSchema]] = None
    debit_account_code: Optional[str] = Field(default=None, min_length=1, max_length=20)
    credit_account_code: Optional[str] = Field(default=None, min_length=1, max_length=20)
    is_automatic: Optional[bool] = None
    priority: Optional[int] = Field(default=None, ge=0)

    def to_patch(self) -> RulePatch:
        patch = RulePatch(
            name=_patch_value(self, "name"),
            description=_patch_value(self, "description"),
            elimination_type=_patch_value(self, "elimination_type"),
            debit_account_code=_patch_value(self, "debit_account_code"),
            credit_account_code=_patch_value(self, "credit_account_code"),
            is_automatic=_patch_value(self, "is_automatic"),
            priority=_patch_value(self, "priority"),
        )
        # An explicit null clears a list
        if "trigger_conditions" in self.model_fields_set:
            patch.trigger_conditions = _conditions(self.trigger_conditions)
        if "source_accounts" in self.model_fields_set:
            patch.source_accounts = _selectors(self.source_accounts)
        if "target_accounts" in self.model_fields_set:
            patch.target_accounts = _selectors(self.target_accounts)
        return patch


class PriorityUpdate(BaseModel):
    priority: int = Field(..., ge=0, description="Lower numbers run first")


class RuleResponse(BaseModel):
    """Elimination rule response."""
    id: UUID
    group_id: UUID
    name: str
    description: Optional[str]
    elimination_type: EliminationType
    trigger_conditions: List[TriggerConditionSchema]
    source_accounts: List[AccountSelectorSchema]
    target_accounts: List[AccountSelectorSchema]
    debit_account_code: str
    credit_account_code: str
    is_automatic: bool
    priority: int
    is_active: bool
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, rule: EliminationRule) -> "RuleResponse":
        snapshot = rule.snapshot()
        return cls(
            id=rule.id,
            group_id=rule.group_id,
            version=rule.version,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
            **snapshot,
        )


# =============================================================================
# RUN SCHEMAS
# =============================================================================

class RunOptionsSchema(BaseModel):
    skip_validation: bool = False
    continue_on_warnings: bool = True
    include_equity_method_investments: bool = True
    force_regeneration: bool = False
    intercompany_date_tolerance_days: int = Field(default=3, ge=0, le=366)
    intercompany_amount_tolerance_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)

    def to_domain(self) -> ConsolidationRunOptions:
        return ConsolidationRunOptions(**self.model_dump())


class RunCreate(BaseModel):
    """Initiate a consolidation run."""
    period: PeriodSchema
    as_of_date: date
    options: RunOptionsSchema = Field(default_factory=RunOptionsSchema)
    execute_immediately: bool = Field(
        default=True,
        description="Execute within the request; otherwise queue (if enabled) or leave pending",
    )


class RunStepResponse(BaseModel):
    step_type: StepType
    status: StepStatus
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    duration_ms: Optional[int]
    error_message: Optional[str]
    details: Optional[str]

    @classmethod
    def from_domain(cls, step: ConsolidationRunStep) -> "RunStepResponse":
        return cls(
            step_type=step.step_type,
            status=step.status,
            started_at=step.started_at,
            completed_at=step.completed_at,
            duration_ms=step.duration_ms,
            error_message=step.error_message,
            details=step.details,
        )


class ValidationIssueResponse(BaseModel):
    severity: IssueSeverity
    code: str
    message: str
    entity_reference: Optional[str] = None


class ValidationResultResponse(BaseModel):
    is_valid: bool
    issues: List[ValidationIssueResponse]


class EliminationAdjustmentResponse(BaseModel):
    id: UUID
    rule_id: UUID
    rule_name: str
    elimination_type: EliminationType
    description: str
    debit_account_code: str
    credit_account_code: str
    amount: Decimal
    currency: str
    is_automatic: bool
    status: str

    @classmethod
    def from_domain(cls, adjustment: EliminationAdjustment) -> "EliminationAdjustmentResponse":
        return cls(**adjustment.to_dict())


class NCICalculationResponse(BaseModel):
    company_id: UUID
    nci_percentage: Decimal
    net_income: Decimal
    equity: Decimal
    net_assets: Decimal
    nci_share_of_net_income: Decimal
    nci_share_of_equity: Decimal
    total_nci: Decimal


class IntercompanyMatchingResponse(BaseModel):
    """Outcome of pairing both sides of each intercompany transaction."""
    matched_at: datetime
    config: Dict[str, Any]
    total_transactions: int
    matched_count: int
    unmatched_count: int
    partial_match_count: int
    match_rate: Decimal
    is_fully_matched: bool
    total_variance: Dict[str, Decimal]
    discrepancies: List[Dict[str, Any]]


class RunResponse(BaseModel):
    """Consolidation run with its pipeline state."""
    id: UUID
    group_id: UUID
    organization_id: UUID
    period: PeriodSchema
    as_of_date: date
    status: RunStatus
    options: RunOptionsSchema
    steps: List[RunStepResponse]
    current_step: Optional[StepType]
    progress_percent: int
    validation_result: Optional[ValidationResultResponse]
    elimination_entries: List[EliminationAdjustmentResponse]
    proposed_eliminations: List[EliminationAdjustmentResponse]
    nci_calculations: List[NCICalculationResponse]
    intercompany_matching: Optional[IntercompanyMatchingResponse] = None
    has_trial_balance: bool
    initiated_by: Optional[UUID]
    initiated_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    total_duration_ms: Optional[int]
    error_message: Optional[str]
    group_version: Optional[int]
    is_superseded: bool
    queued: bool = False

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_domain(cls, run: ConsolidationRun, queued: bool = False) -> "RunResponse":
        current = run.current_step
        return cls(
            id=run.id,
            group_id=run.group_id,
            organization_id=run.organization_id,
            period=PeriodSchema(year=run.period.year, period=run.period.period),
            as_of_date=run.as_of_date,
            status=run.status,
            options=RunOptionsSchema(**run.options.to_dict()),
            steps=[RunStepResponse.from_domain(s) for s in run.steps],
            current_step=current.step_type if current else None,
            progress_percent=run.progress_percent,
            validation_result=(
                ValidationResultResponse(**run.validation_result.to_dict()) if run.validation_result else None
            ),
            elimination_entries=[EliminationAdjustmentResponse.from_domain(e) for e in run.elimination_entries],
            proposed_eliminations=[EliminationAdjustmentResponse.from_domain(e) for e in run.proposed_eliminations],
            nci_calculations=[NCICalculationResponse(**n.to_dict()) for n in run.nci_calculations],
            intercompany_matching=(
                IntercompanyMatchingResponse(**run.intercompany_matching.to_dict())
                if run.intercompany_matching else None
            ),
            has_trial_balance=run.consolidated_trial_balance is not None,
            initiated_by=run.initiated_by,
            initiated_at=run.initiated_at,
            started_at=run.started_at,
            completed_at=run.completed_at,
            total_duration_ms=run.total_duration_ms,
            error_message=run.error_message,
            group_version=run.group_version,
            is_superseded=run.is_superseded,
            queued=queued,
        )


class MessageResponse(BaseModel):
    message: str
