"""
GroupLedger - Consolidation Models

Persistence rows for consolidation groups, their members, elimination rules
and consolidation runs. Structured run output (steps, validation result,
trial balance, eliminations) is stored as JSON on the run row.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text,
    JSON, UniqueConstraint, Index, text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import BaseModel, AuditMixin


class ConsolidationGroupRecord(BaseModel, AuditMixin):
    """Parent company plus member companies consolidated together."""

    __tablename__ = "consolidation_groups"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reporting_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    consolidation_method: Mapped[str] = mapped_column(String(20), nullable=False)
    parent_company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id"),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Optimistic concurrency counter
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    members: Mapped[List["ConsolidationMemberRecord"]] = relationship(
        "ConsolidationMemberRecord",
        back_populates="group",
        cascade="all, delete-orphan",
        order_by="ConsolidationMemberRecord.position",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint('organization_id', 'name', name='uq_consolidation_group_org_name'),
    )


class ConsolidationMemberRecord(BaseModel):
    """Member company of a consolidation group."""

    __tablename__ = "consolidation_members"

    group_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("consolidation_groups.id", ondelete="CASCADE"),
        nullable=False,
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("companies.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    ownership_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    non_controlling_interest_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    consolidation_method: Mapped[Optional[str]] = mapped_column(
        String(20), nullable=True,
        comment="Overrides the group method when set",
    )
    acquisition_date: Mapped[date] = mapped_column(Date, nullable=False)
    goodwill_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2), nullable=True)
    vie_determination: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    group: Mapped["ConsolidationGroupRecord"] = relationship(
        "ConsolidationGroupRecord",
        back_populates="members",
    )

    __table_args__ = (
        UniqueConstraint('group_id', 'company_id', name='uq_consolidation_member'),
    )


class EliminationRuleRecord(BaseModel):
    """Configured intercompany elimination for one group."""

    __tablename__ = "elimination_rules"

    group_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("consolidation_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    elimination_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Selector and condition lists
    trigger_conditions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    source_accounts: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    target_accounts: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    debit_account_code: Mapped[str] = mapped_column(String(20), nullable=False)
    credit_account_code: Mapped[str] = mapped_column(String(20), nullable=False)
    is_automatic: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    __table_args__ = (
        UniqueConstraint('group_id', 'name', name='uq_elimination_rule_group_name'),
    )


class ConsolidationRunRecord(BaseModel):
    """One consolidation of a group for a fiscal period."""

    __tablename__ = "consolidation_runs"

    group_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("consolidation_groups.id"),
        nullable=False,
        index=True,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_number: Mapped[int] = mapped_column(Integer, nullable=False)
    as_of_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    options: Mapped[dict] = mapped_column(JSON, nullable=False)
    steps: Mapped[list] = mapped_column(JSON, nullable=False)
    validation_result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    consolidated_trial_balance: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    elimination_entries: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    proposed_eliminations: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    nci_calculations: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    intercompany_matching: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    initiated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    initiated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    group_version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_superseded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index('ix_run_group_period', 'group_id', 'period_year', 'period_number'),
        # At most one active run per (group, period)
        Index(
            'uq_run_active_group_period',
            'group_id', 'period_year', 'period_number',
            unique=True,
            postgresql_where=text(
                "is_superseded = false AND status IN ('pending', 'in_progress', 'completed')"
            ),
            sqlite_where=text(
                "is_superseded = 0 AND status IN ('pending', 'in_progress', 'completed')"
            ),
        ),
    )
