"""
GroupLedger - Consolidation Group Aggregate

A consolidation group is a parent company plus its member companies. The
aggregate guards membership: a company appears at most once, the parent is
never listed as a member, and every member's NCI percentage is derived from
its ownership at the moment ownership is set.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from app.services.consolidation.values import (
    ConsolidationMethod,
    Percentage,
    UNSET,
    is_set,
    validate_currency_code,
)
from app.utils.error_handling import (
    AlreadyMemberException,
    BusinessRuleException,
    ErrorCode,
    MemberNotFoundException,
    ValidationException,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Ownership above this is control; at or above the lower bound, significant influence
CONTROL_THRESHOLD = Percentage.of(50)
SIGNIFICANT_INFLUENCE_THRESHOLD = Percentage.of(20)

# Methods a group may prescribe for its controlled members
GROUP_METHODS = frozenset({
    ConsolidationMethod.FULL,
    ConsolidationMethod.PROPORTIONAL,
    ConsolidationMethod.EQUITY,
})


def determine_method(ownership: Percentage, is_vie_primary_beneficiary: bool = False) -> ConsolidationMethod:
    """
    Consolidation method implied by ownership.

    The primary beneficiary of a variable interest entity consolidates it
    fully whatever its share. Otherwise more than 50% is control (full),
    20% to 50% inclusive is significant influence (equity method) and
    anything below is carried at cost.
    """
    if is_vie_primary_beneficiary:
        return ConsolidationMethod.FULL
    if ownership.value > CONTROL_THRESHOLD.value:
        return ConsolidationMethod.FULL
    if ownership.value >= SIGNIFICANT_INFLUENCE_THRESHOLD.value:
        return ConsolidationMethod.EQUITY
    return ConsolidationMethod.COST


def _validate_group_method(method: ConsolidationMethod) -> ConsolidationMethod:
    if method not in GROUP_METHODS:
        raise ValidationException(
            f"A group cannot prescribe the '{method.value}' method for its members",
            field="consolidation_method",
        )
    return method


@dataclass(frozen=True)
class VIEDetermination:
    """Variable-interest-entity assessment for a member consolidated on control."""
    is_primary_beneficiary: bool
    has_controlling_financial_interest: bool
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_primary_beneficiary": self.is_primary_beneficiary,
            "has_controlling_financial_interest": self.has_controlling_financial_interest,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["VIEDetermination"]:
        if not data:
            return None
        return cls(
            is_primary_beneficiary=bool(data.get("is_primary_beneficiary")),
            has_controlling_financial_interest=bool(data.get("has_controlling_financial_interest")),
            notes=data.get("notes"),
        )


@dataclass(frozen=True)
class ConsolidationMember:
    """A member company's ownership and consolidation metadata."""
    company_id: UUID
    ownership_percentage: Percentage
    non_controlling_interest_percentage: Percentage
    acquisition_date: date
    consolidation_method: Optional[ConsolidationMethod] = None
    goodwill_amount: Optional[Decimal] = None
    vie_determination: Optional[VIEDetermination] = None

    @classmethod
    def create(
        cls,
        company_id: UUID,
        ownership_percentage: Any,
        acquisition_date: date,
        consolidation_method: Optional[ConsolidationMethod] = None,
        goodwill_amount: Optional[Decimal] = None,
        vie_determination: Optional[VIEDetermination] = None,
    ) -> "ConsolidationMember":
        ownership = Percentage.of(ownership_percentage)
        if goodwill_amount is not None and goodwill_amount < 0:
            raise ValidationException("Goodwill amount cannot be negative", field="goodwill_amount")
        return cls(
            company_id=company_id,
            ownership_percentage=ownership,
            non_controlling_interest_percentage=ownership.complement(),
            acquisition_date=acquisition_date,
            consolidation_method=consolidation_method,
            goodwill_amount=goodwill_amount,
            vie_determination=vie_determination,
        )

    @property
    def is_vie_primary_beneficiary(self) -> bool:
        return self.vie_determination is not None and self.vie_determination.is_primary_beneficiary

    def effective_method(self, group_method: ConsolidationMethod) -> ConsolidationMethod:
        """
        An explicit override wins. Otherwise ownership decides, and members
        the parent controls take the group's method.
        """
        if self.consolidation_method is not None:
            return self.consolidation_method
        derived = determine_method(self.ownership_percentage, self.is_vie_primary_beneficiary)
        if derived == ConsolidationMethod.FULL:
            return group_method
        return derived

    def apply_patch(self, patch: "MemberPatch") -> "ConsolidationMember":
        """Return a copy with supplied fields overwritten; NCI follows ownership."""
        changes: Dict[str, Any] = {}
        if is_set(patch.ownership_percentage):
            if patch.ownership_percentage is None:
                raise ValidationException("Ownership percentage cannot be null", field="ownership_percentage")
            ownership = Percentage.of(patch.ownership_percentage)
            if ownership != self.ownership_percentage:
                changes["ownership_percentage"] = ownership
                changes["non_controlling_interest_percentage"] = ownership.complement()
        if is_set(patch.consolidation_method):
            changes["consolidation_method"] = patch.consolidation_method
        if is_set(patch.acquisition_date):
            if patch.acquisition_date is None:
                raise ValidationException("Acquisition date cannot be null", field="acquisition_date")
            changes["acquisition_date"] = patch.acquisition_date
        if is_set(patch.goodwill_amount):
            if patch.goodwill_amount is not None and patch.goodwill_amount < 0:
                raise ValidationException("Goodwill amount cannot be negative", field="goodwill_amount")
            changes["goodwill_amount"] = patch.goodwill_amount
        if is_set(patch.vie_determination):
            changes["vie_determination"] = patch.vie_determination
        return replace(self, **changes) if changes else self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company_id": str(self.company_id),
            "ownership_percentage": str(self.ownership_percentage.value),
            "non_controlling_interest_percentage": str(self.non_controlling_interest_percentage.value),
            "acquisition_date": self.acquisition_date.isoformat(),
            "consolidation_method": self.consolidation_method.value if self.consolidation_method else None,
            "goodwill_amount": str(self.goodwill_amount) if self.goodwill_amount is not None else None,
            "vie_determination": self.vie_determination.to_dict() if self.vie_determination else None,
        }


@dataclass
class MemberPatch:
    """Partial member update. UNSET means leave unchanged, None clears."""
    ownership_percentage: Any = UNSET
    consolidation_method: Any = UNSET
    acquisition_date: Any = UNSET
    goodwill_amount: Any = UNSET
    vie_determination: Any = UNSET


@dataclass
class GroupPatch:
    """Partial group update. UNSET means leave unchanged."""
    name: Any = UNSET
    description: Any = UNSET
    reporting_currency: Any = UNSET
    consolidation_method: Any = UNSET


@dataclass
class ConsolidationGroup:
    """Parent company plus member companies consolidated together."""
    id: UUID
    organization_id: UUID
    name: str
    reporting_currency: str
    consolidation_method: ConsolidationMethod
    parent_company_id: UUID
    members: List[ConsolidationMember] = field(default_factory=list)
    elimination_rule_ids: List[UUID] = field(default_factory=list)
    description: Optional[str] = None
    is_active: bool = True
    version: int = 1
    created_by: Optional[UUID] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        organization_id: UUID,
        name: str,
        reporting_currency: str,
        consolidation_method: ConsolidationMethod,
        parent_company_id: UUID,
        members: Optional[List[ConsolidationMember]] = None,
        description: Optional[str] = None,
        created_by: Optional[UUID] = None,
    ) -> "ConsolidationGroup":
        name = (name or "").strip()
        if not name:
            raise ValidationException("Group name is required", field="name")
        group = cls(
            id=uuid4(),
            organization_id=organization_id,
            name=name,
            reporting_currency=validate_currency_code(reporting_currency),
            consolidation_method=_validate_group_method(consolidation_method),
            parent_company_id=parent_company_id,
            description=description,
            created_by=created_by,
        )
        for member in members or []:
            group.add_member(member)
        return group

    # ===========================================
    # MEMBERSHIP
    # ===========================================

    def find_member(self, company_id: UUID) -> Optional[ConsolidationMember]:
        for member in self.members:
            if member.company_id == company_id:
                return member
        return None

    def get_member(self, company_id: UUID) -> ConsolidationMember:
        member = self.find_member(company_id)
        if member is None:
            raise MemberNotFoundException(self.id, company_id)
        return member

    def add_member(self, member: ConsolidationMember) -> None:
        if member.company_id == self.parent_company_id:
            raise BusinessRuleException(
                "The parent company is consolidated implicitly and cannot be added as a member",
                rule="PARENT_NOT_MEMBER",
                code=ErrorCode.PARENT_CANNOT_BE_MEMBER,
            )
        if self.find_member(member.company_id) is not None:
            raise AlreadyMemberException(self.id, member.company_id)
        self.members.append(member)
        self._touch()

    def update_member(self, company_id: UUID, patch: MemberPatch) -> ConsolidationMember:
        current = self.get_member(company_id)
        updated = current.apply_patch(patch)
        self.members = [updated if m.company_id == company_id else m for m in self.members]
        self._touch()
        return updated

    def remove_member(self, company_id: UUID) -> ConsolidationMember:
        member = self.get_member(company_id)
        self.members = [m for m in self.members if m.company_id != company_id]
        self._touch()
        return member

    def member_method(self, member: ConsolidationMember) -> ConsolidationMethod:
        return member.effective_method(self.consolidation_method)

    @property
    def company_ids(self) -> List[UUID]:
        """Parent first, then members in insertion order."""
        return [self.parent_company_id] + [m.company_id for m in self.members]

    # ===========================================
    # LIFECYCLE
    # ===========================================

    def apply_patch(self, patch: GroupPatch) -> List[str]:
        """Apply a group patch; returns the names of changed fields."""
        changed = []
        if is_set(patch.name):
            name = (patch.name or "").strip()
            if not name:
                raise ValidationException("Group name is required", field="name")
            if name != self.name:
                self.name = name
                changed.append("name")
        if is_set(patch.description) and patch.description != self.description:
            self.description = patch.description
            changed.append("description")
        if is_set(patch.reporting_currency):
            currency = validate_currency_code(patch.reporting_currency)
            if currency != self.reporting_currency:
                self.reporting_currency = currency
                changed.append("reporting_currency")
        if is_set(patch.consolidation_method):
            if patch.consolidation_method is None:
                raise ValidationException("Consolidation method cannot be null", field="consolidation_method")
            if patch.consolidation_method != self.consolidation_method:
                self.consolidation_method = _validate_group_method(patch.consolidation_method)
                changed.append("consolidation_method")
        if changed:
            self._touch()
        return changed

    def activate(self) -> bool:
        """Returns True when the flag actually changed."""
        if self.is_active:
            return False
        self.is_active = True
        self._touch()
        return True

    def deactivate(self) -> bool:
        if not self.is_active:
            return False
        self.is_active = False
        self._touch()
        return True

    def _touch(self) -> None:
        self.updated_at = utcnow()

    def snapshot(self) -> Dict[str, Any]:
        """Plain representation used for audit old/new values."""
        return {
            "name": self.name,
            "description": self.description,
            "reporting_currency": self.reporting_currency,
            "consolidation_method": self.consolidation_method.value,
            "parent_company_id": str(self.parent_company_id),
            "is_active": self.is_active,
            "members": [m.to_dict() for m in self.members],
        }
