"""
GroupLedger - Consolidation Group Tests

Tests for membership rules and partial updates of the group aggregate.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from app.services.consolidation.group import (
    ConsolidationGroup,
    ConsolidationMember,
    GroupPatch,
    MemberPatch,
    VIEDetermination,
    determine_method,
)
from app.services.consolidation.values import ConsolidationMethod, Percentage
from app.utils.error_handling import (
    AlreadyMemberException,
    BusinessRuleException,
    ErrorCode,
    MemberNotFoundException,
    ValidationException,
)


def _group(**kwargs) -> ConsolidationGroup:
    defaults = dict(
        organization_id=uuid4(),
        name="Holdco Group",
        reporting_currency="usd",
        consolidation_method=ConsolidationMethod.FULL,
        parent_company_id=uuid4(),
    )
    defaults.update(kwargs)
    return ConsolidationGroup.create(**defaults)


def _member(ownership="80", **kwargs) -> ConsolidationMember:
    return ConsolidationMember.create(
        company_id=kwargs.pop("company_id", uuid4()),
        ownership_percentage=ownership,
        acquisition_date=date(2020, 1, 1),
        **kwargs,
    )


class TestGroupCreation:
    """Test group construction."""

    def test_currency_is_normalised(self):
        group = _group()
        assert group.reporting_currency == "USD"
        assert group.version == 1
        assert group.is_active

    def test_blank_name_rejected(self):
        with pytest.raises(ValidationException):
            _group(name="   ")

    def test_company_ids_parent_first(self):
        """Parent comes first, then members in insertion order."""
        first, second = _member(), _member()
        group = _group(members=[first, second])
        assert group.company_ids == [group.parent_company_id, first.company_id, second.company_id]


class TestMembership:
    """Test the membership invariants."""

    def test_nci_is_complement_of_ownership(self):
        member = _member("66.67")
        assert member.non_controlling_interest_percentage == Percentage.of("33.33")

    def test_parent_cannot_be_member(self):
        group = _group()
        with pytest.raises(BusinessRuleException) as exc_info:
            group.add_member(_member(company_id=group.parent_company_id))
        assert exc_info.value.code == ErrorCode.PARENT_CANNOT_BE_MEMBER

    def test_duplicate_member_rejected(self):
        member = _member()
        group = _group(members=[member])
        with pytest.raises(AlreadyMemberException):
            group.add_member(_member(company_id=member.company_id))

    def test_update_ownership_recomputes_nci(self):
        member = _member("80")
        group = _group(members=[member])
        updated = group.update_member(member.company_id, MemberPatch(ownership_percentage=Decimal("60")))
        assert updated.ownership_percentage == Percentage.of(60)
        assert updated.non_controlling_interest_percentage == Percentage.of(40)

    def test_patch_leaves_unset_fields(self):
        """Only supplied fields change; an explicit None clears optional fields."""
        member = _member(goodwill_amount=Decimal("500"), consolidation_method=ConsolidationMethod.EQUITY)
        group = _group(members=[member])
        updated = group.update_member(member.company_id, MemberPatch(goodwill_amount=None))
        assert updated.goodwill_amount is None
        assert updated.consolidation_method == ConsolidationMethod.EQUITY
        assert updated.ownership_percentage == member.ownership_percentage

    def test_null_ownership_rejected(self):
        member = _member()
        group = _group(members=[member])
        with pytest.raises(ValidationException):
            group.update_member(member.company_id, MemberPatch(ownership_percentage=None))

    def test_remove_unknown_member(self):
        group = _group()
        with pytest.raises(MemberNotFoundException):
            group.remove_member(uuid4())

    def test_member_method_falls_back_to_group(self):
        plain = _member()
        override = _member(consolidation_method=ConsolidationMethod.PROPORTIONAL)
        group = _group(members=[plain, override], consolidation_method=ConsolidationMethod.FULL)
        assert group.member_method(plain) == ConsolidationMethod.FULL
        assert group.member_method(override) == ConsolidationMethod.PROPORTIONAL

    def test_negative_goodwill_rejected(self):
        with pytest.raises(ValidationException):
            _member(goodwill_amount=Decimal("-1"))


class TestGroupPatch:
    """Test partial group updates."""

    def test_changed_fields_reported(self):
        group = _group()
        changed = group.apply_patch(GroupPatch(name="Renamed", reporting_currency="usd"))
        assert changed == ["name"]
        assert group.name == "Renamed"

    def test_empty_patch_changes_nothing(self):
        group = _group()
        before = group.updated_at
        assert group.apply_patch(GroupPatch()) == []
        assert group.updated_at == before

    def test_activation_flags(self):
        group = _group()
        assert group.activate() is False
        assert group.deactivate() is True
        assert group.deactivate() is False
        assert group.activate() is True


class TestMethodDetermination:
    """Test the consolidation method implied by ownership."""

    @pytest.mark.parametrize("ownership,expected", [
        ("100", ConsolidationMethod.FULL),
        ("50.01", ConsolidationMethod.FULL),
        ("50", ConsolidationMethod.EQUITY),
        ("35", ConsolidationMethod.EQUITY),
        ("20", ConsolidationMethod.EQUITY),
        ("19.99", ConsolidationMethod.COST),
        ("0", ConsolidationMethod.COST),
    ])
    def test_ownership_thresholds(self, ownership, expected):
        assert determine_method(Percentage.of(ownership)) == expected

    def test_vie_primary_beneficiary_is_full(self):
        assert determine_method(Percentage.of("10"), is_vie_primary_beneficiary=True) == ConsolidationMethod.FULL

    def test_associate_in_full_group_uses_equity_method(self):
        associate = _member(ownership="35")
        group = _group(members=[associate])
        assert group.member_method(associate) == ConsolidationMethod.EQUITY

    def test_controlled_member_takes_group_method(self):
        member = _member(ownership="60")
        group = _group(members=[member], consolidation_method=ConsolidationMethod.PROPORTIONAL)
        assert group.member_method(member) == ConsolidationMethod.PROPORTIONAL

    def test_vie_member_consolidated_despite_low_ownership(self):
        vie = _member(
            ownership="10",
            vie_determination=VIEDetermination(is_primary_beneficiary=True, has_controlling_financial_interest=True),
        )
        group = _group(members=[vie])
        assert group.member_method(vie) == ConsolidationMethod.FULL

    def test_small_holding_carried_at_cost(self):
        holding = _member(ownership="15")
        group = _group(members=[holding])
        assert group.member_method(holding) == ConsolidationMethod.COST

    def test_override_beats_ownership(self):
        member = _member(ownership="35", consolidation_method=ConsolidationMethod.FULL)
        group = _group(members=[member])
        assert group.member_method(member) == ConsolidationMethod.FULL

    def test_group_cannot_prescribe_cost(self):
        with pytest.raises(ValidationException) as exc_info:
            _group(consolidation_method=ConsolidationMethod.COST)
        assert exc_info.value.field == "consolidation_method"

        group = _group()
        with pytest.raises(ValidationException):
            group.apply_patch(GroupPatch(consolidation_method=ConsolidationMethod.COST))
