"""
GroupLedger - Test Configuration

Pytest fixtures and configuration. Service and API tests run against the
in-memory repositories; no database or Redis is needed.
"""

import os

# Must be set before the app settings are first loaded
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("CONSOLIDATION_BACKGROUND_EXECUTION", "false")

from datetime import date
from typing import AsyncGenerator, Dict, List, Optional
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.dependencies import get_consolidation_service
from app.repositories.memory import (
    InMemoryAccountRepository,
    InMemoryAuditLogService,
    InMemoryCompanyRepository,
    InMemoryConsolidationRepository,
    InMemoryEliminationRuleRepository,
    InMemoryExchangeRateRepository,
    InMemoryIntercompanyTransactionRepository,
    InMemoryStore,
)
from app.services.consolidation.group import ConsolidationGroup, ConsolidationMember
from app.services.consolidation.ledger import AccountCategory, AccountInfo, AccountType, CompanyInfo
from app.services.consolidation.service import ConsolidationService
from app.services.consolidation.values import ConsolidationMethod, PeriodRef
from main import app


AS_OF = date(2025, 3, 31)
PERIOD = PeriodRef(2025, 3)
ACQUISITION_DATE = date(2020, 1, 1)


def _account(code: str, name: str, account_type: AccountType, category: AccountCategory, **flags) -> AccountInfo:
    return AccountInfo(code=code, name=name, account_type=account_type, category=category, **flags)


CHART: List[AccountInfo] = [
    _account("1000", "Cash and cash equivalents", AccountType.ASSET, AccountCategory.CURRENT_ASSET,
             is_cash_equivalent=True),
    _account("1200", "Accounts receivable", AccountType.ASSET, AccountCategory.CURRENT_ASSET),
    _account("1300", "Intercompany receivable", AccountType.ASSET, AccountCategory.CURRENT_ASSET,
             is_intercompany=True),
    _account("1600", "Equipment", AccountType.ASSET, AccountCategory.FIXED_ASSET),
    _account("2000", "Accounts payable", AccountType.LIABILITY, AccountCategory.CURRENT_LIABILITY),
    _account("2300", "Intercompany payable", AccountType.LIABILITY, AccountCategory.CURRENT_LIABILITY,
             is_intercompany=True),
    _account("3000", "Share capital", AccountType.EQUITY, AccountCategory.CONTRIBUTED_CAPITAL),
    _account("3100", "Retained earnings", AccountType.EQUITY, AccountCategory.RETAINED_EARNINGS),
    _account("4000", "Sales revenue", AccountType.REVENUE, AccountCategory.OPERATING_REVENUE),
    _account("6000", "Operating expenses", AccountType.EXPENSE, AccountCategory.OPERATING_EXPENSE),
]

# Signed balances, debit positive
PARENT_BALANCES = {
    "1000": 40000, "1200": 20000, "1300": 10000, "1600": 30000,
    "2000": -10000, "3000": -60000, "3100": -20000,
    "4000": -40000, "6000": 30000,
}
SUBSIDIARY_BALANCES = {
    "1000": 40000, "1600": 20000,
    "2000": -10000, "2300": -10000, "3000": -25000, "3100": -10000,
    "4000": -20000, "6000": 15000,
}
FOREIGN_BALANCES = {
    "1000": 1000, "3000": -600, "3100": -200, "4000": -500, "6000": 300,
}


@pytest.fixture
def organization_id() -> UUID:
    return uuid4()


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def audit_log(store: InMemoryStore) -> InMemoryAuditLogService:
    return InMemoryAuditLogService(store)


@pytest.fixture
def companies(store: InMemoryStore, organization_id: UUID) -> Dict[str, CompanyInfo]:
    """Parent (USD), subsidiary (USD) and foreign subsidiary (EUR) with trial balances at AS_OF."""
    parent = store.add_company(CompanyInfo(uuid4(), organization_id, "Holdco Inc", "USD"), CHART)
    subsidiary = store.add_company(CompanyInfo(uuid4(), organization_id, "Opco LLC", "USD"), CHART)
    foreign = store.add_company(CompanyInfo(uuid4(), organization_id, "Euro GmbH", "EUR"), CHART)

    store.set_trial_balance(parent.id, AS_OF, PARENT_BALANCES)
    store.set_trial_balance(subsidiary.id, AS_OF, SUBSIDIARY_BALANCES)
    store.set_trial_balance(foreign.id, AS_OF, FOREIGN_BALANCES)

    store.add_rate("EUR", "USD", ACQUISITION_DATE, "1.20")
    store.add_rate("EUR", "USD", date(2025, 3, 1), "1.08")
    store.add_rate("EUR", "USD", AS_OF, "1.10")

    return {"parent": parent, "subsidiary": subsidiary, "foreign": foreign}


@pytest.fixture
def consolidation_service(store: InMemoryStore, audit_log: InMemoryAuditLogService) -> ConsolidationService:
    """Service wired onto the in-memory store, without a report cache."""
    return ConsolidationService(
        consolidation_repo=InMemoryConsolidationRepository(store),
        company_repo=InMemoryCompanyRepository(store),
        account_repo=InMemoryAccountRepository(store),
        rate_repo=InMemoryExchangeRateRepository(store),
        rule_repo=InMemoryEliminationRuleRepository(store),
        audit=audit_log,
        intercompany_repo=InMemoryIntercompanyTransactionRepository(store),
    )


@pytest.fixture
def make_group(consolidation_service: ConsolidationService, organization_id: UUID, companies):
    """Factory creating a USD group of the parent plus the given members."""

    async def _make(
        members: Optional[Dict[str, object]] = None,
        method: ConsolidationMethod = ConsolidationMethod.FULL,
        name: str = "Holdco Group",
        member_methods: Optional[Dict[str, ConsolidationMethod]] = None,
    ) -> ConsolidationGroup:
        members = {"subsidiary": 80} if members is None else members
        member_methods = member_methods or {}
        return await consolidation_service.create_group(
            organization_id=organization_id,
            name=name,
            reporting_currency="USD",
            consolidation_method=method,
            parent_company_id=companies["parent"].id,
            members=[
                ConsolidationMember.create(
                    company_id=companies[key].id,
                    ownership_percentage=ownership,
                    acquisition_date=ACQUISITION_DATE,
                    consolidation_method=member_methods.get(key),
                )
                for key, ownership in members.items()
            ],
        )

    return _make


# ===========================================
# API FIXTURES
# ===========================================

@pytest_asyncio.fixture
async def client(consolidation_service: ConsolidationService) -> AsyncGenerator[AsyncClient, None]:
    """Test client whose consolidation service uses the in-memory store."""

    async def override_get_service():
        return consolidation_service

    app.dependency_overrides[get_consolidation_service] = override_get_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(organization_id: UUID, user_id: UUID) -> Dict[str, str]:
    return {
        "X-Organization-ID": str(organization_id),
        "X-User-ID": str(user_id),
    }
