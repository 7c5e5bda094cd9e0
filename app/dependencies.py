"""
GroupLedger - FastAPI Dependencies

Shared dependencies for request context and service wiring.

This module provides dependency injection for:
1. Request context (organization and user set by the upstream gateway)
2. The consolidation service bound to the request's database session
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_async_session
from app.repositories.sql import (
    SqlAccountRepository,
    SqlCompanyRepository,
    SqlConsolidationRepository,
    SqlEliminationRuleRepository,
    SqlExchangeRateRepository,
    SqlIntercompanyTransactionRepository,
)
from app.services.audit_service import DatabaseAuditLogService
from app.services.cache_service import get_cache_service
from app.services.consolidation.service import ConsolidationService


@dataclass(frozen=True)
class RequestContext:
    """Organization and acting user of the current request."""
    organization_id: uuid.UUID
    user_id: Optional[uuid.UUID] = None


def _parse_uuid(value: str, header: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {header} header",
        )


async def get_request_context(
    x_organization_id: Optional[str] = Header(default=None, alias="X-Organization-ID"),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> RequestContext:
    """
    Read the tenant and acting user from gateway headers.

    Raises:
        HTTPException: 401 if the organization header is missing, 400 if malformed
    """
    if not x_organization_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Organization-ID header",
        )
    return RequestContext(
        organization_id=_parse_uuid(x_organization_id, "X-Organization-ID"),
        user_id=_parse_uuid(x_user_id, "X-User-ID") if x_user_id else None,
    )


def build_consolidation_service(db: AsyncSession) -> ConsolidationService:
    """Wire the consolidation service onto one session."""
    return ConsolidationService(
        consolidation_repo=SqlConsolidationRepository(db),
        company_repo=SqlCompanyRepository(db),
        account_repo=SqlAccountRepository(db),
        rate_repo=SqlExchangeRateRepository(db),
        rule_repo=SqlEliminationRuleRepository(db),
        audit=DatabaseAuditLogService(db),
        cache=get_cache_service(),
        intercompany_repo=SqlIntercompanyTransactionRepository(db),
        fiscal_year_start_month=settings.fiscal_year_start_month,
    )


async def get_consolidation_service(
    db: AsyncSession = Depends(get_async_session),
) -> ConsolidationService:
    return build_consolidation_service(db)
