"""
GroupLedger - Audit Trail Service

Write-only audit logging for consolidation configuration and run lifecycle.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit import AuditLog, AuditAction
from app.utils.error_handling import AuditLogException


@dataclass
class AuditRecord:
    """Audit log entry data."""
    organization_id: Optional[uuid.UUID]
    entity_type: str
    entity_id: str
    action: AuditAction
    user_id: Optional[uuid.UUID] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    changes: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def calculate_changes(
    old_values: Dict[str, Any],
    new_values: Dict[str, Any],
) -> Dict[str, Any]:
    """Calculate what changed between old and new values."""
    changes = {}

    all_keys = set(old_values.keys()) | set(new_values.keys())

    for key in all_keys:
        old_val = old_values.get(key)
        new_val = new_values.get(key)

        if old_val != new_val:
            changes[key] = {
                "old": old_val,
                "new": new_val,
            }

    return changes


class AuditLogService(ABC):
    """
    Audit log writer.

    Implementations raise AuditLogException when the entry cannot be
    written; callers decide whether that fails the operation.
    """

    @abstractmethod
    async def _write(self, record: AuditRecord) -> None:
        pass

    async def log_create(
        self,
        organization_id: Optional[uuid.UUID],
        entity_type: str,
        entity_id: Any,
        new_values: Dict[str, Any],
        user_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
    ) -> None:
        await self._write(AuditRecord(
            organization_id=organization_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=AuditAction.CREATE,
            user_id=user_id,
            new_values=new_values,
            description=description,
        ))

    async def log_update(
        self,
        organization_id: Optional[uuid.UUID],
        entity_type: str,
        entity_id: Any,
        old_values: Dict[str, Any],
        new_values: Dict[str, Any],
        user_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
    ) -> None:
        await self._write(AuditRecord(
            organization_id=organization_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=AuditAction.UPDATE,
            user_id=user_id,
            old_values=old_values,
            new_values=new_values,
            changes=calculate_changes(old_values, new_values),
            description=description,
        ))

    async def log_status_change(
        self,
        organization_id: Optional[uuid.UUID],
        entity_type: str,
        entity_id: Any,
        from_status: Optional[str],
        to_status: str,
        user_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
    ) -> None:
        await self._write(AuditRecord(
            organization_id=organization_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=AuditAction.STATUS_CHANGE,
            user_id=user_id,
            old_values={"status": from_status},
            new_values={"status": to_status},
            changes={"status": {"old": from_status, "new": to_status}},
            description=description,
        ))

    async def log_delete(
        self,
        organization_id: Optional[uuid.UUID],
        entity_type: str,
        entity_id: Any,
        old_values: Optional[Dict[str, Any]] = None,
        user_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
    ) -> None:
        await self._write(AuditRecord(
            organization_id=organization_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=AuditAction.DELETE,
            user_id=user_id,
            old_values=old_values,
            description=description,
        ))


class DatabaseAuditLogService(AuditLogService):
    """Writes audit rows into the caller's session so they share its transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _write(self, record: AuditRecord) -> None:
        audit_log = AuditLog(
            organization_id=record.organization_id,
            target_entity_type=record.entity_type,
            target_entity_id=record.entity_id,
            action=record.action,
            user_id=record.user_id,
            old_values=record.old_values,
            new_values=record.new_values,
            changes=record.changes,
            description=record.description,
        )
        # Savepoint keeps a failed audit write from poisoning the outer transaction
        try:
            async with self.db.begin_nested():
                self.db.add(audit_log)
        except SQLAlchemyError as e:
            raise AuditLogException(original_error=e)
