"""
PayCore - Audit Trail Service

Audit logging for payroll mutations. Entries are flushed into the caller's
transaction so they commit or roll back with the change they describe.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.models.audit import AuditLog, AuditAction


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class AuditService:
    """Service for writing and reading the payroll audit trail."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def log_action(
        self,
        entity_type: str,
        entity_id: Any,
        action: AuditAction,
        actor_id: Optional[uuid.UUID] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> AuditLog:
        """
        Log an audit action.
        
        Args:
            entity_type: Type of entity (e.g., 'payrun', 'salary_structure')
            entity_id: ID of the affected entity
            action: Type of action performed
            actor_id: Employee who performed the action
            old_values: Previous values (for updates)
            new_values: New values (for creates/updates)
            description: Human-readable summary
        
        Returns:
            Created AuditLog record
        """
        old_values = _jsonable(old_values) if old_values else None
        new_values = _jsonable(new_values) if new_values else None
        
        changes = None
        if action == AuditAction.UPDATE and old_values and new_values:
            changes = self._calculate_changes(old_values, new_values)
        
        audit_log = AuditLog(
            target_entity_type=entity_type,
            target_entity_id=str(entity_id),
            action=action,
            actor_id=actor_id,
            old_values=old_values,
            new_values=new_values,
            changes=changes,
            description=description,
        )
        
        self.db.add(audit_log)
        await self.db.flush()
        
        return audit_log
    
    def _calculate_changes(
        self,
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
    
    async def get_entity_history(
        self,
        entity_type: str,
        entity_id: Any,
    ) -> List[AuditLog]:
        """All audit entries for one entity, oldest first."""
        result = await self.db.execute(
            select(AuditLog)
            .where(
                AuditLog.target_entity_type == entity_type,
                AuditLog.target_entity_id == str(entity_id),
            )
            .order_by(AuditLog.created_at)
        )
        return list(result.scalars().all())
