"""
PayCore - Audit Log Model

Append-only record of payroll mutations.
"""

import uuid
import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Enum, JSON, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from paycore.database import Base


class AuditAction(str, enum.Enum):
    """Audit action types."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    GENERATE = "generate"
    APPROVE = "approve"
    COMPLETE = "complete"
    ROLLBACK = "rollback"
    DISBURSE = "disburse"
    CANCEL = "cancel"
    REJECT = "reject"
    REPAY = "repay"


class AuditLog(Base):
    """
    Immutable audit log for tracking payroll data changes.
    
    Rows are written in the same transaction as the change they describe.
    """
    
    __tablename__ = "audit_logs"
    
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        nullable=True,
        index=True,
    )
    
    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction),
        nullable=False,
        index=True,
    )
    
    target_entity_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="Type of entity (payrun, salary_structure, loan, etc.)",
    )
    target_entity_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    
    old_values: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_values: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    changes: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
        comment="Field diffs for UPDATEs",
    )
    
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action.value}, type={self.target_entity_type})>"
