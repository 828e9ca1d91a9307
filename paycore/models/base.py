"""
PayCore - Base Model

Every payroll table gets a UUID key plus server-side created/updated
timestamps. Rows that an admin creates or edits also carry AuditMixin.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from paycore.database import Base


class AuditMixin:
    """Actor columns; the matching audit_logs row holds the detail."""

    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    updated_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)


class BaseModel(Base):
    """Abstract base for all PayCore tables."""

    __abstract__ = True
    # async sessions cannot lazy-load server defaults after flush
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False,
    )

    def __repr__(self) -> str:
        return f"<{type(self).__name__}(id={self.id})>"
