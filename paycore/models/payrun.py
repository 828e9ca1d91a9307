"""
PayCore - Payrun Models

A Payrun is the persisted snapshot of one batch computation:
- Payrun: period, type, rolled-up totals and lifecycle stamps
- PayrunItem: one row per employee
- PayrunItemDetail: one signed row per contributing line; the details of
  an item sum to its net pay
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import (
    DateTime, ForeignKey, Index, Integer, Numeric, String, Uuid,
    Enum as SQLEnum, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paycore.models.base import BaseModel

if TYPE_CHECKING:
    from paycore.models.employee import Employee
    from paycore.models.payroll import Allowance


# ===========================================
# ENUMS
# ===========================================

class PayrunType(str, Enum):
    """Full salary run or a single-allowance run."""
    SALARY = "salary"
    ALLOWANCE = "allowance"


class PayrunStatus(str, Enum):
    """Payrun lifecycle states."""
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"


class PayrunDetailType(str, Enum):
    """Kind of line on a payrun item."""
    BASE_SALARY = "base_salary"
    ALLOWANCE = "allowance"
    TAX = "tax"
    DEDUCTION = "deduction"
    LOAN = "loan"


# ===========================================
# PAYRUN
# ===========================================

class Payrun(BaseModel):
    """One batch payroll computation for a period."""
    
    __tablename__ = "payruns"
    
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    payrun_type: Mapped[PayrunType] = mapped_column(
        SQLEnum(PayrunType),
        nullable=False,
    )
    allowance_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("allowances.id", ondelete="RESTRICT"),
        nullable=True,
        comment="Set only for allowance runs",
    )
    
    # Period
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    day: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    
    # Totals
    total_employees: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_gross_pay: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2), default=Decimal("0.00"), nullable=False,
    )
    total_deductions: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2), default=Decimal("0.00"), nullable=False,
        comment="Deductions + loan installments + allowance taxes",
    )
    total_net_pay: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2), default=Decimal("0.00"), nullable=False,
    )
    
    # Status
    status: Mapped[PayrunStatus] = mapped_column(
        SQLEnum(PayrunStatus),
        default=PayrunStatus.DRAFT,
        nullable=False,
        index=True,
    )
    
    generated_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("employees.id", ondelete="SET NULL"), nullable=True,
    )
    approved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("employees.id", ondelete="SET NULL"), nullable=True,
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("employees.id", ondelete="SET NULL"), nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    # Relationships
    allowance: Mapped[Optional["Allowance"]] = relationship("Allowance")
    items: Mapped[List["PayrunItem"]] = relationship(
        "PayrunItem",
        back_populates="payrun",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    
    @property
    def period_label(self) -> str:
        return f"{self.year}-{self.month:02d}-{self.day:02d}"
    
    def __repr__(self) -> str:
        return f"<Payrun(id={self.id}, name={self.name}, status={self.status})>"


class PayrunItem(BaseModel):
    """Per-employee summary within a payrun."""
    
    __tablename__ = "payrun_items"
    
    payrun_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payruns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    
    base_salary: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    total_allowances: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    total_deductions: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2), nullable=False,
        comment="Deductions + loan installments",
    )
    total_taxes: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    gross_pay: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    taxable_income: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    net_pay: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    
    status: Mapped[PayrunStatus] = mapped_column(
        SQLEnum(PayrunStatus),
        default=PayrunStatus.DRAFT,
        nullable=False,
    )
    
    payrun: Mapped["Payrun"] = relationship("Payrun", back_populates="items")
    employee: Mapped["Employee"] = relationship("Employee")
    details: Mapped[List["PayrunItemDetail"]] = relationship(
        "PayrunItemDetail",
        back_populates="payrun_item",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    
    __table_args__ = (
        UniqueConstraint("payrun_id", "employee_id", name="uq_payrun_item_employee"),
    )


class PayrunItemDetail(BaseModel):
    """
    One line on a payrun item.
    
    Deductions, taxes and loan installments are stored negative. Loan lines
    carry the installment as ``original_amount`` and the balance after it as
    ``remaining_amount``.
    """
    
    __tablename__ = "payrun_item_details"
    
    payrun_item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payrun_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    detail_type: Mapped[PayrunDetailType] = mapped_column(
        SQLEnum(PayrunDetailType),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    
    allowance_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    deduction_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    employee_deduction_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    loan_application_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("loan_applications.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    original_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=15, scale=2), nullable=True)
    remaining_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=15, scale=2), nullable=True)
    
    payrun_item: Mapped["PayrunItem"] = relationship("PayrunItem", back_populates="details")


# Postgres treats NULLs as distinct in unique indexes, so salary runs
# (no allowance) and allowance runs get separate partial indexes.
Index(
    "uq_payruns_salary_period",
    Payrun.year, Payrun.month, Payrun.day, Payrun.payrun_type,
    unique=True,
    postgresql_where=Payrun.allowance_id.is_(None),
    sqlite_where=Payrun.allowance_id.is_(None),
)
Index(
    "uq_payruns_allowance_period",
    Payrun.year, Payrun.month, Payrun.day, Payrun.payrun_type, Payrun.allowance_id,
    unique=True,
    postgresql_where=Payrun.allowance_id.isnot(None),
    sqlite_where=Payrun.allowance_id.isnot(None),
)
