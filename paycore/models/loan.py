"""
PayCore - Loan Ledger Models

Loan types priced off the base salary, loan applications reviewed by HR
before disbursement, and the ordered repayment schedule that payrun
completion and early repayments settle.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum, UniqueConstraint, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paycore.models.base import BaseModel, AuditMixin

if TYPE_CHECKING:
    from paycore.models.employee import Employee
    from paycore.models.payroll import EmployeeDeduction, SalaryStructure


class LoanAmountType(str, Enum):
    """How a loan type caps the amount an employee may borrow."""
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class LoanStatus(str, Enum):
    """Loan application status."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RepaymentStatus(str, Enum):
    """Installment status."""
    PENDING = "pending"
    PARTIAL = "partial"
    OVERDUE = "overdue"
    PAID = "paid"


class LoanType(BaseModel, AuditMixin):
    """
    Loan product offered to the salary structures linked to it.
    
    FIXED types lend up to ``fixed_amount``; PERCENTAGE types lend up to
    ``max_percentage`` of the employee's current base salary.
    """
    
    __tablename__ = "loan_types"
    
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    amount_type: Mapped[LoanAmountType] = mapped_column(
        SQLEnum(LoanAmountType),
        default=LoanAmountType.FIXED,
        nullable=False,
    )
    fixed_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=True,
    )
    max_percentage: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=5, scale=2),
        nullable=True,
        comment="Percentage of base salary",
    )
    tenure_months: Mapped[int] = mapped_column(Integer, nullable=False)
    interest_rate: Mapped[Decimal] = mapped_column(
        Numeric(precision=5, scale=2),
        default=Decimal("0.00"),
        nullable=False,
        comment="Annual interest rate percentage",
    )
    min_service_months: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_active_loans: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    structure_links: Mapped[List["LoanTypeSalaryStructure"]] = relationship(
        "LoanTypeSalaryStructure",
        back_populates="loan_type",
        cascade="all, delete-orphan",
    )
    
    @property
    def salary_structure_ids(self) -> List[uuid.UUID]:
        return [link.salary_structure_id for link in self.structure_links]
    
    def __repr__(self) -> str:
        return f"<LoanType(id={self.id}, name={self.name})>"


class LoanTypeSalaryStructure(BaseModel):
    """Eligibility link: employees on this structure may apply for the loan type."""
    
    __tablename__ = "loan_type_salary_structures"
    
    loan_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("loan_types.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    salary_structure_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("salary_structures.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    
    loan_type: Mapped["LoanType"] = relationship("LoanType", back_populates="structure_links")
    salary_structure: Mapped["SalaryStructure"] = relationship("SalaryStructure")
    
    __table_args__ = (
        UniqueConstraint("loan_type_id", "salary_structure_id", name="uq_loan_type_salary_structure"),
    )


class LoanApplication(BaseModel, AuditMixin):
    """
    Employee loan with simple-interest amortization.
    
    ``principal_amount`` is what the employee asked for; HR review may
    approve a smaller ``approved_amount``, which is what gets disbursed.
    """
    
    __tablename__ = "loan_applications"
    
    reference_number: Mapped[str] = mapped_column(
        String(50), unique=True, nullable=False,
        comment="Loan reference e.g., LN-2026-0001",
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    loan_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("loan_types.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
        comment="NULL for ad hoc loans with explicit terms",
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    # Loan Amount
    principal_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
        comment="Requested loan amount",
    )
    approved_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=True,
        comment="Amount approved at HR review; never above the request",
    )
    interest_rate: Mapped[Decimal] = mapped_column(
        Numeric(precision=5, scale=2),
        default=Decimal("0.00"),
        nullable=False,
        comment="Annual interest rate percentage",
    )
    tenure_months: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=True,
        comment="Principal + Total Interest, fixed at disbursement",
    )
    
    # Deduction Schedule
    monthly_deduction: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=True,
    )
    
    # Balance Tracking
    total_repaid: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        default=Decimal("0.00"),
        nullable=False,
    )
    remaining_balance: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        default=Decimal("0.00"),
        nullable=False,
    )
    
    status: Mapped[LoanStatus] = mapped_column(
        SQLEnum(LoanStatus),
        default=LoanStatus.PENDING,
        nullable=False,
        index=True,
    )
    
    # HR Review
    reviewed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("employees.id", ondelete="SET NULL"), nullable=True,
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    review_remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    
    disbursed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("employees.id", ondelete="SET NULL"), nullable=True,
    )
    disbursed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    # Relationships
    employee: Mapped["Employee"] = relationship("Employee", foreign_keys=[employee_id])
    loan_type: Mapped[Optional["LoanType"]] = relationship("LoanType")
    repayments: Mapped[List["LoanRepayment"]] = relationship(
        "LoanRepayment",
        back_populates="loan_application",
        cascade="all, delete-orphan",
        order_by="LoanRepayment.installment_number",
    )
    employee_deduction: Mapped[Optional["EmployeeDeduction"]] = relationship(
        "EmployeeDeduction",
        back_populates="loan_application",
        uselist=False,
    )
    
    def __repr__(self) -> str:
        return f"<LoanApplication(id={self.id}, ref={self.reference_number}, status={self.status})>"


class LoanRepayment(BaseModel):
    """One scheduled installment of a loan."""
    
    __tablename__ = "loan_repayments"
    
    loan_application_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("loan_applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    expected_amount: Mapped[Decimal] = mapped_column(Numeric(precision=15, scale=2), nullable=False)
    paid_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=15, scale=2), nullable=True)
    balance_after: Mapped[Optional[Decimal]] = mapped_column(Numeric(precision=15, scale=2), nullable=True)
    
    status: Mapped[RepaymentStatus] = mapped_column(
        SQLEnum(RepaymentStatus),
        default=RepaymentStatus.PENDING,
        nullable=False,
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    # Payrun that settled this installment
    payrun_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("payruns.id", ondelete="SET NULL"), nullable=True,
    )
    payrun_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("payrun_items.id", ondelete="SET NULL"), nullable=True,
    )
    
    loan_application: Mapped["LoanApplication"] = relationship(
        "LoanApplication", back_populates="repayments"
    )
    
    __table_args__ = (
        UniqueConstraint("loan_application_id", "installment_number", name="uq_loan_repayment_installment"),
    )


Index("uq_loan_types_lower_name", func.lower(LoanType.name), unique=True)
