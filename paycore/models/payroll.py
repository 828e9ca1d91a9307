"""
PayCore - Salary Structure and Rate Catalog Models

- SalaryStructure: named base-salary tier
- Allowance / Deduction: reusable percentage-of-base or flat-amount components
- EmployeeSalary: time-ranged assignment of an employee to a structure
- SalaryAllowance / SalaryDeduction: structure-level bindings
- EmployeeAllowance / EmployeeDeduction: direct employee bindings

All bindings are soft-retired through ``effective_to``; a NULL
``effective_to`` marks the currently active row.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid,
    Enum as SQLEnum, func
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paycore.models.base import BaseModel, AuditMixin

if TYPE_CHECKING:
    from paycore.models.employee import Employee
    from paycore.models.loan import LoanApplication


# ===========================================
# ENUMS
# ===========================================

class AllowanceKind(str, Enum):
    """How often an allowance is paid."""
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    BI_ANNUAL = "bi_annual"
    ANNUAL = "annual"
    CUSTOM = "custom"


class DeductionKind(str, Enum):
    """Deduction classification."""
    RECURRING = "recurring"
    ONE_TIME = "one_time"
    STATUTORY = "statutory"
    LOAN = "loan"
    ADVANCE = "advance"


# ===========================================
# SALARY STRUCTURE
# ===========================================

class SalaryStructure(BaseModel, AuditMixin):
    """
    Base-salary tier employees are assigned to.
    
    ``employee_count`` is denormalized; assignment operations recompute it
    from the active EmployeeSalary rows in the same transaction.
    """
    
    __tablename__ = "salary_structures"
    
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    base_salary: Mapped[Decimal] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    employee_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    
    allowance_bindings: Mapped[List["SalaryAllowance"]] = relationship(
        "SalaryAllowance",
        back_populates="salary_structure",
        cascade="all, delete-orphan",
    )
    deduction_bindings: Mapped[List["SalaryDeduction"]] = relationship(
        "SalaryDeduction",
        back_populates="salary_structure",
        cascade="all, delete-orphan",
    )
        
    def __repr__(self) -> str:
        return f"<SalaryStructure(id={self.id}, name={self.name})>"


# ===========================================
# RATE CATALOGS
# ===========================================

class Allowance(BaseModel, AuditMixin):
    """Allowance definition: exactly one of percentage (of base) or flat amount."""
    
    __tablename__ = "allowances"
    
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kind: Mapped[AllowanceKind] = mapped_column(
        SQLEnum(AllowanceKind),
        default=AllowanceKind.MONTHLY,
        nullable=False,
    )
    percentage: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=5, scale=2),
        nullable=True,
        comment="Percentage of base salary",
    )
    amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=True,
        comment="Flat amount",
    )
    is_taxable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tax_percentage: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=5, scale=2),
        nullable=True,
        comment="Tax rate applied to the gross allowance when taxable",
    )
        
    def __repr__(self) -> str:
        return f"<Allowance(id={self.id}, name={self.name})>"


class Deduction(BaseModel, AuditMixin):
    """Deduction definition: exactly one of percentage (of base) or flat amount."""
    
    __tablename__ = "deductions"
    
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kind: Mapped[DeductionKind] = mapped_column(
        SQLEnum(DeductionKind),
        default=DeductionKind.RECURRING,
        nullable=False,
    )
    percentage: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=5, scale=2),
        nullable=True,
    )
    amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=True,
    )
        
    def __repr__(self) -> str:
        return f"<Deduction(id={self.id}, name={self.name})>"


# ===========================================
# ASSIGNMENT
# ===========================================

class EmployeeSalary(BaseModel):
    """Time-ranged assignment of an employee to a salary structure."""
    
    __tablename__ = "employee_salaries"
    
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    salary_structure_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("salary_structures.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_to: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    employee: Mapped["Employee"] = relationship("Employee")
    salary_structure: Mapped["SalaryStructure"] = relationship("SalaryStructure")


class SalaryAllowance(BaseModel):
    """Allowance bound to a salary structure."""
    
    __tablename__ = "salary_allowances"
    
    salary_structure_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("salary_structures.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    allowance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("allowances.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_to: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    salary_structure: Mapped["SalaryStructure"] = relationship(
        "SalaryStructure", back_populates="allowance_bindings"
    )
    allowance: Mapped["Allowance"] = relationship("Allowance")


class SalaryDeduction(BaseModel):
    """Deduction bound to a salary structure."""
    
    __tablename__ = "salary_deductions"
    
    salary_structure_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("salary_structures.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    deduction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("deductions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_to: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    salary_structure: Mapped["SalaryStructure"] = relationship(
        "SalaryStructure", back_populates="deduction_bindings"
    )
    deduction: Mapped["Deduction"] = relationship("Deduction")


class EmployeeAllowance(BaseModel):
    """Allowance bound directly to an employee, bypassing the structure."""
    
    __tablename__ = "employee_allowances"
    
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    allowance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("allowances.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_to: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    allowance: Mapped["Allowance"] = relationship("Allowance")


class EmployeeDeduction(BaseModel, AuditMixin):
    """
    Deduction bound directly to an employee.
    
    Carries its own name and rate so an admin can override a structure
    deduction of the same name. Amortizing items (loans, advances) track
    ``original_amount``/``remaining_amount``; loan-backed rows reference
    their loan application and are settled by payrun completion.
    """
    
    __tablename__ = "employee_deductions"
    
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    deduction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("deductions.id", ondelete="SET NULL"),
        nullable=True,
        comment="Catalog entry this row was created from, if any",
    )
    salary_structure_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("salary_structures.id", ondelete="SET NULL"),
        nullable=True,
    )
    loan_application_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("loan_applications.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[DeductionKind] = mapped_column(
        SQLEnum(DeductionKind),
        default=DeductionKind.RECURRING,
        nullable=False,
    )
    percentage: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=5, scale=2),
        nullable=True,
    )
    amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=True,
    )
    original_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=True,
    )
    remaining_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=15, scale=2),
        nullable=True,
    )
    
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    effective_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    effective_to: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    
    loan_application: Mapped[Optional["LoanApplication"]] = relationship(
        "LoanApplication", back_populates="employee_deduction"
    )


# One open row per employee / per binding. These are what serialize
# concurrent reassignment and duplicate-binding attempts.
Index(
    "uq_employee_salaries_active_employee",
    EmployeeSalary.employee_id,
    unique=True,
    postgresql_where=EmployeeSalary.effective_to.is_(None),
    sqlite_where=EmployeeSalary.effective_to.is_(None),
)
Index(
    "uq_salary_allowances_active_binding",
    SalaryAllowance.salary_structure_id,
    SalaryAllowance.allowance_id,
    unique=True,
    postgresql_where=SalaryAllowance.effective_to.is_(None),
    sqlite_where=SalaryAllowance.effective_to.is_(None),
)
Index(
    "uq_salary_deductions_active_binding",
    SalaryDeduction.salary_structure_id,
    SalaryDeduction.deduction_id,
    unique=True,
    postgresql_where=SalaryDeduction.effective_to.is_(None),
    sqlite_where=SalaryDeduction.effective_to.is_(None),
)
Index(
    "uq_employee_allowances_active_binding",
    EmployeeAllowance.employee_id,
    EmployeeAllowance.allowance_id,
    unique=True,
    postgresql_where=EmployeeAllowance.effective_to.is_(None),
    sqlite_where=EmployeeAllowance.effective_to.is_(None),
)

# Names are unique regardless of case.
Index("uq_salary_structures_lower_name", func.lower(SalaryStructure.name), unique=True)
Index("uq_allowances_lower_name", func.lower(Allowance.name), unique=True)
Index("uq_deductions_lower_name", func.lower(Deduction.name), unique=True)
