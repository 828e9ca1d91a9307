"""
PayCore - Payroll Schemas

Pydantic schemas for rate catalogs, salary structures, assignments,
direct employee bindings and take-home results.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Literal
from uuid import UUID

from pydantic import BaseModel, Field


# ===========================================
# ENUMS AS LITERALS
# ===========================================

AllowanceKindEnum = Literal["one_time", "monthly", "quarterly", "bi_annual", "annual", "custom"]

DeductionKindEnum = Literal["recurring", "one_time", "statutory", "loan", "advance"]


# ===========================================
# ALLOWANCE SCHEMAS
# ===========================================

class AllowanceBase(BaseModel):
    """Base allowance schema."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    kind: AllowanceKindEnum = "monthly"
    percentage: Optional[Decimal] = Field(None, ge=0, le=100, description="Percentage of base salary")
    amount: Optional[Decimal] = Field(None, ge=0, description="Flat amount")
    is_taxable: bool = False
    tax_percentage: Optional[Decimal] = Field(None, ge=0, le=100)


class AllowanceCreate(AllowanceBase):
    """Create allowance request."""
    pass


class AllowanceUpdate(BaseModel):
    """Update allowance request."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    kind: Optional[AllowanceKindEnum] = None
    percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    amount: Optional[Decimal] = Field(None, ge=0)
    is_taxable: Optional[bool] = None
    tax_percentage: Optional[Decimal] = Field(None, ge=0, le=100)


class AllowanceResponse(AllowanceBase):
    """Allowance response schema."""
    id: UUID
    kind: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    
    class Config:
        from_attributes = True


# ===========================================
# DEDUCTION SCHEMAS
# ===========================================

class DeductionBase(BaseModel):
    """Base deduction schema."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    kind: DeductionKindEnum = "recurring"
    percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    amount: Optional[Decimal] = Field(None, ge=0)


class DeductionCreate(DeductionBase):
    """Create deduction request."""
    pass


class DeductionUpdate(BaseModel):
    """Update deduction request."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    kind: Optional[DeductionKindEnum] = None
    percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    amount: Optional[Decimal] = Field(None, ge=0)


class DeductionResponse(DeductionBase):
    """Deduction response schema."""
    id: UUID
    kind: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    
    class Config:
        from_attributes = True


# ===========================================
# SALARY STRUCTURE SCHEMAS
# ===========================================

class SalaryStructureBase(BaseModel):
    """Base salary structure schema."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    base_salary: Decimal = Field(..., gt=0)


class SalaryStructureCreate(SalaryStructureBase):
    """Create salary structure request."""
    pass


class SalaryStructureUpdate(BaseModel):
    """Update salary structure request."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    base_salary: Optional[Decimal] = Field(None, gt=0)


class SalaryStructureStatusUpdate(BaseModel):
    """Activate or deactivate a salary structure."""
    is_active: bool


class SalaryStructureResponse(SalaryStructureBase):
    """Salary structure response schema."""
    id: UUID
    is_active: bool
    employee_count: int
    created_at: datetime
    updated_at: Optional[datetime] = None
    
    class Config:
        from_attributes = True


class StructureAllowanceCreate(BaseModel):
    """Bind an allowance to a structure."""
    allowance_id: UUID


class StructureDeductionCreate(BaseModel):
    """Bind a deduction to a structure."""
    deduction_id: UUID


class SalaryAllowanceResponse(BaseModel):
    """Structure-level allowance binding."""
    id: UUID
    salary_structure_id: UUID
    allowance_id: UUID
    effective_from: datetime
    effective_to: Optional[datetime] = None
    allowance: Optional[AllowanceResponse] = None
    
    class Config:
        from_attributes = True


class SalaryDeductionResponse(BaseModel):
    """Structure-level deduction binding."""
    id: UUID
    salary_structure_id: UUID
    deduction_id: UUID
    effective_from: datetime
    effective_to: Optional[datetime] = None
    deduction: Optional[DeductionResponse] = None
    
    class Config:
        from_attributes = True


# ===========================================
# ASSIGNMENT SCHEMAS
# ===========================================

class EmployeeSalaryAssign(BaseModel):
    """Assign an employee to a salary structure."""
    salary_structure_id: UUID
    effective_from: Optional[datetime] = None


class EmployeeSalaryResponse(BaseModel):
    """Employee salary assignment row."""
    id: UUID
    employee_id: UUID
    salary_structure_id: UUID
    effective_from: datetime
    effective_to: Optional[datetime] = None
    salary_structure: Optional[SalaryStructureResponse] = None
    
    class Config:
        from_attributes = True


class EmployeeSummary(BaseModel):
    """Employee summary used in payroll listings."""
    id: UUID
    staff_number: str
    first_name: str
    last_name: str
    full_name: str
    email: str
    department: Optional[str] = None
    status: str
    
    class Config:
        from_attributes = True


class EmployeePayrollOverview(BaseModel):
    """Employee with their current structure (if any)."""
    employee: EmployeeSummary
    salary_structure_id: Optional[UUID] = None
    salary_structure_name: Optional[str] = None
    base_salary: Optional[Decimal] = None
    effective_from: Optional[datetime] = None


# ===========================================
# DIRECT EMPLOYEE BINDINGS
# ===========================================

class EmployeeAllowanceCreate(BaseModel):
    """Bind an allowance directly to an employee."""
    allowance_id: UUID
    effective_from: Optional[datetime] = None


class EmployeeAllowanceResponse(BaseModel):
    """Direct allowance binding."""
    id: UUID
    employee_id: UUID
    allowance_id: UUID
    effective_from: datetime
    effective_to: Optional[datetime] = None
    allowance: Optional[AllowanceResponse] = None
    
    class Config:
        from_attributes = True


class EmployeeDeductionCreate(BaseModel):
    """Bind a deduction directly to an employee."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    deduction_id: Optional[UUID] = None
    kind: DeductionKindEnum = "recurring"
    percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    amount: Optional[Decimal] = Field(None, ge=0)
    original_amount: Optional[Decimal] = Field(None, gt=0)
    salary_structure_id: Optional[UUID] = None
    effective_from: Optional[datetime] = None


class EmployeeDeductionUpdate(BaseModel):
    """Update a direct employee deduction."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    amount: Optional[Decimal] = Field(None, ge=0)
    remaining_amount: Optional[Decimal] = Field(None, ge=0)


class EmployeeDeductionResponse(BaseModel):
    """Direct employee deduction."""
    id: UUID
    employee_id: UUID
    deduction_id: Optional[UUID] = None
    salary_structure_id: Optional[UUID] = None
    loan_application_id: Optional[UUID] = None
    name: str
    kind: str
    percentage: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    original_amount: Optional[Decimal] = None
    remaining_amount: Optional[Decimal] = None
    is_active: bool
    effective_from: datetime
    effective_to: Optional[datetime] = None
    
    class Config:
        from_attributes = True


# ===========================================
# TAKE-HOME
# ===========================================

class AllowanceLineResponse(BaseModel):
    allowance_id: Optional[UUID] = None
    name: str
    source: str
    gross_value: Decimal
    tax_amount: Decimal
    net_value: Decimal
    
    class Config:
        from_attributes = True


class DeductionLineResponse(BaseModel):
    name: str
    source: str
    value: Decimal
    deduction_id: Optional[UUID] = None
    employee_deduction_id: Optional[UUID] = None
    
    class Config:
        from_attributes = True


class LoanLineResponse(BaseModel):
    loan_application_id: UUID
    reference_number: str
    installment: Decimal
    remaining_before: Decimal
    remaining_after: Decimal
    
    class Config:
        from_attributes = True


class TakeHomeResponse(BaseModel):
    """Itemized take-home pay."""
    employee_id: Optional[UUID] = None
    salary_structure_id: Optional[UUID] = None
    salary_structure_name: Optional[str] = None
    base_salary: Decimal
    allowances: List[AllowanceLineResponse] = []
    deductions: List[DeductionLineResponse] = []
    loans: List[LoanLineResponse] = []
    total_gross_allowances: Decimal
    total_net_allowances: Decimal
    total_allowance_tax: Decimal
    total_deductions: Decimal
    total_loan_installments: Decimal
    taxable_income: Decimal
    gross_pay: Decimal
    net_pay: Decimal
    
    class Config:
        from_attributes = True
