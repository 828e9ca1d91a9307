"""
PayCore - Loan Schemas
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Literal
from uuid import UUID

from pydantic import BaseModel, Field


LoanStatusEnum = Literal["pending", "approved", "rejected", "active", "completed", "cancelled"]
LoanAmountTypeEnum = Literal["fixed", "percentage"]


# ===========================================
# LOAN TYPES
# ===========================================

class LoanTypeBase(BaseModel):
    """Base loan type schema."""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    amount_type: LoanAmountTypeEnum = "fixed"
    fixed_amount: Optional[Decimal] = Field(None, gt=0)
    max_percentage: Optional[Decimal] = Field(None, gt=0, le=100, description="Percentage of base salary")
    tenure_months: int = Field(..., gt=0, le=120)
    interest_rate: Decimal = Field(default=Decimal("0.00"), ge=0, le=100)
    min_service_months: int = Field(default=0, ge=0)
    max_active_loans: int = Field(default=1, ge=1)
    is_active: bool = True


class LoanTypeCreate(LoanTypeBase):
    """Create loan type request."""
    salary_structure_ids: List[UUID] = Field(
        default_factory=list,
        description="Salary structures whose employees may apply",
    )


class LoanTypeUpdate(BaseModel):
    """Partial loan type update; a given structure list replaces the current one."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    amount_type: Optional[LoanAmountTypeEnum] = None
    fixed_amount: Optional[Decimal] = Field(None, gt=0)
    max_percentage: Optional[Decimal] = Field(None, gt=0, le=100)
    tenure_months: Optional[int] = Field(None, gt=0, le=120)
    interest_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    min_service_months: Optional[int] = Field(None, ge=0)
    max_active_loans: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None
    salary_structure_ids: Optional[List[UUID]] = None


class LoanTypeResponse(LoanTypeBase):
    """Loan type response schema."""
    id: UUID
    amount_type: str
    salary_structure_ids: List[UUID] = []
    created_at: datetime
    updated_at: datetime
    
    class Config:
        from_attributes = True


class EligibleLoanType(BaseModel):
    """A loan type the employee may apply for, with their borrowing cap."""
    loan_type: LoanTypeResponse
    max_amount: Decimal


class EligibleLoanTypesResponse(BaseModel):
    """Loan types open to an employee through their current salary structure."""
    employee_id: UUID
    salary_structure_id: Optional[UUID] = None
    base_salary: Optional[Decimal] = None
    loan_types: List[EligibleLoanType] = []


class MaxEligibleAmountResponse(BaseModel):
    """Borrowing cap and repayment terms of one loan type for one employee."""
    employee_id: UUID
    loan_type_id: UUID
    base_salary: Decimal
    max_amount: Decimal
    tenure_months: int
    interest_rate: Decimal
    total_interest: Decimal
    total_repayment: Decimal
    monthly_repayment: Decimal


# ===========================================
# APPLICATIONS
# ===========================================

class LoanCreate(BaseModel):
    """
    Create loan application request.
    
    With ``loan_type_id`` the type sets tenure and interest and the amount
    is checked against its cap; otherwise ``tenure_months`` is required.
    """
    employee_id: UUID
    loan_type_id: Optional[UUID] = None
    principal_amount: Decimal = Field(..., gt=0)
    interest_rate: Decimal = Field(default=Decimal("0.00"), ge=0, le=100)
    tenure_months: Optional[int] = Field(None, gt=0, le=120)
    reason: Optional[str] = None


class LoanReview(BaseModel):
    """HR review decision on a pending application."""
    approve: bool
    approved_amount: Optional[Decimal] = Field(
        None, gt=0, description="Defaults to the requested amount; may not exceed it",
    )
    remarks: Optional[str] = None


class LoanDisburse(BaseModel):
    """Disburse an approved loan."""
    first_due_date: Optional[date] = Field(
        None, description="Due date of the first installment; defaults to the 1st of next month",
    )


class EarlyRepayment(BaseModel):
    """Repayment made outside payroll."""
    amount: Decimal = Field(..., gt=0)
    remarks: Optional[str] = None


class OverdueMarkResponse(BaseModel):
    """Result of an overdue sweep."""
    as_of: date
    marked: int


class LoanRepaymentResponse(BaseModel):
    """Scheduled installment."""
    id: UUID
    installment_number: int
    due_date: date
    expected_amount: Decimal
    paid_amount: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None
    status: str
    paid_at: Optional[datetime] = None
    payrun_id: Optional[UUID] = None
    payrun_item_id: Optional[UUID] = None
    
    class Config:
        from_attributes = True


class LoanResponse(BaseModel):
    """Loan response schema."""
    id: UUID
    reference_number: str
    employee_id: UUID
    loan_type_id: Optional[UUID] = None
    reason: Optional[str] = None
    principal_amount: Decimal
    approved_amount: Optional[Decimal] = None
    interest_rate: Decimal
    tenure_months: int
    total_amount: Optional[Decimal] = None
    monthly_deduction: Optional[Decimal] = None
    total_repaid: Decimal
    remaining_balance: Decimal
    status: str
    reviewed_by_id: Optional[UUID] = None
    reviewed_at: Optional[datetime] = None
    review_remarks: Optional[str] = None
    disbursed_by_id: Optional[UUID] = None
    disbursed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    
    class Config:
        from_attributes = True


class LoanDetailResponse(LoanResponse):
    """Loan with its repayment schedule."""
    repayments: List[LoanRepaymentResponse] = []
