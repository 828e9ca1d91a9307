"""
PayCore - Payrun Schemas
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Literal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


PayrunTypeEnum = Literal["salary", "allowance"]

PayrunStatusEnum = Literal["draft", "pending", "approved", "paid"]


class PayrunGenerate(BaseModel):
    """Generate a payrun for a period."""
    payrun_type: PayrunTypeEnum = "salary"
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    day: Optional[int] = Field(None, ge=1, le=31)
    allowance_id: Optional[UUID] = None
    
    @model_validator(mode="after")
    def check_allowance_target(self):
        if self.payrun_type == "allowance" and self.allowance_id is None:
            raise ValueError("allowance_id is required for allowance payruns")
        if self.payrun_type == "salary" and self.allowance_id is not None:
            raise ValueError("allowance_id is only valid for allowance payruns")
        return self


class PayrunItemDetailResponse(BaseModel):
    """One line on a payrun item."""
    id: UUID
    detail_type: str
    description: str
    amount: Decimal
    allowance_id: Optional[UUID] = None
    deduction_id: Optional[UUID] = None
    employee_deduction_id: Optional[UUID] = None
    loan_application_id: Optional[UUID] = None
    original_amount: Optional[Decimal] = None
    remaining_amount: Optional[Decimal] = None
    
    class Config:
        from_attributes = True


class PayrunItemResponse(BaseModel):
    """Per-employee payrun item."""
    id: UUID
    employee_id: UUID
    base_salary: Decimal
    total_allowances: Decimal
    total_deductions: Decimal
    total_taxes: Decimal
    gross_pay: Decimal
    taxable_income: Decimal
    net_pay: Decimal
    status: str
    details: List[PayrunItemDetailResponse] = []
    
    class Config:
        from_attributes = True


class PayrunResponse(BaseModel):
    """Payrun summary."""
    id: UUID
    name: str
    payrun_type: str
    allowance_id: Optional[UUID] = None
    year: int
    month: int
    day: int
    total_employees: int
    total_gross_pay: Decimal
    total_deductions: Decimal
    total_net_pay: Decimal
    status: str
    generated_by_id: Optional[UUID] = None
    approved_by_id: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    completed_by_id: Optional[UUID] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    
    class Config:
        from_attributes = True


class PayrunDetailResponse(PayrunResponse):
    """Payrun with items and their lines."""
    items: List[PayrunItemResponse] = []
