"""
PayCore - Loan Router

Loan types and eligibility, loan applications with HR review,
disbursement, early repayment and repayment schedules.
"""

import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.database import get_async_session
from paycore.dependencies import require_admin
from paycore.models.employee import Employee
from paycore.schemas.loan import (
    EarlyRepayment,
    EligibleLoanType,
    EligibleLoanTypesResponse,
    LoanCreate,
    LoanDetailResponse,
    LoanDisburse,
    LoanRepaymentResponse,
    LoanResponse,
    LoanReview,
    LoanStatusEnum,
    LoanTypeCreate,
    LoanTypeResponse,
    LoanTypeUpdate,
    MaxEligibleAmountResponse,
    OverdueMarkResponse,
)
from paycore.services.loan_service import LoanService


router = APIRouter()


# ===========================================
# LOAN TYPES
# ===========================================

@router.post(
    "/loan-types",
    response_model=LoanTypeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a loan type",
)
async def create_loan_type(
    data: LoanTypeCreate,
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    loan_type = await service.create_loan_type(data.model_dump(), created_by_id=current_user.id)
    return LoanTypeResponse.model_validate(loan_type)


@router.get(
    "/loan-types",
    response_model=List[LoanTypeResponse],
    summary="List loan types",
)
async def list_loan_types(
    active_only: bool = Query(False),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    loan_types = await service.list_loan_types(active_only=active_only)
    return [LoanTypeResponse.model_validate(t) for t in loan_types]


@router.get(
    "/loan-types/{loan_type_id}",
    response_model=LoanTypeResponse,
    summary="Get a loan type",
)
async def get_loan_type(
    loan_type_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    return LoanTypeResponse.model_validate(await service.get_loan_type(loan_type_id))


@router.patch(
    "/loan-types/{loan_type_id}",
    response_model=LoanTypeResponse,
    summary="Update a loan type",
    description="Only the fields sent are changed. A salary_structure_ids list replaces the eligibility links.",
)
async def update_loan_type(
    data: LoanTypeUpdate,
    loan_type_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    loan_type = await service.update_loan_type(
        loan_type_id, data.model_dump(exclude_unset=True), updated_by_id=current_user.id
    )
    return LoanTypeResponse.model_validate(loan_type)


@router.delete(
    "/loan-types/{loan_type_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a loan type with no applications",
)
async def delete_loan_type(
    loan_type_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    await service.delete_loan_type(loan_type_id, deleted_by_id=current_user.id)


@router.get(
    "/loan-types/{loan_type_id}/max-amount",
    response_model=MaxEligibleAmountResponse,
    summary="Maximum loan amount for an employee",
    description="Priced off the employee's current base salary, with the resulting repayment terms.",
)
async def calculate_max_eligible_amount(
    loan_type_id: uuid.UUID = Path(...),
    employee_id: uuid.UUID = Query(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    return MaxEligibleAmountResponse(**await service.calculate_max_eligible_amount(employee_id, loan_type_id))


@router.get(
    "/employees/{employee_id}/eligible-loan-types",
    response_model=EligibleLoanTypesResponse,
    summary="Loan types open to an employee",
)
async def get_eligible_loan_types(
    employee_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    eligible = await service.get_eligible_loan_types(employee_id)
    return EligibleLoanTypesResponse(
        employee_id=eligible["employee_id"],
        salary_structure_id=eligible["salary_structure_id"],
        base_salary=eligible["base_salary"],
        loan_types=[
            EligibleLoanType(
                loan_type=LoanTypeResponse.model_validate(entry["loan_type"]),
                max_amount=entry["max_amount"],
            )
            for entry in eligible["loan_types"]
        ],
    )


# ===========================================
# APPLICATIONS
# ===========================================

@router.post(
    "/loans",
    response_model=LoanResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a loan application",
)
async def create_loan_application(
    data: LoanCreate,
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    loan = await service.create_loan_application(data.model_dump(), created_by_id=current_user.id)
    return LoanResponse.model_validate(loan)


@router.get(
    "/loans",
    response_model=List[LoanResponse],
    summary="List loans",
)
async def list_loans(
    status_filter: Optional[LoanStatusEnum] = Query(None, alias="status"),
    employee_id: Optional[uuid.UUID] = Query(None),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    loans = await service.list_loans(status=status_filter, employee_id=employee_id)
    return [LoanResponse.model_validate(loan) for loan in loans]


@router.get(
    "/loans/{loan_id}",
    response_model=LoanDetailResponse,
    summary="Get a loan with its repayment schedule",
)
async def get_loan(
    loan_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    return LoanDetailResponse.model_validate(await service.get_loan(loan_id))


@router.post(
    "/loans/{loan_id}/review",
    response_model=LoanResponse,
    summary="Approve or reject a pending loan application",
    description="An approved amount may be lower than the request but never higher.",
)
async def review_loan(
    data: LoanReview,
    loan_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    loan = await service.review_loan(
        loan_id,
        approve=data.approve,
        approved_amount=data.approved_amount,
        remarks=data.remarks,
        reviewed_by_id=current_user.id,
    )
    return LoanResponse.model_validate(loan)


@router.post(
    "/loans/{loan_id}/disburse",
    response_model=LoanDetailResponse,
    summary="Disburse a loan",
    description="Approved loans only. Fixes the repayment schedule and starts monthly payroll deductions.",
)
async def disburse_loan(
    loan_id: uuid.UUID = Path(...),
    data: Optional[LoanDisburse] = Body(None),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    loan = await service.disburse_loan(
        loan_id,
        disbursed_by_id=current_user.id,
        first_due_date=data.first_due_date if data else None,
    )
    return LoanDetailResponse.model_validate(loan)


@router.post(
    "/loans/{loan_id}/cancel",
    response_model=LoanResponse,
    summary="Cancel a pending or approved loan application",
)
async def cancel_loan_application(
    loan_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    loan = await service.cancel_loan_application(loan_id, cancelled_by_id=current_user.id)
    return LoanResponse.model_validate(loan)


@router.get(
    "/loans/{loan_id}/schedule",
    response_model=List[LoanRepaymentResponse],
    summary="Get a loan's repayment schedule",
)
async def get_repayment_schedule(
    loan_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    repayments = await service.get_repayment_schedule(loan_id)
    return [LoanRepaymentResponse.model_validate(r) for r in repayments]


@router.post(
    "/loans/{loan_id}/repay",
    response_model=LoanDetailResponse,
    summary="Record an early repayment",
    description=(
        "Pays open installments in schedule order, at most the remaining balance. "
        "Repaying the whole balance completes the loan."
    ),
)
async def make_early_repayment(
    data: EarlyRepayment,
    loan_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    loan = await service.make_early_repayment(
        loan_id, data.amount, paid_by_id=current_user.id, remarks=data.remarks
    )
    return LoanDetailResponse.model_validate(loan)


@router.post(
    "/loans/repayments/mark-overdue",
    response_model=OverdueMarkResponse,
    summary="Flag past-due installments as overdue",
)
async def mark_overdue_repayments(
    as_of: Optional[date] = Query(None, description="Defaults to today"),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = LoanService(db)
    as_of = as_of or date.today()
    marked = await service.mark_overdue_repayments(as_of)
    return OverdueMarkResponse(as_of=as_of, marked=marked)
