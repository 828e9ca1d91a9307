"""
PayCore - Payrun Router

Generate payruns and drive them through approve, complete and rollback.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.database import get_async_session
from paycore.dependencies import require_admin
from paycore.models.employee import Employee
from paycore.schemas.payrun import (
    PayrunDetailResponse,
    PayrunGenerate,
    PayrunItemResponse,
    PayrunResponse,
    PayrunStatusEnum,
    PayrunTypeEnum,
)
from paycore.services.payrun_lifecycle import PayrunLifecycleService
from paycore.services.payrun_service import PayrunService


router = APIRouter()


@router.post(
    "/payruns",
    response_model=PayrunResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Generate a payrun",
    description="Snapshot take-home pay for every eligible employee into a draft payrun. "
                "Only one payrun may exist per period, type and allowance.",
)
async def generate_payrun(
    data: PayrunGenerate,
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = PayrunService(db)
    payrun = await service.generate_payrun(
        payrun_type=data.payrun_type,
        year=data.year,
        month=data.month,
        day=data.day,
        allowance_id=data.allowance_id,
        generated_by_id=current_user.id,
    )
    return PayrunResponse.model_validate(payrun)


@router.get(
    "/payruns",
    response_model=List[PayrunResponse],
    summary="List payruns",
)
async def list_payruns(
    status_filter: Optional[List[PayrunStatusEnum]] = Query(None, alias="status"),
    payrun_type: Optional[PayrunTypeEnum] = Query(None),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = PayrunService(db)
    payruns = await service.list_payruns(statuses=status_filter, payrun_type=payrun_type, year=year)
    return [PayrunResponse.model_validate(p) for p in payruns]


@router.get(
    "/payruns/disbursable",
    response_model=List[PayrunResponse],
    summary="List approved and paid payruns",
)
async def list_disbursable_payruns(
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = PayrunService(db)
    payruns = await service.list_disbursable_payruns()
    return [PayrunResponse.model_validate(p) for p in payruns]


@router.get(
    "/payruns/{payrun_id}",
    response_model=PayrunDetailResponse,
    summary="Get a payrun with its items",
)
async def get_payrun(
    payrun_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = PayrunService(db)
    payrun = await service.get_payrun(payrun_id, with_items=True)
    return PayrunDetailResponse.model_validate(payrun)


@router.post(
    "/payruns/{payrun_id}/approve",
    response_model=PayrunResponse,
    summary="Approve a payrun",
)
async def approve_payrun(
    payrun_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = PayrunLifecycleService(db)
    payrun = await service.approve_payrun(payrun_id, approved_by_id=current_user.id)
    return PayrunResponse.model_validate(payrun)


@router.post(
    "/payruns/{payrun_id}/complete",
    response_model=PayrunResponse,
    summary="Mark a payrun as paid",
    description="Only approved payruns can be completed. Settles one installment "
                "of every loan charged in the payrun.",
)
async def complete_payrun(
    payrun_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = PayrunLifecycleService(db)
    payrun = await service.complete_payrun(payrun_id, completed_by_id=current_user.id)
    return PayrunResponse.model_validate(payrun)


@router.delete(
    "/payruns/{payrun_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Roll back a payrun",
    description="Deletes an unpaid payrun together with its items.",
)
async def rollback_payrun(
    payrun_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = PayrunLifecycleService(db)
    await service.rollback_payrun(payrun_id, rolled_back_by_id=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/employees/{employee_id}/payrun-items",
    response_model=List[PayrunItemResponse],
    summary="List an employee's payrun items",
)
async def get_employee_payrun_items(
    employee_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = PayrunService(db)
    items = await service.get_employee_payrun_items(employee_id)
    return [PayrunItemResponse.model_validate(i) for i in items]
