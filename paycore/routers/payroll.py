"""
PayCore - Payroll Router

API endpoints for rate catalogs, salary structures, employee assignment,
direct employee bindings and take-home pay. Admin only.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.database import get_async_session
from paycore.dependencies import require_admin
from paycore.models.employee import Employee
from paycore.schemas.payroll import (
    # Catalog schemas
    AllowanceCreate,
    AllowanceKindEnum,
    AllowanceResponse,
    AllowanceUpdate,
    DeductionCreate,
    DeductionResponse,
    DeductionUpdate,
    # Structure schemas
    SalaryStructureCreate,
    SalaryStructureResponse,
    SalaryStructureStatusUpdate,
    SalaryStructureUpdate,
    StructureAllowanceCreate,
    StructureDeductionCreate,
    SalaryAllowanceResponse,
    SalaryDeductionResponse,
    # Assignment schemas
    EmployeeSalaryAssign,
    EmployeeSalaryResponse,
    EmployeeSummary,
    EmployeePayrollOverview,
    # Direct bindings
    EmployeeAllowanceCreate,
    EmployeeAllowanceResponse,
    EmployeeDeductionCreate,
    EmployeeDeductionResponse,
    EmployeeDeductionUpdate,
    # Take-home
    TakeHomeResponse,
)
from paycore.services.employee_payroll_service import EmployeePayrollService
from paycore.services.rate_catalog_service import RateCatalogService
from paycore.services.salary_structure_service import SalaryStructureService
from paycore.services.take_home_service import TakeHomeService


router = APIRouter()


# ===========================================
# SALARY STRUCTURE ENDPOINTS
# ===========================================

@router.post(
    "/structures",
    response_model=SalaryStructureResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a salary structure",
    description="Create a named salary structure with a positive monthly base salary.",
)
async def create_structure(
    data: SalaryStructureCreate,
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    structure = await service.create_structure(data.model_dump(), created_by_id=current_user.id)
    return SalaryStructureResponse.model_validate(structure)


@router.get(
    "/structures",
    response_model=List[SalaryStructureResponse],
    summary="List salary structures",
)
async def list_structures(
    active_only: bool = Query(False),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    structures = await service.list_structures(active_only=active_only)
    return [SalaryStructureResponse.model_validate(s) for s in structures]


@router.get(
    "/structures/{structure_id}",
    response_model=SalaryStructureResponse,
    summary="Get a salary structure",
)
async def get_structure(
    structure_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    return SalaryStructureResponse.model_validate(await service.get_structure(structure_id))


@router.patch(
    "/structures/{structure_id}",
    response_model=SalaryStructureResponse,
    summary="Update a salary structure",
)
async def update_structure(
    data: SalaryStructureUpdate,
    structure_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    structure = await service.update_structure(
        structure_id,
        data.model_dump(exclude_unset=True),
        updated_by_id=current_user.id,
    )
    return SalaryStructureResponse.model_validate(structure)


@router.patch(
    "/structures/{structure_id}/status",
    response_model=SalaryStructureResponse,
    summary="Activate or deactivate a salary structure",
    description="A structure with employees assigned cannot be deactivated.",
)
async def set_structure_status(
    data: SalaryStructureStatusUpdate,
    structure_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    structure = await service.set_structure_status(
        structure_id,
        data.is_active,
        updated_by_id=current_user.id,
    )
    return SalaryStructureResponse.model_validate(structure)


@router.get(
    "/structures/{structure_id}/employees",
    response_model=List[EmployeeSummary],
    summary="List employees assigned to a structure",
)
async def list_structure_employees(
    structure_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    employees = await service.list_structure_employees(structure_id)
    return [EmployeeSummary.model_validate(e) for e in employees]


# ===========================================
# STRUCTURE BINDING ENDPOINTS
# ===========================================

@router.get(
    "/structures/{structure_id}/allowances",
    response_model=List[SalaryAllowanceResponse],
    summary="List allowances bound to a structure",
)
async def list_structure_allowances(
    structure_id: uuid.UUID = Path(...),
    active_only: bool = Query(True),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    bindings = await service.list_structure_allowances(structure_id, active_only=active_only)
    return [SalaryAllowanceResponse.model_validate(b) for b in bindings]


@router.post(
    "/structures/{structure_id}/allowances",
    response_model=SalaryAllowanceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Bind an allowance to a structure",
)
async def add_structure_allowance(
    data: StructureAllowanceCreate,
    structure_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    binding = await service.add_allowance_to_structure(
        structure_id,
        data.allowance_id,
        added_by_id=current_user.id,
    )
    return SalaryAllowanceResponse.model_validate(binding)


@router.delete(
    "/structures/{structure_id}/allowances/{allowance_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove an allowance from a structure",
)
async def remove_structure_allowance(
    structure_id: uuid.UUID = Path(...),
    allowance_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    await service.remove_allowance_from_structure(structure_id, allowance_id, removed_by_id=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/structures/{structure_id}/deductions",
    response_model=List[SalaryDeductionResponse],
    summary="List deductions bound to a structure",
)
async def list_structure_deductions(
    structure_id: uuid.UUID = Path(...),
    active_only: bool = Query(True),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    bindings = await service.list_structure_deductions(structure_id, active_only=active_only)
    return [SalaryDeductionResponse.model_validate(b) for b in bindings]


@router.post(
    "/structures/{structure_id}/deductions",
    response_model=SalaryDeductionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Bind a deduction to a structure",
)
async def add_structure_deduction(
    data: StructureDeductionCreate,
    structure_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    binding = await service.add_deduction_to_structure(
        structure_id,
        data.deduction_id,
        added_by_id=current_user.id,
    )
    return SalaryDeductionResponse.model_validate(binding)


@router.delete(
    "/structures/{structure_id}/deductions/{deduction_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a deduction from a structure",
)
async def remove_structure_deduction(
    structure_id: uuid.UUID = Path(...),
    deduction_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    await service.remove_deduction_from_structure(structure_id, deduction_id, removed_by_id=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ===========================================
# EMPLOYEE ASSIGNMENT ENDPOINTS
# ===========================================

@router.get(
    "/employees",
    response_model=List[EmployeePayrollOverview],
    summary="List employees with their current structure",
)
async def list_employees_with_payroll(
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    rows = await service.list_employees_with_payroll()
    return [
        EmployeePayrollOverview(
            employee=EmployeeSummary.model_validate(row["employee"]),
            salary_structure_id=row["salary_structure_id"],
            salary_structure_name=row["salary_structure_name"],
            base_salary=row["base_salary"],
            effective_from=row["effective_from"],
        )
        for row in rows
    ]


@router.post(
    "/employees/{employee_id}/salary",
    response_model=EmployeeSalaryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Assign an employee to a salary structure",
    description="Closes the employee's current assignment, if any, and opens a new one.",
)
async def assign_employee(
    data: EmployeeSalaryAssign,
    employee_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    assignment = await service.assign_employee(
        employee_id,
        data.salary_structure_id,
        effective_from=data.effective_from,
        assigned_by_id=current_user.id,
    )
    return EmployeeSalaryResponse.model_validate(assignment)


@router.get(
    "/employees/{employee_id}/salary",
    response_model=Optional[EmployeeSalaryResponse],
    summary="Get an employee's current assignment",
)
async def get_current_assignment(
    employee_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    assignment = await service.get_current_assignment(employee_id)
    return EmployeeSalaryResponse.model_validate(assignment) if assignment else None


@router.delete(
    "/employees/{employee_id}/salary",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove an employee from their salary structure",
)
async def remove_employee_from_structure(
    employee_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    await service.remove_employee_from_structure(employee_id, removed_by_id=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/employees/{employee_id}/salary/history",
    response_model=List[EmployeeSalaryResponse],
    summary="Get an employee's assignment history",
)
async def get_salary_history(
    employee_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = SalaryStructureService(db)
    history = await service.get_salary_history(employee_id)
    return [EmployeeSalaryResponse.model_validate(h) for h in history]


@router.get(
    "/employees/{employee_id}/take-home",
    response_model=TakeHomeResponse,
    summary="Calculate take-home pay",
    description=(
        "Itemized take-home pay from the employee's current bindings. "
        "Employees without an assignment get a zero result. "
        "A direct employee deduction overrides the structure deduction with the same name; "
        "names are compared case-insensitively after collapsing runs of whitespace, "
        "so 'Pension  Fund' overrides 'pension fund'."
    ),
)
async def calculate_take_home(
    employee_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = TakeHomeService(db)
    result = await service.calculate(employee_id)
    return TakeHomeResponse.model_validate(result)


# ===========================================
# DIRECT EMPLOYEE BINDING ENDPOINTS
# ===========================================

@router.get(
    "/employees/{employee_id}/allowances",
    response_model=List[EmployeeAllowanceResponse],
    summary="List allowances bound directly to an employee",
)
async def list_employee_allowances(
    employee_id: uuid.UUID = Path(...),
    active_only: bool = Query(True),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = EmployeePayrollService(db)
    bindings = await service.list_employee_allowances(employee_id, active_only=active_only)
    return [EmployeeAllowanceResponse.model_validate(b) for b in bindings]


@router.post(
    "/employees/{employee_id}/allowances",
    response_model=EmployeeAllowanceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Bind an allowance directly to an employee",
)
async def add_employee_allowance(
    data: EmployeeAllowanceCreate,
    employee_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = EmployeePayrollService(db)
    binding = await service.add_allowance_to_employee(
        employee_id,
        data.allowance_id,
        effective_from=data.effective_from,
        added_by_id=current_user.id,
    )
    return EmployeeAllowanceResponse.model_validate(binding)


@router.delete(
    "/employees/{employee_id}/allowances/{allowance_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a direct allowance from an employee",
)
async def remove_employee_allowance(
    employee_id: uuid.UUID = Path(...),
    allowance_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = EmployeePayrollService(db)
    await service.remove_allowance_from_employee(employee_id, allowance_id, removed_by_id=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/employees/{employee_id}/deductions",
    response_model=List[EmployeeDeductionResponse],
    summary="List deductions bound directly to an employee",
)
async def list_employee_deductions(
    employee_id: uuid.UUID = Path(...),
    active_only: bool = Query(True),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = EmployeePayrollService(db)
    deductions = await service.list_employee_deductions(employee_id, active_only=active_only)
    return [EmployeeDeductionResponse.model_validate(d) for d in deductions]


@router.post(
    "/employees/{employee_id}/deductions",
    response_model=EmployeeDeductionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Bind a deduction directly to an employee",
    description="Overrides a structure deduction with the same name, compared case-insensitively "
                "with whitespace collapsed. Loan deductions are created by disbursing a loan.",
)
async def add_employee_deduction(
    data: EmployeeDeductionCreate,
    employee_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = EmployeePayrollService(db)
    deduction = await service.add_deduction_to_employee(
        employee_id,
        data.model_dump(exclude_unset=True),
        added_by_id=current_user.id,
    )
    return EmployeeDeductionResponse.model_validate(deduction)


@router.patch(
    "/employee-deductions/{employee_deduction_id}",
    response_model=EmployeeDeductionResponse,
    summary="Update a direct employee deduction",
)
async def update_employee_deduction(
    data: EmployeeDeductionUpdate,
    employee_deduction_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = EmployeePayrollService(db)
    deduction = await service.update_employee_deduction(
        employee_deduction_id,
        data.model_dump(exclude_unset=True),
        updated_by_id=current_user.id,
    )
    return EmployeeDeductionResponse.model_validate(deduction)


@router.post(
    "/employee-deductions/{employee_deduction_id}/deactivate",
    response_model=EmployeeDeductionResponse,
    summary="Deactivate a direct employee deduction",
)
async def deactivate_employee_deduction(
    employee_deduction_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = EmployeePayrollService(db)
    deduction = await service.deactivate_employee_deduction(
        employee_deduction_id,
        deactivated_by_id=current_user.id,
    )
    return EmployeeDeductionResponse.model_validate(deduction)


# ===========================================
# ALLOWANCE CATALOG ENDPOINTS
# ===========================================

@router.post(
    "/allowances",
    response_model=AllowanceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an allowance",
    description="Exactly one of percentage (of base salary) or amount must be set. "
                "Taxable allowances need a tax percentage.",
)
async def create_allowance(
    data: AllowanceCreate,
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = RateCatalogService(db)
    allowance = await service.create_allowance(data.model_dump(), created_by_id=current_user.id)
    return AllowanceResponse.model_validate(allowance)


@router.get(
    "/allowances",
    response_model=List[AllowanceResponse],
    summary="List allowances",
)
async def list_allowances(
    kind: Optional[AllowanceKindEnum] = Query(None),
    exclude_one_time: bool = Query(False),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = RateCatalogService(db)
    allowances = await service.list_allowances(kind=kind, exclude_one_time=exclude_one_time)
    return [AllowanceResponse.model_validate(a) for a in allowances]


@router.get(
    "/allowances/{allowance_id}",
    response_model=AllowanceResponse,
    summary="Get an allowance",
)
async def get_allowance(
    allowance_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = RateCatalogService(db)
    return AllowanceResponse.model_validate(await service.get_allowance(allowance_id))


@router.patch(
    "/allowances/{allowance_id}",
    response_model=AllowanceResponse,
    summary="Update an allowance",
)
async def update_allowance(
    data: AllowanceUpdate,
    allowance_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = RateCatalogService(db)
    allowance = await service.update_allowance(
        allowance_id,
        data.model_dump(exclude_unset=True),
        updated_by_id=current_user.id,
    )
    return AllowanceResponse.model_validate(allowance)


@router.delete(
    "/allowances/{allowance_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an allowance",
    description="Rejected while the allowance is bound or referenced by a payrun.",
)
async def delete_allowance(
    allowance_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = RateCatalogService(db)
    await service.delete_allowance(allowance_id, deleted_by_id=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ===========================================
# DEDUCTION CATALOG ENDPOINTS
# ===========================================

@router.post(
    "/deductions",
    response_model=DeductionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a deduction",
)
async def create_deduction(
    data: DeductionCreate,
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = RateCatalogService(db)
    deduction = await service.create_deduction(data.model_dump(), created_by_id=current_user.id)
    return DeductionResponse.model_validate(deduction)


@router.get(
    "/deductions",
    response_model=List[DeductionResponse],
    summary="List deductions",
)
async def list_deductions(
    recurring_only: bool = Query(False),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = RateCatalogService(db)
    deductions = await service.list_deductions(recurring_only=recurring_only)
    return [DeductionResponse.model_validate(d) for d in deductions]


@router.get(
    "/deductions/{deduction_id}",
    response_model=DeductionResponse,
    summary="Get a deduction",
)
async def get_deduction(
    deduction_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = RateCatalogService(db)
    return DeductionResponse.model_validate(await service.get_deduction(deduction_id))


@router.patch(
    "/deductions/{deduction_id}",
    response_model=DeductionResponse,
    summary="Update a deduction",
)
async def update_deduction(
    data: DeductionUpdate,
    deduction_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = RateCatalogService(db)
    deduction = await service.update_deduction(
        deduction_id,
        data.model_dump(exclude_unset=True),
        updated_by_id=current_user.id,
    )
    return DeductionResponse.model_validate(deduction)


@router.delete(
    "/deductions/{deduction_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a deduction",
    description="Rejected while the deduction is bound to a structure or employee.",
)
async def delete_deduction(
    deduction_id: uuid.UUID = Path(...),
    db: AsyncSession = Depends(get_async_session),
    current_user: Employee = Depends(require_admin),
):
    service = RateCatalogService(db)
    await service.delete_deduction(deduction_id, deleted_by_id=current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
