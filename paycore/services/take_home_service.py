"""
PayCore - Take-Home Service

Resolves which rates currently apply to employees (active structure
assignment, structure and direct bindings, active loans) and prices them
with the pure calculator in ``paycore.services.take_home``.

``RateResolver`` loads bindings for many employees in a handful of
queries; the payrun generator uses it for whole cohorts.
"""

import logging
import uuid
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.models.employee import Employee, EmployeeStatus
from paycore.models.loan import LoanApplication, LoanStatus
from paycore.models.payroll import (
    Allowance,
    Deduction,
    DeductionKind,
    EmployeeAllowance,
    EmployeeDeduction,
    EmployeeSalary,
    SalaryAllowance,
    SalaryDeduction,
    SalaryStructure,
)
from paycore.services.take_home import (
    SOURCE_EMPLOYEE,
    SOURCE_STRUCTURE,
    AllowanceRate,
    DeductionRate,
    LoanBalance,
    TakeHomeResult,
    compute_take_home,
)

logger = logging.getLogger(__name__)


def allowance_rate(allowance: Allowance, source: str) -> AllowanceRate:
    return AllowanceRate(
        allowance_id=allowance.id,
        name=allowance.name,
        percentage=allowance.percentage,
        amount=allowance.amount,
        is_taxable=allowance.is_taxable,
        tax_percentage=allowance.tax_percentage,
        source=source,
    )


class RateResolver:
    """Batch loader for the rates that currently apply to employees."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
    
    async def active_assignments(
        self,
        employee_ids: Optional[Iterable[uuid.UUID]] = None,
        active_structures_only: bool = False,
        active_employees_only: bool = False,
    ) -> Dict[uuid.UUID, Tuple[EmployeeSalary, SalaryStructure]]:
        """Open EmployeeSalary row and its structure, per employee."""
        query = (
            select(EmployeeSalary, SalaryStructure)
            .join(SalaryStructure, SalaryStructure.id == EmployeeSalary.salary_structure_id)
            .where(EmployeeSalary.effective_to.is_(None))
        )
        if employee_ids is not None:
            query = query.where(EmployeeSalary.employee_id.in_(list(employee_ids)))
        if active_structures_only:
            query = query.where(SalaryStructure.is_active == True)  # noqa: E712
        if active_employees_only:
            query = query.join(Employee, Employee.id == EmployeeSalary.employee_id).where(
                Employee.status == EmployeeStatus.ACTIVE
            )
        result = await self.db.execute(query)
        return {assignment.employee_id: (assignment, structure) for assignment, structure in result.all()}
    
    async def structure_allowances(
        self,
        structure_ids: Iterable[uuid.UUID],
    ) -> Dict[uuid.UUID, List[AllowanceRate]]:
        rates = defaultdict(list)
        result = await self.db.execute(
            select(SalaryAllowance.salary_structure_id, Allowance)
            .join(Allowance, Allowance.id == SalaryAllowance.allowance_id)
            .where(
                SalaryAllowance.salary_structure_id.in_(list(structure_ids)),
                SalaryAllowance.effective_to.is_(None),
            )
            .order_by(Allowance.name)
        )
        for structure_id, allowance in result.all():
            rates[structure_id].append(allowance_rate(allowance, SOURCE_STRUCTURE))
        return rates
    
    async def employee_allowances(
        self,
        employee_ids: Iterable[uuid.UUID],
    ) -> Dict[uuid.UUID, List[AllowanceRate]]:
        rates = defaultdict(list)
        result = await self.db.execute(
            select(EmployeeAllowance.employee_id, Allowance)
            .join(Allowance, Allowance.id == EmployeeAllowance.allowance_id)
            .where(
                EmployeeAllowance.employee_id.in_(list(employee_ids)),
                EmployeeAllowance.effective_to.is_(None),
            )
            .order_by(Allowance.name)
        )
        for employee_id, allowance in result.all():
            rates[employee_id].append(allowance_rate(allowance, SOURCE_EMPLOYEE))
        return rates
    
    async def structure_deductions(
        self,
        structure_ids: Iterable[uuid.UUID],
    ) -> Dict[uuid.UUID, List[DeductionRate]]:
        rates = defaultdict(list)
        result = await self.db.execute(
            select(SalaryDeduction.salary_structure_id, Deduction)
            .join(Deduction, Deduction.id == SalaryDeduction.deduction_id)
            .where(
                SalaryDeduction.salary_structure_id.in_(list(structure_ids)),
                SalaryDeduction.effective_to.is_(None),
            )
            .order_by(Deduction.name)
        )
        for structure_id, deduction in result.all():
            rates[structure_id].append(DeductionRate(
                name=deduction.name,
                percentage=deduction.percentage,
                amount=deduction.amount,
                source=SOURCE_STRUCTURE,
                deduction_id=deduction.id,
            ))
        return rates
    
    async def employee_deductions(
        self,
        employee_ids: Iterable[uuid.UUID],
        exclude_loans: bool = False,
    ) -> Dict[uuid.UUID, List[DeductionRate]]:
        """Active direct deductions; loan-backed rows dropped when ``exclude_loans``."""
        rates = defaultdict(list)
        query = (
            select(EmployeeDeduction)
            .where(
                EmployeeDeduction.employee_id.in_(list(employee_ids)),
                EmployeeDeduction.is_active == True,  # noqa: E712
                EmployeeDeduction.effective_to.is_(None),
            )
            .order_by(EmployeeDeduction.effective_from)
        )
        if exclude_loans:
            query = query.where(
                EmployeeDeduction.kind != DeductionKind.LOAN,
                EmployeeDeduction.loan_application_id.is_(None),
            )
        result = await self.db.execute(query)
        for deduction in result.scalars().all():
            rates[deduction.employee_id].append(DeductionRate(
                name=deduction.name,
                percentage=deduction.percentage,
                amount=deduction.amount,
                source=SOURCE_EMPLOYEE,
                deduction_id=deduction.deduction_id,
                employee_deduction_id=deduction.id,
            ))
        return rates
    
    async def active_loans(
        self,
        employee_ids: Iterable[uuid.UUID],
    ) -> Dict[uuid.UUID, List[LoanBalance]]:
        """Active loans with a balance left, one entry per loan."""
        loans = defaultdict(list)
        result = await self.db.execute(
            select(LoanApplication, EmployeeDeduction.id)
            .outerjoin(EmployeeDeduction, EmployeeDeduction.loan_application_id == LoanApplication.id)
            .where(
                LoanApplication.employee_id.in_(list(employee_ids)),
                LoanApplication.status == LoanStatus.ACTIVE,
                LoanApplication.remaining_balance > 0,
            )
            .order_by(LoanApplication.disbursed_at, LoanApplication.reference_number)
        )
        seen = set()
        for loan, employee_deduction_id in result.all():
            if loan.id in seen:
                continue
            seen.add(loan.id)
            loans[loan.employee_id].append(LoanBalance(
                loan_application_id=loan.id,
                reference_number=loan.reference_number,
                monthly_deduction=loan.monthly_deduction,
                remaining_balance=loan.remaining_balance,
                employee_deduction_id=employee_deduction_id,
            ))
        return loans


class TakeHomeService:
    """Take-home pay for one employee, as of now."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
        self.resolver = RateResolver(db)
    
    async def calculate(self, employee_id: uuid.UUID) -> TakeHomeResult:
        """
        Itemized take-home pay from the employee's current bindings.
        
        Employees that do not exist or have no open assignment get a
        zero-value result instead of an error.
        """
        employee = await self.db.get(Employee, employee_id)
        if not employee:
            return TakeHomeResult.empty(employee_id)
        
        assignments = await self.resolver.active_assignments([employee_id])
        if employee_id not in assignments:
            return TakeHomeResult.empty(employee_id)
        _, structure = assignments[employee_id]
        
        structure_allowances = await self.resolver.structure_allowances([structure.id])
        employee_allowances = await self.resolver.employee_allowances([employee_id])
        structure_deductions = await self.resolver.structure_deductions([structure.id])
        employee_deductions = await self.resolver.employee_deductions([employee_id])
        
        return compute_take_home(
            base_salary=structure.base_salary,
            allowances=structure_allowances[structure.id] + employee_allowances[employee_id],
            structure_deductions=structure_deductions[structure.id],
            employee_deductions=employee_deductions[employee_id],
            employee_id=employee_id,
            salary_structure_id=structure.id,
            salary_structure_name=structure.name,
        )
