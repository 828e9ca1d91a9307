"""
PayCore - Payrun Generator

Runs the take-home calculator over a cohort and persists the snapshot
(Payrun, one PayrunItem per employee, one PayrunItemDetail per line) in a
single transaction.

Two kinds of run:
- salary: every active employee with an open assignment to an active
  structure. Base salary, structure allowances, structure deductions merged
  with non-loan direct deductions, and one installment line per active loan.
- allowance: every active employee who has the target allowance bound
  directly or through their current structure, once each. Only that
  allowance is paid; base salary is reported as 0.

Line amounts are quantized to cents before they are stored, and every
stored total is summed from the stored lines, so an item's details always
add up to its net pay.
"""

import calendar
import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from paycore.config import settings
from paycore.database import atomic
from paycore.models.audit import AuditAction
from paycore.models.employee import Employee, EmployeeStatus
from paycore.models.payroll import Allowance, EmployeeAllowance, EmployeeSalary, SalaryAllowance
from paycore.models.payrun import (
    Payrun,
    PayrunDetailType,
    PayrunItem,
    PayrunItemDetail,
    PayrunStatus,
    PayrunType,
)
from paycore.services.audit_service import AuditService
from paycore.services.notification_service import NotificationService
from paycore.services.take_home import (
    SOURCE_EMPLOYEE,
    SOURCE_STRUCTURE,
    TakeHomeResult,
    compute_allowance_line,
    compute_take_home,
)
from paycore.services.take_home_service import RateResolver, allowance_rate
from paycore.utils.error_handling import (
    DuplicatePayrunException,
    EmptyCohortException,
    ErrorCode,
    InvalidPeriodException,
    NotFoundException,
    ValidationException,
)
from paycore.utils.money import ZERO, to_money

logger = logging.getLogger(__name__)

MIN_YEAR = 2000
MAX_YEAR = 2100


@dataclass
class ItemDraft:
    """Quantized lines and totals for one employee, ready to persist."""
    employee_id: uuid.UUID
    details: List[PayrunItemDetail] = field(default_factory=list)
    base_salary: Decimal = ZERO
    total_allowances: Decimal = ZERO
    total_taxes: Decimal = ZERO
    total_deductions: Decimal = ZERO
    
    @property
    def gross_pay(self) -> Decimal:
        return self.base_salary + self.total_allowances
    
    @property
    def net_pay(self) -> Decimal:
        return self.gross_pay - self.total_taxes - self.total_deductions


def build_item_draft(result: TakeHomeResult) -> ItemDraft:
    """Turn an exact calculator result into signed, cent-rounded detail lines."""
    draft = ItemDraft(employee_id=result.employee_id)
    
    base = to_money(result.base_salary)
    if base > ZERO:
        draft.base_salary = base
        draft.details.append(PayrunItemDetail(
            detail_type=PayrunDetailType.BASE_SALARY,
            description="Base Salary",
            amount=base,
        ))
    
    for line in result.allowances:
        gross = to_money(line.gross_value)
        draft.total_allowances += gross
        draft.details.append(PayrunItemDetail(
            detail_type=PayrunDetailType.ALLOWANCE,
            description=line.name,
            amount=gross,
            allowance_id=line.allowance_id,
        ))
        tax = to_money(line.tax_amount)
        if tax > ZERO:
            draft.total_taxes += tax
            draft.details.append(PayrunItemDetail(
                detail_type=PayrunDetailType.TAX,
                description=f"{line.name} Tax",
                amount=-tax,
                allowance_id=line.allowance_id,
            ))
    
    for line in result.deductions:
        value = to_money(line.value)
        if value <= ZERO:
            continue
        draft.total_deductions += value
        draft.details.append(PayrunItemDetail(
            detail_type=PayrunDetailType.DEDUCTION,
            description=line.name,
            amount=-value,
            deduction_id=line.deduction_id,
            employee_deduction_id=line.employee_deduction_id,
        ))
    
    for loan in result.loans:
        installment = to_money(loan.installment)
        draft.total_deductions += installment
        draft.details.append(PayrunItemDetail(
            detail_type=PayrunDetailType.LOAN,
            description=f"Loan Repayment ({loan.reference_number})",
            amount=-installment,
            loan_application_id=loan.loan_application_id,
            employee_deduction_id=loan.employee_deduction_id,
            original_amount=installment,
            remaining_amount=to_money(loan.remaining_after),
        ))
    
    return draft


def validate_period(year: int, month: int, day: int) -> None:
    if not (MIN_YEAR <= year <= MAX_YEAR) or not (1 <= month <= 12):
        raise InvalidPeriodException(year, month, day)
    if not (1 <= day <= calendar.monthrange(year, month)[1]):
        raise InvalidPeriodException(year, month, day)


def payrun_name(year: int, month: int, allowance: Optional[Allowance] = None) -> str:
    label = allowance.name if allowance else "Salary"
    return f"{label} Payrun - {calendar.month_name[month]} {year}"


class PayrunService:
    """Payrun generation and the payrun read surface."""
    
    def __init__(self, db: AsyncSession, notifier: Optional[NotificationService] = None):
        self.db = db
        self.audit = AuditService(db)
        self.resolver = RateResolver(db)
        self.notifier = notifier or NotificationService()
    
    # ===========================================
    # GENERATION
    # ===========================================
    
    async def generate_payrun(
        self,
        payrun_type: PayrunType,
        year: int,
        month: int,
        day: Optional[int] = None,
        allowance_id: Optional[uuid.UUID] = None,
        generated_by_id: Optional[uuid.UUID] = None,
    ) -> Payrun:
        """
        Generate a draft payrun for a period.
        
        The period/type/allowance tuple is unique: a lookup gives the
        friendly error, and unique indexes reject whichever concurrent
        request loses the race. Nothing is written when the cohort is empty.
        """
        payrun_type = PayrunType(payrun_type)
        day = settings.default_payrun_day if day is None else day
        validate_period(year, month, day)
        
        if payrun_type == PayrunType.ALLOWANCE and allowance_id is None:
            raise ValidationException(
                "allowance_id is required for allowance payruns",
                field="allowance_id",
                code=ErrorCode.MISSING_FIELD,
            )
        if payrun_type == PayrunType.SALARY and allowance_id is not None:
            raise ValidationException(
                "allowance_id is only valid for allowance payruns",
                field="allowance_id",
            )
        
        async with atomic(self.db):
            allowance = None
            if allowance_id is not None:
                allowance = await self.db.get(Allowance, allowance_id)
                if not allowance:
                    raise NotFoundException("Allowance", allowance_id)
            
            period = f"{year}-{month:02d}-{day:02d}"
            if await self._period_taken(payrun_type, year, month, day, allowance_id):
                raise DuplicatePayrunException(period, payrun_type.value)
            
            if payrun_type == PayrunType.SALARY:
                results = await self._salary_results()
                if not results:
                    raise EmptyCohortException(
                        "No active employees with an active salary structure were found"
                    )
            else:
                results = await self._allowance_results(allowance)
                if not results:
                    raise EmptyCohortException(
                        f"No active employees have the '{allowance.name}' allowance"
                    )
            
            payrun = Payrun(
                name=payrun_name(year, month, allowance),
                payrun_type=payrun_type,
                allowance_id=allowance_id,
                year=year,
                month=month,
                day=day,
                status=PayrunStatus.DRAFT,
                generated_by_id=generated_by_id,
            )
            self.db.add(payrun)
            await self.db.flush()
            
            total_gross = ZERO
            total_deductions = ZERO
            total_net = ZERO
            for result in results:
                draft = build_item_draft(result)
                item = PayrunItem(
                    payrun_id=payrun.id,
                    employee_id=draft.employee_id,
                    base_salary=draft.base_salary,
                    total_allowances=draft.total_allowances,
                    total_deductions=draft.total_deductions,
                    total_taxes=draft.total_taxes,
                    gross_pay=draft.gross_pay,
                    taxable_income=draft.gross_pay,
                    net_pay=draft.net_pay,
                    status=PayrunStatus.DRAFT,
                    details=draft.details,
                )
                self.db.add(item)
                
                total_gross += draft.gross_pay
                total_deductions += draft.total_deductions + draft.total_taxes
                total_net += draft.net_pay
            
            payrun.total_employees = len(results)
            payrun.total_gross_pay = total_gross
            payrun.total_deductions = total_deductions
            payrun.total_net_pay = total_net
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="payrun",
                entity_id=payrun.id,
                action=AuditAction.GENERATE,
                actor_id=generated_by_id,
                new_values={
                    "name": payrun.name,
                    "payrun_type": payrun_type,
                    "period": period,
                    "allowance_id": allowance_id,
                    "total_employees": payrun.total_employees,
                    "total_gross_pay": total_gross,
                    "total_deductions": total_deductions,
                    "total_net_pay": total_net,
                },
            )
        
        logger.info(
            f"Payrun generated: {payrun.name} ({payrun.id}) "
            f"employees={payrun.total_employees} net={payrun.total_net_pay}"
        )
        self.notifier.notify(
            "Payrun generated",
            f"{payrun.name} is ready for review ({payrun.total_employees} employees)",
            context={"payrun_id": str(payrun.id)},
        )
        return payrun
    
    async def _period_taken(
        self,
        payrun_type: PayrunType,
        year: int,
        month: int,
        day: int,
        allowance_id: Optional[uuid.UUID],
    ) -> bool:
        query = select(Payrun.id).where(
            Payrun.payrun_type == payrun_type,
            Payrun.year == year,
            Payrun.month == month,
            Payrun.day == day,
        )
        if allowance_id is None:
            query = query.where(Payrun.allowance_id.is_(None))
        else:
            query = query.where(Payrun.allowance_id == allowance_id)
        result = await self.db.execute(query)
        return result.first() is not None
    
    async def _salary_results(self) -> List[TakeHomeResult]:
        assignments = await self.resolver.active_assignments(
            active_structures_only=True,
            active_employees_only=True,
        )
        if not assignments:
            return []
        
        employee_ids = list(assignments.keys())
        structure_ids = {structure.id for _, structure in assignments.values()}
        structure_allowances = await self.resolver.structure_allowances(structure_ids)
        structure_deductions = await self.resolver.structure_deductions(structure_ids)
        employee_deductions = await self.resolver.employee_deductions(employee_ids, exclude_loans=True)
        loans = await self.resolver.active_loans(employee_ids)
        
        results = []
        for employee_id in sorted(employee_ids, key=str):
            _, structure = assignments[employee_id]
            results.append(compute_take_home(
                base_salary=structure.base_salary,
                allowances=structure_allowances[structure.id],
                structure_deductions=structure_deductions[structure.id],
                employee_deductions=employee_deductions[employee_id],
                loans=loans[employee_id],
                employee_id=employee_id,
                salary_structure_id=structure.id,
                salary_structure_name=structure.name,
            ))
        return results
    
    async def _allowance_results(self, allowance: Allowance) -> List[TakeHomeResult]:
        direct = await self.db.execute(
            select(EmployeeAllowance.employee_id)
            .join(Employee, Employee.id == EmployeeAllowance.employee_id)
            .where(
                EmployeeAllowance.allowance_id == allowance.id,
                EmployeeAllowance.effective_to.is_(None),
                Employee.status == EmployeeStatus.ACTIVE,
            )
        )
        via_structure = await self.db.execute(
            select(EmployeeSalary.employee_id)
            .join(Employee, Employee.id == EmployeeSalary.employee_id)
            .join(SalaryAllowance, SalaryAllowance.salary_structure_id == EmployeeSalary.salary_structure_id)
            .where(
                EmployeeSalary.effective_to.is_(None),
                SalaryAllowance.allowance_id == allowance.id,
                SalaryAllowance.effective_to.is_(None),
                Employee.status == EmployeeStatus.ACTIVE,
            )
        )
        direct_ids = set(direct.scalars().all())
        structure_ids = set(via_structure.scalars().all())
        cohort = direct_ids | structure_ids
        if not cohort:
            return []
        
        # Percentage allowances are priced off the employee's current base
        # salary even though the base itself is not paid in this run.
        assignments = await self.resolver.active_assignments(cohort)
        
        results = []
        for employee_id in sorted(cohort, key=str):
            base_salary = assignments[employee_id][1].base_salary if employee_id in assignments else ZERO
            source = SOURCE_STRUCTURE if employee_id in structure_ids else SOURCE_EMPLOYEE
            line = compute_allowance_line(allowance_rate(allowance, source), base_salary)
            results.append(TakeHomeResult(
                employee_id=employee_id,
                base_salary=ZERO,
                allowances=[line],
            ))
        return results
    
    # ===========================================
    # READS
    # ===========================================
    
    async def get_payrun(self, payrun_id: uuid.UUID, with_items: bool = True) -> Payrun:
        query = select(Payrun).where(Payrun.id == payrun_id).execution_options(populate_existing=True)
        if with_items:
            query = query.options(
                selectinload(Payrun.items).selectinload(PayrunItem.details)
            )
        result = await self.db.execute(query)
        payrun = result.scalar_one_or_none()
        if not payrun:
            raise NotFoundException("Payrun", payrun_id)
        return payrun
    
    async def list_payruns(
        self,
        statuses: Optional[Sequence[PayrunStatus]] = None,
        payrun_type: Optional[PayrunType] = None,
        year: Optional[int] = None,
    ) -> List[Payrun]:
        query = select(Payrun).order_by(
            Payrun.year.desc(), Payrun.month.desc(), Payrun.day.desc(), Payrun.created_at.desc()
        )
        if statuses:
            query = query.where(Payrun.status.in_([PayrunStatus(s) for s in statuses]))
        if payrun_type:
            query = query.where(Payrun.payrun_type == PayrunType(payrun_type))
        if year:
            query = query.where(Payrun.year == year)
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    async def list_disbursable_payruns(self) -> List[Payrun]:
        """Approved or paid payruns, most recently approved first."""
        result = await self.db.execute(
            select(Payrun)
            .where(Payrun.status.in_([PayrunStatus.APPROVED, PayrunStatus.PAID]))
            .order_by(Payrun.approved_at.desc())
        )
        return list(result.scalars().all())
    
    async def get_employee_payrun_items(self, employee_id: uuid.UUID) -> List[PayrunItem]:
        """An employee's items across payruns, with lines, newest first."""
        result = await self.db.execute(
            select(PayrunItem)
            .options(selectinload(PayrunItem.details))
            .join(Payrun, Payrun.id == PayrunItem.payrun_id)
            .where(PayrunItem.employee_id == employee_id)
            .order_by(Payrun.year.desc(), Payrun.month.desc(), Payrun.day.desc())
        )
        return list(result.scalars().all())
