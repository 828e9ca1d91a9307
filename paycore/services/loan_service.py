"""
PayCore - Loan Ledger Service

Loan types and their salary-structure eligibility, loan applications with
an HR review step, disbursement with a simple-interest repayment schedule,
and settlement. Payrun completion and early repayments both settle through
the same allocator, which pays open installments in schedule order.
"""

import calendar
import logging
import uuid
from datetime import date, datetime
from decimal import Decimal, ROUND_UP
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from paycore.config import settings
from paycore.database import atomic
from paycore.models.audit import AuditAction
from paycore.models.employee import Employee
from paycore.models.loan import (
    LoanAmountType,
    LoanApplication,
    LoanRepayment,
    LoanStatus,
    LoanType,
    LoanTypeSalaryStructure,
    RepaymentStatus,
)
from paycore.models.payroll import DeductionKind, EmployeeDeduction, EmployeeSalary, SalaryStructure
from paycore.services.audit_service import AuditService
from paycore.services.notification_service import NotificationService
from paycore.utils.error_handling import (
    BusinessRuleException,
    DuplicateEntryException,
    ErrorCode,
    InvalidStateTransitionException,
    NotFoundException,
    ValidationException,
)
from paycore.utils.money import CENT, HUNDRED, ZERO, percent_of, to_decimal, to_money

logger = logging.getLogger(__name__)

LOAN_TYPE_FIELDS = (
    "name", "description", "amount_type", "fixed_amount", "max_percentage", "tenure_months",
    "interest_rate", "min_service_months", "max_active_loans", "is_active",
)

# Applications that still count against a loan type's max_active_loans
OPEN_LOAN_STATUSES = (LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.ACTIVE)
OPEN_REPAYMENT_STATUSES = (RepaymentStatus.PENDING, RepaymentStatus.PARTIAL, RepaymentStatus.OVERDUE)


def add_months(start: date, months: int) -> date:
    """Same day-of-month ``months`` later, clamped to month end."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(start.day, calendar.monthrange(year, month)[1]))


def months_of_service(hire_date: Optional[date], as_of: date) -> int:
    """Whole months between hire and ``as_of``; 0 when the hire date is unknown."""
    if hire_date is None or hire_date > as_of:
        return 0
    months = (as_of.year - hire_date.year) * 12 + as_of.month - hire_date.month
    if add_months(hire_date, months) > as_of:
        months -= 1
    return months


def loan_terms(principal: Decimal, interest_rate: Decimal, tenure_months: int) -> Dict[str, Any]:
    """
    Simple-interest terms.
    
    total = principal + principal * annual rate% * months / 1200. The monthly
    installment is rounded up to the cent, so the schedule settles in at
    most ``tenure_months`` installments and the last one takes the remainder.
    """
    principal = to_decimal(principal)
    interest_rate = to_decimal(interest_rate)
    interest = principal * interest_rate * tenure_months / Decimal("1200")
    total = to_money(principal + interest)
    monthly = (total / tenure_months).quantize(CENT, rounding=ROUND_UP)
    
    installments = []
    remaining = total
    while remaining > ZERO:
        amount = min(monthly, remaining)
        installments.append(amount)
        remaining -= amount
    
    return {
        "total_amount": total,
        "total_interest": total - to_money(principal),
        "monthly_deduction": monthly,
        "installments": installments,
    }


def max_loan_amount(loan_type: LoanType, base_salary: Decimal) -> Decimal:
    """Borrowing cap of a loan type for an employee on ``base_salary``."""
    if loan_type.amount_type == LoanAmountType.PERCENTAGE:
        return to_money(percent_of(loan_type.max_percentage, base_salary))
    return to_money(loan_type.fixed_amount)


def normalize_loan_type(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a full loan type definition and return the stored form.
    
    FIXED types need ``fixed_amount`` > 0 and store no percentage;
    PERCENTAGE types need ``max_percentage`` in (0, 100] and store no
    fixed amount.
    """
    name = " ".join((data.get("name") or "").split())
    if not name:
        raise ValidationException("Name is required", field="name")
    
    amount_type = LoanAmountType(data.get("amount_type") or LoanAmountType.FIXED)
    fixed_amount = None
    max_percentage = None
    if amount_type == LoanAmountType.FIXED:
        fixed_amount = to_decimal(data.get("fixed_amount"))
        if fixed_amount <= ZERO:
            raise ValidationException(
                "Fixed loan types need a fixed amount greater than 0",
                field="fixed_amount",
                code=ErrorCode.INVALID_AMOUNT,
            )
        fixed_amount = to_money(fixed_amount)
    else:
        max_percentage = to_decimal(data.get("max_percentage"))
        if max_percentage <= ZERO or max_percentage > HUNDRED:
            raise ValidationException(
                "Percentage loan types need a max percentage between 0 and 100",
                field="max_percentage",
            )
    
    tenure = int(data.get("tenure_months") or 0)
    if tenure <= 0:
        raise ValidationException("Tenure must be at least one month", field="tenure_months")
    interest_rate = to_decimal(data.get("interest_rate"))
    if interest_rate < ZERO:
        raise ValidationException("Interest rate cannot be negative", field="interest_rate")
    min_service = int(data.get("min_service_months") or 0)
    if min_service < 0:
        raise ValidationException("Minimum service cannot be negative", field="min_service_months")
    max_active = data.get("max_active_loans")
    max_active = 1 if max_active is None else int(max_active)
    if max_active < 1:
        raise ValidationException("At least one active loan must be allowed", field="max_active_loans")
    
    return {
        "name": name,
        "description": data.get("description"),
        "amount_type": amount_type,
        "fixed_amount": fixed_amount,
        "max_percentage": max_percentage,
        "tenure_months": tenure,
        "interest_rate": interest_rate,
        "min_service_months": min_service,
        "max_active_loans": max_active,
        "is_active": bool(data.get("is_active", True)),
    }


class LoanService:
    """Service for the loan ledger."""
    
    def __init__(self, db: AsyncSession, notifier: Optional[NotificationService] = None):
        self.db = db
        self.audit = AuditService(db)
        self.notifier = notifier or NotificationService()
    
    # ===========================================
    # LOAN TYPES
    # ===========================================
    
    async def _loan_type_name_taken(self, name: str, exclude_id: Optional[uuid.UUID] = None) -> bool:
        query = select(LoanType.id).where(func.lower(LoanType.name) == name.lower())
        if exclude_id:
            query = query.where(LoanType.id != exclude_id)
        result = await self.db.execute(query)
        return result.first() is not None
    
    async def _check_structures(self, structure_ids: List[uuid.UUID]) -> List[uuid.UUID]:
        unique_ids = list(dict.fromkeys(structure_ids))
        if not unique_ids:
            return []
        result = await self.db.execute(
            select(SalaryStructure.id).where(SalaryStructure.id.in_(unique_ids))
        )
        found = set(result.scalars().all())
        for structure_id in unique_ids:
            if structure_id not in found:
                raise NotFoundException("Salary structure", structure_id)
        return unique_ids
    
    async def create_loan_type(
        self,
        data: Dict[str, Any],
        created_by_id: Optional[uuid.UUID] = None,
    ) -> LoanType:
        """Create a loan type linked to the salary structures whose employees may apply."""
        values = normalize_loan_type(data)
        
        async with atomic(self.db):
            if await self._loan_type_name_taken(values["name"]):
                raise DuplicateEntryException("Loan type", "name", values["name"])
            structure_ids = await self._check_structures(data.get("salary_structure_ids") or [])
            
            loan_type = LoanType(
                **values,
                structure_links=[
                    LoanTypeSalaryStructure(salary_structure_id=structure_id)
                    for structure_id in structure_ids
                ],
                created_by_id=created_by_id,
            )
            self.db.add(loan_type)
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="loan_type",
                entity_id=loan_type.id,
                action=AuditAction.CREATE,
                actor_id=created_by_id,
                new_values={**self._snapshot(loan_type), "salary_structure_ids": structure_ids},
            )
        
        logger.info(f"Loan type created: {loan_type.name} ({loan_type.id})")
        return await self.get_loan_type(loan_type.id)
    
    async def get_loan_type(self, loan_type_id: uuid.UUID) -> LoanType:
        result = await self.db.execute(
            select(LoanType)
            .options(selectinload(LoanType.structure_links))
            .where(LoanType.id == loan_type_id)
            .execution_options(populate_existing=True)
        )
        loan_type = result.scalar_one_or_none()
        if not loan_type:
            raise NotFoundException("Loan type", loan_type_id)
        return loan_type
    
    async def list_loan_types(self, active_only: bool = False) -> List[LoanType]:
        query = select(LoanType).options(selectinload(LoanType.structure_links)).order_by(LoanType.name)
        if active_only:
            query = query.where(LoanType.is_active.is_(True))
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    async def update_loan_type(
        self,
        loan_type_id: uuid.UUID,
        data: Dict[str, Any],
        updated_by_id: Optional[uuid.UUID] = None,
    ) -> LoanType:
        """
        Partially update a loan type.
        
        The merged definition is re-validated as a whole. When
        ``salary_structure_ids`` is present it replaces the eligibility links;
        links for structures that stay listed are kept as they are.
        Applications already made keep the terms they were made with.
        """
        loan_type = await self.get_loan_type(loan_type_id)
        old_values = {**self._snapshot(loan_type), "salary_structure_ids": loan_type.salary_structure_ids}
        
        changes = {k: v for k, v in data.items() if k != "salary_structure_ids"}
        values = normalize_loan_type({**self._snapshot(loan_type), **changes})
        
        async with atomic(self.db):
            if await self._loan_type_name_taken(values["name"], exclude_id=loan_type.id):
                raise DuplicateEntryException("Loan type", "name", values["name"])
            
            for field, value in values.items():
                setattr(loan_type, field, value)
            loan_type.updated_by_id = updated_by_id
            
            if data.get("salary_structure_ids") is not None:
                wanted = await self._check_structures(data["salary_structure_ids"])
                kept = [link for link in loan_type.structure_links if link.salary_structure_id in wanted]
                linked = {link.salary_structure_id for link in kept}
                loan_type.structure_links = kept + [
                    LoanTypeSalaryStructure(salary_structure_id=structure_id)
                    for structure_id in wanted
                    if structure_id not in linked
                ]
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="loan_type",
                entity_id=loan_type.id,
                action=AuditAction.UPDATE,
                actor_id=updated_by_id,
                old_values=old_values,
                new_values={**self._snapshot(loan_type), "salary_structure_ids": loan_type.salary_structure_ids},
            )
        
        return await self.get_loan_type(loan_type_id)
    
    async def delete_loan_type(
        self,
        loan_type_id: uuid.UUID,
        deleted_by_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Delete a loan type no application was ever made against. Its eligibility links go with it."""
        loan_type = await self.get_loan_type(loan_type_id)
        
        async with atomic(self.db):
            applications = await self.db.scalar(
                select(func.count()).select_from(LoanApplication).where(
                    LoanApplication.loan_type_id == loan_type_id
                )
            )
            if applications:
                raise BusinessRuleException(
                    f"Loan type '{loan_type.name}' has applications and cannot be deleted",
                    rule="LOAN_TYPE_NOT_IN_USE",
                    code=ErrorCode.CANNOT_DELETE,
                    details={"applications": applications},
                )
            
            await self.audit.log_action(
                entity_type="loan_type",
                entity_id=loan_type.id,
                action=AuditAction.DELETE,
                actor_id=deleted_by_id,
                old_values=self._snapshot(loan_type),
            )
            await self.db.delete(loan_type)
        
        logger.info(f"Loan type deleted: {loan_type_id}")
    
    # ===========================================
    # ELIGIBILITY
    # ===========================================
    
    async def _current_structure(self, employee_id: uuid.UUID) -> Optional[SalaryStructure]:
        result = await self.db.execute(
            select(SalaryStructure)
            .join(EmployeeSalary, EmployeeSalary.salary_structure_id == SalaryStructure.id)
            .where(
                EmployeeSalary.employee_id == employee_id,
                EmployeeSalary.effective_to.is_(None),
            )
        )
        return result.scalar_one_or_none()
    
    async def get_eligible_loan_types(self, employee_id: uuid.UUID) -> Dict[str, Any]:
        """
        Active loan types linked to the employee's current salary structure.
        
        Each entry carries the borrowing cap at the current base salary. An
        employee without a structure is eligible for nothing.
        """
        employee = await self.db.get(Employee, employee_id)
        if not employee:
            raise NotFoundException("Employee", employee_id)
        
        structure = await self._current_structure(employee_id)
        if structure is None:
            return {
                "employee_id": employee_id,
                "salary_structure_id": None,
                "base_salary": None,
                "loan_types": [],
            }
        
        result = await self.db.execute(
            select(LoanType)
            .options(selectinload(LoanType.structure_links))
            .join(LoanTypeSalaryStructure, LoanTypeSalaryStructure.loan_type_id == LoanType.id)
            .where(
                LoanTypeSalaryStructure.salary_structure_id == structure.id,
                LoanType.is_active.is_(True),
            )
            .order_by(LoanType.name)
        )
        return {
            "employee_id": employee_id,
            "salary_structure_id": structure.id,
            "base_salary": structure.base_salary,
            "loan_types": [
                {"loan_type": loan_type, "max_amount": max_loan_amount(loan_type, structure.base_salary)}
                for loan_type in result.scalars().all()
            ],
        }
    
    async def calculate_max_eligible_amount(
        self,
        employee_id: uuid.UUID,
        loan_type_id: uuid.UUID,
    ) -> Dict[str, Any]:
        """Borrowing cap and repayment terms of a loan type, priced off the current base salary."""
        loan_type = await self.get_loan_type(loan_type_id)
        structure = await self._current_structure(employee_id)
        if structure is None:
            raise BusinessRuleException(
                f"Employee {employee_id} has no salary structure assigned",
                rule="SALARY_ASSIGNMENT_REQUIRED",
            )
        
        max_amount = max_loan_amount(loan_type, structure.base_salary)
        terms = loan_terms(max_amount, loan_type.interest_rate, loan_type.tenure_months)
        return {
            "employee_id": employee_id,
            "loan_type_id": loan_type.id,
            "base_salary": structure.base_salary,
            "max_amount": max_amount,
            "tenure_months": loan_type.tenure_months,
            "interest_rate": loan_type.interest_rate,
            "total_interest": terms["total_interest"],
            "total_repayment": terms["total_amount"],
            "monthly_repayment": terms["monthly_deduction"],
        }
    
    async def _check_loan_type_rules(
        self,
        employee: Employee,
        loan_type: LoanType,
        principal: Decimal,
    ) -> None:
        if not loan_type.is_active:
            raise BusinessRuleException(
                f"Loan type '{loan_type.name}' is not active",
                rule="LOAN_TYPE_INACTIVE",
            )
        
        structure = await self._current_structure(employee.id)
        if structure is None or structure.id not in loan_type.salary_structure_ids:
            raise BusinessRuleException(
                f"Employee {employee.staff_number} is not eligible for loan type '{loan_type.name}'",
                rule="LOAN_TYPE_NOT_ELIGIBLE",
            )
        
        served = months_of_service(employee.hire_date, date.today())
        if served < loan_type.min_service_months:
            raise BusinessRuleException(
                f"Loan type '{loan_type.name}' requires {loan_type.min_service_months} months of service",
                rule="MIN_SERVICE_NOT_MET",
                details={"months_of_service": served, "required": loan_type.min_service_months},
            )
        
        max_amount = max_loan_amount(loan_type, structure.base_salary)
        if principal > max_amount:
            raise ValidationException(
                f"Requested amount exceeds the maximum of {max_amount} for '{loan_type.name}'",
                field="principal_amount",
                code=ErrorCode.INVALID_AMOUNT,
                details={"max_amount": str(max_amount)},
            )
        
        open_loans = await self.db.scalar(
            select(func.count()).select_from(LoanApplication).where(
                LoanApplication.employee_id == employee.id,
                LoanApplication.loan_type_id == loan_type.id,
                LoanApplication.status.in_(OPEN_LOAN_STATUSES),
            )
        )
        if (open_loans or 0) >= loan_type.max_active_loans:
            raise BusinessRuleException(
                f"Employee {employee.staff_number} already has the maximum number of "
                f"'{loan_type.name}' loans",
                rule="MAX_ACTIVE_LOANS",
                details={"open_loans": open_loans, "max_active_loans": loan_type.max_active_loans},
            )
    
    # ===========================================
    # APPLICATIONS
    # ===========================================
    
    async def _next_reference(self, year: int) -> str:
        prefix = settings.loan_reference_prefix
        count = await self.db.scalar(
            select(func.count())
            .select_from(LoanApplication)
            .where(LoanApplication.reference_number.like(f"{prefix}-{year}-%"))
        )
        return f"{prefix}-{year}-{(count or 0) + 1:04d}"
    
    async def create_loan_application(
        self,
        data: Dict[str, Any],
        created_by_id: Optional[uuid.UUID] = None,
    ) -> LoanApplication:
        """
        Record a pending loan application.
        
        With a ``loan_type_id`` the type supplies tenure and interest, and
        the request must pass its eligibility rules: type active, structure
        linked, minimum service met, amount within the cap and fewer open
        applications than ``max_active_loans``. Without one the caller gives
        explicit terms.
        """
        principal = to_decimal(data.get("principal_amount"))
        if principal <= ZERO:
            raise ValidationException(
                "Principal amount must be greater than 0",
                field="principal_amount",
                code=ErrorCode.INVALID_AMOUNT,
            )
        principal = to_money(principal)
        loan_type_id = data.get("loan_type_id")
        if loan_type_id is None:
            tenure = int(data.get("tenure_months") or 0)
            if tenure <= 0:
                raise ValidationException("Tenure must be at least one month", field="tenure_months")
            interest_rate = to_decimal(data.get("interest_rate"))
            if interest_rate < ZERO:
                raise ValidationException("Interest rate cannot be negative", field="interest_rate")
        
        async with atomic(self.db):
            # the employee row lock serializes concurrent applications
            employee = await self.db.get(Employee, data.get("employee_id"), with_for_update=True)
            if not employee:
                raise NotFoundException("Employee", data.get("employee_id"))
            
            if loan_type_id is not None:
                loan_type = await self.get_loan_type(loan_type_id)
                await self._check_loan_type_rules(employee, loan_type, principal)
                tenure = loan_type.tenure_months
                interest_rate = loan_type.interest_rate
            
            loan = LoanApplication(
                reference_number=await self._next_reference(datetime.utcnow().year),
                employee_id=employee.id,
                loan_type_id=loan_type_id,
                reason=data.get("reason"),
                principal_amount=principal,
                interest_rate=interest_rate,
                tenure_months=tenure,
                total_repaid=ZERO,
                remaining_balance=ZERO,
                status=LoanStatus.PENDING,
                created_by_id=created_by_id,
            )
            self.db.add(loan)
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="loan_application",
                entity_id=loan.id,
                action=AuditAction.CREATE,
                actor_id=created_by_id,
                new_values={
                    "reference_number": loan.reference_number,
                    "employee_id": employee.id,
                    "loan_type_id": loan_type_id,
                    "principal_amount": loan.principal_amount,
                    "interest_rate": interest_rate,
                    "tenure_months": tenure,
                },
            )
        
        logger.info(f"Loan application {loan.reference_number} created for employee {employee.id}")
        return loan
    
    async def review_loan(
        self,
        loan_id: uuid.UUID,
        approve: bool,
        approved_amount: Optional[Decimal] = None,
        remarks: Optional[str] = None,
        reviewed_by_id: Optional[uuid.UUID] = None,
    ) -> LoanApplication:
        """
        HR decision on a pending application.
        
        Approval may lower the amount but never raise it above the request;
        the total and monthly installment are priced on the approved amount.
        """
        now = datetime.utcnow()
        async with atomic(self.db):
            loan = await self._lock_loan(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidStateTransitionException(
                    "LoanApplication",
                    loan.status.value,
                    "review",
                    f"Only pending loans can be reviewed (current status: {loan.status.value})",
                )
            
            if approve:
                amount = loan.principal_amount if approved_amount is None else to_money(to_decimal(approved_amount))
                if amount <= ZERO or amount > loan.principal_amount:
                    raise ValidationException(
                        f"Approved amount must be greater than 0 and at most {loan.principal_amount}",
                        field="approved_amount",
                        code=ErrorCode.INVALID_AMOUNT,
                        details={"requested_amount": str(loan.principal_amount)},
                    )
                terms = loan_terms(amount, loan.interest_rate, loan.tenure_months)
                loan.approved_amount = amount
                loan.total_amount = terms["total_amount"]
                loan.monthly_deduction = terms["monthly_deduction"]
                loan.status = LoanStatus.APPROVED
            else:
                loan.status = LoanStatus.REJECTED
            
            loan.reviewed_by_id = reviewed_by_id
            loan.reviewed_at = now
            loan.review_remarks = remarks
            loan.updated_by_id = reviewed_by_id
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="loan_application",
                entity_id=loan.id,
                action=AuditAction.APPROVE if approve else AuditAction.REJECT,
                actor_id=reviewed_by_id,
                old_values={"status": LoanStatus.PENDING},
                new_values={
                    "status": loan.status,
                    "approved_amount": loan.approved_amount,
                    "remarks": remarks,
                },
            )
        
        logger.info(f"Loan {loan.reference_number} {loan.status.value} by {reviewed_by_id}")
        self.notifier.notify(
            f"Loan {loan.status.value}",
            f"Loan application {loan.reference_number} was {loan.status.value}",
            recipient_id=loan.employee_id,
        )
        return loan
    
    async def disburse_loan(
        self,
        loan_id: uuid.UUID,
        disbursed_by_id: Optional[uuid.UUID] = None,
        first_due_date: Optional[date] = None,
    ) -> LoanApplication:
        """
        Activate an approved loan.
        
        Fixes the total and monthly installment on the approved amount,
        writes the repayment schedule, and creates the loan-backed employee
        deduction that payroll charges each month.
        """
        now = datetime.utcnow()
        if first_due_date is None:
            first_due_date = add_months(date(now.year, now.month, 1), 1)
        
        async with atomic(self.db):
            loan = await self._lock_loan(loan_id)
            if loan.status != LoanStatus.APPROVED:
                raise InvalidStateTransitionException(
                    "LoanApplication",
                    loan.status.value,
                    "disburse",
                    f"Only approved loans can be disbursed (current status: {loan.status.value})",
                )
            
            terms = loan_terms(loan.approved_amount, loan.interest_rate, loan.tenure_months)
            loan.total_amount = terms["total_amount"]
            loan.monthly_deduction = terms["monthly_deduction"]
            loan.remaining_balance = terms["total_amount"]
            loan.total_repaid = ZERO
            loan.status = LoanStatus.ACTIVE
            loan.disbursed_at = now
            loan.disbursed_by_id = disbursed_by_id
            loan.updated_by_id = disbursed_by_id
            
            for number, amount in enumerate(terms["installments"], start=1):
                self.db.add(LoanRepayment(
                    loan_application_id=loan.id,
                    installment_number=number,
                    due_date=add_months(first_due_date, number - 1),
                    expected_amount=amount,
                    status=RepaymentStatus.PENDING,
                ))
            
            self.db.add(EmployeeDeduction(
                employee_id=loan.employee_id,
                loan_application_id=loan.id,
                name=f"Loan: {loan.reference_number}",
                kind=DeductionKind.LOAN,
                amount=terms["monthly_deduction"],
                original_amount=terms["total_amount"],
                remaining_amount=terms["total_amount"],
                is_active=True,
                effective_from=now,
                created_by_id=disbursed_by_id,
            ))
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="loan_application",
                entity_id=loan.id,
                action=AuditAction.DISBURSE,
                actor_id=disbursed_by_id,
                new_values={
                    "approved_amount": loan.approved_amount,
                    "total_amount": loan.total_amount,
                    "monthly_deduction": loan.monthly_deduction,
                    "installments": len(terms["installments"]),
                },
            )
        
        logger.info(
            f"Loan {loan.reference_number} disbursed: total={loan.total_amount} "
            f"monthly={loan.monthly_deduction}"
        )
        self.notifier.notify(
            "Loan disbursed",
            f"Loan {loan.reference_number} is active; {loan.monthly_deduction} will be deducted monthly",
            recipient_id=loan.employee_id,
        )
        return await self.get_loan(loan.id)
    
    async def cancel_loan_application(
        self,
        loan_id: uuid.UUID,
        cancelled_by_id: Optional[uuid.UUID] = None,
    ) -> LoanApplication:
        async with atomic(self.db):
            loan = await self._lock_loan(loan_id)
            if loan.status not in (LoanStatus.PENDING, LoanStatus.APPROVED):
                raise InvalidStateTransitionException(
                    "LoanApplication",
                    loan.status.value,
                    "cancel",
                    f"Only pending or approved loans can be cancelled (current status: {loan.status.value})",
                )
            old_status = loan.status
            loan.status = LoanStatus.CANCELLED
            loan.updated_by_id = cancelled_by_id
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="loan_application",
                entity_id=loan.id,
                action=AuditAction.CANCEL,
                actor_id=cancelled_by_id,
                old_values={"status": old_status},
            )
        
        return loan
    
    async def get_loan(self, loan_id: uuid.UUID) -> LoanApplication:
        result = await self.db.execute(
            select(LoanApplication)
            .options(selectinload(LoanApplication.repayments))
            .where(LoanApplication.id == loan_id)
            .execution_options(populate_existing=True)
        )
        loan = result.scalar_one_or_none()
        if not loan:
            raise NotFoundException("Loan application", loan_id)
        return loan
    
    async def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        employee_id: Optional[uuid.UUID] = None,
    ) -> List[LoanApplication]:
        query = select(LoanApplication).order_by(LoanApplication.created_at.desc())
        if status:
            query = query.where(LoanApplication.status == LoanStatus(status))
        if employee_id:
            query = query.where(LoanApplication.employee_id == employee_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    async def get_repayment_schedule(self, loan_id: uuid.UUID) -> List[LoanRepayment]:
        loan = await self.db.get(LoanApplication, loan_id)
        if not loan:
            raise NotFoundException("Loan application", loan_id)
        result = await self.db.execute(
            select(LoanRepayment)
            .where(LoanRepayment.loan_application_id == loan_id)
            .order_by(LoanRepayment.installment_number)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())
    
    # ===========================================
    # SETTLEMENT
    # ===========================================
    
    async def apply_installment(
        self,
        loan_id: uuid.UUID,
        amount: Decimal,
        payrun_id: Optional[uuid.UUID] = None,
        payrun_item_id: Optional[uuid.UUID] = None,
        paid_at: Optional[datetime] = None,
    ) -> List[LoanRepayment]:
        """
        Settle ``amount`` against an active loan.
        
        Runs inside the caller's transaction and does not commit. The amount
        is capped at the remaining balance. Returns the installments it paid
        into.
        """
        paid_at = paid_at or datetime.utcnow()
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationException(
                "Installment amount must be greater than 0",
                field="amount",
                code=ErrorCode.INVALID_AMOUNT,
            )
        
        loan = await self._lock_loan(loan_id)
        if loan.status != LoanStatus.ACTIVE:
            raise BusinessRuleException(
                f"Loan {loan.reference_number} is not active (status: {loan.status.value})",
                rule="ACTIVE_LOAN_REQUIRED",
            )
        amount = min(amount, to_money(loan.remaining_balance))
        return await self._settle(loan, amount, paid_at, payrun_id, payrun_item_id)
    
    async def settle_payrun_line(
        self,
        loan_id: uuid.UUID,
        amount: Decimal,
        payrun_id: uuid.UUID,
        payrun_item_id: uuid.UUID,
        paid_at: datetime,
    ) -> Dict[str, Any]:
        """
        Settle one payrun loan line against the ledger as it stands now.
        
        A line whose loan is no longer active, or already fully repaid, is
        skipped; a line larger than the remaining balance is capped. Both
        cases are logged at WARNING and reported in the returned outcome,
        which payrun completion records in its audit entry.
        """
        amount = to_money(amount)
        loan = await self._lock_loan(loan_id)
        outcome = {
            "loan_application_id": loan.id,
            "reference_number": loan.reference_number,
            "payrun_item_id": payrun_item_id,
            "line_amount": amount,
        }
        
        if loan.status != LoanStatus.ACTIVE or loan.remaining_balance <= ZERO:
            logger.warning(
                f"Skipping loan line for {loan.reference_number} in payrun {payrun_id}: "
                f"loan is {loan.status.value} with balance {loan.remaining_balance}"
            )
            return {**outcome, "result": "skipped", "applied": ZERO, "loan_status": loan.status}
        
        applied = min(amount, to_money(loan.remaining_balance))
        if applied < amount:
            logger.warning(
                f"Capping loan line for {loan.reference_number} in payrun {payrun_id} "
                f"from {amount} to the remaining balance {applied}"
            )
        await self._settle(loan, applied, paid_at, payrun_id, payrun_item_id)
        return {**outcome, "result": "capped" if applied < amount else "settled", "applied": applied}
    
    async def make_early_repayment(
        self,
        loan_id: uuid.UUID,
        amount: Decimal,
        paid_by_id: Optional[uuid.UUID] = None,
        remarks: Optional[str] = None,
    ) -> LoanApplication:
        """
        Repay part or all of an active loan outside payroll.
        
        Open installments are paid in schedule order; the last one touched
        may be left partially paid. Repaying the whole balance completes the
        loan and retires its deduction.
        """
        now = datetime.utcnow()
        amount = to_money(to_decimal(amount))
        if amount <= ZERO:
            raise ValidationException(
                "Repayment amount must be greater than 0",
                field="amount",
                code=ErrorCode.INVALID_AMOUNT,
            )
        
        async with atomic(self.db):
            loan = await self._lock_loan(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise BusinessRuleException(
                    f"Loan {loan.reference_number} is not active (status: {loan.status.value})",
                    rule="ACTIVE_LOAN_REQUIRED",
                )
            if amount > loan.remaining_balance:
                raise ValidationException(
                    f"Repayment exceeds the remaining balance of {loan.remaining_balance}",
                    field="amount",
                    code=ErrorCode.INVALID_AMOUNT,
                    details={"remaining_balance": str(loan.remaining_balance)},
                )
            
            old_balance = loan.remaining_balance
            touched = await self._settle(loan, amount, now)
            
            await self.audit.log_action(
                entity_type="loan_application",
                entity_id=loan.id,
                action=AuditAction.REPAY,
                actor_id=paid_by_id,
                old_values={"remaining_balance": old_balance},
                new_values={
                    "amount": amount,
                    "remaining_balance": loan.remaining_balance,
                    "status": loan.status,
                    "installments": [r.installment_number for r in touched],
                    "remarks": remarks,
                },
            )
        
        logger.info(
            f"Early repayment of {amount} on loan {loan.reference_number}, "
            f"remaining {loan.remaining_balance}"
        )
        self.notifier.notify(
            "Loan repayment received",
            f"{amount} was repaid on loan {loan.reference_number}",
            recipient_id=loan.employee_id,
        )
        return await self.get_loan(loan.id)
    
    async def mark_overdue_repayments(self, as_of: Optional[date] = None) -> int:
        """Flag unpaid installments of active loans whose due date has passed."""
        as_of = as_of or date.today()
        active_loans = select(LoanApplication.id).where(LoanApplication.status == LoanStatus.ACTIVE)
        
        async with atomic(self.db):
            result = await self.db.execute(
                update(LoanRepayment)
                .where(
                    LoanRepayment.status.in_((RepaymentStatus.PENDING, RepaymentStatus.PARTIAL)),
                    LoanRepayment.due_date < as_of,
                    LoanRepayment.loan_application_id.in_(active_loans),
                )
                .values(status=RepaymentStatus.OVERDUE)
                .execution_options(synchronize_session=False)
            )
        
        marked = result.rowcount or 0
        if marked:
            logger.info(f"Marked {marked} loan installment(s) overdue as of {as_of}")
        return marked
    
    async def _settle(
        self,
        loan: LoanApplication,
        amount: Decimal,
        paid_at: datetime,
        payrun_id: Optional[uuid.UUID] = None,
        payrun_item_id: Optional[uuid.UUID] = None,
    ) -> List[LoanRepayment]:
        """
        Allocate ``amount`` over open installments in schedule order.
        
        Keeps the outstanding installment amounts summing to the remaining
        balance, mirrors the balance onto the loan's employee deduction, and
        completes both once nothing is left. ``amount`` must already be
        capped at the remaining balance.
        """
        balance = to_decimal(loan.remaining_balance)
        loan.total_repaid = to_decimal(loan.total_repaid) + amount
        loan.remaining_balance = balance - amount
        
        result = await self.db.execute(
            select(LoanRepayment)
            .where(
                LoanRepayment.loan_application_id == loan.id,
                LoanRepayment.status.in_(OPEN_REPAYMENT_STATUSES),
            )
            .order_by(LoanRepayment.installment_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        left = amount
        touched = []
        for repayment in result.scalars().all():
            if left <= ZERO:
                break
            already_paid = to_decimal(repayment.paid_amount)
            outstanding = to_decimal(repayment.expected_amount) - already_paid
            part = min(outstanding, left)
            left -= part
            balance -= part
            
            repayment.paid_amount = already_paid + part
            repayment.status = RepaymentStatus.PAID if part == outstanding else RepaymentStatus.PARTIAL
            repayment.paid_at = paid_at
            repayment.balance_after = balance
            repayment.payrun_id = payrun_id
            repayment.payrun_item_id = payrun_item_id
            touched.append(repayment)
        
        deduction_result = await self.db.execute(
            select(EmployeeDeduction).where(EmployeeDeduction.loan_application_id == loan.id)
        )
        deduction = deduction_result.scalars().first()
        if deduction is not None:
            deduction.remaining_amount = max(loan.remaining_balance, ZERO)
        
        if loan.remaining_balance <= ZERO:
            loan.status = LoanStatus.COMPLETED
            loan.completed_at = paid_at
            if deduction is not None:
                deduction.is_active = False
                deduction.effective_to = paid_at
            logger.info(f"Loan {loan.reference_number} fully repaid")
        
        await self.db.flush()
        return touched
    
    async def _lock_loan(self, loan_id: uuid.UUID) -> LoanApplication:
        loan = await self.db.get(LoanApplication, loan_id, with_for_update=True, populate_existing=True)
        if not loan:
            raise NotFoundException("Loan application", loan_id)
        return loan
    
    @staticmethod
    def _snapshot(loan_type: LoanType) -> Dict[str, Any]:
        return {name: getattr(loan_type, name) for name in LOAN_TYPE_FIELDS}
