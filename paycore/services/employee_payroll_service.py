"""
PayCore - Employee Payroll Bindings

Allowances and deductions bound directly to an employee, bypassing the
salary structure. Direct deductions override structure deductions of the
same name when take-home pay is computed.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from paycore.database import atomic
from paycore.models.audit import AuditAction
from paycore.models.employee import Employee
from paycore.models.payroll import (
    Allowance,
    Deduction,
    DeductionKind,
    EmployeeAllowance,
    EmployeeDeduction,
    SalaryStructure,
)
from paycore.services.audit_service import AuditService
from paycore.services.rate_catalog_service import clean_name, normalize_rate
from paycore.utils.dates import to_naive_utc
from paycore.utils.error_handling import (
    BusinessRuleException,
    ConflictException,
    ErrorCode,
    NotFoundException,
    ValidationException,
)
from paycore.utils.money import ZERO, to_decimal

logger = logging.getLogger(__name__)

DEDUCTION_FIELDS = ("name", "kind", "percentage", "amount", "original_amount", "remaining_amount", "is_active")


class EmployeePayrollService:
    """Service for direct employee allowance/deduction bindings."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
    
    async def _get_employee(self, employee_id: uuid.UUID) -> Employee:
        employee = await self.db.get(Employee, employee_id)
        if not employee:
            raise NotFoundException("Employee", employee_id)
        return employee
    
    # ===========================================
    # ALLOWANCES
    # ===========================================
    
    async def add_allowance_to_employee(
        self,
        employee_id: uuid.UUID,
        allowance_id: uuid.UUID,
        effective_from: Optional[datetime] = None,
        added_by_id: Optional[uuid.UUID] = None,
    ) -> EmployeeAllowance:
        """Bind an allowance directly to an employee."""
        async with atomic(self.db):
            await self._get_employee(employee_id)
            allowance = await self.db.get(Allowance, allowance_id)
            if not allowance:
                raise NotFoundException("Allowance", allowance_id)
            
            existing = await self.db.execute(
                select(EmployeeAllowance.id).where(
                    EmployeeAllowance.employee_id == employee_id,
                    EmployeeAllowance.allowance_id == allowance_id,
                    EmployeeAllowance.effective_to.is_(None),
                )
            )
            if existing.first():
                raise ConflictException(
                    f"Allowance '{allowance.name}' is already assigned to this employee",
                    resource_type="EmployeeAllowance",
                    code=ErrorCode.DUPLICATE_ENTRY,
                )
            
            binding = EmployeeAllowance(
                employee_id=employee_id,
                allowance_id=allowance_id,
                effective_from=to_naive_utc(effective_from) or datetime.utcnow(),
            )
            self.db.add(binding)
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="employee_allowance",
                entity_id=binding.id,
                action=AuditAction.ASSIGN,
                actor_id=added_by_id,
                new_values={"employee_id": employee_id, "allowance_id": allowance_id},
            )
        
        await self.db.refresh(binding, attribute_names=["allowance"])
        return binding
    
    async def remove_allowance_from_employee(
        self,
        employee_id: uuid.UUID,
        allowance_id: uuid.UUID,
        removed_by_id: Optional[uuid.UUID] = None,
    ) -> EmployeeAllowance:
        async with atomic(self.db):
            result = await self.db.execute(
                select(EmployeeAllowance).where(
                    EmployeeAllowance.employee_id == employee_id,
                    EmployeeAllowance.allowance_id == allowance_id,
                    EmployeeAllowance.effective_to.is_(None),
                )
            )
            binding = result.scalar_one_or_none()
            if not binding:
                raise NotFoundException("Employee allowance", message="Allowance is not assigned to this employee")
            
            binding.effective_to = datetime.utcnow()
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="employee_allowance",
                entity_id=binding.id,
                action=AuditAction.UNASSIGN,
                actor_id=removed_by_id,
                old_values={"employee_id": employee_id, "allowance_id": allowance_id},
            )
        
        return binding
    
    async def list_employee_allowances(
        self,
        employee_id: uuid.UUID,
        active_only: bool = True,
    ) -> List[EmployeeAllowance]:
        await self._get_employee(employee_id)
        query = (
            select(EmployeeAllowance)
            .options(selectinload(EmployeeAllowance.allowance))
            .where(EmployeeAllowance.employee_id == employee_id)
            .order_by(EmployeeAllowance.effective_from)
        )
        if active_only:
            query = query.where(EmployeeAllowance.effective_to.is_(None))
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    # ===========================================
    # DEDUCTIONS
    # ===========================================
    
    async def add_deduction_to_employee(
        self,
        employee_id: uuid.UUID,
        data: Dict[str, Any],
        added_by_id: Optional[uuid.UUID] = None,
    ) -> EmployeeDeduction:
        """
        Bind a deduction directly to an employee.
        
        When ``deduction_id`` is given the catalog entry supplies the name
        and rate unless overridden in ``data``. ``original_amount`` marks an
        amortizing deduction and seeds ``remaining_amount``.
        """
        kind = DeductionKind(data.get("kind") or DeductionKind.RECURRING)
        if kind == DeductionKind.LOAN:
            raise BusinessRuleException(
                "Loan deductions are created when a loan is disbursed",
                rule="LOAN_DEDUCTION_FROM_LEDGER",
            )
        
        async with atomic(self.db):
            await self._get_employee(employee_id)
            
            catalog = None
            if data.get("deduction_id"):
                catalog = await self.db.get(Deduction, data["deduction_id"])
                if not catalog:
                    raise NotFoundException("Deduction", data["deduction_id"])
            if data.get("salary_structure_id"):
                structure = await self.db.get(SalaryStructure, data["salary_structure_id"])
                if not structure:
                    raise NotFoundException("Salary structure", data["salary_structure_id"])
            
            name = clean_name(data.get("name") or (catalog.name if catalog else None))
            if data.get("percentage") is None and data.get("amount") is None and catalog:
                rate = normalize_rate(catalog.percentage, catalog.amount)
            else:
                rate = normalize_rate(data.get("percentage"), data.get("amount"))
            
            original_amount = data.get("original_amount")
            if original_amount is not None and to_decimal(original_amount) <= ZERO:
                raise ValidationException(
                    "Original amount must be greater than 0",
                    field="original_amount",
                    code=ErrorCode.INVALID_AMOUNT,
                )
            
            deduction = EmployeeDeduction(
                employee_id=employee_id,
                deduction_id=catalog.id if catalog else None,
                salary_structure_id=data.get("salary_structure_id"),
                name=name,
                kind=kind,
                percentage=rate["percentage"],
                amount=rate["amount"],
                original_amount=original_amount,
                remaining_amount=original_amount,
                is_active=True,
                effective_from=to_naive_utc(data.get("effective_from")) or datetime.utcnow(),
                created_by_id=added_by_id,
            )
            self.db.add(deduction)
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="employee_deduction",
                entity_id=deduction.id,
                action=AuditAction.CREATE,
                actor_id=added_by_id,
                new_values=self._snapshot(deduction),
            )
        
        logger.info(f"Deduction '{name}' bound to employee {employee_id}")
        return deduction
    
    async def get_employee_deduction(self, employee_deduction_id: uuid.UUID) -> EmployeeDeduction:
        deduction = await self.db.get(EmployeeDeduction, employee_deduction_id)
        if not deduction:
            raise NotFoundException("Employee deduction", employee_deduction_id)
        return deduction
    
    async def update_employee_deduction(
        self,
        employee_deduction_id: uuid.UUID,
        data: Dict[str, Any],
        updated_by_id: Optional[uuid.UUID] = None,
    ) -> EmployeeDeduction:
        """Change the name, rate or remaining balance of a direct deduction."""
        deduction = await self.get_employee_deduction(employee_deduction_id)
        if deduction.loan_application_id:
            raise BusinessRuleException(
                "Loan deductions are maintained by the loan ledger",
                rule="LOAN_DEDUCTION_FROM_LEDGER",
            )
        old_values = self._snapshot(deduction)
        merged = {**old_values, **data}
        
        name = clean_name(merged.get("name"))
        rate = normalize_rate(merged.get("percentage"), merged.get("amount"))
        
        async with atomic(self.db):
            deduction.name = name
            deduction.percentage = rate["percentage"]
            deduction.amount = rate["amount"]
            if "remaining_amount" in data:
                deduction.remaining_amount = data["remaining_amount"]
            deduction.updated_by_id = updated_by_id
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="employee_deduction",
                entity_id=deduction.id,
                action=AuditAction.UPDATE,
                actor_id=updated_by_id,
                old_values=old_values,
                new_values=self._snapshot(deduction),
            )
        
        return deduction
    
    async def deactivate_employee_deduction(
        self,
        employee_deduction_id: uuid.UUID,
        deactivated_by_id: Optional[uuid.UUID] = None,
    ) -> EmployeeDeduction:
        """Soft-retire a direct deduction."""
        async with atomic(self.db):
            deduction = await self.get_employee_deduction(employee_deduction_id)
            if not deduction.is_active or deduction.effective_to is not None:
                raise ConflictException(
                    "Deduction is already inactive",
                    resource_type="EmployeeDeduction",
                )
            old_values = self._snapshot(deduction)
            deduction.is_active = False
            deduction.effective_to = datetime.utcnow()
            deduction.updated_by_id = deactivated_by_id
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="employee_deduction",
                entity_id=deduction.id,
                action=AuditAction.UNASSIGN,
                actor_id=deactivated_by_id,
                old_values=old_values,
                new_values=self._snapshot(deduction),
            )
        
        return deduction
    
    async def list_employee_deductions(
        self,
        employee_id: uuid.UUID,
        active_only: bool = True,
    ) -> List[EmployeeDeduction]:
        await self._get_employee(employee_id)
        query = (
            select(EmployeeDeduction)
            .where(EmployeeDeduction.employee_id == employee_id)
            .order_by(EmployeeDeduction.effective_from)
        )
        if active_only:
            query = query.where(
                EmployeeDeduction.is_active == True,  # noqa: E712
                EmployeeDeduction.effective_to.is_(None),
            )
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    @staticmethod
    def _snapshot(deduction: EmployeeDeduction) -> Dict[str, Any]:
        return {name: getattr(deduction, name) for name in DEDUCTION_FIELDS}
