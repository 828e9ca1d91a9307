"""
PayCore - Salary Structure Service

Salary structures, their allowance/deduction bindings, and the assignment
of employees to structures.

Reassignment is one transaction: the employee's open EmployeeSalary row is
closed with a guarded UPDATE, the new row is inserted, and both structures'
``employee_count`` values are recomputed from the open rows. A partial
unique index on open rows per employee makes concurrent attempts fail
rather than both succeed.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from paycore.database import atomic
from paycore.models.audit import AuditAction
from paycore.models.employee import Employee
from paycore.models.payroll import (
    Allowance,
    Deduction,
    EmployeeSalary,
    SalaryAllowance,
    SalaryDeduction,
    SalaryStructure,
)
from paycore.services.audit_service import AuditService
from paycore.services.notification_service import NotificationService
from paycore.services.rate_catalog_service import clean_name
from paycore.utils.error_handling import (
    BusinessRuleException,
    ConflictException,
    DuplicateEntryException,
    InvalidAmountException,
    ErrorCode,
    NotFoundException,
    StructureInactiveException,
    ValidationException,
)
from paycore.utils.dates import as_utc, to_naive_utc
from paycore.utils.money import ZERO, to_decimal

logger = logging.getLogger(__name__)

STRUCTURE_FIELDS = ("name", "description", "base_salary", "is_active", "employee_count")


class SalaryStructureService:
    """Service for salary structures, structure bindings and assignments."""
    
    def __init__(self, db: AsyncSession, notifier: Optional[NotificationService] = None):
        self.db = db
        self.audit = AuditService(db)
        self.notifier = notifier or NotificationService()
    
    # ===========================================
    # STRUCTURES
    # ===========================================
    
    async def _name_taken(self, name: str, exclude_id: Optional[uuid.UUID] = None) -> bool:
        query = select(SalaryStructure.id).where(func.lower(SalaryStructure.name) == name.lower())
        if exclude_id:
            query = query.where(SalaryStructure.id != exclude_id)
        result = await self.db.execute(query)
        return result.first() is not None
    
    async def create_structure(
        self,
        data: Dict[str, Any],
        created_by_id: Optional[uuid.UUID] = None,
    ) -> SalaryStructure:
        """Create a salary structure."""
        name = clean_name(data.get("name"))
        base_salary = to_decimal(data.get("base_salary"))
        if base_salary <= ZERO:
            raise InvalidAmountException(base_salary, field="base_salary", message="Base salary must be greater than 0")
        
        async with atomic(self.db):
            if await self._name_taken(name):
                raise DuplicateEntryException("Salary structure", "name", name)
            
            structure = SalaryStructure(
                name=name,
                description=data.get("description"),
                base_salary=base_salary,
                is_active=True,
                employee_count=0,
                created_by_id=created_by_id,
            )
            self.db.add(structure)
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="salary_structure",
                entity_id=structure.id,
                action=AuditAction.CREATE,
                actor_id=created_by_id,
                new_values=self._snapshot(structure),
            )
        
        logger.info(f"Salary structure created: {structure.name} ({structure.id})")
        return structure
    
    async def get_structure(self, structure_id: uuid.UUID) -> SalaryStructure:
        structure = await self.db.get(SalaryStructure, structure_id)
        if not structure:
            raise NotFoundException("Salary structure", structure_id)
        return structure
    
    async def list_structures(self, active_only: bool = False) -> List[SalaryStructure]:
        query = select(SalaryStructure).order_by(SalaryStructure.name)
        if active_only:
            query = query.where(SalaryStructure.is_active == True)  # noqa: E712
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    async def update_structure(
        self,
        structure_id: uuid.UUID,
        data: Dict[str, Any],
        updated_by_id: Optional[uuid.UUID] = None,
    ) -> SalaryStructure:
        """Update name, description or base salary."""
        structure = await self.get_structure(structure_id)
        old_values = self._snapshot(structure)
        
        async with atomic(self.db):
            if "name" in data and data["name"] is not None:
                name = clean_name(data["name"])
                if await self._name_taken(name, exclude_id=structure.id):
                    raise DuplicateEntryException("Salary structure", "name", name)
                structure.name = name
            if "description" in data:
                structure.description = data["description"]
            if data.get("base_salary") is not None:
                base_salary = to_decimal(data["base_salary"])
                if base_salary <= ZERO:
                    raise InvalidAmountException(base_salary, field="base_salary", message="Base salary must be greater than 0")
                structure.base_salary = base_salary
            structure.updated_by_id = updated_by_id
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="salary_structure",
                entity_id=structure.id,
                action=AuditAction.UPDATE,
                actor_id=updated_by_id,
                old_values=old_values,
                new_values=self._snapshot(structure),
            )
        
        return structure
    
    async def set_structure_status(
        self,
        structure_id: uuid.UUID,
        is_active: bool,
        updated_by_id: Optional[uuid.UUID] = None,
    ) -> SalaryStructure:
        """
        Activate or deactivate a structure.
        
        Deactivation is refused while any employee is assigned; the count is
        recomputed rather than read from the denormalized column.
        """
        async with atomic(self.db):
            structure = await self._lock_structure(structure_id)
            old_values = self._snapshot(structure)
            
            assigned = await self._count_assigned(structure.id)
            structure.employee_count = assigned
            if not is_active and assigned > 0:
                raise BusinessRuleException(
                    "Cannot deactivate a salary structure that has employees assigned to it",
                    rule="NO_ASSIGNED_EMPLOYEES",
                    details={"employee_count": assigned},
                )
            
            structure.is_active = is_active
            structure.updated_by_id = updated_by_id
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="salary_structure",
                entity_id=structure.id,
                action=AuditAction.UPDATE,
                actor_id=updated_by_id,
                old_values=old_values,
                new_values=self._snapshot(structure),
            )
        
        logger.info(f"Salary structure {structure.id} {'activated' if is_active else 'deactivated'}")
        return structure
    
    # ===========================================
    # STRUCTURE BINDINGS
    # ===========================================
    
    async def add_allowance_to_structure(
        self,
        structure_id: uuid.UUID,
        allowance_id: uuid.UUID,
        added_by_id: Optional[uuid.UUID] = None,
    ) -> SalaryAllowance:
        """Bind an allowance to an active structure."""
        async with atomic(self.db):
            structure = await self._lock_structure(structure_id)
            if not structure.is_active:
                raise StructureInactiveException(structure.name)
            allowance = await self.db.get(Allowance, allowance_id)
            if not allowance:
                raise NotFoundException("Allowance", allowance_id)
            
            existing = await self.db.execute(
                select(SalaryAllowance.id).where(
                    SalaryAllowance.salary_structure_id == structure_id,
                    SalaryAllowance.allowance_id == allowance_id,
                    SalaryAllowance.effective_to.is_(None),
                )
            )
            if existing.first():
                raise ConflictException(
                    f"Allowance '{allowance.name}' is already assigned to this salary structure",
                    resource_type="SalaryAllowance",
                    code=ErrorCode.DUPLICATE_ENTRY,
                )
            
            binding = SalaryAllowance(
                salary_structure_id=structure_id,
                allowance_id=allowance_id,
                effective_from=datetime.utcnow(),
            )
            self.db.add(binding)
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="salary_allowance",
                entity_id=binding.id,
                action=AuditAction.ASSIGN,
                actor_id=added_by_id,
                new_values={"salary_structure_id": structure_id, "allowance_id": allowance_id},
            )
        
        await self.db.refresh(binding, attribute_names=["allowance"])
        return binding
    
    async def remove_allowance_from_structure(
        self,
        structure_id: uuid.UUID,
        allowance_id: uuid.UUID,
        removed_by_id: Optional[uuid.UUID] = None,
    ) -> SalaryAllowance:
        """Soft-retire the active binding."""
        async with atomic(self.db):
            result = await self.db.execute(
                select(SalaryAllowance).where(
                    SalaryAllowance.salary_structure_id == structure_id,
                    SalaryAllowance.allowance_id == allowance_id,
                    SalaryAllowance.effective_to.is_(None),
                )
            )
            binding = result.scalar_one_or_none()
            if not binding:
                raise NotFoundException("Salary structure allowance", message="Allowance is not assigned to this salary structure")
            
            binding.effective_to = datetime.utcnow()
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="salary_allowance",
                entity_id=binding.id,
                action=AuditAction.UNASSIGN,
                actor_id=removed_by_id,
                old_values={"salary_structure_id": structure_id, "allowance_id": allowance_id},
            )
        
        return binding
    
    async def list_structure_allowances(
        self,
        structure_id: uuid.UUID,
        active_only: bool = True,
    ) -> List[SalaryAllowance]:
        await self.get_structure(structure_id)
        query = (
            select(SalaryAllowance)
            .options(selectinload(SalaryAllowance.allowance))
            .where(SalaryAllowance.salary_structure_id == structure_id)
            .order_by(SalaryAllowance.effective_from)
        )
        if active_only:
            query = query.where(SalaryAllowance.effective_to.is_(None))
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    async def add_deduction_to_structure(
        self,
        structure_id: uuid.UUID,
        deduction_id: uuid.UUID,
        added_by_id: Optional[uuid.UUID] = None,
    ) -> SalaryDeduction:
        """Bind a deduction to an active structure."""
        async with atomic(self.db):
            structure = await self._lock_structure(structure_id)
            if not structure.is_active:
                raise StructureInactiveException(structure.name)
            deduction = await self.db.get(Deduction, deduction_id)
            if not deduction:
                raise NotFoundException("Deduction", deduction_id)
            
            existing = await self.db.execute(
                select(SalaryDeduction.id).where(
                    SalaryDeduction.salary_structure_id == structure_id,
                    SalaryDeduction.deduction_id == deduction_id,
                    SalaryDeduction.effective_to.is_(None),
                )
            )
            if existing.first():
                raise ConflictException(
                    f"Deduction '{deduction.name}' is already assigned to this salary structure",
                    resource_type="SalaryDeduction",
                    code=ErrorCode.DUPLICATE_ENTRY,
                )
            
            binding = SalaryDeduction(
                salary_structure_id=structure_id,
                deduction_id=deduction_id,
                effective_from=datetime.utcnow(),
            )
            self.db.add(binding)
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="salary_deduction",
                entity_id=binding.id,
                action=AuditAction.ASSIGN,
                actor_id=added_by_id,
                new_values={"salary_structure_id": structure_id, "deduction_id": deduction_id},
            )
        
        await self.db.refresh(binding, attribute_names=["deduction"])
        return binding
    
    async def remove_deduction_from_structure(
        self,
        structure_id: uuid.UUID,
        deduction_id: uuid.UUID,
        removed_by_id: Optional[uuid.UUID] = None,
    ) -> SalaryDeduction:
        """Soft-retire the active binding."""
        async with atomic(self.db):
            result = await self.db.execute(
                select(SalaryDeduction).where(
                    SalaryDeduction.salary_structure_id == structure_id,
                    SalaryDeduction.deduction_id == deduction_id,
                    SalaryDeduction.effective_to.is_(None),
                )
            )
            binding = result.scalar_one_or_none()
            if not binding:
                raise NotFoundException("Salary structure deduction", message="Deduction is not assigned to this salary structure")
            
            binding.effective_to = datetime.utcnow()
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="salary_deduction",
                entity_id=binding.id,
                action=AuditAction.UNASSIGN,
                actor_id=removed_by_id,
                old_values={"salary_structure_id": structure_id, "deduction_id": deduction_id},
            )
        
        return binding
    
    async def list_structure_deductions(
        self,
        structure_id: uuid.UUID,
        active_only: bool = True,
    ) -> List[SalaryDeduction]:
        await self.get_structure(structure_id)
        query = (
            select(SalaryDeduction)
            .options(selectinload(SalaryDeduction.deduction))
            .where(SalaryDeduction.salary_structure_id == structure_id)
            .order_by(SalaryDeduction.effective_from)
        )
        if active_only:
            query = query.where(SalaryDeduction.effective_to.is_(None))
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    # ===========================================
    # EMPLOYEE ASSIGNMENT
    # ===========================================
    
    async def assign_employee(
        self,
        employee_id: uuid.UUID,
        structure_id: uuid.UUID,
        effective_from: Optional[datetime] = None,
        assigned_by_id: Optional[uuid.UUID] = None,
    ) -> EmployeeSalary:
        """
        Assign (or reassign) an employee to a salary structure.
        
        Closes the employee's open assignment at ``effective_from``, opens a
        new one, and recomputes the employee count of both structures, all
        in one transaction.
        """
        effective_from = to_naive_utc(effective_from) or datetime.utcnow()
        
        async with atomic(self.db):
            employee = await self.db.get(Employee, employee_id)
            if not employee:
                raise NotFoundException("Employee", employee_id)
            
            current = await self._active_assignment(employee_id)
            if current and current.salary_structure_id == structure_id:
                raise ConflictException(
                    "Employee is already assigned to this salary structure",
                    resource_type="EmployeeSalary",
                    code=ErrorCode.ALREADY_ASSIGNED,
                )
            
            # Lock in a stable order so two reassignments across the same
            # pair of structures cannot deadlock.
            old_structure_id = current.salary_structure_id if current else None
            locked = {}
            for sid in sorted(filter(None, {structure_id, old_structure_id}), key=str):
                locked[sid] = await self._lock_structure(sid)
            structure = locked[structure_id]
            if not structure.is_active:
                raise StructureInactiveException(structure.name)
            
            if current:
                if as_utc(effective_from) < as_utc(current.effective_from):
                    raise ValidationException(
                        "Effective date cannot precede the start of the current assignment",
                        field="effective_from",
                    )
                closed = await self.db.execute(
                    update(EmployeeSalary)
                    .where(
                        EmployeeSalary.id == current.id,
                        EmployeeSalary.effective_to.is_(None),
                    )
                    .values(effective_to=effective_from)
                )
                if closed.rowcount != 1:
                    raise ConflictException(
                        "The employee's salary assignment changed while this request was running. Please try again.",
                        resource_type="EmployeeSalary",
                    )
            
            assignment = EmployeeSalary(
                employee_id=employee_id,
                salary_structure_id=structure_id,
                effective_from=effective_from,
            )
            self.db.add(assignment)
            await self.db.flush()
            
            for sid, locked_structure in locked.items():
                locked_structure.employee_count = await self._count_assigned(sid)
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="employee_salary",
                entity_id=assignment.id,
                action=AuditAction.ASSIGN,
                actor_id=assigned_by_id,
                old_values={"salary_structure_id": old_structure_id} if old_structure_id else None,
                new_values={
                    "employee_id": employee_id,
                    "salary_structure_id": structure_id,
                    "effective_from": effective_from,
                },
            )
        
        logger.info(
            f"Employee {employee_id} assigned to structure {structure_id}"
            + (f" (was {old_structure_id})" if old_structure_id else "")
        )
        self.notifier.notify(
            "Salary structure assigned",
            f"You have been assigned to the '{structure.name}' salary structure",
            recipient_id=employee_id,
        )
        
        await self.db.refresh(assignment, attribute_names=["salary_structure"])
        return assignment
    
    async def remove_employee_from_structure(
        self,
        employee_id: uuid.UUID,
        removed_by_id: Optional[uuid.UUID] = None,
    ) -> EmployeeSalary:
        """Close the employee's open assignment without opening a new one."""
        async with atomic(self.db):
            current = await self._active_assignment(employee_id)
            if not current:
                raise NotFoundException(
                    "Employee salary",
                    message="Employee is not assigned to any salary structure",
                )
            structure = await self._lock_structure(current.salary_structure_id)
            
            closed = await self.db.execute(
                update(EmployeeSalary)
                .where(
                    EmployeeSalary.id == current.id,
                    EmployeeSalary.effective_to.is_(None),
                )
                .values(effective_to=datetime.utcnow())
            )
            if closed.rowcount != 1:
                raise ConflictException(
                    "The employee's salary assignment changed while this request was running. Please try again.",
                    resource_type="EmployeeSalary",
                )
            await self.db.flush()
            structure.employee_count = await self._count_assigned(structure.id)
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="employee_salary",
                entity_id=current.id,
                action=AuditAction.UNASSIGN,
                actor_id=removed_by_id,
                old_values={"employee_id": employee_id, "salary_structure_id": structure.id},
            )
        
        logger.info(f"Employee {employee_id} removed from structure {structure.id}")
        return current
    
    async def list_structure_employees(self, structure_id: uuid.UUID) -> List[Employee]:
        """Employees currently assigned to a structure."""
        await self.get_structure(structure_id)
        result = await self.db.execute(
            select(Employee)
            .join(EmployeeSalary, EmployeeSalary.employee_id == Employee.id)
            .where(
                EmployeeSalary.salary_structure_id == structure_id,
                EmployeeSalary.effective_to.is_(None),
            )
            .order_by(Employee.last_name, Employee.first_name)
        )
        return list(result.scalars().all())
    
    async def get_salary_history(self, employee_id: uuid.UUID) -> List[EmployeeSalary]:
        """Every assignment the employee has had, newest first."""
        employee = await self.db.get(Employee, employee_id)
        if not employee:
            raise NotFoundException("Employee", employee_id)
        result = await self.db.execute(
            select(EmployeeSalary)
            .options(selectinload(EmployeeSalary.salary_structure))
            .where(EmployeeSalary.employee_id == employee_id)
            .order_by(EmployeeSalary.effective_from.desc())
        )
        return list(result.scalars().all())
    
    async def get_current_assignment(self, employee_id: uuid.UUID) -> Optional[EmployeeSalary]:
        result = await self.db.execute(
            select(EmployeeSalary)
            .options(selectinload(EmployeeSalary.salary_structure))
            .where(
                EmployeeSalary.employee_id == employee_id,
                EmployeeSalary.effective_to.is_(None),
            )
        )
        return result.scalar_one_or_none()
    
    async def list_employees_with_payroll(self) -> List[Dict[str, Any]]:
        """Every employee with their current structure, if any."""
        result = await self.db.execute(
            select(Employee, EmployeeSalary, SalaryStructure)
            .outerjoin(
                EmployeeSalary,
                (EmployeeSalary.employee_id == Employee.id) & EmployeeSalary.effective_to.is_(None),
            )
            .outerjoin(SalaryStructure, SalaryStructure.id == EmployeeSalary.salary_structure_id)
            .order_by(Employee.last_name, Employee.first_name)
        )
        overview = []
        for employee, assignment, structure in result.all():
            overview.append({
                "employee": employee,
                "salary_structure_id": structure.id if structure else None,
                "salary_structure_name": structure.name if structure else None,
                "base_salary": structure.base_salary if structure else None,
                "effective_from": assignment.effective_from if assignment else None,
            })
        return overview
    
    # ===========================================
    # HELPERS
    # ===========================================
    
    async def _lock_structure(self, structure_id: uuid.UUID) -> SalaryStructure:
        structure = await self.db.get(SalaryStructure, structure_id, with_for_update=True, populate_existing=True)
        if not structure:
            raise NotFoundException("Salary structure", structure_id)
        return structure
    
    async def _active_assignment(self, employee_id: uuid.UUID) -> Optional[EmployeeSalary]:
        result = await self.db.execute(
            select(EmployeeSalary).where(
                EmployeeSalary.employee_id == employee_id,
                EmployeeSalary.effective_to.is_(None),
            )
        )
        return result.scalar_one_or_none()
    
    async def _count_assigned(self, structure_id: uuid.UUID) -> int:
        count = await self.db.scalar(
            select(func.count()).select_from(EmployeeSalary).where(
                EmployeeSalary.salary_structure_id == structure_id,
                EmployeeSalary.effective_to.is_(None),
            )
        )
        return count or 0
    
    @staticmethod
    def _snapshot(structure: SalaryStructure) -> Dict[str, Any]:
        return {name: getattr(structure, name) for name in STRUCTURE_FIELDS}
