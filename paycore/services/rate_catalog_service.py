"""
PayCore - Rate Catalog Service

Allowance and deduction definitions: named, reusable pay components priced
either as a percentage of base salary or as a flat amount.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.database import atomic
from paycore.models.audit import AuditAction
from paycore.models.payroll import (
    Allowance,
    AllowanceKind,
    Deduction,
    DeductionKind,
    EmployeeAllowance,
    SalaryAllowance,
    SalaryDeduction,
)
from paycore.models.payrun import Payrun
from paycore.services.audit_service import AuditService
from paycore.utils.error_handling import (
    BusinessRuleException,
    DuplicateEntryException,
    ErrorCode,
    InvalidRateDefinitionException,
    NotFoundException,
)
from paycore.utils.money import HUNDRED, ZERO, to_decimal

logger = logging.getLogger(__name__)

ALLOWANCE_FIELDS = ("name", "description", "kind", "percentage", "amount", "is_taxable", "tax_percentage")
DEDUCTION_FIELDS = ("name", "description", "kind", "percentage", "amount")


def normalize_rate(
    percentage: Optional[Any],
    amount: Optional[Any],
) -> Dict[str, Optional[Decimal]]:
    """
    Validate a percentage-or-amount pair and return the stored form.
    
    Exactly one of the two must be greater than zero; the other is stored
    as NULL.
    """
    pct = to_decimal(percentage)
    amt = to_decimal(amount)
    
    if pct < ZERO or amt < ZERO:
        raise InvalidRateDefinitionException("Percentage and amount cannot be negative")
    if pct == ZERO and amt == ZERO:
        raise InvalidRateDefinitionException(
            "Either percentage or amount must be provided and greater than 0"
        )
    if pct > ZERO and amt > ZERO:
        raise InvalidRateDefinitionException(
            "Provide either a percentage or an amount, not both"
        )
    if pct > HUNDRED:
        raise InvalidRateDefinitionException("Percentage cannot exceed 100", field="percentage")
    
    if pct > ZERO:
        return {"percentage": pct, "amount": None}
    return {"percentage": None, "amount": amt}


def normalize_tax(is_taxable: bool, tax_percentage: Optional[Any]) -> Optional[Decimal]:
    """Taxable allowances need a tax rate in (0, 100]; others store none."""
    if not is_taxable:
        return None
    tax = to_decimal(tax_percentage)
    if tax <= ZERO:
        raise InvalidRateDefinitionException(
            "Tax percentage is required for taxable allowances",
            field="tax_percentage",
        )
    if tax > HUNDRED:
        raise InvalidRateDefinitionException(
            "Tax percentage cannot exceed 100",
            field="tax_percentage",
        )
    return tax


def clean_name(name: Optional[str]) -> str:
    cleaned = " ".join((name or "").split())
    if not cleaned:
        raise InvalidRateDefinitionException("Name is required", field="name")
    return cleaned


class RateCatalogService:
    """Service for allowance and deduction definitions."""
    
    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
    
    # ===========================================
    # ALLOWANCES
    # ===========================================
    
    async def _allowance_name_taken(self, name: str, exclude_id: Optional[uuid.UUID] = None) -> bool:
        query = select(Allowance.id).where(func.lower(Allowance.name) == name.lower())
        if exclude_id:
            query = query.where(Allowance.id != exclude_id)
        result = await self.db.execute(query)
        return result.first() is not None
    
    async def create_allowance(
        self,
        data: Dict[str, Any],
        created_by_id: Optional[uuid.UUID] = None,
    ) -> Allowance:
        """Create an allowance definition."""
        name = clean_name(data.get("name"))
        rate = normalize_rate(data.get("percentage"), data.get("amount"))
        is_taxable = bool(data.get("is_taxable", False))
        tax_percentage = normalize_tax(is_taxable, data.get("tax_percentage"))
        
        async with atomic(self.db):
            if await self._allowance_name_taken(name):
                raise DuplicateEntryException("Allowance", "name", name)
            
            allowance = Allowance(
                name=name,
                description=data.get("description"),
                kind=AllowanceKind(data.get("kind") or AllowanceKind.MONTHLY),
                percentage=rate["percentage"],
                amount=rate["amount"],
                is_taxable=is_taxable,
                tax_percentage=tax_percentage,
                created_by_id=created_by_id,
            )
            self.db.add(allowance)
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="allowance",
                entity_id=allowance.id,
                action=AuditAction.CREATE,
                actor_id=created_by_id,
                new_values=self._snapshot(allowance, ALLOWANCE_FIELDS),
            )
        
        logger.info(f"Allowance created: {allowance.name} ({allowance.id})")
        return allowance
    
    async def get_allowance(self, allowance_id: uuid.UUID) -> Allowance:
        allowance = await self.db.get(Allowance, allowance_id)
        if not allowance:
            raise NotFoundException("Allowance", allowance_id)
        return allowance
    
    async def list_allowances(
        self,
        kind: Optional[AllowanceKind] = None,
        exclude_one_time: bool = False,
    ) -> List[Allowance]:
        """List allowances, optionally filtered by kind or excluding one-time ones."""
        query = select(Allowance).order_by(Allowance.name)
        if kind:
            query = query.where(Allowance.kind == AllowanceKind(kind))
        if exclude_one_time:
            query = query.where(Allowance.kind != AllowanceKind.ONE_TIME)
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    async def update_allowance(
        self,
        allowance_id: uuid.UUID,
        data: Dict[str, Any],
        updated_by_id: Optional[uuid.UUID] = None,
    ) -> Allowance:
        """
        Partially update an allowance.
        
        ``data`` holds only the fields being changed. The merged definition is
        re-validated as a whole, so switching from a percentage to an amount
        means sending the percentage as 0 (or null).
        """
        allowance = await self.get_allowance(allowance_id)
        old_values = self._snapshot(allowance, ALLOWANCE_FIELDS)
        
        merged = {**old_values, **data}
        name = clean_name(merged.get("name"))
        rate = normalize_rate(merged.get("percentage"), merged.get("amount"))
        is_taxable = bool(merged.get("is_taxable"))
        tax_percentage = normalize_tax(is_taxable, merged.get("tax_percentage"))
        
        async with atomic(self.db):
            if await self._allowance_name_taken(name, exclude_id=allowance.id):
                raise DuplicateEntryException("Allowance", "name", name)
            
            allowance.name = name
            allowance.description = merged.get("description")
            allowance.kind = AllowanceKind(merged.get("kind") or allowance.kind)
            allowance.percentage = rate["percentage"]
            allowance.amount = rate["amount"]
            allowance.is_taxable = is_taxable
            allowance.tax_percentage = tax_percentage
            allowance.updated_by_id = updated_by_id
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="allowance",
                entity_id=allowance.id,
                action=AuditAction.UPDATE,
                actor_id=updated_by_id,
                old_values=old_values,
                new_values=self._snapshot(allowance, ALLOWANCE_FIELDS),
            )
        
        await self.db.refresh(allowance)
        return allowance
    
    async def delete_allowance(
        self,
        allowance_id: uuid.UUID,
        deleted_by_id: Optional[uuid.UUID] = None,
    ) -> None:
        """
        Delete an allowance that was never used.
        
        Rejected while any binding row references it, retired ones included,
        or a payrun was generated for it. Binding history is never removed,
        so an allowance that has ever been bound stays in the catalog.
        """
        allowance = await self.get_allowance(allowance_id)
        
        async with atomic(self.db):
            usage = await self._binding_usage(
                (SalaryAllowance, SalaryAllowance.allowance_id),
                (EmployeeAllowance, EmployeeAllowance.allowance_id),
                component_id=allowance_id,
            )
            usage["payruns"] = await self.db.scalar(
                select(func.count()).select_from(Payrun).where(Payrun.allowance_id == allowance_id)
            )
            if any(usage.values()):
                raise BusinessRuleException(
                    f"Allowance '{allowance.name}' is in use and cannot be deleted",
                    rule="ALLOWANCE_NOT_IN_USE",
                    code=ErrorCode.CANNOT_DELETE,
                    details=usage,
                )
        
            await self.audit.log_action(
                entity_type="allowance",
                entity_id=allowance.id,
                action=AuditAction.DELETE,
                actor_id=deleted_by_id,
                old_values=self._snapshot(allowance, ALLOWANCE_FIELDS),
            )
            await self.db.delete(allowance)
        
        logger.info(f"Allowance deleted: {allowance_id}")
    
    # ===========================================
    # DEDUCTIONS
    # ===========================================
    
    async def _deduction_name_taken(self, name: str, exclude_id: Optional[uuid.UUID] = None) -> bool:
        query = select(Deduction.id).where(func.lower(Deduction.name) == name.lower())
        if exclude_id:
            query = query.where(Deduction.id != exclude_id)
        result = await self.db.execute(query)
        return result.first() is not None
    
    async def create_deduction(
        self,
        data: Dict[str, Any],
        created_by_id: Optional[uuid.UUID] = None,
    ) -> Deduction:
        """Create a deduction definition."""
        name = clean_name(data.get("name"))
        rate = normalize_rate(data.get("percentage"), data.get("amount"))
        
        async with atomic(self.db):
            if await self._deduction_name_taken(name):
                raise DuplicateEntryException("Deduction", "name", name)
            
            deduction = Deduction(
                name=name,
                description=data.get("description"),
                kind=DeductionKind(data.get("kind") or DeductionKind.RECURRING),
                percentage=rate["percentage"],
                amount=rate["amount"],
                created_by_id=created_by_id,
            )
            self.db.add(deduction)
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="deduction",
                entity_id=deduction.id,
                action=AuditAction.CREATE,
                actor_id=created_by_id,
                new_values=self._snapshot(deduction, DEDUCTION_FIELDS),
            )
        
        logger.info(f"Deduction created: {deduction.name} ({deduction.id})")
        return deduction
    
    async def get_deduction(self, deduction_id: uuid.UUID) -> Deduction:
        deduction = await self.db.get(Deduction, deduction_id)
        if not deduction:
            raise NotFoundException("Deduction", deduction_id)
        return deduction
    
    async def list_deductions(self, recurring_only: bool = False) -> List[Deduction]:
        """List deductions; ``recurring_only`` drops one-time kinds."""
        query = select(Deduction).order_by(Deduction.name)
        if recurring_only:
            query = query.where(Deduction.kind != DeductionKind.ONE_TIME)
        result = await self.db.execute(query)
        return list(result.scalars().all())
    
    async def update_deduction(
        self,
        deduction_id: uuid.UUID,
        data: Dict[str, Any],
        updated_by_id: Optional[uuid.UUID] = None,
    ) -> Deduction:
        """Partially update a deduction, re-validating the merged definition."""
        deduction = await self.get_deduction(deduction_id)
        old_values = self._snapshot(deduction, DEDUCTION_FIELDS)
        
        merged = {**old_values, **data}
        name = clean_name(merged.get("name"))
        rate = normalize_rate(merged.get("percentage"), merged.get("amount"))
        
        async with atomic(self.db):
            if await self._deduction_name_taken(name, exclude_id=deduction.id):
                raise DuplicateEntryException("Deduction", "name", name)
            
            deduction.name = name
            deduction.description = merged.get("description")
            deduction.kind = DeductionKind(merged.get("kind") or deduction.kind)
            deduction.percentage = rate["percentage"]
            deduction.amount = rate["amount"]
            deduction.updated_by_id = updated_by_id
            await self.db.flush()
            
            await self.audit.log_action(
                entity_type="deduction",
                entity_id=deduction.id,
                action=AuditAction.UPDATE,
                actor_id=updated_by_id,
                old_values=old_values,
                new_values=self._snapshot(deduction, DEDUCTION_FIELDS),
            )
        
        await self.db.refresh(deduction)
        return deduction
    
    async def delete_deduction(
        self,
        deduction_id: uuid.UUID,
        deleted_by_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Delete a deduction no structure has ever had bound."""
        deduction = await self.get_deduction(deduction_id)
        
        async with atomic(self.db):
            usage = await self._binding_usage(
                (SalaryDeduction, SalaryDeduction.deduction_id),
                component_id=deduction_id,
            )
            if any(usage.values()):
                raise BusinessRuleException(
                    f"Deduction '{deduction.name}' is in use and cannot be deleted",
                    rule="DEDUCTION_NOT_IN_USE",
                    code=ErrorCode.CANNOT_DELETE,
                    details=usage,
                )
        
            await self.audit.log_action(
                entity_type="deduction",
                entity_id=deduction.id,
                action=AuditAction.DELETE,
                actor_id=deleted_by_id,
                old_values=self._snapshot(deduction, DEDUCTION_FIELDS),
            )
            await self.db.delete(deduction)
        
        logger.info(f"Deduction deleted: {deduction_id}")
    
    async def _binding_usage(self, *bindings: Any, component_id: uuid.UUID) -> Dict[str, int]:
        """Open and retired binding rows referencing a component, over ``(model, column)`` pairs."""
        usage = {"active_bindings": 0, "retired_bindings": 0}
        for model, column in bindings:
            total = await self.db.scalar(
                select(func.count()).select_from(model).where(column == component_id)
            )
            active = await self.db.scalar(
                select(func.count()).select_from(model).where(
                    column == component_id,
                    model.effective_to.is_(None),
                )
            )
            usage["active_bindings"] += active or 0
            usage["retired_bindings"] += (total or 0) - (active or 0)
        return usage
    
    @staticmethod
    def _snapshot(obj: Any, fields: tuple) -> Dict[str, Any]:
        return {name: getattr(obj, name) for name in fields}
