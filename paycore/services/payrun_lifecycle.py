"""
PayCore - Payrun Lifecycle Service

Approve, complete and roll back payruns. Each action locks the payrun row,
asks the state machine whether it may proceed, and applies the result in
one transaction. Completion settles each loan line against the loan ledger
as it stands, skipping lines for loans that are already closed.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.database import atomic
from paycore.models.audit import AuditAction
from paycore.models.payrun import Payrun, PayrunDetailType, PayrunItem, PayrunItemDetail
from paycore.services.audit_service import AuditService
from paycore.services.loan_service import LoanService
from paycore.services.notification_service import NotificationService
from paycore.services.payrun_state import PayrunAction, TransitionResult, evaluate_transition
from paycore.utils.error_handling import (
    BusinessRuleException,
    InvalidStateTransitionException,
    NotFoundException,
)

logger = logging.getLogger(__name__)


class PayrunLifecycleService:
    """State transitions of existing payruns."""
    
    def __init__(self, db: AsyncSession, notifier: Optional[NotificationService] = None):
        self.db = db
        self.audit = AuditService(db)
        self.notifier = notifier or NotificationService()
    
    async def approve_payrun(
        self,
        payrun_id: uuid.UUID,
        approved_by_id: Optional[uuid.UUID] = None,
    ) -> Payrun:
        now = datetime.utcnow()
        async with atomic(self.db):
            payrun = await self._load_for_update(payrun_id)
            transition = self._check(payrun, PayrunAction.APPROVE)
            old_status = payrun.status
            
            payrun.status = transition.target
            payrun.approved_by_id = approved_by_id
            payrun.approved_at = now
            await self._cascade_item_status(payrun)
            
            await self.audit.log_action(
                entity_type="payrun",
                entity_id=payrun.id,
                action=AuditAction.APPROVE,
                actor_id=approved_by_id,
                old_values={"status": old_status},
                new_values={"status": transition.target},
            )
        
        logger.info(f"Payrun approved: {payrun.name} ({payrun.id})")
        self.notifier.notify(
            "Payrun approved",
            f"{payrun.name} has been approved",
            context={"payrun_id": str(payrun.id)},
        )
        return payrun
    
    async def complete_payrun(
        self,
        payrun_id: uuid.UUID,
        completed_by_id: Optional[uuid.UUID] = None,
    ) -> Payrun:
        """
        Mark an approved payrun paid and settle its loan lines.
        
        Each loan line is settled against the loan as it stands at
        completion: lines for loans that an earlier payrun already closed are
        skipped, and lines larger than the remaining balance are capped.
        Both are logged at WARNING and listed in the COMPLETE audit entry. A
        loan that appears twice in the run aborts the completion.
        """
        now = datetime.utcnow()
        async with atomic(self.db):
            payrun = await self._load_for_update(payrun_id)
            transition = self._check(payrun, PayrunAction.COMPLETE)
            old_status = payrun.status
            
            result = await self.db.execute(
                select(PayrunItemDetail, PayrunItem.id)
                .join(PayrunItem, PayrunItem.id == PayrunItemDetail.payrun_item_id)
                .where(
                    PayrunItem.payrun_id == payrun.id,
                    PayrunItemDetail.detail_type == PayrunDetailType.LOAN,
                    PayrunItemDetail.loan_application_id.isnot(None),
                )
                .order_by(PayrunItem.id, PayrunItemDetail.id)
            )
            loan_lines = result.all()
            
            seen = set()
            for detail, _ in loan_lines:
                if detail.loan_application_id in seen:
                    raise BusinessRuleException(
                        f"Loan {detail.loan_application_id} appears more than once in payrun {payrun.name}",
                        rule="ONE_INSTALLMENT_PER_LOAN",
                    )
                seen.add(detail.loan_application_id)
            
            loans = LoanService(self.db)
            outcomes = []
            for detail, item_id in loan_lines:
                amount = detail.original_amount if detail.original_amount is not None else -detail.amount
                outcomes.append(await loans.settle_payrun_line(
                    detail.loan_application_id,
                    amount,
                    payrun_id=payrun.id,
                    payrun_item_id=item_id,
                    paid_at=now,
                ))
            settled = [o for o in outcomes if o["result"] != "skipped"]
            skipped = [o for o in outcomes if o["result"] == "skipped"]
            capped = [o for o in outcomes if o["result"] == "capped"]
            
            payrun.status = transition.target
            payrun.completed_by_id = completed_by_id
            payrun.completed_at = now
            await self._cascade_item_status(payrun)
            
            new_values = {"status": transition.target, "loan_installments": len(settled)}
            if skipped:
                new_values["skipped_loan_lines"] = skipped
            if capped:
                new_values["capped_loan_lines"] = capped
            await self.audit.log_action(
                entity_type="payrun",
                entity_id=payrun.id,
                action=AuditAction.COMPLETE,
                actor_id=completed_by_id,
                old_values={"status": old_status},
                new_values=new_values,
                description=(
                    f"{len(skipped)} loan line(s) skipped, {len(capped)} capped"
                    if skipped or capped else None
                ),
            )
        
        logger.info(
            f"Payrun completed: {payrun.name} ({payrun.id}), "
            f"{len(settled)} loan installment(s) settled, {len(skipped)} skipped"
        )
        self.notifier.notify(
            "Payrun paid",
            f"{payrun.name} has been marked as paid",
            context={"payrun_id": str(payrun.id)},
        )
        return payrun
    
    async def rollback_payrun(
        self,
        payrun_id: uuid.UUID,
        rolled_back_by_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Delete an unpaid payrun with all of its items and lines."""
        async with atomic(self.db):
            payrun = await self._load_for_update(payrun_id)
            self._check(payrun, PayrunAction.ROLLBACK)
            name = payrun.name
            snapshot = {
                "name": payrun.name,
                "status": payrun.status,
                "period": payrun.period_label,
                "total_employees": payrun.total_employees,
                "total_net_pay": payrun.total_net_pay,
            }
            
            item_ids = select(PayrunItem.id).where(PayrunItem.payrun_id == payrun.id)
            await self.db.execute(
                delete(PayrunItemDetail)
                .where(PayrunItemDetail.payrun_item_id.in_(item_ids))
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(
                delete(PayrunItem)
                .where(PayrunItem.payrun_id == payrun.id)
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(
                delete(Payrun)
                .where(Payrun.id == payrun.id)
                .execution_options(synchronize_session=False)
            )
            self.db.expunge(payrun)
            
            await self.audit.log_action(
                entity_type="payrun",
                entity_id=payrun_id,
                action=AuditAction.ROLLBACK,
                actor_id=rolled_back_by_id,
                old_values=snapshot,
            )
        
        logger.info(f"Payrun rolled back: {name} ({payrun_id})")
        self.notifier.notify(
            "Payrun rolled back",
            f"{name} has been rolled back",
            context={"payrun_id": str(payrun_id)},
        )
    
    async def _load_for_update(self, payrun_id: uuid.UUID) -> Payrun:
        result = await self.db.execute(
            select(Payrun)
            .where(Payrun.id == payrun_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payrun = result.scalar_one_or_none()
        if not payrun:
            raise NotFoundException("Payrun", payrun_id)
        return payrun
    
    def _check(self, payrun: Payrun, action: PayrunAction) -> TransitionResult:
        transition = evaluate_transition(payrun.status, action)
        if not transition.allowed:
            logger.warning(
                f"Rejected {action.value} on payrun {payrun.id}: {transition.reason}"
            )
            raise InvalidStateTransitionException(
                "Payrun",
                payrun.status.value,
                action.value,
                transition.reason,
            )
        return transition
    
    async def _cascade_item_status(self, payrun: Payrun) -> None:
        await self.db.execute(
            update(PayrunItem)
            .where(PayrunItem.payrun_id == payrun.id)
            .values(status=payrun.status)
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
