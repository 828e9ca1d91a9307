"""
PayCore - Payrun Lifecycle Tests

State machine decisions and the approve/complete/rollback operations.
"""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from paycore.models.audit import AuditAction
from paycore.models.loan import LoanStatus
from paycore.models.payrun import PayrunItem, PayrunItemDetail, PayrunStatus, PayrunType
from paycore.services.audit_service import AuditService
from paycore.services.loan_service import LoanService
from paycore.services.payrun_lifecycle import PayrunLifecycleService
from paycore.services.payrun_service import PayrunService
from paycore.services.payrun_state import PayrunAction, evaluate_transition
from paycore.services.salary_structure_service import SalaryStructureService
from paycore.utils.error_handling import (
    InvalidStateTransitionException,
    NotFoundException,
)


@pytest.fixture
def draft_payrun(db_session, structure, employee, notifier):
    """Generate a salary payrun for the default employee and return its id."""

    async def _generate(year=2025, month=6, day=1):
        structures = SalaryStructureService(db_session, notifier)
        if await structures.get_current_assignment(employee.id) is None:
            await structures.assign_employee(employee.id, structure.id)
        payrun = await PayrunService(db_session, notifier).generate_payrun(PayrunType.SALARY, year, month, day)
        return payrun.id

    return _generate


async def current_status(session, payrun_id):
    payrun = await PayrunService(session).get_payrun(payrun_id, with_items=False)
    return payrun.status


class TestTransitionRules:

    @pytest.mark.parametrize(
        "current, action, target",
        [
            (PayrunStatus.DRAFT, PayrunAction.APPROVE, PayrunStatus.APPROVED),
            (PayrunStatus.PENDING, PayrunAction.APPROVE, PayrunStatus.APPROVED),
            (PayrunStatus.APPROVED, PayrunAction.COMPLETE, PayrunStatus.PAID),
        ],
    )
    def test_allowed(self, current, action, target):
        result = evaluate_transition(current, action)

        assert result.allowed
        assert result.target == target
        assert not result.deletes

    @pytest.mark.parametrize("current", [PayrunStatus.DRAFT, PayrunStatus.PENDING, PayrunStatus.APPROVED])
    def test_rollback_deletes(self, current):
        assert evaluate_transition(current, PayrunAction.ROLLBACK).deletes

    @pytest.mark.parametrize(
        "current, action",
        [
            (PayrunStatus.DRAFT, PayrunAction.COMPLETE),
            (PayrunStatus.PENDING, PayrunAction.COMPLETE),
            (PayrunStatus.APPROVED, PayrunAction.APPROVE),
            (PayrunStatus.PAID, PayrunAction.APPROVE),
            (PayrunStatus.PAID, PayrunAction.COMPLETE),
            (PayrunStatus.PAID, PayrunAction.ROLLBACK),
        ],
    )
    def test_rejected(self, current, action):
        result = evaluate_transition(current, action)

        assert not result.allowed
        assert result.target is None
        assert current.value in result.reason

    def test_accepts_raw_values(self):
        assert evaluate_transition("approved", "complete").target == PayrunStatus.PAID


class TestApproveAndComplete:

    @pytest.mark.asyncio
    async def test_happy_path(self, db_session, draft_payrun, admin, notifier):
        payrun_id = await draft_payrun()
        admin_id = admin.id
        lifecycle = PayrunLifecycleService(db_session, notifier)

        approved = await lifecycle.approve_payrun(payrun_id, approved_by_id=admin_id)
        assert approved.status == PayrunStatus.APPROVED
        assert approved.approved_by_id == admin_id
        assert approved.approved_at is not None

        paid = await lifecycle.complete_payrun(payrun_id, completed_by_id=admin_id)
        assert paid.status == PayrunStatus.PAID
        assert paid.completed_at is not None

        item_statuses = await db_session.scalars(
            select(PayrunItem.status).where(PayrunItem.payrun_id == payrun_id)
        )
        assert set(item_statuses.all()) == {PayrunStatus.PAID}

    @pytest.mark.asyncio
    async def test_transitions_are_audited(self, db_session, draft_payrun, admin, notifier):
        payrun_id = await draft_payrun()
        admin_id = admin.id
        lifecycle = PayrunLifecycleService(db_session, notifier)
        await lifecycle.approve_payrun(payrun_id, approved_by_id=admin_id)
        await lifecycle.complete_payrun(payrun_id, completed_by_id=admin_id)

        history = await AuditService(db_session).get_entity_history("payrun", payrun_id)

        by_action = {entry.action: entry for entry in history}
        assert set(by_action) == {AuditAction.GENERATE, AuditAction.APPROVE, AuditAction.COMPLETE}
        assert by_action[AuditAction.APPROVE].actor_id == admin_id
        assert by_action[AuditAction.APPROVE].old_values == {"status": "draft"}
        assert by_action[AuditAction.COMPLETE].new_values["status"] == "paid"

    @pytest.mark.asyncio
    async def test_complete_requires_approval(self, db_session, draft_payrun, notifier):
        payrun_id = await draft_payrun()

        with pytest.raises(InvalidStateTransitionException):
            await PayrunLifecycleService(db_session, notifier).complete_payrun(payrun_id)

        assert await current_status(db_session, payrun_id) == PayrunStatus.DRAFT

    @pytest.mark.asyncio
    async def test_paid_payrun_cannot_be_approved_again(self, db_session, draft_payrun, notifier):
        payrun_id = await draft_payrun()
        lifecycle = PayrunLifecycleService(db_session, notifier)
        await lifecycle.approve_payrun(payrun_id)
        await lifecycle.complete_payrun(payrun_id)

        with pytest.raises(InvalidStateTransitionException):
            await lifecycle.approve_payrun(payrun_id)

        assert await current_status(db_session, payrun_id) == PayrunStatus.PAID

    @pytest.mark.asyncio
    async def test_unknown_payrun(self, db_session, notifier):
        with pytest.raises(NotFoundException):
            await PayrunLifecycleService(db_session, notifier).approve_payrun(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_overlapping_drafts_skip_settled_loan(self, db_session, draft_payrun, employee, notifier):
        employee_id = employee.id
        loans = LoanService(db_session, notifier)
        loan = await loans.create_loan_application({
            "employee_id": employee_id,
            "principal_amount": Decimal("100"),
            "interest_rate": Decimal("0"),
            "tenure_months": 1,
        })
        loan_id = loan.id
        await loans.review_loan(loan_id, approve=True)
        await loans.disburse_loan(loan_id)

        # both runs are generated while the loan still has a balance
        first_id = await draft_payrun(2025, 6, 1)
        second_id = await draft_payrun(2025, 6, 15)
        lifecycle = PayrunLifecycleService(db_session, notifier)
        await lifecycle.approve_payrun(first_id)
        await lifecycle.approve_payrun(second_id)
        await lifecycle.complete_payrun(first_id)

        await lifecycle.complete_payrun(second_id)

        assert await current_status(db_session, second_id) == PayrunStatus.PAID
        settled = await loans.get_loan(loan_id)
        assert settled.status == LoanStatus.COMPLETED
        assert settled.total_repaid == Decimal("100.00")
        assert settled.remaining_balance == Decimal("0.00")

        history = await AuditService(db_session).get_entity_history("payrun", second_id)
        completed = next(entry for entry in history if entry.action == AuditAction.COMPLETE)
        assert completed.new_values["loan_installments"] == 0
        skipped = completed.new_values["skipped_loan_lines"]
        assert len(skipped) == 1
        assert skipped[0]["reference_number"] == settled.reference_number
        assert skipped[0]["loan_status"] == "completed"
        assert "1 loan line(s) skipped" in completed.description

    @pytest.mark.asyncio
    async def test_line_capped_after_early_repayment(self, db_session, draft_payrun, employee, notifier):
        employee_id = employee.id
        loans = LoanService(db_session, notifier)
        loan = await loans.create_loan_application({
            "employee_id": employee_id,
            "principal_amount": Decimal("100"),
            "interest_rate": Decimal("0"),
            "tenure_months": 1,
        })
        loan_id = loan.id
        await loans.review_loan(loan_id, approve=True)
        await loans.disburse_loan(loan_id)

        payrun_id = await draft_payrun(2025, 6, 1)
        await loans.make_early_repayment(loan_id, Decimal("60"))
        lifecycle = PayrunLifecycleService(db_session, notifier)
        await lifecycle.approve_payrun(payrun_id)
        await lifecycle.complete_payrun(payrun_id)

        settled = await loans.get_loan(loan_id)
        assert settled.status == LoanStatus.COMPLETED
        assert settled.total_repaid == Decimal("100.00")

        history = await AuditService(db_session).get_entity_history("payrun", payrun_id)
        completed = next(entry for entry in history if entry.action == AuditAction.COMPLETE)
        assert completed.new_values["loan_installments"] == 1
        capped = completed.new_values["capped_loan_lines"]
        assert capped[0]["line_amount"] == "100.00"
        assert capped[0]["applied"] == "40.00"


class TestRollback:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("approve_first", [False, True])
    async def test_deletes_payrun_items_and_lines(self, db_session, draft_payrun, notifier, approve_first):
        payrun_id = await draft_payrun()
        lifecycle = PayrunLifecycleService(db_session, notifier)
        if approve_first:
            await lifecycle.approve_payrun(payrun_id)

        await lifecycle.rollback_payrun(payrun_id)

        with pytest.raises(NotFoundException):
            await PayrunService(db_session).get_payrun(payrun_id)
        assert await db_session.scalar(select(func.count()).select_from(PayrunItem)) == 0
        assert await db_session.scalar(select(func.count()).select_from(PayrunItemDetail)) == 0

    @pytest.mark.asyncio
    async def test_period_can_be_regenerated(self, db_session, draft_payrun, notifier):
        payrun_id = await draft_payrun()
        await PayrunLifecycleService(db_session, notifier).rollback_payrun(payrun_id)

        regenerated_id = await draft_payrun()

        assert regenerated_id != payrun_id

    @pytest.mark.asyncio
    async def test_paid_payrun_cannot_be_rolled_back(self, db_session, draft_payrun, notifier):
        payrun_id = await draft_payrun()
        lifecycle = PayrunLifecycleService(db_session, notifier)
        await lifecycle.approve_payrun(payrun_id)
        await lifecycle.complete_payrun(payrun_id)

        with pytest.raises(InvalidStateTransitionException):
            await lifecycle.rollback_payrun(payrun_id)

        assert await current_status(db_session, payrun_id) == PayrunStatus.PAID
        assert await db_session.scalar(select(func.count()).select_from(PayrunItem)) == 1
