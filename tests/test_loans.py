"""
PayCore - Loan Ledger Tests

Loan types and eligibility, HR review, disbursement, early repayment
and amortization through completed payruns.
"""

import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from paycore.models.audit import AuditAction
from paycore.models.loan import LoanAmountType, LoanStatus, RepaymentStatus
from paycore.models.payroll import DeductionKind, EmployeeDeduction, SalaryStructure
from paycore.models.payrun import PayrunDetailType, PayrunType
from paycore.services.audit_service import AuditService
from paycore.services.loan_service import LoanService, add_months, loan_terms, months_of_service
from paycore.services.payrun_lifecycle import PayrunLifecycleService
from paycore.services.payrun_service import PayrunService
from paycore.services.salary_structure_service import SalaryStructureService
from paycore.utils.error_handling import (
    BusinessRuleException,
    DuplicateEntryException,
    ErrorCode,
    InvalidStateTransitionException,
    NotFoundException,
    ValidationException,
)


def loan_request(employee_id, principal="300", rate="0", months=3):
    return {
        "employee_id": employee_id,
        "principal_amount": Decimal(principal),
        "interest_rate": Decimal(rate),
        "tenure_months": months,
    }


async def loan_deduction(session, loan_id):
    result = await session.execute(
        select(EmployeeDeduction)
        .where(EmployeeDeduction.loan_application_id == loan_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def make_structure(session, name="Grade Level 10", base_salary="150000.00"):
    salary_structure = SalaryStructure(
        name=name,
        base_salary=Decimal(base_salary),
        is_active=True,
        employee_count=0,
    )
    session.add(salary_structure)
    await session.commit()
    return salary_structure


def loan_type_data(*structure_ids, **overrides):
    """A 50%-of-base, six month loan type open to ``structure_ids``."""
    data = {
        "name": "Salary Advance",
        "amount_type": "percentage",
        "max_percentage": Decimal("50"),
        "tenure_months": 6,
        "interest_rate": Decimal("0"),
        "salary_structure_ids": list(structure_ids),
    }
    data.update(overrides)
    return data


async def active_loan(service, employee_id, **kwargs):
    """Create, approve and disburse a 300.00 loan over three months from 31 Jan 2025."""
    loan = await service.create_loan_application(loan_request(employee_id, **kwargs))
    loan_id = loan.id
    await service.review_loan(loan_id, approve=True)
    await service.disburse_loan(loan_id, first_due_date=date(2025, 1, 31))
    return loan_id


class TestLoanTerms:

    def test_interest_free(self):
        terms = loan_terms(Decimal("300"), Decimal("0"), 3)

        assert terms["total_amount"] == Decimal("300.00")
        assert terms["monthly_deduction"] == Decimal("100.00")
        assert terms["installments"] == [Decimal("100.00")] * 3

    def test_simple_interest(self):
        terms = loan_terms(Decimal("1200"), Decimal("10"), 12)

        assert terms["total_amount"] == Decimal("1320.00")
        assert terms["monthly_deduction"] == Decimal("110.00")
        assert len(terms["installments"]) == 12

    def test_last_installment_takes_the_remainder(self):
        terms = loan_terms(Decimal("100"), Decimal("0"), 3)

        assert terms["monthly_deduction"] == Decimal("33.34")
        assert terms["installments"] == [Decimal("33.34"), Decimal("33.34"), Decimal("33.32")]
        assert sum(terms["installments"]) == terms["total_amount"]

    @pytest.mark.parametrize(
        "start, months, expected",
        [
            (date(2025, 1, 31), 1, date(2025, 2, 28)),
            (date(2024, 1, 31), 1, date(2024, 2, 29)),
            (date(2025, 11, 15), 3, date(2026, 2, 15)),
        ],
    )
    def test_add_months(self, start, months, expected):
        assert add_months(start, months) == expected

    @pytest.mark.parametrize(
        "hire_date, as_of, expected",
        [
            (None, date(2025, 6, 1), 0),
            (date(2024, 6, 1), date(2025, 6, 1), 12),
            (date(2024, 6, 15), date(2025, 6, 14), 11),
            (date(2025, 7, 1), date(2025, 6, 1), 0),
        ],
    )
    def test_months_of_service(self, hire_date, as_of, expected):
        assert months_of_service(hire_date, as_of) == expected


class TestApplications:

    @pytest.mark.asyncio
    async def test_create_pending_application(self, db_session, employee, admin, notifier):
        loan = await LoanService(db_session, notifier).create_loan_application(
            loan_request(employee.id), created_by_id=admin.id
        )

        assert loan.status == LoanStatus.PENDING
        assert loan.reference_number.startswith("LN-")
        assert loan.reference_number.endswith("-0001")
        assert loan.remaining_balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_references_are_sequential(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)

        first = await service.create_loan_application(loan_request(employee.id))
        second = await service.create_loan_application(loan_request(employee.id))

        assert first.reference_number[:-4] == second.reference_number[:-4]
        assert second.reference_number.endswith("-0002")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [{"principal_amount": Decimal("0")}, {"tenure_months": 0}, {"interest_rate": Decimal("-1")}],
    )
    async def test_invalid_terms(self, db_session, employee, notifier, overrides):
        with pytest.raises(ValidationException):
            await LoanService(db_session, notifier).create_loan_application(
                {**loan_request(employee.id), **overrides}
            )

    @pytest.mark.asyncio
    async def test_cancelled_loan_is_final(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan = await service.create_loan_application(loan_request(employee.id))
        loan_id = loan.id

        cancelled = await service.cancel_loan_application(loan_id)
        assert cancelled.status == LoanStatus.CANCELLED

        with pytest.raises(InvalidStateTransitionException):
            await service.cancel_loan_application(loan_id)
        with pytest.raises(InvalidStateTransitionException):
            await service.disburse_loan(loan_id)

    @pytest.mark.asyncio
    async def test_unknown_loan(self, db_session, notifier):
        with pytest.raises(NotFoundException):
            await LoanService(db_session, notifier).get_repayment_schedule(uuid.uuid4())


class TestDisbursement:

    @pytest.mark.asyncio
    async def test_schedule_and_deduction(self, db_session, employee, admin, notifier):
        service = LoanService(db_session, notifier)
        loan = await service.create_loan_application(loan_request(employee.id))
        await service.review_loan(loan.id, approve=True)

        active = await service.disburse_loan(loan.id, disbursed_by_id=admin.id, first_due_date=date(2025, 1, 31))

        assert active.status == LoanStatus.ACTIVE
        assert active.total_amount == Decimal("300.00")
        assert active.monthly_deduction == Decimal("100.00")
        assert active.remaining_balance == Decimal("300.00")
        assert [r.due_date for r in active.repayments] == [
            date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 31),
        ]
        assert {r.status for r in active.repayments} == {RepaymentStatus.PENDING}

        deduction = await loan_deduction(db_session, loan.id)
        assert deduction.kind == DeductionKind.LOAN
        assert deduction.name == f"Loan: {loan.reference_number}"
        assert deduction.amount == Decimal("100.00")
        assert deduction.remaining_amount == Decimal("300.00")
        assert deduction.is_active is True

    @pytest.mark.asyncio
    async def test_disburse_twice(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan = await service.create_loan_application(loan_request(employee.id))
        loan_id = loan.id
        await service.review_loan(loan_id, approve=True)
        await service.disburse_loan(loan_id)

        with pytest.raises(InvalidStateTransitionException):
            await service.disburse_loan(loan_id)

    @pytest.mark.asyncio
    async def test_installment_requires_active_loan(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan = await service.create_loan_application(loan_request(employee.id))

        with pytest.raises(BusinessRuleException):
            await service.apply_installment(loan.id, Decimal("100"))


class TestAmortization:

    @pytest.mark.asyncio
    async def test_three_payruns_settle_the_loan(self, db_session, structure, employee, notifier):
        employee_id = employee.id
        await SalaryStructureService(db_session, notifier).assign_employee(employee_id, structure.id)
        loans = LoanService(db_session, notifier)
        loan = await loans.create_loan_application(loan_request(employee_id))
        loan_id = loan.id
        await loans.review_loan(loan_id, approve=True)
        await loans.disburse_loan(loan_id)

        payruns = PayrunService(db_session, notifier)
        lifecycle = PayrunLifecycleService(db_session, notifier)
        for month in (1, 2, 3):
            payrun = await payruns.generate_payrun(PayrunType.SALARY, 2025, month)
            loaded = await payruns.get_payrun(payrun.id)
            loan_lines = [d for d in loaded.items[0].details if d.detail_type == PayrunDetailType.LOAN]
            assert len(loan_lines) == 1
            assert loan_lines[0].amount == Decimal("-100.00")
            assert loan_lines[0].remaining_amount == Decimal(300 - 100 * month)
            assert loaded.items[0].net_pay == Decimal("99900.00")

            await lifecycle.approve_payrun(payrun.id)
            await lifecycle.complete_payrun(payrun.id)

        settled = await loans.get_loan(loan_id)
        assert settled.status == LoanStatus.COMPLETED
        assert settled.remaining_balance == Decimal("0.00")
        assert settled.total_repaid == Decimal("300.00")
        assert settled.completed_at is not None

        schedule = await loans.get_repayment_schedule(loan_id)
        assert [r.installment_number for r in schedule] == [1, 2, 3]
        assert all(r.status == RepaymentStatus.PAID for r in schedule)
        assert [r.balance_after for r in schedule] == [Decimal("200.00"), Decimal("100.00"), Decimal("0.00")]
        assert all(r.payrun_id is not None for r in schedule)

        deduction = await loan_deduction(db_session, loan_id)
        assert deduction.is_active is False
        assert deduction.remaining_amount == Decimal("0.00")

        # a fourth run no longer charges the loan
        payrun = await payruns.generate_payrun(PayrunType.SALARY, 2025, 4)
        assert payrun.total_net_pay == Decimal("100000.00")
        assert payrun.total_deductions == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_last_line_capped_at_remaining_balance(self, db_session, structure, employee, notifier):
        employee_id = employee.id
        await SalaryStructureService(db_session, notifier).assign_employee(employee_id, structure.id)
        loans = LoanService(db_session, notifier)
        loan = await loans.create_loan_application(loan_request(employee_id, principal="100", months=3))
        loan_id = loan.id
        await loans.review_loan(loan_id, approve=True)
        await loans.disburse_loan(loan_id)
        payruns = PayrunService(db_session, notifier)
        lifecycle = PayrunLifecycleService(db_session, notifier)

        for month in (1, 2, 3):
            payrun = await payruns.generate_payrun(PayrunType.SALARY, 2025, month)
            await lifecycle.approve_payrun(payrun.id)
            await lifecycle.complete_payrun(payrun.id)

        schedule = await loans.get_repayment_schedule(loan_id)
        assert [r.paid_amount for r in schedule] == [Decimal("33.34"), Decimal("33.34"), Decimal("33.32")]
        assert (await loans.get_loan(loan_id)).status == LoanStatus.COMPLETED


class TestLoanTypes:

    @pytest.mark.asyncio
    async def test_create_linked_to_structures(self, db_session, structure, admin, notifier):
        structure_id = structure.id
        service = LoanService(db_session, notifier)

        loan_type = await service.create_loan_type(
            loan_type_data(structure_id, name="  Salary   Advance ", fixed_amount=Decimal("999")),
            created_by_id=admin.id,
        )

        assert loan_type.name == "Salary Advance"
        assert loan_type.amount_type == LoanAmountType.PERCENTAGE
        assert loan_type.max_percentage == Decimal("50")
        assert loan_type.fixed_amount is None
        assert loan_type.max_active_loans == 1
        assert loan_type.salary_structure_ids == [structure_id]

        history = await AuditService(db_session).get_entity_history("loan_type", loan_type.id)
        assert [entry.action for entry in history] == [AuditAction.CREATE]

    @pytest.mark.asyncio
    async def test_duplicate_name_is_case_insensitive(self, db_session, notifier):
        service = LoanService(db_session, notifier)
        await service.create_loan_type(loan_type_data())

        with pytest.raises(DuplicateEntryException):
            await service.create_loan_type(loan_type_data(name="SALARY ADVANCE"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount_type": "fixed"},
            {"max_percentage": Decimal("120")},
            {"tenure_months": 0},
            {"max_active_loans": 0},
        ],
    )
    async def test_invalid_definition(self, db_session, notifier, overrides):
        service = LoanService(db_session, notifier)

        with pytest.raises(ValidationException):
            await service.create_loan_type(loan_type_data(**overrides))

        assert await service.list_loan_types() == []

    @pytest.mark.asyncio
    async def test_unknown_structure(self, db_session, notifier):
        with pytest.raises(NotFoundException):
            await LoanService(db_session, notifier).create_loan_type(loan_type_data(uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_update_replaces_structure_links(self, db_session, structure, notifier):
        structure_id = structure.id
        other = await make_structure(db_session)
        other_id = other.id
        service = LoanService(db_session, notifier)
        loan_type = await service.create_loan_type(loan_type_data(structure_id))

        updated = await service.update_loan_type(
            loan_type.id,
            {"tenure_months": 12, "salary_structure_ids": [other_id, structure_id]},
        )
        assert updated.tenure_months == 12
        assert updated.max_percentage == Decimal("50")
        assert sorted(updated.salary_structure_ids, key=str) == sorted([structure_id, other_id], key=str)

        updated = await service.update_loan_type(loan_type.id, {"salary_structure_ids": [other_id]})
        assert updated.salary_structure_ids == [other_id]

    @pytest.mark.asyncio
    async def test_switch_to_fixed_amount(self, db_session, notifier):
        service = LoanService(db_session, notifier)
        loan_type = await service.create_loan_type(loan_type_data())

        updated = await service.update_loan_type(
            loan_type.id, {"amount_type": "fixed", "fixed_amount": Decimal("250000")}
        )

        assert updated.amount_type == LoanAmountType.FIXED
        assert updated.fixed_amount == Decimal("250000.00")
        assert updated.max_percentage is None

    @pytest.mark.asyncio
    async def test_delete_refused_once_applied_for(self, db_session, structure, employee, notifier):
        employee_id = employee.id
        await SalaryStructureService(db_session, notifier).assign_employee(employee_id, structure.id)
        service = LoanService(db_session, notifier)
        loan_type = await service.create_loan_type(loan_type_data(structure.id))
        loan_type_id = loan_type.id
        await service.create_loan_application(
            {"employee_id": employee_id, "loan_type_id": loan_type_id, "principal_amount": Decimal("1000")}
        )

        with pytest.raises(BusinessRuleException) as exc_info:
            await service.delete_loan_type(loan_type_id)
        assert exc_info.value.code == ErrorCode.CANNOT_DELETE
        assert exc_info.value.details["violated_rule"] == "LOAN_TYPE_NOT_IN_USE"

    @pytest.mark.asyncio
    async def test_delete_unused(self, db_session, structure, notifier):
        service = LoanService(db_session, notifier)
        loan_type = await service.create_loan_type(loan_type_data(structure.id))
        loan_type_id = loan_type.id

        await service.delete_loan_type(loan_type_id)

        with pytest.raises(NotFoundException):
            await service.get_loan_type(loan_type_id)


class TestEligibility:

    @pytest.mark.asyncio
    async def test_types_open_to_current_structure(self, db_session, structure, employee, notifier):
        employee_id = employee.id
        structure_id = structure.id
        other = await make_structure(db_session)
        await SalaryStructureService(db_session, notifier).assign_employee(employee_id, structure_id)
        service = LoanService(db_session, notifier)
        await service.create_loan_type(loan_type_data(structure_id))
        await service.create_loan_type(loan_type_data(
            structure_id, name="Car Loan", amount_type="fixed", fixed_amount=Decimal("250000"),
        ))
        await service.create_loan_type(loan_type_data(structure_id, name="Retired Scheme", is_active=False))
        await service.create_loan_type(loan_type_data(other.id, name="Senior Advance"))

        eligible = await service.get_eligible_loan_types(employee_id)

        assert eligible["salary_structure_id"] == structure_id
        assert eligible["base_salary"] == Decimal("100000.00")
        assert [(e["loan_type"].name, e["max_amount"]) for e in eligible["loan_types"]] == [
            ("Car Loan", Decimal("250000.00")),
            ("Salary Advance", Decimal("50000.00")),
        ]

    @pytest.mark.asyncio
    async def test_unassigned_employee_is_eligible_for_nothing(self, db_session, structure, employee, notifier):
        service = LoanService(db_session, notifier)
        await service.create_loan_type(loan_type_data(structure.id))

        eligible = await service.get_eligible_loan_types(employee.id)

        assert eligible["salary_structure_id"] is None
        assert eligible["loan_types"] == []

    @pytest.mark.asyncio
    async def test_unknown_employee(self, db_session, notifier):
        with pytest.raises(NotFoundException):
            await LoanService(db_session, notifier).get_eligible_loan_types(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_max_amount_with_terms(self, db_session, structure, employee, notifier):
        employee_id = employee.id
        await SalaryStructureService(db_session, notifier).assign_employee(employee_id, structure.id)
        service = LoanService(db_session, notifier)
        loan_type = await service.create_loan_type(
            loan_type_data(structure.id, tenure_months=12, interest_rate=Decimal("10"))
        )

        result = await service.calculate_max_eligible_amount(employee_id, loan_type.id)

        assert result["max_amount"] == Decimal("50000.00")
        assert result["total_interest"] == Decimal("5000.00")
        assert result["total_repayment"] == Decimal("55000.00")
        assert result["monthly_repayment"] == Decimal("4583.34")
        assert result["tenure_months"] == 12

    @pytest.mark.asyncio
    async def test_max_amount_requires_assignment(self, db_session, structure, employee, notifier):
        service = LoanService(db_session, notifier)
        loan_type = await service.create_loan_type(loan_type_data(structure.id))

        with pytest.raises(BusinessRuleException) as exc_info:
            await service.calculate_max_eligible_amount(employee.id, loan_type.id)
        assert exc_info.value.details["violated_rule"] == "SALARY_ASSIGNMENT_REQUIRED"


class TestTypedApplications:

    @pytest.fixture
    def typed_setup(self, db_session, structure, make_employee, notifier):
        """Assign a fresh employee to the default structure and create a linked loan type."""

        async def _setup(hire_date=None, **type_overrides):
            staff = await make_employee(hire_date=hire_date)
            staff_id = staff.id
            await SalaryStructureService(db_session, notifier).assign_employee(staff_id, structure.id)
            loan_type = await LoanService(db_session, notifier).create_loan_type(
                loan_type_data(structure.id, **type_overrides)
            )
            return staff_id, loan_type.id

        return _setup

    @staticmethod
    def typed_request(employee_id, loan_type_id, principal="20000"):
        return {
            "employee_id": employee_id,
            "loan_type_id": loan_type_id,
            "principal_amount": Decimal(principal),
        }

    @pytest.mark.asyncio
    async def test_type_supplies_terms(self, db_session, typed_setup, notifier):
        employee_id, loan_type_id = await typed_setup(interest_rate=Decimal("5"))

        loan = await LoanService(db_session, notifier).create_loan_application({
            **self.typed_request(employee_id, loan_type_id),
            "tenure_months": 60,
            "interest_rate": Decimal("0"),
        })

        assert loan.loan_type_id == loan_type_id
        assert loan.tenure_months == 6
        assert loan.interest_rate == Decimal("5")
        assert loan.status == LoanStatus.PENDING

    @pytest.mark.asyncio
    async def test_structure_not_linked(self, db_session, structure, employee, notifier):
        employee_id = employee.id
        await SalaryStructureService(db_session, notifier).assign_employee(employee_id, structure.id)
        service = LoanService(db_session, notifier)
        loan_type = await service.create_loan_type(loan_type_data())

        with pytest.raises(BusinessRuleException) as exc_info:
            await service.create_loan_application(self.typed_request(employee_id, loan_type.id))
        assert exc_info.value.details["violated_rule"] == "LOAN_TYPE_NOT_ELIGIBLE"

    @pytest.mark.asyncio
    async def test_inactive_type(self, db_session, typed_setup, notifier):
        employee_id, loan_type_id = await typed_setup(is_active=False)

        with pytest.raises(BusinessRuleException) as exc_info:
            await LoanService(db_session, notifier).create_loan_application(
                self.typed_request(employee_id, loan_type_id)
            )
        assert exc_info.value.details["violated_rule"] == "LOAN_TYPE_INACTIVE"

    @pytest.mark.asyncio
    async def test_minimum_service(self, db_session, typed_setup, notifier):
        recent_hire = date.today() - timedelta(days=90)
        employee_id, loan_type_id = await typed_setup(hire_date=recent_hire, min_service_months=12)

        with pytest.raises(BusinessRuleException) as exc_info:
            await LoanService(db_session, notifier).create_loan_application(
                self.typed_request(employee_id, loan_type_id)
            )
        assert exc_info.value.details["violated_rule"] == "MIN_SERVICE_NOT_MET"
        assert exc_info.value.details["required"] == 12

    @pytest.mark.asyncio
    async def test_long_service_passes(self, db_session, typed_setup, notifier):
        employee_id, loan_type_id = await typed_setup(hire_date=date(2015, 1, 1), min_service_months=12)

        loan = await LoanService(db_session, notifier).create_loan_application(
            self.typed_request(employee_id, loan_type_id)
        )

        assert loan.status == LoanStatus.PENDING

    @pytest.mark.asyncio
    async def test_amount_over_cap(self, db_session, typed_setup, notifier):
        employee_id, loan_type_id = await typed_setup()

        with pytest.raises(ValidationException) as exc_info:
            await LoanService(db_session, notifier).create_loan_application(
                self.typed_request(employee_id, loan_type_id, principal="50000.01")
            )
        assert exc_info.value.code == ErrorCode.INVALID_AMOUNT
        assert exc_info.value.details["max_amount"] == "50000.00"

    @pytest.mark.asyncio
    async def test_max_active_loans(self, db_session, typed_setup, notifier):
        employee_id, loan_type_id = await typed_setup()
        service = LoanService(db_session, notifier)
        first = await service.create_loan_application(self.typed_request(employee_id, loan_type_id))
        first_id = first.id

        with pytest.raises(BusinessRuleException) as exc_info:
            await service.create_loan_application(self.typed_request(employee_id, loan_type_id))
        assert exc_info.value.details["violated_rule"] == "MAX_ACTIVE_LOANS"

        await service.cancel_loan_application(first_id)
        second = await service.create_loan_application(self.typed_request(employee_id, loan_type_id))
        assert second.status == LoanStatus.PENDING


class TestReview:

    @pytest.mark.asyncio
    async def test_approve_lower_amount(self, db_session, employee, admin, notifier):
        admin_id = admin.id
        service = LoanService(db_session, notifier)
        loan = await service.create_loan_application(loan_request(employee.id))
        loan_id = loan.id

        approved = await service.review_loan(
            loan_id, approve=True, approved_amount=Decimal("150"), remarks="Half now", reviewed_by_id=admin_id,
        )

        assert approved.status == LoanStatus.APPROVED
        assert approved.approved_amount == Decimal("150.00")
        assert approved.principal_amount == Decimal("300.00")
        assert approved.monthly_deduction == Decimal("50.00")
        assert approved.reviewed_by_id == admin_id
        assert approved.review_remarks == "Half now"
        assert approved.reviewed_at is not None

        active = await service.disburse_loan(loan_id)
        assert active.total_amount == Decimal("150.00")
        assert active.remaining_balance == Decimal("150.00")
        assert (await loan_deduction(db_session, loan_id)).remaining_amount == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_approved_amount_cannot_exceed_request(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan = await service.create_loan_application(loan_request(employee.id))
        loan_id = loan.id

        with pytest.raises(ValidationException) as exc_info:
            await service.review_loan(loan_id, approve=True, approved_amount=Decimal("300.01"))
        assert exc_info.value.code == ErrorCode.INVALID_AMOUNT

        assert (await service.get_loan(loan_id)).status == LoanStatus.PENDING

    @pytest.mark.asyncio
    async def test_reject(self, db_session, employee, admin, notifier):
        service = LoanService(db_session, notifier)
        loan = await service.create_loan_application(loan_request(employee.id))
        loan_id = loan.id

        rejected = await service.review_loan(
            loan_id, approve=False, remarks="Outstanding advance", reviewed_by_id=admin.id,
        )
        assert rejected.status == LoanStatus.REJECTED
        assert rejected.approved_amount is None

        with pytest.raises(InvalidStateTransitionException):
            await service.review_loan(loan_id, approve=True)
        with pytest.raises(InvalidStateTransitionException):
            await service.disburse_loan(loan_id)

        history = await AuditService(db_session).get_entity_history("loan_application", loan_id)
        assert AuditAction.REJECT in {entry.action for entry in history}

    @pytest.mark.asyncio
    async def test_disburse_requires_approval(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan = await service.create_loan_application(loan_request(employee.id))

        with pytest.raises(InvalidStateTransitionException):
            await service.disburse_loan(loan.id)

    @pytest.mark.asyncio
    async def test_cancel_approved(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan = await service.create_loan_application(loan_request(employee.id))
        loan_id = loan.id
        await service.review_loan(loan_id, approve=True)

        cancelled = await service.cancel_loan_application(loan_id)

        assert cancelled.status == LoanStatus.CANCELLED


class TestEarlyRepayment:

    @pytest.mark.asyncio
    async def test_partial_repayment(self, db_session, employee, admin, notifier):
        service = LoanService(db_session, notifier)
        loan_id = await active_loan(service, employee.id)

        loan = await service.make_early_repayment(loan_id, Decimal("150"), paid_by_id=admin.id)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.total_repaid == Decimal("150.00")
        assert loan.remaining_balance == Decimal("150.00")
        schedule = await service.get_repayment_schedule(loan_id)
        assert [r.status for r in schedule] == [
            RepaymentStatus.PAID, RepaymentStatus.PARTIAL, RepaymentStatus.PENDING,
        ]
        assert [r.paid_amount for r in schedule] == [Decimal("100.00"), Decimal("50.00"), None]
        assert schedule[1].balance_after == Decimal("150.00")
        assert (await loan_deduction(db_session, loan_id)).remaining_amount == Decimal("150.00")

        history = await AuditService(db_session).get_entity_history("loan_application", loan_id)
        repaid = next(entry for entry in history if entry.action == AuditAction.REPAY)
        assert repaid.new_values["installments"] == [1, 2]

        # the next repayment finishes the partial installment first
        await service.make_early_repayment(loan_id, Decimal("50"))
        schedule = await service.get_repayment_schedule(loan_id)
        assert schedule[1].status == RepaymentStatus.PAID
        assert schedule[2].status == RepaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_full_repayment_completes_the_loan(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan_id = await active_loan(service, employee.id)

        loan = await service.make_early_repayment(loan_id, Decimal("300"))

        assert loan.status == LoanStatus.COMPLETED
        assert loan.completed_at is not None
        assert all(r.status == RepaymentStatus.PAID for r in loan.repayments)
        deduction = await loan_deduction(db_session, loan_id)
        assert deduction.is_active is False
        assert deduction.remaining_amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_more_than_the_balance(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan_id = await active_loan(service, employee.id)

        with pytest.raises(ValidationException) as exc_info:
            await service.make_early_repayment(loan_id, Decimal("300.01"))
        assert exc_info.value.details["remaining_balance"] == "300.00"

        assert (await service.get_loan(loan_id)).remaining_balance == Decimal("300.00")

    @pytest.mark.asyncio
    async def test_requires_active_loan(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan = await service.create_loan_application(loan_request(employee.id))

        with pytest.raises(BusinessRuleException) as exc_info:
            await service.make_early_repayment(loan.id, Decimal("100"))
        assert exc_info.value.details["violated_rule"] == "ACTIVE_LOAN_REQUIRED"


class TestSettlement:

    @pytest.mark.asyncio
    async def test_installment_capped_at_balance(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan_id = await active_loan(service, employee.id)

        paid = await service.apply_installment(loan_id, Decimal("500"))
        await db_session.commit()

        assert [r.installment_number for r in paid] == [1, 2, 3]
        loan = await service.get_loan(loan_id)
        assert loan.status == LoanStatus.COMPLETED
        assert loan.total_repaid == Decimal("300.00")

    @pytest.mark.asyncio
    async def test_mark_overdue(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan_id = await active_loan(service, employee.id)

        assert await service.mark_overdue_repayments(as_of=date(2025, 3, 1)) == 2
        schedule = await service.get_repayment_schedule(loan_id)
        assert [r.status for r in schedule] == [
            RepaymentStatus.OVERDUE, RepaymentStatus.OVERDUE, RepaymentStatus.PENDING,
        ]

        # already overdue rows are not counted again
        assert await service.mark_overdue_repayments(as_of=date(2025, 3, 1)) == 0

        await service.make_early_repayment(loan_id, Decimal("100"))
        schedule = await service.get_repayment_schedule(loan_id)
        assert schedule[0].status == RepaymentStatus.PAID
        assert schedule[1].status == RepaymentStatus.OVERDUE

    @pytest.mark.asyncio
    async def test_completed_loans_are_not_marked(self, db_session, employee, notifier):
        service = LoanService(db_session, notifier)
        loan_id = await active_loan(service, employee.id)
        await service.make_early_repayment(loan_id, Decimal("300"))

        assert await service.mark_overdue_repayments(as_of=date(2026, 1, 1)) == 0
