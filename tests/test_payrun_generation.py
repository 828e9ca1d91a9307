"""
PayCore - Payrun Generation Tests

Cohort selection, persisted snapshots, and period uniqueness.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from paycore.models.employee import EmployeeStatus
from paycore.models.payrun import Payrun, PayrunDetailType, PayrunItem, PayrunStatus, PayrunType
from paycore.services.employee_payroll_service import EmployeePayrollService
from paycore.services.payrun_service import PayrunService, validate_period
from paycore.services.salary_structure_service import SalaryStructureService
from paycore.utils.error_handling import (
    AppException,
    DuplicatePayrunException,
    EmptyCohortException,
    InvalidPeriodException,
    ValidationException,
)


async def count_rows(session, model):
    return await session.scalar(select(func.count()).select_from(model))


@pytest.fixture
def payroll_setup(db_session, structure, employee, make_allowance, make_deduction, notifier):
    """Default employee on Grade Level 8 with housing, transport and pension."""

    async def _setup():
        structures = SalaryStructureService(db_session, notifier)
        housing = await make_allowance(
            "Housing", percentage=Decimal("20"), is_taxable=True, tax_percentage=Decimal("10")
        )
        transport = await make_allowance("Transport", amount=Decimal("5000"))
        pension = await make_deduction("Pension", percentage=Decimal("8"))
        await structures.add_allowance_to_structure(structure.id, housing.id)
        await structures.add_allowance_to_structure(structure.id, transport.id)
        await structures.add_deduction_to_structure(structure.id, pension.id)
        await structures.assign_employee(employee.id, structure.id)
        return {
            "employee_id": employee.id,
            "structure_id": structure.id,
            "housing_id": housing.id,
            "transport_id": transport.id,
        }

    return _setup


class TestPeriodValidation:

    @pytest.mark.parametrize("year, month, day", [(2025, 13, 1), (2025, 0, 1), (2025, 2, 29), (1999, 1, 1)])
    def test_invalid_periods(self, year, month, day):
        with pytest.raises(InvalidPeriodException):
            validate_period(year, month, day)

    def test_leap_day(self):
        validate_period(2024, 2, 29)


class TestSalaryPayrun:

    @pytest.mark.asyncio
    async def test_snapshot_totals_and_lines(self, db_session, payroll_setup, admin, notifier):
        ids = await payroll_setup()
        service = PayrunService(db_session, notifier)

        payrun = await service.generate_payrun(PayrunType.SALARY, 2025, 6, 1, generated_by_id=admin.id)

        assert payrun.name == "Salary Payrun - June 2025"
        assert payrun.status == PayrunStatus.DRAFT
        assert payrun.total_employees == 1
        assert payrun.total_gross_pay == Decimal("125000.00")
        assert payrun.total_deductions == Decimal("10000.00")
        assert payrun.total_net_pay == Decimal("115000.00")

        loaded = await service.get_payrun(payrun.id)
        item = loaded.items[0]
        assert item.employee_id == ids["employee_id"]
        assert item.base_salary == Decimal("100000.00")
        assert item.total_allowances == Decimal("25000.00")
        assert item.total_taxes == Decimal("2000.00")
        assert item.total_deductions == Decimal("8000.00")
        assert item.net_pay == Decimal("115000.00")

        lines = {(d.detail_type, d.description): d.amount for d in item.details}
        assert lines == {
            (PayrunDetailType.BASE_SALARY, "Base Salary"): Decimal("100000.00"),
            (PayrunDetailType.ALLOWANCE, "Housing"): Decimal("20000.00"),
            (PayrunDetailType.TAX, "Housing Tax"): Decimal("-2000.00"),
            (PayrunDetailType.ALLOWANCE, "Transport"): Decimal("5000.00"),
            (PayrunDetailType.DEDUCTION, "Pension"): Decimal("-8000.00"),
        }
        assert sum(d.amount for d in item.details) == item.net_pay

        tax_line = next(d for d in item.details if d.detail_type == PayrunDetailType.TAX)
        assert tax_line.allowance_id == ids["housing_id"]

    @pytest.mark.asyncio
    async def test_direct_allowances_are_not_paid_in_salary_runs(
        self, db_session, payroll_setup, make_allowance, notifier
    ):
        ids = await payroll_setup()
        bonus = await make_allowance("Performance Bonus", amount=Decimal("7000"))
        await EmployeePayrollService(db_session).add_allowance_to_employee(ids["employee_id"], bonus.id)

        payrun = await PayrunService(db_session, notifier).generate_payrun(PayrunType.SALARY, 2025, 6)

        assert payrun.total_gross_pay == Decimal("125000.00")

    @pytest.mark.asyncio
    async def test_direct_deduction_overrides_structure(self, db_session, payroll_setup, notifier):
        ids = await payroll_setup()
        await EmployeePayrollService(db_session).add_deduction_to_employee(
            ids["employee_id"], {"name": "pension", "amount": Decimal("3000")}
        )

        payrun = await PayrunService(db_session, notifier).generate_payrun(PayrunType.SALARY, 2025, 6)

        assert payrun.total_deductions == Decimal("5000.00")
        assert payrun.total_net_pay == Decimal("120000.00")

    @pytest.mark.asyncio
    async def test_inactive_employees_are_skipped(self, db_session, payroll_setup, make_employee, notifier):
        ids = await payroll_setup()
        leaver = await make_employee(status=EmployeeStatus.INACTIVE)
        await SalaryStructureService(db_session, notifier).assign_employee(leaver.id, ids["structure_id"])

        payrun = await PayrunService(db_session, notifier).generate_payrun(PayrunType.SALARY, 2025, 6)

        assert payrun.total_employees == 1

    @pytest.mark.asyncio
    async def test_duplicate_period_is_rejected(self, db_session, payroll_setup, notifier):
        await payroll_setup()
        service = PayrunService(db_session, notifier)
        await service.generate_payrun(PayrunType.SALARY, 2025, 6, 1)

        with pytest.raises(DuplicatePayrunException):
            await service.generate_payrun(PayrunType.SALARY, 2025, 6, 1)

        assert await count_rows(db_session, Payrun) == 1

    @pytest.mark.asyncio
    async def test_other_day_is_a_different_period(self, db_session, payroll_setup, notifier):
        await payroll_setup()
        service = PayrunService(db_session, notifier)

        await service.generate_payrun(PayrunType.SALARY, 2025, 6, 1)
        await service.generate_payrun(PayrunType.SALARY, 2025, 6, 15)

        assert await count_rows(db_session, Payrun) == 2

    @pytest.mark.asyncio
    async def test_empty_cohort_writes_nothing(self, db_session, employee, notifier):
        service = PayrunService(db_session, notifier)

        with pytest.raises(EmptyCohortException):
            await service.generate_payrun(PayrunType.SALARY, 2025, 6)

        assert await count_rows(db_session, Payrun) == 0
        assert await count_rows(db_session, PayrunItem) == 0

    @pytest.mark.asyncio
    async def test_salary_run_rejects_allowance_id(self, db_session, make_allowance, notifier):
        bonus = await make_allowance("Bonus", amount=Decimal("100"))

        with pytest.raises(ValidationException):
            await PayrunService(db_session, notifier).generate_payrun(
                PayrunType.SALARY, 2025, 6, allowance_id=bonus.id
            )

    @pytest.mark.asyncio
    async def test_concurrent_generation_creates_one_payrun(
        self, session_factory, db_session, payroll_setup, notifier
    ):
        await payroll_setup()

        async def generate():
            async with session_factory() as session:
                await PayrunService(session, notifier).generate_payrun(PayrunType.SALARY, 2025, 6, 1)

        results = await asyncio.gather(generate(), generate(), return_exceptions=True)

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], AppException)
        assert await count_rows(db_session, Payrun) == 1
        assert await count_rows(db_session, PayrunItem) == 1


class TestAllowancePayrun:

    @pytest.mark.asyncio
    async def test_direct_and_structure_holders_paid_once(
        self, db_session, payroll_setup, make_employee, notifier
    ):
        ids = await payroll_setup()
        outsider = await make_employee()
        outsider_id = outsider.id
        payroll = EmployeePayrollService(db_session)
        # held both ways; still one item
        await payroll.add_allowance_to_employee(ids["employee_id"], ids["housing_id"])
        await payroll.add_allowance_to_employee(outsider_id, ids["housing_id"])
        service = PayrunService(db_session, notifier)

        payrun = await service.generate_payrun(
            PayrunType.ALLOWANCE, 2025, 12, 20, allowance_id=ids["housing_id"]
        )

        assert payrun.name == "Housing Payrun - December 2025"
        assert payrun.total_employees == 2
        loaded = await service.get_payrun(payrun.id)
        items = {item.employee_id: item for item in loaded.items}
        assert set(items) == {ids["employee_id"], outsider_id}

        assigned_item = items[ids["employee_id"]]
        assert assigned_item.base_salary == Decimal("0.00")
        assert assigned_item.total_allowances == Decimal("20000.00")
        assert assigned_item.net_pay == Decimal("18000.00")
        assert {d.detail_type for d in assigned_item.details} == {PayrunDetailType.ALLOWANCE, PayrunDetailType.TAX}

        # no structure, so the percentage is priced off a zero base
        assert items[outsider_id].net_pay == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_allowance_run_needs_allowance_id(self, db_session, notifier):
        with pytest.raises(ValidationException):
            await PayrunService(db_session, notifier).generate_payrun(PayrunType.ALLOWANCE, 2025, 6)

    @pytest.mark.asyncio
    async def test_salary_and_allowance_runs_share_a_period(self, db_session, payroll_setup, notifier):
        ids = await payroll_setup()
        service = PayrunService(db_session, notifier)

        await service.generate_payrun(PayrunType.SALARY, 2025, 6, 1)
        await service.generate_payrun(PayrunType.ALLOWANCE, 2025, 6, 1, allowance_id=ids["transport_id"])

        with pytest.raises(DuplicatePayrunException):
            await service.generate_payrun(PayrunType.ALLOWANCE, 2025, 6, 1, allowance_id=ids["transport_id"])

    @pytest.mark.asyncio
    async def test_nobody_holds_allowance(self, db_session, employee, make_allowance, notifier):
        bonus = await make_allowance("Bonus", amount=Decimal("100"))

        with pytest.raises(EmptyCohortException):
            await PayrunService(db_session, notifier).generate_payrun(
                PayrunType.ALLOWANCE, 2025, 6, allowance_id=bonus.id
            )
