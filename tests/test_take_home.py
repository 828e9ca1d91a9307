"""
PayCore - Take-Home Calculator Tests

Unit tests for the pure pricing functions.
"""

import uuid
from decimal import Decimal

import pytest

from paycore.services.take_home import (
    SOURCE_EMPLOYEE,
    SOURCE_STRUCTURE,
    AllowanceRate,
    DeductionRate,
    LoanBalance,
    TakeHomeResult,
    compute_allowance_line,
    compute_loan_line,
    compute_take_home,
    deduction_key,
    merge_deductions_by_name,
)
from paycore.utils.money import percent_of, to_decimal, to_money


class TestDecimalExactness:
    """Percentages are applied without float drift."""

    def test_seven_and_a_half_percent_of_odd_base(self):
        line = compute_allowance_line(
            AllowanceRate(allowance_id=None, name="Housing", percentage=Decimal("7.5")),
            Decimal("123456.78"),
        )

        assert line.gross_value == Decimal("9259.2585")
        assert line.net_value == Decimal("9259.2585")

    @pytest.mark.parametrize(
        "base, pct, expected",
        [
            ("100000.00", "10", "10000.00"),
            ("123456.78", "7.5", "9259.2585"),
            ("0.01", "33.33", "0.003333"),
            ("98765.43", "12.25", "12098.765175"),
        ],
    )
    def test_representative_pairs(self, base, pct, expected):
        assert percent_of(Decimal(pct), Decimal(base)) == Decimal(expected)

    def test_floats_are_rejected(self):
        with pytest.raises(TypeError):
            to_decimal(0.1)

    def test_money_rounds_half_up(self):
        assert to_money(Decimal("9259.2585")) == Decimal("9259.26")
        assert to_money(Decimal("0.005")) == Decimal("0.01")


class TestAllowanceLines:

    def test_flat_amount_ignores_base(self):
        line = compute_allowance_line(
            AllowanceRate(allowance_id=None, name="Transport", amount=Decimal("15000")),
            Decimal("250000"),
        )
        assert line.gross_value == Decimal("15000")

    def test_taxable_allowance_nets_out_tax(self):
        line = compute_allowance_line(
            AllowanceRate(
                allowance_id=None,
                name="Housing",
                percentage=Decimal("20"),
                is_taxable=True,
                tax_percentage=Decimal("10"),
            ),
            Decimal("100000"),
        )

        assert line.gross_value == Decimal("20000")
        assert line.tax_amount == Decimal("2000")
        assert line.net_value == Decimal("18000")

    def test_tax_rate_ignored_when_not_taxable(self):
        line = compute_allowance_line(
            AllowanceRate(
                allowance_id=None,
                name="Meal",
                amount=Decimal("5000"),
                is_taxable=False,
                tax_percentage=Decimal("10"),
            ),
            Decimal("100000"),
        )
        assert line.tax_amount == Decimal("0")


class TestDeductionMerge:
    """Employee deductions override structure deductions of the same name."""

    def test_employee_value_wins(self):
        result = compute_take_home(
            base_salary=Decimal("100000"),
            structure_deductions=[
                DeductionRate(name="Pension", percentage=Decimal("8"), source=SOURCE_STRUCTURE),
            ],
            employee_deductions=[
                DeductionRate(name="Pension", percentage=Decimal("10"), source=SOURCE_EMPLOYEE),
            ],
        )

        pension = [d for d in result.deductions if deduction_key(d.name) == "pension"]
        assert len(pension) == 1
        assert pension[0].value == Decimal("10000")
        assert pension[0].source == SOURCE_EMPLOYEE

    def test_names_match_case_and_whitespace_insensitively(self):
        merged = merge_deductions_by_name(
            [DeductionRate(name="Union  Dues", amount=Decimal("500"))],
            [DeductionRate(name="union dues", amount=Decimal("750"), source=SOURCE_EMPLOYEE)],
        )

        assert len(merged) == 1
        assert merged[0].amount == Decimal("750")

    def test_distinct_names_are_kept(self):
        merged = merge_deductions_by_name(
            [DeductionRate(name="Pension", percentage=Decimal("8"))],
            [DeductionRate(name="Cooperative", amount=Decimal("2000"), source=SOURCE_EMPLOYEE)],
        )
        assert [d.name for d in merged] == ["Pension", "Cooperative"]


class TestLoanLines:

    def test_installment_capped_at_remaining(self):
        line = compute_loan_line(LoanBalance(
            loan_application_id=uuid.uuid4(),
            reference_number="LN-2026-0001",
            monthly_deduction=Decimal("100.00"),
            remaining_balance=Decimal("40.00"),
        ))

        assert line.installment == Decimal("40.00")
        assert line.remaining_after == Decimal("0.00")

    def test_settled_loan_produces_no_line(self):
        line = compute_loan_line(LoanBalance(
            loan_application_id=uuid.uuid4(),
            reference_number="LN-2026-0002",
            monthly_deduction=Decimal("100.00"),
            remaining_balance=Decimal("0.00"),
        ))
        assert line is None


class TestTakeHomeTotals:

    def test_net_pay(self):
        result = compute_take_home(
            base_salary=Decimal("100000"),
            allowances=[
                AllowanceRate(
                    allowance_id=None,
                    name="Housing",
                    percentage=Decimal("20"),
                    is_taxable=True,
                    tax_percentage=Decimal("10"),
                ),
                AllowanceRate(allowance_id=None, name="Transport", amount=Decimal("5000")),
            ],
            structure_deductions=[DeductionRate(name="Pension", percentage=Decimal("8"))],
            loans=[LoanBalance(
                loan_application_id=uuid.uuid4(),
                reference_number="LN-2026-0003",
                monthly_deduction=Decimal("3000"),
                remaining_balance=Decimal("9000"),
            )],
        )

        assert result.gross_pay == Decimal("125000")
        assert result.taxable_income == Decimal("125000")
        assert result.total_allowance_tax == Decimal("2000")
        assert result.total_deductions == Decimal("8000")
        assert result.total_loan_installments == Decimal("3000")
        # 125000 - 2000 - 8000 - 3000
        assert result.net_pay == Decimal("112000")

    def test_empty_result_is_zero(self):
        result = TakeHomeResult.empty(uuid.uuid4())

        assert result.base_salary == Decimal("0")
        assert result.gross_pay == Decimal("0")
        assert result.net_pay == Decimal("0")
        assert result.allowances == []
        assert result.deductions == []
