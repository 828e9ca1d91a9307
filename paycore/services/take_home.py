"""
Take-Home Pay Calculator

Pure Decimal arithmetic over already-resolved rates. Nothing here touches
the database: ``TakeHomeService`` resolves an employee's bindings and feeds
them in, and the payrun generator reuses the same functions so a payrun
line is always priced exactly like the calculator prices it.

Results are exact; callers that persist amounts quantize them with
``paycore.utils.money.to_money``.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional
from uuid import UUID

from paycore.utils.money import ZERO, percent_of, to_decimal


SOURCE_STRUCTURE = "structure"
SOURCE_EMPLOYEE = "employee"


# ============================================================================
# Inputs
# ============================================================================

@dataclass(frozen=True)
class AllowanceRate:
    """An applicable allowance, from a structure binding or a direct one."""
    allowance_id: Optional[UUID]
    name: str
    percentage: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    is_taxable: bool = False
    tax_percentage: Optional[Decimal] = None
    source: str = SOURCE_STRUCTURE


@dataclass(frozen=True)
class DeductionRate:
    """An applicable deduction, from a structure binding or a direct one."""
    name: str
    percentage: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    source: str = SOURCE_STRUCTURE
    deduction_id: Optional[UUID] = None
    employee_deduction_id: Optional[UUID] = None


@dataclass(frozen=True)
class LoanBalance:
    """An active loan as seen by payroll."""
    loan_application_id: UUID
    reference_number: str
    monthly_deduction: Decimal
    remaining_balance: Decimal
    employee_deduction_id: Optional[UUID] = None


# ============================================================================
# Outputs
# ============================================================================

@dataclass
class AllowanceLine:
    allowance_id: Optional[UUID]
    name: str
    source: str
    gross_value: Decimal
    tax_amount: Decimal
    net_value: Decimal


@dataclass
class DeductionLine:
    name: str
    source: str
    value: Decimal
    deduction_id: Optional[UUID] = None
    employee_deduction_id: Optional[UUID] = None


@dataclass
class LoanLine:
    loan_application_id: UUID
    reference_number: str
    installment: Decimal
    remaining_before: Decimal
    remaining_after: Decimal
    employee_deduction_id: Optional[UUID] = None


@dataclass
class TakeHomeResult:
    """Itemized take-home pay for one employee."""
    employee_id: Optional[UUID] = None
    salary_structure_id: Optional[UUID] = None
    salary_structure_name: Optional[str] = None
    base_salary: Decimal = ZERO
    allowances: List[AllowanceLine] = field(default_factory=list)
    deductions: List[DeductionLine] = field(default_factory=list)
    loans: List[LoanLine] = field(default_factory=list)
    
    @property
    def total_gross_allowances(self) -> Decimal:
        return sum((a.gross_value for a in self.allowances), ZERO)
    
    @property
    def total_allowance_tax(self) -> Decimal:
        return sum((a.tax_amount for a in self.allowances), ZERO)
    
    @property
    def total_net_allowances(self) -> Decimal:
        return sum((a.net_value for a in self.allowances), ZERO)
    
    @property
    def total_deductions(self) -> Decimal:
        return sum((d.value for d in self.deductions), ZERO)
    
    @property
    def total_loan_installments(self) -> Decimal:
        return sum((loan.installment for loan in self.loans), ZERO)
    
    @property
    def gross_pay(self) -> Decimal:
        return self.base_salary + self.total_gross_allowances
    
    @property
    def taxable_income(self) -> Decimal:
        return self.gross_pay
    
    @property
    def net_pay(self) -> Decimal:
        return (
            self.gross_pay
            - self.total_allowance_tax
            - self.total_deductions
            - self.total_loan_installments
        )
    
    @classmethod
    def empty(cls, employee_id: Optional[UUID] = None) -> "TakeHomeResult":
        """Zero-value result for an employee with no active assignment."""
        return cls(employee_id=employee_id)


# ============================================================================
# Line pricing
# ============================================================================

def _rate_value(percentage: Optional[Decimal], amount: Optional[Decimal], base_salary: Decimal) -> Decimal:
    pct = to_decimal(percentage)
    if pct > ZERO:
        return percent_of(pct, base_salary)
    return to_decimal(amount)


def compute_allowance_line(rate: AllowanceRate, base_salary: Decimal) -> AllowanceLine:
    """Gross from percentage-of-base or flat amount; tax on the gross when taxable."""
    gross = _rate_value(rate.percentage, rate.amount, base_salary)
    tax = percent_of(rate.tax_percentage, gross) if rate.is_taxable else ZERO
    return AllowanceLine(
        allowance_id=rate.allowance_id,
        name=rate.name,
        source=rate.source,
        gross_value=gross,
        tax_amount=tax,
        net_value=gross - tax,
    )


def compute_deduction_line(rate: DeductionRate, base_salary: Decimal) -> DeductionLine:
    return DeductionLine(
        name=rate.name,
        source=rate.source,
        value=_rate_value(rate.percentage, rate.amount, base_salary),
        deduction_id=rate.deduction_id,
        employee_deduction_id=rate.employee_deduction_id,
    )


def compute_loan_line(loan: LoanBalance) -> Optional[LoanLine]:
    """The installment due this period, capped at the remaining balance."""
    remaining = to_decimal(loan.remaining_balance)
    if remaining <= ZERO:
        return None
    installment = min(to_decimal(loan.monthly_deduction), remaining)
    if installment <= ZERO:
        return None
    return LoanLine(
        loan_application_id=loan.loan_application_id,
        reference_number=loan.reference_number,
        installment=installment,
        remaining_before=remaining,
        remaining_after=remaining - installment,
        employee_deduction_id=loan.employee_deduction_id,
    )


# ============================================================================
# Resolution
# ============================================================================

def deduction_key(name: str) -> str:
    """Key used to match an employee deduction against a structure one."""
    return " ".join(name.split()).casefold()


def merge_deductions_by_name(
    structure_rates: Iterable[DeductionRate],
    employee_rates: Iterable[DeductionRate],
) -> List[DeductionRate]:
    """
    Structure deductions overlaid with employee deductions, keyed by name.
    
    An employee deduction sharing a name with a structure deduction
    replaces it in place; the rest are appended in their given order.
    """
    merged = {}
    for rate in structure_rates:
        merged[deduction_key(rate.name)] = rate
    for rate in employee_rates:
        merged[deduction_key(rate.name)] = rate
    return list(merged.values())


def compute_take_home(
    base_salary: Decimal,
    allowances: Iterable[AllowanceRate] = (),
    structure_deductions: Iterable[DeductionRate] = (),
    employee_deductions: Iterable[DeductionRate] = (),
    loans: Iterable[LoanBalance] = (),
    employee_id: Optional[UUID] = None,
    salary_structure_id: Optional[UUID] = None,
    salary_structure_name: Optional[str] = None,
) -> TakeHomeResult:
    """
    Price every applicable line for one employee.
    
    Allowances from both sources all contribute. Deductions are merged by
    name with the employee entry winning. Loans (if any) add one installment
    line each.
    """
    base = to_decimal(base_salary)
    
    loan_lines = []
    for loan in loans:
        line = compute_loan_line(loan)
        if line is not None:
            loan_lines.append(line)
    
    return TakeHomeResult(
        employee_id=employee_id,
        salary_structure_id=salary_structure_id,
        salary_structure_name=salary_structure_name,
        base_salary=base,
        allowances=[compute_allowance_line(rate, base) for rate in allowances],
        deductions=[
            compute_deduction_line(rate, base)
            for rate in merge_deductions_by_name(structure_deductions, employee_deductions)
        ],
        loans=loan_lines,
    )
