"""
PayCore - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from paycore.models.base import BaseModel, AuditMixin
from paycore.models.employee import Employee, EmployeeRole, EmployeeStatus
from paycore.models.audit import AuditLog, AuditAction
from paycore.models.payroll import (
    AllowanceKind,
    DeductionKind,
    SalaryStructure,
    Allowance,
    Deduction,
    EmployeeSalary,
    SalaryAllowance,
    SalaryDeduction,
    EmployeeAllowance,
    EmployeeDeduction,
)
from paycore.models.payrun import (
    PayrunType,
    PayrunStatus,
    PayrunDetailType,
    Payrun,
    PayrunItem,
    PayrunItemDetail,
)
from paycore.models.loan import (
    LoanAmountType,
    LoanStatus,
    RepaymentStatus,
    LoanType,
    LoanTypeSalaryStructure,
    LoanApplication,
    LoanRepayment,
)

__all__ = [
    "BaseModel",
    "AuditMixin",
    "Employee",
    "EmployeeRole",
    "EmployeeStatus",
    "AuditLog",
    "AuditAction",
    "AllowanceKind",
    "DeductionKind",
    "SalaryStructure",
    "Allowance",
    "Deduction",
    "EmployeeSalary",
    "SalaryAllowance",
    "SalaryDeduction",
    "EmployeeAllowance",
    "EmployeeDeduction",
    "PayrunType",
    "PayrunStatus",
    "PayrunDetailType",
    "Payrun",
    "PayrunItem",
    "PayrunItemDetail",
    "LoanAmountType",
    "LoanStatus",
    "RepaymentStatus",
    "LoanType",
    "LoanTypeSalaryStructure",
    "LoanApplication",
    "LoanRepayment",
]
