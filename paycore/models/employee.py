"""
PayCore - Employee Model

Minimal HR record consumed by the payroll engine. Employees are also the
actors: an admin-role employee may run payroll operations.
"""

from datetime import date
from enum import Enum
from typing import Optional

from sqlalchemy import Date, String, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from paycore.models.base import BaseModel


class EmployeeRole(str, Enum):
    """Capability flag used by the actor resolver."""
    ADMIN = "admin"
    USER = "user"


class EmployeeStatus(str, Enum):
    """Employment status."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class Employee(BaseModel):
    """Employee eligible for payroll."""
    
    __tablename__ = "employees"
    
    staff_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    hire_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
        comment="Start of service; loan types can require a minimum tenure",
    )
    
    role: Mapped[EmployeeRole] = mapped_column(
        SQLEnum(EmployeeRole),
        default=EmployeeRole.USER,
        nullable=False,
    )
    status: Mapped[EmployeeStatus] = mapped_column(
        SQLEnum(EmployeeStatus),
        default=EmployeeStatus.ACTIVE,
        nullable=False,
        index=True,
    )
    
    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
    
    @property
    def is_admin(self) -> bool:
        return self.role == EmployeeRole.ADMIN
    
    @property
    def is_active(self) -> bool:
        return self.status == EmployeeStatus.ACTIVE
    
    def __repr__(self) -> str:
        return f"<Employee(id={self.id}, staff_number={self.staff_number})>"
