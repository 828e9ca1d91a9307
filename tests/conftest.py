"""
PayCore - Test Configuration

Pytest fixtures and configuration. Every test gets its own SQLite database
file so concurrent-session tests see real locking and constraints.
"""

import os

os.environ.setdefault("DATABASE_URL_ASYNC", "sqlite+aiosqlite:///./paycore_unused.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("APP_ENV", "testing")

from decimal import Decimal
from typing import AsyncGenerator, Dict
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paycore import models  # noqa: F401
from paycore.database import Base, build_engine, get_async_session
from paycore.models.employee import Employee, EmployeeRole, EmployeeStatus
from paycore.models.payroll import Allowance, AllowanceKind, Deduction, DeductionKind, SalaryStructure
from paycore.services.notification_service import NotificationService
from paycore.utils.security import create_access_token
from main import app


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Fresh database per test."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'paycore_test.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def notifier() -> NotificationService:
    return NotificationService(enabled=False)


# ===========================================
# DATA FIXTURES
# ===========================================

@pytest.fixture
def make_employee(db_session: AsyncSession):
    """Factory for employees; keyword arguments override the defaults."""

    async def _make(**overrides) -> Employee:
        suffix = uuid4().hex[:8]
        values = {
            "staff_number": f"EMP-{suffix}",
            "first_name": "Test",
            "last_name": f"Employee {suffix}",
            "email": f"employee-{suffix}@example.com",
            "department": "Operations",
            "role": EmployeeRole.USER,
            "status": EmployeeStatus.ACTIVE,
        }
        values.update(overrides)
        employee = Employee(**values)
        db_session.add(employee)
        await db_session.commit()
        await db_session.refresh(employee)
        return employee

    return _make


@pytest_asyncio.fixture
async def admin(make_employee) -> Employee:
    """Payroll administrator."""
    return await make_employee(first_name="Ada", last_name="Admin", role=EmployeeRole.ADMIN)


@pytest_asyncio.fixture
async def employee(make_employee) -> Employee:
    return await make_employee(first_name="Chidi", last_name="Okafor")


@pytest_asyncio.fixture
async def structure(db_session: AsyncSession) -> SalaryStructure:
    """Active structure with a 100,000.00 base."""
    salary_structure = SalaryStructure(
        name="Grade Level 8",
        base_salary=Decimal("100000.00"),
        is_active=True,
        employee_count=0,
    )
    db_session.add(salary_structure)
    await db_session.commit()
    await db_session.refresh(salary_structure)
    return salary_structure


@pytest.fixture
def make_allowance(db_session: AsyncSession):
    async def _make(name: str, **overrides) -> Allowance:
        values = {
            "name": name,
            "kind": AllowanceKind.MONTHLY,
            "is_taxable": False,
        }
        values.update(overrides)
        allowance = Allowance(**values)
        db_session.add(allowance)
        await db_session.commit()
        await db_session.refresh(allowance)
        return allowance

    return _make


@pytest.fixture
def make_deduction(db_session: AsyncSession):
    async def _make(name: str, **overrides) -> Deduction:
        values = {"name": name, "kind": DeductionKind.RECURRING}
        values.update(overrides)
        deduction = Deduction(**values)
        db_session.add(deduction)
        await db_session.commit()
        await db_session.refresh(deduction)
        return deduction

    return _make


def bearer(employee: Employee) -> Dict[str, str]:
    token = create_access_token({"sub": str(employee.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin: Employee) -> Dict[str, str]:
    return bearer(admin)


@pytest.fixture
def employee_headers(employee: Employee) -> Dict[str, str]:
    return bearer(employee)
