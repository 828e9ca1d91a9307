"""
PayCore - FastAPI Dependencies

Shared dependencies for authentication and the payroll admin gate.
"""

import uuid
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.database import get_async_session
from paycore.models.employee import Employee
from paycore.utils.error_handling import (
    AuthenticationException,
    AuthorizationException,
    ErrorCode,
)
from paycore.utils.security import verify_access_token


# HTTP Bearer token security
security = HTTPBearer(auto_error=False)


async def get_current_employee(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_async_session),
) -> Employee:
    """
    Get the current authenticated employee from JWT token.
    
    Token can be provided via:
    1. Authorization: Bearer <token> header
    2. access_token cookie
    
    Raises:
        AuthenticationException: If the token is missing, invalid or names no employee
        AuthorizationException: If the employee account is deactivated
    """
    token = None
    
    # Try Bearer header first
    if credentials:
        token = credentials.credentials
    else:
        # Fallback to cookie
        token = request.cookies.get("access_token")
        if token and token.startswith("Bearer "):
            token = token[7:]
    
    if not token:
        raise AuthenticationException("Not authenticated")
    
    payload = verify_access_token(token)
    if not payload:
        raise AuthenticationException("Invalid or expired token", code=ErrorCode.TOKEN_INVALID)
    
    employee_id = payload.get("sub")
    if not employee_id:
        raise AuthenticationException("Invalid token payload", code=ErrorCode.TOKEN_INVALID)
    
    try:
        employee_uuid = uuid.UUID(employee_id)
    except ValueError:
        raise AuthenticationException("Invalid employee ID in token", code=ErrorCode.TOKEN_INVALID)
    
    employee = await db.get(Employee, employee_uuid)
    
    if not employee:
        raise AuthenticationException("Employee not found")
    
    if not employee.is_active:
        raise AuthorizationException(
            "Employee account is deactivated",
            code=ErrorCode.ACCOUNT_DISABLED,
        )
    
    return employee


async def require_admin(
    current_employee: Employee = Depends(get_current_employee),
) -> Employee:
    """Payroll administration is restricted to admins."""
    if not current_employee.is_admin:
        raise AuthorizationException(
            "Payroll administration requires the admin role",
            code=ErrorCode.INSUFFICIENT_PERMISSIONS,
        )
    return current_employee
