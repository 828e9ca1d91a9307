"""
PayCore - API Routers
"""

from paycore.routers import loans, payroll, payruns

__all__ = ["loans", "payroll", "payruns"]
