"""
PayCore - Payroll Engine

Rate catalogs, salary structure assignment, take-home calculation,
payrun generation and the payrun lifecycle with loan amortization.
"""

__version__ = "0.1.0"
