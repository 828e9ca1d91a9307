"""
PayCore - Services Package

Business logic for the payroll engine.
"""
