"""
PayCore - Utilities
"""
