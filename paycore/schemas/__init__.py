"""
PayCore - Pydantic Schemas
"""
