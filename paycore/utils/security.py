"""
PayCore - Security Utilities

JWT token management for the authenticated-actor resolver.
"""

from datetime import datetime, timedelta
from typing import Optional, Any, Dict

from jose import JWTError, jwt

from paycore.config import settings


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token.
    
    Args:
        data: Dictionary containing token payload (``sub`` is the employee id)
        expires_delta: Optional custom expiration time
    
    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(
            minutes=settings.access_token_expire_minutes
        )
    
    to_encode.update({"exp": expire, "type": "access"})
    
    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm
    )


def verify_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode an access token; None when it is invalid, expired or of another type."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None
    
    if payload.get("type") != "access":
        return None
    return payload
