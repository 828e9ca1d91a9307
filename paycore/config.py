"""
PayCore - Configuration Settings

This module handles all application configuration using Pydantic Settings.
Environment variables are loaded from .env file.
"""

from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )
    
    # ===========================================
    # APPLICATION CONFIGURATION
    # ===========================================
    app_name: str = "PayCore"
    app_env: str = "development"
    debug: bool = False
    api_prefix: str = "/api/v1"
    
    # ===========================================
    # DATABASE CONFIGURATION
    # ===========================================
    database_url_async: str  # Required - must be set in .env
    db_pool_size: int = 5
    db_max_overflow: int = 10
    
    # ===========================================
    # JWT AUTHENTICATION
    # ===========================================
    jwt_secret_key: str  # Required - must be set in .env
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    
    # ===========================================
    # CORS
    # ===========================================
    cors_origins: str = "http://localhost:3000"
    
    @property
    def cors_origins_list(self) -> List[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]
    
    # ===========================================
    # PAYROLL
    # ===========================================
    notifications_enabled: bool = True
    default_payrun_day: int = 1
    loan_reference_prefix: str = "LN"
    
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.app_env == "production"
    
    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
