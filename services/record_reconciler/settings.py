"""
Configuration management using Pydantic Settings.

Loads configuration from environment variables and .env files
with validation and type conversion.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Record reconciler settings loaded from environment variables and .env files.

    Settings are loaded in this order of precedence:
    1. Environment variables
    2. .env file in current directory
    3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Airtable Configuration
    airtable_api_key: str = Field(
        description="Personal access token for the Airtable REST API"
    )

    airtable_base_id: str = Field(
        description="Airtable base holding companies, opportunities and inbox tables"
    )

    airtable_api_base_url: str = Field(
        default="https://api.airtable.com/v0",
        description="Base URL for the Airtable REST API"
    )

    airtable_timeout: float = Field(
        default=30.0,
        ge=1.0,
        le=300.0,
        description="Airtable request timeout in seconds"
    )

    airtable_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Total attempts for a rate-limited (429) Airtable request"
    )

    # Tables
    companies_table: str = Field(default="Companies")
    opportunities_table: str = Field(default="Opportunities")
    inbox_items_table: str = Field(default="Inbox Items")
    inbox_table: str = Field(default="Inbox")
    tasks_table: str = Field(default="Tasks")
    decisions_table: str = Field(default="Decisions")

    # Company identity fields
    company_name_field: str = Field(default="Company Name")
    company_primary_identity_field: str = Field(
        default="Normalized Domain",
        description="Identity field populated on current company records"
    )
    company_secondary_identity_field: str = Field(
        default="Domain",
        description="Legacy identity field still populated on older company records"
    )
    source_system: str = Field(
        default="OS – Gmail Inbox",
        description="Value written to the Source System field of created records"
    )

    # Child item fields
    inbox_item_trace_field: str = Field(default="Gmail Message ID")
    inbox_item_audit_field: str = Field(default="Activity Log")
    inbox_item_company_field: str = Field(default="Company")
    inbox_item_opportunity_field: str = Field(default="Opportunity")
    opportunity_name_field: str = Field(default="Opportunity Name")
    opportunity_thread_field: str = Field(default="Gmail Thread ID")
    opportunity_company_field: str = Field(default="Company")
    opportunity_default_stage: str = Field(default="Qualification")
    promoted_item_name_field: str = Field(
        default="Name",
        description="Field that receives a task/decision given as a bare string"
    )

    # Authentication
    intake_token: Optional[str] = Field(
        default=None,
        description="Bearer token required by intake, resolution and promotion routes"
    )

    inbox_shared_secret: Optional[str] = Field(
        default=None,
        description="Shared secret expected in the x-inbox-secret header"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    log_format: str = Field(
        default="json",
        description="Log output format (json, text)"
    )

    # Service Configuration
    service_name: str = Field(
        default="record-reconciler",
        description="Service name for logging and monitoring"
    )

    environment: str = Field(
        default="development",
        description="Environment name (development, staging, production)"
    )

    host: str = Field(default="0.0.0.0")

    port: int = Field(default=8000, ge=1, le=65535)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format is supported."""
        valid_formats = {"json", "text"}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {', '.join(valid_formats)}")
        return v.lower()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        """Validate environment name."""
        valid_envs = {"development", "staging", "production"}
        if v.lower() not in valid_envs:
            raise ValueError(f"environment must be one of: {', '.join(valid_envs)}")
        return v.lower()

    @field_validator("airtable_api_key", "airtable_base_id")
    @classmethod
    def validate_required_text(cls, v):
        """Validate Airtable credentials are not empty."""
        if not v or not v.strip():
            raise ValueError("Airtable credentials cannot be empty")
        return v.strip()

    @field_validator("intake_token", "inbox_shared_secret")
    @classmethod
    def validate_optional_secret(cls, v):
        """Treat blank secrets as unset."""
        if v is None:
            return v
        v = v.strip()
        return v or None

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    def get_api_headers(self) -> dict:
        """Get Airtable API headers with authentication."""
        return {
            "Authorization": f"Bearer {self.airtable_api_key}",
            "User-Agent": f"{self.service_name}/1.0",
            "Accept": "application/json",
            "Content-Type": "application/json"
        }


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are read once per process and are immutable afterwards.

    Returns:
        Settings instance with loaded configuration
    """
    return Settings()


# Convenience function to get settings
def settings() -> Settings:
    """Get application settings."""
    return get_settings()
