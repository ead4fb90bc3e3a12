"""
Configuration module with strict validation.

Key principles:
- Startup does NOT require the redesignation grace period
- A run that redesignates anything DOES require it (fails early with clear error)
- All retry, concurrency and timeout settings are configurable
- Safe defaults for all optional settings
"""
from typing import List, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MissingGracePeriodConfigError(Exception):
    """Raised when a redesignation is computed without a configured grace period."""
    pass


class Settings(BaseSettings):
    """Application settings with validation.

    Loads from environment variables and .env file.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database (REQUIRED)
    database_url: str = Field(
        ...,
        description="SQLAlchemy database URL"
    )

    # Census API Configuration (OPTIONAL - unauthenticated requests are throttled)
    census_survey_api_key: Optional[str] = Field(
        default=None,
        description="Census API key - appended to ACS requests when present"
    )

    # Source feeds
    tiger_base_url: str = Field(
        default="https://tigerweb.geo.census.gov/arcgis/rest/services/TIGERweb",
        description="TIGERweb REST services root for tract/county boundaries"
    )

    boundary_vintage: int = Field(
        default=2020,
        ge=2010,
        le=2100,
        description="Boundary vintage year"
    )

    census_acs_base_url: str = Field(
        default="https://api.census.gov/data",
        description="Census ACS API root"
    )

    acs_year: int = Field(
        default=2022,
        ge=2009,
        le=2100,
        description="ACS 5-year vintage used for economic profiles"
    )

    sba_api_endpoint: str = Field(
        default="https://api.sba.gov/hubzone",
        description="SBA HUBZone designation feed endpoint"
    )

    # Dataset cache
    cache_directory: str = Field(
        default="./cache/hubzone-maps",
        description="Directory for locally cached source datasets"
    )

    cache_duration_days: int = Field(
        default=90,
        ge=1,
        le=3650,
        description="Cache entries older than this are re-fetched"
    )

    # Download concurrency and retries
    max_concurrency: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Maximum concurrent dataset downloads"
    )

    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum download attempts per dataset"
    )

    retry_base_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Delay before the first download retry"
    )

    retry_backoff_factor: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Exponential backoff factor for retries"
    )

    retry_max_delay_seconds: float = Field(
        default=30.0,
        ge=0.0,
        le=600.0,
        description="Upper bound on a single backoff delay"
    )

    request_timeout_seconds: float = Field(
        default=60.0,
        gt=0.0,
        le=600.0,
        description="Per-request timeout for dataset downloads"
    )

    # Job execution
    job_timeout_seconds: int = Field(
        default=7200,
        ge=1,
        description="Overall timeout for one import execution (default 2 hours)"
    )

    stage_max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Engine-level retries of a retryable stage failure"
    )

    stage_retry_delay_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Linear delay multiplier between stage retries"
    )

    lock_lease_seconds: Optional[int] = Field(
        default=None,
        ge=1,
        description="Execution lock lease; defaults to job timeout + 10 minutes"
    )

    # Statutory redesignation grace period (NO default - must be supplied)
    redesignation_grace_period_months: Optional[int] = Field(
        default=None,
        ge=1,
        le=240,
        description="Grace period for redesignated areas, in months"
    )

    # Admin notifications
    admin_emails: str = Field(
        default="",
        description="Comma-separated recipients of job completion notifications"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v_upper

    @model_validator(mode="after")
    def default_lock_lease(self) -> "Settings":
        if self.lock_lease_seconds is None:
            self.lock_lease_seconds = self.job_timeout_seconds + 600
        return self

    def get_admin_emails(self) -> List[str]:
        """Admin notification recipients as a list."""
        return [e.strip() for e in self.admin_emails.split(",") if e.strip()]

    def require_grace_period_months(self) -> int:
        """
        Get the redesignation grace period, raising clear error if missing.

        The statutory length is deployment-specific and is never assumed.

        Raises:
            MissingGracePeriodConfigError: If the period is not configured

        Returns:
            int: Grace period in months
        """
        if not self.redesignation_grace_period_months:
            raise MissingGracePeriodConfigError(
                "REDESIGNATION_GRACE_PERIOD_MONTHS is required to redesignate areas. "
                "Set it to the statutory grace period in force for this deployment."
            )
        return self.redesignation_grace_period_months


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get or create the global settings instance.

    This pattern allows:
    - Easy testing (can reset settings between tests)
    - Lazy loading (only loads when first accessed)
    - Singleton pattern (same instance used everywhere)
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """
    Reset the global settings instance.

    Useful for testing to ensure clean state between tests.
    """
    global _settings
    _settings = None
