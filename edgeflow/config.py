"""Engine configuration."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="EDGEFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="EdgeFlow", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Log level")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./edgeflow.db",
        description="Run state database URL",
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Execution
    node_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Default per-node invocation timeout"
    )
    max_subworkflow_depth: int = Field(
        default=10, ge=0, description="Max nesting depth of sub-workflow runs"
    )
    max_scheduling_steps: int = Field(
        default=100_000, gt=0, description="Safety bound on scheduling steps per run"
    )
    save_execution_progress: bool = Field(
        default=True, description="Persist run state after every node"
    )
    execution_timeout_seconds: Optional[float] = Field(
        default=None, description="Whole-run time budget in seconds"
    )

    # Expressions
    expressions_expose_env: bool = Field(
        default=False, description="Expose process environment as $env"
    )
    expression_cache_size: int = Field(
        default=1024, ge=0, description="Compiled expression cache size"
    )

    # Credentials
    credential_cache_ttl_seconds: float = Field(
        default=300.0, ge=0, description="Credential lookup cache TTL"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() in ("development", "dev")

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment.lower() in ("production", "prod")

    @property
    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment.lower() in ("testing", "test")


@lru_cache()
def get_settings() -> Settings:
    """Get engine settings (cached)."""
    return Settings()


# Global settings instance
settings = get_settings()
