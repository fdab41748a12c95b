"""Engine configuration."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (prefix STEPFLOW_).

    All durations are milliseconds.
    """

    APP_NAME: str = "stepflow"
    ENVIRONMENT: str = "development"  # development, testing, production

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text
    TRACE_LOGS: bool = False  # Echo per-node trace lines to the log

    # Step execution
    DEFAULT_STEP_TIMEOUT_MS: float = 300_000  # 5 min
    DEFAULT_CONDITION_TIMEOUT_MS: float = 30_000

    # Retry defaults (used when a policy omits a field)
    DEFAULT_RETRY_COUNT: int = 3
    DEFAULT_RETRY_DELAY_MS: float = 1_000
    DEFAULT_UNTIL_CONDITION_TIMEOUT_MS: float = 30_000

    # Loops
    LOOP_MAX_ITERATIONS: int = 1_000

    # Monitoring
    MONITOR_POLL_INTERVAL_MS: float = 500
    BREAKPOINT_WAIT_TIMEOUT_MS: float = 60_000
    MONITOR_MAX_DURATION_MS: float = 300_000

    # Engine
    MAX_CONCURRENT_RUNS: int = 4
    PLUGINS_ENABLED: bool = True

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        env_prefix = "STEPFLOW_"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get engine settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
