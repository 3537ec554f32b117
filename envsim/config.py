"""
Configuration module for the envsim engine
Centralizes all environment variable access and configuration settings
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables

    All settings can be overridden via ENVSIM_* environment variables.
    Default values are suitable for development.
    """

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "human"  # "json" or "human"
    log_file: Optional[str] = None
    log_max_bytes: int = 10 * 1024 * 1024  # 10 MB
    log_backup_count: int = 5

    # Storage checks
    bounds_check: bool = True  # Validate index tuples on every explicit access
    check_finite: bool = True  # Fail the run on NaN/inf equation results
    record_history: bool = True  # Keep every timestep's results for inspection

    # Solver defaults
    default_relative_tolerance: float = 1e-4
    default_absolute_tolerance: float = 1e-6
    default_max_retries: int = 20
    default_min_step: float = 1e-10
    newton_max_iterations: int = 8
    newton_tolerance: float = 1e-8

    # Profiling
    profile_equations: bool = False  # Time each evaluation unit during a run

    # Dependency analysis
    trace_dependencies: bool = True  # Run bodies against a recording view at build time

    # Run control
    max_simulation_steps: int = 1_000_000
    progress_report_interval: int = 100  # Progress reporting interval (every N steps)

    model_config = SettingsConfigDict(
        env_prefix="ENVSIM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def log_format_json(self) -> bool:
        """Check if logging should use JSON format"""
        return self.log_format.lower() == "json"


# Global settings instance (singleton)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton pattern)

    Returns:
        Settings instance with current configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
