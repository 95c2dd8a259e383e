"""
Configuration management for the Atelier production engine.

This module handles:
- Database path configuration
- Environment-specific configuration (development vs. production)
- Engine tuning (reservation expiry, costing, scoring, worker ranking)

Tuning values are read once from environment variables, falling back to
the defaults in constants.py.
"""

import logging
import os
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Tuple

from .constants import (
    APP_NAME,
    APP_VERSION,
    ASSIGNMENT_RANKING_KEYS,
    DATABASE_FILENAME,
    DATABASE_VERSION,
    DEFAULT_ASSIGNMENT_RANKING,
    DEFAULT_BONUS_SCORE_THRESHOLD,
    DEFAULT_CANCEL_RETRY_ATTEMPTS,
    DEFAULT_COST_TOLERANCE,
    DEFAULT_EFFICIENCY_DISPLAY_MAX,
    DEFAULT_EFFICIENCY_DISPLAY_MIN,
    DEFAULT_INITIAL_PROGRESS,
    DEFAULT_LABOR_COST_PER_UNIT,
    DEFAULT_OVERHEAD_RATE,
    DEFAULT_RESERVATION_TTL_DAYS,
    DEFAULT_SWEEP_BACKOFF_SECONDS,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    DEFAULT_SWEEP_MAX_ATTEMPTS,
    ENV_ASSIGNMENT_RANKING,
    ENV_COST_TOLERANCE,
    ENV_DATABASE_URL,
    ENV_ENVIRONMENT,
    ENV_LABOR_COST,
    ENV_LOG_LEVEL,
    ENV_OVERHEAD_RATE,
    ENV_RESERVATION_TTL_DAYS,
    ENV_SWEEP_INTERVAL,
)

logger = logging.getLogger(__name__)


def _parse_ranking(raw: Optional[str]) -> List[str]:
    """Parse a comma-separated ranking list, dropping unknown keys."""
    if not raw:
        return list(DEFAULT_ASSIGNMENT_RANKING)
    keys = [key.strip() for key in raw.split(",") if key.strip()]
    unknown = [key for key in keys if key not in ASSIGNMENT_RANKING_KEYS]
    if unknown:
        logger.warning(f"Ignoring unknown assignment ranking keys: {unknown}")
    keys = [key for key in keys if key in ASSIGNMENT_RANKING_KEYS]
    return keys or list(DEFAULT_ASSIGNMENT_RANKING)


class Config:
    """
    Application configuration manager.

    Handles database location, environment settings and the tuning knobs
    of the production engine.
    """

    def __init__(self, environment: str = "production"):
        """
        Initialize configuration.

        Args:
            environment: Environment mode - 'production', 'development' or 'test'
        """
        self.environment = environment
        self._app_name = APP_NAME
        self._app_version = APP_VERSION
        self._database_version = DATABASE_VERSION
        self._database_url_override = os.environ.get(ENV_DATABASE_URL)

        if environment == "development":
            self._base_dir = self._get_project_data_dir()
        else:
            self._base_dir = self._get_user_documents_dir()

        self._database_dir = self._base_dir
        self._database_path = self._database_dir / DATABASE_FILENAME

        # Engine tuning
        self.log_level = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()
        self.reservation_ttl_days = int(
            os.environ.get(ENV_RESERVATION_TTL_DAYS, DEFAULT_RESERVATION_TTL_DAYS)
        )
        self.sweep_interval_seconds = int(
            os.environ.get(ENV_SWEEP_INTERVAL, DEFAULT_SWEEP_INTERVAL_SECONDS)
        )
        self.sweep_max_attempts = DEFAULT_SWEEP_MAX_ATTEMPTS
        self.sweep_backoff_seconds = DEFAULT_SWEEP_BACKOFF_SECONDS
        self.cancel_retry_attempts = DEFAULT_CANCEL_RETRY_ATTEMPTS
        self.labor_cost_per_unit = Decimal(
            os.environ.get(ENV_LABOR_COST, DEFAULT_LABOR_COST_PER_UNIT)
        )
        self.overhead_rate = Decimal(os.environ.get(ENV_OVERHEAD_RATE, DEFAULT_OVERHEAD_RATE))
        self.cost_tolerance = float(os.environ.get(ENV_COST_TOLERANCE, DEFAULT_COST_TOLERANCE))
        self.initial_progress = DEFAULT_INITIAL_PROGRESS
        self.efficiency_display_range: Tuple[float, float] = (
            DEFAULT_EFFICIENCY_DISPLAY_MIN,
            DEFAULT_EFFICIENCY_DISPLAY_MAX,
        )
        self.bonus_score_threshold = DEFAULT_BONUS_SCORE_THRESHOLD
        self.assignment_ranking = _parse_ranking(os.environ.get(ENV_ASSIGNMENT_RANKING))

    def _get_project_data_dir(self) -> Path:
        """Get the project's data/ directory for development."""
        project_root = Path(__file__).parent.parent.parent
        return project_root / "data"

    def _get_user_documents_dir(self) -> Path:
        """Get the app directory under the user's Documents folder."""
        return Path.home() / "Documents" / "Atelier"

    def ensure_directories(self) -> None:
        """Create the database directory if it doesn't exist."""
        self._database_dir.mkdir(parents=True, exist_ok=True)

    @property
    def app_name(self) -> str:
        """Application name."""
        return self._app_name

    @property
    def app_version(self) -> str:
        """Application version."""
        return self._app_version

    @property
    def database_version(self) -> str:
        """Database schema version."""
        return self._database_version

    @property
    def database_path(self) -> Path:
        """Full path to the database file."""
        return self._database_path

    @property
    def database_url(self) -> str:
        """
        SQLAlchemy database URL.

        ATELIER_DATABASE_URL wins over the file-based default, which allows
        pointing the engine at PostgreSQL where row locks are enforced.
        """
        if self._database_url_override:
            return self._database_url_override
        db_path_str = str(self._database_path).replace("\\", "/")
        return f"sqlite:///{db_path_str}"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    def database_exists(self) -> bool:
        """Check if the SQLite database file exists."""
        return self._database_path.exists()

    def __repr__(self) -> str:
        return f"Config(environment='{self.environment}', database_url='{self.database_url}')"


_config_instance: Optional[Config] = None


def get_config(environment: Optional[str] = None) -> Config:
    """
    Get the global configuration instance.

    Once created, the singleton's environment cannot be changed by passing a
    different environment argument.

    Args:
        environment: Optional environment for initial creation. If None, uses
                    ATELIER_ENV or defaults to production.

    Returns:
        Config instance
    """
    global _config_instance

    if _config_instance is None:
        if environment is None:
            environment = os.environ.get(ENV_ENVIRONMENT, "production")
        _config_instance = Config(environment)
    elif environment is not None and environment != _config_instance.environment:
        logger.warning(
            f"get_config() called with environment='{environment}' but singleton "
            f"already exists with environment='{_config_instance.environment}'. "
            f"Returning existing singleton to prevent database switching."
        )

    return _config_instance


def reset_config():
    """
    Reset the global configuration instance.

    Useful for testing.
    """
    global _config_instance
    _config_instance = None
