"""
Configuration Module
====================
Centralized environment variable loading, validation, and access.
Validates required configuration at startup to fail fast.

NO BUSINESS LOGIC - Pure configuration management only.
"""

import os
import logging
from typing import Optional, Dict, Any, List
from pathlib import Path
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """
    Load environment variables from .env file if present.
    Safe to call multiple times.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.info("No .env file found, using system environment variables")


# Load on module import
load_environment()


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _get_required_env(key: str, description: str = None) -> str:
    """
    Get required environment variable.

    Args:
        key: Environment variable name
        description: Optional description for error message

    Returns:
        Environment variable value

    Raises:
        ConfigurationError: If variable is missing or empty
    """
    value = os.getenv(key)

    if not value or value.strip() == "":
        desc = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {key}{desc}"
        )

    return value.strip()


def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """Get optional environment variable, falling back to default."""
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )


def _get_float_env(key: str, default: float = None) -> Optional[float]:
    """
    Get float environment variable.

    Raises:
        ConfigurationError: If value is not a valid number
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid numeric value for {key}: {value}"
        )


# ============================================================================
# SUPABASE CONFIGURATION
# ============================================================================

class SupabaseConfig:
    """Supabase database configuration."""

    def __init__(self):
        self.url = _get_required_env(
            "SUPABASE_URL",
            "Supabase project URL"
        )

        # Backend operations run with the service role key
        self.key = _get_optional_env("SUPABASE_SERVICE_ROLE_KEY") or _get_required_env(
            "SUPABASE_KEY",
            "Supabase service role key"
        )

        if not self.url.startswith(("https://", "http://")):
            raise ConfigurationError(
                f"SUPABASE_URL must start with https:// or http://: {self.url}"
            )

        # Per-operation timeout (seconds)
        self.timeout = _get_float_env("SUPABASE_TIMEOUT", 10.0)

        if self.timeout <= 0:
            raise ConfigurationError(
                f"SUPABASE_TIMEOUT must be positive: {self.timeout}"
            )


# ============================================================================
# STAGED ORDERING CONFIGURATION
# ============================================================================

class StagingConfig:
    """
    Staged (course-by-course) ordering rules.

    Only optional variables live here, so the controller can be built
    without database credentials.
    """

    def __init__(self):
        # Tax applied to the cumulative subtotal
        self.tax_rate = _get_float_env("STAGED_TAX_RATE", 0.18)

        if not 0.0 <= self.tax_rate < 1.0:
            raise ConfigurationError(
                f"STAGED_TAX_RATE must be between 0 and 1: {self.tax_rate}"
            )

        # Order number prefixes (staged numbers must differ from regular ones)
        self.staged_order_prefix = _get_optional_env("STAGED_ORDER_PREFIX", "STG")
        self.regular_order_prefix = _get_optional_env("REGULAR_ORDER_PREFIX", "ORD")

        if self.staged_order_prefix == self.regular_order_prefix:
            raise ConfigurationError(
                "STAGED_ORDER_PREFIX must differ from REGULAR_ORDER_PREFIX"
            )

        self.max_quantity_per_item = _get_int_env("MAX_QUANTITY_PER_ITEM", 99)

        # One open staged session per table
        self.exclusive_table_sessions = _get_bool_env(
            "STAGED_EXCLUSIVE_TABLE_SESSIONS",
            True
        )

        # Abandoned session reclamation
        self.abandoned_session_hours = _get_float_env("ABANDONED_SESSION_HOURS", 4.0)
        self.reaper_interval_seconds = _get_int_env("SESSION_REAPER_INTERVAL", 300)

        if self.abandoned_session_hours <= 0:
            raise ConfigurationError(
                f"ABANDONED_SESSION_HOURS must be positive: {self.abandoned_session_hours}"
            )


# ============================================================================
# FEATURE FLAGS
# ============================================================================

class FeatureFlags:
    """Feature flags for optional functionality."""

    def __init__(self):
        self.enable_session_reaper = _get_bool_env("ENABLE_SESSION_REAPER", False)
        self.enable_metrics = _get_bool_env("ENABLE_METRICS", True)
        self.debug_mode = _get_bool_env("DEBUG_MODE", False)


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

class ServerConfig:
    """Web server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "0.0.0.0")
        self.port = _get_int_env("PORT", 4000)

        # CORS settings
        self.cors_origins = _get_optional_env("CORS_ORIGINS", "*").split(",")

        # Logging
        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    Main configuration container.
    Loads and validates all configuration on initialization.
    """

    def __init__(self):
        """
        Initialize and validate all configuration.

        Raises:
            ConfigurationError: If any required configuration is missing or invalid
        """
        try:
            self.supabase = SupabaseConfig()
            self.staging = StagingConfig()
            self.features = FeatureFlags()
            self.server = ServerConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {str(e)}")
            raise ConfigurationError(f"Configuration initialization failed: {str(e)}")

    def get_safe_summary(self) -> Dict[str, Any]:
        """Get configuration summary without secrets."""
        return {
            "supabase_url": self.supabase.url,
            "supabase_timeout": self.supabase.timeout,
            "staging": {
                "tax_rate": self.staging.tax_rate,
                "staged_order_prefix": self.staging.staged_order_prefix,
                "exclusive_table_sessions": self.staging.exclusive_table_sessions,
                "abandoned_session_hours": self.staging.abandoned_session_hours,
            },
            "features": {
                "session_reaper": self.features.enable_session_reaper,
                "metrics": self.features.enable_metrics,
                "debug": self.features.debug_mode,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
            },
        }

    def validate_runtime_dependencies(self) -> List[str]:
        """
        Check settings that are legal but probably unintended.

        Returns:
            List of warnings (empty if all OK)
        """
        warnings = []

        if "*" in self.server.cors_origins:
            warnings.append("CORS_ORIGINS allows every origin")

        if not self.staging.exclusive_table_sessions:
            warnings.append(
                "STAGED_EXCLUSIVE_TABLE_SESSIONS is off: a table may hold "
                "several open staged orders"
            )

        return warnings


# ============================================================================
# SINGLETON INSTANCE
# ============================================================================

_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get global configuration instance.
    Initializes on first call.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    global _config

    if _config is None:
        _config = Config()

    return _config


def reload_config():
    """Reload configuration from environment."""
    global _config
    load_environment()
    _config = Config()
    logger.info("Configuration reloaded")


def is_feature_enabled(feature_name: str) -> bool:
    """Check if a feature flag is enabled."""
    features = get_config().features
    return getattr(features, f"enable_{feature_name}", False)


# ============================================================================
# VALIDATION FUNCTION
# ============================================================================

def validate_configuration():
    """
    Validate configuration and log a summary.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = get_config()
    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    logger.info(f"  Supabase: {summary['supabase_url']}")
    logger.info(f"  Tax rate: {summary['staging']['tax_rate']}")
    logger.info(f"  Server: {summary['server']['host']}:{summary['server']['port']}")
    logger.info(f"  Log Level: {summary['server']['log_level']}")

    logger.info("Feature Flags:")
    for feature, enabled in summary['features'].items():
        status = "enabled" if enabled else "disabled"
        logger.info(f"  {feature}: {status}")

    warnings = config.validate_runtime_dependencies()
    if warnings:
        logger.warning("Configuration warnings:")
        for warning in warnings:
            logger.warning(f"  - {warning}")

    logger.info("Configuration validation complete")
