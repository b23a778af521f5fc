"""Environment variable validation and management."""

import os
import logging
from datetime import datetime
from typing import Dict, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # Every setting has a usable default; the table below only documents and
    # applies them so dependent modules see consistent values.
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "CONFIG_CACHE_TTL": "300",
        "DETAIL_LIMIT": "100",
        "IMPORT_STALE_HOURS": "24",
        "MAX_FIX_MESSAGES": "20",
        "RESPONSE_CACHE_TTL": "60",
        "CURRENT_SCHOOL_YEAR": str(datetime.now().year),
    }

    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    positive_ints = {"DETAIL_LIMIT", "MAX_FIX_MESSAGES", "IMPORT_STALE_HOURS"}
    non_negative_floats = {"CONFIG_CACHE_TTL", "RESPONSE_CACHE_TTL"}

    invalid = []
    for var in positive_ints:
        value = os.getenv(var, "")
        if not value.isdigit() or int(value) <= 0:
            invalid.append(f"{var}={value!r} (expected a positive integer)")
    for var in non_negative_floats:
        value = os.getenv(var, "")
        try:
            if float(value) < 0:
                raise ValueError(value)
        except ValueError:
            invalid.append(f"{var}={value!r} (expected a non-negative number)")

    year = os.getenv("CURRENT_SCHOOL_YEAR", "")
    if not (len(year) == 4 and year.isdigit()):
        invalid.append(f"CURRENT_SCHOOL_YEAR={year!r} (expected YYYY)")

    if invalid:
        raise EnvironmentError(
            f"Invalid environment variables: {', '.join(sorted(invalid))}"
        )

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}

def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Environment variable %s=%r is not an integer; using %s", name, value, default)
        return default

def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Environment variable %s=%r is not a number; using %s", name, value, default)
        return default

def current_school_year(default: Optional[int] = None) -> int:
    """Return the school year treated as "current" by year-scoped checks."""
    fallback = default if default is not None else datetime.now().year
    return get_env_int("CURRENT_SCHOOL_YEAR", fallback)

def describe_settings() -> Dict[str, Optional[str]]:
    """Return the effective values of the settings this service reads."""
    names = (
        "DB_PATH",
        "CONFIG_CACHE_TTL",
        "DETAIL_LIMIT",
        "IMPORT_STALE_HOURS",
        "MAX_FIX_MESSAGES",
        "RESPONSE_CACHE_TTL",
        "CURRENT_SCHOOL_YEAR",
    )
    return {name: os.getenv(name) for name in names}
