"""Configuration settings and environment variables.

This module loads values from environment variables (including a .env file)
and provides small helpers to safely parse integers and booleans while
stripping inline comments. This avoids crashes when a .env value contains
an inline comment like:

    STORAGE_MONITOR_INTERVAL_MINUTES=30 # Default half an hour

The helpers fall back to defaults and emit warnings when parsing fails.
"""

import os
import logging
from datetime import timedelta
from typing import Dict, Optional, Tuple
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

_logger = logging.getLogger(__name__)

_REPO_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def _strip_inline_comment(val: str) -> str:
    """Strip an inline comment from a string and trim whitespace/quotes.

    Example: "30 # Default half an hour" -> "30"
    """
    if val is None:
        return ''
    # Split on first '#' to remove inline comments
    val = val.split('#', 1)[0]
    val = val.strip()
    # Remove surrounding single/double quotes if present
    if (val.startswith('"') and val.endswith('"')) or (
        val.startswith("'") and val.endswith("'")
    ):
        val = val[1:-1]
    return val


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    stripped = _strip_inline_comment(raw)
    return stripped if stripped != '' else default


def _get_int_env(name: str, default: int) -> int:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (ValueError, TypeError):
        _logger.warning("Invalid integer for %s: %r, falling back to %s", name, raw, default)
        return default


def _get_bool_env(name: str, default: bool) -> bool:
    raw = _get_env(name)
    if raw is None:
        return default
    return raw.lower() in ['true', '1', 'on', 'yes']


def parse_lifecycle_rules(raw: Optional[str]) -> Dict[str, Tuple[str, int]]:
    """Parse ``collection:date_field:max_age_days`` entries separated by commas.

    Example: "appointments:appointmentDate:365,billings:createdAt:730"
    Malformed entries are skipped with a warning.
    """
    rules: Dict[str, Tuple[str, int]] = {}
    if not raw:
        return rules
    for entry in raw.split(','):
        entry = entry.strip()
        if not entry:
            continue
        parts = [p.strip() for p in entry.split(':')]
        if len(parts) != 3 or not parts[0] or not parts[1]:
            _logger.warning("Ignoring malformed lifecycle rule %r", entry)
            continue
        try:
            days = int(parts[2])
        except ValueError:
            _logger.warning("Ignoring lifecycle rule %r: max age is not an integer", entry)
            continue
        if days <= 0:
            _logger.warning("Ignoring lifecycle rule %r: max age must be positive", entry)
            continue
        rules[parts[0]] = (parts[1], days)
    return rules


class Config:
    """Base configuration class with default settings."""

    # Flask settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'
    # JWT settings
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or SECRET_KEY
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=1)

    # MongoDB settings
    MONGO_URI = os.environ.get('MONGO_URI') or 'mongodb://localhost:27017/'
    MONGO_DB = os.environ.get('MONGO_DB') or 'dental_clinic'

    # Connection manager
    DB_CONNECT_ON_STARTUP = _get_bool_env('DB_CONNECT_ON_STARTUP', True)
    DB_CONNECT_RETRIES = _get_int_env('DB_CONNECT_RETRIES', 3)
    DB_CONNECT_INITIAL_DELAY_MS = _get_int_env('DB_CONNECT_INITIAL_DELAY_MS', 500)
    # Time to let a fresh connection settle before the storage monitor starts
    DB_SETTLE_DELAY_SECONDS = _get_int_env('DB_SETTLE_DELAY_SECONDS', 5)

    # Rate limiting
    RATELIMIT_STORAGE_URL = os.environ.get('RATELIMIT_STORAGE_URL') or 'memory://'

    # Storage monitor (in-process APScheduler)
    STORAGE_MONITOR_ENABLED = _get_bool_env('STORAGE_MONITOR_ENABLED', True)
    STORAGE_MONITOR_INTERVAL_MINUTES = _get_int_env('STORAGE_MONITOR_INTERVAL_MINUTES', 30)
    # Storage ceiling the usage percentage is computed against (default 512 MiB)
    STORAGE_MAX_BYTES = _get_int_env('STORAGE_MAX_BYTES', 512 * 1024 * 1024)
    STORAGE_CHECK_COOLDOWN_SECONDS = _get_int_env('STORAGE_CHECK_COOLDOWN_SECONDS', 5 * 60)
    STORAGE_MONITOR_WARMUP_SECONDS = _get_int_env('STORAGE_MONITOR_WARMUP_SECONDS', 5)
    STORAGE_RECHECK_DELAY_SECONDS = _get_int_env('STORAGE_RECHECK_DELAY_SECONDS', 10)

    # Backups
    BACKUP_ROOT = _get_env('BACKUP_ROOT') or os.path.join(_REPO_ROOT, 'backups')
    BACKUP_TEMP_ROOT = _get_env('BACKUP_TEMP_ROOT') or os.path.join(_REPO_ROOT, 'temp-backup')
    BACKUP_RETENTION_COUNT = _get_int_env('BACKUP_RETENTION_COUNT', 5)
    BACKUP_COMPRESSION_LEVEL = _get_int_env('BACKUP_COMPRESSION_LEVEL', 9)

    # Optional post-backup purge of old documents. Empty means nothing is deleted.
    DATA_LIFECYCLE_RULES = parse_lifecycle_rules(_get_env('DATA_LIFECYCLE_RULES'))


class DevelopmentConfig(Config):
    """Development configuration with debug mode enabled."""
    DEBUG = True
    TESTING = False


class ProductionConfig(Config):
    """Production configuration with security settings."""
    DEBUG = False
    TESTING = False


class TestingConfig(Config):
    """Testing configuration with test database."""
    TESTING = True
    MONGO_DB = 'dental_clinic_test'
    DB_CONNECT_ON_STARTUP = False
    STORAGE_MONITOR_ENABLED = False
    RATELIMIT_ENABLED = False


# Configuration mapping
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
