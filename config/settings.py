import logging
import os
from pathlib import Path

from dotenv import load_dotenv

"""
Configuration settings for the Pokedex cache service.

This module loads environment variables, defines the tunables for the
service's operation, and validates the configuration to ensure stability. It
covers the upstream API endpoint, the cache store location, retry and
concurrency policy, and cache staleness rules.
"""

load_dotenv()

logger = logging.getLogger("pokedex.config")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(f"❌ {name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(f"❌ {name} must be a number, got {raw!r}")


# Data Storage
DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
DATA_DIR.mkdir(exist_ok=True)

# Database Configuration
# Format: scheme://path_or_host
# Defaults to a local SQLite file if not specified in environment
DB_CONNECTION_STRING = os.getenv(
    "DB_CONNECTION_STRING", f"sqlite:///{DATA_DIR / 'pokedex.db'}"
)

# HTTP facade
HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = _env_int("HTTP_PORT", 8080)

# API Configuration
POKEAPI_URL = os.getenv("POKEAPI_URL", "https://pokeapi.co/api/v2").rstrip("/")
BULBAPEDIA_URL = "https://bulbapedia.bulbagarden.net/wiki"
SPRITES_BASE_URL = (
    "https://raw.githubusercontent.com/PokeAPI/sprites/master/sprites/pokemon"
)

# Timeouts (seconds)
API_REQUEST_TIMEOUT = _env_float("API_REQUEST_TIMEOUT", 15)
SCRAPE_REQUEST_TIMEOUT = _env_float("SCRAPE_REQUEST_TIMEOUT", 20)

# Retry Configuration
MAX_RETRY_ATTEMPTS = _env_int("MAX_RETRY_ATTEMPTS", 3)
RETRY_BASE_DELAY = _env_float("RETRY_BASE_DELAY", 0.25)  # Seconds, doubled per attempt
RETRY_MAX_JITTER = _env_float("RETRY_MAX_JITTER", 0.12)  # Seconds of random jitter

# API Rate Limiting (for the upstream API, not callers)
MAX_CONCURRENT_API_REQUESTS = _env_int("MAX_CONCURRENT_API_REQUESTS", 16)

# Raw response cache
CACHE_TIMEOUT = _env_int("CACHE_TIMEOUT", 60 * 60 * 24)
MAX_CACHE_SIZE = _env_int("MAX_CACHE_SIZE", 5000)
CACHE_CLEANUP_INTERVAL = _env_int("CACHE_CLEANUP_INTERVAL", 300)

# Staleness policies
GENDER_DIFF_TTL_DAYS = _env_int("GENDER_DIFF_TTL_DAYS", 30)
# "tags": an id counts as cached only once it carries form tags.
# "presence": any cached row counts.
BULK_COMPLETENESS_POLICY = os.getenv("BULK_COMPLETENESS_POLICY", "tags").lower()

# Dex bounds
MAX_DEX_ID = _env_int("MAX_DEX_ID", 1025)
MAX_GENERATION = 9

# Logging Configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def validate_settings():
    """
    Validate all configuration settings to catch errors at startup.

    Raises:
        ValueError: If any configuration value is invalid (e.g., negative
            timeouts, unknown completeness policy).
    """
    if not POKEAPI_URL.startswith(("http://", "https://")):
        raise ValueError("POKEAPI_URL must be an http(s) URL")

    if not 0 < HTTP_PORT < 65536:
        raise ValueError("HTTP_PORT must be between 1 and 65535")

    # Validate timeouts
    if API_REQUEST_TIMEOUT <= 0:
        raise ValueError("API_REQUEST_TIMEOUT must be positive")

    if SCRAPE_REQUEST_TIMEOUT <= 0:
        raise ValueError("SCRAPE_REQUEST_TIMEOUT must be positive")

    # Validate retry settings
    if MAX_RETRY_ATTEMPTS < 1:
        raise ValueError("MAX_RETRY_ATTEMPTS must be at least 1")

    if RETRY_BASE_DELAY < 0:
        raise ValueError("RETRY_BASE_DELAY must be non-negative")

    if RETRY_MAX_JITTER < 0:
        raise ValueError("RETRY_MAX_JITTER must be non-negative")

    if MAX_CONCURRENT_API_REQUESTS < 1:
        raise ValueError("MAX_CONCURRENT_API_REQUESTS must be at least 1")

    # Validate cache settings
    if CACHE_TIMEOUT <= 0:
        raise ValueError("CACHE_TIMEOUT must be positive")

    if MAX_CACHE_SIZE < 1:
        raise ValueError("MAX_CACHE_SIZE must be at least 1")

    if CACHE_CLEANUP_INTERVAL <= 0:
        raise ValueError("CACHE_CLEANUP_INTERVAL must be positive")

    if GENDER_DIFF_TTL_DAYS < 0:
        raise ValueError("GENDER_DIFF_TTL_DAYS must be non-negative")

    if BULK_COMPLETENESS_POLICY not in ("tags", "presence"):
        raise ValueError("BULK_COMPLETENESS_POLICY must be 'tags' or 'presence'")

    if MAX_DEX_ID < 1:
        raise ValueError("MAX_DEX_ID must be positive")

    logger.info("✅ Configuration validation completed successfully")
