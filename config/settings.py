import logging
import os
from pathlib import Path

from dotenv import load_dotenv

"""
Configuration settings for the PokeMMO Link dashboard server.

This module loads environment variables, defines constants for the server's
operation, and validates the configuration to ensure stability. It handles
the listening address, on-disk data locations, PokeAPI endpoints, cache
lifetimes and polling behaviour.
"""

load_dotenv()

logger = logging.getLogger("pokemmo_link.config")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"❌ {name} must be a valid integer (got {raw!r})!\n\n"
            f"Fix the value in your .env file, e.g.:\n"
            f"  {name}={default}"
        )


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"❌ {name} must be a number (got {raw!r})!\n\n"
            f"Fix the value in your .env file, e.g.:\n"
            f"  {name}={default}"
        )


# Server Configuration
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 3000)

# Data Storage
# One dump-<container_type>.json file per container lives here.
DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Directory for the JSON resource cache backend
CACHE_DIR = Path(os.getenv("CACHE_DIR", str(DATA_DIR / "cache")))

# Database Configuration
# Format: scheme://path_or_host
# Defaults to a local SQLite file if not specified in environment
DB_CONNECTION_STRING = os.getenv(
    "DB_CONNECTION_STRING", f"sqlite:///{DATA_DIR / 'pokemmo_link.db'}"
)

# API Configuration
POKEAPI_URL = os.getenv("POKEAPI_URL", "https://pokeapi.co/api/v2")
SPRITE_BASE_URL = os.getenv(
    "SPRITE_BASE_URL",
    "https://raw.githubusercontent.com/PokeAPI/sprites/master/sprites/pokemon",
)
CRY_BASE_URL = "https://raw.githubusercontent.com/PokeAPI/cries/main/cries/pokemon/latest"

# Resource Cache Configuration (species / move / ability enrichment data)
CACHE_TTL = _env_int("CACHE_TTL", 24 * 60 * 60)  # 24 hours
RESOURCE_CACHE_BACKEND = os.getenv("RESOURCE_CACHE_BACKEND", "sqlite").lower()
RESOURCE_CACHE_BACKENDS = ("sqlite", "json", "memory")

# Proxy Cache Configuration (flattened upstream responses)
PROXY_CACHE_TIMEOUT = _env_int("PROXY_CACHE_TIMEOUT", 24 * 60 * 60)
MAX_PROXY_CACHE_SIZE = _env_int("MAX_PROXY_CACHE_SIZE", 5000)
CACHE_CLEANUP_INTERVAL = 3600  # Cleanup interval in seconds

# Live data polling
POLL_INTERVAL = _env_float("POLL_INTERVAL", 3.0)  # seconds
# Minimum seconds between polls that retry lookups which failed to enrich
ENRICHMENT_RETRY_INTERVAL = _env_float("ENRICHMENT_RETRY_INTERVAL", 30.0)
DEFAULT_PC_BOX = os.getenv("DEFAULT_PC_BOX", "box_1")

# API Rate Limiting (for PokeAPI, not for dashboard clients)
MAX_CONCURRENT_API_REQUESTS = _env_int("MAX_CONCURRENT_API_REQUESTS", 20)
API_REQUEST_TIMEOUT = _env_int("API_REQUEST_TIMEOUT", 8)  # Timeout in seconds

# Retry Configuration
MAX_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY = 1  # Base delay in seconds for exponential backoff
RETRY_MAX_DELAY = 10  # Maximum delay in seconds between retries

# Circuit Breaker Configuration
BREAKER_FAILURE_THRESHOLD = 5
BREAKER_RECOVERY_TIMEOUT = 60.0
BREAKER_SUCCESS_THRESHOLD = 2

# Logging Configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "pokemmo_link.log")


def validate_settings():
    """
    Validate all configuration settings to catch errors at startup.

    Raises:
        ValueError: If any configuration value is invalid (e.g., negative
            timeouts, unknown cache backend).
    """
    if not 0 < PORT < 65536:
        raise ValueError("PORT must be between 1 and 65535")

    # Validate cache settings
    if CACHE_TTL <= 0:
        raise ValueError("CACHE_TTL must be positive")

    if PROXY_CACHE_TIMEOUT <= 0:
        raise ValueError("PROXY_CACHE_TIMEOUT must be positive")

    if MAX_PROXY_CACHE_SIZE < 1:
        raise ValueError("MAX_PROXY_CACHE_SIZE must be at least 1")

    if RESOURCE_CACHE_BACKEND not in RESOURCE_CACHE_BACKENDS:
        raise ValueError(
            f"RESOURCE_CACHE_BACKEND must be one of {', '.join(RESOURCE_CACHE_BACKENDS)}"
        )

    # Validate polling
    if POLL_INTERVAL <= 0:
        raise ValueError("POLL_INTERVAL must be positive")
    if ENRICHMENT_RETRY_INTERVAL < 0:
        raise ValueError("ENRICHMENT_RETRY_INTERVAL cannot be negative")

    # Validate API settings
    if MAX_CONCURRENT_API_REQUESTS < 1:
        raise ValueError("MAX_CONCURRENT_API_REQUESTS must be at least 1")

    if API_REQUEST_TIMEOUT <= 0:
        raise ValueError("API_REQUEST_TIMEOUT must be positive")

    # Validate retry settings
    if MAX_RETRY_ATTEMPTS < 1:
        raise ValueError("MAX_RETRY_ATTEMPTS must be at least 1")

    if RETRY_BASE_DELAY < 0:
        raise ValueError("RETRY_BASE_DELAY must be non-negative")

    if RETRY_MAX_DELAY < RETRY_BASE_DELAY:
        raise ValueError("RETRY_MAX_DELAY must be >= RETRY_BASE_DELAY")

    logger.info("✅ Configuration validation completed successfully")
