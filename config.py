"""
Runtime configuration for the trip planner.

All values are read once from the environment at import time. Secrets are
not validated here; the clients that need them check lazily on first use.
"""

import os


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# LLM (Gemini)
# =============================================================================

GOOGLE_API_KEY = os.environ.get("GOOGLE_API_KEY")
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")
LLM_TEMPERATURE = float(os.environ.get("LLM_TEMPERATURE", "0.2"))
LLM_TIMEOUT_SECONDS = float(os.environ.get("LLM_TIMEOUT_SECONDS", "45"))
LLM_MAX_RETRIES = int(os.environ.get("LLM_MAX_RETRIES", "3"))
LLM_RETRY_DELAY_BASE = float(os.environ.get("LLM_RETRY_DELAY_BASE", "1"))


# =============================================================================
# Places lookup (LocationIQ)
# =============================================================================

LOCATIONIQ_API_KEY = os.environ.get("LOCATIONIQ_API_KEY")
LOCATIONIQ_BASE_URL = os.environ.get("LOCATIONIQ_BASE_URL", "https://us1.locationiq.com/v1")
PLACES_TIMEOUT_SECONDS = float(os.environ.get("PLACES_TIMEOUT_SECONDS", "10"))
ENRICHMENT_CONCURRENCY = int(os.environ.get("ENRICHMENT_CONCURRENCY", "5"))


# =============================================================================
# Stores & background work
# =============================================================================

SESSION_TTL_HOURS = float(os.environ.get("SESSION_TTL_HOURS", "24"))
PROGRESS_RETENTION_MINUTES = float(os.environ.get("PROGRESS_RETENTION_MINUTES", "5"))
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "3600"))
HEARTBEAT_SECONDS = float(os.environ.get("HEARTBEAT_SECONDS", "3"))
ITINERARY_HISTORY_LIMIT = int(os.environ.get("ITINERARY_HISTORY_LIMIT", "5"))
MAX_HISTORY_MESSAGES = int(os.environ.get("MAX_HISTORY_MESSAGES", "20"))


# =============================================================================
# Planning defaults
# =============================================================================

DEFAULT_START_OFFSET_DAYS = int(os.environ.get("DEFAULT_START_OFFSET_DAYS", "14"))
MAX_DESTINATIONS = int(os.environ.get("MAX_DESTINATIONS", "5"))


# =============================================================================
# API
# =============================================================================

DEV_MODE = _env_bool("DEV_MODE")
API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("API_PORT", "8006"))
