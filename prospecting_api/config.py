from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

API_TOKEN = os.environ.get("API_TOKEN", "dev-token")
GOOGLE_MAPS_API_KEY = os.environ.get("GOOGLE_MAPS_API_KEY", "")
EVOLUTION_API_URL = os.environ.get("EVOLUTION_API_URL", "")
EVOLUTION_API_KEY = os.environ.get("EVOLUTION_API_KEY", "")

# every outbound call (places page, details, whatsapp check/send) gets its own timeout
REQUEST_TIMEOUT_SECONDS = float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "20"))

# pacing: long wait after a successful dispatch, short one after anything else
PACING_INTERVAL_SECONDS = float(os.environ.get("PACING_INTERVAL_SECONDS", "1200"))
FAILURE_DELAY_SECONDS = float(os.environ.get("FAILURE_DELAY_SECONDS", "1"))
DAILY_DISPATCH_CAP = int(os.environ.get("DAILY_DISPATCH_CAP", "100"))

DISCOVERY_PAGE_DELAY_SECONDS = float(os.environ.get("DISCOVERY_PAGE_DELAY_SECONDS", "2"))
DISCOVERY_MAX_PAGES = int(os.environ.get("DISCOVERY_MAX_PAGES", "3"))
DISCOVERY_MIN_YIELD = int(os.environ.get("DISCOVERY_MIN_YIELD", "20"))
PLACES_DETAILS_SPACING_SECONDS = float(os.environ.get("PLACES_DETAILS_SPACING_SECONDS", "1.5"))
PLACES_CACHE_TTL_DAYS = int(os.environ.get("PLACES_CACHE_TTL_DAYS", "30"))

# stop() latency is bounded by this
WAIT_POLL_SECONDS = float(os.environ.get("WAIT_POLL_SECONDS", "1"))
LOG_BUFFER_SIZE = int(os.environ.get("LOG_BUFFER_SIZE", "100"))

# quota day boundaries are computed in this zone
TENANT_TIMEZONE = os.environ.get("TENANT_TIMEZONE", "America/Sao_Paulo")
DEFAULT_COUNTRY_CODE = os.environ.get("DEFAULT_COUNTRY_CODE", "55")

# - Set CORS_ALLOW_ORIGINS="https://crm.example.com,https://admin.example.com"
# - Default is "*".
CORS_ALLOW_ORIGINS = os.environ.get("CORS_ALLOW_ORIGINS", "*")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

DB_PATH = os.environ.get("DB_PATH") or os.path.join(os.path.dirname(__file__), "prospecting.db")
