"""
Environment configuration for the storefront dashboard.

Values come from the process environment, optionally seeded from a `.env`
file next to the working directory. Store credentials (commerce, couriers,
SMS) are not read here: they live in the settings store.

Env vars:
  LOCAL_API_BASE        base URL of the local persistence API (default: http://127.0.0.1:5000/api)
  HTTP_TIMEOUT          seconds per outbound request (default: 8)
  DASHBOARD_DB_PATH     SQLite file backing the local API (default: dashboard.db)
  DASHBOARD_LOG_LEVEL   logging level name (default: INFO)
  SYNC_INTERVAL         seconds between sync worker passes (default: 60)
  GEMINI_API_KEY        key for the AI text service (optional)
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


LOCAL_API_BASE = _env_string('LOCAL_API_BASE', 'http://127.0.0.1:5000/api')
HTTP_TIMEOUT = _env_float('HTTP_TIMEOUT', 8.0)
DASHBOARD_DB_PATH = _env_string('DASHBOARD_DB_PATH', 'dashboard.db')
LOG_LEVEL_NAME = (_env_string('DASHBOARD_LOG_LEVEL', 'INFO') or 'INFO').upper()
SYNC_INTERVAL = _env_float('SYNC_INTERVAL', 60.0)
SMS_SEND_DELAY = _env_float('SMS_SEND_DELAY', 0.3)
BUSINESS_NAME = _env_string('BUSINESS_NAME', 'bdcommerce')

# AI text service
GEMINI_API_KEY = _env_string('GEMINI_API_KEY')
GEMINI_MODEL = _env_string('GEMINI_MODEL', 'gemini-2.0-flash')
GEMINI_API_BASE = _env_string('GEMINI_API_BASE', 'https://generativelanguage.googleapis.com/v1beta')

# Courier endpoints
STEADFAST_API_BASE = _env_string('STEADFAST_API_BASE', 'https://portal.packzy.com/api/v1')
PATHAO_API_BASE = _env_string('PATHAO_API_BASE', 'https://api-hermes.pathao.com')
PATHAO_SANDBOX_API_BASE = _env_string('PATHAO_SANDBOX_API_BASE', 'https://courier-api-sandbox.pathao.com')
PATHAO_PROXY_URL = _env_string('PATHAO_PROXY_URL', LOCAL_API_BASE.rstrip('/') + '/pathao/proxy')


def log_level() -> int:
    return getattr(logging, LOG_LEVEL_NAME, logging.INFO)


def configure_logging(prefix: str = 'dashboard') -> None:
    logging.basicConfig(
        level=log_level(),
        format=f'[{prefix}] %(asctime)s %(levelname)s %(name)s %(message)s'
    )
