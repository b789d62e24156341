"""
开品宝 Backend — Rate Limiting

Per-IP limits (slowapi). Registered on the app in main.py and applied per
endpoint with @limiter.limit(...).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)

CHAT_RATE_LIMIT = "30/minute"
ANALYSIS_RATE_LIMIT = "10/minute"
SCRAPE_RATE_LIMIT = "10/minute"
