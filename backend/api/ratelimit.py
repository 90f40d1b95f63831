"""Rate limiting configuration for API endpoints"""
from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from typing import Optional

from stockleague.config import settings


def read_limit(request: Optional[Request] = None) -> str:
    """
    Rate limit for public read endpoints.

    SlowAPI calls this with no arguments during decorator initialization,
    then with the actual Request during request handling.
    """
    return settings.rate_limit_default


def get_rate_limit_key(request: Optional[Request] = None) -> str:
    """Client address (handles SlowAPI's no-arg calls during init)"""
    if request is None:
        return "default"
    return get_remote_address(request)


limiter = Limiter(key_func=get_rate_limit_key)
