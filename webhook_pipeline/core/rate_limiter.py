from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import settings


def client_address(request: Request) -> str:
    """Rate-limit key: first X-Forwarded-For hop when behind a trusted proxy."""
    if settings.TRUST_FORWARDED_FOR:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return get_remote_address(request)


limiter = Limiter(key_func=client_address, enabled=settings.RATE_LIMIT_ENABLED)
limit_param = f"{settings.RATE_LIMIT_PER_MIN}/minute"
