"""Per-client HTTP rate limiter shared by the signaling routes."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from config import SIGNALING_RATE_LIMIT_ENABLED


def get_client_ip(request: Request) -> str:
    """Honour X-Forwarded-For when behind a reverse proxy, else the socket address."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(key_func=get_client_ip, enabled=SIGNALING_RATE_LIMIT_ENABLED)
