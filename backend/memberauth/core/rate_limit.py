from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from memberauth.core.config import settings


def get_real_client_ip(request: Request) -> str:
    """
    Client address used for rate limiting, audit entries and the security log.

    X-Forwarded-For is only honoured when TRUST_PROXY_HEADERS is set, i.e. a
    reverse proxy in front of the app overwrites that header.
    """
    if settings.TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            first_hop = forwarded_for.split(",")[0].strip()
            if first_hop:
                return first_hop
    return get_remote_address(request)


# Identifies clients by the same address the logs record
limiter = Limiter(key_func=get_real_client_ip, enabled=settings.RATE_LIMIT_ENABLED)
