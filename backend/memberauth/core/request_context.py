# backend/memberauth/core/request_context.py
"""
Per-request context for the audit log.

Handlers that know the client address pass it explicitly; anything deeper
(the audit service, mostly) falls back to the address recorded here.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from memberauth.core.rate_limit import get_real_client_ip

REQUEST_ID_HEADER = "X-Request-ID"


@dataclass(frozen=True)
class RequestContext:
    ip_address: str = "unknown"
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


_current: ContextVar[RequestContext | None] = ContextVar("memberauth_request_context", default=None)


def get_request_context() -> RequestContext | None:
    return _current.get()


def get_client_ip() -> str:
    ctx = get_request_context()
    return ctx.ip_address if ctx else "unknown"


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        ctx = RequestContext(ip_address=get_real_client_ip(request))
        token = _current.set(ctx)
        try:
            response = await call_next(request)
        finally:
            _current.reset(token)
        response.headers[REQUEST_ID_HEADER] = ctx.request_id
        return response
