"""CORS and access-log middleware."""

import uuid
import time
import logging

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from accessguard.core.config import Settings

logger = logging.getLogger("accessguard.access")


def budget_label(request: Request) -> str:
    """Remaining rate-limit budget as ``route:remaining/limit``, or ``-``."""
    decision = getattr(request.state, "rate_limit", None)
    if decision is None:
        return "-"
    return f"{decision.route}:{decision.remaining}/{decision.limit}"


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and write one access log line per response.

    The line carries the budget the request guard left on ``request.state``;
    rejected and unguarded requests log ``-``.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        response: Response = await call_next(request)

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["X-Request-Id"] = request_id
        response.headers["X-Response-Time-Ms"] = str(elapsed_ms)

        logger.info(
            "%s %s %s %s %sms budget=%s id=%s",
            request.client.host if request.client else "-",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            budget_label(request),
            request_id,
        )
        return response


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-Request-Id"],
    )
    app.add_middleware(AccessLogMiddleware)
