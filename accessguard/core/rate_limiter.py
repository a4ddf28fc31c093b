"""Ban check and per-route rate limiting for inbound requests."""

import logging
import math

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from accessguard.core.exceptions import IPBannedError, RateLimitExceededError, StoreUnavailableError
from accessguard.core.security import RequestContext, client_ip
from accessguard.db.session import get_db
from accessguard.services.audit_service import audit_service

logger = logging.getLogger("accessguard.ratelimit")


class RateLimitGuard:
    """Dependency that rejects banned clients and clients over a route's budget.

    Banned clients are turned away before the limiter runs, so their requests
    never use up budget. A request over budget counts as a violation; enough
    violations inside the violation interval ban the client IP.
    """

    def __init__(self, route: str = "global"):
        self.route = route

    def __call__(self, request: Request, db: Session = Depends(get_db)) -> None:
        ip = client_ip(request)
        ban_list = request.app.state.ban_list
        limiter = request.app.state.rate_limiter

        try:
            ban = None if ip in ban_list.whitelist else ban_list.get(ip)
        except StoreUnavailableError:
            logger.error("Counter store unavailable during ban check for %s", ip)
            ban = None
        if ban is not None:
            remaining = ban.ttl_remaining(request.app.state.clock())
            raise IPBannedError(retry_after=max(math.ceil(remaining), 1))

        decision = limiter.check(ip, self.route)
        if decision.allowed:
            request.state.rate_limit = decision
            return

        logger.warning("Rate limit exceeded for %s on %s", ip, self.route)
        ctx = RequestContext(ip_address=ip, user_agent=request.headers.get("user-agent", "")[:500])
        audit_service.record_for(
            db, ctx,
            action="security.rate_limit_violation",
            resource="api",
            entity_id=ip,
            details={
                "message": "Request limit exceeded",
                "route": self.route,
                "path": request.url.path,
                "limit": decision.limit,
            },
        )

        try:
            ban = ban_list.record_violation(ip)
        except StoreUnavailableError:
            logger.error("Counter store unavailable; violation by %s not recorded", ip)
            ban = None

        if ban is not None:
            audit_service.record_for(
                db, ctx,
                action="security.ip_blocked",
                resource="firewall",
                entity_id=ip,
                details={
                    "message": f"IP {ip} automatically blocked for {ban.ttl_seconds}s",
                    "route": self.route,
                    "path": request.url.path,
                    "violation_count": ban.violation_count,
                    "offense": ban.offense,
                    "ttl_seconds": ban.ttl_seconds,
                },
            )

        raise RateLimitExceededError(retry_after=decision.retry_after)
