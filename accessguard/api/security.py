"""Blocked IP management API router."""

from typing import List
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from accessguard.core.exceptions import ResourceNotFoundError
from accessguard.db.session import get_db
from accessguard.schemas.schemas import BlockedIPOut, MessageResponse
from accessguard.services.audit_service import audit_service
from accessguard.services.permission_catalog import SECURITY_MANAGE
from accessguard.core.rate_limiter import RateLimitGuard
from accessguard.core.security import RequestContext, RequirePermission

router = APIRouter(prefix="/security", tags=["security"], dependencies=[Depends(RateLimitGuard("global"))])

require_security = RequirePermission(SECURITY_MANAGE)


@router.get("/blocked-ips", response_model=List[BlockedIPOut])
def list_blocked_ips(
    request: Request,
    ctx: RequestContext = Depends(require_security),
):
    """Currently banned IPs, longest remaining ban first."""
    now = request.app.state.clock()
    return [
        BlockedIPOut(
            ip=entry.ip,
            ttl_remaining=int(entry.ttl_remaining(now)),
            banned_at=datetime.fromtimestamp(entry.banned_at, tz=timezone.utc),
            violation_count=entry.violation_count,
            offense=entry.offense,
        )
        for entry in request.app.state.ban_list.list_active()
    ]


@router.post("/blocked-ips/{ip}/unban", response_model=MessageResponse)
def unban_ip(
    ip: str,
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_security),
):
    """Lift a ban immediately, whatever its remaining TTL."""
    if not request.app.state.ban_list.unban(ip):
        raise ResourceNotFoundError(f"IP {ip} is not blocked")

    audit_service.record_for(
        db, ctx,
        action="security.ip_unblocked",
        resource="firewall",
        entity_id=ip,
        details={"message": f"IP {ip} unblocked manually"},
    )
    return MessageResponse(message=f"IP {ip} unblocked")
