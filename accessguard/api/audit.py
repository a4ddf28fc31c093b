"""Audit log API router."""

from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from accessguard.core.clock import utcnow
from accessguard.core.exceptions import AccessGuardError
from accessguard.db.session import get_db
from accessguard.schemas.schemas import AuditLogOut, AuditLogPage
from accessguard.services.audit_service import AuditFilters, audit_service, parse_date_bound
from accessguard.services.permission_catalog import AUDIT_VIEW
from accessguard.core.rate_limiter import RateLimitGuard
from accessguard.core.security import RequestContext, RequirePermission

router = APIRouter(prefix="/audit-logs", tags=["audit"], dependencies=[Depends(RateLimitGuard("global"))])

require_audit = RequirePermission(AUDIT_VIEW)


def audit_filters(
    action: Optional[str] = Query(None, description='Exact action, or a prefix ending in "." or "*"'),
    user_id: Optional[int] = Query(None, alias="userId"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
) -> AuditFilters:
    try:
        return AuditFilters(
            action=action or None,
            actor_id=user_id,
            start_date=parse_date_bound(start_date),
            end_date=parse_date_bound(end_date, end=True),
        )
    except ValueError:
        raise AccessGuardError("Invalid date filter; use ISO 8601 (YYYY-MM-DD)")


def _filters_detail(filters: AuditFilters) -> dict:
    return {
        "action": filters.action,
        "user_id": filters.actor_id,
        "start_date": filters.start_date.isoformat() if filters.start_date else None,
        "end_date": filters.end_date.isoformat() if filters.end_date else None,
    }


@router.get("", response_model=AuditLogPage)
def query_audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    filters: AuditFilters = Depends(audit_filters),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_audit),
):
    """Query audit logs, newest first."""
    entries, total = audit_service.query(db, filters, page, limit)
    result = AuditLogPage(
        logs=[AuditLogOut.model_validate(e) for e in entries],
        total=total,
        page=page,
        limit=limit,
    )
    # Recorded after the query so a page never lists its own read
    audit_service.record_for(
        db, ctx,
        action="audit.list",
        resource="audit_logs",
        entity_id="all",
        details={"page": page, "limit": limit, "filters": _filters_detail(filters)},
    )
    return result


@router.get("/actions", response_model=List[str])
def list_audit_actions(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_audit),
):
    return audit_service.list_distinct_actions(db)


@router.get("/export.csv")
def export_audit_logs(
    request: Request,
    filters: AuditFilters = Depends(audit_filters),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_audit),
):
    """Download matching audit logs as a semicolon-separated CSV file."""
    settings = request.app.state.settings
    audit_service.record_for(
        db, ctx,
        action="audit.export",
        resource="audit_logs",
        details=_filters_detail(filters),
    )
    filename = f"audit-logs-{utcnow().strftime('%Y%m%d-%H%M%S')}.csv"
    return StreamingResponse(
        audit_service.export_csv(
            request.app.state.session_factory, filters, settings.AUDIT_EXPORT_MAX_ROWS,
        ),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
