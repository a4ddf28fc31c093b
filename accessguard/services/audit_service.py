"""Audit service: append-only audit trail for privileged mutations."""

import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Any, Dict, Iterator, List, Tuple

from sqlalchemy import distinct
from sqlalchemy.orm import Session, sessionmaker

from accessguard.core.clock import utcnow
from accessguard.models.audit_log import AuditLog
from accessguard.models.user import User

logger = logging.getLogger("accessguard.audit")

CSV_COLUMNS = [
    "created_at", "actor_id", "actor_email", "action", "resource",
    "entity_id", "ip_address", "user_agent", "details",
]


@dataclass
class AuditFilters:
    """Query filters. ``action`` ending in "." or "*" matches as a prefix."""
    action: Optional[str] = None
    actor_id: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


def parse_date_bound(value: Optional[str], end: bool = False) -> Optional[datetime]:
    """Parse an ISO date or datetime filter into naive UTC.

    A bare date used as an end bound covers that whole day.
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    if end and len(value) == 10:
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return parsed


class AuditService:
    """Records immutable audit log entries for privileged events."""

    @staticmethod
    def record(
        db: Session,
        action: str,
        resource: str,
        entity_id: Optional[Any] = None,
        actor_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        """Write a single audit log record.

        Args:
            action: e.g. "rbac.role.created", "security.ip_blocked"
            resource: role, user_role, role_permission, firewall, audit_logs, ...

        Called after the primary mutation has committed. A failed write is
        rolled back on its own, logged, and reported as None; it never undoes
        the mutation it describes.
        """
        entry = AuditLog(
            action=action,
            resource=resource,
            entity_id=str(entity_id) if entity_id is not None else None,
            actor_id=actor_id,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
            details=details,
        )
        try:
            db.add(entry)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to write audit entry action=%s entity=%s", action, entity_id)
            return None
        return entry

    @staticmethod
    def record_for(
        db: Session,
        ctx,
        action: str,
        resource: str,
        entity_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditLog]:
        """Write audit log taking actor, IP and user-agent from the request context."""
        return AuditService.record(
            db,
            action=action,
            resource=resource,
            entity_id=entity_id,
            actor_id=ctx.actor_id if ctx else None,
            ip_address=ctx.ip_address if ctx else None,
            user_agent=ctx.user_agent if ctx else None,
            details=details,
        )

    @staticmethod
    def diff(previous: Optional[Dict[str, Any]], next: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """Changed keys between two snapshots, as a {previous, next} pair."""
        if not previous:
            return {"previous": {}, "next": dict(next)}

        diff_prev: Dict[str, Any] = {}
        diff_next: Dict[str, Any] = {}
        for key in set(previous) | set(next):
            if key in ("created_at", "updated_at"):
                continue
            if previous.get(key) != next.get(key):
                diff_prev[key] = previous.get(key)
                diff_next[key] = next.get(key)
        return {"previous": diff_prev, "next": diff_next}

    @staticmethod
    def _filtered(db: Session, filters: AuditFilters):
        query = db.query(AuditLog)
        if filters.action:
            if filters.action.endswith("*"):
                query = query.filter(AuditLog.action.startswith(filters.action[:-1], autoescape=True))
            elif filters.action.endswith("."):
                query = query.filter(AuditLog.action.startswith(filters.action, autoescape=True))
            else:
                query = query.filter(AuditLog.action == filters.action)
        if filters.actor_id is not None:
            query = query.filter(AuditLog.actor_id == filters.actor_id)
        if filters.start_date:
            query = query.filter(AuditLog.created_at >= filters.start_date)
        if filters.end_date:
            query = query.filter(AuditLog.created_at <= filters.end_date)
        return query

    @staticmethod
    def query(
        db: Session,
        filters: Optional[AuditFilters] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[AuditLog], int]:
        """Query audit logs with filters and pagination.

        Returns the page of entries (newest first) and the total number of
        matches independent of the page window.
        """
        query = AuditService._filtered(db, filters or AuditFilters())
        total = query.count()
        entries = (
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return entries, total

    @staticmethod
    def list_distinct_actions(db: Session) -> List[str]:
        rows = db.query(distinct(AuditLog.action)).order_by(AuditLog.action).all()
        return [row[0] for row in rows]

    @staticmethod
    def export_csv(
        session_factory: sessionmaker,
        filters: Optional[AuditFilters] = None,
        max_rows: int = 10000,
    ) -> Iterator[str]:
        """Stream matching entries as CSV lines, newest first.

        Opens its own session so the stream can outlive the request's session.
        The first chunk carries a UTF-8 BOM so spreadsheet tools detect the
        encoding.
        """
        buffer = io.StringIO()
        writer = csv.writer(buffer, delimiter=";")

        def flush() -> str:
            chunk = buffer.getvalue()
            buffer.seek(0)
            buffer.truncate(0)
            return chunk

        writer.writerow(CSV_COLUMNS)
        yield "\ufeff" + flush()

        db = session_factory()
        try:
            query = (
                AuditService._filtered(db, filters or AuditFilters())
                .outerjoin(User, User.id == AuditLog.actor_id)
                .add_columns(User.email)
                .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                .limit(max_rows)
            )
            for entry, email in query.yield_per(500):
                writer.writerow([
                    entry.created_at.isoformat(),
                    entry.actor_id if entry.actor_id is not None else "",
                    email or "System",
                    entry.action,
                    entry.resource,
                    entry.entity_id or "-",
                    entry.ip_address or "-",
                    entry.user_agent or "-",
                    _details_text(entry.details),
                ])
                yield flush()
        finally:
            db.close()

    @staticmethod
    def purge_older_than(db: Session, days: int) -> int:
        """Retention cleanup: delete entries older than ``days``. CLI only."""
        cutoff = utcnow() - timedelta(days=days)
        deleted = (
            db.query(AuditLog)
            .filter(AuditLog.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted


def _details_text(details: Optional[Dict[str, Any]]) -> str:
    if not details:
        return ""
    if "message" in details:
        return str(details["message"])
    return "; ".join(f"{key}={value}" for key, value in sorted(details.items()))


audit_service = AuditService()
