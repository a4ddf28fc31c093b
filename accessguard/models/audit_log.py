"""Audit log model: append-only."""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON
from accessguard.core.clock import utcnow
from accessguard.db.base import Base


class AuditLog(Base):
    """Immutable audit trail for privileged mutations and security events.

    This table is APPEND-ONLY: no UPDATE or DELETE operations are performed
    on it outside the retention purge.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(100), nullable=False, index=True)  # e.g. "rbac.role.created"
    resource = Column(String(50), nullable=False, index=True)  # role, user_role, firewall, ...
    entity_id = Column(String(100), nullable=True)
    actor_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
