"""Permission model: rows are synced from the permission catalog."""

from sqlalchemy import Column, Integer, String
from accessguard.db.base import Base


class Permission(Base):
    """Machine-keyed permission with display metadata.

    The table is append-only in normal operation: new catalog entries are
    inserted at startup, existing rows are never removed.
    """
    __tablename__ = "permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False, index=True)  # e.g. "sale:create"
    label = Column(String(255), nullable=False)
    category = Column(String(50), nullable=False)
    icon = Column(String(50), nullable=False)
