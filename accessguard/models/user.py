"""User model: supplied by the identity layer."""

import enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum
from sqlalchemy.orm import relationship

from accessguard.core.clock import utcnow
from accessguard.db.base import Base


class AccountType(str, enum.Enum):
    standard = "standard"
    master = "master"


class User(Base):
    """Platform user. ``master`` accounts bypass role resolution."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    account_type = Column(Enum(AccountType), default=AccountType.standard, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    role_links = relationship(
        "UserRole",
        foreign_keys="[UserRole.user_id]",
        lazy="selectin",
        passive_deletes=True,
    )
