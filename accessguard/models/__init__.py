"""Models package: import all models so metadata sees every table."""

from accessguard.models.user import User, AccountType
from accessguard.models.permission import Permission
from accessguard.models.role import Role, RolePermission, UserRole
from accessguard.models.audit_log import AuditLog

__all__ = [
    "User", "AccountType", "Permission",
    "Role", "RolePermission", "UserRole",
    "AuditLog",
]
