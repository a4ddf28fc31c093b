"""Permission catalog: closed registry of permission keys and their metadata."""

import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from accessguard.models.permission import Permission

logger = logging.getLogger("accessguard.rbac")


class PermissionCategory(str, enum.Enum):
    SALES = "Sales"
    USERS = "Users"
    SETTINGS = "Settings"
    AGENT = "Agent"
    AUDIT = "Audit"
    SECURITY = "Security"


class PermissionIcon(str, enum.Enum):
    SHOPPING_CART = "ShoppingCart"
    USER = "User"
    SETTINGS = "Settings"
    BOT = "Bot"
    FILE_TEXT = "FileText"
    LOCK = "Lock"


@dataclass(frozen=True)
class PermissionDefinition:
    name: str
    label: str
    category: PermissionCategory
    icon: PermissionIcon
    privileged: bool = False


# Well-known keys referenced by the HTTP layer
RBAC_MANAGE = "rbac:manage"
AUDIT_VIEW = "audit:view"
SECURITY_MANAGE = "security:manage"

DEFINITIONS: List[PermissionDefinition] = [
    PermissionDefinition("sale:create", "Create sales", PermissionCategory.SALES, PermissionIcon.SHOPPING_CART),
    PermissionDefinition("sale:delete", "Delete sales", PermissionCategory.SALES, PermissionIcon.SHOPPING_CART),
    PermissionDefinition("user:manage", "Manage users", PermissionCategory.USERS, PermissionIcon.USER),
    PermissionDefinition("settings:manage", "Manage settings", PermissionCategory.SETTINGS, PermissionIcon.SETTINGS),
    PermissionDefinition("agent:use", "Use the analytics assistant", PermissionCategory.AGENT, PermissionIcon.BOT),
    PermissionDefinition(AUDIT_VIEW, "View audit logs", PermissionCategory.AUDIT, PermissionIcon.FILE_TEXT),
    PermissionDefinition(
        RBAC_MANAGE, "Manage roles and permissions", PermissionCategory.SECURITY, PermissionIcon.LOCK,
        privileged=True,
    ),
    PermissionDefinition(
        SECURITY_MANAGE, "Manage blocked IPs", PermissionCategory.SECURITY, PermissionIcon.LOCK,
        privileged=True,
    ),
]


class PermissionCatalog:
    """Typed lookup over the permission definitions, keyed by machine name."""

    def __init__(self, definitions: List[PermissionDefinition] = None):
        definitions = DEFINITIONS if definitions is None else definitions
        self._by_name: Dict[str, PermissionDefinition] = {d.name: d for d in definitions}

    def get(self, name: str) -> Optional[PermissionDefinition]:
        return self._by_name.get(name)

    def is_known(self, name: str) -> bool:
        return name in self._by_name

    def definitions(self) -> List[PermissionDefinition]:
        return list(self._by_name.values())

    def names(self) -> frozenset:
        return frozenset(self._by_name)

    def privileged_names(self) -> frozenset:
        return frozenset(d.name for d in self._by_name.values() if d.privileged)

    def sync(self, db: Session) -> int:
        """Insert catalog entries missing from the database.

        Existing rows get their display metadata refreshed; rows are never
        deleted. Returns the number of inserted permissions.
        """
        existing = {p.name: p for p in db.query(Permission).all()}
        inserted = 0
        for definition in self._by_name.values():
            row = existing.get(definition.name)
            if row is None:
                db.add(Permission(
                    name=definition.name,
                    label=definition.label,
                    category=definition.category.value,
                    icon=definition.icon.value,
                ))
                inserted += 1
            else:
                row.label = definition.label
                row.category = definition.category.value
                row.icon = definition.icon.value
        db.commit()
        if inserted:
            logger.info("Permission catalog synced: %d new permission(s)", inserted)
        return inserted

    @staticmethod
    def list_permissions(db: Session) -> List[Permission]:
        """All permissions, grouped by category."""
        return db.query(Permission).order_by(Permission.category, Permission.name).all()


permission_catalog = PermissionCatalog()
