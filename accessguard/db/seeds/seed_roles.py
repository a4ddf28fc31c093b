"""Seed the permission catalog and the system roles."""

from sqlalchemy import func
from sqlalchemy.orm import Session

from accessguard.models.permission import Permission
from accessguard.models.role import Role, RolePermission
from accessguard.services.anti_lockout import ADMIN_ROLE_NAME
from accessguard.services.permission_catalog import permission_catalog

# None grants the whole catalog
SYSTEM_ROLES = [
    {
        "name": ADMIN_ROLE_NAME,
        "description": "Full access, including roles, permissions and blocked IPs",
        "permissions": None,
    },
    {
        "name": "Manager",
        "description": "Runs the sales team and reviews activity",
        "permissions": ["sale:create", "sale:delete", "user:manage", "agent:use", "audit:view"],
    },
    {
        "name": "Seller",
        "description": "Records sales and uses the assistant",
        "permissions": ["sale:create", "agent:use"],
    },
    {
        "name": "Viewer",
        "description": "Read-only dashboard access",
        "permissions": [],
    },
]


def seed_roles(db: Session) -> None:
    """Sync the catalog, then insert system roles that don't already exist.

    Existing roles keep whatever permissions were edited since.
    """
    permission_catalog.sync(db)
    permissions = {p.name: p.id for p in db.query(Permission).all()}

    created = 0
    for role_data in SYSTEM_ROLES:
        existing = db.query(Role).filter(func.lower(Role.name) == role_data["name"].lower()).first()
        if existing:
            continue

        role = Role(name=role_data["name"], description=role_data["description"], is_system=True)
        db.add(role)
        db.flush()
        granted = permissions.keys() if role_data["permissions"] is None else role_data["permissions"]
        db.add_all(RolePermission(role_id=role.id, permission_id=permissions[name]) for name in granted)
        created += 1

    db.commit()
    print(f"✅ Seeded {created} system role(s), {len(permissions)} permissions in catalog")
