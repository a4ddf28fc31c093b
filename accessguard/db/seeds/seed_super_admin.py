"""Seed the master account from env vars."""

from sqlalchemy.orm import Session

from accessguard.core.config import Settings, settings as default_settings
from accessguard.models.user import AccountType, User
from accessguard.models.role import UserRole
from accessguard.services.anti_lockout import AntiLockoutGuard


def seed_super_admin(db: Session, settings: Settings = None) -> User:
    """Create the master account if not already present and give it the Admin role.

    The Admin role assignment makes the account count as an administrator
    for the anti-lockout guard.
    """
    settings = settings or default_settings
    admin_role = AntiLockoutGuard.admin_role(db)
    if not admin_role:
        print("⚠️  Admin role not found. Run seed_roles first.")
        return None

    user = db.query(User).filter(User.email == settings.SUPER_ADMIN_EMAIL).first()
    if user:
        print(f"ℹ️  Master account '{settings.SUPER_ADMIN_EMAIL}' already exists, skipping.")
        return user

    user = User(
        email=settings.SUPER_ADMIN_EMAIL,
        full_name=settings.SUPER_ADMIN_NAME or "Super Admin",
        account_type=AccountType.master,
        is_active=True,
    )
    db.add(user)
    db.flush()
    db.add(UserRole(user_id=user.id, role_id=admin_role.id))
    db.commit()
    print(f"✅ Created master account: {settings.SUPER_ADMIN_EMAIL}")
    return user
