"""Anti-lockout guard: the installation must always keep an administrator.

Every change that can take administrative capability away runs its
count-then-act sequence inside ``AntiLockoutGuard.protect``:

* a process-wide lock serializes guarded changes between request threads;
* ``SELECT ... FOR UPDATE`` on the Admin role row serializes them between
  processes sharing the database.

The holder count is itself a locking read over the Admin holder rows joined
to their users. Under InnoDB REPEATABLE READ a plain SELECT reads the snapshot
the request session opened before the lock was taken; a locking read sees the
latest committed rows. SQLite renders no ``FOR UPDATE``, so there the process
lock is the only serialization.

Only active users count as holders.

The caller commits before leaving the block, so no second removal can count
the holders until the first one is visible.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Query, Session

from accessguard.core.exceptions import AntiLockoutError
from accessguard.models.permission import Permission
from accessguard.models.role import Role, RolePermission, UserRole
from accessguard.models.user import User
from accessguard.services.permission_catalog import PermissionCatalog, permission_catalog

logger = logging.getLogger("accessguard.rbac")

ADMIN_ROLE_NAME = "Admin"

_admin_lock = threading.RLock()


def is_admin_role(role: Optional[Role]) -> bool:
    return role is not None and bool(role.is_system) and role.name.lower() == ADMIN_ROLE_NAME.lower()


class AntiLockoutGuard:
    """Rejects changes that would leave no active user holding the Admin role."""

    def __init__(self, catalog: PermissionCatalog = permission_catalog):
        self.catalog = catalog

    @staticmethod
    def admin_role(db: Session) -> Optional[Role]:
        return (
            db.query(Role)
            .filter(func.lower(Role.name) == ADMIN_ROLE_NAME.lower(), Role.is_system.is_(True))
            .first()
        )

    @staticmethod
    def holders_query(db: Session, role_id: int, lock: bool = False) -> Query:
        """Active users holding ``role_id``; ``lock`` makes it a locking read."""
        query = (
            db.query(UserRole.user_id)
            .join(User, User.id == UserRole.user_id)
            .filter(UserRole.role_id == role_id, User.is_active.is_(True))
        )
        if lock:
            query = query.with_for_update()
        return query

    @classmethod
    def active_holders(cls, db: Session, role_id: int, lock: bool = False) -> List[int]:
        return [user_id for (user_id,) in cls.holders_query(db, role_id, lock).all()]

    @classmethod
    def count_holders(cls, db: Session, role_id: int) -> int:
        return len(cls.active_holders(db, role_id))

    @contextmanager
    def protect(self, db: Session, role: Role) -> Iterator[None]:
        """Serialize a change touching ``role`` if it is the Admin role.

        Any exception inside the block rolls the session back.
        """
        if not is_admin_role(role):
            try:
                yield
            except Exception:
                db.rollback()
                raise
            return

        with _admin_lock:
            try:
                db.query(Role).filter(Role.id == role.id).with_for_update().one()
                yield
            except Exception:
                db.rollback()
                raise

    def check_unassign(self, db: Session, user_id: int, role: Role) -> None:
        """Removing ``role`` from ``user_id`` must leave at least one admin."""
        if not is_admin_role(role):
            return
        remaining = [h for h in self.active_holders(db, role.id, lock=True) if h != user_id]
        if not remaining:
            logger.warning("Blocked removal of the last administrator (user %s)", user_id)
            raise AntiLockoutError()

    def check_role_delete(self, db: Session, role: Role) -> None:
        """Deleting the Admin role drops every holder at once."""
        if not is_admin_role(role):
            return
        holders = len(self.active_holders(db, role.id, lock=True))
        if holders >= 1:
            logger.warning("Blocked deletion of the Admin role (%d holder(s))", holders)
            raise AntiLockoutError()

    def check_permission_revoke(self, db: Session, role: Role, permission: Permission) -> None:
        """The Admin role keeps at least one privileged permission."""
        if not is_admin_role(role):
            return
        privileged = self.catalog.privileged_names()
        if permission.name not in privileged:
            return
        remaining = (
            db.query(func.count(RolePermission.id))
            .join(Permission, Permission.id == RolePermission.permission_id)
            .filter(
                RolePermission.role_id == role.id,
                Permission.name.in_(privileged),
                Permission.id != permission.id,
            )
            .scalar()
        ) or 0
        if remaining == 0:
            logger.warning("Blocked revoking the Admin role's last privileged permission")
            raise AntiLockoutError("cannot remove the administrator role's last privileged permission")
