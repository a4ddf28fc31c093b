"""Role assignment graph and permission resolution."""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from accessguard.core.clock import Clock, system_clock
from accessguard.core.exceptions import (
    AccessGuardError, AuthorizationError, ResourceConflictError, ResourceNotFoundError,
)
from accessguard.core.security import (
    Principal, RegularPrincipal, RequestContext, SuperuserPrincipal,
)
from accessguard.models.permission import Permission
from accessguard.models.role import Role, RolePermission, UserRole
from accessguard.models.user import AccountType, User
from accessguard.services.anti_lockout import AntiLockoutGuard
from accessguard.services.audit_service import audit_service
from accessguard.services.permission_catalog import PermissionCatalog, permission_catalog

logger = logging.getLogger("accessguard.rbac")


class PermissionCache:
    """Per-user cache of resolved permission sets.

    Writers wrap their commit in ``invalidating``. While a write is pending
    the affected entries are neither served nor stored, and a resolution that
    started before the write can never be stored after it, because every
    write bumps the generation on entry and on exit.
    """

    def __init__(self, ttl_seconds: float = 30.0, clock: Clock = system_clock):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[int, Tuple[FrozenSet[str], float]] = {}
        self._generation = 0
        self._user_generation: Dict[int, int] = {}
        self._pending_all = 0
        self._pending_users: Dict[int, int] = {}

    def _blocked(self, user_id: int) -> bool:
        return self._pending_all > 0 or self._pending_users.get(user_id, 0) > 0

    def token(self, user_id: int) -> Tuple[int, int]:
        with self._lock:
            return self._generation, self._user_generation.get(user_id, 0)

    def get(self, user_id: int) -> Optional[FrozenSet[str]]:
        if self.ttl_seconds <= 0:
            return None
        with self._lock:
            if self._blocked(user_id):
                return None
            cached = self._entries.get(user_id)
            if cached is None:
                return None
            permissions, expires_at = cached
            if expires_at <= self.clock():
                del self._entries[user_id]
                return None
            return permissions

    def put(self, user_id: int, permissions: FrozenSet[str], token: Tuple[int, int]) -> bool:
        if self.ttl_seconds <= 0:
            return False
        with self._lock:
            current = (self._generation, self._user_generation.get(user_id, 0))
            if current != token or self._blocked(user_id):
                return False
            self._entries[user_id] = (permissions, self.clock() + self.ttl_seconds)
            return True

    def _bump(self, user_id: Optional[int]) -> None:
        if user_id is None:
            self._generation += 1
            self._entries.clear()
        else:
            self._user_generation[user_id] = self._user_generation.get(user_id, 0) + 1
            self._entries.pop(user_id, None)

    @contextmanager
    def invalidating(self, user_id: Optional[int] = None) -> Iterator[None]:
        """Invalidate one user's entry (or all entries) around a write."""
        with self._lock:
            self._bump(user_id)
            if user_id is None:
                self._pending_all += 1
            else:
                self._pending_users[user_id] = self._pending_users.get(user_id, 0) + 1
        try:
            yield
        finally:
            with self._lock:
                if user_id is None:
                    self._pending_all -= 1
                else:
                    self._pending_users[user_id] -= 1
                    if not self._pending_users[user_id]:
                        del self._pending_users[user_id]
                self._bump(user_id)

    def clear(self) -> None:
        with self._lock:
            self._bump(None)


class AccessControlService:
    """Answers "can this user do X" and edits the role assignment graph."""

    def __init__(
        self,
        cache: PermissionCache,
        guard: AntiLockoutGuard,
        catalog: PermissionCatalog = permission_catalog,
    ):
        self.cache = cache
        self.guard = guard
        self.catalog = catalog

    # ---- Resolution ----

    @staticmethod
    def principal_for(db: Session, user_id: int) -> Principal:
        """Classify a user. Raises for unknown or deactivated accounts."""
        user = db.get(User, user_id)
        if user is None:
            raise ResourceNotFoundError("User not found")
        if not user.is_active:
            raise AuthorizationError("Account is deactivated")
        if user.account_type == AccountType.master:
            return SuperuserPrincipal(user.id)
        return RegularPrincipal(user.id)

    def _resolve(self, db: Session, user_id: int) -> FrozenSet[str]:
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        token = self.cache.token(user_id)
        rows = (
            db.query(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .join(UserRole, UserRole.role_id == RolePermission.role_id)
            .filter(UserRole.user_id == user_id)
            .distinct()
            .all()
        )
        permissions = frozenset(row[0] for row in rows)
        self.cache.put(user_id, permissions, token)
        return permissions

    def get_user_permissions(self, db: Session, user_id: int) -> FrozenSet[str]:
        """Union of the permissions of every role the user holds."""
        principal = self.principal_for(db, user_id)
        if isinstance(principal, SuperuserPrincipal):
            return self.catalog.names()
        return self._resolve(db, user_id)

    def principal_can(self, db: Session, principal: Principal, permission: str) -> bool:
        """Point check for an already classified caller. Fails closed."""
        if not self.catalog.is_known(permission):
            return False
        if isinstance(principal, SuperuserPrincipal):
            return True
        if not isinstance(principal, RegularPrincipal):
            return False
        try:
            return permission in self._resolve(db, principal.user_id)
        except Exception:
            logger.exception("Permission resolution failed for user %s; denying", principal.user_id)
            return False

    def has_permission(self, db: Session, user_id: int, permission: str) -> bool:
        """Never raises: unknown users, unknown permissions and store errors deny."""
        try:
            principal = self.principal_for(db, user_id)
        except AccessGuardError:
            return False
        except Exception:
            logger.exception("Could not load user %s; denying %s", user_id, permission)
            return False
        return self.principal_can(db, principal, permission)

    @staticmethod
    def user_roles(db: Session, user_id: int) -> List[Role]:
        if db.get(User, user_id) is None:
            raise ResourceNotFoundError("User not found")
        return (
            db.query(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .filter(UserRole.user_id == user_id)
            .order_by(Role.name)
            .all()
        )

    # ---- Assignment graph ----

    def assign_role(self, db: Session, ctx: Optional[RequestContext], user_id: int, role_id: int) -> UserRole:
        user = db.get(User, user_id)
        if user is None:
            raise ResourceNotFoundError("User not found")
        role = db.get(Role, role_id)
        if role is None:
            raise ResourceNotFoundError("Role not found")

        existing = db.query(UserRole).filter(UserRole.user_id == user_id, UserRole.role_id == role_id).first()
        if existing is not None:
            raise ResourceConflictError(f"User already holds role '{role.name}'")

        link = UserRole(user_id=user_id, role_id=role_id, assigned_by=ctx.actor_id if ctx else None)
        with self.cache.invalidating(user_id):
            try:
                db.add(link)
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ResourceConflictError(f"User already holds role '{role.name}'")

        audit_service.record_for(
            db, ctx,
            action="rbac.user_role.assigned",
            resource="user_role",
            entity_id=f"{user_id}:{role_id}",
            details={"user_id": user_id, "role_id": role_id, "role_name": role.name},
        )
        return link

    def unassign_role(self, db: Session, ctx: Optional[RequestContext], user_id: int, role_id: int) -> None:
        role = db.get(Role, role_id)
        if role is None:
            raise ResourceNotFoundError("Role not found")

        with self.guard.protect(db, role):
            link = db.query(UserRole).filter(UserRole.user_id == user_id, UserRole.role_id == role_id).first()
            if link is None:
                raise ResourceNotFoundError("User does not hold this role")
            self.guard.check_unassign(db, user_id, role)
            with self.cache.invalidating(user_id):
                db.delete(link)
                db.commit()

        audit_service.record_for(
            db, ctx,
            action="rbac.user_role.unassigned",
            resource="user_role",
            entity_id=f"{user_id}:{role_id}",
            details={"user_id": user_id, "role_id": role_id, "role_name": role.name},
        )

    def toggle_permission(
        self,
        db: Session,
        ctx: Optional[RequestContext],
        role_id: int,
        permission_id: int,
        enabled: bool,
    ) -> bool:
        """Grant or revoke a permission on a role. Returns whether anything changed."""
        role = db.get(Role, role_id)
        if role is None:
            raise ResourceNotFoundError("Role not found")
        permission = db.get(Permission, permission_id)
        if permission is None:
            raise ResourceNotFoundError("Permission not found")

        changed = False
        with self.guard.protect(db, role):
            link = (
                db.query(RolePermission)
                .filter(RolePermission.role_id == role_id, RolePermission.permission_id == permission_id)
                .first()
            )
            if enabled and link is None:
                with self.cache.invalidating():
                    try:
                        db.add(RolePermission(role_id=role_id, permission_id=permission_id))
                        db.commit()
                        changed = True
                    except IntegrityError:
                        # granted concurrently
                        db.rollback()
            elif not enabled and link is not None:
                self.guard.check_permission_revoke(db, role, permission)
                with self.cache.invalidating():
                    db.delete(link)
                    db.commit()
                changed = True
            else:
                db.rollback()

        audit_service.record_for(
            db, ctx,
            action="rbac.permission.granted" if enabled else "rbac.permission.revoked",
            resource="role_permission",
            entity_id=f"{role_id}:{permission.name}",
            details={
                "role_id": role_id,
                "role_name": role.name,
                "permission": permission.name,
                "changed": changed,
            },
        )
        return changed
