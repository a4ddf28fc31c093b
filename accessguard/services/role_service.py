"""Role store: CRUD and cloning of named roles."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from accessguard.core.exceptions import (
    AuthorizationError, ResourceConflictError, ResourceNotFoundError,
)
from accessguard.core.security import RequestContext
from accessguard.models.permission import Permission
from accessguard.models.role import Role, RolePermission, UserRole
from accessguard.services.access_control import PermissionCache
from accessguard.services.anti_lockout import AntiLockoutGuard
from accessguard.services.audit_service import audit_service

logger = logging.getLogger("accessguard.rbac")


def role_snapshot(role: Role) -> Dict[str, Any]:
    return {
        "name": role.name,
        "description": role.description,
        "is_system": role.is_system,
    }


class RoleService:
    """Handles role CRUD. System roles can be described but never renamed or deleted."""

    def __init__(self, guard: AntiLockoutGuard, cache: PermissionCache):
        self.guard = guard
        self.cache = cache

    @staticmethod
    def get_role(db: Session, role_id: int) -> Role:
        role = db.get(Role, role_id)
        if role is None:
            raise ResourceNotFoundError("Role not found")
        return role

    @staticmethod
    def list_roles(db: Session) -> List[Dict[str, Any]]:
        """Roles with their permission names and holder counts, system roles first."""
        roles = db.query(Role).order_by(Role.is_system.desc(), Role.name).all()

        grants: Dict[int, List[str]] = {}
        for role_id, name in (
            db.query(RolePermission.role_id, Permission.name)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .all()
        ):
            grants.setdefault(role_id, []).append(name)

        holders = dict(
            db.query(UserRole.role_id, func.count(UserRole.id)).group_by(UserRole.role_id).all()
        )

        return [
            {
                "id": role.id,
                "name": role.name,
                "description": role.description,
                "is_system": role.is_system,
                "permissions": sorted(grants.get(role.id, [])),
                "user_count": holders.get(role.id, 0),
                "created_at": role.created_at,
                "updated_at": role.updated_at,
            }
            for role in roles
        ]

    @staticmethod
    def _ensure_name_available(db: Session, name: str, exclude_id: Optional[int] = None) -> None:
        query = db.query(Role.id).filter(func.lower(Role.name) == name.lower())
        if exclude_id is not None:
            query = query.filter(Role.id != exclude_id)
        if query.first() is not None:
            raise ResourceConflictError(f"A role named '{name}' already exists")

    def create_role(
        self,
        db: Session,
        ctx: Optional[RequestContext],
        name: str,
        description: Optional[str] = None,
    ) -> Role:
        name = name.strip()
        self._ensure_name_available(db, name)

        role = Role(name=name, description=description, is_system=False)
        try:
            db.add(role)
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ResourceConflictError(f"A role named '{name}' already exists")

        audit_service.record_for(
            db, ctx,
            action="rbac.role.created",
            resource="role",
            entity_id=role.id,
            details={"next": role_snapshot(role)},
        )
        return role

    def update_role(
        self,
        db: Session,
        ctx: Optional[RequestContext],
        role_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Role:
        role = self.get_role(db, role_id)
        previous = role_snapshot(role)

        if name is not None:
            name = name.strip()
            if name != role.name:
                if role.is_system:
                    raise AuthorizationError("System roles cannot be renamed")
                self._ensure_name_available(db, name, exclude_id=role.id)
                role.name = name
        if description is not None:
            role.description = description

        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ResourceConflictError(f"A role named '{name}' already exists")

        audit_service.record_for(
            db, ctx,
            action="rbac.role.updated",
            resource="role",
            entity_id=role.id,
            details=audit_service.diff(previous, role_snapshot(role)),
        )
        return role

    def delete_role(self, db: Session, ctx: Optional[RequestContext], role_id: int) -> None:
        """Delete a custom role and its edges.

        For the Admin role the anti-lockout check runs first, so deleting it
        while anyone holds it reports the lockout rather than the protection.
        """
        role = self.get_role(db, role_id)
        previous = role_snapshot(role)

        with self.guard.protect(db, role):
            self.guard.check_role_delete(db, role)
            if role.is_system:
                raise AuthorizationError("System roles cannot be deleted")

            holders = [
                user_id for (user_id,) in
                db.query(UserRole.user_id).filter(UserRole.role_id == role.id).all()
            ]
            permission_count = (
                db.query(func.count(RolePermission.id)).filter(RolePermission.role_id == role.id).scalar()
            )
            with self.cache.invalidating():
                db.delete(role)
                db.commit()

        logger.info("Role %s ('%s') deleted; %d holder(s) unassigned", role_id, previous["name"], len(holders))
        audit_service.record_for(
            db, ctx,
            action="rbac.role.deleted",
            resource="role",
            entity_id=role_id,
            details={
                "previous": previous,
                "unassigned_users": holders,
                "permission_count": permission_count,
            },
        )

    def clone_role(
        self,
        db: Session,
        ctx: Optional[RequestContext],
        source_id: int,
        name: str,
        description: Optional[str] = None,
    ) -> Role:
        """Create a custom role carrying every permission of ``source_id``.

        Role row and edges are written in one transaction; any failure leaves
        nothing behind.
        """
        source = self.get_role(db, source_id)
        name = name.strip()
        self._ensure_name_available(db, name)

        clone = Role(
            name=name,
            description=description if description is not None else source.description,
            is_system=False,
        )
        try:
            db.add(clone)
            db.flush()
            permission_ids = [
                permission_id for (permission_id,) in
                db.query(RolePermission.permission_id).filter(RolePermission.role_id == source.id).all()
            ]
            db.add_all(
                RolePermission(role_id=clone.id, permission_id=permission_id)
                for permission_id in permission_ids
            )
            db.commit()
        except IntegrityError:
            db.rollback()
            raise ResourceConflictError(f"A role named '{name}' already exists")
        except Exception:
            db.rollback()
            raise

        audit_service.record_for(
            db, ctx,
            action="rbac.role.cloned",
            resource="role",
            entity_id=clone.id,
            details={
                "source_role_id": source.id,
                "source_role_name": source.name,
                "permission_count": len(permission_ids),
                "next": role_snapshot(clone),
            },
        )
        return clone
