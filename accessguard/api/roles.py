"""Roles and permissions API router."""

from typing import List
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from accessguard.db.session import get_db
from accessguard.schemas.schemas import (
    PermissionOut, RoleOut, RoleDetailOut, RoleCreate, RoleUpdate, RoleClone,
    PermissionToggle, PermissionToggleOut, MessageResponse,
)
from accessguard.services.permission_catalog import RBAC_MANAGE, PermissionCatalog
from accessguard.core.rate_limiter import RateLimitGuard
from accessguard.core.security import RequestContext, RequirePermission

router = APIRouter(tags=["rbac"], dependencies=[Depends(RateLimitGuard("global"))])

require_rbac = RequirePermission(RBAC_MANAGE)


@router.get("/permissions", response_model=List[PermissionOut])
def list_permissions(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_rbac),
):
    """List the permission catalog, grouped by category."""
    return PermissionCatalog.list_permissions(db)


@router.get("/roles", response_model=List[RoleDetailOut])
def list_roles(
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_rbac),
):
    """List roles with their permissions and holder counts."""
    return request.app.state.role_service.list_roles(db)


@router.post("/roles", response_model=RoleOut, status_code=status.HTTP_201_CREATED)
def create_role(
    body: RoleCreate,
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_rbac),
):
    return request.app.state.role_service.create_role(db, ctx, body.name, body.description)


@router.patch("/roles/{role_id}", response_model=RoleOut)
def update_role(
    role_id: int,
    body: RoleUpdate,
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_rbac),
):
    """Rename or re-describe a role. System roles keep their name."""
    return request.app.state.role_service.update_role(
        db, ctx, role_id, name=body.name, description=body.description,
    )


@router.delete("/roles/{role_id}", response_model=MessageResponse)
def delete_role(
    role_id: int,
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_rbac),
):
    request.app.state.role_service.delete_role(db, ctx, role_id)
    return MessageResponse(message="Role deleted")


@router.post("/roles/{role_id}/clone", response_model=RoleOut, status_code=status.HTTP_201_CREATED)
def clone_role(
    role_id: int,
    body: RoleClone,
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_rbac),
):
    """Create a custom role with every permission of an existing one."""
    return request.app.state.role_service.clone_role(
        db, ctx, role_id, body.name, body.description,
    )


@router.post("/roles/{role_id}/permissions/{permission_id}", response_model=PermissionToggleOut)
def toggle_permission(
    role_id: int,
    permission_id: int,
    body: PermissionToggle,
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_rbac),
):
    """Grant (enabled=true) or revoke (enabled=false) a permission on a role."""
    changed = request.app.state.access_control.toggle_permission(
        db, ctx, role_id, permission_id, body.enabled,
    )
    return PermissionToggleOut(
        role_id=role_id, permission_id=permission_id, enabled=body.enabled, changed=changed,
    )
