"""User role assignment API router."""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from accessguard.db.session import get_db
from accessguard.schemas.schemas import MessageResponse, RoleOut, UserPermissionsOut
from accessguard.services.permission_catalog import RBAC_MANAGE
from accessguard.core.rate_limiter import RateLimitGuard
from accessguard.core.security import (
    RequestContext, RequirePermission, SuperuserPrincipal, get_request_context,
)

router = APIRouter(tags=["users"], dependencies=[Depends(RateLimitGuard("global"))])

require_rbac = RequirePermission(RBAC_MANAGE)


def _permissions_view(request: Request, db: Session, user_id: int) -> UserPermissionsOut:
    access = request.app.state.access_control
    principal = access.principal_for(db, user_id)
    return UserPermissionsOut(
        user_id=user_id,
        superuser=isinstance(principal, SuperuserPrincipal),
        roles=[RoleOut.model_validate(r) for r in access.user_roles(db, user_id)],
        permissions=sorted(access.get_user_permissions(db, user_id)),
    )


@router.post(
    "/users/{user_id}/roles/{role_id}",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
def assign_role(
    user_id: int,
    role_id: int,
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_rbac),
):
    request.app.state.access_control.assign_role(db, ctx, user_id, role_id)
    return MessageResponse(message="Role assigned")


@router.delete("/users/{user_id}/roles/{role_id}", response_model=MessageResponse)
def unassign_role(
    user_id: int,
    role_id: int,
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_rbac),
):
    """Remove a role from a user. The last administrator cannot be removed."""
    request.app.state.access_control.unassign_role(db, ctx, user_id, role_id)
    return MessageResponse(message="Role unassigned")


@router.get("/users/{user_id}/permissions", response_model=UserPermissionsOut)
def get_user_permissions(
    user_id: int,
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(require_rbac),
):
    """Effective permissions of a user: the union over their roles."""
    return _permissions_view(request, db, user_id)


@router.get("/me/permissions", response_model=UserPermissionsOut)
def get_my_permissions(
    request: Request,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    return _permissions_view(request, db, ctx.actor_id)
