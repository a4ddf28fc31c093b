"""JWT identity extraction and permission-based authorization helpers."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from accessguard.core.config import Settings, settings as default_settings
from accessguard.core.exceptions import (
    AuthenticationError, AuthorizationError, ResourceNotFoundError, unauthorized,
)
from accessguard.db.session import get_db
from accessguard.services.audit_service import audit_service

# JWT bearer scheme
security_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class RegularPrincipal:
    """Caller whose rights are the union of their roles' permissions."""
    user_id: int


@dataclass(frozen=True)
class SuperuserPrincipal:
    """Master account: always authorized, never resolved through roles."""
    user_id: int


Principal = Union[RegularPrincipal, SuperuserPrincipal]


@dataclass(frozen=True)
class RequestContext:
    """Who is calling and from where; attached to every audit entry."""
    principal: Optional[Principal] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def actor_id(self) -> Optional[int]:
        return self.principal.user_id if self.principal is not None else None


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None,
    settings: Settings = None,
) -> str:
    """Create a JWT access token."""
    settings = settings or default_settings
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    )
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, settings: Settings = None) -> dict:
    """Decode and validate a JWT token."""
    settings = settings or default_settings
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise unauthorized("Invalid or expired token")


def client_ip(request: Request) -> str:
    """Source IP of the request, honouring X-Forwarded-For only when trusted."""
    settings = getattr(request.app.state, "settings", default_settings)
    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> int:
    """Extract user_id from the JWT Bearer token."""
    if credentials is None:
        raise unauthorized()
    payload = decode_token(credentials.credentials, request.app.state.settings)
    user_id = payload.get("sub")
    if user_id is None:
        raise unauthorized("Invalid token payload")
    try:
        return int(user_id)
    except (TypeError, ValueError):
        raise unauthorized("Invalid token payload")


def get_principal(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> Principal:
    """Classify the authenticated caller as regular user or superuser."""
    try:
        return request.app.state.access_control.principal_for(db, user_id)
    except ResourceNotFoundError:
        raise AuthenticationError("Unknown account")


def get_request_context(
    request: Request,
    principal: Principal = Depends(get_principal),
) -> RequestContext:
    return RequestContext(
        principal=principal,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", "")[:500],
    )


class RequirePermission:
    """Dependency that checks the caller holds a permission.

    Denials are written to the audit trail as ``access.denied``.
    """

    def __init__(self, permission: str):
        self.permission = permission

    def __call__(
        self,
        request: Request,
        ctx: RequestContext = Depends(get_request_context),
        db: Session = Depends(get_db),
    ) -> RequestContext:
        access = request.app.state.access_control
        if access.principal_can(db, ctx.principal, self.permission):
            return ctx

        audit_service.record_for(
            db, ctx,
            action="access.denied",
            resource=self.permission,
            details={
                "message": f"Access attempt without permission: {self.permission}",
                "path": request.url.path,
                "method": request.method,
            },
        )
        raise AuthorizationError(f"Access denied. Required permission: {self.permission}")
