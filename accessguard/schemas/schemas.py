"""Pydantic schemas for API request/response serialization."""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime


# ---- Common ----
class MessageResponse(BaseModel):
    message: str
    success: bool = True


# ---- Permission ----
class PermissionOut(BaseModel):
    id: int
    name: str
    label: str
    category: str
    icon: str

    class Config:
        from_attributes = True


# ---- Role ----
class RoleCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Role name must have at least 2 characters")
        return value


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Role name must have at least 2 characters")
        return value


class RoleClone(RoleCreate):
    pass


class RoleOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    is_system: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RoleDetailOut(RoleOut):
    permissions: List[str] = []
    user_count: int = 0


class PermissionToggle(BaseModel):
    enabled: bool


class PermissionToggleOut(BaseModel):
    role_id: int
    permission_id: int
    enabled: bool
    changed: bool


# ---- User assignments ----
class UserPermissionsOut(BaseModel):
    user_id: int
    superuser: bool = False
    roles: List[RoleOut] = []
    permissions: List[str]


# ---- Audit ----
class AuditLogOut(BaseModel):
    id: int
    action: str
    resource: str
    entity_id: Optional[str] = None
    actor_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AuditLogPage(BaseModel):
    logs: List[AuditLogOut]
    total: int
    page: int
    limit: int


# ---- Security ----
class BlockedIPOut(BaseModel):
    ip: str
    ttl_remaining: int
    banned_at: datetime
    violation_count: int
    offense: int


class HealthOut(BaseModel):
    status: str
    database: str
    counter_store: str
