from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from proagenda.logging import get_correlation_id
from proagenda.service.validation import normalize_email, validate_slug

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class SendMagicLinkRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(..., max_length=320)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)


class SendMagicLinkResponse(BaseModel):
    accepted: bool
    delivered: bool
    expires_in_minutes: int
    dev_link: Optional[str] = None


class VerifyMagicLinkRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant: str = Field(..., min_length=1, max_length=64)
    # Length is checked by the verifier so malformed values fail like unknown ones
    token: str = Field(..., max_length=1024)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class PrincipalResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    tenant_id: Optional[str] = None
    email_verified: bool


class RoleAssignmentResponse(BaseModel):
    id: str
    role: str
    tenant_id: Optional[str] = None
    created_at: datetime


class AuthResponse(BaseModel):
    principal: PrincipalResponse
    session_id: str
    tenant_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    roles: List[RoleAssignmentResponse] = Field(default_factory=list)


class TokenRefreshResponse(BaseModel):
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class MeResponse(BaseModel):
    principal: PrincipalResponse
    tenant_id: str
    session_id: str
    roles: List[RoleAssignmentResponse]
    permissions: List[str]


class PermissionsResponse(BaseModel):
    tenant_id: str
    permissions: List[str]


class AssignRoleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: str = Field(..., min_length=1, max_length=32)
    tenant_id: Optional[str] = Field(default=None, max_length=64)


class RoleListResponse(BaseModel):
    principal_id: str
    roles: List[RoleAssignmentResponse]


class TenantCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    slug: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=200)
    is_active: bool = True

    @field_validator("slug")
    @classmethod
    def _validate_slug(cls, value: str) -> str:
        return validate_slug(value)


class TenantPatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_active: bool


class TenantResponse(BaseModel):
    id: str
    slug: str
    name: str
    is_active: bool
    created_at: datetime
