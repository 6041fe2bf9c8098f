"""
API request and response models for CredGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
ledger/models.py, which own the internal domain representation. Route
handlers map between the two.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from auth.models import Principal
from ledger.models import AuditRecord

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ExpiredKindEnum(str, Enum):
    verification = "verification"
    password = "password"
    all = "all"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=256)
    principal_type: Optional[str] = Field(default=None, max_length=50)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str
    expires_in: int
    email: str
    principal_type: str
    role: str


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=8, max_length=256)


class PrincipalResponse(BaseModel):
    """Public view of a principal. The password hash never leaves the server."""

    model_config = ConfigDict(frozen=True)

    id: int
    principal_type: str
    email: str
    role: str
    is_active: bool
    email_verified_at: Optional[str]

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            id=principal.id,
            principal_type=principal.principal_type,
            email=principal.email,
            role=principal.role,
            is_active=principal.is_active,
            email_verified_at=principal.email_verified_at.isoformat() if principal.email_verified_at else None,
        )


# ---------------------------------------------------------------------------
# Security administration
# ---------------------------------------------------------------------------


class BulkActionRequest(BaseModel):
    """Request body for the bulk reverification / password-change endpoints.

    Exactly one of ids or all_expired must be given. all_expired targets the
    principals the matching expired-set query returns.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    ids: Optional[list[int]] = Field(default=None, min_length=1, max_length=500)
    all_expired: bool = False
    principal_type: Optional[str] = Field(default=None, max_length=50)
    reason: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def exactly_one_target(self) -> "BulkActionRequest":
        if bool(self.ids) == self.all_expired:
            raise ValueError("Provide either ids or all_expired=true, not both.")
        return self


class BulkFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    error: str


class BulkActionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    requested: int
    succeeded: list[int]
    failed: list[BulkFailure] = Field(default_factory=list)


class AuditRecordResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    subject_type: str
    subject_id: int
    email: str
    verified_at: Optional[str]
    password_changed_at: Optional[str]
    triggered_by: Optional[str]
    reason: Optional[str]
    created_at: str

    @classmethod
    def from_record(cls, record: AuditRecord) -> "AuditRecordResponse":
        return cls(
            id=record.id,
            subject_type=record.subject_type,
            subject_id=record.subject_id,
            email=record.email,
            verified_at=record.verified_at.isoformat() if record.verified_at else None,
            password_changed_at=record.password_changed_at.isoformat() if record.password_changed_at else None,
            triggered_by=record.trigger.label() if record.trigger else None,
            reason=record.reason,
            created_at=record.created_at.isoformat(),
        )


class ExpiredReportResponse(BaseModel):
    """Response for GET /api/v1/security/expired."""

    model_config = ConfigDict(frozen=True)

    kind: ExpiredKindEnum
    principal_type: str
    as_of: str
    count: int
    principals: list[PrincipalResponse]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    messages carries the user-facing list for verification_required errors.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    messages: Optional[list[str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
