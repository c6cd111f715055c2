from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from wukongid.config import normalize_client_id
from wukongid.service.identity import validate_email

# Upper bound for opaque strings accepted from clients
MAX_TOKEN_LENGTH = 4096

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
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
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# authorization


class AppAuthResponse(BaseModel):
    client_id: str
    redirect_uri: str
    state: str
    type: str = "signIn"
    state_payload: dict = Field(default_factory=dict)


class AuthenticateRequest(BaseModel):
    """Identity hand-off from a sign-in provider (or the email form)."""

    model_config = ConfigDict(extra="forbid")

    provider: str = Field(..., min_length=1, max_length=64)
    provider_user_id: Optional[str] = Field(None, max_length=256)
    email: Optional[str] = Field(None, max_length=254)
    name: Optional[str] = Field(None, max_length=256)
    redirect_uri: str = Field(..., min_length=1, max_length=2048)
    state: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    client_id: str = Field(..., min_length=1, max_length=256)

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return validate_email(value)

    @field_validator("client_id")
    @classmethod
    def _normalize_client(cls, value: str) -> str:
        return normalize_client_id(value)


class AuthenticateResponse(BaseModel):
    redirect_url: str
    code: Optional[str] = None
    created: bool = False
    mfa_required: bool = False


class TokenRequest(BaseModel):
    grant_type: str = Field(..., max_length=64)
    code: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    client_id: str = Field(..., min_length=1, max_length=256)
    redirect_uri: str = Field(..., min_length=1, max_length=2048)


class TokenResponseBody(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    scope: str
    id_token: str


class UserInfoRequest(BaseModel):
    access_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class UserInfoJwtRequest(BaseModel):
    jwt_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    project_id: str = Field(..., min_length=1, max_length=256)


class UserInfoResponse(BaseModel):
    open_id: str
    client_id: str
    name: str
    email: Optional[str] = None
    login_method: Optional[str] = None
    role: str = "user"


class MeResponse(BaseModel):
    open_id: str
    name: str
    email: Optional[str] = None
    login_method: Optional[str] = None
    role: str = "user"
    mfa_enabled: bool = False
    last_signed_in: Optional[datetime] = None


# mfa


class MfaStatusResponse(BaseModel):
    enabled: bool
    backup_codes_remaining: int = 0
    backup_codes_generated: bool = False


class MfaSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


class MfaEnableRequest(BaseModel):
    """Confirms the enrollment staged by setup; the secret never comes from the client."""

    model_config = ConfigDict(extra="forbid")

    code: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class MfaCodeRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=32)


class MfaVerifyResponse(BaseModel):
    success: bool
    message: str
    method: Optional[str] = None
    session_started: bool = False


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


# device sessions


class DeviceSessionResponse(BaseModel):
    id: str
    device_name: Optional[str] = None
    browser: str
    os: str
    ip_address: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    expires_in_seconds: int
    is_active: bool
    is_current: bool = False


class DeviceSessionListResponse(BaseModel):
    items: List[DeviceSessionResponse]


class RevokeAllResponse(BaseModel):
    revoked: int
