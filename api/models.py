"""
API request and response models for the Hive panel REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AccountRole, Principal, Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[a-zA-Z0-9_-]+$"
# Deliberately loose -- the value is encrypted at rest, not mailed by this service.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    reason is set only for session_expired errors (inactivity_timeout or
    server_restart). remaining_attempts is set only on failed logins.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    reason: Optional[str] = None
    remaining_attempts: Optional[int] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Only the username is stripped; whitespace is significant in passwords.
    """

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, value):
        return value.strip() if isinstance(value, str) else value


class SessionUser(BaseModel):
    """Identity summary shown to the logged-in user."""

    model_config = ConfigDict(frozen=True)

    user_id: Optional[int]
    username: str
    role: AccountRole
    permissions: list[str] = Field(default_factory=list)
    roles: list[str] = Field(default_factory=list)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Login successful."
    user: SessionUser


class StatusResponse(BaseModel):
    """Response for GET /api/v1/auth/status -- never 401s."""

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    user: Optional[SessionUser] = None


# ---------------------------------------------------------------------------
# Account (self-service)
# ---------------------------------------------------------------------------


class ProfileResponse(BaseModel):
    """The caller's own profile.

    email is None both when no email is stored and when the stored blob
    cannot be decrypted -- the field is unavailable either way.
    """

    model_config = ConfigDict(frozen=True)

    username: str
    role: AccountRole
    email: Optional[str] = None
    display_name: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class EmailUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254, pattern=EMAIL_PATTERN)


class DisplayNameUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: str = Field(min_length=1, max_length=50)


class PasswordChange(BaseModel):
    """Request body for PUT /api/v1/account/password. Passwords are never stripped."""

    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=8, max_length=255)


class UsernameUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    new_username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)


# ---------------------------------------------------------------------------
# Admin -- accounts
# ---------------------------------------------------------------------------


class AccountCreate(BaseModel):
    """Request body for POST /api/v1/admin/accounts."""

    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    password: str = Field(min_length=8, max_length=255)
    role: AccountRole = AccountRole.USER
    permissions: list[str] = Field(default_factory=list, max_length=50)
    roles: list[str] = Field(default_factory=list, max_length=50)


class AccountUpdate(BaseModel):
    """Request body for PUT /api/v1/admin/accounts/{username}.

    Every field is optional; omitted fields are left as they are. permissions
    and roles replace the stored lists wholesale.
    """

    email: Optional[str] = Field(default=None, min_length=3, max_length=254, pattern=EMAIL_PATTERN)
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    new_password: Optional[str] = Field(default=None, min_length=8, max_length=255)
    role: Optional[AccountRole] = None
    is_active: Optional[bool] = None
    permissions: Optional[list[str]] = Field(default=None, max_length=50)
    roles: Optional[list[str]] = Field(default=None, max_length=50)


class AccountSummary(BaseModel):
    """One row in the admin account list. Never carries hashes or email plaintext."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: AccountRole
    permissions: list[str]
    roles: list[str]
    has_email: bool
    display_name: Optional[str] = None
    is_active: bool = True
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "AccountSummary":
        return cls(
            id=principal.id,
            username=principal.username,
            role=principal.role,
            permissions=sorted(principal.permissions),
            roles=sorted(principal.role_ids),
            has_email=principal.email is not None,
            display_name=principal.display_name,
            is_active=principal.is_active,
            created_at=principal.created_at,
            last_login=principal.last_login,
        )


# ---------------------------------------------------------------------------
# Admin -- roles
# ---------------------------------------------------------------------------


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=3, max_length=50)
    permissions: list[str] = Field(default_factory=list, max_length=50)
    description: Optional[str] = Field(default=None, max_length=255)


class RoleUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=3, max_length=50)
    permissions: Optional[list[str]] = Field(default=None, max_length=50)
    description: Optional[str] = Field(default=None, max_length=255)


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    permissions: list[str]
    description: Optional[str] = None
    created_at: Optional[str] = None
    created_by: Optional[str] = None

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            permissions=sorted(role.permissions),
            description=role.description,
            created_at=role.created_at,
            created_by=role.created_by,
        )
