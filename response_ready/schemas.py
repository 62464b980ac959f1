from __future__ import annotations

from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Request bodies
#
# ``invalid_message`` is the 400 text the pipeline returns when a body
# fails validation.
# ---------------------------------------------------------------------------

class LoginRequest(BaseModel):
    invalid_message: ClassVar[str] = "Username and password are required"

    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    invalid_message: ClassVar[str] = "Username and password are required"

    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    email: Optional[str] = None


class RefreshRequest(BaseModel):
    invalid_message: ClassVar[str] = "Refresh token is required"
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="refreshToken", min_length=1)


class ChangePasswordRequest(BaseModel):
    invalid_message: ClassVar[str] = "Current password and new password are required"
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(..., alias="currentPassword", min_length=1)
    new_password: str = Field(..., alias="newPassword", min_length=1)


class AdminUserCreate(BaseModel):
    invalid_message: ClassVar[str] = "Username and password are required"
    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    email: Optional[str] = None
    is_admin: bool = Field(default=False, alias="isAdmin")


class UserUpdate(BaseModel):
    """Every field optional; only the ones present are applied."""

    invalid_message: ClassVar[str] = "Invalid user fields"
    model_config = ConfigDict(populate_by_name=True)

    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    is_admin: Optional[bool] = Field(default=None, alias="isAdmin")


class ActivityRequest(BaseModel):
    invalid_message: ClassVar[str] = "Action is required"

    action: str = Field(..., min_length=1, max_length=64)
    metadata: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class SessionPolicyRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    idle_timeout_minutes: int = Field(..., alias="idleTimeoutMinutes")
    max_session_hours: int = Field(..., alias="maxSessionHours")
    warning_before_timeout_minutes: int = Field(..., alias="warningBeforeTimeoutMinutes")
