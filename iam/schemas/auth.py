"""Authentication request schemas."""

from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):
    """Registration payload."""

    username: str = Field(min_length=1, max_length=256)
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=8, max_length=256)


class LoginRequest(BaseModel):
    """Login payload; identifier is a username or an email."""

    identifier: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=256)
    device_name: str | None = Field(default=None, max_length=256)


class RefreshTokenRequest(BaseModel):
    """Refresh token request payload."""

    refresh_token: str = Field(min_length=16)


class LogoutRequest(BaseModel):
    """Logout request payload."""

    refresh_token: str = Field(min_length=1)


class ResetPasswordRequest(BaseModel):
    """Password reset payload."""

    email: str = Field(min_length=3, max_length=320)
    reset_token: str = Field(min_length=1)
    new_password: str = Field(min_length=8, max_length=256)
