"""
Pydantic schemas for marketplace API payloads.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Dict, Any
from datetime import datetime


class User(BaseModel):
    """
    Identity snapshot returned by the backend.

    Unknown fields are kept so the cached snapshot round-trips whatever the
    backend sends.
    """
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    email: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    avatar: Optional[str] = None
    is_active: Optional[bool] = None
    email_verified: Optional[bool] = None
    organization_id: Optional[str] = None
    credits: Optional[float] = None
    preferences: Optional[Any] = None
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def display_name(self) -> str:
        """Full name when known, then username, then email."""
        full_name = " ".join(
            part for part in (self.first_name, self.last_name) if part
        )
        return full_name or self.username or self.email or self.id


# Request Schemas

class LoginRequest(BaseModel):
    """Credentials for POST /auth/login."""
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"email": "a@b.com", "password": "secret"}
        }
    )


class RegisterRequest(BaseModel):
    """Account data for POST /auth/register."""
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)
    username: Optional[str] = Field(None, max_length=255)
    first_name: str = Field(..., min_length=1, max_length=255)
    last_name: str = Field(..., min_length=1, max_length=255)
    organization_name: Optional[str] = Field(None, max_length=255)

    @field_validator('email', 'first_name', 'last_name')
    @classmethod
    def strip_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Field cannot be blank')
        return v.strip()

    def to_payload(self) -> Dict[str, Any]:
        """Request body without unset optional fields."""
        return self.model_dump(exclude_none=True)


class RefreshRequest(BaseModel):
    """Body of POST /auth/refresh."""
    refresh_token: str = Field(..., min_length=1)


# Response Schemas

class TokenPair(BaseModel):
    """Access/refresh token pair minted by login or refresh."""
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)
    expires_at: Optional[datetime] = None


class AuthResponse(TokenPair):
    """Successful login payload: a token pair plus the user snapshot."""
    user: User


__all__ = [
    'User',
    'LoginRequest',
    'RegisterRequest',
    'RefreshRequest',
    'TokenPair',
    'AuthResponse',
]
