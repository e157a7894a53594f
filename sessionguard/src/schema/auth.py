from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# Refresh Token Schemas

class RefreshRequest(BaseModel):
    """Body for token refresh when the cookie is not available"""
    refresh_token: Optional[str] = Field(default=None, min_length=1)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "refresh_token": "q3v0Xk2m9N..."
            }
        }
    )


class RefreshResponse(BaseModel):
    """Schema for a successful refresh"""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_at: datetime

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "access_token": "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9...",
                "refresh_token": "Jd8fP0aR7w...",
                "token_type": "bearer",
                "expires_in": 900,
                "refresh_expires_at": "2025-01-08T12:00:00Z"
            }
        }
    )


# Session Management Schemas

class SessionInfo(BaseModel):
    """One live login, represented by the current token of its family"""
    family_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    expires_at: datetime


class SessionsResponse(BaseModel):
    sessions: list[SessionInfo]


class LogoutResponse(BaseModel):
    message: str
    revoked: int
