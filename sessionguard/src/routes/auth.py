from typing import Optional

from fastapi import APIRouter, Body, HTTPException, Request, Response, status

from sessionguard.core.authentication import CurrentUserId
from sessionguard.core.logging import get_client_ip
from sessionguard.core.refresh_tokens import RefreshCoordinatorDep
from sessionguard.core.settings import settings
from sessionguard.src.schema.auth import (
    LogoutResponse,
    RefreshRequest,
    RefreshResponse,
    SessionInfo,
    SessionsResponse,
)

router = APIRouter()


def set_refresh_cookie(response: Response, refresh_token: str):
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        httponly=True,  # Prevents JavaScript access (XSS protection)
        secure=settings.refresh_cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_expire_days * 86400,
        path=settings.refresh_cookie_path,  # Only send cookie to /auth endpoints
    )


# Refresh Token Endpoints


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_access_token(
    request: Request,
    response: Response,
    coordinator: RefreshCoordinatorDep,
    body: Optional[RefreshRequest] = Body(None),
):
    """
    Exchange a refresh token for a new access token and a rotated refresh token.
    The refresh token can be provided either:
    1. Via httpOnly cookie (preferred for security)
    2. In the request body

    The presented token is consumed; presenting it again signs out every
    device in its session lineage.
    """
    token_value = request.cookies.get(settings.refresh_cookie_name)
    if not token_value and body is not None:
        token_value = body.refresh_token

    if not token_value:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No refresh token provided",
            headers={"WWW-Authenticate": "Bearer"},
        )

    pair = await coordinator.refresh(
        token_value,
        client_ip=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )

    set_refresh_cookie(response, pair.refresh_token)

    return RefreshResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=settings.access_token_expire_minutes * 60,
        refresh_expires_at=pair.refresh_expires_at,
    )


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    request: Request,
    response: Response,
    coordinator: RefreshCoordinatorDep,
    user_id: CurrentUserId,
):
    """
    Revoke every live refresh token of the current user (all devices).
    Always clears the httpOnly cookie.
    """
    request.state.user_id = user_id
    response.delete_cookie(key=settings.refresh_cookie_name, path=settings.refresh_cookie_path)

    count = await coordinator.logout(user_id)
    return LogoutResponse(
        message=f"Logged out from {count} device(s) successfully",
        revoked=count,
    )


@router.get("/sessions", response_model=SessionsResponse)
async def get_sessions(
    request: Request,
    coordinator: RefreshCoordinatorDep,
    user_id: CurrentUserId,
):
    """
    Get all active sessions for the current user, newest first.
    """
    request.state.user_id = user_id
    records = await coordinator.list_sessions(user_id)

    return SessionsResponse(
        sessions=[
            SessionInfo(
                family_id=r.family_id,
                ip_address=r.ip_address,
                user_agent=r.user_agent,
                created_at=r.created_at,
                expires_at=r.expires_at,
            )
            for r in records
        ]
    )


@router.delete("/sessions/{family_id}", response_model=LogoutResponse)
async def revoke_session(
    family_id: str,
    request: Request,
    coordinator: RefreshCoordinatorDep,
    user_id: CurrentUserId,
):
    """
    Revoke one session (token family) of the current user.
    Users can only revoke their own sessions.
    """
    request.state.user_id = user_id
    count = await coordinator.revoke_session(user_id, family_id)
    if not count:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found or does not belong to you",
        )

    return LogoutResponse(message="Session revoked successfully", revoked=count)
