import secrets
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional, Protocol

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlmodel.ext.asyncio.session import AsyncSession

from sessionguard.core.settings import settings
from sessionguard.src.models.users import User

bearer_scheme = HTTPBearer(auto_error=False)


class AccessTokenIssuer(Protocol):
    def issue(self, user_id: int) -> str: ...


class UserDirectory(Protocol):
    async def exists(self, user_id: int) -> bool: ...


class JWTAccessTokenIssuer:
    """Signs short-lived access tokens; opaque to the refresh machinery."""

    def __init__(
        self,
        secret_key: str = settings.secret_key,
        algorithm: str = settings.algorithm,
        expires_delta: timedelta = timedelta(minutes=settings.access_token_expire_minutes),
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expires_delta = expires_delta

    def issue(self, user_id: int) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "iat": now,
            "exp": now + self.expires_delta,
            # Unique even when two tokens are signed in the same second
            "jti": secrets.token_hex(8),
            "type": "access",
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)


class SQLUserDirectory:
    """
    Resolves users from the local ``user`` table.

    Bound to the caller's session so the lookup runs inside the refresh
    transaction instead of competing with it for a connection.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, user_id: int) -> bool:
        user = await self.session.get(User, user_id)
        return user is not None and user.is_active


def verify_access_token(token: str) -> Optional[int]:
    try:
        payload = jwt.decode(
            token, settings.secret_key, algorithms=[settings.algorithm]
        )
    except JWTError:
        return None
    if payload.get("type") != "access":
        return None
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None


async def get_current_user_id(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
) -> int:
    user_id = verify_access_token(credentials.credentials) if credentials else None
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


CurrentUserId = Annotated[int, Depends(get_current_user_id)]
