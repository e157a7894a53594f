import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from sessionguard.src.models.types import UTCDateTime


class TokenState(str, Enum):
    VALID = "valid"
    USED = "used"
    REVOKED = "revoked"
    EXPIRED = "expired"


class RevocationReason(str, Enum):
    LOGOUT = "logout"
    TOKEN_REUSE = "token_reuse"
    FAMILY_COMPROMISED = "family_compromised"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SESSION_LIMIT = "session_limit"

    @property
    def is_theft_response(self) -> bool:
        return self is not RevocationReason.LOGOUT


def _new_id() -> str:
    return str(uuid.uuid4())


class RefreshToken(SQLModel, table=True):
    """
    One rotation step of a login session.

    Every record descending from the same login shares a ``family_id``. The
    raw token is never stored; ``token_hash`` is the only lookup key. Rows are
    only ever mutated to mark them used or revoked, each at most once.
    """

    __tablename__ = "refresh_tokens"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    token_hash: str = Field(index=True, unique=True, max_length=64)
    user_id: int = Field(foreign_key="user.id", index=True)
    family_id: str = Field(index=True, max_length=36)
    expires_at: datetime = Field(sa_type=UTCDateTime, nullable=False, index=True)
    is_used: bool = Field(default=False)
    used_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    is_revoked: bool = Field(default=False, index=True)
    revoked_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    revoked_reason: Optional[RevocationReason] = Field(default=None)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_type=UTCDateTime,
        nullable=False,
        index=True,
    )
    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, max_length=512)

    def state(self, now: datetime) -> TokenState:
        # Used wins over revoked so that replaying a consumed token is always
        # reported as reuse, even after its family was shut down.
        if self.is_used:
            return TokenState.USED
        if self.is_revoked:
            return TokenState.REVOKED
        if self.expires_at <= now:
            return TokenState.EXPIRED
        return TokenState.VALID

    def is_valid(self, now: datetime) -> bool:
        return self.state(now) is TokenState.VALID

    def fingerprint(self) -> tuple[Optional[str], Optional[str]]:
        return self.ip_address, self.user_agent
