from datetime import datetime, timedelta, timezone
from typing import Optional

from sessionguard.core.security import generate_refresh_token, hash_token
from sessionguard.core.token_store import TokenStore
from sessionguard.src.models.refresh_tokens import RefreshToken
from sessionguard.src.models.users import User

START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; only moves when a test advances it."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class TestDatabase:
    __test__ = False

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def populate_test_data(self):
        async with self.session_factory() as session:
            session.add(User(id=1, username="testuser", is_active=True))
            session.add(User(id=2, username="patron", is_active=True))
            session.add(User(id=3, username="inactive", is_active=False))
            await session.commit()

    async def insert_token(
        self,
        user_id: int,
        family_id: str,
        created_at: datetime,
        expires_at: Optional[datetime] = None,
        ip_address: Optional[str] = "1.1.1.1",
        user_agent: Optional[str] = "A",
        is_used: bool = False,
        is_revoked: bool = False,
    ) -> tuple[str, RefreshToken]:
        """Write a record directly, bypassing the coordinator's checks."""
        raw_token = generate_refresh_token()
        record = RefreshToken(
            token_hash=hash_token(raw_token),
            user_id=user_id,
            family_id=family_id,
            created_at=created_at,
            expires_at=expires_at or created_at + timedelta(days=7),
            ip_address=ip_address,
            user_agent=user_agent,
            is_used=is_used,
            used_at=created_at if is_used else None,
            is_revoked=is_revoked,
        )
        async with self.session_factory() as session:
            async with session.begin():
                await TokenStore(session).add(record)
        return raw_token, record

    async def get_record(self, raw_token: str) -> Optional[RefreshToken]:
        async with self.session_factory() as session:
            return await TokenStore(session).get_by_hash(hash_token(raw_token))

    async def family(self, family_id: str) -> list[RefreshToken]:
        async with self.session_factory() as session:
            return list(await TokenStore(session).list_family(family_id))
