"""
Persistence for refresh-token records.

A family has no row of its own; it is the set of records sharing a
``family_id``. Every family-scoped question is therefore a set query over
that column. The store never commits: the caller owns the transaction so
that the validity check, the risk queries and the writes of one refresh all
see the same snapshot.
"""

from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import delete, func, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from sessionguard.src.models.refresh_tokens import RefreshToken, RevocationReason


def _valid_at(now: datetime):
    return (
        RefreshToken.is_used.is_(False),
        RefreshToken.is_revoked.is_(False),
        RefreshToken.expires_at > now,
    )


class TokenStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, record: RefreshToken) -> RefreshToken:
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_by_hash(self, token_hash: str, lock: bool = False) -> Optional[RefreshToken]:
        """
        Fetch the record for a token digest.

        With ``lock`` the row is selected FOR UPDATE, so a second refresh of
        the same token blocks until the first transaction finishes.
        """
        statement = select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        if lock:
            statement = statement.with_for_update()
        result = await self.session.exec(statement)
        return result.first()

    async def claim(self, record: RefreshToken, now: datetime) -> bool:
        """
        Mark a record used, only if nobody else has.

        Returns False when zero rows matched, i.e. the token was consumed or
        revoked by a concurrent transaction.
        """
        result = await self.session.exec(
            update(RefreshToken)
            .where(
                RefreshToken.id == record.id,
                RefreshToken.is_used.is_(False),
                RefreshToken.is_revoked.is_(False),
            )
            .values(is_used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self.session.refresh(record)
        return True

    async def count_distinct_sources(self, family_id: str) -> int:
        """
        Distinct (ip_address, user_agent) pairs among the family's unconsumed
        records.

        Only used and revoked records drop out. An unused record still counts
        after it expires, since it was never handed back by its holder.
        """
        sources = (
            select(RefreshToken.ip_address, RefreshToken.user_agent)
            .where(
                RefreshToken.family_id == family_id,
                RefreshToken.is_used.is_(False),
                RefreshToken.is_revoked.is_(False),
            )
            .distinct()
            .subquery()
        )
        result = await self.session.exec(select(func.count()).select_from(sources))
        return result.one()

    async def count_created_since(self, family_id: str, cutoff: datetime) -> int:
        result = await self.session.exec(
            select(func.count(RefreshToken.id)).where(
                RefreshToken.family_id == family_id,
                RefreshToken.created_at > cutoff,
            )
        )
        return result.one()

    async def count_family(self, family_id: str) -> int:
        """Full lineage size, used and expired records included."""
        result = await self.session.exec(
            select(func.count(RefreshToken.id)).where(RefreshToken.family_id == family_id)
        )
        return result.one()

    async def count_valid_for_user(self, user_id: int, now: datetime) -> int:
        result = await self.session.exec(
            select(func.count(RefreshToken.id)).where(
                RefreshToken.user_id == user_id, *_valid_at(now)
            )
        )
        return result.one()

    async def list_valid_for_user(self, user_id: int, now: datetime) -> Sequence[RefreshToken]:
        result = await self.session.exec(
            select(RefreshToken)
            .where(RefreshToken.user_id == user_id, *_valid_at(now))
            .order_by(RefreshToken.created_at.desc())
        )
        return result.all()

    async def list_family(self, family_id: str) -> Sequence[RefreshToken]:
        result = await self.session.exec(
            select(RefreshToken)
            .where(RefreshToken.family_id == family_id)
            .order_by(RefreshToken.created_at)
        )
        return result.all()

    async def revoke_family(
        self, family_id: str, reason: RevocationReason, now: datetime
    ) -> int:
        """
        Revoke every record of a family regardless of used/expired state.

        Records already revoked keep their original timestamp and reason.
        """
        result = await self.session.exec(
            update(RefreshToken)
            .where(
                RefreshToken.family_id == family_id,
                RefreshToken.is_revoked.is_(False),
            )
            .values(is_revoked=True, revoked_at=now, revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def revoke_family_for_user(
        self, user_id: int, family_id: str, reason: RevocationReason, now: datetime
    ) -> int:
        result = await self.session.exec(
            update(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.family_id == family_id,
                RefreshToken.is_revoked.is_(False),
            )
            .values(is_revoked=True, revoked_at=now, revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def revoke_valid_for_user(
        self, user_id: int, reason: RevocationReason, now: datetime
    ) -> int:
        result = await self.session.exec(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, *_valid_at(now))
            .values(is_revoked=True, revoked_at=now, revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def delete_expired_before(self, cutoff: datetime, limit: int) -> int:
        """Delete at most ``limit`` records whose expiry is before ``cutoff``."""
        ids = await self.session.exec(
            select(RefreshToken.id)
            .where(RefreshToken.expires_at < cutoff)
            .order_by(RefreshToken.expires_at)
            .limit(limit)
        )
        batch = ids.all()
        if not batch:
            return 0
        result = await self.session.exec(
            delete(RefreshToken)
            .where(RefreshToken.id.in_(batch))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
