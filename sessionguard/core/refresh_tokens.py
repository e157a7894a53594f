"""
Refresh-token rotation with theft detection.

Every successful refresh consumes the presented token and issues a successor
in the same family. Anything that looks like a stolen token (a consumed
token presented again, two clients in one lineage, runaway churn, an
oversized lineage, too many live sessions) revokes the whole family and
signs the user out everywhere that family reached.
"""

import uuid
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Annotated, Callable, Optional, Sequence

from fastapi import Depends
from pydantic import BaseModel

from sessionguard.core.authentication import (
    AccessTokenIssuer,
    JWTAccessTokenIssuer,
    SQLUserDirectory,
    UserDirectory,
)
from sessionguard.core.database import READ_ONLY, async_session_maker
from sessionguard.core.error_handling import (
    InvalidTokenError,
    SecurityViolationError,
    TooManySessionsError,
)
from sessionguard.core.logging import (
    app_logger,
    audit_event_logger,
    security_event_logger,
)
from sessionguard.core.risk import FamilyRiskEvaluator
from sessionguard.core.security import generate_refresh_token, hash_token
from sessionguard.core.settings import TokenPolicy, settings
from sessionguard.core.token_store import TokenStore
from sessionguard.src.models.refresh_tokens import (
    RefreshToken,
    RevocationReason,
    TokenState,
)


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime
    family_id: str


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_fingerprint(
    client_ip: Optional[str], user_agent: Optional[str]
) -> tuple[Optional[str], Optional[str]]:
    # Truncate to the column widths so a stored fingerprint compares equal
    # to the same client presenting it again
    return (
        client_ip[:45] if client_ip else None,
        user_agent[:512] if user_agent else None,
    )


class RefreshCoordinator:
    """
    Orchestrates login, rotation, logout and retention for refresh tokens.

    Each public operation runs in its own transaction opened from
    ``session_factory``. Configuration and the clock are injected so nothing
    here reads global state.
    """

    def __init__(
        self,
        session_factory,
        access_token_issuer: AccessTokenIssuer,
        policy: TokenPolicy,
        clock: Callable[[], datetime] = utcnow,
        user_directory_factory: Callable[..., UserDirectory] = SQLUserDirectory,
        risk_evaluator: Optional[FamilyRiskEvaluator] = None,
    ):
        self.session_factory = session_factory
        self.access_token_issuer = access_token_issuer
        self.policy = policy
        self.clock = clock
        self.user_directory_factory = user_directory_factory
        self.risk_evaluator = risk_evaluator or FamilyRiskEvaluator(policy, clock)

    async def generate_initial(
        self,
        user_id: int,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Start a new family for a freshly authenticated user."""
        client_ip, user_agent = _normalize_fingerprint(client_ip, user_agent)

        async with self.session_factory() as session:
            async with session.begin():
                if not await self._user_exists(session, user_id):
                    raise InvalidTokenError("Unknown or inactive user")

                raw_token, record = await self._create_record(
                    TokenStore(session),
                    user_id=user_id,
                    family_id=str(uuid.uuid4()),
                    client_ip=client_ip,
                    user_agent=user_agent,
                )

        app_logger.info(
            "Refresh token family started",
            extra={
                "event_type": "token_family_created",
                "user_id": user_id,
                "family_id": record.family_id,
                "token_id": record.id,
                "client_ip": client_ip,
            },
        )
        return raw_token

    async def login(
        self,
        user_id: int,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        return await self.generate_initial(user_id, client_ip, user_agent)

    async def refresh(
        self,
        raw_token: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """
        Exchange a refresh token for a new access token and its successor.

        Raises:
            InvalidTokenError: unknown, purged, logged-out or expired token
            SecurityViolationError: theft detected; the family is revoked
            TooManySessionsError: session cap exceeded; the family is revoked
        """
        try:
            token_hash = hash_token(raw_token)
        except ValueError as exc:
            raise InvalidTokenError() from exc

        client_ip, user_agent = _normalize_fingerprint(client_ip, user_agent)
        violation = None

        async with self.session_factory() as session:
            async with session.begin():
                store = TokenStore(session)
                try:
                    pair = await self._rotate(
                        session, store, token_hash, client_ip, user_agent
                    )
                except SecurityViolationError as exc:
                    # The revocation must commit even though the refresh fails
                    await self._revoke_compromised_family(store, exc)
                    violation = exc

        if violation is not None:
            raise violation
        return pair

    async def _rotate(
        self,
        session,
        store: TokenStore,
        token_hash: str,
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> TokenPair:
        now = self.clock()

        record = await store.get_by_hash(token_hash, lock=True)
        if record is None:
            raise InvalidTokenError()

        state = record.state(now)
        if state is TokenState.USED:
            security_event_logger.token_reuse(
                token_id=record.id,
                family_id=record.family_id,
                user_id=record.user_id,
                client_ip=client_ip,
                user_agent=user_agent,
            )
            raise SecurityViolationError(
                record.family_id, RevocationReason.TOKEN_REUSE, user_id=record.user_id
            )

        if state is TokenState.REVOKED:
            if record.revoked_reason is not None and record.revoked_reason.is_theft_response:
                raise SecurityViolationError(
                    record.family_id, record.revoked_reason, user_id=record.user_id
                )
            raise InvalidTokenError()

        if state is TokenState.EXPIRED:
            raise InvalidTokenError()

        if not await self._user_exists(session, record.user_id):
            raise InvalidTokenError()

        if await self.risk_evaluator.is_family_compromised(store, record.family_id):
            raise SecurityViolationError(
                record.family_id,
                RevocationReason.FAMILY_COMPROMISED,
                user_id=record.user_id,
            )

        if await self.risk_evaluator.is_suspicious(store, record, client_ip, user_agent):
            raise SecurityViolationError(
                record.family_id,
                RevocationReason.SUSPICIOUS_ACTIVITY,
                user_id=record.user_id,
            )

        active = await store.count_valid_for_user(record.user_id, now)
        if active > self.policy.max_concurrent_sessions:
            raise TooManySessionsError(
                record.family_id,
                self.policy.max_concurrent_sessions,
                user_id=record.user_id,
            )

        if not await store.claim(record, now):
            raise SecurityViolationError(
                record.family_id, RevocationReason.TOKEN_REUSE, user_id=record.user_id
            )

        access_token = self.access_token_issuer.issue(record.user_id)

        raw_token, successor = await self._create_record(
            store,
            user_id=record.user_id,
            family_id=record.family_id,
            client_ip=client_ip,
            user_agent=user_agent,
        )

        return TokenPair(
            access_token=access_token,
            refresh_token=raw_token,
            refresh_expires_at=successor.expires_at,
            family_id=successor.family_id,
        )

    async def _revoke_compromised_family(
        self, store: TokenStore, violation: SecurityViolationError
    ) -> int:
        revoked = await store.revoke_family(
            violation.family_id, violation.reason, self.clock()
        )
        if not revoked:
            # Nothing left to revoke: an earlier theft response already ran
            security_event_logger.revoked_family_replay(
                family_id=violation.family_id,
                user_id=violation.user_id,
                reason=violation.reason.value,
            )
            return 0

        security_event_logger.family_revoked(
            family_id=violation.family_id,
            user_id=violation.user_id,
            reason=violation.reason.value,
            revoked=revoked,
        )
        return revoked

    async def _create_record(
        self,
        store: TokenStore,
        user_id: int,
        family_id: str,
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> tuple[str, RefreshToken]:
        now = self.clock()
        raw_token = generate_refresh_token()
        record = RefreshToken(
            token_hash=hash_token(raw_token),
            user_id=user_id,
            family_id=family_id,
            expires_at=now + self.policy.refresh_token_ttl,
            created_at=now,
            ip_address=client_ip,
            user_agent=user_agent,
        )
        await store.add(record)
        return raw_token, record

    async def _user_exists(self, session, user_id: int) -> bool:
        directory = self.user_directory_factory(session)
        try:
            return await directory.exists(user_id)
        except Exception as exc:
            raise InvalidTokenError() from exc

    async def revoke_all_for_user(self, user_id: int) -> int:
        """Revoke every valid token the user holds. Safe to call repeatedly."""
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                revoked = await TokenStore(session).revoke_valid_for_user(
                    user_id, RevocationReason.LOGOUT, now
                )

        audit_event_logger.log_data_modification(
            user_id=user_id,
            resource_type="refresh_token",
            resource_id="*",
            action="revoke_all",
            changes={"revoked": revoked, "reason": RevocationReason.LOGOUT.value},
        )
        return revoked

    async def logout(self, user_id: int) -> int:
        return await self.revoke_all_for_user(user_id)

    async def list_sessions(self, user_id: int) -> Sequence[RefreshToken]:
        async with self.session_factory() as session:
            # Reads only; must not hold the SQLite write lock against refreshes
            await session.connection(execution_options=READ_ONLY)
            return await TokenStore(session).list_valid_for_user(user_id, self.clock())

    async def revoke_session(self, user_id: int, family_id: str) -> int:
        """Revoke one family owned by the user; returns the rows touched."""
        now = self.clock()
        async with self.session_factory() as session:
            async with session.begin():
                revoked = await TokenStore(session).revoke_family_for_user(
                    user_id, family_id, RevocationReason.LOGOUT, now
                )

        if revoked:
            audit_event_logger.log_data_modification(
                user_id=user_id,
                resource_type="refresh_token_family",
                resource_id=family_id,
                action="revoke",
                changes={"revoked": revoked, "reason": RevocationReason.LOGOUT.value},
            )
        return revoked

    async def cleanup(self, older_than: datetime) -> int:
        """
        Delete every record whose expiry is before ``older_than``.

        Works in batches of ``retention_batch_size``, one short transaction
        each, so refreshes are never locked out for the whole purge.
        """
        batch_size = self.policy.retention_batch_size
        total = 0
        while True:
            async with self.session_factory() as session:
                async with session.begin():
                    deleted = await TokenStore(session).delete_expired_before(
                        older_than, batch_size
                    )
            total += deleted
            if deleted < batch_size:
                break

        audit_event_logger.log_data_modification(
            user_id=None,
            resource_type="refresh_token",
            resource_id="*",
            action="purge_expired",
            changes={"deleted": total, "cutoff": older_than.isoformat()},
        )
        return total


@lru_cache
def get_refresh_coordinator() -> RefreshCoordinator:
    return RefreshCoordinator(
        session_factory=async_session_maker,
        access_token_issuer=JWTAccessTokenIssuer(
            secret_key=settings.secret_key,
            algorithm=settings.algorithm,
            expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
        ),
        policy=settings.token_policy(),
    )


RefreshCoordinatorDep = Annotated[RefreshCoordinator, Depends(get_refresh_coordinator)]
