from datetime import datetime
from typing import Callable, Optional

from sessionguard.core.logging import security_event_logger
from sessionguard.core.settings import TokenPolicy
from sessionguard.core.token_store import TokenStore
from sessionguard.src.models.refresh_tokens import RefreshToken


class FamilyRiskEvaluator:
    """
    Decides whether a token family looks stolen.

    Only reads from the store it is handed; revoking anything is the
    coordinator's job.
    """

    def __init__(self, policy: TokenPolicy, clock: Callable[[], datetime]):
        self.policy = policy
        self.clock = clock

    async def is_family_compromised(self, store: TokenStore, family_id: str) -> bool:
        now = self.clock()

        # Two different clients holding unconsumed tokens from one lineage
        if await store.count_distinct_sources(family_id) > 1:
            return True

        # Automated churn: too many rotations inside the trailing window
        cutoff = now - self.policy.rapid_generation_window
        recent = await store.count_created_since(family_id, cutoff)
        return recent > self.policy.rapid_generation_threshold

    async def is_suspicious(
        self,
        store: TokenStore,
        record: RefreshToken,
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> bool:
        presented = (client_ip, user_agent)
        if record.fingerprint() != presented:
            # Recorded only; a mismatch alone never blocks the refresh
            security_event_logger.fingerprint_mismatch(
                token_id=record.id,
                family_id=record.family_id,
                user_id=record.user_id,
                stored=record.fingerprint(),
                presented=presented,
            )

        return await store.count_family(record.family_id) > self.policy.max_family_size
