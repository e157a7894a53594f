from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from sessionguard.core.logging import app_logger
from sessionguard.core.refresh_tokens import RefreshCoordinator, utcnow
from sessionguard.core.settings import TokenPolicy, settings

scheduler = AsyncIOScheduler()


class RetentionSweeper:
    """
    Purges refresh-token records that expired more than the retention
    period ago. Recently expired rows are kept so a replay of them can still
    be told apart from a token that never existed.
    """

    def __init__(
        self,
        coordinator: RefreshCoordinator,
        policy: TokenPolicy,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.coordinator = coordinator
        self.policy = policy
        self.clock = clock

    def cutoff(self) -> datetime:
        return self.clock() - self.policy.retention_period

    async def run_once(self) -> int:
        cutoff = self.cutoff()
        try:
            deleted = await self.coordinator.cleanup(cutoff)
        except Exception:
            # Next scheduled run retries
            app_logger.exception(
                "Refresh token retention sweep failed",
                extra={"event_type": "retention_sweep_failed"},
            )
            return 0

        app_logger.info(
            f"Refresh token retention sweep removed {deleted} record(s)",
            extra={"event_type": "retention_sweep", "cutoff": cutoff.isoformat()},
        )
        return deleted


def start_scheduler(sweeper: RetentionSweeper, environment: Optional[str] = None):
    environment = environment or settings.environment
    if environment == "development":
        # Testing: every 5 minutes
        scheduler.add_job(
            func=sweeper.run_once,
            trigger="interval",
            minutes=5,
            id="refresh_token_retention",
            replace_existing=True,
        )
    else:
        # Production: daily
        scheduler.add_job(
            func=sweeper.run_once,
            trigger="cron",
            hour=settings.retention_sweep_hour,
            minute=settings.retention_sweep_minute,
            id="refresh_token_retention",
            replace_existing=True,
        )
    scheduler.start()


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown()
