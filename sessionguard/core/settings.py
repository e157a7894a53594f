from datetime import timedelta

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class TokenPolicy(BaseModel):
    """
    Rotation and theft-detection knobs handed to the refresh coordinator,
    the risk evaluator and the retention sweeper at construction time.
    """

    model_config = ConfigDict(frozen=True)

    refresh_token_ttl: timedelta = timedelta(days=7)
    max_concurrent_sessions: int = 5
    max_family_size: int = 10
    rapid_generation_threshold: int = 3
    rapid_generation_window: timedelta = timedelta(minutes=5)
    retention_period: timedelta = timedelta(days=7)
    retention_batch_size: int = 500


class Settings(BaseSettings):
    app_name: str = "SessionGuard API"
    environment: str = "development"  # development, staging, or production

    # Database
    database_url: str = "sqlite+aiosqlite:///./sessionguard.db"
    db_echo: bool = False

    # Access tokens
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 15

    # Refresh token rotation
    refresh_token_expire_days: int = 7
    max_concurrent_sessions: int = 5  # Valid tokens per user across families
    max_family_size: int = 10  # Total records in one login lineage
    rapid_generation_threshold: int = 3  # Records per family inside the window
    rapid_generation_window_minutes: int = 5

    # Retention
    token_retention_days: int = 7  # Keep expired rows this long for reuse forensics
    retention_sweep_hour: int = 2
    retention_sweep_minute: int = 0
    retention_batch_size: int = 500

    # Refresh cookie
    refresh_cookie_name: str = "refresh_token"
    refresh_cookie_path: str = "/auth"
    refresh_cookie_secure: bool = True

    cors_origins: list[str] = [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def token_policy(self) -> TokenPolicy:
        return TokenPolicy(
            refresh_token_ttl=timedelta(days=self.refresh_token_expire_days),
            max_concurrent_sessions=self.max_concurrent_sessions,
            max_family_size=self.max_family_size,
            rapid_generation_threshold=self.rapid_generation_threshold,
            rapid_generation_window=timedelta(
                minutes=self.rapid_generation_window_minutes
            ),
            retention_period=timedelta(days=self.token_retention_days),
            retention_batch_size=self.retention_batch_size,
        )


settings = Settings()
