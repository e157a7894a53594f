from datetime import datetime, timezone

from sqlmodel import Field, SQLModel

from sessionguard.src.models.types import UTCDateTime


class User(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=UTCDateTime
    )
