from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from .settings import settings


# Execution option that lets a read-only unit of work skip the write lock
READ_ONLY = {"sqlite_read_only": True}


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """
    Make every SQLite transaction take the write lock up front.

    pysqlite defers BEGIN until the first write, which lets two refreshes of
    the same token both read the record before either claims it. Emitting
    BEGIN IMMEDIATE ourselves serializes writers for the whole transaction.
    Connections carrying the ``READ_ONLY`` execution option get a plain
    BEGIN instead, so listing sessions never queues behind a refresh.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        if conn.get_execution_options().get("sqlite_read_only"):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, **kwargs) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"timeout": 15})
        engine = create_async_engine(database_url, echo=settings.db_echo, **kwargs)
        _use_immediate_transactions(engine)
        return engine

    kwargs.setdefault("pool_size", 5)
    kwargs.setdefault("max_overflow", 5)
    return create_async_engine(
        database_url,
        echo=settings.db_echo,
        pool_pre_ping=True,
        pool_recycle=300,
        **kwargs,
    )


def build_session_maker(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async_engine = build_engine(settings.database_url)

async_session_maker = build_session_maker(async_engine)


async def init_db(engine: AsyncEngine = async_engine):
    # Import models so they are registered on the metadata
    from sessionguard.src.models import RefreshToken, User  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

