import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool
from sqlmodel import Session, SQLModel

from sessionguard.core.authentication import JWTAccessTokenIssuer
from sessionguard.core.database import build_engine, build_session_maker
from sessionguard.core.refresh_tokens import RefreshCoordinator, get_refresh_coordinator
from sessionguard.core.settings import TokenPolicy
from sessionguard.main import app
from sessionguard.src.models import User
from sessionguard.src.tests.utils import FakeClock, TestDatabase


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return TokenPolicy()


@pytest.fixture
def issuer():
    return JWTAccessTokenIssuer(
        secret_key="test-secret-key",
        algorithm="HS256",
        expires_delta=timedelta(minutes=15),
    )


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'sessionguard.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_maker(engine)


@pytest.fixture
async def test_db(session_factory):
    db = TestDatabase(session_factory)
    await db.populate_test_data()
    return db


@pytest.fixture
def coordinator(session_factory, issuer, policy, clock, test_db):
    return RefreshCoordinator(
        session_factory=session_factory,
        access_token_issuer=issuer,
        policy=policy,
        clock=clock,
    )


@pytest.fixture
def api(tmp_path, clock):
    """
    Client wired to a coordinator on its own database file.

    TestClient serves every request from a fresh event loop, so the app side
    uses a NullPool engine and the schema is created synchronously.
    """
    db_path = tmp_path / "api.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    SQLModel.metadata.create_all(sync_engine)
    with Session(sync_engine) as session:
        session.add(User(id=1, username="testuser", is_active=True))
        session.add(User(id=2, username="patron", is_active=True))
        session.commit()
    sync_engine.dispose()

    async_engine = build_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    coordinator = RefreshCoordinator(
        session_factory=build_session_maker(async_engine),
        access_token_issuer=JWTAccessTokenIssuer(),
        policy=TokenPolicy(),
        clock=clock,
    )

    app.dependency_overrides[get_refresh_coordinator] = lambda: coordinator
    yield TestClient(app), coordinator
    app.dependency_overrides.clear()


@pytest.fixture
def login(api):
    """Log a user in the way the upstream login layer would."""
    _, coordinator = api

    def _login(user_id: int = 1, client_ip: str = "testclient", user_agent: str = "testclient"):
        return asyncio.run(coordinator.login(user_id, client_ip, user_agent))

    return _login
