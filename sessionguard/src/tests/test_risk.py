"""
Tests for family risk evaluation.
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from sessionguard.core import risk
from sessionguard.core.risk import FamilyRiskEvaluator
from sessionguard.core.settings import TokenPolicy
from sessionguard.core.token_store import TokenStore
from sessionguard.src.tests.utils import START


@pytest.fixture
def evaluator(clock):
    return FamilyRiskEvaluator(TokenPolicy(), clock)


class TestIsFamilyCompromised:
    @pytest.mark.asyncio
    async def test_single_source_is_clean(self, session_factory, test_db, evaluator):
        await test_db.insert_token(1, "fam", START - timedelta(hours=1), is_used=True)
        await test_db.insert_token(1, "fam", START - timedelta(minutes=30))

        async with session_factory() as session:
            assert await evaluator.is_family_compromised(TokenStore(session), "fam") is False

    @pytest.mark.asyncio
    async def test_two_live_sources(self, session_factory, test_db, evaluator):
        await test_db.insert_token(1, "fam", START - timedelta(hours=1))
        await test_db.insert_token(
            1, "fam", START - timedelta(minutes=30), ip_address="2.2.2.2", user_agent="B"
        )

        async with session_factory() as session:
            assert await evaluator.is_family_compromised(TokenStore(session), "fam") is True

    @pytest.mark.asyncio
    async def test_rapid_generation_threshold(self, session_factory, test_db, evaluator):
        # Three recent records is at the threshold, not over it
        for minutes in (4, 3, 2):
            await test_db.insert_token(
                1, "fam", START - timedelta(minutes=minutes), is_used=True
            )
        async with session_factory() as session:
            assert await evaluator.is_family_compromised(TokenStore(session), "fam") is False

        await test_db.insert_token(1, "fam", START - timedelta(minutes=1))
        async with session_factory() as session:
            assert await evaluator.is_family_compromised(TokenStore(session), "fam") is True

    @pytest.mark.asyncio
    async def test_old_records_fall_out_of_window(self, session_factory, test_db, evaluator, clock):
        for minutes in (4, 3, 2, 1):
            await test_db.insert_token(
                1, "fam", START - timedelta(minutes=minutes), is_used=True
            )
        clock.advance(minutes=10)

        async with session_factory() as session:
            assert await evaluator.is_family_compromised(TokenStore(session), "fam") is False


class TestIsSuspicious:
    @pytest.mark.asyncio
    async def test_fingerprint_mismatch_logged_not_flagged(
        self, session_factory, test_db, evaluator, monkeypatch
    ):
        mismatch = Mock()
        monkeypatch.setattr(risk.security_event_logger, "fingerprint_mismatch", mismatch)
        _, record = await test_db.insert_token(1, "fam", START)

        async with session_factory() as session:
            suspicious = await evaluator.is_suspicious(
                TokenStore(session), record, "5.5.5.5", "Other"
            )

        assert suspicious is False
        mismatch.assert_called_once()
        assert mismatch.call_args.kwargs["presented"] == ("5.5.5.5", "Other")
        assert mismatch.call_args.kwargs["stored"] == ("1.1.1.1", "A")

    @pytest.mark.asyncio
    async def test_matching_fingerprint_not_logged(
        self, session_factory, test_db, evaluator, monkeypatch
    ):
        mismatch = Mock()
        monkeypatch.setattr(risk.security_event_logger, "fingerprint_mismatch", mismatch)
        _, record = await test_db.insert_token(1, "fam", START)

        async with session_factory() as session:
            await evaluator.is_suspicious(TokenStore(session), record, "1.1.1.1", "A")

        mismatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_oversized_family(self, session_factory, test_db, evaluator):
        for days in range(10):
            _, record = await test_db.insert_token(
                1, "fam", START - timedelta(days=days + 1), is_used=True
            )
        async with session_factory() as session:
            assert await evaluator.is_suspicious(TokenStore(session), record, "1.1.1.1", "A") is False

        _, record = await test_db.insert_token(1, "fam", START)
        async with session_factory() as session:
            assert await evaluator.is_suspicious(TokenStore(session), record, "1.1.1.1", "A") is True

    @pytest.mark.asyncio
    async def test_evaluation_does_not_mutate(self, session_factory, test_db, evaluator):
        await test_db.insert_token(1, "fam", START - timedelta(hours=1))
        _, record = await test_db.insert_token(
            1, "fam", START, ip_address="2.2.2.2", user_agent="B"
        )

        async with session_factory() as session:
            store = TokenStore(session)
            await evaluator.is_family_compromised(store, "fam")
            await evaluator.is_suspicious(store, record, "3.3.3.3", "C")

        records = await test_db.family("fam")
        assert not any(r.is_revoked or r.is_used for r in records)
