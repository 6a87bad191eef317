"""
Tests for the cooperative per-prospect lock.
"""

import asyncio
from unittest.mock import patch

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from prospect_api.database import Base
from prospect_api.models.prospect import ProspectActivity, Report
from prospect_api.services import lock_manager
from prospect_api.services.lock_manager import clear_lock, has_live_lock

from tests.conftest import utc


class TestAcquire:
    async def test_first_worker_wins(self, make_prospect, verify_db):
        prospect = await make_prospect()

        assert await lock_manager.acquire(prospect.id, "worker-a") is True
        assert await lock_manager.acquire(prospect.id, "worker-b") is False

        async with verify_db() as vdb:
            fresh = await vdb.get(ProspectActivity, prospect.id)
            assert fresh.enrichment_locked_by == "worker-a"
            assert fresh.enrichment_locked_at is not None

    async def test_concurrent_acquire_has_one_winner(self, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'locks.db'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(engine, expire_on_commit=False)
        async with factory() as s:
            report = Report(domain="acme.com")
            prospect = ProspectActivity(report=report, status="new")
            s.add_all([report, prospect])
            await s.commit()
            prospect_id = prospect.id

        try:
            with patch.object(lock_manager, "async_session_factory", factory):
                results = await asyncio.gather(*(
                    lock_manager.acquire(prospect_id, f"worker-{i}") for i in range(8)
                ))

            assert results.count(True) == 1
            async with factory() as s:
                fresh = await s.get(ProspectActivity, prospect_id)
                assert fresh.enrichment_locked_by == f"worker-{results.index(True)}"
        finally:
            await engine.dispose()

    async def test_no_reentrancy(self, make_prospect):
        prospect = await make_prospect()
        assert await lock_manager.acquire(prospect.id, "worker-a")
        assert await lock_manager.acquire(prospect.id, "worker-a") is False

    async def test_stale_lock_is_taken_over(self, make_prospect, verify_db):
        prospect = await make_prospect(locked_by="crashed", locked_minutes_ago=11)

        assert await lock_manager.acquire(prospect.id, "worker-b", timeout_minutes=10)

        async with verify_db() as vdb:
            fresh = await vdb.get(ProspectActivity, prospect.id)
            assert fresh.enrichment_locked_by == "worker-b"

    async def test_live_lock_not_taken_over(self, make_prospect, verify_db):
        prospect = await make_prospect(locked_by="busy", locked_minutes_ago=5)

        assert await lock_manager.acquire(prospect.id, "worker-b", timeout_minutes=10) is False

        async with verify_db() as vdb:
            fresh = await vdb.get(ProspectActivity, prospect.id)
            assert fresh.enrichment_locked_by == "busy"

    async def test_unknown_prospect(self):
        assert await lock_manager.acquire("does-not-exist", "worker-a") is False


class TestRelease:
    async def test_release_clears_both_fields(self, make_prospect, verify_db):
        prospect = await make_prospect()
        await lock_manager.acquire(prospect.id, "worker-a")

        assert await lock_manager.release(prospect.id) is True

        async with verify_db() as vdb:
            fresh = await vdb.get(ProspectActivity, prospect.id)
            assert fresh.enrichment_locked_at is None
            assert fresh.enrichment_locked_by is None

    async def test_release_is_idempotent(self, make_prospect):
        prospect = await make_prospect()
        await lock_manager.acquire(prospect.id, "worker-a")

        assert await lock_manager.release(prospect.id) is True
        assert await lock_manager.release(prospect.id) is False
        assert await lock_manager.release(prospect.id) is False

    async def test_release_respects_owner(self, make_prospect, verify_db):
        prospect = await make_prospect()
        await lock_manager.acquire(prospect.id, "worker-a")

        assert await lock_manager.release(prospect.id, "worker-b") is False

        async with verify_db() as vdb:
            fresh = await vdb.get(ProspectActivity, prospect.id)
            assert fresh.enrichment_locked_by == "worker-a"

    async def test_reacquire_after_release(self, make_prospect):
        prospect = await make_prospect()
        await lock_manager.acquire(prospect.id, "worker-a")
        await lock_manager.release(prospect.id, "worker-a")
        assert await lock_manager.acquire(prospect.id, "worker-b")


class TestInSessionHelpers:
    def test_has_live_lock(self):
        prospect = ProspectActivity(enrichment_locked_at=utc(2), enrichment_locked_by="w")
        assert has_live_lock(prospect, threshold_minutes=10)
        assert not has_live_lock(prospect, threshold_minutes=1)
        assert not has_live_lock(ProspectActivity())

    def test_clear_lock_owner_check(self):
        prospect = ProspectActivity(enrichment_locked_at=utc(), enrichment_locked_by="w1")
        assert clear_lock(prospect, "w2") is False
        assert prospect.enrichment_locked_by == "w1"
        assert clear_lock(prospect, "w1") is True
        assert prospect.enrichment_locked_at is None
        assert clear_lock(prospect) is False
