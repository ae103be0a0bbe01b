"""
Unit tests for services/aging_sweep.py: drift detection, conditional
writes and the background worker lifecycle.
"""

import asyncio
from datetime import timedelta

import pytest

from caseflow.services.aging_sweep import AgingSweep
from caseflow.services.engine_config import EngineConfig
from caseflow.services.models import AgingTier, WorkItemKind
from caseflow.services.repository import InMemoryRepository
from caseflow.services.transition_table import TERMINAL_STAGE

from .conftest import ACTOR, case_data, seed_item


class StaleReadRepository(InMemoryRepository):
    """Hands the sweep a copy that is one version behind."""

    async def iter_open_items(self):
        async for item in super().iter_open_items():
            yield item.model_copy(update={"version": item.version - 1})


class TestDrift:

    @pytest.mark.asyncio
    async def test_on_time_to_at_risk_to_breached(self, engine, sweep, repo, clock, provider):
        case = await engine.create(WorkItemKind.CASE, case_data(priority="high"), ACTOR)
        assert case.aging_tier == AgingTier.ON_TIME

        clock.advance(hours=1)
        result = await sweep.run_once()
        assert (result.scanned, result.updated, result.newly_breached) == (1, 1, 0)
        assert (await repo.get(case.id)).aging_tier == AgingTier.AT_RISK

        clock.advance(hours=24)
        result = await sweep.run_once()
        assert (result.updated, result.newly_breached) == (1, 1)
        stored = await repo.get(case.id)
        assert stored.aging_tier == AgingTier.BREACHED
        assert stored.sla_breached is True

        overdue = [s for s in provider.get_sent() if s["event_kind"] == "overdue"]
        assert len(overdue) == 1
        assert overdue[0]["work_item_id"] == case.id
        assert overdue[0]["payload"]["display_number"] == case.display_number

    @pytest.mark.asyncio
    async def test_unchanged_items_are_not_written(self, engine, sweep, repo):
        case = await engine.create(WorkItemKind.CASE, case_data(priority="low"), ACTOR)
        result = await sweep.run_once()
        assert (result.scanned, result.updated) == (1, 0)
        assert (await repo.get(case.id)).version == case.version

    @pytest.mark.asyncio
    async def test_sweep_does_not_bump_version(self, engine, sweep, repo, clock):
        case = await engine.create(WorkItemKind.CASE, case_data(priority="critical"), ACTOR)
        clock.advance(hours=5)
        await sweep.run_once()
        stored = await repo.get(case.id)
        assert stored.aging_tier == AgingTier.BREACHED
        assert stored.version == case.version

        # Versioned writes are unaffected by the sweep
        moved = await engine.transition(case.id, "estimation", ACTOR)
        assert moved.version == case.version + 1

    @pytest.mark.asyncio
    async def test_breach_notified_once(self, engine, sweep, clock, provider):
        await engine.create(WorkItemKind.CASE, case_data(priority="critical"), ACTOR)
        clock.advance(hours=5)
        await sweep.run_once()
        clock.advance(hours=5)
        result = await sweep.run_once()
        assert result.newly_breached == 0
        assert len([s for s in provider.get_sent() if s["event_kind"] == "overdue"]) == 1

    @pytest.mark.asyncio
    async def test_terminal_items_excluded(self, sweep, repo, clock):
        await seed_item(repo, WorkItemKind.CASE, TERMINAL_STAGE, clock, due_at=clock() - timedelta(days=3))
        await seed_item(repo, WorkItemKind.CASE, "grn", clock, due_at=clock() - timedelta(days=3))

        result = await sweep.run_once()

        assert result.scanned == 1
        assert result.newly_breached == 1

    @pytest.mark.asyncio
    async def test_recovered_item_moves_back(self, sweep, repo, clock):
        item = await seed_item(
            repo, WorkItemKind.CASE, "grn", clock,
            aging_tier=AgingTier.BREACHED, sla_breached=True, due_at=clock() + timedelta(days=5),
        )
        result = await sweep.run_once()
        assert result.updated == 1
        stored = await repo.get(item.id)
        assert stored.aging_tier == AgingTier.ON_TIME
        assert stored.sla_breached is False

    @pytest.mark.asyncio
    async def test_overdue_notifications_can_be_disabled(self, repo, clock, notifications, provider):
        sweep = AgingSweep(repo, EngineConfig(overdue_notifications_enabled=False), notifications, clock=clock)
        await seed_item(repo, WorkItemKind.CASE, "grn", clock, due_at=clock() - timedelta(hours=1))
        result = await sweep.run_once()
        assert result.newly_breached == 1
        assert provider.get_sent() == []


class TestConflicts:

    @pytest.mark.asyncio
    async def test_changed_record_is_skipped(self, clock):
        repo = StaleReadRepository()
        sweep = AgingSweep(repo, EngineConfig(), clock=clock)
        item = await seed_item(repo, WorkItemKind.CASE, "grn", clock, version=2, due_at=clock() - timedelta(hours=1))

        result = await sweep.run_once()

        assert (result.scanned, result.updated, result.conflicts) == (1, 0, 1)
        assert (await repo.get(item.id)).aging_tier == AgingTier.ON_TIME

    @pytest.mark.asyncio
    async def test_update_aging_rejects_stale_version(self, repo, clock):
        item = await seed_item(repo, WorkItemKind.CASE, "grn", clock)
        assert await repo.update_aging(item.id, item.version + 1, AgingTier.BREACHED, True) is False
        assert await repo.update_aging("missing", 1, AgingTier.BREACHED, True) is False
        assert await repo.update_aging(item.id, item.version, AgingTier.BREACHED, True) is True


class TestWorker:

    @pytest.mark.asyncio
    async def test_start_runs_and_stop_cancels(self, sweep, repo, clock):
        await seed_item(repo, WorkItemKind.CASE, "grn", clock, due_at=clock() - timedelta(hours=1))

        sweep.start()
        assert sweep.running
        for _ in range(50):
            await asyncio.sleep(0)
            if sweep.last_result is not None:
                break
        await sweep.stop()

        assert not sweep.running
        assert sweep.last_result.newly_breached == 1

    @pytest.mark.asyncio
    async def test_worker_survives_errors(self, sweep, repo):
        repo.inject_failure("update_aging")
        sweep.start()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert sweep.running
        await sweep.stop()

    @pytest.mark.asyncio
    async def test_result_serializes(self, sweep):
        result = await sweep.run_once()
        data = result.to_dict()
        assert data["scanned"] == 0
        assert data["started_at"].startswith("2025-03-10")
