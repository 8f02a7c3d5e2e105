"""Tests for the nightly clustering scheduler."""

import json
from datetime import datetime
from types import SimpleNamespace

import pytest

from scheduler import ClusteringScheduler, ScheduleConfig


def quiet(message):
    pass


@pytest.fixture
def state_file(tmp_path):
    return tmp_path / "scheduler_state.json"


@pytest.fixture
def scheduler(state_file):
    return ClusteringScheduler(state_file, ScheduleConfig(), on_status=quiet)


async def two_clusters(owner_id):
    return SimpleNamespace(clusters=["a", "b"])


class TestScanAndBatch:

    @pytest.mark.asyncio
    async def test_scan_records_waiting_owners(self, scheduler, state_file):
        scheduler.set_callbacks(lambda: ["alice", "bob"], two_clusters)
        assert await scheduler.scan() == ["alice", "bob"]
        saved = json.loads(state_file.read_text())
        assert saved["state"]["owners_waiting"] == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_scan_survives_callback_error(self, scheduler):
        def broken():
            raise RuntimeError("store offline")

        scheduler.set_callbacks(broken, two_clusters)
        assert await scheduler.scan() == []

    @pytest.mark.asyncio
    async def test_batch_clusters_each_owner(self, scheduler):
        scheduler.set_callbacks(lambda: ["alice", "bob"], two_clusters)
        await scheduler.scan()
        result = await scheduler.run_batch()
        assert result == {"status": "completed", "clustered": {"alice": 2, "bob": 2}, "failed": {}}
        assert scheduler.state.owners_waiting == []
        assert scheduler.state.in_progress is False
        assert scheduler.ran_today()

    @pytest.mark.asyncio
    async def test_failing_owner_does_not_stop_batch(self, scheduler):
        async def cluster(owner_id):
            if owner_id == "bob":
                raise RuntimeError("disk full")
            return SimpleNamespace(clusters=["a"])

        scheduler.set_callbacks(lambda: ["alice", "bob", "carol"], cluster)
        result = await scheduler.trigger_now()
        assert result["status"] == "partial"
        assert result["clustered"] == {"alice": 1, "carol": 1}
        assert result["failed"] == {"bob": "disk full"}
        assert scheduler.state.owners_waiting == ["bob"]

    @pytest.mark.asyncio
    async def test_already_running(self, scheduler):
        scheduler.state.in_progress = True
        assert await scheduler.run_batch() == {"status": "already_running"}


class TestPersistence:

    def test_state_reloaded_and_in_progress_cleared(self, state_file):
        state_file.write_text(json.dumps({
            "state": {"last_batch_day": "2024-05-15", "owners_waiting": ["alice"], "in_progress": True},
            "config": {"run_at_hour": 5, "run_at_minute": 15, "unknown": 1},
        }))
        scheduler = ClusteringScheduler(state_file, on_status=quiet)
        assert scheduler.state.owners_waiting == ["alice"]
        assert scheduler.state.in_progress is False
        assert scheduler.config.run_at_hour == 5
        assert scheduler.ran_today(datetime(2024, 5, 15, 9, 0))
        assert not scheduler.ran_today(datetime(2024, 5, 16, 9, 0))

    def test_explicit_config_wins_over_saved(self, state_file):
        state_file.write_text(json.dumps({"state": {}, "config": {"run_at_hour": 5}}))
        scheduler = ClusteringScheduler(state_file, ScheduleConfig(run_at_hour=2), on_status=quiet)
        assert scheduler.config.run_at_hour == 2

    def test_unreadable_state_file(self, state_file):
        state_file.write_text("{not json")
        scheduler = ClusteringScheduler(state_file, on_status=quiet)
        assert scheduler.state.owners_waiting == []

    def test_reschedule_persists(self, scheduler, state_file):
        scheduler.reschedule(4, 30)
        assert scheduler.get_status()["run_at"] == "04:30"
        reloaded = ClusteringScheduler(state_file, on_status=quiet)
        assert (reloaded.config.run_at_hour, reloaded.config.run_at_minute) == (4, 30)


class TestWindow:

    @pytest.mark.parametrize("hour,minute,expected", [
        (3, 0, True),
        (3, 5, True),
        (2, 55, True),
        (3, 6, False),
        (15, 0, False),
    ])
    def test_in_run_window(self, scheduler, hour, minute, expected):
        assert scheduler.in_run_window(datetime(2024, 5, 15, hour, minute)) is expected

    def test_window_wraps_midnight(self, state_file):
        scheduler = ClusteringScheduler(state_file, ScheduleConfig(run_at_hour=23, run_at_minute=58), on_status=quiet)
        assert scheduler.in_run_window(datetime(2024, 5, 16, 0, 2))
        assert not scheduler.in_run_window(datetime(2024, 5, 16, 0, 4))

    def test_next_run(self, scheduler):
        assert scheduler.next_run(datetime(2024, 5, 15, 1, 0)) == datetime(2024, 5, 15, 3, 0)
        assert scheduler.next_run(datetime(2024, 5, 15, 3, 0)) == datetime(2024, 5, 16, 3, 0)

    @pytest.mark.asyncio
    async def test_tick_runs_batch_once_per_day(self, scheduler):
        calls = []

        async def cluster(owner_id):
            calls.append(owner_id)
            return SimpleNamespace(clusters=[])

        scheduler.set_callbacks(lambda: ["alice"], cluster)
        now = datetime.now().replace(hour=3, minute=1)
        await scheduler._tick(now)
        await scheduler._tick(now)
        assert calls == ["alice"]

    def test_status_shape(self, scheduler):
        status = scheduler.get_status()
        assert status["enabled"] is True
        assert status["in_progress"] is False
        assert status["last_batch"] is None
        assert status["scan_interval_minutes"] == 60
        assert datetime.fromisoformat(status["next_run"]) > datetime.now()
