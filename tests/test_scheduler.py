"""Job registration and interval parsing."""

from datetime import timedelta

import pytest

from lp_hedger.engine import scheduler as sched


@pytest.fixture(autouse=True)
def clean_jobs():
    yield
    sched.scheduler.remove_all_jobs()


class TestTrigger:
    @pytest.mark.parametrize("interval, expected", [
        ("1m", timedelta(minutes=1)),
        ("5m", timedelta(minutes=5)),
        ("90m", timedelta(minutes=90)),
        ("1h", timedelta(hours=1)),
        ("8h", timedelta(hours=8)),
        ("1d", timedelta(days=1)),
        ("bogus", timedelta(hours=4)),
    ])
    def test_intervals(self, interval, expected):
        assert sched._get_trigger(interval).interval == expected


class TestJobs:
    def test_status_lists_jobs(self):
        async def job():
            pass

        sched.add_interval_job("hedge_sync", job, "15m", "Hedge sync")

        status = sched.get_scheduler_status()
        assert status["running"] is False
        assert status["job_count"] == 1
        (entry,) = status["jobs"]
        assert entry["id"] == "hedge_sync"
        assert "0:15:00" in entry["trigger"]

    def test_job_options(self):
        async def job():
            pass

        sched.add_interval_job("position_sync", job, "5m", "Position sync")
        job_obj = sched.scheduler.get_job("position_sync")
        assert job_obj.max_instances == 1
        assert job_obj.coalesce is True
        assert job_obj.misfire_grace_time == 60
