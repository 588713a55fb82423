"""Tests for probe scheduling."""

import httpx
import pytest
from apscheduler.triggers.cron import CronTrigger

from relay.config import ProbeConfig, RelayConfig, ScheduleConfig
from relay.scheduler import build_trigger, run_probe, setup_scheduler

ME = {"data": {"attributes": {"name": "Ada", "account-id": 1, "account-slug": "acme", "email": "a@acme.test"}}}


class TestBuildTrigger:
    @pytest.mark.parametrize(
        "schedule",
        [
            ScheduleConfig(frequency="daily", hour=6),
            ScheduleConfig(frequency="weekly", hour=7, day_of_week="mon"),
            ScheduleConfig(frequency="monthly", hour=8, day_of_month=1),
        ],
    )
    def test_frequencies(self, schedule):
        assert isinstance(build_trigger(schedule), CronTrigger)


class TestSetupScheduler:
    def test_one_job_per_probe(self, openrouter, scopestack):
        config = RelayConfig(
            probes=[
                ProbeConfig(target="scopestack_auth", schedule=ScheduleConfig(frequency="daily", hour=6)),
                ProbeConfig(target="openrouter", schedule=ScheduleConfig(frequency="daily", hour=7)),
            ]
        )
        scheduler = setup_scheduler(config, openrouter, scopestack)
        assert sorted(job.id for job in scheduler.get_jobs()) == ["probe_openrouter_1", "probe_scopestack_auth_0"]


class TestRunProbe:
    @pytest.mark.asyncio
    async def test_scopestack_probe_ok(self, openrouter, scopestack, upstream):
        upstream.queue(httpx.Response(200, json=ME))
        probe = ProbeConfig(target="scopestack_auth", schedule=ScheduleConfig(frequency="daily", hour=6))
        assert await run_probe(probe, openrouter, scopestack) is True

    @pytest.mark.asyncio
    async def test_openrouter_probe_ok(self, openrouter, scopestack, upstream):
        upstream.queue(upstream.completion("pong"))
        probe = ProbeConfig(target="openrouter", schedule=ScheduleConfig(frequency="daily", hour=6))
        assert await run_probe(probe, openrouter, scopestack) is True
        assert upstream.bodies()[0]["max_tokens"] == 5

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, openrouter, scopestack, upstream):
        upstream.queue(httpx.Response(401, text="unauthorized"))
        probe = ProbeConfig(target="scopestack_auth", schedule=ScheduleConfig(frequency="daily", hour=6))
        assert await run_probe(probe, openrouter, scopestack) is False
