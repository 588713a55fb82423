"""Scheduler — runs upstream probes on cron schedules using APScheduler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from relay.errors import as_relay_error, log_error

if TYPE_CHECKING:
    from relay.clients.openrouter import OpenRouterClient
    from relay.clients.scopestack import ScopeStackClient
    from relay.config import ProbeConfig, RelayConfig, ScheduleConfig

logger = logging.getLogger(__name__)

PROBE_PROMPT = "Reply with the single word: pong"


def build_trigger(schedule: ScheduleConfig) -> CronTrigger:
    """Convert a ScheduleConfig into an APScheduler CronTrigger."""
    match schedule.frequency:
        case "daily":
            return CronTrigger(hour=schedule.hour)
        case "weekly":
            return CronTrigger(day_of_week=schedule.day_of_week, hour=schedule.hour)
        case "monthly":
            return CronTrigger(day=schedule.day_of_month, hour=schedule.hour)
        case _:
            raise ValueError(f"Unknown schedule frequency: {schedule.frequency}")


async def run_probe(
    probe: ProbeConfig,
    openrouter: OpenRouterClient,
    scopestack: ScopeStackClient,
) -> bool:
    """Check one upstream. Logs the outcome; never raises."""
    logger.info(f"Running probe '{probe.target}'")
    try:
        match probe.target:
            case "scopestack_auth":
                account = await scopestack.get_current_user()
                logger.info(f"Probe 'scopestack_auth' ok: account={account.account_slug}")
            case "openrouter":
                await openrouter.complete(PROBE_PROMPT, max_tokens=5, temperature=0.0, name="OpenRouter probe")
                logger.info("Probe 'openrouter' ok")
            case _:
                raise ValueError(f"Unknown probe target: {probe.target}")
    except Exception as e:
        log_error(as_relay_error(e), probe=probe.target)
        return False
    return True


def setup_scheduler(
    config: RelayConfig,
    openrouter: OpenRouterClient,
    scopestack: ScopeStackClient,
) -> AsyncIOScheduler:
    """Build and configure the scheduler from the relay config."""
    scheduler = AsyncIOScheduler()

    for i, probe in enumerate(config.probes):
        scheduler.add_job(
            run_probe,
            trigger=build_trigger(probe.schedule),
            args=[probe, openrouter, scopestack],
            id=f"probe_{probe.target}_{i}",
            replace_existing=True,
        )
        logger.info(
            f"Scheduled probe: target={probe.target}, "
            f"frequency={probe.schedule.frequency}, hour={probe.schedule.hour}"
        )

    return scheduler
