"""Background scheduler for the live scoring loop and the daily screener reset"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import pytz

from api.utils.metrics import increment_metric
from api.websocket.hub import get_hub
from stockleague.config import settings
from stockleague.feature_flags import feature_flags
from stockleague.services.live_cycle import CycleSummary, LiveCycleRunner
from stockleague.services.quote_feed import StockTableFeed
from stockleague.utils.datetime import format_market_clock, utcnow

logger = logging.getLogger(__name__)
scheduler = AsyncIOScheduler()

# One worker: cycles never overlap, and the reset never runs beside a cycle
LIVE_CYCLE_POOL = ThreadPoolExecutor(max_workers=1, thread_name_prefix="live-cycle-")

_runner: Optional[LiveCycleRunner] = None


def get_runner() -> LiveCycleRunner:
    """Get the process-wide live cycle runner."""
    global _runner
    if _runner is None:
        _runner = LiveCycleRunner(feed=StockTableFeed())
    return _runner


def record_cycle_metrics(summary: Optional[CycleSummary], runner: LiveCycleRunner, failed_before: int, skipped_before: int):
    """Fold one cycle's outcome into the Prometheus counters."""
    if runner.cycles_failed > failed_before:
        increment_metric("scoring_cycle_errors_total", runner.cycles_failed - failed_before)
    if runner.cycles_skipped > skipped_before:
        increment_metric("scoring_cycles_skipped_total", runner.cycles_skipped - skipped_before)
    if summary is None:
        return

    scoring = summary.scoring
    increment_metric("scoring_cycles_total")
    increment_metric("scoring_unit_failures_total", scoring.unit_failures)
    increment_metric("teams_updated_total", scoring.teams_updated)
    increment_metric("screener_stocks_scored_total", len(summary.payloads))
    if scoring.settlement:
        increment_metric("contests_settled_total", len(scoring.settlement.settled))
        increment_metric("settlement_errors_total", len(scoring.settlement.failed))


async def run_live_cycle():
    """
    Run one scoring cycle off the event loop, then push the screener
    payloads to websocket subscribers.
    """
    runner = get_runner()
    failed_before, skipped_before = runner.cycles_failed, runner.cycles_skipped

    loop = asyncio.get_running_loop()
    try:
        summary = await loop.run_in_executor(LIVE_CYCLE_POOL, runner.run_cycle)
    except Exception as e:
        # run_cycle contains its own errors; this only guards executor failures
        logger.error(f"Live cycle could not be dispatched: {e}")
        increment_metric("scoring_cycle_errors_total")
        return

    record_cycle_metrics(summary, runner, failed_before, skipped_before)

    if summary and summary.payloads and feature_flags.ENABLE_LIVE_WS:
        try:
            await get_hub().broadcast_stock_updates(summary.payloads)
        except Exception as e:
            logger.error(f"Broadcast of {len(summary.payloads)} stock updates failed: {e}")


async def run_daily_reset():
    """Reset the daily screener baselines at the configured market time."""
    runner = get_runner()
    loop = asyncio.get_running_loop()
    count = await loop.run_in_executor(LIVE_CYCLE_POOL, runner.reset_daily)
    increment_metric("daily_resets_total")
    logger.info(
        f"Daily screener reset at {format_market_clock(utcnow(), settings.market_timezone)} "
        f"{settings.market_timezone}: {count} stocks"
    )


def start_scheduler():
    """Register jobs and start the scheduler"""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled by configuration")
        return

    scheduler.add_job(
        run_live_cycle,
        trigger=IntervalTrigger(seconds=settings.live_cycle_interval_seconds),
        id="live_scoring_cycle",
        name="Live scoring cycle",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        run_daily_reset,
        trigger=CronTrigger(
            hour=settings.daily_reset_hour,
            minute=settings.daily_reset_minute,
            timezone=pytz.timezone(settings.market_timezone),
        ),
        id="daily_screener_reset",
        name="Daily screener reset",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        f"Scheduler started: live cycle every {settings.live_cycle_interval_seconds}s, "
        f"daily reset at {settings.daily_reset_hour:02d}:{settings.daily_reset_minute:02d} "
        f"{settings.market_timezone}"
    )


def stop_scheduler():
    """Stop the scheduler, letting an in-progress cycle finish"""
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")

    try:
        LIVE_CYCLE_POOL.shutdown(wait=True)
    except RuntimeError as e:
        logger.debug(f"LIVE_CYCLE_POOL shutdown skipped: {e}")
