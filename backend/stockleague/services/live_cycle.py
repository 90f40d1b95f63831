"""
Live cycle runner: fetch the changed quotes, score contests, score the
daily screener and hand the broadcast payloads back to the caller.

Single-flight: if a cycle is still running when the next one is triggered
the new one is skipped. No exception escapes a cycle. A failed cycle rewinds
the feed so its quotes are delivered again, and symbols with a failed
scoring unit are requeued for the next cycle.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from stockleague.db.session import CircuitBreaker, close_db_session, get_db
from stockleague.feature_flags import feature_flags
from stockleague.log_config import get_logger
from stockleague.services.daily_screener import DailyScreenerScorer
from stockleague.services.quote_feed import QuoteFeed
from stockleague.services.scoring_coordinator import CycleResult, ScoringCoordinator
from stockleague.utils.datetime import utcnow

events = get_logger("stockleague.live_cycle")


@dataclass
class CycleSummary:
    """What a completed cycle produced."""

    started_at: datetime
    duration_ms: float
    scoring: CycleResult
    payloads: List[Dict[str, Any]] = field(default_factory=list)


class LiveCycleRunner:
    def __init__(
        self,
        feed: QuoteFeed,
        coordinator: Optional[ScoringCoordinator] = None,
        screener: Optional[DailyScreenerScorer] = None,
        session_factory: Callable[[], Session] = get_db,
        close_session: Callable[[Session], None] = close_db_session,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.feed = feed
        self.coordinator = coordinator or ScoringCoordinator()
        self.screener = screener or DailyScreenerScorer()
        self.session_factory = session_factory
        self.close_session = close_session
        self.circuit_breaker = circuit_breaker or CircuitBreaker("live_cycle")

        self._lock = threading.Lock()
        self.cycles_run = 0
        self.cycles_failed = 0
        self.cycles_skipped = 0
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def run_cycle(self, now: Optional[datetime] = None) -> Optional[CycleSummary]:
        """Run one cycle. Returns None when skipped or failed."""
        if not self._lock.acquire(blocking=False):
            self.cycles_skipped += 1
            logger.warning("Live cycle still running, skipping this tick")
            return None

        try:
            if not self.circuit_breaker.can_execute():
                self.cycles_skipped += 1
                logger.warning(f"Live cycle skipped, circuit breaker {self.circuit_breaker.state}")
                return None
            return self._run(now)
        finally:
            self._lock.release()

    def _run(self, now: Optional[datetime]) -> Optional[CycleSummary]:
        started = time.monotonic()
        now = now or utcnow()
        db = self.session_factory()
        feed_state = self.feed.snapshot()

        try:
            quotes = self.feed.fetch_changed(db)
            scoring = self.coordinator.process_stock_updates(
                db,
                quotes,
                now,
                settle=feature_flags.ENABLE_AUTO_SETTLEMENT,
            )
            payloads: List[Dict[str, Any]] = []
            if feature_flags.ENABLE_DAILY_SCREENER:
                payloads = self.screener.score_batch(db, quotes, now)
        except Exception as e:
            db.rollback()
            self.feed.restore(feed_state)
            self.cycles_failed += 1
            self.last_error = str(e)
            self.circuit_breaker.record_failure()
            logger.exception(f"Live cycle failed: {e}")
            return None
        finally:
            self.close_session(db)

        if scoring.failed_symbols:
            self.feed.requeue(scoring.failed_symbols)
        self.cycles_run += 1
        self.circuit_breaker.record_success()
        duration_ms = round((time.monotonic() - started) * 1000, 1)

        events.info(
            "scoring_cycle_complete",
            duration_ms=duration_ms,
            screener_updates=len(payloads),
            **scoring.to_dict(),
        )
        return CycleSummary(started_at=now, duration_ms=duration_ms, scoring=scoring, payloads=payloads)

    def reset_daily(self, now: Optional[datetime] = None) -> int:
        """Daily screener reset in its own session. Errors are logged, not raised."""
        db = self.session_factory()
        try:
            return self.screener.reset_daily_scores(db, now)
        except Exception as e:
            db.rollback()
            logger.exception(f"Daily screener reset failed: {e}")
            return 0
        finally:
            self.close_session(db)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "cycles_run": self.cycles_run,
            "cycles_failed": self.cycles_failed,
            "cycles_skipped": self.cycles_skipped,
            "last_error": self.last_error,
            "last_settlement_check": (
                self.coordinator.last_settlement_check.isoformat()
                if self.coordinator.last_settlement_check
                else None
            ),
            "circuit_breaker": self.circuit_breaker.get_stats(),
        }
