"""
Tests for per contest x stock baselines and the volume EMA.
"""

import os
import sys
from datetime import timedelta

import pytest

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from stockleague.domain.quotes import StockQuote
from stockleague.services.baseline_tracker import BaselineTracker, smoothed_volume


class TestSmoothedVolume:
    def test_ema_step(self):
        assert smoothed_volume(1000, 2000, 0.2) == pytest.approx(1200.0)

    def test_never_negative(self):
        assert smoothed_volume(0, -50, 1.0) == 0.0


class TestBaselineTracker:
    """Baselines are set once and only the EMA moves afterwards"""

    def test_first_quote_sets_baseline(self, db_session, contest_factory, now):
        contest = contest_factory()
        tracker = BaselineTracker(db_session, ema_alpha=0.2)

        baseline = tracker.refresh(contest.id, StockQuote("tcs", 100.0, volume=1000), now)
        db_session.commit()

        stored = tracker.get(contest.id, "TCS")
        assert stored is not None
        assert stored.id == baseline.id
        assert stored.baseline_price == 100.0
        assert stored.smoothed_volume == 1000.0, "Current volume seeds the EMA"

    def test_baseline_is_never_rewritten(self, db_session, contest_factory, now):
        contest = contest_factory()
        tracker = BaselineTracker(db_session, ema_alpha=0.2)

        tracker.refresh(contest.id, StockQuote("TCS", 100.0, volume=1000), now)
        db_session.commit()
        baseline = tracker.refresh(contest.id, StockQuote("TCS", 104.0, volume=2000), now + timedelta(seconds=5))
        db_session.commit()

        assert baseline.baseline_price == 100.0
        assert baseline.last_price == 104.0
        assert baseline.smoothed_volume == pytest.approx(1200.0)
        assert baseline.last_updated == now + timedelta(seconds=5)
        assert tracker.percent_change(baseline, 104.0) == pytest.approx(4.0)

    def test_baselines_are_per_contest(self, db_session, contest_factory, now):
        first = contest_factory(name="Morning")
        second = contest_factory(name="Afternoon")
        tracker = BaselineTracker(db_session, ema_alpha=0.2)

        tracker.refresh(first.id, StockQuote("TCS", 100.0), now)
        tracker.refresh(second.id, StockQuote("TCS", 110.0), now)
        db_session.commit()

        assert tracker.get(first.id, "TCS").baseline_price == 100.0
        assert tracker.get(second.id, "TCS").baseline_price == 110.0
