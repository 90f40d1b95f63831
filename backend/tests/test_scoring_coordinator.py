"""
Tests for contest scoring cycles.

Covers baseline creation, captain/vice-captain multipliers, idempotent
replays, inactive contests, per-unit failure isolation and the settlement
cooldown.
"""

import os
import sys
from datetime import timedelta

import pytest

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from stockleague.db.models import ContestStockBaseline, LeaderboardEntry, Team, TeamStockMilestone
from stockleague.db.repositories import TeamRepository
from stockleague.domain.quotes import StockQuote
from stockleague.services.scoring_coordinator import (
    CAPTAIN_MULTIPLIER,
    VICE_CAPTAIN_MULTIPLIER,
    ScoringCoordinator,
    pick_multiplier,
)


def _points(db_session, team_id):
    db_session.expire_all()
    return db_session.query(Team).filter(Team.id == team_id).one().total_points


def _entry(db_session, team_id):
    db_session.expire_all()
    return db_session.query(LeaderboardEntry).filter(LeaderboardEntry.team_id == team_id).one_or_none()


@pytest.fixture
def coordinator():
    return ScoringCoordinator(settlement_cooldown_seconds=60, ema_alpha=0.2)


@pytest.fixture
def league(contest_factory, team_factory):
    """One live contest, team A long TCS (captain) / short INFY (vice), team B the mirror."""
    contest = contest_factory()
    team_a = team_factory(contest, 1, [("TCS", "BUY"), ("INFY", "SELL")], captain="TCS", vice_captain="INFY")
    team_b = team_factory(contest, 2, [("TCS", "SELL"), ("INFY", "BUY")])
    return contest, team_a, team_b


class TestPickMultiplier:
    def test_multipliers(self, league):
        _contest, team_a, team_b = league
        assert pick_multiplier(team_a, "TCS") == CAPTAIN_MULTIPLIER
        assert pick_multiplier(team_a, "INFY") == VICE_CAPTAIN_MULTIPLIER
        assert pick_multiplier(team_b, "TCS") == 1.0


class TestScoringCycle:
    """Scoring a batch against live contests"""

    def test_first_quotes_create_baselines_and_score_nothing(self, db_session, coordinator, league, now):
        contest, team_a, team_b = league

        result = coordinator.process_stock_updates(
            db_session, [StockQuote("TCS", 100.0), StockQuote("INFY", 200.0)], now, settle=False
        )

        assert result.baselines_created == 2
        assert result.picks_scored == 4
        assert result.teams_updated == 0
        assert result.contests_ranked == [contest.id]
        assert db_session.query(ContestStockBaseline).count() == 2
        assert db_session.query(TeamStockMilestone).count() == 4
        assert _points(db_session, team_a.id) == 0
        assert _points(db_session, team_b.id) == 0

    def test_deltas_with_multipliers(self, db_session, coordinator, league, now):
        contest, team_a, team_b = league
        coordinator.process_stock_updates(
            db_session, [StockQuote("TCS", 100.0), StockQuote("INFY", 200.0)], now, settle=False
        )

        result = coordinator.process_stock_updates(
            db_session, [StockQuote("TCS", 102.0)], now + timedelta(seconds=5), settle=False
        )

        assert result.teams_updated == 2
        assert _points(db_session, team_a.id) == 60, "(20 + 10) x2 captain"
        assert _points(db_session, team_b.id) == -10
        assert _entry(db_session, team_a.id).points == 60
        assert _entry(db_session, team_a.id).rank == 1
        assert _entry(db_session, team_b.id).rank == 2

        milestone = (
            db_session.query(TeamStockMilestone)
            .filter(TeamStockMilestone.team_id == team_a.id, TeamStockMilestone.symbol == "TCS")
            .one()
        )
        assert milestone.last_computed_points == 30, "Stored total is unmultiplied"
        assert milestone.m2

    def test_replay_is_harmless(self, db_session, coordinator, league, now):
        _contest, team_a, team_b = league
        coordinator.process_stock_updates(
            db_session, [StockQuote("TCS", 100.0), StockQuote("INFY", 200.0)], now, settle=False
        )
        coordinator.process_stock_updates(db_session, [StockQuote("TCS", 102.0)], now, settle=False)

        result = coordinator.process_stock_updates(db_session, [StockQuote("TCS", 102.0)], now, settle=False)

        assert result.teams_updated == 0
        assert _points(db_session, team_a.id) == 60
        assert _points(db_session, team_b.id) == -10

    def test_vice_captain_sell(self, db_session, coordinator, league, now):
        _contest, team_a, team_b = league
        coordinator.process_stock_updates(
            db_session, [StockQuote("TCS", 100.0), StockQuote("INFY", 200.0)], now, settle=False
        )
        coordinator.process_stock_updates(db_session, [StockQuote("TCS", 102.0)], now, settle=False)

        coordinator.process_stock_updates(db_session, [StockQuote("INFY", 188.0)], now, settle=False)

        # INFY -6%: SELL 60 + 10 + 25 = 95 x1.5; BUY -30
        assert _points(db_session, team_a.id) == pytest.approx(60 + 142.5)
        assert _points(db_session, team_b.id) == pytest.approx(-10 - 30)

    def test_day_high_from_quote(self, db_session, coordinator, league, now):
        _contest, team_a, team_b = league
        coordinator.process_stock_updates(db_session, [StockQuote("TCS", 100.0)], now, settle=False)

        coordinator.process_stock_updates(
            db_session, [StockQuote("TCS", 101.0, day_high=101.0, day_low=98.0)], now, settle=False
        )

        assert _points(db_session, team_a.id) == 60, "(10 + 20 day high) x2"
        assert _points(db_session, team_b.id) == -15

    def test_inactive_and_cancelled_contests_are_ignored(
        self, db_session, coordinator, contest_factory, team_factory, now
    ):
        upcoming = contest_factory(name="Later", start=now + timedelta(hours=1), end=now + timedelta(hours=6))
        cancelled = contest_factory(name="Cancelled", is_cancelled=True)
        team_factory(upcoming, 1, [("TCS", "BUY")])
        team_factory(cancelled, 2, [("TCS", "BUY")])

        result = coordinator.process_stock_updates(db_session, [StockQuote("TCS", 100.0)], now, settle=False)

        assert result.active_contests == 0
        assert result.picks_scored == 0
        assert db_session.query(ContestStockBaseline).count() == 0

    def test_missing_leaderboard_entry_is_created(self, db_session, coordinator, contest_factory, team_factory, now):
        contest = contest_factory()
        team = team_factory(contest, 7, [("TCS", "BUY")], with_entry=False)
        coordinator.process_stock_updates(db_session, [StockQuote("TCS", 100.0)], now, settle=False)

        coordinator.process_stock_updates(db_session, [StockQuote("TCS", 101.0)], now, settle=False)

        entry = _entry(db_session, team.id)
        assert entry is not None
        assert entry.user_id == 7
        assert entry.points == 10
        assert entry.rank == 1


class TestReversals:
    """Deltas over a sequence with reversals sum to the final computed total"""

    PRICES = [100.0, 106.0, 101.0, 106.0, 97.0, 97.0]

    def _record(self, db_session, team_id):
        db_session.expire_all()
        return db_session.query(TeamStockMilestone).filter(TeamStockMilestone.team_id == team_id).one()

    def test_deltas_sum_to_final_total(self, db_session, coordinator, contest_factory, team_factory, now):
        contest = contest_factory()
        long_team = team_factory(contest, 1, [("TCS", "BUY")])
        short_team = team_factory(contest, 2, [("TCS", "SELL")])

        applied = {long_team.id: [], short_team.id: []}
        for step, price in enumerate(self.PRICES):
            before = {team_id: _points(db_session, team_id) for team_id in applied}
            coordinator.process_stock_updates(
                db_session, [StockQuote("TCS", price)], now + timedelta(seconds=step), settle=False
            )
            for team_id in applied:
                applied[team_id].append(_points(db_session, team_id) - before[team_id])

        # 6% -> 95, 1% -> 45, back to 6% without re-paying 2%/5%, then -3% -> 20
        assert applied[long_team.id] == [0, 95, -50, 50, -75, 0]
        # the sell side only crosses -2% once, on the last move
        assert applied[short_team.id] == [0, -30, 25, -25, 70, 0]

        for team_id, expected_total in ((long_team.id, 20), (short_team.id, 40)):
            record = self._record(db_session, team_id)
            assert record.last_computed_points == expected_total
            assert sum(applied[team_id]) == pytest.approx(record.last_computed_points)
            assert _entry(db_session, team_id).points == expected_total

        long_record = self._record(db_session, long_team.id)
        assert long_record.m2 and long_record.m5 and not long_record.m10
        short_record = self._record(db_session, short_team.id)
        assert short_record.m2 and not short_record.m5


class TestFailureIsolation:
    """A failing (team, stock) unit is rolled back alone and healed next cycle"""

    def test_partial_failure_self_heals(self, db_session, coordinator, league, now, monkeypatch):
        _contest, team_a, team_b = league
        coordinator.process_stock_updates(
            db_session, [StockQuote("TCS", 100.0), StockQuote("INFY", 200.0)], now, settle=False
        )

        original = TeamRepository.increment_points

        def flaky(self, team_id, delta, when):
            if team_id == team_a.id:
                raise RuntimeError("lock timeout")
            return original(self, team_id, delta, when)

        monkeypatch.setattr(TeamRepository, "increment_points", flaky)
        result = coordinator.process_stock_updates(db_session, [StockQuote("TCS", 102.0)], now, settle=False)

        assert result.unit_failures == 1
        assert result.failed_symbols == {"TCS"}
        assert _points(db_session, team_a.id) == 0, "Failed unit left no trace"
        assert _entry(db_session, team_a.id).points == 0
        assert _points(db_session, team_b.id) == -10

        monkeypatch.undo()
        coordinator.process_stock_updates(db_session, [StockQuote("TCS", 102.0)], now, settle=False)

        assert _points(db_session, team_a.id) == 60
        assert _points(db_session, team_b.id) == -10, "Healthy unit is not scored twice"


class TestSettlementCooldown:
    def test_cooldown(self, db_session, coordinator, now):
        first = coordinator.process_stock_updates(db_session, [], now)
        assert first.settlement is not None
        assert coordinator.last_settlement_check == now

        second = coordinator.process_stock_updates(db_session, [], now + timedelta(seconds=30))
        assert second.settlement is None

        third = coordinator.process_stock_updates(db_session, [], now + timedelta(seconds=61))
        assert third.settlement is not None
        assert coordinator.last_settlement_check == now + timedelta(seconds=61)

    def test_settle_flag_skips_settlement(self, db_session, coordinator, now):
        result = coordinator.process_stock_updates(db_session, [], now, settle=False)
        assert result.settlement is None
        assert coordinator.last_settlement_check is None
