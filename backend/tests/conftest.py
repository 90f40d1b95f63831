"""
Shared pytest fixtures for the Stock League test suite.

Every test gets its own temp-file SQLite database built from the model
metadata, with SAVEPOINT support switched on the same way the app does it.
"""

import os
import sys
import tempfile
from datetime import datetime, timedelta

import pytest

# Keep imports from touching the developer's database, log files or scheduler
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'stockleague_test_app.db')}")
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from sqlalchemy.orm import sessionmaker

from stockleague.db.models import (
    Base,
    Contest,
    DailyStockBaseline,
    LeaderboardEntry,
    PrizeTier,
    Stock,
    Team,
    TeamPick,
)
from stockleague.db.session import build_engine

# Fixed clock for the suite (naive UTC, like the database columns)
NOW = datetime(2025, 1, 6, 5, 0, 0)


@pytest.fixture(scope="function")
def db_engine():
    """Temp-file SQLite engine with all tables created."""
    temp_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    temp_file.close()
    db_path = temp_file.name

    engine = build_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)

    yield engine

    Base.metadata.drop_all(engine)
    engine.dispose()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """Session factory configured like the application's SessionLocal."""
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Fresh session per test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def contest_factory(db_session):
    """Create a contest; live around NOW by default, with an optional prize breakup."""

    def _create(
        name="Morning Sprint",
        start=NOW - timedelta(hours=1),
        end=NOW + timedelta(hours=5),
        tiers=(),
        is_cancelled=False,
        total_spots=100,
    ):
        contest = Contest(
            name=name,
            entry_close_time=start,
            start_time=start,
            end_time=end,
            entry_fee=50,
            prize_pool=0,
            total_spots=total_spots,
            is_cancelled=is_cancelled,
        )
        for rank_from, rank_to, prize in tiers:
            contest.prize_tiers.append(PrizeTier(rank_from=rank_from, rank_to=rank_to, prize_each=prize))
        contest.prize_pool = sum((t.rank_to - t.rank_from + 1) * t.prize_each for t in contest.prize_tiers)
        db_session.add(contest)
        db_session.commit()
        return contest

    return _create


@pytest.fixture
def team_factory(db_session):
    """Create a team with picks [(symbol, action), ...] and, by default, its leaderboard entry."""

    def _create(contest, user_id, picks, captain=None, vice_captain=None, with_entry=True, points=0.0, updated_at=NOW):
        team = Team(
            user_id=user_id,
            contest_id=contest.id,
            captain_symbol=captain,
            vice_captain_symbol=vice_captain,
            total_points=points,
        )
        for position, (symbol, action) in enumerate(picks):
            team.picks.append(TeamPick(position=position, symbol=symbol, action=action))
        db_session.add(team)
        db_session.flush()

        if with_entry:
            db_session.add(
                LeaderboardEntry(
                    contest_id=contest.id,
                    team_id=team.id,
                    user_id=user_id,
                    points=points,
                    points_updated_at=updated_at,
                )
            )
        db_session.commit()
        return team

    return _create


@pytest.fixture
def stock_factory(db_session):
    """Create a row in the quote table."""

    def _create(symbol, price, volume=1000, previous_close=None, day_high=None, day_low=None,
                is_active=True, last_updated=NOW):
        stock = Stock(
            symbol=symbol,
            name=f"{symbol} Ltd",
            exchange="NSE",
            is_active=is_active,
            price=price,
            volume=volume,
            previous_close=previous_close,
            day_high=day_high,
            day_low=day_low,
            last_updated=last_updated,
        )
        db_session.add(stock)
        db_session.commit()
        return stock

    return _create


@pytest.fixture
def daily_baseline_factory(db_session):
    """Create a daily screener row as the morning reset would leave it."""

    def _create(symbol, base_price, base_volume=1000):
        row = DailyStockBaseline(
            symbol=symbol,
            base_price=base_price,
            base_volume=base_volume,
            previous_percent=0.0,
            percent_change=0.0,
            buy_points=0.0,
            sell_points=0.0,
            reset_at=NOW,
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _create
