"""
SQLAlchemy 2.0 database models for Stock League.

Contest, team and wallet tables are owned by the surrounding platform (admin
and join flows); the scoring engine reads them and writes only point totals,
ranks, winnings, the settlement latch and prize ledger lines. Baselines,
milestone records and daily screener state are owned by the engine.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from stockleague.utils.datetime import utcnow

Base = declarative_base()


ACTION_BUY = "BUY"
ACTION_SELL = "SELL"


class Contest(Base):
    """Contest window, capacity, prize breakup and settlement latch."""

    __tablename__ = "contests"
    __table_args__ = (
        CheckConstraint("start_time <= end_time", name="ck_contest_window"),
        Index("ix_contests_settlement_due", "is_prize_distributed", "end_time"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    market_type = Column(String, nullable=True)  # NSE, BSE
    entry_close_time = Column(DateTime, nullable=False)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False, index=True)
    entry_fee = Column(Float, nullable=False, default=0)
    prize_pool = Column(Float, nullable=False, default=0)
    total_spots = Column(Integer, nullable=False)
    filled_spots = Column(Integer, nullable=False, default=0)
    is_cancelled = Column(Boolean, nullable=False, default=False)
    # Terminal latch: once true, settlement never runs again for this contest
    is_prize_distributed = Column(Boolean, nullable=False, default=False)
    prize_distributed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    prize_tiers = relationship(
        "PrizeTier",
        back_populates="contest",
        order_by="PrizeTier.rank_from",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Contest(id={self.id}, name={self.name}, distributed={self.is_prize_distributed})>"


class PrizeTier(Base):
    """One prize breakup row: every rank in [rank_from, rank_to] wins prize_each."""

    __tablename__ = "prize_tiers"
    __table_args__ = (
        CheckConstraint("rank_from >= 1 AND rank_from <= rank_to", name="ck_prize_tier_range"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    contest_id = Column(Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False, index=True)
    rank_from = Column(Integer, nullable=False)
    rank_to = Column(Integer, nullable=False)
    prize_each = Column(Float, nullable=False)

    contest = relationship("Contest", back_populates="prize_tiers")

    def __repr__(self) -> str:
        return f"<PrizeTier(contest_id={self.contest_id}, ranks={self.rank_from}-{self.rank_to}, prize={self.prize_each})>"


class Team(Base):
    """A user's team in a contest with a running point total."""

    __tablename__ = "teams"
    __table_args__ = (
        Index("ix_teams_contest_user", "contest_id", "user_id"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    contest_id = Column(Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False, index=True)
    captain_symbol = Column(String, nullable=True)
    vice_captain_symbol = Column(String, nullable=True)
    # Mutated only through SQL-side increments by the scoring coordinator
    total_points = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    picks = relationship(
        "TeamPick",
        back_populates="team",
        order_by="TeamPick.position",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Team(id={self.id}, contest_id={self.contest_id}, user_id={self.user_id}, points={self.total_points})>"


class TeamPick(Base):
    """One stock in a team, called BUY or SELL."""

    __tablename__ = "team_picks"
    __table_args__ = (
        UniqueConstraint("team_id", "symbol", name="uix_team_pick_symbol"),
        CheckConstraint(f"action IN ('{ACTION_BUY}', '{ACTION_SELL}')", name="ck_team_pick_action"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    symbol = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)

    team = relationship("Team", back_populates="picks")

    def __repr__(self) -> str:
        return f"<TeamPick(team_id={self.team_id}, symbol={self.symbol}, action={self.action})>"


class ContestStockBaseline(Base):
    """Per contest x stock price baseline (set once) and smoothed volume."""

    __tablename__ = "contest_stock_baselines"
    __table_args__ = (
        UniqueConstraint("contest_id", "symbol", name="uix_contest_stock_baseline"),
        CheckConstraint("baseline_price > 0", name="ck_baseline_price_positive"),
        CheckConstraint("smoothed_volume >= 0", name="ck_smoothed_volume_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    contest_id = Column(Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False, index=True)
    symbol = Column(String, nullable=False, index=True)
    baseline_price = Column(Float, nullable=False)
    smoothed_volume = Column(Float, nullable=False, default=0)
    last_price = Column(Float, nullable=False, default=0)
    last_volume = Column(Float, nullable=False, default=0)
    last_updated = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<ContestStockBaseline(contest_id={self.contest_id}, symbol={self.symbol}, baseline={self.baseline_price})>"


class TeamStockMilestone(Base):
    """Idempotency record for one team x stock: last percent, last absolute total, latches."""

    __tablename__ = "team_stock_milestones"
    __table_args__ = (
        UniqueConstraint("contest_id", "team_id", "symbol", name="uix_team_stock_milestone"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    contest_id = Column(Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    symbol = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    last_percent_change = Column(Float, nullable=False, default=0)
    # Unmultiplied absolute total last used to derive a delta
    last_computed_points = Column(Float, nullable=False, default=0)

    # One-way latches
    m2 = Column(Boolean, nullable=False, default=False)
    m5 = Column(Boolean, nullable=False, default=False)
    m10 = Column(Boolean, nullable=False, default=False)
    m15 = Column(Boolean, nullable=False, default=False)
    day_high = Column(Boolean, nullable=False, default=False)
    day_low = Column(Boolean, nullable=False, default=False)
    volume_2x = Column(Boolean, nullable=False, default=False)
    volume_3x = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<TeamStockMilestone(team_id={self.team_id}, symbol={self.symbol}, last={self.last_computed_points})>"


class LeaderboardEntry(Base):
    """Contest standing for one team."""

    __tablename__ = "leaderboard_entries"
    __table_args__ = (
        UniqueConstraint("contest_id", "team_id", name="uix_leaderboard_contest_team"),
        Index("ix_leaderboard_contest_rank", "contest_id", "rank"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    contest_id = Column(Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False, index=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    points = Column(Float, nullable=False, default=0)
    rank = Column(Integer, nullable=True)
    winning_amount = Column(Float, nullable=False, default=0)
    # Tie-break key: last time points moved (rank rewrites leave it alone)
    points_updated_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<LeaderboardEntry(contest_id={self.contest_id}, team_id={self.team_id}, points={self.points}, rank={self.rank})>"


class Stock(Base):
    """Latest quote per symbol, kept current by the market-data layer."""

    __tablename__ = "stocks"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    symbol = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    exchange = Column(String, nullable=True)  # NSE, BSE
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    price = Column(Float, nullable=False, default=0)
    volume = Column(Float, nullable=False, default=0)
    previous_close = Column(Float, nullable=True)
    day_high = Column(Float, nullable=True)
    day_low = Column(Float, nullable=True)
    last_trade_time = Column(DateTime, nullable=True)
    last_updated = Column(DateTime, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<Stock(symbol={self.symbol}, price={self.price})>"


class DailyStockBaseline(Base):
    """Contest-independent daily screener state for one symbol, reset every morning."""

    __tablename__ = "daily_stock_baselines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, unique=True, index=True, nullable=False)
    base_price = Column(Float, nullable=True)
    base_volume = Column(Float, nullable=False, default=0)  # EMA for spike detection
    previous_percent = Column(Float, nullable=False, default=0)
    percent_change = Column(Float, nullable=False, default=0)
    last_price = Column(Float, nullable=True)
    last_volume = Column(Float, nullable=False, default=0)
    buy_points = Column(Float, nullable=False, default=0)
    sell_points = Column(Float, nullable=False, default=0)

    # Buy-side latches ("up is good")
    buy_m2 = Column(Boolean, nullable=False, default=False)
    buy_m5 = Column(Boolean, nullable=False, default=False)
    buy_m10 = Column(Boolean, nullable=False, default=False)
    buy_m15 = Column(Boolean, nullable=False, default=False)
    buy_volume_2x = Column(Boolean, nullable=False, default=False)
    buy_volume_3x = Column(Boolean, nullable=False, default=False)

    # Sell-side latches ("down is good")
    sell_m2 = Column(Boolean, nullable=False, default=False)
    sell_m5 = Column(Boolean, nullable=False, default=False)
    sell_m10 = Column(Boolean, nullable=False, default=False)
    sell_m15 = Column(Boolean, nullable=False, default=False)
    sell_volume_2x = Column(Boolean, nullable=False, default=False)
    sell_volume_3x = Column(Boolean, nullable=False, default=False)

    reset_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<DailyStockBaseline(symbol={self.symbol}, base={self.base_price}, buy={self.buy_points}, sell={self.sell_points})>"


class Wallet(Base):
    """User balance. Only prize credits are written by this service."""

    __tablename__ = "wallets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, unique=True, index=True, nullable=False)
    balance = Column(Float, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Wallet(user_id={self.user_id}, balance={self.balance})>"


class WalletTransaction(Base):
    """Wallet ledger line. A contest prize is ledgered at most once per user."""

    __tablename__ = "wallet_transactions"
    __table_args__ = (
        # One prize line per user per contest; other kinds may repeat
        Index(
            "uix_wallet_txn_contest_prize",
            "user_id",
            "contest_id",
            unique=True,
            postgresql_where=text("kind = 'PRIZE'"),
            sqlite_where=text("kind = 'PRIZE'"),
        ),
        CheckConstraint("type IN ('CREDIT', 'DEBIT')", name="ck_wallet_txn_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(Integer, ForeignKey("wallets.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    contest_id = Column(Integer, ForeignKey("contests.id"), nullable=True, index=True)
    type = Column(String, nullable=False)  # CREDIT, DEBIT
    kind = Column(String, nullable=False, default="PRIZE")  # PRIZE, TOPUP, ENTRY_FEE
    amount = Column(Float, nullable=False)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<WalletTransaction(user_id={self.user_id}, type={self.type}, amount={self.amount})>"
