"""
Repository pattern for data access.

Each repository wraps one aggregate (Contest, Team, LeaderboardEntry, Stock,
Wallet). Point totals and balances are only ever changed through SQL-side
increments so that two writers touching the same row cannot overwrite each
other.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, asc, desc, update
from sqlalchemy.orm import Session

from stockleague.db.models import (
    Contest,
    DailyStockBaseline,
    LeaderboardEntry,
    Stock,
    Team,
    TeamPick,
    Wallet,
    WalletTransaction,
)
from stockleague.utils.errors import ContestNotSettledError

PRIZE_KIND = "PRIZE"


class ContestRepository:
    """Repository for Contest operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, contest_id: int) -> Optional[Contest]:
        """Get contest by ID."""
        return self.db.query(Contest).filter(Contest.id == contest_id).first()

    def get_active(self, now: datetime) -> List[Contest]:
        """Contests that are live at ``now``: not cancelled and inside [start, end]."""
        return (
            self.db.query(Contest)
            .filter(
                Contest.is_cancelled == False,  # noqa: E712
                Contest.start_time <= now,
                Contest.end_time >= now,
            )
            .all()
        )

    def get_due_for_settlement(self, now: datetime) -> List[Contest]:
        """Contests past their end time whose prizes have not been distributed."""
        return (
            self.db.query(Contest)
            .filter(
                Contest.end_time <= now,
                Contest.is_prize_distributed == False,  # noqa: E712
            )
            .order_by(asc(Contest.end_time), asc(Contest.id))
            .all()
        )

    def mark_prize_distributed(self, contest_id: int, now: datetime) -> bool:
        """
        Flip the settlement latch.

        Conditional on the latch still being false; returns False if another
        writer got there first.
        """
        result = self.db.execute(
            update(Contest)
            .where(and_(Contest.id == contest_id, Contest.is_prize_distributed == False))  # noqa: E712
            .values(is_prize_distributed=True, prize_distributed_at=now, updated_at=now)
        )
        return result.rowcount == 1


class TeamRepository:
    """Repository for Team operations."""

    def __init__(self, db: Session):
        self.db = db

    def get_picks_holding(
        self, contest_ids: Iterable[int], symbols: Iterable[str]
    ) -> List[Tuple[Team, TeamPick]]:
        """(team, pick) pairs in the given contests whose pick is one of ``symbols``."""
        contest_ids = list(contest_ids)
        symbols = [s.upper() for s in symbols]
        if not contest_ids or not symbols:
            return []

        return (
            self.db.query(Team, TeamPick)
            .join(TeamPick, TeamPick.team_id == Team.id)
            .filter(Team.contest_id.in_(contest_ids), TeamPick.symbol.in_(symbols))
            .order_by(asc(Team.contest_id), asc(Team.id), asc(TeamPick.position))
            .all()
        )

    def increment_points(self, team_id: int, delta: float, now: datetime) -> None:
        self.db.execute(
            update(Team)
            .where(Team.id == team_id)
            .values(total_points=Team.total_points + delta, updated_at=now)
        )


class LeaderboardRepository:
    """Repository for LeaderboardEntry operations and the leaderboard read models."""

    def __init__(self, db: Session):
        self.db = db

    def get_ranked_entries(self, contest_id: int, lock: bool = False) -> List[LeaderboardEntry]:
        """Entries in final ranking order: points desc, earliest points update, then id."""
        query = (
            self.db.query(LeaderboardEntry)
            .filter(LeaderboardEntry.contest_id == contest_id)
            .order_by(
                desc(LeaderboardEntry.points),
                asc(LeaderboardEntry.points_updated_at),
                asc(LeaderboardEntry.id),
            )
        )
        if lock:
            query = query.with_for_update()
        return query.all()

    def increment_points(
        self, contest_id: int, team_id: int, user_id: int, delta: float, now: datetime
    ) -> None:
        """Add ``delta`` to the entry, creating it if the join flow never did."""
        result = self.db.execute(
            update(LeaderboardEntry)
            .where(
                LeaderboardEntry.contest_id == contest_id,
                LeaderboardEntry.team_id == team_id,
            )
            .values(
                points=LeaderboardEntry.points + delta,
                points_updated_at=now,
                updated_at=now,
            )
        )
        if result.rowcount == 0:
            self.db.add(
                LeaderboardEntry(
                    contest_id=contest_id,
                    team_id=team_id,
                    user_id=user_id,
                    points=delta,
                    points_updated_at=now,
                )
            )
            self.db.flush()

    def get_leaderboard(self, contest_id: int) -> List[Dict[str, Any]]:
        """Leaderboard read model ordered by rank. Unranked entries sort last."""
        entries = self.get_ranked_entries(contest_id)
        entries.sort(key=lambda e: (e.rank is None, e.rank or 0))
        return [
            {
                "rank": entry.rank,
                "teamId": entry.team_id,
                "userId": entry.user_id,
                "points": entry.points,
                "winningAmount": entry.winning_amount,
            }
            for entry in entries
        ]

    def get_settlement_result(self, contest: Contest) -> Dict[str, Any]:
        """Rebuild the settlement summary for a settled contest."""
        if not contest.is_prize_distributed:
            raise ContestNotSettledError(
                f"Contest {contest.id} has not been settled",
                details={"contest_id": contest.id},
            )

        entries = (
            self.db.query(LeaderboardEntry)
            .filter(LeaderboardEntry.contest_id == contest.id)
            .order_by(asc(LeaderboardEntry.rank), asc(LeaderboardEntry.id))
            .all()
        )
        return build_settlement_result(contest, entries)


def build_settlement_result(contest: Contest, entries: List[LeaderboardEntry]) -> Dict[str, Any]:
    """Settlement summary: participants, winners (winning_amount > 0) and totals."""
    distributions = [
        {
            "userId": entry.user_id,
            "teamId": entry.team_id,
            "rank": entry.rank,
            "points": entry.points,
            "winningAmount": entry.winning_amount,
        }
        for entry in entries
        if entry.winning_amount and entry.winning_amount > 0
    ]
    return {
        "contestId": contest.id,
        "contestName": contest.name,
        "totalParticipants": len(entries),
        "totalWinners": len(distributions),
        "totalPrizeDistributed": round(sum(d["winningAmount"] for d in distributions), 2),
        "distributions": distributions,
    }


class StockRepository:
    """Repository for the quote table and daily screener rows."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_symbol(self, symbol: str) -> Optional[Stock]:
        return self.db.query(Stock).filter(Stock.symbol == symbol.upper()).first()

    def get_active(self) -> List[Stock]:
        return self.db.query(Stock).filter(Stock.is_active == True).order_by(asc(Stock.symbol)).all()  # noqa: E712

    def get_updated_since(self, watermark: Optional[datetime]) -> List[Stock]:
        """Active stocks touched at or after ``watermark`` (all active stocks when None)."""
        query = self.db.query(Stock).filter(Stock.is_active == True)  # noqa: E712
        if watermark is not None:
            query = query.filter(Stock.last_updated >= watermark)
        return query.order_by(asc(Stock.last_updated), asc(Stock.symbol)).all()

    def get_active_by_symbols(self, symbols: Iterable[str]) -> List[Stock]:
        symbols = [s.upper() for s in symbols]
        if not symbols:
            return []
        return (
            self.db.query(Stock)
            .filter(Stock.is_active == True, Stock.symbol.in_(symbols))  # noqa: E712
            .order_by(asc(Stock.symbol))
            .all()
        )

    def get_daily_baseline(self, symbol: str) -> Optional[DailyStockBaseline]:
        return (
            self.db.query(DailyStockBaseline)
            .filter(DailyStockBaseline.symbol == symbol.upper())
            .first()
        )

    def get_daily_baselines(self, symbols: Iterable[str]) -> Dict[str, DailyStockBaseline]:
        symbols = [s.upper() for s in symbols]
        if not symbols:
            return {}
        rows = self.db.query(DailyStockBaseline).filter(DailyStockBaseline.symbol.in_(symbols)).all()
        return {row.symbol: row for row in rows}

    def get_screener(self, sort_by: str = "buy", limit: Optional[int] = None) -> List[DailyStockBaseline]:
        """Daily rows with a base price, best first by buy or sell points."""
        column = DailyStockBaseline.sell_points if sort_by == "sell" else DailyStockBaseline.buy_points
        query = (
            self.db.query(DailyStockBaseline)
            .filter(DailyStockBaseline.base_price.isnot(None))
            .order_by(desc(column), asc(DailyStockBaseline.symbol))
        )
        if limit:
            query = query.limit(limit)
        return query.all()


class WalletRepository:
    """Repository for prize credits. Top-ups and debits belong to the wallet service."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_user(self, user_id: int) -> Optional[Wallet]:
        return self.db.query(Wallet).filter(Wallet.user_id == user_id).first()

    def get_or_create(self, user_id: int) -> Wallet:
        wallet = self.get_by_user(user_id)
        if wallet is None:
            wallet = Wallet(user_id=user_id, balance=0)
            self.db.add(wallet)
            self.db.flush()
        return wallet

    def has_prize_credit(self, user_id: int, contest_id: int) -> bool:
        return (
            self.db.query(WalletTransaction.id)
            .filter(
                WalletTransaction.user_id == user_id,
                WalletTransaction.contest_id == contest_id,
                WalletTransaction.kind == PRIZE_KIND,
            )
            .first()
            is not None
        )

    def credit_prize(self, user_id: int, contest_id: int, amount: float, reason: str, now: datetime) -> bool:
        """
        Credit a contest prize once.

        Returns False without touching the balance when this user already
        has a prize line for the contest.
        """
        if self.has_prize_credit(user_id, contest_id):
            return False

        wallet = self.get_or_create(user_id)
        self.db.add(
            WalletTransaction(
                wallet_id=wallet.id,
                user_id=user_id,
                contest_id=contest_id,
                type="CREDIT",
                kind=PRIZE_KIND,
                amount=amount,
                reason=reason,
                created_at=now,
            )
        )
        # The unique prize index fails here before the balance moves
        self.db.flush()
        self.db.execute(
            update(Wallet)
            .where(Wallet.id == wallet.id)
            .values(balance=Wallet.balance + amount, updated_at=now)
        )
        return True
