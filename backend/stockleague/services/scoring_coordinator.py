"""
One contest scoring cycle.

For a batch of changed quotes the coordinator:

1. loads the contests that are live now,
2. finds every (team, pick) in them holding a changed symbol,
3. creates or refreshes the (contest, symbol) baselines,
4. recomputes each pick's absolute total and applies
   ``(total - last_computed_points) * multiplier`` to the team and its
   leaderboard entry with SQL-side increments,
5. re-ranks every contest it touched,
6. runs settlement when the cooldown has elapsed.

Each baseline refresh and each (team, pick) unit runs in its own SAVEPOINT.
A failing unit is rolled back and logged, and its symbol is reported in
``failed_symbols`` so the feed can deliver it again; it is recomputed from
current state on the next cycle.

Cycles must not overlap. The live runner enforces that; the milestone
read-then-write here is not protected against a concurrent cycle.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger
from sqlalchemy.orm import Session

from stockleague.config import settings
from stockleague.db.models import ContestStockBaseline, Team, TeamPick
from stockleague.db.repositories import ContestRepository, LeaderboardRepository, TeamRepository
from stockleague.domain.points import TEAM_CALCULATOR, Direction, PointsCalculator
from stockleague.domain.quotes import StockQuote
from stockleague.services.baseline_tracker import BaselineTracker
from stockleague.services.leaderboard_ranker import LeaderboardRanker
from stockleague.services.milestone_store import MilestoneStore
from stockleague.services.settlement_engine import SettlementEngine, SettlementPass
from stockleague.utils.datetime import utcnow

CAPTAIN_MULTIPLIER = 2.0
VICE_CAPTAIN_MULTIPLIER = 1.5


def pick_multiplier(team: Team, symbol: str) -> float:
    """x2 for the captain pick, x1.5 for the vice-captain pick, x1 otherwise."""
    if team.captain_symbol and team.captain_symbol.upper() == symbol:
        return CAPTAIN_MULTIPLIER
    if team.vice_captain_symbol and team.vice_captain_symbol.upper() == symbol:
        return VICE_CAPTAIN_MULTIPLIER
    return 1.0


@dataclass
class CycleResult:
    """Counters for one scoring cycle."""

    quotes: int = 0
    active_contests: int = 0
    picks_scored: int = 0
    teams_updated: int = 0
    baselines_created: int = 0
    baselines_missing: int = 0
    unit_failures: int = 0
    failed_symbols: Set[str] = field(default_factory=set)
    contests_ranked: List[int] = field(default_factory=list)
    settlement: Optional[SettlementPass] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "quotes": self.quotes,
            "active_contests": self.active_contests,
            "picks_scored": self.picks_scored,
            "teams_updated": self.teams_updated,
            "baselines_created": self.baselines_created,
            "baselines_missing": self.baselines_missing,
            "unit_failures": self.unit_failures,
            "contests_ranked": len(self.contests_ranked),
            "contests_settled": len(self.settlement.settled) if self.settlement else 0,
            "settlement_failures": len(self.settlement.failed) if self.settlement else 0,
        }


class ScoringCoordinator:
    """
    Drives contest scoring for one batch at a time.

    Owns the settlement cooldown: settlement is attempted at most once per
    ``settlement_cooldown_seconds`` of the ``now`` values it is given.
    """

    def __init__(
        self,
        calculator: PointsCalculator = TEAM_CALCULATOR,
        ranker: Optional[LeaderboardRanker] = None,
        settlement: Optional[SettlementEngine] = None,
        settlement_cooldown_seconds: Optional[int] = None,
        ema_alpha: Optional[float] = None,
    ):
        self.calculator = calculator
        self.ranker = ranker or LeaderboardRanker()
        self.settlement = settlement or SettlementEngine()
        if settlement_cooldown_seconds is None:
            settlement_cooldown_seconds = settings.settlement_cooldown_seconds
        self.settlement_cooldown = timedelta(seconds=settlement_cooldown_seconds)
        self.ema_alpha = ema_alpha
        self.last_settlement_check: Optional[datetime] = None

    def process_stock_updates(
        self,
        db: Session,
        quotes: Iterable[StockQuote],
        now: Optional[datetime] = None,
        settle: bool = True,
    ) -> CycleResult:
        """Score one batch of changed quotes against every live contest."""
        now = now or utcnow()
        batch: Dict[str, StockQuote] = {quote.symbol: quote for quote in quotes}
        result = CycleResult(quotes=len(batch))

        if batch:
            self._score_batch(db, batch, now, result)

        if settle:
            result.settlement = self.maybe_settle(db, now)

        return result

    def _score_batch(self, db: Session, batch: Dict[str, StockQuote], now: datetime, result: CycleResult) -> None:
        contests = ContestRepository(db).get_active(now)
        result.active_contests = len(contests)
        if not contests:
            return

        holdings = TeamRepository(db).get_picks_holding([c.id for c in contests], batch.keys())
        if not holdings:
            db.commit()
            return

        baselines = self._refresh_baselines(db, holdings, batch, now, result)
        db.commit()

        touched: Set[int] = set()
        updated_teams: Set[int] = set()
        tracker = BaselineTracker(db, self.ema_alpha)
        store = MilestoneStore(db)
        teams = TeamRepository(db)
        leaderboard = LeaderboardRepository(db)

        for team, pick in holdings:
            symbol = pick.symbol.upper()
            baseline = baselines.get((team.contest_id, symbol))
            if baseline is None:
                result.baselines_missing += 1
                continue

            try:
                with db.begin_nested():
                    delta = self._score_pick(
                        store, teams, leaderboard, tracker, team, pick, baseline, batch[symbol], now
                    )
            except Exception as e:
                result.unit_failures += 1
                result.failed_symbols.add(symbol)
                logger.error(
                    f"Scoring failed for team {team.id} {symbol} in contest {team.contest_id}: {e}"
                )
                continue

            result.picks_scored += 1
            touched.add(team.contest_id)
            if delta:
                updated_teams.add(team.id)

        db.commit()
        result.teams_updated = len(updated_teams)

        if touched:
            result.contests_ranked = self.ranker.rank_contests(db, touched)

    def _refresh_baselines(
        self,
        db: Session,
        holdings: List[Tuple[Team, TeamPick]],
        batch: Dict[str, StockQuote],
        now: datetime,
        result: CycleResult,
    ) -> Dict[Tuple[int, str], ContestStockBaseline]:
        tracker = BaselineTracker(db, self.ema_alpha)
        baselines: Dict[Tuple[int, str], ContestStockBaseline] = {}

        pairs = sorted({(team.contest_id, pick.symbol.upper()) for team, pick in holdings})
        for contest_id, symbol in pairs:
            try:
                with db.begin_nested():
                    existed = tracker.get(contest_id, symbol) is not None
                    baseline = tracker.refresh(contest_id, batch[symbol], now)
            except Exception as e:
                result.unit_failures += 1
                result.failed_symbols.add(symbol)
                logger.error(f"Baseline refresh failed for contest {contest_id} {symbol}: {e}")
                continue

            if not existed:
                result.baselines_created += 1
            baselines[(contest_id, symbol)] = baseline

        return baselines

    def _score_pick(
        self,
        store: MilestoneStore,
        teams: TeamRepository,
        leaderboard: LeaderboardRepository,
        tracker: BaselineTracker,
        team: Team,
        pick: TeamPick,
        baseline: ContestStockBaseline,
        quote: StockQuote,
        now: datetime,
    ) -> float:
        """Recompute one pick and apply its delta. Returns the multiplied delta."""
        record = store.load(team, pick, now)
        pct = tracker.percent_change(baseline, quote.price)

        breakdown = self.calculator.calculate(
            pct,
            record.last_percent_change or 0.0,
            Direction(pick.action),
            store.flags(record),
            price=quote.price,
            day_high=quote.day_high,
            day_low=quote.day_low,
        )

        multiplier = pick_multiplier(team, pick.symbol.upper())
        delta = round((breakdown.total_points - (record.last_computed_points or 0.0)) * multiplier, 2)

        store.save(record, breakdown, now)

        if delta:
            teams.increment_points(team.id, delta, now)
            leaderboard.increment_points(team.contest_id, team.id, team.user_id, delta, now)
            logger.debug(
                f"Team {team.id} {pick.symbol} {pick.action}: pc={pct:.2f} "
                f"total={breakdown.total_points} delta={delta} (x{multiplier})"
            )
        return delta

    def maybe_settle(self, db: Session, now: Optional[datetime] = None) -> Optional[SettlementPass]:
        """Run settlement if the cooldown has elapsed since the last check."""
        now = now or utcnow()
        if self.last_settlement_check is not None and now - self.last_settlement_check < self.settlement_cooldown:
            return None
        return self.settle_now(db, now)

    def settle_now(self, db: Session, now: Optional[datetime] = None) -> SettlementPass:
        """Run settlement immediately and restart the cooldown."""
        now = now or utcnow()
        self.last_settlement_check = now
        outcome = self.settlement.settle_due_contests(db, now)
        if outcome.settled or outcome.failed:
            logger.info(
                f"Settlement check: {len(outcome.settled)} settled, {len(outcome.failed)} failed"
            )
        return outcome
