"""
Prize settlement for finished contests.

Ranking, prize mapping, wallet credits, ledger lines and the
``is_prize_distributed`` latch for one contest are written in a single
SAVEPOINT and committed together. The latch flip is conditional on it still
being false and each (user, contest) prize line is unique, so a second run
can neither credit twice nor settle twice.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from stockleague.db.models import Contest, LeaderboardEntry, PrizeTier
from stockleague.db.repositories import (
    ContestRepository,
    LeaderboardRepository,
    WalletRepository,
    build_settlement_result,
)
from stockleague.utils.datetime import utcnow
from stockleague.utils.errors import RecordNotFoundError, SettlementError


def prize_for_rank(tiers: Sequence[PrizeTier], rank: int) -> float:
    """Prize for ``rank`` from the first tier covering it, else 0."""
    for tier in tiers:
        if tier.rank_from <= rank <= tier.rank_to:
            return float(tier.prize_each or 0)
    return 0.0


@dataclass
class SettlementResult:
    """Outcome of settling one contest."""

    contest_id: int
    contest_name: str
    total_participants: int
    total_winners: int
    total_prize_distributed: float
    distributions: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_entries(cls, contest: Contest, entries: List[LeaderboardEntry]) -> "SettlementResult":
        data = build_settlement_result(contest, entries)
        return cls(
            contest_id=data["contestId"],
            contest_name=data["contestName"],
            total_participants=data["totalParticipants"],
            total_winners=data["totalWinners"],
            total_prize_distributed=data["totalPrizeDistributed"],
            distributions=data["distributions"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contestId": self.contest_id,
            "contestName": self.contest_name,
            "totalParticipants": self.total_participants,
            "totalWinners": self.total_winners,
            "totalPrizeDistributed": self.total_prize_distributed,
            "distributions": self.distributions,
        }


@dataclass
class SettlementPass:
    """What one scan over due contests did."""

    settled: List[SettlementResult] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


class SettlementEngine:
    def settle_due_contests(self, db: Session, now: Optional[datetime] = None) -> SettlementPass:
        """
        Settle every contest with ``end_time <= now`` that is not yet distributed.

        A failing contest is rolled back, logged and left unsettled so the
        next check retries it. Other contests are unaffected.
        """
        now = now or utcnow()
        outcome = SettlementPass()

        due_ids = [contest.id for contest in ContestRepository(db).get_due_for_settlement(now)]
        # Release the read transaction before the per-contest units
        db.commit()

        for contest_id in due_ids:
            try:
                result = self.settle_contest(db, contest_id, now)
            except Exception as e:
                db.rollback()
                outcome.failed.append(contest_id)
                logger.error(f"Settlement failed for contest {contest_id}: {e}")
                continue
            if result is not None:
                outcome.settled.append(result)

        return outcome

    def settle_contest(self, db: Session, contest_id: int, now: Optional[datetime] = None) -> Optional[SettlementResult]:
        """
        Settle one contest and commit.

        Returns None when the contest is already distributed.

        Raises:
            RecordNotFoundError: Unknown contest.
            SettlementError: The latch was flipped by someone else mid-way.
        """
        now = now or utcnow()

        with db.begin_nested():
            contest = (
                db.query(Contest)
                .filter(Contest.id == contest_id)
                .with_for_update()
                .first()
            )
            if contest is None:
                raise RecordNotFoundError(f"Contest {contest_id} not found", details={"contest_id": contest_id})
            if contest.is_prize_distributed:
                logger.info(f"Contest {contest_id} already settled, skipping")
                result = None
            else:
                result = self._distribute(db, contest, now)

        db.commit()

        if result is not None:
            logger.info(
                f"Contest {contest_id} settled: {result.total_participants} participants, "
                f"{result.total_winners} winners, {result.total_prize_distributed} distributed"
            )
        return result

    def _distribute(self, db: Session, contest: Contest, now: datetime) -> SettlementResult:
        """Rank, map prizes, credit wallets and flip the latch inside the caller's savepoint."""
        entries = LeaderboardRepository(db).get_ranked_entries(contest.id, lock=True)
        tiers = list(contest.prize_tiers)

        winnings: "OrderedDict[int, float]" = OrderedDict()
        for rank, entry in enumerate(entries, start=1):
            entry.rank = rank
            entry.winning_amount = prize_for_rank(tiers, rank)
            if entry.winning_amount > 0:
                winnings[entry.user_id] = winnings.get(entry.user_id, 0.0) + entry.winning_amount
        db.flush()

        wallets = WalletRepository(db)
        for user_id, amount in winnings.items():
            credited = wallets.credit_prize(
                user_id=user_id,
                contest_id=contest.id,
                amount=round(amount, 2),
                reason=f"Prize for contest {contest.name}",
                now=now,
            )
            if not credited:
                logger.warning(f"Prize for user {user_id} in contest {contest.id} already ledgered")

        if not ContestRepository(db).mark_prize_distributed(contest.id, now):
            raise SettlementError(
                f"Contest {contest.id} settlement latch already set",
                details={"contest_id": contest.id},
            )

        return SettlementResult.from_entries(contest, entries)
