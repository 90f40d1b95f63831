"""Dense leaderboard ranking per contest."""

from typing import Iterable, List

from loguru import logger
from sqlalchemy.orm import Session

from stockleague.db.models import LeaderboardEntry
from stockleague.db.repositories import LeaderboardRepository


def assign_ranks(entries: List[LeaderboardEntry]) -> int:
    """
    Write ranks 1..N onto entries already in ranking order.

    Ties never share a rank. Returns how many ranks changed. Points and
    ``points_updated_at`` are left alone.
    """
    changed = 0
    for rank, entry in enumerate(entries, start=1):
        if entry.rank != rank:
            entry.rank = rank
            changed += 1
    return changed


class LeaderboardRanker:
    """Recomputes ranks by points desc, earliest points update asc, id asc."""

    def rank_contest(self, db: Session, contest_id: int) -> int:
        entries = LeaderboardRepository(db).get_ranked_entries(contest_id)
        changed = assign_ranks(entries)
        db.flush()
        logger.debug(f"Ranked contest {contest_id}: {len(entries)} entries, {changed} moved")
        return changed

    def rank_contests(self, db: Session, contest_ids: Iterable[int]) -> List[int]:
        """
        Rank each contest in its own savepoint and commit.

        Returns the ids that were ranked; a failing contest is logged and
        left for the next cycle.
        """
        ranked = []
        for contest_id in sorted(set(contest_ids)):
            try:
                with db.begin_nested():
                    self.rank_contest(db, contest_id)
                ranked.append(contest_id)
            except Exception as e:
                logger.error(f"Ranking failed for contest {contest_id}: {e}")
        db.commit()
        return ranked
