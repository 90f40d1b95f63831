"""
Durable idempotency records for (team, stock) scoring.

A record remembers the last percent change it saw, the last absolute total
the formula produced, and which one-shot bonuses have fired. The next delta
for the team is always ``new_total - last_computed_points``.
"""

from datetime import datetime

from sqlalchemy.orm import Session

from stockleague.db.models import Team, TeamPick, TeamStockMilestone
from stockleague.domain.points import MilestoneFlags, PointsBreakdown


class MilestoneStore:
    def __init__(self, db: Session):
        self.db = db

    def load(self, team: Team, pick: TeamPick, now: datetime) -> TeamStockMilestone:
        """Existing record for the pick, or a fresh all-zero, all-false one added to the session."""
        record = (
            self.db.query(TeamStockMilestone)
            .filter(
                TeamStockMilestone.contest_id == team.contest_id,
                TeamStockMilestone.team_id == team.id,
                TeamStockMilestone.symbol == pick.symbol,
            )
            .first()
        )
        if record is not None:
            return record

        record = TeamStockMilestone(
            team_id=team.id,
            contest_id=team.contest_id,
            user_id=team.user_id,
            symbol=pick.symbol,
            action=pick.action,
            last_percent_change=0.0,
            last_computed_points=0.0,
            created_at=now,
            updated_at=now,
        )
        MilestoneFlags().apply_to(record)
        self.db.add(record)
        return record

    @staticmethod
    def flags(record: TeamStockMilestone) -> MilestoneFlags:
        return MilestoneFlags.from_record(record)

    @staticmethod
    def save(record: TeamStockMilestone, breakdown: PointsBreakdown, now: datetime) -> None:
        """Store the unmultiplied total that the applied delta was derived from."""
        record.last_percent_change = breakdown.percent_change
        record.last_computed_points = breakdown.total_points
        breakdown.flags.apply_to(record)
        record.updated_at = now
