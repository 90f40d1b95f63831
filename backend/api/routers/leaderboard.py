"""Leaderboard router"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from api.dependencies import get_db
from api.ratelimit import limiter, read_limit
from api.schemas.errors import ErrorResponse
from api.schemas.leaderboard import LeaderboardResponse, SettlementResponse
from api.utils.exceptions import ResourceNotFoundException
from stockleague.db.repositories import ContestRepository, LeaderboardRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/leaderboard", tags=["leaderboard"])


@router.get("/{contest_id}", response_model=LeaderboardResponse, responses={404: {"model": ErrorResponse}})
@limiter.limit(read_limit)
def get_leaderboard(request: Request, contest_id: int, db: Session = Depends(get_db)):
    """Contest standings ordered by rank"""
    contest = ContestRepository(db).get_by_id(contest_id)
    if not contest:
        raise ResourceNotFoundException("Contest", str(contest_id))

    return LeaderboardResponse(
        contestId=contest.id,
        contestName=contest.name,
        isPrizeDistributed=bool(contest.is_prize_distributed),
        entries=LeaderboardRepository(db).get_leaderboard(contest_id),
    )


@router.get(
    "/{contest_id}/settlement",
    response_model=SettlementResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
@limiter.limit(read_limit)
def get_settlement(request: Request, contest_id: int, db: Session = Depends(get_db)):
    """
    Settlement summary for a finished contest.

    404 for an unknown contest, 409 while prizes have not been distributed.
    """
    contest = ContestRepository(db).get_by_id(contest_id)
    if not contest:
        raise ResourceNotFoundException("Contest", str(contest_id))

    # ContestNotSettledError is mapped to 409 by the app exception handler
    return LeaderboardRepository(db).get_settlement_result(contest)
