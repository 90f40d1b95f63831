"""Daily screener router"""
import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from api.dependencies import get_db, get_screener
from api.ratelimit import limiter, read_limit
from api.schemas.errors import ErrorResponse
from api.schemas.stocks import ScoreBreakdown, ScreenerRow
from api.utils.exceptions import InvalidInputException
from stockleague.db.repositories import StockRepository
from stockleague.domain.points import MilestoneFlags
from stockleague.services.daily_screener import BUY_PREFIX, SELL_PREFIX, DailyScreenerScorer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stocks", tags=["stocks"])

SORT_FIELDS = ("buy", "sell")


@router.get("/screener", response_model=list[ScreenerRow], responses={400: {"model": ErrorResponse}})
@limiter.limit(read_limit)
def get_screener_rows(
    request: Request,
    sort: str = Query("buy", description="Sort by buy or sell points"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Today's screener points, best first"""
    if sort not in SORT_FIELDS:
        raise InvalidInputException(f"sort must be one of {', '.join(SORT_FIELDS)}", details={"sort": sort})

    rows = StockRepository(db).get_screener(sort_by=sort, limit=limit)
    return [
        ScreenerRow(
            symbol=row.symbol,
            basePrice=row.base_price,
            price=row.last_price,
            percentChange=round(row.percent_change or 0.0, 2),
            dailyBuyPoints=row.buy_points,
            dailySellPoints=row.sell_points,
            dailyMilestonesHit={
                "buy": MilestoneFlags.from_record(row, BUY_PREFIX).to_dict(),
                "sell": MilestoneFlags.from_record(row, SELL_PREFIX).to_dict(),
            },
            resetAt=row.reset_at,
        )
        for row in rows
    ]


@router.get("/{symbol}/score-breakdown", response_model=ScoreBreakdown, responses={404: {"model": ErrorResponse}})
@limiter.limit(read_limit)
def get_score_breakdown(
    request: Request,
    symbol: str,
    db: Session = Depends(get_db),
    screener: DailyScreenerScorer = Depends(get_screener),
):
    """How a stock's daily buy/sell points are made up"""
    # RecordNotFoundError is mapped to 404 by the app exception handler
    return screener.get_score_breakdown(db, symbol)
