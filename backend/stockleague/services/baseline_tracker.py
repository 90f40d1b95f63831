"""
Per contest x stock baselines.

The baseline price is taken from the first quote seen while the contest is
live and is never rewritten. Smoothed volume follows an EMA every cycle.
"""

from datetime import datetime
from typing import Optional

from loguru import logger
from sqlalchemy.orm import Session

from stockleague.config import settings
from stockleague.db.models import ContestStockBaseline
from stockleague.domain.points import percent_change
from stockleague.domain.quotes import StockQuote


def smoothed_volume(previous: float, observed: float, alpha: float) -> float:
    """
    One EMA step. Never negative.

    Examples:
        >>> smoothed_volume(1000, 2000, 0.2)
        1200.0
    """
    value = previous * (1 - alpha) + (observed or 0) * alpha
    return max(0.0, float(value))


class BaselineTracker:
    """Create-if-absent and refresh of ``ContestStockBaseline`` rows."""

    def __init__(self, db: Session, ema_alpha: Optional[float] = None):
        self.db = db
        self.ema_alpha = settings.volume_ema_alpha if ema_alpha is None else ema_alpha

    def get(self, contest_id: int, symbol: str) -> Optional[ContestStockBaseline]:
        return (
            self.db.query(ContestStockBaseline)
            .filter(
                ContestStockBaseline.contest_id == contest_id,
                ContestStockBaseline.symbol == symbol.upper(),
            )
            .first()
        )

    def refresh(self, contest_id: int, quote: StockQuote, now: datetime) -> ContestStockBaseline:
        """
        Ensure a baseline exists for (contest, symbol) and fold in ``quote``.

        On first sight the current price becomes the baseline and the current
        volume seeds the EMA. Afterwards only last price/volume and the EMA move.
        """
        baseline = self.get(contest_id, quote.symbol)

        if baseline is None:
            baseline = ContestStockBaseline(
                contest_id=contest_id,
                symbol=quote.symbol,
                baseline_price=quote.price,
                smoothed_volume=max(0.0, quote.volume),
                last_price=quote.price,
                last_volume=quote.volume,
                last_updated=now,
                created_at=now,
            )
            self.db.add(baseline)
            logger.debug(f"Baseline created for contest {contest_id} {quote.symbol} @ {quote.price}")
            return baseline

        baseline.smoothed_volume = smoothed_volume(baseline.smoothed_volume or 0, quote.volume, self.ema_alpha)
        baseline.last_price = quote.price
        baseline.last_volume = quote.volume
        baseline.last_updated = now
        return baseline

    @staticmethod
    def percent_change(baseline: ContestStockBaseline, price: float) -> float:
        return percent_change(price, baseline.baseline_price)
