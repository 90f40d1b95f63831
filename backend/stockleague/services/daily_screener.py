"""
Contest-independent daily screener scoring.

Every morning each active stock's base price is reset to its previous close
(current price when there is none). Each cycle the stocks in the batch are
scored twice from that base: once as a BUY ("up is good") and once as a SELL
("down is good"), each side with its own latches. Volume spikes against the
EMA volume add one-shot bonuses. Results are display-only; team and
leaderboard points are never touched.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from stockleague.config import settings
from stockleague.db.models import DailyStockBaseline, Stock
from stockleague.db.repositories import StockRepository
from stockleague.domain.points import (
    SCREENER_CALCULATOR,
    Direction,
    MilestoneFlags,
    PointsCalculator,
    movement_units,
    percent_change,
)
from stockleague.domain.quotes import StockQuote, build_stock_update
from stockleague.services.baseline_tracker import smoothed_volume
from stockleague.utils.datetime import utcnow
from stockleague.utils.errors import RecordNotFoundError

BUY_PREFIX = "buy_"
SELL_PREFIX = "sell_"


def daily_base_price(stock: Stock) -> Optional[float]:
    """Previous close when known, else the current price, else None."""
    if stock.previous_close and stock.previous_close > 0:
        return float(stock.previous_close)
    if stock.price and stock.price > 0:
        return float(stock.price)
    return None


class DailyScreenerScorer:
    def __init__(self, calculator: PointsCalculator = SCREENER_CALCULATOR, ema_alpha: Optional[float] = None):
        self.calculator = calculator
        self.ema_alpha = settings.volume_ema_alpha if ema_alpha is None else ema_alpha

    def reset_daily_scores(self, db: Session, now: Optional[datetime] = None) -> int:
        """
        Start a new screener day for every active stock and commit.

        Base price, base volume (EMA seed) and reset time are set; percent,
        points and every latch go back to zero/false. Returns rows reset.
        A zero base volume (reset before the open) is seeded by the first
        cycle that reports volume, and that cycle scores no spike.
        """
        now = now or utcnow()
        repo = StockRepository(db)
        stocks = repo.get_active()
        existing = repo.get_daily_baselines([s.symbol for s in stocks])

        count = 0
        for stock in stocks:
            row = existing.get(stock.symbol)
            if row is None:
                row = DailyStockBaseline(symbol=stock.symbol)
                db.add(row)

            row.base_price = daily_base_price(stock)
            row.base_volume = float(stock.volume or 0)
            row.previous_percent = 0.0
            row.percent_change = 0.0
            row.last_price = stock.price
            row.last_volume = float(stock.volume or 0)
            row.buy_points = 0.0
            row.sell_points = 0.0
            MilestoneFlags().apply_to(row, BUY_PREFIX)
            MilestoneFlags().apply_to(row, SELL_PREFIX)
            row.reset_at = now
            row.updated_at = now
            count += 1

        db.commit()
        logger.info(f"Daily screener reset completed for {count} stocks")
        return count

    def score_batch(self, db: Session, quotes: Iterable[StockQuote], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Score the batch and commit. Returns a broadcast payload for every
        stock whose percent change or points moved.

        Stocks without a daily base price are skipped until the next reset.
        """
        now = now or utcnow()
        quotes = {quote.symbol: quote for quote in quotes}
        if not quotes:
            return []

        rows = StockRepository(db).get_daily_baselines(quotes.keys())
        payloads = []

        for symbol in sorted(quotes):
            row = rows.get(symbol)
            if row is None or not row.base_price or row.base_price <= 0:
                continue
            try:
                with db.begin_nested():
                    payload = self._score_stock(row, quotes[symbol], now)
            except Exception as e:
                logger.error(f"Daily scoring failed for {symbol}: {e}")
                continue
            if payload is not None:
                payloads.append(payload)

        db.commit()
        if payloads:
            logger.debug(f"Daily screener updated {len(payloads)} stocks")
        return payloads

    def _score_stock(self, row: DailyStockBaseline, quote: StockQuote, now: datetime) -> Optional[Dict[str, Any]]:
        pct = percent_change(quote.price, row.base_price)
        previous = row.previous_percent or 0.0
        # Spikes compare against the EMA before this observation is folded in
        volume_base = row.base_volume or 0.0

        buy = self.calculator.calculate(
            pct,
            previous,
            Direction.BUY,
            MilestoneFlags.from_record(row, BUY_PREFIX),
            volume=quote.volume,
            volume_baseline=volume_base,
        )
        sell = self.calculator.calculate(
            pct,
            previous,
            Direction.SELL,
            MilestoneFlags.from_record(row, SELL_PREFIX),
            volume=quote.volume,
            volume_baseline=volume_base,
        )

        changed = (
            round(pct, 6) != round(row.percent_change or 0.0, 6)
            or buy.total_points != row.buy_points
            or sell.total_points != row.sell_points
        )

        row.previous_percent = pct
        row.percent_change = pct
        row.buy_points = buy.total_points
        row.sell_points = sell.total_points
        buy.flags.apply_to(row, BUY_PREFIX)
        sell.flags.apply_to(row, SELL_PREFIX)
        if volume_base > 0:
            row.base_volume = smoothed_volume(volume_base, quote.volume, self.ema_alpha)
        else:
            # Nothing traded since the reset: the first volume seeds the EMA
            row.base_volume = max(0.0, quote.volume)
        row.last_price = quote.price
        row.last_volume = quote.volume
        row.updated_at = now

        if not changed:
            return None
        return build_stock_update(
            quote,
            row.base_price,
            pct,
            buy.total_points,
            sell.total_points,
            buy.flags,
            sell.flags,
        )

    def get_score_breakdown(self, db: Session, symbol: str) -> Dict[str, Any]:
        """How a stock's current screener points are made up."""
        repo = StockRepository(db)
        row = repo.get_daily_baseline(symbol)
        if row is None:
            raise RecordNotFoundError(f"No daily score for {symbol.upper()}", details={"symbol": symbol.upper()})

        stock = repo.get_by_symbol(symbol)
        current_price = stock.price if stock is not None else row.last_price
        pct = row.percent_change or 0.0

        return {
            "symbol": row.symbol,
            "basePrice": row.base_price,
            "currentPrice": current_price,
            "percentChange": round(pct, 2),
            "previousPercent": round(row.previous_percent or 0.0, 2),
            "movementUnits": movement_units(pct),
            "buyPoints": row.buy_points,
            "sellPoints": row.sell_points,
            "baseVolume": row.base_volume,
            "milestones": {
                "buy": MilestoneFlags.from_record(row, BUY_PREFIX).to_dict(),
                "sell": MilestoneFlags.from_record(row, SELL_PREFIX).to_dict(),
            },
            "resetAt": row.reset_at.isoformat() if row.reset_at else None,
        }
