"""
Quote batches for the live cycle.

The market-data layer owns fetching, batching and retries and keeps the
``stocks`` table current. A feed turns that table into the per-cycle batch
of quotes whose price actually changed.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger
from sqlalchemy.orm import Session

from stockleague.db.repositories import StockRepository
from stockleague.domain.quotes import StockQuote
from stockleague.utils.errors import InvalidQuoteError


class QuoteFeed(ABC):
    """Source of changed-quote batches, one call per cycle."""

    @abstractmethod
    def fetch_changed(self, db: Session) -> List[StockQuote]:
        """Quotes whose price changed since the previous call."""

    def snapshot(self) -> Any:
        """Opaque position taken before a fetch; handed back to ``restore`` if the cycle fails."""
        return None

    def restore(self, state: Any) -> None:
        """Rewind to ``state`` so the failed batch is delivered again."""

    def requeue(self, symbols: Iterable[str]) -> None:
        """Deliver these symbols again on the next fetch even if their price is unchanged."""


class StockTableFeed(QuoteFeed):
    """
    Reads the ``stocks`` table.

    Keeps a ``last_updated`` watermark so each call only scans recently
    touched rows, and the last price it emitted per symbol so rows touched
    without a price move are left out. Requeued symbols are read again by
    symbol regardless of the watermark.
    """

    def __init__(self):
        self.watermark: Optional[datetime] = None
        self.last_prices: Dict[str, float] = {}
        self.pending: Set[str] = set()

    def fetch_changed(self, db: Session) -> List[StockQuote]:
        repo = StockRepository(db)
        rows = {row.symbol: row for row in repo.get_updated_since(self.watermark)}
        if self.pending:
            for row in repo.get_active_by_symbols(self.pending - set(rows)):
                rows[row.symbol] = row
            self.pending = set()

        quotes: List[StockQuote] = []
        for row in rows.values():
            if row.last_updated and (self.watermark is None or row.last_updated > self.watermark):
                self.watermark = row.last_updated

            if self.last_prices.get(row.symbol) == row.price:
                continue

            try:
                quote = StockQuote.from_stock(row)
            except InvalidQuoteError as e:
                logger.warning(f"Skipping quote: {e.message}")
                continue

            self.last_prices[row.symbol] = row.price
            quotes.append(quote)

        return quotes

    def snapshot(self) -> Tuple[Optional[datetime], Dict[str, float], Set[str]]:
        return self.watermark, dict(self.last_prices), set(self.pending)

    def restore(self, state: Tuple[Optional[datetime], Dict[str, float], Set[str]]) -> None:
        self.watermark, last_prices, pending = state
        self.last_prices = dict(last_prices)
        self.pending = set(pending)

    def requeue(self, symbols: Iterable[str]) -> None:
        for symbol in symbols:
            symbol = symbol.upper()
            self.last_prices.pop(symbol, None)
            self.pending.add(symbol)
        if self.pending:
            logger.info(f"Requeued {len(self.pending)} symbols for the next cycle")

    def reset(self) -> None:
        self.watermark = None
        self.last_prices.clear()
        self.pending.clear()
