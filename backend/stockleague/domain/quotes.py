"""
Quote value object delivered by the market-data layer each cycle, and the
live broadcast payload built from it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from stockleague.domain.points import MilestoneFlags
from stockleague.utils.datetime import to_naive_utc, utcnow
from stockleague.utils.errors import InvalidQuoteError


@dataclass(frozen=True)
class StockQuote:
    """Latest price/volume snapshot for one symbol."""

    symbol: str
    price: float
    volume: float = 0.0
    day_high: Optional[float] = None
    day_low: Optional[float] = None
    previous_close: Optional[float] = None
    timestamp: Optional[datetime] = None

    def __post_init__(self):
        symbol = (self.symbol or "").strip().upper()
        if not symbol:
            raise InvalidQuoteError("Quote has no symbol")
        if self.price is None or self.price <= 0:
            raise InvalidQuoteError(
                f"Quote for {symbol} has a non-positive price",
                details={"symbol": symbol, "price": self.price},
            )
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "symbol", symbol)
        object.__setattr__(self, "volume", float(self.volume or 0))
        object.__setattr__(self, "timestamp", to_naive_utc(self.timestamp) or utcnow())

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StockQuote":
        """Build from a dict using either snake_case or the feed's camelCase keys."""

        def pick(*keys):
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        return cls(
            symbol=pick("symbol"),
            price=pick("price"),
            volume=pick("volume") or 0,
            day_high=pick("day_high", "dayHigh", "high"),
            day_low=pick("day_low", "dayLow", "low"),
            previous_close=pick("previous_close", "previousClose"),
            timestamp=pick("timestamp", "last_updated"),
        )

    @classmethod
    def from_stock(cls, stock: Any) -> "StockQuote":
        """Build from a ``Stock`` row."""
        return cls(
            symbol=stock.symbol,
            price=stock.price,
            volume=stock.volume or 0,
            day_high=stock.day_high,
            day_low=stock.day_low,
            previous_close=stock.previous_close,
            timestamp=stock.last_trade_time or stock.last_updated,
        )


def build_stock_update(
    quote: StockQuote,
    base_price: float,
    percent_change: float,
    buy_points: float,
    sell_points: float,
    buy_flags: MilestoneFlags,
    sell_flags: MilestoneFlags,
) -> Dict[str, Any]:
    """
    Live broadcast payload for one stock.

    ``change`` and ``percentChange`` are measured from the daily base price.
    """
    return {
        "symbol": quote.symbol,
        "price": quote.price,
        "change": round(quote.price - base_price, 2),
        "percentChange": round(percent_change, 2),
        "volume": quote.volume,
        "dailyBuyPoints": buy_points,
        "dailySellPoints": sell_points,
        "dailyMilestonesHit": {
            "buy": buy_flags.to_dict(),
            "sell": sell_flags.to_dict(),
        },
    }
