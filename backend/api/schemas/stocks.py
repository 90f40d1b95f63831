"""Daily screener schemas"""
from datetime import datetime
from pydantic import BaseModel
from typing import Dict, Optional


class ScreenerRow(BaseModel):
    symbol: str
    basePrice: Optional[float] = None
    price: Optional[float] = None
    percentChange: float
    dailyBuyPoints: float
    dailySellPoints: float
    dailyMilestonesHit: Dict[str, Dict[str, bool]]
    resetAt: Optional[datetime] = None


class ScoreBreakdown(BaseModel):
    symbol: str
    basePrice: Optional[float] = None
    currentPrice: Optional[float] = None
    percentChange: float
    previousPercent: float
    movementUnits: int
    buyPoints: float
    sellPoints: float
    baseVolume: float
    milestones: Dict[str, Dict[str, bool]]
    resetAt: Optional[str] = None
