"""
Pure fantasy points functions.

Every score here is an absolute total for one scope (a team's pick in a
contest, or one stock's daily screener side) at one instant. Callers diff
the total against the last total they applied; that diff is the only thing
ever added to a running score, so replaying an observation is harmless.

Nothing in this module touches the database.
"""

import math
from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, Optional


class Direction(str, Enum):
    """Which way a pick wants the price to move."""

    BUY = "BUY"    # up is good
    SELL = "SELL"  # down is good


# 1 movement unit per 0.1% away from baseline
MOVEMENT_STEP_PERCENT = 0.1
WRONG_DIRECTION_FACTOR = -0.5

# (threshold %, bonus, flag)
MILESTONE_BONUSES = (
    (2, 10, "m2"),
    (5, 25, "m5"),
    (10, 60, "m10"),
    (15, 120, "m15"),
)

DAY_EXTREME_REWARD = 20
DAY_EXTREME_PENALTY = -10

# (multiple of smoothed volume, bonus, flag)
VOLUME_SPIKE_BONUSES = (
    (2, 5, "volume_2x"),
    (3, 10, "volume_3x"),
)


@dataclass(frozen=True)
class MilestoneFlags:
    """One-way latches for a scoring scope. All start false."""

    m2: bool = False
    m5: bool = False
    m10: bool = False
    m15: bool = False
    day_high: bool = False
    day_low: bool = False
    volume_2x: bool = False
    volume_3x: bool = False

    @classmethod
    def field_names(cls):
        return [f.name for f in fields(cls)]

    @classmethod
    def from_record(cls, record: Any, prefix: str = "") -> "MilestoneFlags":
        """Read latches off an ORM row, optionally from prefixed columns (``buy_m2``)."""
        values = {}
        for name in cls.field_names():
            column = f"{prefix}{name}"
            if hasattr(record, column):
                values[name] = bool(getattr(record, column))
        return cls(**values)

    def apply_to(self, record: Any, prefix: str = "") -> None:
        """Write latches onto an ORM row. Columns the row lacks are skipped."""
        for name, value in asdict(self).items():
            column = f"{prefix}{name}"
            if hasattr(record, column):
                setattr(record, column, value)

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


@dataclass(frozen=True)
class PointsBreakdown:
    """Absolute score for one scope plus how it was made up."""

    percent_change: float
    movement_units: int
    movement_points: float
    milestone_points: float
    day_extreme_points: float
    volume_points: float
    total_points: float
    flags: MilestoneFlags

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["flags"] = self.flags.to_dict()
        return data


def percent_change(price: float, baseline: float) -> float:
    """Signed percent move from baseline. A non-positive baseline yields 0."""
    if not baseline or baseline <= 0:
        return 0.0
    return (price - baseline) / baseline * 100


def movement_units(pct: float) -> int:
    """
    Whole 0.1% steps in ``pct``.

    The quotient is rounded to 9 places before flooring so float noise such
    as ``0.3 / 0.1 == 2.9999999999999996`` still counts as 3 units.

    Examples:
        >>> movement_units(2.0)
        20
        >>> movement_units(-0.35)
        3
    """
    return int(math.floor(round(abs(pct) / MOVEMENT_STEP_PERCENT, 9)))


def movement_points(pct: float, direction: Direction) -> float:
    """Units earned for the right direction, half-units lost for the wrong one."""
    units = movement_units(pct)
    if units == 0:
        return 0.0
    correct = (pct > 0 and direction == Direction.BUY) or (pct < 0 and direction == Direction.SELL)
    return float(units) if correct else units * WRONG_DIRECTION_FACTOR


def crossed_milestone(previous_pct: float, pct: float, threshold: float, direction: Direction) -> bool:
    """True when this observation crosses ``threshold`` in the favourable direction."""
    if direction == Direction.BUY:
        return previous_pct < threshold <= pct
    return previous_pct > -threshold >= pct


class PointsCalculator:
    """
    Movement + milestone formula shared by team scoring and the daily screener.

    Args:
        has_day_high_low: Score day-high/day-low latches (team scope).
        has_volume_spikes: Score 2x/3x volume spike latches (screener scope).
    """

    def __init__(self, has_day_high_low: bool = False, has_volume_spikes: bool = False):
        self.has_day_high_low = has_day_high_low
        self.has_volume_spikes = has_volume_spikes

    def calculate(
        self,
        pct: float,
        previous_pct: float,
        direction: Direction,
        flags: Optional[MilestoneFlags] = None,
        price: Optional[float] = None,
        day_high: Optional[float] = None,
        day_low: Optional[float] = None,
        volume: Optional[float] = None,
        volume_baseline: Optional[float] = None,
    ) -> PointsBreakdown:
        """
        Recompute the absolute total for one scope.

        Latches only ever go false -> true. The total counts the bonus of
        every latch that is set, so a bonus shows up in the diff exactly once,
        on the observation that set it.
        """
        direction = Direction(direction)
        flags = flags or MilestoneFlags()
        updates: Dict[str, bool] = {}

        for threshold, _bonus, name in MILESTONE_BONUSES:
            if not getattr(flags, name) and crossed_milestone(previous_pct, pct, threshold, direction):
                updates[name] = True

        if self.has_day_high_low and price is not None:
            if not flags.day_high and day_high and day_high > 0 and price >= day_high:
                updates["day_high"] = True
            if not flags.day_low and day_low and day_low > 0 and price <= day_low:
                updates["day_low"] = True

        if self.has_volume_spikes and volume is not None and volume_baseline and volume_baseline > 0:
            ratio = volume / volume_baseline
            for multiple, _bonus, name in VOLUME_SPIKE_BONUSES:
                if not getattr(flags, name) and ratio >= multiple:
                    updates[name] = True

        if updates:
            flags = replace(flags, **updates)

        moved = movement_points(pct, direction)
        milestones = float(sum(bonus for _t, bonus, name in MILESTONE_BONUSES if getattr(flags, name)))

        extremes = 0.0
        if self.has_day_high_low:
            if flags.day_high:
                extremes += DAY_EXTREME_REWARD if direction == Direction.BUY else DAY_EXTREME_PENALTY
            if flags.day_low:
                extremes += DAY_EXTREME_REWARD if direction == Direction.SELL else DAY_EXTREME_PENALTY

        spikes = 0.0
        if self.has_volume_spikes:
            spikes = float(sum(bonus for _m, bonus, name in VOLUME_SPIKE_BONUSES if getattr(flags, name)))

        return PointsBreakdown(
            percent_change=pct,
            movement_units=movement_units(pct),
            movement_points=moved,
            milestone_points=milestones,
            day_extreme_points=extremes,
            volume_points=spikes,
            total_points=round(moved + milestones + extremes + spikes, 2),
            flags=flags,
        )


# Contest pick scoring: day extremes, no volume spikes
TEAM_CALCULATOR = PointsCalculator(has_day_high_low=True)

# Daily screener scoring: volume spikes, no day extremes
SCREENER_CALCULATOR = PointsCalculator(has_volume_spikes=True)
