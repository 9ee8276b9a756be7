import datetime
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from .price_source import Candle

logger = logging.getLogger(__name__)


@dataclass
class WindowSummary:
    """Rolling-window statistics computed from one history fetch."""
    average_min: Decimal
    average_max: Decimal
    absolute_min: Decimal
    absolute_max: Decimal
    days: int
    missing_days: List[datetime.date] = field(default_factory=list)


def daily_extremes(candles: Iterable[Candle]) -> Dict[datetime.date, Tuple[Decimal, Decimal]]:
    """Group candles by UTC calendar day -> (day low, day high)."""
    days: Dict[datetime.date, Tuple[Decimal, Decimal]] = {}
    for c in candles:
        day = c.time.astimezone(datetime.timezone.utc).date()
        low, high = days.get(day, (c.low, c.high))
        days[day] = (min(low, c.low), max(high, c.high))
    return days


def missing_days(present: Iterable[datetime.date], start: datetime.datetime,
                 end: datetime.datetime) -> List[datetime.date]:
    have = set(present)
    day = start.astimezone(datetime.timezone.utc).date()
    last = end.astimezone(datetime.timezone.utc).date()
    gaps = []
    while day <= last:
        if day not in have:
            gaps.append(day)
        day += datetime.timedelta(days=1)
    return gaps


def summarize_window(symbol: str, candles: List[Candle], start: datetime.datetime,
                     end: datetime.datetime) -> Optional[WindowSummary]:
    """Mean of daily minimums / maximums over the fetched window.

    Returns None when no candle was collected. Missing calendar days are
    logged, not treated as failure.
    """
    days = daily_extremes(candles)
    if not days:
        return None
    gaps = missing_days(days.keys(), start, end)
    if gaps:
        logger.info(f"history {symbol}: {len(gaps)} day(s) without candles: "
                    + ', '.join(d.isoformat() for d in gaps))
    lows = [lo for lo, _ in days.values()]
    highs = [hi for _, hi in days.values()]
    return WindowSummary(
        average_min=sum(lows, Decimal(0)) / len(lows),
        average_max=sum(highs, Decimal(0)) / len(highs),
        absolute_min=min(lows),
        absolute_max=max(highs),
        days=len(days),
        missing_days=gaps,
    )
