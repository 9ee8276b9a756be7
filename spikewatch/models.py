"""Domain records shared by the store, detector, analyzer and report composer."""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional

ZERO = Decimal(0)


class Band(str, Enum):
    INSIDE = "inside"
    BELOW = "below"
    ABOVE = "above"


@dataclass(frozen=True)
class BandState:
    """Hysteresis memory: which side of the rolling band the price is on, and
    the most extreme price seen since it left the band."""
    side: Band = Band.INSIDE
    threshold: Optional[Decimal] = None

    @classmethod
    def inside(cls) -> 'BandState':
        return cls()

    @classmethod
    def below(cls, threshold: Decimal) -> 'BandState':
        return cls(Band.BELOW, threshold)

    @classmethod
    def above(cls, threshold: Decimal) -> 'BandState':
        return cls(Band.ABOVE, threshold)


@dataclass
class SymbolMetrics:
    symbol: str
    average_min: Decimal = ZERO
    average_max: Decimal = ZERO
    absolute_min: Decimal = ZERO
    absolute_max: Decimal = ZERO
    previous_absolute_min: Decimal = ZERO
    current_price: Decimal = ZERO
    volume: Decimal = ZERO
    average_price: Decimal = ZERO
    daily_price_sum: Decimal = ZERO
    daily_price_count: int = 0
    daily_min: Decimal = ZERO
    daily_max: Decimal = ZERO
    daily_price_change: Decimal = ZERO
    band: BandState = field(default_factory=BandState)
    # Side of the most recent band crossing; drives the volatility count.
    last_crossing: Optional[Band] = None
    daily_volatility_count: int = 0
    last_updated: Optional[datetime] = None
    last_price_update: Optional[datetime] = None
    last_average_update: Optional[datetime] = None

    @property
    def stored_below_avg_min_threshold(self) -> Optional[Decimal]:
        return self.band.threshold if self.band.side is Band.BELOW else None

    @property
    def stored_above_avg_max_threshold(self) -> Optional[Decimal]:
        return self.band.threshold if self.band.side is Band.ABOVE else None

    @property
    def is_passed_below_avg_min_previous(self) -> bool:
        return self.last_crossing is Band.BELOW

    @property
    def is_passed_above_avg_max_previous(self) -> bool:
        return self.last_crossing is Band.ABOVE

    def copy(self) -> 'SymbolMetrics':
        # every field is immutable, a shallow copy is a full snapshot
        return dataclasses.replace(self)

    def reset_daily(self) -> None:
        self.daily_min = ZERO
        self.daily_max = ZERO
        self.daily_price_change = ZERO
        self.daily_volatility_count = 0
        self.daily_price_sum = ZERO
        self.daily_price_count = 0
        self.average_price = ZERO

    def is_new_day(self, now: datetime) -> bool:
        if self.last_price_update is None:
            return True
        return self.last_price_update.date() != now.date()

    def averages_stale(self, now: datetime, max_age: timedelta) -> bool:
        return self.last_average_update is None or now - self.last_average_update > max_age

    def history_stale(self, now: datetime, horizon: timedelta) -> bool:
        return self.last_updated is None or now - self.last_updated > horizon


class EventKind(str, Enum):
    BELOW_AVG_MIN = "below_avg_min"
    NEW_LOW = "new_low"
    ABOVE_AVG_MAX = "above_avg_max"
    NEW_HIGH = "new_high"
    NEW_ABSOLUTE_MIN = "new_absolute_min"
    NEW_ABSOLUTE_MAX = "new_absolute_max"


@dataclass(frozen=True)
class Event:
    symbol: str
    kind: EventKind
    message: str
    score: Decimal


@dataclass
class SymbolEvents:
    """All events one detection pass produced for a symbol."""
    symbol: str
    events: List[Event] = field(default_factory=list)

    @property
    def score(self) -> Decimal:
        return sum((e.score for e in self.events), ZERO)

    @property
    def messages(self) -> List[str]:
        return [e.message for e in self.events]

    def has(self, kind: EventKind) -> bool:
        return any(e.kind is kind for e in self.events)


@dataclass
class Opportunity:
    symbol: str
    opportunity_type: str
    current_price: Decimal
    average_price: Decimal
    daily_min: Decimal
    daily_max: Decimal
    total_fees: Decimal
    profit: Decimal
    profit_percentage: Decimal
    risk_reward_ratio: Optional[Decimal]
    recommendation: str
    volume: Decimal
    daily_volatility_count: int
