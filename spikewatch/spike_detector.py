"""
Spike detection pass over every tracked symbol.

Per tick and per band side the hysteresis works as:
    inside band --(price crosses edge)--> outside, threshold=price   [THRESHOLD SET]
    outside     --(price moves further)--> outside, threshold=price  [NEW LOW / NEW HIGH]
    outside     --(price re-enters band)--> inside                   [silent]

Absolute extremes are checked independently and may fire in the same pass.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Tuple

from .alert_text import build_event_text
from .config import CONFIG
from .metrics_store import MetricsStore, utcnow
from .models import Band, BandState, Event, EventKind, SymbolEvents, SymbolMetrics
from .price_source import PriceSource, PriceSourceError

logger = logging.getLogger(__name__)


def _event(m: SymbolMetrics, kind: EventKind, price: Decimal, reference: Decimal, score: Decimal) -> Event:
    return Event(symbol=m.symbol, kind=kind, message=build_event_text(kind, price, reference), score=score)


def update_daily(m: SymbolMetrics, price: Decimal, volume: Decimal, now: datetime) -> None:
    """Roll the day if needed, then fold one observation into the intraday stats."""
    if m.is_new_day(now):
        m.reset_daily()
    if m.daily_price_count == 0:
        low, high = price, price
    else:
        low, high = min(m.daily_min, price), max(m.daily_max, price)
    total = m.daily_price_sum + price
    count = m.daily_price_count + 1
    average = total / count
    m.current_price = price
    m.volume = volume
    m.daily_min = low
    m.daily_max = high
    m.daily_price_change = high - low
    m.daily_price_sum = total
    m.daily_price_count = count
    m.average_price = average
    m.last_price_update = now


def check_band(m: SymbolMetrics, price: Decimal) -> List[Event]:
    events: List[Event] = []
    band = m.band
    if price < m.average_min:
        if band.side is not Band.BELOW:
            m.band = BandState.below(price)
            events.append(_event(m, EventKind.BELOW_AVG_MIN, price, m.average_min, m.average_min - price))
            if m.last_crossing is Band.ABOVE:
                m.daily_volatility_count += 1
            m.last_crossing = Band.BELOW
        elif price < band.threshold:
            events.append(_event(m, EventKind.NEW_LOW, price, band.threshold, band.threshold - price))
            m.band = BandState.below(price)
    elif price > m.average_max:
        if band.side is not Band.ABOVE:
            m.band = BandState.above(price)
            events.append(_event(m, EventKind.ABOVE_AVG_MAX, price, m.average_max, price - m.average_max))
            if m.last_crossing is Band.BELOW:
                m.daily_volatility_count += 1
            m.last_crossing = Band.ABOVE
        elif price > band.threshold:
            events.append(_event(m, EventKind.NEW_HIGH, price, band.threshold, price - band.threshold))
            m.band = BandState.above(price)
    else:
        m.band = BandState.inside()
    return events


def check_absolute(m: SymbolMetrics, price: Decimal) -> List[Event]:
    events: List[Event] = []
    if price < m.absolute_min:
        events.append(_event(m, EventKind.NEW_ABSOLUTE_MIN, price, m.absolute_min, m.absolute_min - price))
        m.previous_absolute_min = m.absolute_min
        m.absolute_min = price
    if price > m.absolute_max:
        events.append(_event(m, EventKind.NEW_ABSOLUTE_MAX, price, m.absolute_max, price - m.absolute_max))
        m.absolute_max = price
    return events


def apply_tick(m: SymbolMetrics, price: Decimal, volume: Decimal, now: datetime) -> List[Event]:
    if not price.is_finite() or price <= 0:
        raise ValueError(f"{m.symbol}: unusable price {price}")
    if not volume.is_finite():
        raise ValueError(f"{m.symbol}: unusable volume {volume}")
    update_daily(m, price, volume, now)
    return check_band(m, price) + check_absolute(m, price)


class SpikeDetector:
    def __init__(self,
                 store: MetricsStore,
                 source: PriceSource,
                 min_volume: Decimal | float | None = None,
                 average_max_age: timedelta | None = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.source = source
        self.min_volume = Decimal(str(CONFIG['MIN_TICKER_VOLUME'] if min_volume is None else min_volume))
        self.average_max_age = average_max_age or timedelta(hours=CONFIG['AVERAGE_REFRESH_HOURS'])
        self._clock = clock

    def process_symbol(self, symbol: str, stop_event: threading.Event | None = None) -> List[Event]:
        ticker = self.source.get_ticker(symbol)
        if ticker is None or ticker.volume <= self.min_volume:
            return []
        now = self._clock()
        current = self.store.get(symbol)
        if current is None:
            return []
        if current.averages_stale(now, self.average_max_age):
            try:
                self.store.refresh_symbol_history(symbol, stop_event)
            except PriceSourceError as e:
                logger.warning(f"averages {symbol}: refresh failed, keeping previous window: {e}")
        return self.store.apply(symbol, lambda m: apply_tick(m, ticker.price, ticker.volume, now)) or []

    def recalculate(self, stop_event: threading.Event | None = None) -> Tuple[Dict[str, SymbolEvents], Dict[str, SymbolMetrics]]:
        """One detection pass.

        Returns events keyed by symbol (symbols without events omitted) and a
        snapshot of every tracked symbol's metrics.
        """
        if not self.store.initialized and not self.store.initialize(stop_event):
            logger.error('detector: metrics store not initialized, skipping pass')
            return {}, self.store.snapshot()
        results: Dict[str, SymbolEvents] = {}
        for symbol in self.store.symbols():
            if stop_event is not None and stop_event.is_set():
                logger.info('detector: shutdown requested, ending pass early')
                break
            try:
                events = self.process_symbol(symbol, stop_event)
            except Exception:
                logger.exception(f"detector: {symbol} failed, skipping")
                continue
            if events:
                results[symbol] = SymbolEvents(symbol, events)
        if results or self.store.is_dirty:
            self.store.save_state()
        logger.info('detector.pass_complete', extra={'event': 'pass_complete', 'symbols_with_events': len(results)})
        return results, self.store.snapshot()


__all__ = ['SpikeDetector', 'apply_tick', 'check_band', 'check_absolute', 'update_daily']
