"""Authoritative per-symbol metrics table with JSON persistence and gap filling.

One lock guards the whole table. It is held only for in-memory
read-modify-write of a single symbol (or a full copy for saving); network
calls and file I/O always happen outside it.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, TypeVar

from pydantic import ValidationError

from .config import CONFIG
from .history import summarize_window
from .models import SymbolMetrics
from .price_source import PriceSource, PriceSourceError
from .state_schema import dump_state, parse_state

logger = logging.getLogger(__name__)

T = TypeVar('T')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetricsStore:
    def __init__(self,
                 source: PriceSource,
                 state_path: str | os.PathLike | None = None,
                 history_days: int | None = None,
                 granularity: int | None = None,
                 max_workers: int | None = None,
                 clock: Callable[[], datetime] = utcnow):
        self.source = source
        self.state_path = Path(state_path or CONFIG['STATE_FILE'])
        self.history_window = timedelta(days=history_days or CONFIG['HISTORY_DAYS'])
        self.granularity = granularity or CONFIG['CANDLE_GRANULARITY']
        self.max_workers = max_workers or CONFIG['HISTORY_MAX_WORKERS']
        self._clock = clock
        self._lock = threading.Lock()
        self._init_lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._table: Dict[str, SymbolMetrics] = {}
        self._initialized = False
        self._dirty = False
        self._attempted_on_load: Set[str] = set()

    # ------------------------------------------------------------------
    # table access
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def is_dirty(self) -> bool:
        with self._lock:
            return self._dirty

    def __len__(self) -> int:
        with self._lock:
            return len(self._table)

    def __contains__(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._table

    def symbols(self) -> List[str]:
        with self._lock:
            return sorted(self._table)

    def get(self, symbol: str) -> Optional[SymbolMetrics]:
        """Detached copy of one symbol's metrics."""
        with self._lock:
            m = self._table.get(symbol)
            return m.copy() if m is not None else None

    def snapshot(self) -> Dict[str, SymbolMetrics]:
        with self._lock:
            return {s: m.copy() for s, m in self._table.items()}

    def apply(self, symbol: str, fn: Callable[[SymbolMetrics], T], persist: bool = False) -> Optional[T]:
        """Run fn against the live record under the store lock.

        fn must be pure in-memory work. persist marks the table dirty so the
        next save_state() writes it.
        """
        with self._lock:
            m = self._table.get(symbol)
            if m is None:
                return None
            result = fn(m)
            if persist:
                self._dirty = True
            return result

    def put(self, metrics: SymbolMetrics) -> None:
        with self._lock:
            self._table[metrics.symbol] = metrics.copy()
            self._dirty = True

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def initialize(self, stop_event: threading.Event | None = None) -> bool:
        """Load persisted state (plus gap fill) or bootstrap from scratch.

        No-op once it has succeeded; a failed bootstrap is retried on the next call.
        """
        with self._init_lock:
            if self._initialized:
                return True
            if self.load_state(stop_event):
                self.refresh_data_if_needed(stop_event, skip=self._attempted_on_load)
                self._initialized = True
            elif self.initialize_from_scratch(stop_event):
                self._initialized = True
            if self._initialized:
                logger.info(f"MetricsStore initialized with {len(self)} symbols")
            return self._initialized

    def load_state(self, stop_event: threading.Event | None = None) -> bool:
        if not self.state_path.exists():
            logger.info(f"state file {self.state_path} not found")
            return False
        try:
            raw = self.state_path.read_text(encoding='utf-8').strip()
            if not raw:
                logger.warning(f"state file {self.state_path} is empty")
                return False
            table = parse_state(json.loads(raw))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"state file {self.state_path} unreadable, ignoring: {e}")
            return False
        if not table:
            logger.warning(f"state file {self.state_path} holds no symbols")
            return False
        with self._lock:
            self._table = table
            self._dirty = False
        logger.info(f"loaded {len(table)} symbols from {self.state_path}")

        now = self._clock()
        stale = [s for s, m in table.items() if m.history_stale(now, self.history_window)]
        self._attempted_on_load = set(stale)
        if stale:
            logger.info(f"{len(stale)} symbol(s) predate the {self.history_window.days}-day window, re-fetching")
            if self._refresh_symbols(stale, stop_event):
                self.save_state()
        return True

    def initialize_from_scratch(self, stop_event: threading.Event | None = None) -> bool:
        try:
            symbols = self.source.tradable_symbols()
        except PriceSourceError as e:
            logger.error(f"bootstrap: could not list products: {e}")
            return False
        logger.info(f"bootstrap: fetching {self.history_window.days} days of history for {len(symbols)} symbols")
        self._refresh_symbols(symbols, stop_event)
        if not len(self):
            logger.error('bootstrap: no symbol could be initialized')
            return False
        self.save_state()
        return True

    def refresh_data_if_needed(self, stop_event: threading.Event | None = None, skip: Iterable[str] = ()) -> int:
        """Backfill symbols older than the window and pick up new listings.

        Symbols in skip were already attempted by this startup and are left alone.
        """
        skip = set(skip)
        now = self._clock()
        with self._lock:
            targets = [s for s, m in self._table.items()
                       if s not in skip and m.history_stale(now, self.history_window)]
            known = set(self._table)
        try:
            listed = self.source.tradable_symbols()
            new = [s for s in listed if s not in known]
            if new:
                logger.info(f"{len(new)} newly listed symbol(s) to bootstrap")
            targets.extend(new)
        except PriceSourceError as e:
            logger.warning(f"refresh: product listing unavailable, skipping new symbols: {e}")
        if not targets:
            return 0
        refreshed = self._refresh_symbols(targets, stop_event)
        if refreshed:
            self.save_state()
        return refreshed

    def refresh_symbol_history(self, symbol: str, stop_event: threading.Event | None = None) -> bool:
        """Fetch the rolling window for one symbol and update its averages.

        Absolute extremes are seeded from the window only when the symbol is
        new; an existing record keeps them untouched.
        """
        end = self._clock()
        start = end - self.history_window
        candles = self.source.fetch_history(symbol, start, end, self.granularity, stop_event)
        summary = summarize_window(symbol, candles, start, end)
        if summary is None:
            logger.warning(f"history {symbol}: no candles collected, metrics not updated")
            return False
        with self._lock:
            m = self._table.get(symbol)
            if m is None:
                self._table[symbol] = SymbolMetrics(
                    symbol=symbol,
                    average_min=summary.average_min,
                    average_max=summary.average_max,
                    absolute_min=summary.absolute_min,
                    absolute_max=summary.absolute_max,
                    previous_absolute_min=summary.absolute_min,
                    last_updated=end,
                    last_average_update=end,
                )
            else:
                m.average_min = summary.average_min
                m.average_max = summary.average_max
                m.last_updated = end
                m.last_average_update = end
            self._dirty = True
        return True

    def _refresh_one(self, symbol: str, stop_event: threading.Event | None) -> bool:
        if stop_event is not None and stop_event.is_set():
            return False
        try:
            return self.refresh_symbol_history(symbol, stop_event)
        except PriceSourceError as e:
            logger.warning(f"history {symbol} failed: {e}")
            return False

    def _refresh_symbols(self, symbols: Iterable[str], stop_event: threading.Event | None = None) -> int:
        symbols = list(symbols)
        if not symbols:
            return 0
        refreshed = 0
        workers = max(1, min(self.max_workers, len(symbols)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='history') as ex:
            futs = {ex.submit(self._refresh_one, s, stop_event): s for s in symbols}
            for f in as_completed(futs):
                try:
                    if f.result():
                        refreshed += 1
                except Exception:
                    logger.exception(f"history {futs[f]} crashed, skipping")
        logger.info(f"history refreshed for {refreshed}/{len(symbols)} symbols")
        return refreshed

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def save_state(self) -> bool:
        with self._lock:
            table = {s: m.copy() for s, m in self._table.items()}
            self._dirty = False
        with self._save_lock:
            try:
                payload = dump_state(table, self._clock())
                self.state_path.parent.mkdir(parents=True, exist_ok=True)
                tmp = self.state_path.with_name(self.state_path.name + '.tmp')
                tmp.write_text(json.dumps(payload, indent=2), encoding='utf-8')
                os.replace(tmp, self.state_path)
            except (OSError, ValueError, ValidationError) as e:
                logger.error(f"saving state to {self.state_path} failed: {e}")
                with self._lock:
                    self._dirty = True
                return False
        logger.info('metrics_store.saved', extra={'event': 'state_saved', 'symbols': len(table)})
        return True


__all__ = ['MetricsStore', 'utcnow']
