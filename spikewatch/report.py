"""
Per-subscriber crypto spike report.

A report is built from one subscriber task plus the global results of the
cycle. Symbols are placed into five exclusive sections, in order:

    1. primary symbols with events          (score, descending)
    2. droppers of the day                  (drop size, descending)
    3. most volatile symbols, top 10        (volatility count, descending)
    4. biggest intraday range, top 10       (daily max - min, descending)
    5. remaining symbols with events        (score, descending)

A symbol placed in an earlier section is never repeated later. Ties break
on symbol name so the output is deterministic. Subscribers whose symbols
produced no event in the cycle get no report.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .alert_text import fmt_pct, fmt_price, fmt_ts
from .metrics_store import utcnow
from .models import EventKind, Opportunity, SymbolEvents, SymbolMetrics
from .tasks import SubscriberTask

logger = logging.getLogger(__name__)

REPORT_SUBJECT = 'Crypto Spike Alerts & Metrics'
SECTION_LIMIT = 10
OPPORTUNITY_LIMIT = 10
ZERO = Decimal(0)

SECTION_TITLES = {
    'primary': '⭐ PRIMARY SYMBOLS ⭐',
    'droppers': '📉 THE DROPPER OF THE DAY 📉',
    'volatile': '📈 MOST VOLATILE SYMBOLS (Top 10) 📈',
    'price_change': '💰 BIGGEST PRICE CHANGE (Top 10) 💰',
    'remaining': '📊 REMAINING SYMBOLS (Sorted by Score) 📊',
}


@dataclass
class DropperEntry:
    symbol: str
    previous_min: Decimal
    current_min: Decimal
    timestamp: datetime
    current_price: Decimal
    average_price: Decimal

    @property
    def drop_amount(self) -> Decimal:
        return self.previous_min - self.current_min

    @property
    def drop_percentage(self) -> Decimal:
        if self.previous_min <= 0:
            return ZERO
        return self.drop_amount / self.previous_min * 100


class DropperTracker:
    """Day-scoped table of symbols that set a new all-time minimum today.

    Cleared on the first call of a new UTC day; a symbol is evicted as soon
    as its price is back above its rolling average minimum.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, DropperEntry] = {}
        self._day: date = clock().date()

    def _reset_if_new_day(self, today: date) -> None:
        if today != self._day:
            logger.info(f"daily droppers reset for new day: {today}")
            self._entries.clear()
            self._day = today

    def track(self, events: Dict[str, SymbolEvents], snapshot: Dict[str, SymbolMetrics]) -> None:
        now = self._clock()
        with self._lock:
            self._reset_if_new_day(now.date())
            for symbol, sym_events in events.items():
                m = snapshot.get(symbol)
                if m is None or not sym_events.has(EventKind.NEW_ABSOLUTE_MIN):
                    continue
                previous = self._entries.get(symbol)
                self._entries[symbol] = DropperEntry(
                    symbol=symbol,
                    # keep the day's first reference so the drop covers the whole day
                    previous_min=previous.previous_min if previous else m.previous_absolute_min,
                    current_min=m.absolute_min,
                    timestamp=now,
                    current_price=m.current_price,
                    average_price=m.average_price,
                )
                logger.info(f"tracked daily dropper {symbol}: previous {fmt_price(self._entries[symbol].previous_min)}"
                            f", current {fmt_price(m.absolute_min)}")
            for symbol in list(self._entries):
                m = snapshot.get(symbol)
                if m is not None and m.current_price > m.average_min:
                    logger.info(f"removed {symbol} from daily droppers - price {fmt_price(m.current_price)}"
                                f" above average min {fmt_price(m.average_min)}")
                    del self._entries[symbol]

    def entries(self) -> Dict[str, DropperEntry]:
        with self._lock:
            self._reset_if_new_day(self._clock().date())
            return dict(self._entries)


@dataclass
class ReportSection:
    key: str
    title: str
    symbols: List[str]


@dataclass
class Report:
    recipient: str
    subject: str
    sections: List[ReportSection]
    opportunities: List[Opportunity] = field(default_factory=list)
    body: str = ''

    def section(self, key: str) -> Optional[ReportSection]:
        return next((s for s in self.sections if s.key == key), None)

    @property
    def placed_symbols(self) -> List[str]:
        return [sym for s in self.sections for sym in s.symbols]


class ReportComposer:
    def __init__(self, droppers: DropperTracker, section_limit: int = SECTION_LIMIT,
                 opportunity_limit: int = OPPORTUNITY_LIMIT):
        self.droppers = droppers
        self.section_limit = section_limit
        self.opportunity_limit = opportunity_limit

    def compose(self,
                task: SubscriberTask,
                events: Dict[str, SymbolEvents],
                snapshot: Dict[str, SymbolMetrics],
                opportunities: Sequence[Opportunity] = ()) -> Optional[Report]:
        subscribed = set(task.symbols)
        relevant = {s: e for s, e in events.items() if s in subscribed and s in snapshot}
        if not relevant:
            logger.info(f"no symbols with events for {task.email}, skipping report")
            return None
        metrics = {s: m for s, m in snapshot.items() if s in subscribed}
        primary = set(task.primary_symbols)
        placed: set[str] = set()

        def score(symbol: str) -> Decimal:
            return relevant[symbol].score if symbol in relevant else ZERO

        def take(candidates: Iterable[str], key: Callable[[str], Decimal], limit: int | None = None) -> List[str]:
            chosen = sorted((s for s in set(candidates) if s not in placed), key=lambda s: (-key(s), s))
            if limit is not None:
                chosen = chosen[:limit]
            placed.update(chosen)
            return chosen

        droppers = {s: d for s, d in self.droppers.entries().items() if s in metrics}
        sections = [
            ReportSection('primary', SECTION_TITLES['primary'],
                          take((s for s in relevant if s in primary), score)),
            ReportSection('droppers', SECTION_TITLES['droppers'],
                          take(droppers, lambda s: droppers[s].drop_amount)),
            ReportSection('volatile', SECTION_TITLES['volatile'],
                          take((s for s, m in metrics.items() if m.daily_volatility_count > 0),
                               lambda s: Decimal(metrics[s].daily_volatility_count), self.section_limit)),
            ReportSection('price_change', SECTION_TITLES['price_change'],
                          take((s for s, m in metrics.items() if m.daily_price_change > 0),
                               lambda s: metrics[s].daily_price_change, self.section_limit)),
            ReportSection('remaining', SECTION_TITLES['remaining'], take(relevant, score)),
        ]
        picked = [o for o in opportunities if o.symbol in subscribed][:self.opportunity_limit]
        report = Report(recipient=task.email, subject=REPORT_SUBJECT, sections=sections, opportunities=picked)
        report.body = render_text(report, task, relevant, metrics, droppers)
        return report


def _header(title: str) -> List[str]:
    return [title, '=' * len(title), '']


def _metric_sheet(symbol: str, m: SymbolMetrics, sym_events: Optional[SymbolEvents]) -> List[str]:
    lines = [f"Symbol: {symbol}"]
    if sym_events is not None:
        lines.append(f"Score: {sym_events.score:.2f}")
        lines.append('Events:')
        lines.extend(f"  • {msg}" for msg in sym_events.messages)
    lines += [
        f"Current Price: {fmt_price(m.current_price)}",
        f"Volume: {fmt_price(m.volume)}",
        f"Daily Average Price: {fmt_price(m.average_price)} (from {m.daily_price_count} updates today)",
        f"Daily Range: {fmt_price(m.daily_min)} - {fmt_price(m.daily_max)}",
        f"Daily Change: {fmt_price(m.daily_price_change)}",
        f"Volatility Count: {m.daily_volatility_count}",
        f"2-Week Average Min: {fmt_price(m.average_min)}",
        f"2-Week Average Max: {fmt_price(m.average_max)}",
        f"All-Time Absolute Min: {fmt_price(m.absolute_min)}",
        f"All-Time Absolute Max: {fmt_price(m.absolute_max)}",
        f"Stored Below Avg Min Threshold: {fmt_price(m.stored_below_avg_min_threshold)}",
        f"Stored Above Avg Max Threshold: {fmt_price(m.stored_above_avg_max_threshold)}",
        f"Last Updated: {fmt_ts(m.last_updated)}",
        f"Last Price Update: {fmt_ts(m.last_price_update)}",
        f"Last Average Update: {fmt_ts(m.last_average_update)}",
        '',
    ]
    return lines


def _dropper_sheet(d: DropperEntry, m: SymbolMetrics) -> List[str]:
    recovery = m.current_price / d.current_min * 100 if d.current_min > 0 else ZERO
    return [
        f"Symbol: {d.symbol}",
        f"Current Price: {fmt_price(m.current_price)}",
        f"Current Percentage: {fmt_pct(recovery)}",
        f"Average Daily Price: {fmt_price(m.average_price)}",
        f"Previous Absolute Min: {fmt_price(d.previous_min)}",
        f"New Absolute Min: {fmt_price(d.current_min)}",
        f"Drop Amount: {fmt_price(d.drop_amount)}",
        f"Drop Percentage: {fmt_pct(d.drop_percentage)}",
        f"Time of Drop: {fmt_ts(d.timestamp)}",
        '',
    ]


def _opportunity_sheet(o: Opportunity) -> List[str]:
    ratio = f"{o.risk_reward_ratio:.4f}" if o.risk_reward_ratio is not None else 'n/a'
    return [
        f"Symbol: {o.symbol}",
        f"Opportunity Type: {o.opportunity_type}",
        f"Expected Profit: {o.profit:.2f} ({fmt_pct(o.profit_percentage)})",
        f"Current Price: {fmt_price(o.current_price)}",
        f"Daily Average Price: {fmt_price(o.average_price)}",
        f"Daily Range: {fmt_price(o.daily_min)} - {fmt_price(o.daily_max)}",
        f"Total Fees (Buy+Sell): {fmt_price(o.total_fees)}",
        f"Volume: {o.volume:.2f}",
        f"Daily Volatility Count: {o.daily_volatility_count}",
        f"Risk/Reward Ratio: {ratio}",
        f"Recommendation: {o.recommendation}",
        '',
    ]


def render_text(report: Report,
                task: SubscriberTask,
                events: Dict[str, SymbolEvents],
                metrics: Dict[str, SymbolMetrics],
                droppers: Dict[str, DropperEntry]) -> str:
    lines = ['Crypto Metrics Report', '']
    if report.opportunities:
        lines += _header('🚀 DAILY INVESTMENT OPPORTUNITIES (€100 MAX) 🚀')
        lines.append('Buy at the current price, sell at today\'s average price, after flat buy/sell fees '
                     'and the per-price fee.')
        lines.append('')
        for o in report.opportunities:
            lines += _opportunity_sheet(o)
    for section in report.sections:
        if not section.symbols:
            continue
        lines += _header(section.title)
        for symbol in section.symbols:
            if section.key == 'droppers':
                lines += _dropper_sheet(droppers[symbol], metrics[symbol])
            else:
                lines += _metric_sheet(symbol, metrics[symbol], events.get(symbol))
    lines.append('This report was generated automatically by the crypto spikes detection system.')
    if task.coinbase_name:
        lines += ['', *_header('🔗 COINBASE INTEGRATION')[:2], f"Account: {task.coinbase_name}"]
    return '\n'.join(lines)


__all__ = ['ReportComposer', 'Report', 'ReportSection', 'DropperTracker', 'DropperEntry', 'REPORT_SUBJECT',
           'render_text']
