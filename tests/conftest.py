"""
Shared pytest fixtures for the spike worker tests.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from spikewatch.metrics_store import MetricsStore
from spikewatch.models import SymbolMetrics
from spikewatch.price_source import Candle, Ticker


class FakeClock:
    """Settable UTC clock passed wherever a component takes clock=..."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeSource:
    """In-memory stand-in for PriceSource."""

    def __init__(self):
        self.tickers = {}
        self.histories = {}
        self.listed = []
        self.history_calls = []

    def get_ticker(self, symbol):
        return self.tickers.get(symbol)

    def set_price(self, symbol, price, volume='1000'):
        self.tickers[symbol] = Ticker(price=Decimal(str(price)), volume=Decimal(str(volume)))

    def tradable_symbols(self, quote_currencies=None):
        return list(self.listed)

    def fetch_history(self, symbol, start, end, granularity=None, stop_event=None):
        self.history_calls.append(symbol)
        return list(self.histories.get(symbol, []))

    def get_metrics(self):
        return {'total_calls': 0, 'errors': 0, 'circuit_breaker': {'state': 'CLOSED'}}


def candle(ts, low, high):
    return Candle(time=ts, low=Decimal(str(low)), high=Decimal(str(high)),
                  open=Decimal(str(low)), close=Decimal(str(high)), volume=Decimal('10'))


def day_candles(end, days, lows, highs):
    """One candle per day ending at `end`, lows/highs cycled over the days."""
    out = []
    for i in range(days):
        ts = end - timedelta(days=days - i)
        out.append(candle(ts, lows[i % len(lows)], highs[i % len(highs)]))
    return out


def make_metrics(symbol='X-USD', now=None, **overrides):
    now = now or datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
    base = dict(
        symbol=symbol,
        average_min=Decimal('100'),
        average_max=Decimal('120'),
        absolute_min=Decimal('90'),
        absolute_max=Decimal('130'),
        previous_absolute_min=Decimal('90'),
        last_updated=now,
        last_average_update=now,
    )
    base.update(overrides)
    return SymbolMetrics(**base)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def state_file(tmp_path):
    return tmp_path / 'data' / 'crypto_metrics.json'


@pytest.fixture
def store(source, state_file, clock):
    s = MetricsStore(source, state_path=state_file, history_days=14, granularity=3600, max_workers=2, clock=clock)
    return s


@pytest.fixture
def seeded_store(store, clock):
    """Store already initialized with one X-USD record (band 100..120, absolutes 90..130)."""
    store.put(make_metrics(now=clock()))
    store._initialized = True
    return store


def mk_response(status_code=200, payload=None):
    resp = MagicMock(status_code=status_code)
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


def write_json(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding='utf-8')
