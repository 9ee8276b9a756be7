"""Coinbase Exchange market-data client: products, ticker, paginated candles."""
from __future__ import annotations

import datetime
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from requests.exceptions import RequestException
from urllib3.util.retry import Retry

from .config import CONFIG
from .reliability import CircuitBreaker

logger = logging.getLogger(__name__)


class PriceSourceError(Exception):
    """Raised when the market-data API cannot serve a request."""


class RateLimitError(PriceSourceError):
    """Raised when Coinbase returns HTTP 429."""


@dataclass(frozen=True)
class Product:
    id: str
    status: str
    quote_currency: str


@dataclass(frozen=True)
class Ticker:
    price: Decimal
    volume: Decimal


@dataclass(frozen=True)
class Candle:
    time: datetime.datetime
    low: Decimal
    high: Decimal
    open: Decimal
    close: Decimal
    volume: Decimal


def _iso(ts: datetime.datetime) -> str:
    return ts.astimezone(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == '':
        return None
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def build_session(retries: int | None = None, backoff: float | None = None) -> requests.Session:
    """Session with retry/backoff to reduce transient connection failures."""
    session = requests.Session()
    retry = Retry(
        total=CONFIG['PRICE_FETCH_REQUEST_RETRIES'] if retries is None else retries,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(['GET']),
        backoff_factor=CONFIG['PRICE_FETCH_RETRY_BACKOFF'] if backoff is None else backoff,
        raise_on_status=False,
    )
    adapter = HTTPAdapter(pool_connections=16, pool_maxsize=32, max_retries=retry)
    session.mount('https://', adapter)
    session.mount('http://', adapter)
    session.headers.update({'User-Agent': 'spikewatch/1.0', 'Accept': 'application/json'})
    return session


class PriceSource:
    """Thin read-only client over the Coinbase Exchange public API.

    Every call carries a (connect, read) timeout and passes through a circuit
    breaker; while the breaker is open calls fail fast with PriceSourceError.
    """

    def __init__(self,
                 session: requests.Session | None = None,
                 base_url: str | None = None,
                 timeout: Tuple[int, int] | None = None,
                 breaker: CircuitBreaker | None = None,
                 max_candles: int | None = None):
        self.session = session or build_session()
        self.base_url = (base_url or CONFIG['COINBASE_API_BASE']).rstrip('/')
        self.timeout = timeout or (CONFIG['API_TIMEOUT_CONNECT'], CONFIG['API_TIMEOUT_READ'])
        self.breaker = breaker or CircuitBreaker(
            fail_threshold=CONFIG['PRICE_FETCH_CB_FAIL_THRESHOLD'],
            reset_seconds=CONFIG['PRICE_FETCH_CB_RESET_SECONDS'],
        )
        self.max_candles = max_candles or CONFIG['CANDLES_MAX_PER_REQUEST']
        self._metrics_lock = threading.Lock()
        self._metrics = {'total_calls': 0, 'errors': 0, 'rate_limited': 0, 'short_circuited': 0}

    def _count(self, key: str):
        with self._metrics_lock:
            self._metrics[key] += 1

    def get_metrics(self) -> Dict[str, Any]:
        with self._metrics_lock:
            data = dict(self._metrics)
        data['circuit_breaker'] = self.breaker.snapshot()
        return data

    def _get_json(self, path: str, params: Dict[str, Any] | None = None) -> Any:
        if not self.breaker.allow():
            self._count('short_circuited')
            raise PriceSourceError(f"circuit open, skipping {path}")
        self._count('total_calls')
        try:
            resp = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        except RequestException as e:
            self._count('errors')
            self.breaker.record_failure()
            raise PriceSourceError(f"{path}: {e}") from e
        if resp.status_code == 429:
            self._count('rate_limited')
            self.breaker.record_failure()
            raise RateLimitError(f"429 for {path}")
        if resp.status_code != 200:
            self._count('errors')
            if resp.status_code >= 500:
                self.breaker.record_failure()
            else:
                self.breaker.record_success()
            raise PriceSourceError(f"HTTP {resp.status_code} for {path}")
        try:
            data = resp.json()
        except ValueError as e:
            self._count('errors')
            self.breaker.record_failure()
            raise PriceSourceError(f"invalid JSON for {path}") from e
        self.breaker.record_success()
        return data

    def list_products(self) -> List[Product]:
        data = self._get_json('/products')
        if not isinstance(data, list):
            raise PriceSourceError('Unexpected products payload')
        products = []
        for entry in data:
            if not isinstance(entry, dict) or not entry.get('id'):
                continue
            products.append(Product(
                id=str(entry['id']),
                status=str(entry.get('status') or ''),
                quote_currency=str(entry.get('quote_currency') or '').upper(),
            ))
        return products

    def tradable_symbols(self, quote_currencies: List[str] | None = None) -> List[str]:
        """Online products quoted in one of the configured currencies (USD/EUR)."""
        quotes = set(quote_currencies or CONFIG['QUOTE_CURRENCIES'])
        return sorted(p.id for p in self.list_products() if p.status == 'online' and p.quote_currency in quotes)

    def get_ticker(self, symbol: str) -> Optional[Ticker]:
        """Current price and 24h volume, or None when unavailable/unparsable."""
        try:
            data = self._get_json(f'/products/{symbol}/ticker')
        except PriceSourceError as e:
            logger.warning(f"ticker {symbol} failed: {e}")
            return None
        if not isinstance(data, dict):
            return None
        price = _to_decimal(data.get('price'))
        volume = _to_decimal(data.get('volume'))
        if price is None or price <= 0:
            logger.debug(f"ticker {symbol} unusable price {data.get('price')!r}")
            return None
        return Ticker(price=price, volume=volume if volume is not None else Decimal(0))

    def get_candles(self, symbol: str, start: datetime.datetime, end: datetime.datetime,
                    granularity: int) -> List[Candle]:
        """One page of candles; malformed rows are dropped. Sorted oldest first."""
        params = {'start': _iso(start), 'end': _iso(end), 'granularity': granularity}
        data = self._get_json(f'/products/{symbol}/candles', params=params)
        if not isinstance(data, list):
            raise PriceSourceError(f"Unexpected candle payload for {symbol}")
        rows = []
        for entry in data:
            try:
                ts_raw, low, high, open_, close, vol = entry
                c = Candle(
                    time=datetime.datetime.fromtimestamp(int(ts_raw), tz=datetime.timezone.utc),
                    low=Decimal(str(low)),
                    high=Decimal(str(high)),
                    open=Decimal(str(open_)),
                    close=Decimal(str(close)),
                    volume=Decimal(str(vol)),
                )
            except (TypeError, ValueError, InvalidOperation, OverflowError):
                continue
            if c.low.is_finite() and c.high.is_finite():
                rows.append(c)
        rows.sort(key=lambda c: c.time)
        return rows

    def fetch_history(self, symbol: str, start: datetime.datetime, end: datetime.datetime,
                      granularity: int | None = None, stop_event: threading.Event | None = None) -> List[Candle]:
        """All candles in [start, end], requested in windows of at most max_candles.

        A failed window is logged and skipped; whatever was collected is returned.
        """
        granularity = granularity or CONFIG['CANDLE_GRANULARITY']
        window = datetime.timedelta(seconds=granularity * self.max_candles)
        candles: Dict[datetime.datetime, Candle] = {}
        chunk_start = start
        while chunk_start < end:
            if stop_event is not None and stop_event.is_set():
                logger.info(f"history {symbol}: shutdown requested, stopping pagination")
                break
            chunk_end = min(chunk_start + window, end)
            try:
                for candle in self.get_candles(symbol, chunk_start, chunk_end, granularity):
                    candles[candle.time] = candle
            except PriceSourceError as e:
                logger.warning(f"history {symbol} window {_iso(chunk_start)}..{_iso(chunk_end)} failed: {e}")
            chunk_start = chunk_end
        return [candles[k] for k in sorted(candles)]


__all__ = ['PriceSource', 'PriceSourceError', 'RateLimitError', 'Product', 'Ticker', 'Candle', 'build_session']
