"""Short-horizon buy suggestions derived from the intraday metrics.

Single scenario: buy now, sell back at today's running average price, with
two flat fees plus a basis-point fee on the coin price. Recomputed every
cycle, never persisted.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, List, Optional

from .config import CONFIG
from .models import Opportunity, SymbolMetrics

logger = logging.getLogger(__name__)

OPPORTUNITY_TYPE = 'BUY_CURRENT_SELL_DAILY_AVG'
HUNDRED = Decimal(100)
BPS = Decimal(10000)


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class OpportunityAnalyzer:
    def __init__(self,
                 buy_fee: Decimal | str | None = None,
                 sell_fee: Decimal | str | None = None,
                 price_fee_bps: Decimal | str | None = None,
                 notional: Decimal | str | None = None,
                 min_profit_pct: Decimal | str | None = None):
        self.buy_fee = _dec(CONFIG['FEE_BUY_FLAT'] if buy_fee is None else buy_fee)
        self.sell_fee = _dec(CONFIG['FEE_SELL_FLAT'] if sell_fee is None else sell_fee)
        self.price_fee_bps = _dec(CONFIG['FEE_PRICE_BPS'] if price_fee_bps is None else price_fee_bps)
        self.notional = _dec(CONFIG['OPPORTUNITY_NOTIONAL'] if notional is None else notional)
        self.min_profit_pct = _dec(CONFIG['OPPORTUNITY_MIN_PCT'] if min_profit_pct is None else min_profit_pct)

    def total_fees(self, price: Decimal) -> Decimal:
        return self.buy_fee + self.sell_fee + price * self.price_fee_bps / BPS

    @staticmethod
    def _recommendation(pct: Decimal) -> str:
        if pct >= 5:
            return 'STRONG BUY'
        if pct >= 2:
            return 'BUY'
        return 'CONSIDER'

    def evaluate(self, m: SymbolMetrics) -> Optional[Opportunity]:
        if m.average_price <= 0 or m.current_price <= 0:
            return None
        fees = self.total_fees(m.current_price)
        units = self.notional / m.current_price
        profit = units * (m.average_price - m.current_price) - fees
        pct = profit / self.notional * HUNDRED
        if profit <= 0 or pct <= self.min_profit_pct:
            return None
        downside = m.current_price - m.daily_min
        reward = m.average_price - m.current_price
        ratio = reward / downside if downside > 0 else None
        return Opportunity(
            symbol=m.symbol,
            opportunity_type=OPPORTUNITY_TYPE,
            current_price=m.current_price,
            average_price=m.average_price,
            daily_min=m.daily_min,
            daily_max=m.daily_max,
            total_fees=fees,
            profit=profit,
            profit_percentage=pct,
            risk_reward_ratio=ratio,
            recommendation=self._recommendation(pct),
            volume=m.volume,
            daily_volatility_count=m.daily_volatility_count,
        )

    def analyze(self, snapshot: Dict[str, SymbolMetrics]) -> List[Opportunity]:
        """Qualifying symbols, best percentage profit first."""
        found = [o for o in (self.evaluate(m) for m in snapshot.values()) if o is not None]
        found.sort(key=lambda o: (-o.profit_percentage, o.symbol))
        logger.debug(f"opportunities: {len(found)} of {len(snapshot)} symbols qualify")
        return found


__all__ = ['OpportunityAnalyzer', 'OPPORTUNITY_TYPE']
