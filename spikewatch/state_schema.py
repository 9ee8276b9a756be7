"""Persisted state document and its migration defaults.

Version 2 wraps the table: {"version": 2, "saved_at": ..., "symbols": {...}}.
Version 1 (legacy) is the bare symbol -> record mapping. Records keep the
historical PascalCase field names; anything missing is defaulted here and
nowhere else.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import Band, BandState, SymbolMetrics

logger = logging.getLogger(__name__)

STATE_VERSION = 2
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SymbolMetricsRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    symbol: str = Field(alias='Symbol')
    average_min: Decimal = Field(Decimal(0), alias='AverageMin')
    average_max: Decimal = Field(Decimal(0), alias='AverageMax')
    absolute_min: Decimal = Field(Decimal(0), alias='AbsoluteMin')
    absolute_max: Decimal = Field(Decimal(0), alias='AbsoluteMax')
    previous_absolute_min: Optional[Decimal] = Field(None, alias='PreviousAbsoluteMin')
    current_price: Decimal = Field(Decimal(0), alias='CurrentPrice')
    volume: Decimal = Field(Decimal(0), alias='Volume')
    average_price: Decimal = Field(Decimal(0), alias='AveragePrice')
    daily_price_sum: Decimal = Field(Decimal(0), alias='DailyPriceSum')
    daily_price_count: int = Field(0, alias='DailyPriceCount')
    daily_min: Decimal = Field(Decimal(0), alias='DailyMin')
    daily_max: Decimal = Field(Decimal(0), alias='DailyMax')
    daily_price_change: Decimal = Field(Decimal(0), alias='DailyPriceChange')
    stored_below_avg_min_threshold: Optional[Decimal] = Field(None, alias='StoredBelowAvgMinThreshold')
    stored_above_avg_max_threshold: Optional[Decimal] = Field(None, alias='StoredAboveAvgMaxThreshold')
    is_passed_below_avg_min_previous: bool = Field(False, alias='IsPassedBelowAvgMinPrevious')
    is_passed_above_avg_max_previous: bool = Field(False, alias='IsPassedAboveAvgMaxPrevious')
    daily_volatility_count: int = Field(0, alias='DailyVolatilityCount')
    # Missing LastUpdated means the history is unknown; epoch forces a refresh.
    last_updated: datetime = Field(EPOCH, alias='LastUpdated')
    last_price_update: Optional[datetime] = Field(None, alias='LastPriceUpdate')
    last_average_update: Optional[datetime] = Field(None, alias='LastAverageUpdate')

    @field_validator('last_updated', 'last_price_update', 'last_average_update')
    @classmethod
    def _assume_utc(cls, value):
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        return value

    @model_validator(mode='after')
    def _fill_defaults(self):
        if self.previous_absolute_min is None:
            self.previous_absolute_min = self.absolute_min
        return self

    def to_metrics(self) -> SymbolMetrics:
        below = self.stored_below_avg_min_threshold
        above = self.stored_above_avg_max_threshold
        if below is not None and above is not None:
            keep_above = self.current_price > self.average_max
            logger.warning(f"state {self.symbol}: both band thresholds stored; keeping "
                           f"{'above' if keep_above else 'below'} side")
            if keep_above:
                below = None
            else:
                above = None
        if below is not None:
            band = BandState.below(below)
        elif above is not None:
            band = BandState.above(above)
        else:
            band = BandState.inside()
        if self.is_passed_below_avg_min_previous:
            last_crossing = Band.BELOW
        elif self.is_passed_above_avg_max_previous:
            last_crossing = Band.ABOVE
        else:
            last_crossing = None
        return SymbolMetrics(
            symbol=self.symbol,
            average_min=self.average_min,
            average_max=self.average_max,
            absolute_min=self.absolute_min,
            absolute_max=self.absolute_max,
            previous_absolute_min=self.previous_absolute_min,
            current_price=self.current_price,
            volume=self.volume,
            average_price=self.average_price,
            daily_price_sum=self.daily_price_sum,
            daily_price_count=self.daily_price_count,
            daily_min=self.daily_min,
            daily_max=self.daily_max,
            daily_price_change=self.daily_price_change,
            band=band,
            last_crossing=last_crossing,
            daily_volatility_count=self.daily_volatility_count,
            last_updated=self.last_updated,
            last_price_update=self.last_price_update,
            last_average_update=self.last_average_update,
        )

    @classmethod
    def from_metrics(cls, m: SymbolMetrics) -> 'SymbolMetricsRecord':
        return cls(
            symbol=m.symbol,
            average_min=m.average_min,
            average_max=m.average_max,
            absolute_min=m.absolute_min,
            absolute_max=m.absolute_max,
            previous_absolute_min=m.previous_absolute_min,
            current_price=m.current_price,
            volume=m.volume,
            average_price=m.average_price,
            daily_price_sum=m.daily_price_sum,
            daily_price_count=m.daily_price_count,
            daily_min=m.daily_min,
            daily_max=m.daily_max,
            daily_price_change=m.daily_price_change,
            stored_below_avg_min_threshold=m.stored_below_avg_min_threshold,
            stored_above_avg_max_threshold=m.stored_above_avg_max_threshold,
            is_passed_below_avg_min_previous=m.is_passed_below_avg_min_previous,
            is_passed_above_avg_max_previous=m.is_passed_above_avg_max_previous,
            daily_volatility_count=m.daily_volatility_count,
            last_updated=m.last_updated or EPOCH,
            last_price_update=m.last_price_update,
            last_average_update=m.last_average_update,
        )


class StateDocument(BaseModel):
    version: int = STATE_VERSION
    saved_at: Optional[datetime] = None
    symbols: Dict[str, SymbolMetricsRecord] = Field(default_factory=dict)

    @model_validator(mode='before')
    @classmethod
    def _upgrade_legacy(cls, data: Any):
        # v1: the whole document is the symbol table
        if isinstance(data, dict) and 'symbols' not in data:
            return {'version': 1, 'symbols': data}
        return data

    @model_validator(mode='after')
    def _key_by_symbol(self):
        # index by the record's own Symbol
        self.symbols = {rec.symbol: rec for rec in self.symbols.values()}
        return self


def _with_symbol_keys(data: Any) -> Any:
    """Legacy records sometimes omit Symbol; take it from the mapping key."""
    if not isinstance(data, dict):
        return data
    table = data['symbols'] if 'symbols' in data else data
    if not isinstance(table, dict):
        return data
    fixed = {}
    for key, rec in table.items():
        if isinstance(rec, dict) and 'Symbol' not in rec and 'symbol' not in rec:
            rec = {**rec, 'Symbol': key}
        fixed[key] = rec
    if 'symbols' in data:
        return {**data, 'symbols': fixed}
    return fixed


def parse_state(data: Any) -> Dict[str, SymbolMetrics]:
    """Validate a decoded JSON document into a metrics table (raises on bad input)."""
    doc = StateDocument.model_validate(_with_symbol_keys(data))
    if doc.version < STATE_VERSION:
        logger.info(f"state: upgrading document from version {doc.version} to {STATE_VERSION}")
    return {symbol: rec.to_metrics() for symbol, rec in doc.symbols.items()}


def dump_state(table: Dict[str, SymbolMetrics], saved_at: datetime | None = None) -> Dict[str, Any]:
    doc = StateDocument(
        version=STATE_VERSION,
        saved_at=saved_at or datetime.now(timezone.utc),
        symbols={symbol: SymbolMetricsRecord.from_metrics(m) for symbol, m in table.items()},
    )
    return doc.model_dump(mode='json', by_alias=True)
