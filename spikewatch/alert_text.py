"""
Alert text builder for consistent event messages and report figures.

This centralizes message formatting so the detector and the report composer
don't build strings inline.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from .models import EventKind


def fmt_price(value: Any, decimals: int = 8) -> str:
    if value is None:
        return "None"
    return f"{Decimal(value):.{decimals}f}"


def fmt_pct(value: Any, decimals: int = 2) -> str:
    if value is None:
        return "n/a"
    return f"{Decimal(value):.{decimals}f}%"


def fmt_ts(value: datetime | None) -> str:
    if value is None:
        return "never"
    return f"{value:%Y-%m-%d %H:%M:%S} UTC"


_TEMPLATES = {
    EventKind.BELOW_AVG_MIN: "Price {price} is below average minimum {ref} - NEW THRESHOLD SET",
    EventKind.NEW_LOW: "Price {price} is below stored threshold {ref} - NEW LOW",
    EventKind.ABOVE_AVG_MAX: "Price {price} is above average maximum {ref} - NEW THRESHOLD SET",
    EventKind.NEW_HIGH: "Price {price} is above stored threshold {ref} - NEW HIGH",
    EventKind.NEW_ABSOLUTE_MIN: "Price {price} is below absolute minimum {ref} - NEW ABSOLUTE MIN",
    EventKind.NEW_ABSOLUTE_MAX: "Price {price} is above absolute maximum {ref} - NEW ABSOLUTE MAX",
}


def build_event_text(kind: EventKind, price: Decimal, reference: Decimal) -> str:
    """Message for one detector event; reference is the level that was crossed."""
    return _TEMPLATES[kind].format(price=fmt_price(price), ref=fmt_price(reference))
