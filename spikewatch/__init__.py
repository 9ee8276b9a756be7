"""Crypto price-spike detection and reporting engine."""

__version__ = "1.0.0"
