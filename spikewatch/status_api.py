"""Read-only status endpoints served next to the worker loop."""
from __future__ import annotations

from flask import Flask, jsonify

from .state_schema import SymbolMetricsRecord


def create_app(runner) -> Flask:
    app = Flask(__name__)

    @app.get('/api/health')
    def health():
        summary = runner.last_summary
        body = {
            'status': 'ok' if runner.store.initialized else 'initializing',
            'uptime_seconds': round(runner.uptime_seconds(), 1),
            'symbols_tracked': len(runner.store),
            'last_cycle': summary.to_dict() if summary else None,
            'price_source': runner.source.get_metrics(),
        }
        return jsonify(body)

    @app.get('/api/metrics/<symbol>')
    def symbol_metrics(symbol):
        m = runner.store.get(symbol.upper())
        if m is None:
            return jsonify({'error': 'symbol not tracked', 'symbol': symbol.upper()}), 404
        record = SymbolMetricsRecord.from_metrics(m).model_dump(mode='json', by_alias=True)
        return jsonify({'metrics': record})

    return app


__all__ = ['create_app']
