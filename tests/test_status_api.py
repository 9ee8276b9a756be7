from unittest.mock import MagicMock

import pytest

from spikewatch.runner import SpikeRunner
from spikewatch.status_api import create_app


@pytest.fixture
def client(seeded_store, source, clock):
    detector = MagicMock()
    detector.source = source
    runner = SpikeRunner(seeded_store, detector, MagicMock(), MagicMock(), MagicMock(), MagicMock(), clock=clock)
    clock.advance(seconds=90)
    app = create_app(runner)
    app.config['TESTING'] = True
    return app.test_client()


def test_health_reports_status_and_breaker(client):
    resp = client.get('/api/health')
    assert resp.status_code == 200
    body = resp.get_json()
    assert body['status'] == 'ok'
    assert body['symbols_tracked'] == 1
    assert body['uptime_seconds'] == 90.0
    assert body['last_cycle'] is None
    assert body['price_source']['circuit_breaker']['state'] == 'CLOSED'


def test_symbol_metrics_uses_persisted_field_names(client):
    resp = client.get('/api/metrics/x-usd')
    assert resp.status_code == 200
    metrics = resp.get_json()['metrics']
    assert metrics['Symbol'] == 'X-USD'
    assert metrics['AverageMin'] == '100'
    assert metrics['StoredBelowAvgMinThreshold'] is None


def test_unknown_symbol_is_404(client):
    resp = client.get('/api/metrics/NOPE-USD')
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'symbol not tracked'
