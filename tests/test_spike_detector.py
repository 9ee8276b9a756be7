from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from spikewatch.models import Band, EventKind
from spikewatch.spike_detector import SpikeDetector, apply_tick, check_absolute, check_band

from conftest import day_candles, make_metrics

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
D = Decimal


def _kinds(events):
    return [e.kind for e in events]


def _run(m, prices, now=NOW):
    out = []
    for i, p in enumerate(prices):
        out.append(apply_tick(m, D(str(p)), D('1000'), now + timedelta(minutes=5 * i)))
    return out


def test_concrete_x_usd_scenario():
    m = make_metrics(now=NOW)
    tick1, tick2, tick3 = _run(m, [95, 92, 89])

    assert _kinds(tick1) == [EventKind.BELOW_AVG_MIN]
    assert 'below average minimum' in tick1[0].message
    assert tick1[0].message.endswith('NEW THRESHOLD SET')
    assert tick1[0].score == D('5')

    assert _kinds(tick2) == [EventKind.NEW_LOW]
    assert tick2[0].score == D('3')

    assert _kinds(tick3) == [EventKind.NEW_LOW, EventKind.NEW_ABSOLUTE_MIN]
    assert m.stored_below_avg_min_threshold == D('89')
    assert m.absolute_min == D('89')
    assert m.previous_absolute_min == D('90')


def test_below_threshold_set_after_first_tick():
    m = make_metrics(now=NOW)
    _run(m, [95])
    assert m.stored_below_avg_min_threshold == D('95')
    assert m.stored_above_avg_max_threshold is None


def test_hysteresis_single_threshold_event_then_only_strict_lows():
    m = make_metrics(now=NOW)
    results = _run(m, [99, 97, 97, 98, 99.5, 96])
    assert [_kinds(r) for r in results] == [
        [EventKind.BELOW_AVG_MIN],
        [EventKind.NEW_LOW],
        [],   # flat
        [],   # rising, still below
        [],
        [EventKind.NEW_LOW],
    ]
    assert m.daily_volatility_count == 0


def test_recovery_resets_memory():
    m = make_metrics(now=NOW)
    results = _run(m, [95, 105, 97])
    assert _kinds(results[1]) == []
    assert m.band.side is Band.BELOW
    assert _kinds(results[2]) == [EventKind.BELOW_AVG_MIN]
    assert m.stored_below_avg_min_threshold == D('97')


def test_high_side_is_symmetric():
    m = make_metrics(now=NOW)
    results = _run(m, [121, 125, 123, 131])
    assert [_kinds(r) for r in results] == [
        [EventKind.ABOVE_AVG_MAX],
        [EventKind.NEW_HIGH],
        [],
        [EventKind.NEW_HIGH, EventKind.NEW_ABSOLUTE_MAX],
    ]
    assert m.absolute_max == D('131')
    assert m.stored_above_avg_max_threshold == D('131')


def test_volatility_counts_only_opposite_side_crossings():
    m = make_metrics(now=NOW)
    _run(m, [95, 110, 96])          # same side twice
    assert m.daily_volatility_count == 0
    _run(m, [121], now=NOW + timedelta(hours=1))
    assert m.daily_volatility_count == 1
    assert m.last_crossing is Band.ABOVE
    _run(m, [110, 99], now=NOW + timedelta(hours=2))
    assert m.daily_volatility_count == 2


def test_jump_from_above_to_below_clears_above_side():
    m = make_metrics(now=NOW)
    _run(m, [125])
    events = _run(m, [95], now=NOW + timedelta(minutes=30))[0]
    assert _kinds(events) == [EventKind.BELOW_AVG_MIN]
    assert m.stored_above_avg_max_threshold is None
    assert m.stored_below_avg_min_threshold == D('95')
    assert m.daily_volatility_count == 1


def test_absolute_extremes_are_monotonic():
    m = make_metrics(now=NOW)
    mins, maxs = [], []
    for p in [95, 80, 85, 140, 135, 79, 150]:
        check_band(m, D(p))
        check_absolute(m, D(p))
        mins.append(m.absolute_min)
        maxs.append(m.absolute_max)
    assert all(b <= a for a, b in zip(mins, mins[1:]))
    assert all(b >= a for a, b in zip(maxs, maxs[1:]))
    assert (m.absolute_min, m.absolute_max) == (D('79'), D('150'))


def test_day_rollover_resets_before_threshold_logic():
    m = make_metrics(now=NOW)
    late = datetime(2024, 3, 10, 23, 58, tzinfo=timezone.utc)
    apply_tick(m, D('125'), D('10'), late)
    apply_tick(m, D('95'), D('10'), late + timedelta(minutes=1))
    assert m.daily_volatility_count == 1

    events = apply_tick(m, D('110'), D('10'), late + timedelta(minutes=4))
    assert events == []
    assert m.daily_min == D('110')
    assert m.daily_max == D('110')
    assert m.daily_price_change == D('0')
    assert m.daily_volatility_count == 0
    assert m.daily_price_count == 1
    assert m.average_price == D('110')


def test_daily_running_average():
    m = make_metrics(now=NOW)
    _run(m, [110, 112, 108])
    assert m.average_price == D('110')
    assert m.daily_min == D('108')
    assert m.daily_max == D('112')
    assert m.daily_price_change == D('4')
    assert m.current_price == D('108')


# -- SpikeDetector over the store ------------------------------------------

def test_recalculate_returns_events_and_full_snapshot(seeded_store, source, clock):
    seeded_store.put(make_metrics('QUIET-USD', now=clock()))
    source.set_price('X-USD', 95)
    source.set_price('QUIET-USD', 110)
    det = SpikeDetector(seeded_store, source, min_volume=1, clock=clock)

    events, snapshot = det.recalculate()
    assert list(events) == ['X-USD']
    assert events['X-USD'].score == D('5')
    assert set(snapshot) == {'X-USD', 'QUIET-USD'}
    assert snapshot['QUIET-USD'].current_price == D('110')
    assert seeded_store.state_path.exists()


def test_illiquid_or_missing_ticker_is_skipped(seeded_store, source, clock):
    source.set_price('X-USD', 50, volume='1')
    det = SpikeDetector(seeded_store, source, min_volume=1, clock=clock)
    events, snapshot = det.recalculate()
    assert events == {}
    assert snapshot['X-USD'].current_price == D('0')

    del source.tickers['X-USD']
    assert det.process_symbol('X-USD') == []


def test_stale_averages_refreshed_without_touching_absolutes(seeded_store, source, clock):
    seeded_store.apply('X-USD', lambda m: setattr(m, 'last_average_update', clock() - timedelta(days=2)))
    source.histories['X-USD'] = day_candles(clock(), 14, lows=[60], highs=[70])
    source.set_price('X-USD', 65)
    det = SpikeDetector(seeded_store, source, min_volume=1, clock=clock)

    events, snapshot = det.recalculate()
    m = snapshot['X-USD']
    assert m.average_min == D('60')
    assert m.average_max == D('70')
    # 65 sits inside the refreshed band; only the absolute minimum fires
    assert [e.kind for e in events['X-USD'].events] == [EventKind.NEW_ABSOLUTE_MIN]
    assert m.absolute_max == D('130')


def test_one_failing_symbol_does_not_stop_the_pass(seeded_store, source, clock):
    seeded_store.put(make_metrics('Y-USD', now=clock()))
    source.set_price('Y-USD', 95)
    real_ticker = source.get_ticker

    def flaky(symbol):
        if symbol == 'X-USD':
            raise RuntimeError('boom')
        return real_ticker(symbol)

    source.get_ticker = flaky
    det = SpikeDetector(seeded_store, source, min_volume=1, clock=clock)
    events, _ = det.recalculate()
    assert list(events) == ['Y-USD']


def test_shutdown_stops_between_symbols(seeded_store, source, clock):
    source.set_price('X-USD', 95)
    stop = MagicMock()
    stop.is_set.return_value = True
    det = SpikeDetector(seeded_store, source, min_volume=1, clock=clock)
    events, _ = det.recalculate(stop)
    assert events == {}


@pytest.mark.parametrize('bad', ['NaN', 'Infinity', '0', '-1'])
def test_unusable_tick_leaves_record_untouched(bad):
    m = make_metrics(now=NOW)
    _run(m, [95])
    before = m.copy()
    with pytest.raises(ValueError):
        apply_tick(m, D(bad), D('1000'), NOW + timedelta(minutes=5))
    assert m == before


def test_non_finite_ticker_skips_only_that_symbol(seeded_store, source, clock):
    seeded_store.put(make_metrics('BAD-USD', now=clock()))
    source.set_price('BAD-USD', 'NaN', volume='50')
    source.set_price('X-USD', 95)
    det = SpikeDetector(seeded_store, source, min_volume=1, clock=clock)

    events, snapshot = det.recalculate()
    assert list(events) == ['X-USD']
    assert snapshot['BAD-USD'].current_price == D('0')
    assert snapshot['BAD-USD'].daily_price_count == 0
    assert seeded_store.state_path.exists()

    # the next pass is unaffected
    source.set_price('BAD-USD', 99, volume='50')
    events, _ = det.recalculate()
    assert 'BAD-USD' in events
