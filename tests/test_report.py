from decimal import Decimal

import pytest

from spikewatch.models import Event, EventKind, SymbolEvents
from spikewatch.opportunities import OpportunityAnalyzer
from spikewatch.report import REPORT_SUBJECT, DropperTracker, ReportComposer
from spikewatch.tasks import SubscriberTask

from conftest import make_metrics

D = Decimal


def _events(symbol, *pairs):
    return SymbolEvents(symbol, [Event(symbol, kind, f"{kind.value} message", D(str(score))) for kind, score in pairs])


def _task(symbols, primary=(), **kw):
    return SubscriberTask(id='t1', email='sub@example.com', category='CryptoSpikes',
                          symbols=list(symbols), primary_symbols=list(primary), **kw)


@pytest.fixture
def snapshot():
    return {
        'A-USD': make_metrics('A-USD', current_price=D('95'), daily_volatility_count=5),
        'B-USD': make_metrics('B-USD', current_price=D('99'), daily_volatility_count=3, daily_price_change=D('1')),
        'C-USD': make_metrics('C-USD', current_price=D('80'), absolute_min=D('80'), previous_absolute_min=D('90')),
        'D-USD': make_metrics('D-USD', current_price=D('110'), daily_volatility_count=1),
        'E-USD': make_metrics('E-USD', current_price=D('125'), daily_price_change=D('4')),
        'F-USD': make_metrics('F-USD', current_price=D('111'), daily_price_change=D('2')),
        'G-USD': make_metrics('G-USD', current_price=D('99')),
        'Z-USD': make_metrics('Z-USD', current_price=D('1')),
    }


@pytest.fixture
def events():
    return {
        'A-USD': _events('A-USD', (EventKind.BELOW_AVG_MIN, 5)),
        'B-USD': _events('B-USD', (EventKind.NEW_LOW, 2)),
        'C-USD': _events('C-USD', (EventKind.NEW_LOW, 1), (EventKind.NEW_ABSOLUTE_MIN, 10)),
        'E-USD': _events('E-USD', (EventKind.ABOVE_AVG_MAX, 5), (EventKind.NEW_ABSOLUTE_MAX, 4)),
        'G-USD': _events('G-USD', (EventKind.NEW_LOW, 1)),
        'Z-USD': _events('Z-USD', (EventKind.NEW_LOW, 100)),
    }


@pytest.fixture
def composer(clock):
    return ReportComposer(DropperTracker(clock=clock))


def test_sections_are_ordered_and_exclusive(composer, events, snapshot):
    composer.droppers.track(events, snapshot)
    task = _task(['A-USD', 'B-USD', 'C-USD', 'D-USD', 'E-USD', 'F-USD', 'G-USD'], primary=['A-USD'])
    report = composer.compose(task, events, snapshot)

    assert report.subject == REPORT_SUBJECT
    assert report.recipient == 'sub@example.com'
    assert [(s.key, s.symbols) for s in report.sections] == [
        ('primary', ['A-USD']),
        ('droppers', ['C-USD']),
        ('volatile', ['B-USD', 'D-USD']),
        ('price_change', ['E-USD', 'F-USD']),
        ('remaining', ['G-USD']),
    ]
    assert len(report.placed_symbols) == len(set(report.placed_symbols))
    assert 'Z-USD' not in report.body


def test_remaining_sorted_by_score_then_symbol(composer, events, snapshot):
    events['H-USD'] = _events('H-USD', (EventKind.NEW_HIGH, 1))
    snapshot['H-USD'] = make_metrics('H-USD')
    report = composer.compose(_task(['G-USD', 'H-USD', 'C-USD']), events, snapshot)
    assert report.section('remaining').symbols == ['C-USD', 'G-USD', 'H-USD']


def test_no_events_means_no_report(composer, events, snapshot):
    assert composer.compose(_task(['D-USD', 'F-USD']), events, snapshot) is None
    assert composer.compose(_task([]), events, snapshot) is None


def test_top_ten_cap_on_volatile_section(composer):
    snapshot = {f"S{i:02d}-USD": make_metrics(f"S{i:02d}-USD", daily_volatility_count=i + 1) for i in range(12)}
    events = {'S00-USD': _events('S00-USD', (EventKind.NEW_LOW, 1))}
    report = composer.compose(_task(snapshot), events, snapshot)
    volatile = report.section('volatile').symbols
    assert len(volatile) == 10
    assert volatile[0] == 'S11-USD'
    assert 'S00-USD' not in volatile
    assert report.section('remaining').symbols == ['S00-USD']


def test_body_renders_headers_sheets_and_footer(composer, events, snapshot):
    composer.droppers.track(events, snapshot)
    snapshot['A-USD'].average_price = D('120')
    opportunities = OpportunityAnalyzer(min_profit_pct='1').analyze(snapshot)
    task = _task(['A-USD', 'C-USD'], primary=['A-USD'], coinbase_name='alice-cb')
    body = composer.compose(task, events, snapshot, opportunities).body

    assert body.index('DAILY INVESTMENT OPPORTUNITIES') < body.index('PRIMARY SYMBOLS')
    assert 'THE DROPPER OF THE DAY' in body
    assert 'Current Price: 95.00000000' in body
    assert 'Previous Absolute Min: 90.00000000' in body
    assert 'Drop Amount: 10.00000000' in body
    assert 'Recommendation: STRONG BUY' in body
    assert 'MOST VOLATILE' not in body      # empty sections are omitted
    assert body.rstrip().endswith('Account: alice-cb')


def test_dropper_evicted_when_price_recovers(clock, events, snapshot):
    tracker = DropperTracker(clock=clock)
    tracker.track(events, snapshot)
    assert list(tracker.entries()) == ['C-USD']
    entry = tracker.entries()['C-USD']
    assert entry.drop_amount == D('10')
    assert entry.drop_percentage == D('10') / D('90') * 100

    snapshot['C-USD'].current_price = D('101')
    tracker.track({}, snapshot)
    assert tracker.entries() == {}


def test_dropper_keeps_first_reference_of_the_day(clock, snapshot):
    tracker = DropperTracker(clock=clock)
    ev = {'C-USD': _events('C-USD', (EventKind.NEW_ABSOLUTE_MIN, 10))}
    tracker.track(ev, snapshot)
    snapshot['C-USD'].previous_absolute_min = D('80')
    snapshot['C-USD'].absolute_min = D('70')
    snapshot['C-USD'].current_price = D('70')
    tracker.track(ev, snapshot)
    entry = tracker.entries()['C-USD']
    assert (entry.previous_min, entry.current_min) == (D('90'), D('70'))


def test_droppers_cleared_on_new_utc_day(clock, events, snapshot):
    tracker = DropperTracker(clock=clock)
    tracker.track(events, snapshot)
    assert tracker.entries()
    clock.advance(hours=13)
    assert tracker.entries() == {}


def test_reports_usable_with_cached_task_shape(composer, events, snapshot):
    raw = {'id': 'x', 'email': 'e@example.com', 'category': 'CryptoSpikes',
           'symbols': ['A-USD'], 'primarySymbols': None, 'coinbaseName': None}
    report = composer.compose(SubscriberTask.model_validate(raw), events, snapshot)
    assert report.section('primary').symbols == []
    assert report.section('volatile').symbols == ['A-USD']
    assert report.section('remaining').symbols == []

