#!/usr/bin/env python3
"""
Main runner for the crypto spike worker.

One cycle:
    init store -> detector pass -> dropper tracking -> opportunities
    -> due tasks -> compose + send per subscriber -> mark ran

Every external call is wrapped so one failing symbol or subscriber never
stops the rest of the batch.
"""
from __future__ import annotations

import argparse
import logging
import signal
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .config import CONFIG
from .logging_config import CYCLE_ID_CTX, log_config, setup_logging
from .metrics_store import MetricsStore, utcnow
from .notifier import MailTransport
from .opportunities import OpportunityAnalyzer
from .price_source import PriceSource
from .report import DropperTracker, ReportComposer
from .spike_detector import SpikeDetector
from .tasks import ApiTaskSource, CachedTaskSource

logger = logging.getLogger(__name__)


@dataclass
class CycleSummary:
    cycle_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    symbols: int = 0
    symbols_with_events: int = 0
    opportunities: int = 0
    tasks: int = 0
    reports_sent: int = 0
    failures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['started_at'] = self.started_at.isoformat()
        d['finished_at'] = self.finished_at.isoformat() if self.finished_at else None
        return d


class SpikeRunner:
    def __init__(self,
                 store: MetricsStore,
                 detector: SpikeDetector,
                 analyzer: OpportunityAnalyzer,
                 composer: ReportComposer,
                 task_source,
                 transport,
                 category: str | None = None,
                 interval: int | None = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.detector = detector
        self.analyzer = analyzer
        self.composer = composer
        self.task_source = task_source
        self.transport = transport
        self.category = category or CONFIG['SPIKE_CATEGORY']
        self.interval = interval or CONFIG['CYCLE_INTERVAL_SECONDS']
        self._clock = clock
        self.stop_event = threading.Event()
        self.started_at = clock()
        self.last_summary: Optional[CycleSummary] = None

    @classmethod
    def from_config(cls, interval: int | None = None) -> 'SpikeRunner':
        source = PriceSource()
        store = MetricsStore(source)
        return cls(
            store=store,
            detector=SpikeDetector(store, source),
            analyzer=OpportunityAnalyzer(),
            composer=ReportComposer(DropperTracker()),
            task_source=CachedTaskSource(ApiTaskSource()),
            transport=MailTransport(),
            interval=interval,
        )

    @property
    def source(self) -> PriceSource:
        return self.detector.source

    def uptime_seconds(self) -> float:
        return (self._clock() - self.started_at).total_seconds()

    def run_cycle(self) -> CycleSummary:
        summary = CycleSummary(cycle_id=uuid.uuid4().hex[:12], started_at=self._clock())
        token = CYCLE_ID_CTX.set(summary.cycle_id)
        try:
            self._run_cycle(summary)
        except Exception as e:
            logger.exception('runner: cycle failed')
            summary.failures.append(f"cycle: {e}")
        finally:
            summary.finished_at = self._clock()
            self.last_summary = summary
            logger.info(f"cycle complete: {summary.symbols_with_events} symbols with events, "
                        f"{summary.reports_sent}/{summary.tasks} reports sent, {len(summary.failures)} failures",
                        extra={'event': 'cycle_complete'})
            CYCLE_ID_CTX.reset(token)
        return summary

    def _run_cycle(self, summary: CycleSummary) -> None:
        if not self.store.initialized and not self.store.initialize(self.stop_event):
            summary.failures.append('store: initialization failed')
            logger.error('runner: metrics store could not be initialized, skipping cycle')
            return
        events, snapshot = self.detector.recalculate(self.stop_event)
        summary.symbols = len(snapshot)
        summary.symbols_with_events = len(events)
        self.composer.droppers.track(events, snapshot)
        opportunities = self.analyzer.analyze(snapshot)
        summary.opportunities = len(opportunities)
        if self.stop_event.is_set():
            return

        try:
            tasks = self.task_source.fetch_due_tasks()
        except Exception as e:
            logger.exception('runner: could not fetch due tasks')
            summary.failures.append(f"tasks: {e}")
            return

        for task in tasks:
            if self.stop_event.is_set():
                logger.info('runner: shutdown requested, leaving remaining tasks for next run')
                break
            if task.category != self.category:
                logger.info(f"skipping task {task.id}: category {task.category!r} not handled")
                continue
            summary.tasks += 1
            try:
                report = self.composer.compose(task, events, snapshot, opportunities)
                if report is None:
                    continue
                self.transport.send(report.recipient, report.subject, report.body)
            except Exception as e:
                logger.error(f"report for {task.email} (task {task.id}) failed: {e}")
                summary.failures.append(f"send {task.id}: {e}")
                continue
            summary.reports_sent += 1
            try:
                self.task_source.mark_ran(task.id)
            except Exception as e:
                logger.error(f"could not mark task {task.id} as ran: {e}")
                summary.failures.append(f"mark_ran {task.id}: {e}")

    def run_forever(self) -> None:
        logger.info(f"runner started, interval {self.interval}s")
        while not self.stop_event.is_set():
            self.run_cycle()
            self.stop_event.wait(self.interval)
        logger.info('runner stopped')

    def stop(self, *_args) -> None:
        logger.info('shutdown requested')
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.stop()


def _start_status_api(runner: SpikeRunner) -> threading.Thread:
    from .status_api import create_app

    app = create_app(runner)
    thread = threading.Thread(
        target=lambda: app.run(host=CONFIG['STATUS_API_HOST'], port=CONFIG['STATUS_API_PORT'], use_reloader=False),
        name='status-api',
        daemon=True,
    )
    thread.start()
    logger.info(f"status API listening on {CONFIG['STATUS_API_HOST']}:{CONFIG['STATUS_API_PORT']}")
    return thread


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Crypto spike detection and subscriber reports')
    parser.add_argument('--once', action='store_true', help='Run a single cycle and exit')
    parser.add_argument('--interval', type=int, default=None,
                        help=f"Seconds between cycles (default {CONFIG['CYCLE_INTERVAL_SECONDS']})")
    parser.add_argument('--log-level', default=None, choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')
    parser.add_argument('--status-api', action='store_true', default=CONFIG['STATUS_API_ENABLED'],
                        help='Serve /api/health and /api/metrics/<symbol> in a background thread')
    return parser


def main(argv: List[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    log_config(CONFIG)
    runner = SpikeRunner.from_config(interval=args.interval)
    runner.install_signal_handlers()
    if args.status_api:
        _start_status_api(runner)
    if args.once:
        summary = runner.run_cycle()
        return 1 if summary.failures else 0
    runner.run_forever()
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
