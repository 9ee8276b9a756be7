import logging, json, os
from logging.handlers import RotatingFileHandler
from contextvars import ContextVar

from .config import CONFIG, SECRET_MARKERS

# Correlation id for the detection cycle currently running
CYCLE_ID_CTX: ContextVar[str | None] = ContextVar('cycle_id', default=None)


class CycleIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        # Attach even if None for uniformity
        record.cycle_id = CYCLE_ID_CTX.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        base = {
            'ts': self.formatTime(record, datefmt='%Y-%m-%dT%H:%M:%S'),
            'level': record.levelname,
            'msg': record.getMessage(),
            'logger': record.name,
            'cycle_id': getattr(record, 'cycle_id', None),
        }
        event = getattr(record, 'event', None)
        if event:
            base['event'] = event
        if record.exc_info:
            base['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


def _attach(root: logging.Logger, handler: logging.Handler, fmt: logging.Formatter) -> None:
    handler.setFormatter(fmt)
    handler.addFilter(CycleIdFilter())
    root.addHandler(handler)


def setup_logging(level: str | None = None, log_dir: str | None = None):
    """Console + rotating file (5 MB x 3) on the root logger; JSON lines when LOG_FORMAT=json."""
    log_dir = log_dir or CONFIG['LOG_DIR']
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or CONFIG['LOG_LEVEL']).upper(), logging.INFO))
    # re-running setup must not stack handlers
    root.handlers = []
    if CONFIG['LOG_FORMAT'].lower() == 'json':
        fmt = JsonFormatter()
    else:
        fmt = logging.Formatter('%(asctime)s - %(levelname)s - %(cycle_id)s - %(name)s - %(message)s')
    _attach(root, logging.StreamHandler(), fmt)
    try:
        os.makedirs(log_dir, exist_ok=True)
        _attach(root, RotatingFileHandler(os.path.join(log_dir, 'spikewatch.log'),
                                          maxBytes=5 * 1024 * 1024, backupCount=3), fmt)
    except OSError:
        root.warning(f"could not open {log_dir}/spikewatch.log; logging to console only")
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('werkzeug').setLevel(logging.WARNING)


def log_config(config):
    """Log the effective configuration, secrets masked."""
    logging.info("=== Spikewatch Configuration ===")
    for key, value in config.items():
        if any(marker in key for marker in SECRET_MARKERS) and value:
            value = '***'
        logging.info(f"{key}: {value}")
    logging.info("================================")
