import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = 'false') -> bool:
    return str(os.environ.get(name, default)).lower() in {'1', 'true', 'yes'}


CONFIG = {
    # Coinbase Exchange public market data
    'COINBASE_API_BASE': os.environ.get('COINBASE_API_BASE', 'https://api.exchange.coinbase.com').rstrip('/'),
    'API_TIMEOUT_CONNECT': int(os.environ.get('API_TIMEOUT_CONNECT', 5)),
    'API_TIMEOUT_READ': int(os.environ.get('API_TIMEOUT_READ', 10)),
    'PRICE_FETCH_REQUEST_RETRIES': int(os.environ.get('PRICE_FETCH_REQUEST_RETRIES', 3)),
    'PRICE_FETCH_RETRY_BACKOFF': float(os.environ.get('PRICE_FETCH_RETRY_BACKOFF', 0.5)),
    'PRICE_FETCH_CB_FAIL_THRESHOLD': int(os.environ.get('PRICE_FETCH_CB_FAIL_THRESHOLD', 5)),
    'PRICE_FETCH_CB_RESET_SECONDS': float(os.environ.get('PRICE_FETCH_CB_RESET_SECONDS', 20)),
    'CANDLE_GRANULARITY': int(os.environ.get('CANDLE_GRANULARITY', 3600)),  # 1-hour candles
    'CANDLES_MAX_PER_REQUEST': int(os.environ.get('CANDLES_MAX_PER_REQUEST', 300)),  # Coinbase cap
    'QUOTE_CURRENCIES': [
        c.strip().upper() for c in os.environ.get('QUOTE_CURRENCIES', 'USD,EUR').split(',') if c.strip()
    ] or ['USD', 'EUR'],
    # Rolling window / detector
    'HISTORY_DAYS': int(os.environ.get('HISTORY_DAYS', 14)),
    'AVERAGE_REFRESH_HOURS': float(os.environ.get('AVERAGE_REFRESH_HOURS', 24)),
    'MIN_TICKER_VOLUME': float(os.environ.get('MIN_TICKER_VOLUME', 1)),
    'HISTORY_MAX_WORKERS': int(os.environ.get('HISTORY_MAX_WORKERS', 4)),
    # Persistence
    'STATE_FILE': os.environ.get('STATE_FILE', os.path.join('data', 'crypto_metrics.json')),
    'TASKS_CACHE_FILE': os.environ.get('TASKS_CACHE_FILE', os.path.join('data', 'tasks_cache.json')),
    # Task API (subscriber source)
    'TASK_API_ENDPOINT': os.environ.get('TASK_API_ENDPOINT', 'http://127.0.0.1:5000/'),
    'TASK_API_USERNAME': os.environ.get('TASK_API_USERNAME', ''),
    'TASK_API_PASSWORD': os.environ.get('TASK_API_PASSWORD', ''),
    'TASK_PAGE_SIZE': int(os.environ.get('TASK_PAGE_SIZE', 100)),
    'SPIKE_CATEGORY': os.environ.get('SPIKE_CATEGORY', 'CryptoSpikes'),
    'CYCLE_INTERVAL_SECONDS': int(os.environ.get('CYCLE_INTERVAL_SECONDS', 300)),  # 5 minutes
    # Mail transport
    'SMTP_HOST': os.environ.get('SMTP_HOST', 'smtp.gmail.com'),
    'SMTP_PORT': int(os.environ.get('SMTP_PORT', 587)),
    'SMTP_USER': os.environ.get('SMTP_USER', ''),
    'SMTP_PASS': os.environ.get('SMTP_PASS', ''),
    'MAIL_FROM': os.environ.get('MAIL_FROM', os.environ.get('SMTP_USER', '')),
    'SMTP_TIMEOUT': int(os.environ.get('SMTP_TIMEOUT', 30)),
    # Opportunity fee model (EUR flat fees + basis points on price)
    'FEE_BUY_FLAT': os.environ.get('FEE_BUY_FLAT', '1.5'),
    'FEE_SELL_FLAT': os.environ.get('FEE_SELL_FLAT', '1.5'),
    'FEE_PRICE_BPS': os.environ.get('FEE_PRICE_BPS', '1'),
    'OPPORTUNITY_NOTIONAL': os.environ.get('OPPORTUNITY_NOTIONAL', '100'),
    'OPPORTUNITY_MIN_PCT': os.environ.get('OPPORTUNITY_MIN_PCT', '1'),
    # Status API
    'STATUS_API_ENABLED': _env_bool('STATUS_API_ENABLED'),
    'STATUS_API_HOST': os.environ.get('STATUS_API_HOST', '127.0.0.1'),
    'STATUS_API_PORT': int(os.environ.get('STATUS_API_PORT', 5003)),
    # Logging
    'LOG_DIR': os.environ.get('LOG_DIR', 'logs'),
    'LOG_FORMAT': os.environ.get('LOG_FORMAT', ''),
    'LOG_LEVEL': os.environ.get('LOG_LEVEL', 'INFO'),
}

SECRET_MARKERS = ('PASS', 'SECRET', 'TOKEN')
