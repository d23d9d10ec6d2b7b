import sqlite3

from . import config
from .config import DEFAULT_CONFIG

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS background_jobs (
    id TEXT PRIMARY KEY,
    job_type TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    payload TEXT NOT NULL DEFAULT '{}',
    result TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    scheduled_for TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_background_jobs_status_scheduled ON background_jobs(status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_background_jobs_type ON background_jobs(job_type);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS api_cache (
    key TEXT NOT NULL,
    source TEXT NOT NULL,
    data TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (key, source)
);

CREATE INDEX IF NOT EXISTS idx_api_cache_expires_at ON api_cache(expires_at);

CREATE TABLE IF NOT EXISTS crypto_market_data (
    id TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    name TEXT NOT NULL,
    price_usd REAL,
    price_change_24h REAL,
    market_cap REAL,
    volume_24h REAL,
    cmc_rank INTEGER,
    logo_url TEXT,
    last_updated TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS macro_market_data (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    fear_greed_value INTEGER,
    fear_greed_classification TEXT,
    fear_greed_timestamp TEXT,
    total_market_cap INTEGER,
    total_volume_24h INTEGER,
    btc_dominance REAL,
    eth_dominance REAL,
    altcoin_dominance REAL,
    total_cryptocurrencies INTEGER,
    updated_at TEXT NOT NULL
);
"""


def connect_db(path=None):
    conn = sqlite3.connect(path or config.DB_FILE, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def init_db(path=None):
    conn = connect_db(path)
    try:
        with conn:
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    finally:
        conn.close()
