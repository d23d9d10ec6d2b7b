import os

from .models import JobType

DEFAULT_CONFIG = {
    "batch_size": "10",
    "timeout_seconds": "20",
    "reschedule_recurring": "1",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

# Lowest accepted value per key; others must be >= 0. A timeout of 0 disables it.
MIN_CONFIG_VALUES = {"batch_size": 1}

# Minutes until the next run of a recurring job type.
RECURRING_INTERVALS = {
    JobType.CACHE_CLEANUP: 60,
    JobType.UPDATE_TOP_COINS: 30,
    JobType.UPDATE_GLOBAL_DATA: 60,
    JobType.UPDATE_NEWS: 15,
    JobType.UPDATE_CRYPTO_MARKET_DATA: 30,
    JobType.UPDATE_MACRO_MARKET_DATA: 60,
}

DB_FILE = os.environ.get("JOBSCTL_DB", "jobs.db")
SITE_URL = os.environ.get("JOBSCTL_SITE_URL", "http://localhost:3000")
CMC_API_URL = os.environ.get("JOBSCTL_CMC_URL", "https://pro-api.coinmarketcap.com")
HTTP_TIMEOUT = float(os.environ.get("JOBSCTL_HTTP_TIMEOUT", "15"))
LOG_DIR = os.environ.get("JOBSCTL_LOG_DIR")
LOG_LEVEL = os.environ.get("JOBSCTL_LOG_LEVEL", "INFO")


def cmc_api_key():
    # Read at call time, not import time.
    return os.environ.get("CMC_API_KEY")
