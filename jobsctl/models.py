from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

# Job States
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)
TERMINAL_STATUSES = (COMPLETED, FAILED)


class JobType(str, Enum):
    CACHE_CLEANUP = "cache_cleanup"
    UPDATE_TOP_COINS = "update_top_coins"
    UPDATE_GLOBAL_DATA = "update_global_data"
    UPDATE_NEWS = "update_news"
    UPDATE_CRYPTO_MARKET_DATA = "update_crypto_market_data"
    UPDATE_MACRO_MARKET_DATA = "update_macro_market_data"


# ---------- Payloads ----------
class JobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CacheCleanupPayload(JobPayload):
    # Restrict cleanup to one cache source; all sources when omitted.
    source: Optional[str] = None


class TopCoinsPayload(JobPayload):
    limit: int = Field(200, ge=1, le=5000)


class GlobalDataPayload(JobPayload):
    pass


class NewsPayload(JobPayload):
    pass


class CryptoMarketDataPayload(JobPayload):
    limit: int = Field(200, ge=1, le=5000)


class MacroMarketDataPayload(JobPayload):
    pass


PAYLOAD_MODELS = {
    JobType.CACHE_CLEANUP: CacheCleanupPayload,
    JobType.UPDATE_TOP_COINS: TopCoinsPayload,
    JobType.UPDATE_GLOBAL_DATA: GlobalDataPayload,
    JobType.UPDATE_NEWS: NewsPayload,
    JobType.UPDATE_CRYPTO_MARKET_DATA: CryptoMarketDataPayload,
    JobType.UPDATE_MACRO_MARKET_DATA: MacroMarketDataPayload,
}


@dataclass
class Job:
    id: str
    type: JobType
    payload: Dict[str, Any] = field(default_factory=dict)
    status: str = PENDING
    scheduled_for: str = ""
    created_at: str = ""
    updated_at: str = ""
    result: Optional[Any] = None
    error: Optional[str] = None
    completed_at: Optional[str] = None
