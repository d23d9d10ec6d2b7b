"""Built-in job handlers.

Each handler takes the job payload (a dict) and returns a JSON-friendly
summary that ends up in the job's ``result`` column. Handlers open their own
connection because the scheduler may run them on a separate thread.
"""
import logging
from functools import partial
from typing import Any, Dict, List, Optional

from .db import connect_db
from .market import MarketDataClient, MarketDataError
from .models import (
    CacheCleanupPayload,
    CryptoMarketDataPayload,
    GlobalDataPayload,
    JobType,
    MacroMarketDataPayload,
    NewsPayload,
    TopCoinsPayload,
)
from .registry import HandlerRegistry
from .utils import now_iso

log = logging.getLogger(__name__)

NEUTRAL_FEAR_GREED = (50, "Neutral")
LOGO_URL = "https://s2.coinmarketcap.com/static/img/coins/64x64/{id}.png"


# ---------- cache ----------
def cleanup_cache(db_path: Optional[str], payload: Dict[str, Any]) -> Dict[str, Any]:
    params = CacheCleanupPayload.model_validate(payload)
    sql = "DELETE FROM api_cache WHERE expires_at < ?"
    args = [now_iso()]
    if params.source:
        sql += " AND source = ?"
        args.append(params.source)

    conn = connect_db(db_path)
    try:
        with conn:
            deleted = conn.execute(sql, args).rowcount
    finally:
        conn.close()

    log.info("Removed %d expired cache entries", deleted)
    return {"deleted": deleted}


# ---------- site API refreshes ----------
def _require_success(body: Dict[str, Any], what: str) -> None:
    if not body.get("success"):
        raise MarketDataError(body.get("error") or f"Failed to update {what}")


def update_top_coins(client: MarketDataClient, payload: Dict[str, Any]) -> Dict[str, Any]:
    params = TopCoinsPayload.model_validate(payload)
    body = client.site_api("coin-list", params={"limit": params.limit})
    _require_success(body, "top coins")
    return {"count": len(body.get("data") or [])}


def update_global_data(client: MarketDataClient, payload: Dict[str, Any]) -> Dict[str, Any]:
    GlobalDataPayload.model_validate(payload)
    _require_success(client.site_api("global-data"), "global data")
    return {"updated": True}


def update_news(client: MarketDataClient, payload: Dict[str, Any]) -> Dict[str, Any]:
    NewsPayload.model_validate(payload)
    body = client.site_api("crypto-news")
    return {"count": len(body.get("newsItems") or [])}


# ---------- CoinMarketCap ----------
def listing_to_row(coin: Dict[str, Any], updated_at: str) -> Dict[str, Any]:
    usd = (coin.get("quote") or {}).get("USD") or {}
    return {
        "id": str(coin["id"]),
        "symbol": coin["symbol"],
        "name": coin["name"],
        "price_usd": usd.get("price"),
        "price_change_24h": usd.get("percent_change_24h") or 0,
        "market_cap": usd.get("market_cap") or 0,
        "volume_24h": usd.get("volume_24h") or 0,
        "cmc_rank": coin.get("cmc_rank"),
        "logo_url": LOGO_URL.format(id=coin["id"]),
        "last_updated": updated_at,
    }


def update_crypto_market_data(
    db_path: Optional[str], client: MarketDataClient, payload: Dict[str, Any]
) -> Dict[str, Any]:
    params = CryptoMarketDataPayload.model_validate(payload)
    log.info("Fetching top %d coins from CoinMarketCap", params.limit)
    ts = now_iso()
    rows = [listing_to_row(c, ts) for c in client.cmc_listings(params.limit)]

    conn = connect_db(db_path)
    try:
        existing = {
            r["id"] for r in conn.execute("SELECT id FROM crypto_market_data").fetchall()
        }
        with conn:
            conn.executemany(
                """INSERT INTO crypto_market_data
                   (id, symbol, name, price_usd, price_change_24h, market_cap, volume_24h,
                    cmc_rank, logo_url, last_updated)
                   VALUES (:id, :symbol, :name, :price_usd, :price_change_24h, :market_cap,
                           :volume_24h, :cmc_rank, :logo_url, :last_updated)
                   ON CONFLICT(id) DO UPDATE SET
                     symbol=excluded.symbol, name=excluded.name, price_usd=excluded.price_usd,
                     price_change_24h=excluded.price_change_24h, market_cap=excluded.market_cap,
                     volume_24h=excluded.volume_24h, cmc_rank=excluded.cmc_rank,
                     logo_url=excluded.logo_url, last_updated=excluded.last_updated""",
                rows,
            )
        total = conn.execute("SELECT COUNT(1) AS c FROM crypto_market_data").fetchone()["c"]
    finally:
        conn.close()

    inserted = sum(1 for r in rows if r["id"] not in existing)
    log.info("Upserted %d coins: %d inserted, %d updated", len(rows), inserted, len(rows) - inserted)
    return {
        "total_count": total,
        "inserted_count": inserted,
        "updated_count": len(rows) - inserted,
    }


def estimate_fear_greed(btc_change_24h: Optional[float]):
    """Rough sentiment from BTC's 24h move, used when the index is unavailable."""
    if btc_change_24h is None:
        return NEUTRAL_FEAR_GREED
    value = 50
    if btc_change_24h > 5:
        value = 70
    elif btc_change_24h > 2:
        value = 60
    elif btc_change_24h < -5:
        value = 30
    elif btc_change_24h < -2:
        value = 40

    if value >= 65:
        return value, "Greed"
    if value <= 35:
        return value, "Fear"
    return value, "Neutral"


def market_metrics(coins: List[Dict[str, Any]]) -> Dict[str, Any]:
    if not coins:
        return {}
    total_cap = sum(c.get("market_cap") or 0 for c in coins)
    total_volume = sum(c.get("volume_24h") or 0 for c in coins)
    by_symbol = {c["symbol"]: c for c in coins}

    def dominance(symbol):
        cap = (by_symbol.get(symbol) or {}).get("market_cap") or 0
        return cap / total_cap * 100 if total_cap > 0 else 0

    btc, eth = dominance("BTC"), dominance("ETH")
    return {
        "total_market_cap": int(total_cap),
        "total_volume_24h": int(total_volume),
        "btc_dominance": btc,
        "eth_dominance": eth,
        "altcoin_dominance": 100 - btc - eth,
        "total_cryptocurrencies": len(coins),
    }


def _fear_greed(client: MarketDataClient, coins: List[Dict[str, Any]]):
    if client.cmc_api_key:
        try:
            data = client.cmc_fear_and_greed()
            # The API has been seen returning the key as "value " with a trailing space.
            raw = data.get("value", data.get("value ", 50))
            return (
                int(raw),
                data.get("value_classification") or "Neutral",
                data.get("update_time") or now_iso(),
            )
        except (MarketDataError, TypeError, ValueError) as e:
            log.warning("Fear & Greed index unavailable, estimating instead: %s", e)

    btc = next((c for c in coins if c["symbol"] == "BTC"), None)
    value, label = estimate_fear_greed(btc.get("price_change_24h") if btc else None)
    return value, label, now_iso()


def update_macro_market_data(
    db_path: Optional[str], client: MarketDataClient, payload: Dict[str, Any]
) -> Dict[str, Any]:
    MacroMarketDataPayload.model_validate(payload)

    conn = connect_db(db_path)
    try:
        coins = [
            dict(r)
            for r in conn.execute(
                "SELECT symbol, market_cap, volume_24h, price_change_24h FROM crypto_market_data"
            ).fetchall()
        ]
        value, label, fg_ts = _fear_greed(client, coins)
        snapshot = {
            "fear_greed_value": value,
            "fear_greed_classification": label,
            "fear_greed_timestamp": fg_ts,
            "updated_at": now_iso(),
            **market_metrics(coins),
        }
        columns = ", ".join(snapshot)
        placeholders = ", ".join(f":{k}" for k in snapshot)
        with conn:
            conn.execute(f"INSERT INTO macro_market_data ({columns}) VALUES ({placeholders})", snapshot)
    finally:
        conn.close()

    log.info("Stored macro market snapshot (fear/greed %s %s)", value, label)
    return {"updated": True, "fear_greed_value": value, "fear_greed_classification": label}


def build_default_registry(db_path: Optional[str] = None, client: Optional[MarketDataClient] = None) -> HandlerRegistry:
    client = client or MarketDataClient()
    return HandlerRegistry({
        JobType.CACHE_CLEANUP: partial(cleanup_cache, db_path),
        JobType.UPDATE_TOP_COINS: partial(update_top_coins, client),
        JobType.UPDATE_GLOBAL_DATA: partial(update_global_data, client),
        JobType.UPDATE_NEWS: partial(update_news, client),
        JobType.UPDATE_CRYPTO_MARKET_DATA: partial(update_crypto_market_data, db_path, client),
        JobType.UPDATE_MACRO_MARKET_DATA: partial(update_macro_market_data, db_path, client),
    })
