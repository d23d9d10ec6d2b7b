import logging
from typing import Any, Dict, List, Optional

import requests

from . import config
from .errors import HandlerError

log = logging.getLogger(__name__)


class MarketDataError(HandlerError):
    pass


class MarketDataClient:
    """Thin wrapper over the HTTP APIs the refresh jobs read from.

    Two upstreams: the site's own API (``/api/coin-list`` and friends, which
    refresh their caches as a side effect of being called) and CoinMarketCap.
    Every request carries a timeout so a stalled upstream cannot hang a job.
    """

    def __init__(
        self,
        site_url: Optional[str] = None,
        cmc_url: Optional[str] = None,
        cmc_api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.site_url = (site_url or config.SITE_URL).rstrip("/")
        self.cmc_url = (cmc_url or config.CMC_API_URL).rstrip("/")
        self._cmc_api_key = cmc_api_key
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.session = session or requests.Session()

    @property
    def cmc_api_key(self) -> Optional[str]:
        return self._cmc_api_key or config.cmc_api_key()

    def _get_json(self, url: str, params=None, headers=None) -> Dict[str, Any]:
        log.debug("GET %s params=%s", url, params)
        try:
            resp = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise MarketDataError(f"Request to {url} failed: {e}")
        if resp.status_code >= 400:
            raise MarketDataError(f"API error: {resp.status_code} from {url}")
        try:
            return resp.json()
        except ValueError:
            raise MarketDataError(f"Invalid JSON response from {url}")

    # ---------- site API ----------
    def site_api(self, path: str, params=None) -> Dict[str, Any]:
        return self._get_json(f"{self.site_url}/api/{path.lstrip('/')}", params=params)

    # ---------- CoinMarketCap ----------
    def _cmc_headers(self) -> Dict[str, str]:
        key = self.cmc_api_key
        if not key:
            raise MarketDataError("CoinMarketCap API key not configured")
        return {"X-CMC_PRO_API_KEY": key, "Accept": "application/json"}

    def cmc_listings(self, limit: int = 200) -> List[Dict[str, Any]]:
        data = self._get_json(
            f"{self.cmc_url}/v1/cryptocurrency/listings/latest",
            params={"limit": limit},
            headers=self._cmc_headers(),
        )
        listings = data.get("data")
        if not isinstance(listings, list):
            raise MarketDataError("Invalid response from CoinMarketCap listings API")
        return listings

    def cmc_fear_and_greed(self) -> Dict[str, Any]:
        data = self._get_json(f"{self.cmc_url}/v3/fear-and-greed/latest", headers=self._cmc_headers())
        status = data.get("status") or {}
        if not data.get("data") or str(status.get("error_code")) != "0":
            raise MarketDataError(f"Invalid response from Fear & Greed API: {data}")
        return data["data"]
