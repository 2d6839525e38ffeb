import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from feeflow.chains import is_native_asset, llama_chain_slug, native_coin_id, normalize_address
from feeflow.snapshots import SnapshotError, read_json, write_json

logger = logging.getLogger(__name__)

PUBLIC_BASE_URL = "https://coins.llama.fi"
PRO_BASE_URL = "https://pro-api.llama.fi/{api_key}/coins"


class PriceUnavailable(RuntimeError):
    def __init__(self, identifier: str, timestamp: int, reason: str) -> None:
        super().__init__(f"no price for {identifier} at {timestamp}: {reason}")
        self.identifier = identifier
        self.timestamp = timestamp
        self.reason = reason


@dataclass(frozen=True)
class PricePoint:
    price: float
    decimals: Optional[int] = None
    symbol: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"price": self.price, "decimals": self.decimals, "symbol": self.symbol}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PricePoint":
        decimals = data.get("decimals")
        return cls(
            price=float(data["price"]),
            decimals=int(decimals) if decimals is not None else None,
            symbol=str(data.get("symbol") or ""),
        )


def default_base_url(environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    api_key = (env.get("DEFILLAMA_API_KEY") or "").strip()
    if api_key:
        return PRO_BASE_URL.format(api_key=api_key)
    return PUBLIC_BASE_URL


def usd_value(amount_raw: Any, decimals: int, price: float) -> float:
    return int(amount_raw) / (10 ** int(decimals)) * float(price)


def _parse_price(payload: Any, identifier: str) -> PricePoint:
    if not isinstance(payload, dict):
        raise ValueError("unexpected response type")
    coins = payload.get("coins")
    if not isinstance(coins, dict) or not coins:
        raise ValueError("no price data found in response")
    entry = coins.get(identifier)
    if entry is None:
        wanted = identifier.lower()
        for name, value in coins.items():
            if str(name).lower() == wanted:
                entry = value
                break
    if not isinstance(entry, dict) or entry.get("price") is None:
        raise ValueError("no price data found in response")
    point = PricePoint.from_dict(entry)
    if point.price <= 0:
        raise ValueError(f"non-positive price {point.price}")
    return point


class PriceFetcher:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        base_url: Optional[str] = None,
        max_retries: int = 3,
        retry_delay_s: float = 0.2,
        rate_limit_s: float = 0.1,
        timeout_s: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session or requests.Session()
        self.base_url = (base_url or default_base_url()).rstrip("/")
        self.max_retries = max(1, int(max_retries))
        self.retry_delay_s = retry_delay_s
        self.rate_limit_s = rate_limit_s
        self.timeout_s = timeout_s
        self._sleep = sleep
        self.cache: Dict[str, PricePoint] = {}
        self.requests_made = 0

    @property
    def cache_size(self) -> int:
        return len(self.cache)

    def coin_id(self, chain_id: Any, address: str) -> str:
        if is_native_asset(address):
            return native_coin_id(chain_id)
        return f"{llama_chain_slug(chain_id)}:{normalize_address(address)}"

    def get_price(self, chain_id: Any, address: str, timestamp: int) -> PricePoint:
        cache_key = f"{chain_id}:{normalize_address(address)}:{int(timestamp)}"
        return self._lookup(self.coin_id(chain_id, address), int(timestamp), cache_key)

    def get_price_by_id(self, identifier: str, timestamp: int) -> PricePoint:
        cache_key = f"{identifier}@{int(timestamp)}"
        return self._lookup(identifier, int(timestamp), cache_key)

    def pause(self) -> None:
        if self.rate_limit_s > 0:
            self._sleep(self.rate_limit_s)

    def _lookup(self, identifier: str, timestamp: int, cache_key: str) -> PricePoint:
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached
        point = self._fetch(identifier, timestamp)
        self.cache[cache_key] = point
        return point

    def _fetch(self, identifier: str, timestamp: int) -> PricePoint:
        url = f"{self.base_url}/prices/historical/{timestamp}/{identifier}"
        last_exc: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            logger.debug("fetching %s at %d (attempt %d)", identifier, timestamp, attempt)
            self.requests_made += 1
            try:
                resp = self.session.get(url, timeout=self.timeout_s)
                if resp.status_code != 200:
                    raise RuntimeError(f"HTTP {resp.status_code}")
                return _parse_price(resp.json(), identifier)
            except (requests.RequestException, RuntimeError, ValueError, KeyError, TypeError) as exc:
                last_exc = exc
                logger.debug("attempt %d for %s failed: %s", attempt, identifier, exc)
                if attempt < self.max_retries and self.retry_delay_s > 0:
                    self._sleep(self.retry_delay_s)
        reason = f"{last_exc.__class__.__name__}: {last_exc}" if last_exc else "unknown"
        raise PriceUnavailable(identifier, timestamp, reason)

    def load_cache(self, path: str) -> int:
        try:
            payload = read_json(path, required=False)
        except SnapshotError as exc:
            logger.warning("ignoring unreadable price cache: %s", exc)
            return 0
        if not isinstance(payload, dict):
            return 0
        loaded = 0
        for key, raw in payload.items():
            if not isinstance(raw, dict):
                continue
            try:
                self.cache[str(key)] = PricePoint.from_dict(raw)
            except (KeyError, TypeError, ValueError):
                continue
            loaded += 1
        logger.info("loaded %d cached prices from %s", loaded, path)
        return loaded

    def save_cache(self, path: str) -> None:
        write_json(path, {key: point.to_dict() for key, point in self.cache.items()})
