from __future__ import annotations

import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

import requests

from settings import (
    HTTP_TIMEOUT_SECONDS,
    PRICE_API_URL,
    PRICE_CACHE_TTL_SECONDS,
    PRICE_COIN_ID,
    PRICE_FALLBACK_URLS,
    PRICE_VS_CURRENCY,
)

logger = logging.getLogger(__name__)


class PriceUnavailableError(RuntimeError):
    """Every configured price source failed."""


# ---------- Simple memory cache ----------
class _Cache:
    def __init__(self, ttl_s: int = PRICE_CACHE_TTL_SECONDS):
        self.ttl_s = ttl_s
        self.data: Dict[str, Tuple[float, object]] = {}

    def get(self, key: str):
        hit = self.data.get(key)
        if not hit:
            return None
        ts, val = hit
        if time.time() - ts > self.ttl_s:
            return None
        return val

    def set(self, key: str, val: object):
        self.data[key] = (time.time(), val)

_cache = _Cache()


def _extract_price(payload, coin_id: str, vs: str) -> Decimal:
    """CoinGecko ``simple/price`` shape: ``{"tezos": {"usd": 0.71}}``; also
    accepts flat ``{"price": ...}`` bodies from simpler mirrors."""
    if isinstance(payload, dict) and coin_id in payload:
        raw = payload[coin_id][vs]
    elif isinstance(payload, dict) and "price" in payload:
        raw = payload["price"]
    else:
        raise ValueError(f"unexpected price payload: {str(payload)[:200]}")
    price = Decimal(str(raw))
    if price <= 0:
        raise ValueError(f"non-positive price {price}")
    return price


def fetch_price(url: str, coin_id: str = PRICE_COIN_ID, vs: str = PRICE_VS_CURRENCY) -> Decimal:
    resp = requests.get(url, timeout=HTTP_TIMEOUT_SECONDS)
    resp.raise_for_status()
    return _extract_price(resp.json(), coin_id, vs)


def get_live_price(
    urls: Optional[List[str]] = None,
    coin_id: str = PRICE_COIN_ID,
    vs: str = PRICE_VS_CURRENCY,
    use_cache: bool = True,
) -> Decimal:
    """First price any source returns, primary URL first. Raises when all fail."""
    sources = urls or [PRICE_API_URL] + PRICE_FALLBACK_URLS
    key = f"price:{coin_id}:{vs}"
    if use_cache:
        cached = _cache.get(key)
        if cached is not None:
            return cached

    last_err: Optional[Exception] = None
    for url in sources:
        try:
            price = fetch_price(url, coin_id, vs)
        except (requests.RequestException, ValueError, KeyError, TypeError, InvalidOperation) as e:
            logger.warning("price source %s failed: %s", url, e)
            last_err = e
            continue
        _cache.set(key, price)
        return price

    raise PriceUnavailableError(f"Unable to fetch {coin_id}/{vs} price from {len(sources)} source(s)") from last_err
