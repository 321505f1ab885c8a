"""Read-only access to block data (Blockscout v2 explorer API) and the
external price quote. Holds no state besides the HTTP client."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import BaseModel

from price_feed import get_live_price
from settings import BLOCK_FETCH_WORKERS, BLOCKS_API_URL, HTTP_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class ChainDataError(RuntimeError):
    """Block data unreachable or malformed."""


class BlockNotFoundError(ChainDataError):
    pass


class Block(BaseModel):
    height: int
    base_fee_per_gas: Optional[int] = None
    gas_used: Optional[int] = None
    burnt_fees: Optional[int] = None
    timestamp: Optional[str] = None

    def field(self, name: str) -> Optional[int]:
        return getattr(self, name)


def _opt_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    return int(v)


def parse_block(data: Dict[str, Any]) -> Block:
    try:
        return Block(
            height=int(data["height"]),
            base_fee_per_gas=_opt_int(data.get("base_fee_per_gas")),
            gas_used=_opt_int(data.get("gas_used")),
            burnt_fees=_opt_int(data.get("burnt_fees")),
            timestamp=data.get("timestamp"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ChainDataError(f"malformed block payload: {e}") from e


class ChainDataReader:
    def __init__(
        self,
        base_url: str = BLOCKS_API_URL,
        timeout_s: float = HTTP_TIMEOUT_SECONDS,
        workers: int = BLOCK_FETCH_WORKERS,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.workers = max(1, workers)
        self.client = client or httpx.Client(timeout=timeout_s)

    def close(self):
        self.client.close()

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            r = self.client.get(url, params=params)
        except httpx.HTTPError as e:
            raise ChainDataError(f"GET {url} failed: {e}") from e
        if r.status_code == 404:
            raise BlockNotFoundError(f"{url} not found")
        if r.is_error:
            raise ChainDataError(f"GET {url} -> HTTP {r.status_code}")
        try:
            return r.json()
        except ValueError as e:
            raise ChainDataError(f"GET {url} returned invalid JSON") from e

    # ---------- single reads ----------
    def get_block(self, height: int) -> Block:
        logger.debug("fetching block %s", height)
        return parse_block(self._get_json(f"{self.base_url}/{height}"))

    def get_latest_blocks(self, limit: int = 50) -> List[Block]:
        data = self._get_json(self.base_url, params={"type": "block", "limit": limit})
        items = data.get("items") if isinstance(data, dict) else None
        if items is None:
            raise ChainDataError("latest blocks payload has no 'items'")
        return [parse_block(b) for b in items[:limit]]

    def get_latest_block(self) -> Block:
        blocks = self.get_latest_blocks(1)
        if not blocks:
            raise ChainDataError("No blocks available")
        return blocks[0]

    def get_latest_height(self) -> int:
        return self.get_latest_block().height

    def get_external_price(self) -> Decimal:
        return get_live_price()

    # ---------- batch reads ----------
    def _try_get_block(self, height: int) -> Optional[Block]:
        try:
            return self.get_block(height)
        except ChainDataError as e:
            logger.warning("block %s unavailable in batch: %s", height, e)
            return None

    def get_blocks(self, heights: Iterable[int]) -> List[Block]:
        """Concurrent best-effort fetch. Failed heights are omitted, never raised."""
        wanted = list(dict.fromkeys(heights))
        if not wanted:
            return []
        with ThreadPoolExecutor(max_workers=min(self.workers, len(wanted))) as pool:
            results = list(pool.map(self._try_get_block, wanted))
        blocks = [b for b in results if b is not None]
        logger.debug("fetched %d/%d blocks", len(blocks), len(wanted))
        return blocks

    def get_block_range(self, lo: int, hi: int) -> List[Block]:
        if hi < lo:
            return []
        return self.get_blocks(range(lo, hi + 1))
