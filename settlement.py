"""Settlement calculator: turns a category and a block range into the actual
value a bet resolves against.

Three strategies:
- full-range average (``base_fee_per_gas``)
- random block sampling and summation (``burnt_fees``, ``gas_used``)
- external price snapshot (``xtz_price``, in cents)
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional

from chain_data import Block, ChainDataError, ChainDataReader
from settings import SAMPLE_SIZE_MAX, SAMPLE_SIZE_MIN

logger = logging.getLogger(__name__)

AVERAGE = "average"
SAMPLED_SUM = "sampled_sum"
PRICE = "price"


class UnknownCategoryError(ValueError):
    """Category has no calculation strategy. A configuration bug, not a data failure."""


@dataclass(frozen=True)
class BetCategory:
    category: str
    description: str
    calculation_method: str
    strategy: str

    @property
    def requires_sampling(self) -> bool:
        return self.strategy == SAMPLED_SUM


BET_CATEGORIES: List[BetCategory] = [
    BetCategory(
        category="base_fee_per_gas",
        description="Average base fee per gas over next 5 minutes",
        calculation_method="Average of base_fee_per_gas from all blocks in the range",
        strategy=AVERAGE,
    ),
    BetCategory(
        category="burnt_fees",
        description="Total burnt fees in randomly sampled blocks over next 5 minutes",
        calculation_method="Sum burnt_fees from 40-60 randomly sampled blocks",
        strategy=SAMPLED_SUM,
    ),
    BetCategory(
        category="gas_used",
        description="Total gas used in randomly sampled blocks over next 5 minutes",
        calculation_method="Sum gas_used from 40-60 randomly sampled blocks",
        strategy=SAMPLED_SUM,
    ),
    BetCategory(
        category="xtz_price",
        description="XTZ price in USD cents at the end of 5 minutes",
        calculation_method="Fetch XTZ price from CoinGecko API and multiply by 100",
        strategy=PRICE,
    ),
]

CATEGORIES_BY_NAME: Dict[str, BetCategory] = {c.category: c for c in BET_CATEGORIES}


def get_category(name: str) -> BetCategory:
    try:
        return CATEGORIES_BY_NAME[name]
    except KeyError:
        raise UnknownCategoryError(f"Unknown category: {name}") from None


@dataclass
class CalculationResult:
    value: int
    sampled_blocks: List[int] = field(default_factory=list)
    details: str = ""


def _preview(heights: List[int], n: int = 5) -> str:
    head = ", ".join(str(h) for h in heights[:n])
    return f"[{head}{'...' if len(heights) > n else ''}]"


class SettlementCalculator:
    def __init__(
        self,
        reader: ChainDataReader,
        rng: Optional[random.Random] = None,
        sample_min: int = SAMPLE_SIZE_MIN,
        sample_max: int = SAMPLE_SIZE_MAX,
    ):
        if sample_min < 1 or sample_max < sample_min:
            raise ValueError(f"invalid sample size range {sample_min}..{sample_max}")
        self.reader = reader
        self.rng = rng or random.Random()
        self.sample_min = sample_min
        self.sample_max = sample_max

    def calculate(self, category: str, start_block: int, end_block: int) -> CalculationResult:
        cat = get_category(category)
        logger.info("calculating %s over blocks %s..%s", category, start_block, end_block)
        if cat.strategy == AVERAGE:
            return self.average_base_fee(start_block, end_block)
        if cat.strategy == SAMPLED_SUM:
            return self.sampled_sum(category, start_block, end_block)
        return self.price_snapshot()

    # ---------- full-range average ----------
    def _fetch_individually(self, heights, found: Dict[int, Block]) -> None:
        for h in heights:
            if h in found:
                continue
            try:
                found[h] = self.reader.get_block(h)
            except ChainDataError as e:
                logger.warning("could not fetch block %s: %s", h, e)

    def average_base_fee(self, start_block: int, end_block: int) -> CalculationResult:
        heights = list(range(start_block, end_block + 1))
        found: Dict[int, Block] = {}
        try:
            for b in self.reader.get_block_range(start_block, end_block):
                found[b.height] = b
        except ChainDataError as e:
            logger.error("block range %s..%s failed: %s", start_block, end_block, e)

        if len(found) < len(heights):
            # sequential gap fill
            self._fetch_individually(heights, found)

        fees = [found[h].base_fee_per_gas for h in heights
                if h in found and found[h].base_fee_per_gas is not None]
        if not fees:
            return CalculationResult(
                value=0,
                details="No blocks found in range to calculate average base fee.",
            )

        total, count = sum(fees), len(fees)
        average = (2 * total + count) // (2 * count)   # round half up
        return CalculationResult(
            value=average,
            details=f"Calculated average base fee from {count} blocks between {start_block} and {end_block}.",
        )

    # ---------- sampled sum ----------
    def sample_size(self, total_blocks: int) -> int:
        return min(self.rng.randint(self.sample_min, self.sample_max), max(0, total_blocks))

    def sample_heights(self, start_block: int, end_block: int) -> List[int]:
        """Distinct heights drawn uniformly without replacement (Fisher-Yates, truncated)."""
        heights = list(range(start_block, end_block + 1))
        n = self.sample_size(len(heights))
        self.rng.shuffle(heights)
        return heights[:n]

    def sampled_sum(self, field_name: str, start_block: int, end_block: int) -> CalculationResult:
        sampled = self.sample_heights(start_block, end_block)
        found: Dict[int, Block] = {}
        try:
            for b in self.reader.get_blocks(sampled):
                found[b.height] = b
        except ChainDataError as e:
            logger.warning("sampled block fetch failed, falling back to individual requests: %s", e)
        self._fetch_individually(sampled, found)

        value = 0
        missing = []
        for h in sampled:
            if h not in found:
                missing.append(h)
                continue
            value += found[h].field(field_name) or 0

        details = f"Summed {field_name} from {len(sampled)} randomly sampled blocks: {_preview(sampled)}"
        if missing:
            details += f" ({len(missing)} unavailable block(s) excluded)"
        return CalculationResult(value=value, sampled_blocks=sampled, details=details)

    # ---------- price snapshot ----------
    def price_snapshot(self) -> CalculationResult:
        price = Decimal(self.reader.get_external_price())
        value = int((price * 100).to_integral_value(rounding=ROUND_DOWN))
        return CalculationResult(
            value=value,
            details=f"XTZ price fetched at settlement time: ${price:.2f} ({value} cents)",
        )
