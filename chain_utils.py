from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import List, Optional, Tuple

from web3 import Web3
from web3.middleware.proof_of_authority import ExtraDataToPOAMiddleware
from web3.types import TxReceipt

from models import CurrencyType
from settings import (
    ALT_RPC_URLS,
    CONFIRMATIONS,
    RPC_URL,
    TX_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

CURRENCY_DECIMALS = {
    CurrencyType.NATIVE: 18,   # XTZ on Etherlink
    CurrencyType.STABLE: 6,    # USDC
}

POLL_INTERVAL_S = 1.5


# ---------- utilities ----------
class ChainConfigError(RuntimeError):
    """Missing or inconsistent RPC / signer configuration."""


def to_base_units(amount: Decimal | float | str | int, currency: CurrencyType) -> int:
    d = Decimal(str(amount))
    return int(d * Decimal(10 ** CURRENCY_DECIMALS[CurrencyType(currency)]))


def from_base_units(amount: int, currency: CurrencyType) -> Decimal:
    return Decimal(amount) / Decimal(10 ** CURRENCY_DECIMALS[CurrencyType(currency)])


def get_w3(url: Optional[str] = None) -> Web3:
    url = url or RPC_URL
    if not url:
        raise ChainConfigError("No RPC URL configured. Set ETHERLINK_RPC_URL.")
    w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": 10}))
    try:
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    except ValueError:
        # already injected
        pass
    return w3


def providers() -> List[Web3]:
    urls = [u for u in [RPC_URL] + ALT_RPC_URLS if u]
    if not urls:
        raise ChainConfigError("No RPC URLs configured. Set ETHERLINK_RPC_URL.")
    return [get_w3(u) for u in urls]


def _try_get_receipt(w3: Web3, txh: str) -> Optional[TxReceipt]:
    try:
        return w3.eth.get_transaction_receipt(txh)
    except Exception:
        return None


def wait_for_receipt_any(
    txh: str,
    timeout_s: int = TX_TIMEOUT_SECONDS,
    poll_s: float = POLL_INTERVAL_S,
    w3s: Optional[List[Web3]] = None,
) -> Tuple[Web3, Optional[TxReceipt]]:
    """
    Poll ``w3s`` (all configured providers by default) until a receipt appears
    or timeout. Returns (provider_that_saw_it, receipt_or_None).
    """
    w3s = w3s or providers()
    start = time.time()
    while time.time() - start < timeout_s:
        for w3 in w3s:
            rcpt = _try_get_receipt(w3, txh)
            if rcpt:
                return (w3, rcpt)
        time.sleep(poll_s)
    return (w3s[0], None)


def has_confirmations(w3: Web3, rcpt: TxReceipt, min_conf: int = CONFIRMATIONS) -> bool:
    if rcpt.get("blockNumber") is None:
        return False
    latest = w3.eth.block_number
    return (latest - rcpt["blockNumber"]) + 1 >= max(1, min_conf)


def load_signer(w3: Web3, private_key: str):
    if not private_key:
        raise ChainConfigError("AUTOMATION_PRIVATE_KEY not set")
    return w3.eth.account.from_key(private_key)
