from __future__ import annotations

import logging
import os
from typing import List

from dotenv import load_dotenv, find_dotenv

load_dotenv(find_dotenv(), override=False)


def _env_bool(name: str, default="false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")

def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default

def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default

def _env_list(name: str, default_csv: str = "") -> List[str]:
    raw = os.getenv(name, default_csv)
    return [s.strip() for s in raw.split(",") if s.strip()]


# ---------- network ----------
IS_TESTNET = _env_bool("IS_TESTNET", "false")
NETWORK = "testnet" if IS_TESTNET else "mainnet"

if IS_TESTNET:
    RPC_URL = os.getenv("ETHERLINK_TESTNET_RPC_URL") or "https://node.ghostnet.etherlink.com"
    CHAIN_ID = _env_int("CHAIN_ID", 128123)
    LEDGER_CONTRACT_ADDRESS = os.getenv("CHAIN_CHAOS_TESTNET_CONTRACT_ADDRESS") or ""
    BLOCKS_API_URL = os.getenv("BLOCKS_API_URL") or "https://testnet.explorer.etherlink.com/api/v2/blocks"
else:
    RPC_URL = os.getenv("ETHERLINK_RPC_URL") or "https://node.mainnet.etherlink.com"
    CHAIN_ID = _env_int("CHAIN_ID", 42793)
    LEDGER_CONTRACT_ADDRESS = os.getenv("CHAIN_CHAOS_CONTRACT_ADDRESS") or ""
    BLOCKS_API_URL = os.getenv("BLOCKS_API_URL") or "https://explorer.etherlink.com/api/v2/blocks"

ALT_RPC_URLS = _env_list("ETHERLINK_ALT_RPC_URLS")
AUTOMATION_PRIVATE_KEY = os.getenv("AUTOMATION_PRIVATE_KEY") or ""
CONFIRMATIONS = _env_int("CONFIRMATIONS", 1)
TX_TIMEOUT_SECONDS = _env_int("TX_TIMEOUT_SECONDS", 180)

# ---------- data sources ----------
PRICE_API_URL = os.getenv(
    "PRICE_API_URL",
    "https://api.coingecko.com/api/v3/simple/price?ids=tezos&vs_currencies=usd",
)
PRICE_FALLBACK_URLS = _env_list("PRICE_FALLBACK_URLS")
PRICE_COIN_ID = os.getenv("PRICE_COIN_ID", "tezos")
PRICE_VS_CURRENCY = os.getenv("PRICE_VS_CURRENCY", "usd")
PRICE_CACHE_TTL_SECONDS = _env_int("PRICE_CACHE_TTL_SECONDS", 5)
HTTP_TIMEOUT_SECONDS = _env_float("HTTP_TIMEOUT_SECONDS", 10)
BLOCK_FETCH_WORKERS = _env_int("BLOCK_FETCH_WORKERS", 8)

# ---------- storage ----------
DATABASE_URL = (
    os.getenv("DATABASE_URL")
    or os.getenv("DB_URL")
    or "sqlite:///./chain_chaos.db"
)

# ---------- ledger ----------
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "contract").lower()   # contract | local
OPERATOR_ADDRESS = (os.getenv("OPERATOR_ADDRESS") or "0x00000000000000000000000000000000000a0707").lower()
FEE_BPS = _env_int("FEE_BPS", 500)
BETTING_CUTOFF_SECONDS = _env_int("BETTING_CUTOFF_SECONDS", 60)

# ---------- automation ----------
AUTOPILOT_ENABLED = _env_bool("AUTOPILOT_ENABLED", "false")
CYCLE_INTERVAL_SECONDS = _env_int("CYCLE_INTERVAL_SECONDS", 300)
RETRY_INTERVAL_SECONDS = _env_int("RETRY_INTERVAL_SECONDS", 60)
BET_WINDOW_SECONDS = _env_int("BET_WINDOW_SECONDS", 300)
SECONDS_PER_BLOCK = _env_int("SECONDS_PER_BLOCK", 15)
SAMPLE_SIZE_MIN = _env_int("SAMPLE_SIZE_MIN", 40)
SAMPLE_SIZE_MAX = _env_int("SAMPLE_SIZE_MAX", 60)
NATIVE_BET_AMOUNT = os.getenv("NATIVE_BET_AMOUNT", "0.1")
STABLE_BET_AMOUNT = os.getenv("STABLE_BET_AMOUNT", "1")

# ---------- notifications ----------
NOTIFICATION_TTL_SECONDS = _env_int("NOTIFICATION_TTL_SECONDS", 30 * 24 * 60 * 60)

# ---------- logging ----------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    # web3 and httpx are chatty at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)
