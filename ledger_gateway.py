"""Typed client for the betting ledger.

``ContractLedgerGateway`` talks to the deployed contract through web3 and
waits for every write to be mined. ``LocalLedgerGateway`` runs the same
operations against the in-process ``BetLedger``; a rejected operation surfaces
as ``LedgerTransactionError`` exactly like a reverted transaction would.
"""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Sequence

from pydantic import BaseModel
from web3 import Web3

from betting import BetError, BetLedger
from chain_utils import get_w3, has_confirmations, load_signer, wait_for_receipt_any
from db_core import SessionLocal
from models import Bet, BetStatus, CurrencyType, PlayerBet
from settings import (
    AUTOMATION_PRIVATE_KEY,
    BETTING_CUTOFF_SECONDS,
    CHAIN_ID,
    CONFIRMATIONS,
    FEE_BPS,
    LEDGER_BACKEND,
    LEDGER_CONTRACT_ADDRESS,
    OPERATOR_ADDRESS,
    TX_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


# ---------- errors ----------
class LedgerError(RuntimeError):
    """Ledger unreachable or a read failed."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class LedgerTransactionError(LedgerError):
    """A write was rejected, reverted or never mined."""


# ---------- views ----------
class BetInfo(BaseModel):
    id: int
    category: str
    description: str
    currency_type: CurrencyType
    bet_amount: int
    actual_value: int
    status: BetStatus
    total_pot: int
    refund_mode: bool
    player_bet_count: int
    created_at: int
    start_time: int
    end_time: int


class AutomationData(BaseModel):
    start_block_height: int
    end_block_height: int
    sampled_blocks: List[int]
    calculation_method: str
    is_automated: bool


class PlayerBetView(BaseModel):
    player: str
    guess: int
    claimed: bool


def bet_info_from_row(bet: Bet) -> BetInfo:
    return BetInfo(
        id=bet.id,
        category=bet.category,
        description=bet.description,
        currency_type=bet.currency_type,
        bet_amount=bet.bet_amount,
        actual_value=bet.actual_value or 0,
        status=bet.status,
        total_pot=bet.total_pot,
        refund_mode=bet.refund_mode,
        player_bet_count=len(bet.player_bets),
        created_at=bet.created_at,
        start_time=bet.start_time,
        end_time=bet.end_time,
    )


def automation_data_from_row(bet: Bet) -> AutomationData:
    return AutomationData(
        start_block_height=bet.start_block_height,
        end_block_height=bet.end_block_height,
        sampled_blocks=bet.sampled_blocks,
        calculation_method=bet.calculation_method or "",
        is_automated=bet.is_automated,
    )


def player_view_from_row(pb: PlayerBet) -> PlayerBetView:
    return PlayerBetView(player=pb.player, guess=pb.guess, claimed=pb.claimed)


# ---------- contract ABI (only what we call) ----------
def _p(name: str, typ: str, components=None) -> dict:
    d = {"name": name, "type": typ}
    if components:
        d["components"] = components
    return d

def _fn(name: str, inputs: list, outputs: list = (), view: bool = False, payable: bool = False) -> dict:
    return {
        "type": "function",
        "name": name,
        "inputs": list(inputs),
        "outputs": list(outputs),
        "stateMutability": "view" if view else ("payable" if payable else "nonpayable"),
    }

_U = "uint256"

LEDGER_ABI = [
    _fn("createBet", [_p("category", "string"), _p("description", "string"),
                      _p("currencyType", "uint8"), _p("betAmount", _U)],
        [_p("", _U)]),
    _fn("createAutomatedBet", [_p("category", "string"), _p("description", "string"),
                               _p("currencyType", "uint8"), _p("betAmount", _U),
                               _p("startTime", _U), _p("endTime", _U),
                               _p("startBlockHeight", _U), _p("calculationMethod", "string")],
        [_p("", _U)]),
    _fn("settleBet", [_p("betId", _U), _p("actualValue", _U)]),
    _fn("settleAutomatedBet", [_p("betId", _U), _p("actualValue", _U), _p("endBlockHeight", _U),
                               _p("sampledBlocks", "uint256[]"), _p("calculationDetails", "string")]),
    _fn("cancelBet", [_p("betId", _U)]),
    _fn("placeBet", [_p("betId", _U), _p("guess", _U)], payable=True),
    _fn("claimPrize", [_p("betId", _U)]),
    _fn("getActiveBets", [], [_p("", "uint256[]")], view=True),
    _fn("getSettledBets", [], [_p("", "uint256[]")], view=True),
    _fn("getBetInfo", [_p("betId", _U)], [
        _p("id", _U), _p("category", "string"), _p("description", "string"),
        _p("currencyType", "uint8"), _p("betAmount", _U), _p("actualValue", _U),
        _p("status", "uint8"), _p("totalPot", _U), _p("refundMode", "bool"),
        _p("playerBetCount", _U), _p("createdAt", _U), _p("startTime", _U), _p("endTime", _U),
    ], view=True),
    _fn("getBetWinnerIndices", [_p("betId", _U)], [_p("", "uint256[]")], view=True),
    _fn("getBetAutomationData", [_p("betId", _U)], [
        _p("startBlockHeight", _U), _p("endBlockHeight", _U), _p("sampledBlocks", "uint256[]"),
        _p("calculationMethod", "string"), _p("isAutomated", "bool"),
    ], view=True),
    _fn("getBetPlayerBets", [_p("betId", _U)], [
        _p("", "tuple[]", [_p("player", "address"), _p("guess", _U), _p("claimed", "bool")]),
    ], view=True),
]


def parse_bet_info(raw: Sequence) -> BetInfo:
    return BetInfo(
        id=int(raw[0]),
        category=raw[1],
        description=raw[2],
        currency_type=CurrencyType(int(raw[3])),
        bet_amount=int(raw[4]),
        actual_value=int(raw[5]),
        status=BetStatus(int(raw[6])),
        total_pot=int(raw[7]),
        refund_mode=bool(raw[8]),
        player_bet_count=int(raw[9]),
        created_at=int(raw[10]),
        start_time=int(raw[11]),
        end_time=int(raw[12]),
    )


def parse_automation_data(raw: Sequence) -> AutomationData:
    return AutomationData(
        start_block_height=int(raw[0]),
        end_block_height=int(raw[1]),
        sampled_blocks=[int(h) for h in raw[2]],
        calculation_method=raw[3],
        is_automated=bool(raw[4]),
    )


# ---------- contract gateway ----------
class ContractLedgerGateway:
    def __init__(
        self,
        address: str = LEDGER_CONTRACT_ADDRESS,
        private_key: str = AUTOMATION_PRIVATE_KEY,
        chain_id: int = CHAIN_ID,
        confirmations: int = CONFIRMATIONS,
        tx_timeout_s: int = TX_TIMEOUT_SECONDS,
        w3: Optional[Web3] = None,
    ):
        if not address:
            raise LedgerError("ledger contract address not configured")
        self.w3 = w3 or get_w3()
        # an injected provider also polls receipts; otherwise every configured RPC does
        self._receipt_w3s = [w3] if w3 is not None else None
        self.account = load_signer(self.w3, private_key)
        self._private_key = private_key
        self.chain_id = chain_id
        self.confirmations = confirmations
        self.tx_timeout_s = tx_timeout_s
        self.contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=LEDGER_ABI)
        logger.debug("contract gateway ready: %s (chain %s) as %s", address, chain_id, self.account.address)

    @property
    def operator(self) -> str:
        return self.account.address

    # ----- plumbing -----
    def _call(self, label: str, fn):
        try:
            return fn.call()
        except Exception as e:
            raise LedgerError(f"{label} failed: {e}") from e

    def _transact(self, label: str, fn, value: int = 0) -> str:
        try:
            params = {
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
                "chainId": self.chain_id,
            }
            if value:
                params["value"] = int(value)
            tx = fn.build_transaction(params)
            signed = self.w3.eth.account.sign_transaction(tx, private_key=self._private_key)
            txh = Web3.to_hex(self.w3.eth.send_raw_transaction(signed.raw_transaction))
        except Exception as e:
            # ContractLogicError on estimate, RPC errors, bad nonce...
            raise LedgerTransactionError(f"{label} rejected: {e}") from e

        w3, rcpt = wait_for_receipt_any(txh, timeout_s=self.tx_timeout_s, w3s=self._receipt_w3s)
        if rcpt is None:
            raise LedgerTransactionError(f"{label}: tx {txh} not mined within {self.tx_timeout_s}s")
        if rcpt["status"] != 1:
            raise LedgerTransactionError(f"{label}: tx {txh} reverted")

        deadline = time.time() + self.tx_timeout_s
        while not has_confirmations(w3, rcpt, self.confirmations):
            if time.time() > deadline:
                raise LedgerTransactionError(
                    f"{label}: tx {txh} waiting for {self.confirmations} confirmation(s)"
                )
            time.sleep(1.5)
        logger.info("%s confirmed - TX: %s", label, txh)
        return txh

    # ----- reads -----
    def health_check(self) -> None:
        if not self.w3.is_connected():
            raise LedgerError("RPC not reachable")
        self.get_active_bets()

    def get_active_bets(self) -> List[int]:
        return [int(i) for i in self._call("getActiveBets", self.contract.functions.getActiveBets())]

    def get_settled_bets(self) -> List[int]:
        return [int(i) for i in self._call("getSettledBets", self.contract.functions.getSettledBets())]

    def get_bet_info(self, bet_id: int) -> BetInfo:
        return parse_bet_info(self._call(f"getBetInfo({bet_id})", self.contract.functions.getBetInfo(bet_id)))

    def get_bet_automation_data(self, bet_id: int) -> AutomationData:
        return parse_automation_data(self._call(
            f"getBetAutomationData({bet_id})", self.contract.functions.getBetAutomationData(bet_id)
        ))

    def get_bet_players(self, bet_id: int) -> List[PlayerBetView]:
        rows = self._call(f"getBetPlayerBets({bet_id})", self.contract.functions.getBetPlayerBets(bet_id))
        return [PlayerBetView(player=r[0], guess=int(r[1]), claimed=bool(r[2])) for r in rows]

    def get_bet_winner_indices(self, bet_id: int) -> List[int]:
        return [int(i) for i in self._call(
            f"getBetWinnerIndices({bet_id})", self.contract.functions.getBetWinnerIndices(bet_id)
        )]

    # ----- writes -----
    def create_bet(self, category: str, description: str, currency_type: CurrencyType,
                   bet_amount: int, start_time: int = 0, end_time: int = 0) -> str:
        # the contract's manual path has no window
        return self._transact("createBet", self.contract.functions.createBet(
            category, description, int(currency_type), int(bet_amount)
        ))

    def create_automated_bet(self, category: str, description: str, currency_type: CurrencyType,
                             bet_amount: int, start_time: int, end_time: int,
                             start_block_height: int, calculation_method: str) -> str:
        return self._transact("createAutomatedBet", self.contract.functions.createAutomatedBet(
            category, description, int(currency_type), int(bet_amount),
            int(start_time), int(end_time), int(start_block_height), calculation_method,
        ))

    def settle_bet(self, bet_id: int, actual_value: int) -> str:
        return self._transact(f"settleBet({bet_id})", self.contract.functions.settleBet(
            bet_id, int(actual_value)
        ))

    def settle_automated_bet(self, bet_id: int, actual_value: int, end_block_height: int,
                             sampled_blocks: Sequence[int], details: str) -> str:
        return self._transact(f"settleAutomatedBet({bet_id})", self.contract.functions.settleAutomatedBet(
            bet_id, int(actual_value), int(end_block_height), [int(h) for h in sampled_blocks], details,
        ))

    def cancel_bet(self, bet_id: int) -> str:
        return self._transact(f"cancelBet({bet_id})", self.contract.functions.cancelBet(bet_id))

    # ----- the signer as a player -----
    def place_bet(self, bet_id: int, guess: int, value: int = 0) -> str:
        """Native bets attach ``value``; stable bets spend the signer's allowance."""
        return self._transact(f"placeBet({bet_id})", self.contract.functions.placeBet(
            bet_id, int(guess)
        ), value=value)

    def claim_prize(self, bet_id: int) -> str:
        return self._transact(f"claimPrize({bet_id})", self.contract.functions.claimPrize(bet_id))


# ---------- in-process gateway ----------
def _local_tx() -> str:
    return "0x" + uuid.uuid4().hex


class LocalLedgerGateway:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        operator: str = OPERATOR_ADDRESS,
        fee_bps: int = FEE_BPS,
        cutoff_s: int = BETTING_CUTOFF_SECONDS,
    ):
        self.session_factory = session_factory
        self.operator = operator.lower()
        self.fee_bps = fee_bps
        self.cutoff_s = cutoff_s

    @contextmanager
    def ledger(self) -> Iterator[BetLedger]:
        db = self.session_factory()
        try:
            yield BetLedger(db, [self.operator], fee_bps=self.fee_bps, cutoff_s=self.cutoff_s)
        finally:
            db.close()

    def _read(self, label: str, fn):
        with self.ledger() as lg:
            try:
                return fn(lg)
            except BetError as e:
                raise LedgerError(f"{label} failed: {e.code}: {e}", code=e.code) from e

    def _write(self, label: str, fn) -> str:
        with self.ledger() as lg:
            try:
                fn(lg)
            except BetError as e:
                lg.db.rollback()
                raise LedgerTransactionError(f"{label} reverted: {e.code}: {e}", code=e.code) from e
        txh = _local_tx()
        logger.info("%s applied - TX: %s", label, txh)
        return txh

    # ----- reads -----
    def health_check(self) -> None:
        self.get_active_bets()

    def get_active_bets(self) -> List[int]:
        return self._read("getActiveBets", lambda lg: lg.get_active_bets())

    def get_settled_bets(self) -> List[int]:
        return self._read("getSettledBets", lambda lg: lg.get_settled_bets())

    def get_bet_info(self, bet_id: int) -> BetInfo:
        return self._read(f"getBetInfo({bet_id})", lambda lg: bet_info_from_row(lg.get_bet(bet_id)))

    def get_bet_automation_data(self, bet_id: int) -> AutomationData:
        return self._read(f"getBetAutomationData({bet_id})",
                          lambda lg: automation_data_from_row(lg.get_bet(bet_id)))

    def get_bet_players(self, bet_id: int) -> List[PlayerBetView]:
        return self._read(f"getBetPlayerBets({bet_id})",
                          lambda lg: [player_view_from_row(pb) for pb in lg.get_bet_players(bet_id)])

    def get_bet_winner_indices(self, bet_id: int) -> List[int]:
        return self._read(f"getBetWinnerIndices({bet_id})", lambda lg: lg.get_bet_winner_indices(bet_id))

    # ----- writes -----
    def create_bet(self, category: str, description: str, currency_type: CurrencyType,
                   bet_amount: int, start_time: int = 0, end_time: int = 0) -> str:
        return self._write("createBet", lambda lg: lg.create_bet(
            self.operator, category, description, currency_type, bet_amount, start_time, end_time,
        ))

    def create_automated_bet(self, category: str, description: str, currency_type: CurrencyType,
                             bet_amount: int, start_time: int, end_time: int,
                             start_block_height: int, calculation_method: str) -> str:
        return self._write("createAutomatedBet", lambda lg: lg.create_automated_bet(
            self.operator, category, description, currency_type, bet_amount,
            start_time, end_time, start_block_height, calculation_method,
        ))

    def settle_bet(self, bet_id: int, actual_value: int) -> str:
        return self._write(f"settleBet({bet_id})",
                           lambda lg: lg.settle_bet(self.operator, bet_id, actual_value))

    def settle_automated_bet(self, bet_id: int, actual_value: int, end_block_height: int,
                             sampled_blocks: Sequence[int], details: str) -> str:
        return self._write(f"settleAutomatedBet({bet_id})", lambda lg: lg.settle_automated_bet(
            self.operator, bet_id, actual_value, end_block_height, sampled_blocks, details,
        ))

    def cancel_bet(self, bet_id: int) -> str:
        return self._write(f"cancelBet({bet_id})", lambda lg: lg.cancel_bet(self.operator, bet_id))


def build_gateway(backend: str = LEDGER_BACKEND):
    if backend == "local":
        return LocalLedgerGateway()
    if backend == "contract":
        return ContractLedgerGateway()
    raise LedgerError(f"unknown LEDGER_BACKEND {backend!r} (expected 'contract' or 'local')")
