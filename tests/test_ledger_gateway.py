from __future__ import annotations

from types import SimpleNamespace

import pytest

import chain_utils
import ledger_gateway
from conftest import ALICE, BOB, OPERATOR
from ledger_gateway import (
    LEDGER_ABI,
    ContractLedgerGateway,
    LedgerError,
    LedgerTransactionError,
    LocalLedgerGateway,
    build_gateway,
    parse_bet_info,
)
from models import BetStatus, CurrencyType

T0 = 1_700_000_000
CONTRACT = "0x" + "11" * 20


# ---------- in-process ledger ----------
@pytest.fixture
def local(session_factory):
    return LocalLedgerGateway(session_factory=session_factory, operator=OPERATOR)


def test_local_create_and_read(local):
    txh = local.create_automated_bet("gas_used", "auto", CurrencyType.NATIVE, 10, T0, T0 + 300, 500, "Sum gas_used")
    assert txh.startswith("0x") and len(txh) == 34
    assert local.get_active_bets() == [1]

    info = local.get_bet_info(1)
    assert info.category == "gas_used"
    assert info.status == BetStatus.ACTIVE
    assert info.end_time == T0 + 300

    auto = local.get_bet_automation_data(1)
    assert auto.is_automated
    assert auto.start_block_height == 500


def test_local_settle_reports_winners(local):
    local.create_bet("gas_used", "manual", CurrencyType.NATIVE, 10)
    with local.ledger() as lg:
        lg.place_bet_native(1, ALICE, 100, 10)
        lg.place_bet_native(1, BOB, 300, 10)
    local.settle_automated_bet(1, 250, 520, [501, 510], "Summed gas_used")

    assert local.get_bet_winner_indices(1) == [1]
    assert [p.player for p in local.get_bet_players(1)] == [ALICE, BOB]
    assert local.get_settled_bets() == [1]
    assert local.get_bet_automation_data(1).sampled_blocks == [501, 510]


def test_local_rejection_looks_like_a_revert(local):
    local.create_bet("gas_used", "manual", CurrencyType.NATIVE, 10)
    local.cancel_bet(1)
    with pytest.raises(LedgerTransactionError) as ei:
        local.settle_bet(1, 5)
    assert ei.value.code == "BetNotActive"
    assert local.get_bet_info(1).status == BetStatus.CANCELLED


def test_local_missing_bet_read(local):
    with pytest.raises(LedgerError) as ei:
        local.get_bet_info(42)
    assert ei.value.code == "BetNotFound"
    assert not isinstance(ei.value, LedgerTransactionError)


def test_local_gateway_is_the_only_operator(session_factory):
    gw = LocalLedgerGateway(session_factory=session_factory, operator=OPERATOR)
    with gw.ledger() as lg:
        assert lg.operators == {OPERATOR}


def test_build_gateway_rejects_unknown_backend():
    with pytest.raises(LedgerError):
        build_gateway("carrier-pigeon")


# ---------- contract ledger (web3 faked) ----------
class FakeFn:
    def __init__(self, name, args, results, sent):
        self.name, self.args, self.results, self.sent = name, args, results, sent

    def call(self):
        res = self.results[self.name]
        if isinstance(res, Exception):
            raise res
        return res

    def build_transaction(self, params):
        self.sent.append((self.name, self.args, params))
        return {"to": CONTRACT, "data": "0x", **params}


class FakeFunctions:
    def __init__(self, results, sent):
        self._results, self._sent = results, sent

    def __getattr__(self, name):
        return lambda *args: FakeFn(name, args, self._results, self._sent)


def _fake_w3(results, sent):
    contract = SimpleNamespace(functions=FakeFunctions(results, sent))
    account = SimpleNamespace(
        from_key=lambda key: SimpleNamespace(address="0x" + "22" * 20),
        sign_transaction=lambda tx, private_key: SimpleNamespace(raw_transaction=b"\x01"),
    )
    eth = SimpleNamespace(
        account=account,
        contract=lambda address, abi: contract,
        get_transaction_count=lambda addr, block: 7,
        send_raw_transaction=lambda raw: b"\xab" * 32,
        block_number=100,
    )
    return SimpleNamespace(eth=eth, is_connected=lambda: True)


def _contract_gw(results, sent, rcpt, monkeypatch, polled=None):
    w3 = _fake_w3(results, sent)

    def fake_wait(txh, timeout_s, w3s=None):
        if polled is not None:
            polled.append(w3s)
        return (w3, rcpt)

    monkeypatch.setattr(ledger_gateway, "wait_for_receipt_any", fake_wait)
    return ContractLedgerGateway(address=CONTRACT, private_key="0x" + "01" * 32, chain_id=128123,
                                 confirmations=1, tx_timeout_s=5, w3=w3)


def test_abi_covers_gateway_calls():
    names = {f["name"] for f in LEDGER_ABI}
    assert {"createAutomatedBet", "settleAutomatedBet", "cancelBet", "placeBet", "claimPrize",
            "getBetInfo", "getBetWinnerIndices", "getBetPlayerBets"} <= names


def test_parse_bet_info_tuple():
    info = parse_bet_info((3, "xtz_price", "d", 1, 10**6, 75, 1, 2 * 10**6, False, 2, T0, T0, T0 + 300))
    assert info.currency_type == CurrencyType.STABLE
    assert info.status == BetStatus.SETTLED
    assert info.player_bet_count == 2


def test_contract_reads(monkeypatch):
    results = {
        "getActiveBets": [1, 2],
        "getBetPlayerBets": [("0xA", 100, False), ("0xB", 300, True)],
        "getBetAutomationData": (10, 30, [11, 12], "Sum gas_used", True),
    }
    gw = _contract_gw(results, [], {"status": 1, "blockNumber": 100}, monkeypatch)
    assert gw.get_active_bets() == [1, 2]
    assert [p.guess for p in gw.get_bet_players(1)] == [100, 300]
    assert gw.get_bet_automation_data(1).sampled_blocks == [11, 12]


def test_contract_read_failure_is_ledger_error(monkeypatch):
    gw = _contract_gw({"getActiveBets": ConnectionError("rpc down")}, [], None, monkeypatch)
    with pytest.raises(LedgerError):
        gw.get_active_bets()


def test_contract_write_sends_and_waits(monkeypatch):
    sent = []
    gw = _contract_gw({}, sent, {"status": 1, "blockNumber": 100}, monkeypatch)
    txh = gw.settle_automated_bet(4, 250, 120, [101, 102], "details")
    assert txh == "0x" + "ab" * 32
    name, args, params = sent[0]
    assert name == "settleAutomatedBet"
    assert args == (4, 250, 120, [101, 102], "details")
    assert params["nonce"] == 7
    assert params["chainId"] == 128123


def test_contract_reverted_receipt(monkeypatch):
    gw = _contract_gw({}, [], {"status": 0, "blockNumber": 100}, monkeypatch)
    with pytest.raises(LedgerTransactionError):
        gw.cancel_bet(1)


def test_contract_unmined_tx(monkeypatch):
    gw = _contract_gw({}, [], None, monkeypatch)
    with pytest.raises(LedgerTransactionError):
        gw.create_bet("gas_used", "x", CurrencyType.NATIVE, 10)


def test_contract_receipts_polled_on_injected_provider(monkeypatch):
    polled = []
    gw = _contract_gw({}, [], {"status": 1, "blockNumber": 100}, monkeypatch, polled=polled)
    gw.cancel_bet(2)
    assert polled == [[gw.w3]]


def test_contract_place_bet_attaches_value(monkeypatch):
    sent = []
    gw = _contract_gw({}, sent, {"status": 1, "blockNumber": 100}, monkeypatch)
    gw.place_bet(3, 420, value=10**17)
    gw.claim_prize(3)

    (name, args, params), (claim_name, claim_args, claim_params) = sent
    assert (name, args) == ("placeBet", (3, 420))
    assert params["value"] == 10**17
    assert (claim_name, claim_args) == ("claimPrize", (3,))
    assert "value" not in claim_params


def test_wait_for_receipt_uses_given_providers(monkeypatch):
    monkeypatch.setattr(chain_utils, "providers", lambda: pytest.fail("configured RPCs consulted"))
    w3 = SimpleNamespace(eth=SimpleNamespace(get_transaction_receipt=lambda txh: {"status": 1}))
    seen, rcpt = chain_utils.wait_for_receipt_any("0xab", timeout_s=1, w3s=[w3])
    assert seen is w3
    assert rcpt == {"status": 1}
