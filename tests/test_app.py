from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import app as app_module
from betting import ConcurrentUpdateError, PlayerAlreadyBetError
from conftest import ALICE, BOB, OPERATOR
from db_core import get_db
from ledger_gateway import LedgerError, LocalLedgerGateway
from notifications import NotificationStore, WinnerNotification

NATIVE = 10**17


@pytest.fixture
def gateway(session_factory):
    return LocalLedgerGateway(session_factory=session_factory, operator=OPERATOR)


@pytest.fixture
def store(session_factory):
    return NotificationStore(session_factory=session_factory, network="testnet", ttl_s=3600)


@pytest.fixture
def client(session_factory, gateway, store):
    def _db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app = app_module.app
    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[app_module.get_gateway] = lambda: gateway
    app.dependency_overrides[app_module.get_notifications] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(client, currency="NATIVE", amount="0.1"):
    r = client.post("/admin/bets", json={
        "category": "gas_used", "description": "Total gas used",
        "currency_type": currency, "amount": amount,
    })
    assert r.status_code == 200, r.text
    return r.json()


def test_health(client):
    body = client.get("/health").json()
    assert body["ok"] is True
    assert "ts" in body


def test_categories(client):
    items = client.get("/categories").json()["items"]
    assert {i["category"] for i in items} == {"base_fee_per_gas", "burnt_fees", "gas_used", "xtz_price"}


def test_full_manual_flow(client):
    assert _create(client)["tx_hash"].startswith("0x")

    assert client.post("/bets/1/place", json={"player": ALICE, "guess": 100}).status_code == 200
    r = client.post("/bets/1/place", json={"player": BOB, "guess": 300})
    assert r.json()["total_pot"] == str(2 * NATIVE)

    listed = client.get("/bets", params={"status": "active"}).json()
    assert listed["count"] == 1
    assert listed["items"][0]["bet_amount_display"] == "0.1"

    r = client.post("/admin/bets/1/settle", json={"actual_value": 250})
    assert r.status_code == 200
    assert r.json()["winner_indices"] == [1]

    detail = client.get("/bets/1").json()
    assert detail["bet"]["status"] == "SETTLED"
    assert [p["guess"] for p in detail["players"]] == [100, 300]
    assert detail["automation"] is None

    r = client.post("/bets/1/claim", json={"player": BOB})
    assert r.json() == {"ok": True, "kind": "PRIZE", "amount": str(2 * NATIVE * 95 // 100)}

    r = client.post("/bets/1/claim", json={"player": BOB})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "AlreadyClaimed"

    assert client.get("/bets", params={"status": "settled"}).json()["count"] == 1


def test_rejections_carry_codes(client):
    _create(client)
    r = client.post("/bets/1/place", json={"player": ALICE, "guess": 1, "value": "5"})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "InvalidBetAmount"

    client.post("/admin/bets/1/cancel")
    r = client.post("/admin/bets/1/settle", json={"actual_value": 1})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "BetNotActive"


def test_stable_bet_needs_allowance(client):
    _create(client, currency="STABLE", amount="1")
    r = client.post("/bets/1/place", json={"player": ALICE, "guess": 70})
    assert r.json()["detail"]["code"] == "InsufficientAllowance"

    assert client.post("/allowances", json={"owner": ALICE, "amount": "1000000"}).status_code == 200
    assert client.post("/bets/1/place", json={"player": ALICE, "guess": 70}).status_code == 200


def test_invalid_amount_on_create(client):
    r = client.post("/admin/bets", json={"category": "gas_used", "amount": "lots"})
    assert r.status_code == 400


def test_missing_bet_is_404(client):
    assert client.get("/bets/99").status_code == 404
    assert client.post("/bets/99/place", json={"player": ALICE, "guess": 1}).status_code == 404
    assert client.post("/admin/bets/99/cancel").status_code == 404


def test_ledger_outage_is_502(client):
    def down():
        raise LedgerError("RPC not reachable")

    app_module.app.dependency_overrides[app_module.get_gateway] = lambda: SimpleNamespace(get_active_bets=down)
    assert client.get("/bets").status_code == 502


def test_player_actions_need_local_ledger(client):
    app_module.app.dependency_overrides[app_module.get_gateway] = lambda: SimpleNamespace()
    assert client.post("/bets/1/claim", json={"player": ALICE}).status_code == 501


def test_notifications_feed(client, store):
    store.add_winner_notification(WinnerNotification(
        bet_id=3, winner_address=ALICE, bet_category="gas_used", bet_description="d",
        prize_amount="95", currency_type=0, settled_at="2025-01-01T00:00:00+00:00", tx_hash="0x1",
    ))
    body = client.get("/notifications", params={"address": ALICE}).json()
    assert body["count"] == 1
    assert body["notifications"][0]["prize_amount"] == "95"

    assert client.delete("/notifications", params={"address": ALICE, "bet_id": 3}).status_code == 200
    assert client.delete("/notifications", params={"address": ALICE, "bet_id": 3}).status_code == 404
    assert client.get("/notifications", params={"address": ALICE}).json()["count"] == 0


def test_live_events_filter_by_bet(client):
    _create(client)
    _create(client)
    client.post("/bets/2/place", json={"player": ALICE, "guess": 1})

    items = client.get("/live/events", params={"bet_id": 2}).json()["items"]
    assert [i["kind"] for i in items] == ["BetCreated", "PlayerBetPlaced"]
    assert all(i["ctx"]["bet_id"] == 2 for i in items)

    everything = client.get("/live/events").json()
    assert everything["count"] == 3
    assert everything["next_since_id"] == everything["items"][-1]["id"]


def test_debug_autopilot_without_scheduler(client):
    body = client.get("/__debug__/autopilot").json()
    assert body["task_exists"] is False


def test_lost_race_is_a_conflict():
    with pytest.raises(HTTPException) as ei:
        app_module._reject(ConcurrentUpdateError("bet 1 changed underneath this call, retry"))
    assert ei.value.status_code == 409
    assert ei.value.detail["code"] == "ConcurrentUpdate"

    with pytest.raises(HTTPException) as ei:
        app_module._reject(PlayerAlreadyBetError())
    assert ei.value.status_code == 400
