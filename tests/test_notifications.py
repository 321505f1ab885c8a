from __future__ import annotations

from conftest import ALICE, BOB
from notifications import NotificationStore, WinnerNotification


class Clock:
    def __init__(self, t=1_700_000_000):
        self.t = t

    def __call__(self):
        return self.t


def _note(bet_id, address=ALICE, amount="95"):
    return WinnerNotification(
        bet_id=bet_id,
        winner_address=address,
        bet_category="gas_used",
        bet_description="Total gas used",
        prize_amount=amount,
        currency_type=0,
        settled_at="2025-01-01T00:00:00+00:00",
        tx_hash="0xabc",
    )


def _store(session_factory, clock, ttl=100, network="testnet"):
    return NotificationStore(session_factory=session_factory, network=network, ttl_s=ttl, clock=clock)


def test_add_list_and_count(session_factory):
    store = _store(session_factory, Clock())
    store.add_winner_notification(_note(1))
    store.add_winner_notification(_note(2))
    store.add_winner_notification(_note(2, address=BOB))

    items = store.get_winner_notifications(ALICE.upper().replace("0X", "0x"))
    assert [n.bet_id for n in items] == [2, 1]
    assert store.get_winner_count(ALICE) == 2
    assert store.get_winner_count(BOB) == 1


def test_same_winner_and_bet_is_overwritten(session_factory):
    store = _store(session_factory, Clock())
    store.add_winner_notification(_note(1, amount="10"))
    store.add_winner_notification(_note(1, amount="20"))
    items = store.get_winner_notifications(ALICE)
    assert len(items) == 1
    assert items[0].prize_amount == "20"


def test_remove_one(session_factory):
    store = _store(session_factory, Clock())
    store.add_winner_notification(_note(1))
    assert store.remove_winner_notification(ALICE, 1) is True
    assert store.remove_winner_notification(ALICE, 1) is False
    assert store.get_winner_notifications(ALICE) == []


def test_expired_entries_are_hidden_then_cleared(session_factory):
    clock = Clock()
    store = _store(session_factory, clock, ttl=100)
    store.add_winner_notification(_note(1))
    clock.t += 50
    store.add_winner_notification(_note(2))

    clock.t += 60   # first entry is 110s old, second 60s
    assert [n.bet_id for n in store.get_winner_notifications(ALICE)] == [2]
    assert store.clear_expired_notifications() == 1
    assert store.clear_expired_notifications() == 0
    assert store.get_winner_count(ALICE) == 1


def test_networks_are_isolated(session_factory):
    clock = Clock()
    _store(session_factory, clock, network="mainnet").add_winner_notification(_note(1))
    assert _store(session_factory, clock, network="testnet").get_winner_count(ALICE) == 0


def test_health_check(session_factory):
    assert _store(session_factory, Clock()).health_check() is True

    def broken():
        raise RuntimeError("db down")

    assert NotificationStore(session_factory=broken).health_check() is False
