"""TTL-backed "you won, here is how much" records, one per (network, winner, bet).

Not authoritative state: everything here can be rebuilt from the ledger. Rows
carry an ``expires_at`` and are invisible once it passes; ``clear_expired``
deletes them.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional

from pydantic import BaseModel
from sqlalchemy import delete, func, select, text

from db_core import SessionLocal
from models import WinnerNotificationRow, now_s
from settings import NETWORK, NOTIFICATION_TTL_SECONDS

logger = logging.getLogger(__name__)


class WinnerNotification(BaseModel):
    bet_id: int
    winner_address: str
    bet_category: str
    bet_description: str
    prize_amount: str
    currency_type: int
    settled_at: str
    tx_hash: Optional[str] = None


def _row_to_model(row: WinnerNotificationRow) -> WinnerNotification:
    return WinnerNotification(
        bet_id=row.bet_id,
        winner_address=row.winner_address,
        bet_category=row.bet_category,
        bet_description=row.bet_description,
        prize_amount=row.prize_amount,
        currency_type=row.currency_type,
        settled_at=row.settled_at,
        tx_hash=row.tx_hash or None,
    )


class NotificationStore:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        network: str = NETWORK,
        ttl_s: int = NOTIFICATION_TTL_SECONDS,
        clock: Callable[[], int] = now_s,
    ):
        self.session_factory = session_factory
        self.network = network
        self.ttl_s = ttl_s
        self.clock = clock

    def health_check(self) -> bool:
        try:
            with self.session_factory() as db:
                db.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("notification store health check failed: %s", e)
            return False

    def add_winner_notification(self, n: WinnerNotification) -> None:
        address = n.winner_address.lower()
        now = self.clock()
        with self.session_factory() as db:
            row = db.scalars(select(WinnerNotificationRow).where(
                WinnerNotificationRow.network == self.network,
                WinnerNotificationRow.winner_address == address,
                WinnerNotificationRow.bet_id == n.bet_id,
            )).first()
            if row is None:
                row = WinnerNotificationRow(network=self.network, winner_address=address, bet_id=n.bet_id)
                db.add(row)
            row.bet_category = n.bet_category
            row.bet_description = n.bet_description
            row.prize_amount = n.prize_amount
            row.currency_type = n.currency_type
            row.settled_at = n.settled_at
            row.tx_hash = n.tx_hash or ""
            row.created_at = now
            row.expires_at = now + self.ttl_s
            db.commit()
        logger.info("added winner notification for %s - bet %s", address, n.bet_id)

    def _live(self, address: str):
        return (
            WinnerNotificationRow.network == self.network,
            WinnerNotificationRow.winner_address == address.lower(),
            WinnerNotificationRow.expires_at > self.clock(),
        )

    def get_winner_notifications(self, address: str) -> List[WinnerNotification]:
        with self.session_factory() as db:
            rows = db.scalars(
                select(WinnerNotificationRow)
                .where(*self._live(address))
                .order_by(WinnerNotificationRow.bet_id.desc())
            ).all()
            return [_row_to_model(r) for r in rows]

    def get_winner_count(self, address: str) -> int:
        with self.session_factory() as db:
            return db.scalar(
                select(func.count(WinnerNotificationRow.id)).where(*self._live(address))
            ) or 0

    def remove_winner_notification(self, address: str, bet_id: int) -> bool:
        with self.session_factory() as db:
            res = db.execute(delete(WinnerNotificationRow).where(
                WinnerNotificationRow.network == self.network,
                WinnerNotificationRow.winner_address == address.lower(),
                WinnerNotificationRow.bet_id == bet_id,
            ))
            db.commit()
        removed = (res.rowcount or 0) > 0
        if removed:
            logger.info("removed winner notification for %s - bet %s", address.lower(), bet_id)
        return removed

    def clear_expired_notifications(self) -> int:
        with self.session_factory() as db:
            res = db.execute(delete(WinnerNotificationRow).where(
                WinnerNotificationRow.network == self.network,
                WinnerNotificationRow.expires_at <= self.clock(),
            ))
            db.commit()
        cleared = res.rowcount or 0
        if cleared:
            logger.info("cleared %d expired notifications", cleared)
        return cleared
