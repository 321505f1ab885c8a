"""One automation cycle: settle due automated bets, notify, open the next bet,
expire old notifications. ``bet_autopilot`` decides when cycles run."""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from betting import split_prize
from chain_data import ChainDataReader
from chain_utils import to_base_units
from ledger_gateway import BetInfo, LedgerError
from models import BetStatus, CurrencyType, now_s
from notifications import NotificationStore, WinnerNotification
from settings import (
    BET_WINDOW_SECONDS,
    FEE_BPS,
    NATIVE_BET_AMOUNT,
    SECONDS_PER_BLOCK,
    STABLE_BET_AMOUNT,
)
from settlement import BET_CATEGORIES, SettlementCalculator, UnknownCategoryError

logger = logging.getLogger(__name__)


class SettlementStuckError(RuntimeError):
    """A due bet could be neither settled nor cancelled. Needs an operator."""

    def __init__(self, bet_ids: List[int]):
        super().__init__(
            f"Could not settle or cancel bet(s) {bet_ids}. Manual intervention required."
        )
        self.bet_ids = bet_ids


@dataclass(frozen=True)
class RecoveryPlan:
    delay_s: int
    run_immediately: bool


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_due(info: BetInfo, now: int) -> bool:
    return info.end_time > 0 and now >= info.end_time


class AutomationService:
    def __init__(
        self,
        gateway,
        reader: ChainDataReader,
        calculator: Optional[SettlementCalculator] = None,
        notifications: Optional[NotificationStore] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_s,
        window_s: int = BET_WINDOW_SECONDS,
        seconds_per_block: int = SECONDS_PER_BLOCK,
        fee_bps: int = FEE_BPS,
        native_amount: str = NATIVE_BET_AMOUNT,
        stable_amount: str = STABLE_BET_AMOUNT,
    ):
        self.gateway = gateway
        self.reader = reader
        self.rng = rng or random.Random()
        self.calculator = calculator or SettlementCalculator(reader, rng=self.rng)
        self.notifications = notifications or NotificationStore()
        self.clock = clock
        self.window_s = window_s
        self.seconds_per_block = max(1, seconds_per_block)
        self.fee_bps = fee_bps
        self.native_amount = native_amount
        self.stable_amount = stable_amount

    def health_check(self) -> None:
        logger.info("running health check...")
        self.reader.get_latest_block()
        logger.debug("chain data reader OK")
        self.gateway.health_check()
        logger.debug("ledger OK")
        if self.notifications.health_check():
            logger.debug("notification store OK")
        else:
            logger.warning("notification store unavailable - notifications disabled")
        logger.info("all services healthy")

    # ---------- cycle ----------
    def run_cycle(self) -> None:
        logger.info("starting automated betting cycle...")
        current_height = self.reader.get_latest_height()
        logger.info("current block height: %s", current_height)

        stuck = self.settle_expired_bets(current_height)
        if stuck:
            raise SettlementStuckError(stuck)

        self.create_new_automated_bet(current_height)
        self.cleanup_expired_notifications()
        logger.info("automation cycle completed")

    def expected_end_block(self, start_block: int, current_height: int) -> int:
        return min(start_block + self.window_s // self.seconds_per_block, current_height)

    def settle_expired_bets(self, current_height: int) -> List[int]:
        """Settle every due automated bet. Returns the ids that could be neither
        settled nor cancelled; the rest of the queue is still processed."""
        active = self.gateway.get_active_bets()
        logger.info("found %d active bets", len(active))
        stuck: List[int] = []
        for bet_id in active:
            try:
                info = self.gateway.get_bet_info(bet_id)
                auto = self.gateway.get_bet_automation_data(bet_id)
            except LedgerError as e:
                logger.error("could not read bet %s: %s", bet_id, e)
                continue
            if not (auto.is_automated and is_due(info, self.clock())):
                continue
            if not self._settle_one(info, auto.start_block_height, current_height):
                stuck.append(bet_id)
        return stuck

    def _settle_one(self, info: BetInfo, start_block: int, current_height: int) -> bool:
        bet_id = info.id
        logger.info("settling expired bet %s (%s)...", bet_id, info.category)
        end_block = self.expected_end_block(start_block, current_height)
        try:
            result = self.calculator.calculate(info.category, start_block, end_block)
            logger.info("calculated result for %s: %s", info.category, result.value)
            logger.debug("details: %s", result.details)
            txh = self.gateway.settle_automated_bet(
                bet_id, result.value, end_block, result.sampled_blocks, result.details,
            )
        except UnknownCategoryError as e:
            # left ACTIVE for an operator; cancelling would hide a catalog bug
            logger.error("bet %s has no settlement strategy, leaving it active: %s", bet_id, e)
            return True
        except Exception as e:
            logger.error("failed to settle bet %s, attempting to cancel: %s", bet_id, e)
            try:
                txh = self.gateway.cancel_bet(bet_id)
            except Exception as cancel_err:
                logger.error("failed to cancel bet %s after settlement failure: %s", bet_id, cancel_err)
                return False
            logger.info("bet %s cancelled due to settlement failure - TX: %s", bet_id, txh)
            self.track_cancellation(info, txh)
            return True

        logger.info("bet %s settled - TX: %s", bet_id, txh)
        self.track_winners(info, txh)
        return True

    # ---------- notifications (best effort) ----------
    def track_winners(self, info: BetInfo, tx_hash: str) -> int:
        try:
            indices = self.gateway.get_bet_winner_indices(info.id)
            if not indices:
                logger.info("no winners for bet %s", info.id)
                return 0
            players = self.gateway.get_bet_players(info.id)
            # total_pot is unchanged by settlement, the pre-settle snapshot is exact
            split = split_prize(info.total_pot, len(indices), self.fee_bps)
            settled_at = iso_now()
            tracked = 0
            for idx in indices:
                if idx >= len(players):
                    continue
                self.notifications.add_winner_notification(WinnerNotification(
                    bet_id=info.id,
                    winner_address=players[idx].player,
                    bet_category=info.category,
                    bet_description=info.description,
                    prize_amount=str(split.per_winner),
                    currency_type=int(info.currency_type),
                    settled_at=settled_at,
                    tx_hash=tx_hash,
                ))
                tracked += 1
            logger.info("tracked %d winners for bet %s", tracked, info.id)
            return tracked
        except Exception as e:
            logger.error("error tracking winners for bet %s: %s", info.id, e)
            return 0

    def track_cancellation(self, info: BetInfo, tx_hash: str) -> int:
        try:
            players = self.gateway.get_bet_players(info.id)
            settled_at = iso_now()
            for pb in players:
                self.notifications.add_winner_notification(WinnerNotification(
                    bet_id=info.id,
                    winner_address=pb.player,
                    bet_category=info.category,
                    bet_description=f"CANCELLED: {info.description}",
                    prize_amount=str(info.bet_amount),
                    currency_type=int(info.currency_type),
                    settled_at=settled_at,
                    tx_hash=tx_hash,
                ))
            logger.info("tracked cancellation for %d players in bet %s", len(players), info.id)
            return len(players)
        except Exception as e:
            logger.error("error tracking cancellation for bet %s: %s", info.id, e)
            return 0

    def cleanup_expired_notifications(self) -> int:
        try:
            return self.notifications.clear_expired_notifications()
        except Exception as e:
            logger.error("error cleaning up notifications: %s", e)
            return 0

    # ---------- next bet ----------
    def create_new_automated_bet(self, current_height: int) -> str:
        cat = self.rng.choice(BET_CATEGORIES)
        now = self.clock()
        end_time = now + self.window_s
        if self.rng.random() < 0.5:
            currency = CurrencyType.NATIVE
            amount = to_base_units(self.native_amount, currency)
        else:
            currency = CurrencyType.STABLE
            amount = to_base_units(self.stable_amount, currency)

        txh = self.gateway.create_automated_bet(
            cat.category, cat.description, currency, amount,
            now, end_time, current_height, cat.calculation_method,
        )
        logger.info("new automated bet created: %s (%s %s) - TX: %s",
                    cat.category, amount, currency.name, txh)
        logger.info("bet will end at %s", datetime.fromtimestamp(end_time, tz=timezone.utc).isoformat())
        return txh

    # ---------- startup ----------
    def startup_recovery(self) -> RecoveryPlan:
        """When the first cycle should fire, based on the newest active automated bet."""
        logger.info("running startup recovery check...")
        try:
            active = self.gateway.get_active_bets()
        except Exception as e:
            logger.error("error during startup recovery, falling back to immediate start: %s", e)
            return RecoveryPlan(delay_s=0, run_immediately=True)

        latest_end: Optional[int] = None
        latest_id: Optional[int] = None
        for bet_id in active:
            try:
                info = self.gateway.get_bet_info(bet_id)
                auto = self.gateway.get_bet_automation_data(bet_id)
            except LedgerError as e:
                logger.warning("could not get info for bet %s: %s", bet_id, e)
                continue
            if info.status != BetStatus.ACTIVE or not auto.is_automated:
                continue
            if latest_end is None or info.end_time > latest_end:
                latest_end, latest_id = info.end_time, bet_id

        if latest_end is None:
            logger.info("no active automated bets - will create a new bet immediately")
            return RecoveryPlan(delay_s=0, run_immediately=True)

        now = self.clock()
        if now >= latest_end:
            logger.info("bet %s has expired - will settle and create a new bet immediately", latest_id)
            return RecoveryPlan(delay_s=0, run_immediately=True)

        delay = latest_end - now
        logger.info("bet %s still active, next cycle in %ss", latest_id, delay)
        return RecoveryPlan(delay_s=delay, run_immediately=False)
