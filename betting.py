"""Bet lifecycle engine.

A bet moves ACTIVE -> SETTLED or ACTIVE -> CANCELLED exactly once. While
ACTIVE it accepts one fixed-size stake per player until ``end_time - cutoff``.
Settlement picks every guess at minimal distance from the actual value; the
house fee is taken once off the pot and the rest is split evenly between the
winners. A cancelled bet is in refund mode: every player can reclaim the stake.

Every operation validates fully before touching state, then commits once, so a
rejected call never leaves a partial write behind. State transitions, pot
growth, allowance spends and claims are conditional UPDATEs on the state the
operation read; a concurrent writer that got there first turns the late call
into a rejection instead of a lost update.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    Allowance, Bet, BetStatus, CurrencyType, LiveEvent, Payout, PayoutKind,
    PlayerBet, now_s,
)
from settings import BETTING_CUTOFF_SECONDS, FEE_BPS

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000


# ---------- errors ----------
class BetError(ValueError):
    """Rejected lifecycle operation. ``code`` names the reason."""

    code = "BetError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)


class UnauthorizedError(BetError):
    code = "Unauthorized"

class BetNotFoundError(BetError):
    code = "BetNotFound"

class InvalidBetAmountError(BetError):
    code = "InvalidBetAmount"

class InvalidValueError(BetError):
    code = "InvalidValue"

class InvalidTimeWindowError(BetError):
    code = "InvalidTimeWindow"

class WrongCurrencyError(BetError):
    code = "WrongCurrency"

class BetNotActiveError(BetError):
    code = "BetNotActive"

class BettingClosedError(BetError):
    code = "BettingClosed"

class PlayerAlreadyBetError(BetError):
    code = "PlayerAlreadyBet"

class InsufficientAllowanceError(BetError):
    code = "InsufficientAllowance"

class BetNotSettledError(BetError):
    code = "BetNotSettled"

class NotAParticipantError(BetError):
    code = "NotAParticipant"

class NotAWinnerError(BetError):
    code = "NotAWinner"

class AlreadyClaimedError(BetError):
    code = "AlreadyClaimed"

class ConcurrentUpdateError(BetError):
    code = "ConcurrentUpdate"


# ---------- pure rules ----------
def select_winners(guesses: Sequence[int], actual_value: int) -> List[int]:
    """Positions of every guess at minimal absolute distance from ``actual_value``."""
    if not guesses:
        return []
    distances = [abs(g - actual_value) for g in guesses]
    best = min(distances)
    return [i for i, d in enumerate(distances) if d == best]


@dataclass(frozen=True)
class PrizeSplit:
    pot: int
    fee: int
    per_winner: int
    dust: int
    winners: int

    @property
    def house_take(self) -> int:
        # integer division remainder stays with the house
        return self.fee + self.dust


def split_prize(pot: int, winners: int, fee_bps: int = FEE_BPS) -> PrizeSplit:
    """Fee once off the top, remainder split evenly.

    ``fee + dust + winners * per_winner == pot`` always holds; ``dust`` is the
    remainder of the even split and is always smaller than ``winners``.
    """
    if winners <= 0:
        return PrizeSplit(pot=pot, fee=0, per_winner=0, dust=pot, winners=0)
    fee = pot * fee_bps // BPS_DENOMINATOR
    pool = pot - fee
    per_winner = pool // winners
    dust = pool - per_winner * winners
    return PrizeSplit(pot=pot, fee=fee, per_winner=per_winner, dust=dust, winners=winners)


def betting_closes_at(bet: Bet, cutoff_s: int) -> Optional[int]:
    if not bet.end_time:
        return None
    return bet.end_time - cutoff_s


def _addr(a: str) -> str:
    return (a or "").strip().lower()


# ---------- engine ----------
class BetLedger:
    """In-process ledger over one SQLAlchemy session."""

    def __init__(
        self,
        db: Session,
        operators: Iterable[str],
        fee_bps: int = FEE_BPS,
        cutoff_s: int = BETTING_CUTOFF_SECONDS,
        treasury: Optional[str] = None,
    ):
        self.db = db
        self.operators = {_addr(o) for o in operators}
        self.fee_bps = fee_bps
        self.cutoff_s = cutoff_s
        self.treasury = _addr(treasury) if treasury else next(iter(sorted(self.operators)), "house")

    # ----- helpers -----
    def _event(self, kind: str, message: str, ctx: Optional[Dict[str, Any]] = None):
        self.db.add(LiveEvent(
            kind=kind,
            message=message,
            ctx_json=json.dumps(ctx, separators=(",", ":")) if ctx else None,
        ))

    def _require_operator(self, caller: str):
        if _addr(caller) not in self.operators:
            raise UnauthorizedError(f"{caller} is not an operator")

    def _get(self, bet_id: int) -> Bet:
        bet = self.db.get(Bet, bet_id)
        if bet is None:
            raise BetNotFoundError(f"bet {bet_id} not found")
        return bet

    def _guarded(self, stmt) -> bool:
        """Run a conditional UPDATE; False when its WHERE no longer matches."""
        res = self.db.execute(stmt.execution_options(synchronize_session=False))
        return res.rowcount == 1

    def _lost_race(self, bet_id: int) -> BetError:
        self.db.rollback()
        bet = self.db.get(Bet, bet_id, populate_existing=True)
        if bet is not None and bet.status != BetStatus.ACTIVE:
            return BetNotActiveError(f"bet {bet_id} is {bet.status.name}")
        return ConcurrentUpdateError(f"bet {bet_id} changed underneath this call, retry")

    def _get_active(self, bet_id: int) -> Bet:
        bet = self._get(bet_id)
        if bet.status != BetStatus.ACTIVE:
            raise BetNotActiveError(f"bet {bet_id} is {bet.status.name}")
        return bet

    def _get_open(self, bet_id: int, now: Optional[int]) -> Bet:
        bet = self._get_active(bet_id)
        closes_at = betting_closes_at(bet, self.cutoff_s)
        t = now if now is not None else now_s()
        if closes_at is not None and t >= closes_at:
            raise BettingClosedError(f"betting on bet {bet_id} closed at {closes_at}")
        return bet

    # ----- creation -----
    def create_bet(
        self,
        caller: str,
        category: str,
        description: str,
        currency_type: CurrencyType,
        bet_amount: int,
        start_time: int = 0,
        end_time: int = 0,
    ) -> Bet:
        return self._create(caller, category, description, currency_type, bet_amount,
                            start_time, end_time, automation=None)

    def create_automated_bet(
        self,
        caller: str,
        category: str,
        description: str,
        currency_type: CurrencyType,
        bet_amount: int,
        start_time: int,
        end_time: int,
        start_block_height: int,
        calculation_method: str,
    ) -> Bet:
        return self._create(caller, category, description, currency_type, bet_amount,
                            start_time, end_time,
                            automation={"start_block_height": start_block_height,
                                        "calculation_method": calculation_method})

    def _create(self, caller, category, description, currency_type, bet_amount,
                start_time, end_time, automation) -> Bet:
        self._require_operator(caller)
        if bet_amount is None or int(bet_amount) <= 0:
            raise InvalidBetAmountError("bet amount must be > 0")
        if start_time < 0 or end_time < start_time:
            raise InvalidTimeWindowError(f"invalid window {start_time}..{end_time}")

        bet = Bet(
            creator=_addr(caller),
            category=category,
            description=description or "",
            currency_type=CurrencyType(currency_type),
            bet_amount=int(bet_amount),
            status=BetStatus.ACTIVE,
            total_pot=0,
            refund_mode=False,
            start_time=start_time,
            end_time=end_time,
        )
        if automation:
            bet.is_automated = True
            bet.start_block_height = automation["start_block_height"]
            bet.calculation_method = automation["calculation_method"]
        self.db.add(bet)
        self.db.flush()
        self._event("BetCreated", f"Bet {bet.id} created • {category}", {
            "bet_id": bet.id,
            "category": category,
            "currency_type": int(bet.currency_type),
            "bet_amount": str(bet.bet_amount),
            "start_time": start_time,
            "end_time": end_time,
            "automated": bet.is_automated,
        })
        self.db.commit()
        logger.info("bet %s created (%s, automated=%s)", bet.id, category, bet.is_automated)
        return bet

    # ----- betting -----
    def approve(self, owner: str, amount: int) -> Allowance:
        if amount < 0:
            raise InvalidBetAmountError("allowance must be >= 0")
        row = self.db.get(Allowance, _addr(owner))
        if row is None:
            row = Allowance(owner=_addr(owner), amount=amount)
            self.db.add(row)
        else:
            row.amount = amount
        self.db.commit()
        return row

    def place_bet_native(self, bet_id: int, player: str, guess: int, value: int,
                         now: Optional[int] = None) -> PlayerBet:
        bet = self._get_open(bet_id, now)
        if bet.currency_type != CurrencyType.NATIVE:
            raise WrongCurrencyError(f"bet {bet_id} takes the stable currency")
        if int(value) != bet.bet_amount:
            raise InvalidBetAmountError(f"stake must be exactly {bet.bet_amount}")
        self._check_new_player(bet, player, guess)
        return self._append(bet, player, guess, int(value))

    def place_bet_stable(self, bet_id: int, player: str, guess: int,
                         now: Optional[int] = None) -> PlayerBet:
        bet = self._get_open(bet_id, now)
        if bet.currency_type != CurrencyType.STABLE:
            raise WrongCurrencyError(f"bet {bet_id} takes the native currency")
        self._check_new_player(bet, player, guess)
        allowance = self.db.get(Allowance, _addr(player))
        if allowance is None or allowance.amount < bet.bet_amount:
            raise InsufficientAllowanceError(
                f"allowance {allowance.amount if allowance else 0} < {bet.bet_amount}"
            )
        return self._append(bet, player, guess, bet.bet_amount, allowance=allowance)

    def _check_new_player(self, bet: Bet, player: str, guess: int):
        if int(guess) < 0:
            raise InvalidValueError("guess must be >= 0")
        if any(pb.player == _addr(player) for pb in bet.player_bets):
            raise PlayerAlreadyBetError(f"{player} already bet on {bet.id}")

    def _append(self, bet: Bet, player: str, guess: int, stake: int,
                allowance: Optional[Allowance] = None) -> PlayerBet:
        pot = bet.total_pot
        moved = self._guarded(
            update(Bet)
            .where(Bet.id == bet.id, Bet.status == BetStatus.ACTIVE, Bet.total_pot == pot)
            .values(total_pot=pot + stake)
        )
        if moved and allowance is not None:
            moved = self._guarded(
                update(Allowance)
                .where(Allowance.owner == allowance.owner, Allowance.amount == allowance.amount)
                .values(amount=allowance.amount - stake)
            )
        if not moved:
            raise self._lost_race(bet.id)
        self.db.refresh(bet)

        pb = PlayerBet(
            bet_id=bet.id,
            position=len(bet.player_bets),
            player=_addr(player),
            guess=int(guess),
            stake=stake,
            claimed=False,
        )
        bet.player_bets.append(pb)
        self._event("PlayerBetPlaced", f"Bet {bet.id}: {pb.player} guessed {pb.guess}", {
            "bet_id": bet.id, "player": pb.player, "guess": str(pb.guess),
        })
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise PlayerAlreadyBetError(f"{player} already bet on {bet.id}")
        return pb

    # ----- resolution -----
    def settle_bet(self, caller: str, bet_id: int, actual_value: int,
                   now: Optional[int] = None) -> Bet:
        return self._settle(caller, bet_id, actual_value, now, automation=None)

    def settle_automated_bet(self, caller: str, bet_id: int, actual_value: int,
                             end_block_height: int, sampled_blocks: Sequence[int],
                             details: str, now: Optional[int] = None) -> Bet:
        return self._settle(caller, bet_id, actual_value, now, automation={
            "end_block_height": end_block_height,
            "sampled_blocks": list(sampled_blocks),
            "details": details,
        })

    def _settle(self, caller, bet_id, actual_value, now, automation) -> Bet:
        self._require_operator(caller)
        bet = self._get_active(bet_id)
        if int(actual_value) < 0:
            raise InvalidValueError("actual value must be >= 0")

        winners = select_winners([pb.guess for pb in bet.player_bets], int(actual_value))
        split = split_prize(bet.total_pot, len(winners), self.fee_bps)

        values = {
            "status": BetStatus.SETTLED,
            "actual_value": int(actual_value),
            "winner_indices_json": json.dumps(winners),
            "settled_at": now if now is not None else now_s(),
            "fee_bps": self.fee_bps,
        }
        if automation:
            values.update(
                end_block_height=automation["end_block_height"],
                sampled_blocks_json=json.dumps(automation["sampled_blocks"]),
                calculation_details=automation["details"],
            )
        # the pot the winners were computed from must still be the pot
        if not self._guarded(
            update(Bet)
            .where(Bet.id == bet.id, Bet.status == BetStatus.ACTIVE, Bet.total_pot == split.pot)
            .values(**values)
        ):
            raise self._lost_race(bet.id)
        self.db.refresh(bet)

        if split.house_take > 0:
            self.db.add(Payout(
                bet_id=bet.id,
                user_address=self.treasury,
                kind=PayoutKind.HOUSE_FEE,
                amount=split.house_take,
                is_house_fee=True,
            ))
        self._event("BetSettled", f"Bet {bet.id} settled • actual {bet.actual_value} • winners {winners}", {
            "bet_id": bet.id,
            "actual_value": str(bet.actual_value),
            "winner_indices": winners,
            "total_pot": str(bet.total_pot),
            "fee": str(split.fee),
            "dust": str(split.dust),
            "per_winner": str(split.per_winner),
        })
        self.db.commit()
        logger.info("bet %s settled at %s with %d winner(s)", bet.id, bet.actual_value, len(winners))
        return bet

    def cancel_bet(self, caller: str, bet_id: int, now: Optional[int] = None) -> Bet:
        self._require_operator(caller)
        bet = self._get_active(bet_id)
        if not self._guarded(
            update(Bet)
            .where(Bet.id == bet.id, Bet.status == BetStatus.ACTIVE)
            .values(status=BetStatus.CANCELLED, refund_mode=True,
                    settled_at=now if now is not None else now_s())
        ):
            raise self._lost_race(bet.id)
        self.db.refresh(bet)
        self._event("BetCancelled", f"Bet {bet.id} cancelled • refunds open", {
            "bet_id": bet.id, "total_pot": str(bet.total_pot),
        })
        self.db.commit()
        logger.info("bet %s cancelled", bet.id)
        return bet

    def claim_prize(self, bet_id: int, player: str) -> Payout:
        """Prize for a winner of a settled bet, or the stake back on a cancelled one."""
        bet = self._get(bet_id)
        if bet.status == BetStatus.ACTIVE:
            raise BetNotSettledError(f"bet {bet_id} is still active")

        pb = next((p for p in bet.player_bets if p.player == _addr(player)), None)
        if pb is None:
            raise NotAParticipantError(f"{player} has no bet on {bet_id}")
        if pb.claimed:
            raise AlreadyClaimedError(f"{player} already claimed bet {bet_id}")

        if bet.refund_mode:
            kind, amount = PayoutKind.REFUND, pb.stake
        else:
            winners = bet.winner_indices
            if pb.position not in winners:
                raise NotAWinnerError(f"{player} did not win bet {bet_id}")
            kind = PayoutKind.PRIZE
            # split with the rate the house fee was booked at
            amount = split_prize(bet.total_pot, len(winners), bet.fee_bps).per_winner

        if not self._guarded(
            update(PlayerBet)
            .where(PlayerBet.id == pb.id, PlayerBet.claimed.is_(False))
            .values(claimed=True)
        ):
            self.db.rollback()
            raise AlreadyClaimedError(f"{player} already claimed bet {bet_id}")
        payout = Payout(bet_id=bet.id, user_address=pb.player, kind=kind, amount=amount)
        self.db.add(payout)
        self._event(
            "Refunded" if kind == PayoutKind.REFUND else "PrizeClaimed",
            f"Bet {bet.id}: {pb.player} claimed {amount} ({kind.value})",
            {"bet_id": bet.id, "player": pb.player, "amount": str(amount)},
        )
        self.db.commit()
        return payout

    # ----- views -----
    def get_active_bets(self) -> List[int]:
        return list(self.db.scalars(
            select(Bet.id).where(Bet.status == BetStatus.ACTIVE).order_by(Bet.id.asc())
        ))

    def get_settled_bets(self) -> List[int]:
        # finished bets: settled and cancelled alike
        return list(self.db.scalars(
            select(Bet.id).where(Bet.status != BetStatus.ACTIVE).order_by(Bet.id.asc())
        ))

    def get_bet(self, bet_id: int) -> Bet:
        return self._get(bet_id)

    def get_bet_players(self, bet_id: int) -> List[PlayerBet]:
        return list(self._get(bet_id).player_bets)

    def get_bet_winner_indices(self, bet_id: int) -> List[int]:
        return self._get(bet_id).winner_indices

    def get_bet_pot(self, bet_id: int) -> int:
        return self._get(bet_id).total_pot

    def get_allowance(self, owner: str) -> int:
        row = self.db.get(Allowance, _addr(owner))
        return row.amount if row else 0
