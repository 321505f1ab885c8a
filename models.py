import json
import time
from enum import Enum
from typing import List

from sqlalchemy import (
    Column, Integer, String, Text, Boolean,
    Enum as SAEnum, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


def now_s() -> int:
    return int(time.time())


# ---------- Column types ----------
class BigAmount(TypeDecorator):
    """Arbitrary-size non-negative integer (wei, token base units, guesses).

    Stored as a decimal string so 256-bit ledger values survive SQLite's
    64-bit INTEGER.
    """

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


# ---------- Enums ----------
class BetStatus(int, Enum):
    ACTIVE = 0
    SETTLED = 1
    CANCELLED = 2

class CurrencyType(int, Enum):
    NATIVE = 0
    STABLE = 1

class PayoutKind(str, Enum):
    PRIZE = "PRIZE"
    REFUND = "REFUND"
    HOUSE_FEE = "HOUSE_FEE"


# ---------- Models ----------
class Bet(Base):
    __tablename__ = "bets"
    id = Column(Integer, primary_key=True)
    created_at = Column(Integer, default=now_s, nullable=False)
    creator = Column(String, nullable=False)

    category = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    currency_type = Column(SAEnum(CurrencyType), nullable=False)
    bet_amount = Column(BigAmount, nullable=False)

    status = Column(SAEnum(BetStatus), default=BetStatus.ACTIVE, nullable=False)
    total_pot = Column(BigAmount, default=0, nullable=False)
    actual_value = Column(BigAmount, nullable=True)
    refund_mode = Column(Boolean, default=False, nullable=False)
    settled_at = Column(Integer, nullable=True)
    # fee rate in force when the bet settled; claims split with this
    fee_bps = Column(Integer, nullable=True)

    # timing (unix seconds; 0/0 = manual bet without a window)
    start_time = Column(Integer, default=0, nullable=False)
    end_time = Column(Integer, default=0, nullable=False)

    # outcome (json list of PlayerBet positions)
    winner_indices_json = Column(Text, nullable=True)

    # automation metadata
    is_automated = Column(Boolean, default=False, nullable=False)
    start_block_height = Column(Integer, default=0, nullable=False)
    end_block_height = Column(Integer, default=0, nullable=False)
    sampled_blocks_json = Column(Text, nullable=True)
    calculation_method = Column(Text, nullable=True)
    calculation_details = Column(Text, nullable=True)

    player_bets = relationship(
        "PlayerBet",
        back_populates="bet",
        order_by="PlayerBet.position",
        cascade="all, delete-orphan",
    )

    @property
    def winner_indices(self) -> List[int]:
        return json.loads(self.winner_indices_json) if self.winner_indices_json else []

    @property
    def sampled_blocks(self) -> List[int]:
        return json.loads(self.sampled_blocks_json) if self.sampled_blocks_json else []


class PlayerBet(Base):
    __tablename__ = "player_bets"
    id = Column(Integer, primary_key=True)
    created_at = Column(Integer, default=now_s, nullable=False)

    bet_id = Column(Integer, ForeignKey("bets.id"), nullable=False, index=True)
    bet = relationship("Bet", back_populates="player_bets")

    position = Column(Integer, nullable=False)
    player = Column(String, nullable=False)
    guess = Column(BigAmount, nullable=False)
    stake = Column(BigAmount, nullable=False)
    claimed = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("bet_id", "player", name="ux_player_bets_bet_player"),
        UniqueConstraint("bet_id", "position", name="ux_player_bets_bet_position"),
    )


class Allowance(Base):
    __tablename__ = "allowances"
    owner = Column(String, primary_key=True)
    amount = Column(BigAmount, default=0, nullable=False)


class Payout(Base):
    __tablename__ = "payouts"
    id = Column(Integer, primary_key=True)
    created_at = Column(Integer, default=now_s, nullable=False)

    bet_id = Column(Integer, ForeignKey("bets.id"), nullable=False, index=True)
    user_address = Column(String, nullable=False)
    kind = Column(SAEnum(PayoutKind), nullable=False)
    amount = Column(BigAmount, nullable=False)
    is_house_fee = Column(Boolean, default=False, nullable=False)


class LiveEvent(Base):
    __tablename__ = "live_events"
    id = Column(Integer, primary_key=True)
    created_at = Column(Integer, default=now_s, nullable=False)
    kind = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    ctx_json = Column(Text, nullable=True)


class WinnerNotificationRow(Base):
    __tablename__ = "winner_notifications"
    id = Column(Integer, primary_key=True)
    network = Column(String, nullable=False)
    winner_address = Column(String, nullable=False)
    bet_id = Column(Integer, nullable=False)

    bet_category = Column(String, nullable=False)
    bet_description = Column(Text, nullable=False)
    prize_amount = Column(String, nullable=False)
    currency_type = Column(Integer, nullable=False)
    settled_at = Column(String, nullable=False)
    tx_hash = Column(String, nullable=True)

    created_at = Column(Integer, default=now_s, nullable=False)
    expires_at = Column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("network", "winner_address", "bet_id", name="ux_notifications_key"),
    )


# ---------- Indexes ----------
Index("ix_bets_status", Bet.status)
Index("ix_bets_automated_end", Bet.is_automated, Bet.end_time)
Index("ix_payouts_user", Payout.user_address)
Index("ix_notifications_winner", WinnerNotificationRow.network, WinnerNotificationRow.winner_address)
Index("ix_notifications_expires", WinnerNotificationRow.expires_at)
