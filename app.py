from __future__ import annotations

import json
import logging
import time
from decimal import InvalidOperation
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from betting import BetError, ConcurrentUpdateError
from chain_utils import from_base_units, to_base_units
from db_core import get_db, init_schema
from ledger_gateway import LedgerError, LedgerTransactionError, LocalLedgerGateway, build_gateway
from models import CurrencyType, LiveEvent
from notifications import NotificationStore
from settings import AUTOPILOT_ENABLED, LEDGER_BACKEND, NETWORK, configure_logging
from settlement import BET_CATEGORIES

configure_logging()
logger = logging.getLogger(__name__)

# ---------- FastAPI ----------
app = FastAPI(title="Chain Chaos API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------- collaborators ----------
_gateway = None
_notifications: Optional[NotificationStore] = None


def get_gateway():
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway


def get_notifications() -> NotificationStore:
    global _notifications
    if _notifications is None:
        _notifications = NotificationStore()
    return _notifications


def get_local_gateway(gw=Depends(get_gateway)) -> LocalLedgerGateway:
    if not isinstance(gw, LocalLedgerGateway):
        raise HTTPException(501, "only available with the in-process ledger (LEDGER_BACKEND=local)")
    return gw


# ---------- tiny helpers ----------
def now_ms() -> int:
    return int(time.time() * 1000)

def jloads(s: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(s) if s else None

def _reject(e: BetError):
    status = 409 if isinstance(e, ConcurrentUpdateError) else 400
    raise HTTPException(status, {"code": e.code, "message": str(e)})

def _ledger_failure(e: LedgerError):
    if e.code == "BetNotFound":
        raise HTTPException(404, "bet not found")
    if isinstance(e, LedgerTransactionError) and e.code:
        status = 409 if e.code == ConcurrentUpdateError.code else 400
        raise HTTPException(status, {"code": e.code, "message": str(e)})
    logger.error("ledger failure: %s", e)
    raise HTTPException(502, f"ledger unavailable: {e}")

def _amount_to_units(raw: str, currency: CurrencyType) -> int:
    try:
        units = to_base_units(raw, currency)
    except (InvalidOperation, ValueError):
        raise HTTPException(400, f"invalid amount {raw!r}")
    if units <= 0:
        raise HTTPException(400, "amount must be > 0")
    return units


# ---------- schemas ----------
class BetCard(BaseModel):
    id: int
    category: str
    description: str
    currency_type: str
    bet_amount: str
    bet_amount_display: str
    status: str
    total_pot: str
    actual_value: int
    refund_mode: bool
    player_count: int
    created_at: int
    start_time: int
    end_time: int


class CreateBetIn(BaseModel):
    category: str
    description: str = ""
    currency_type: Literal["NATIVE", "STABLE"] = "NATIVE"
    amount: str = Field(..., description="human units, e.g. '0.1' XTZ or '1' USDC")
    start_time: int = 0
    end_time: int = 0


class SettleIn(BaseModel):
    actual_value: int = Field(..., ge=0)


class PlaceBetIn(BaseModel):
    player: str
    guess: int = Field(..., ge=0)
    value: Optional[str] = Field(None, description="native stake in base units; omitted for stable bets")


class ClaimIn(BaseModel):
    player: str


class AllowanceIn(BaseModel):
    owner: str
    amount: str = Field(..., description="base units")


def to_card(info) -> BetCard:
    return BetCard(
        id=info.id,
        category=info.category,
        description=info.description,
        currency_type=info.currency_type.name,
        bet_amount=str(info.bet_amount),
        bet_amount_display=str(from_base_units(info.bet_amount, info.currency_type)),
        status=info.status.name,
        total_pot=str(info.total_pot),
        actual_value=info.actual_value,
        refund_mode=info.refund_mode,
        player_count=info.player_bet_count,
        created_at=info.created_at,
        start_time=info.start_time,
        end_time=info.end_time,
    )


# ---------- lifecycle ----------
@app.on_event("startup")
def _init():
    init_schema()
    logger.info("API up (network=%s, ledger=%s)", NETWORK, LEDGER_BACKEND)


@app.on_event("startup")
async def _start_autopilot():
    if not AUTOPILOT_ENABLED:
        return
    if getattr(app.state, "autopilot", None) and app.state.autopilot.running:
        logger.info("autopilot already running; skipping")
        return
    try:
        from bet_autopilot import start_autopilot
        app.state.autopilot = await start_autopilot()
        logger.info("autopilot started")
    except Exception:
        logger.exception("autopilot failed to start")


@app.on_event("shutdown")
async def _stop_autopilot():
    scheduler = getattr(app.state, "autopilot", None)
    if scheduler:
        await scheduler.stop()


# ---------- PUBLIC: notifications ----------
@app.get("/notifications")
def list_notifications(
    address: str = Query(..., min_length=1),
    store: NotificationStore = Depends(get_notifications),
):
    items = store.get_winner_notifications(address)
    return {"notifications": [n.model_dump() for n in items], "count": store.get_winner_count(address)}


@app.delete("/notifications")
def dismiss_notification(
    address: str = Query(..., min_length=1),
    bet_id: int = Query(...),
    store: NotificationStore = Depends(get_notifications),
):
    if not store.remove_winner_notification(address, bet_id):
        raise HTTPException(404, "notification not found")
    return {"ok": True}


# ---------- PUBLIC: bets ----------
@app.get("/categories")
def categories():
    return {"items": [
        {
            "category": c.category,
            "description": c.description,
            "calculation_method": c.calculation_method,
            "requires_sampling": c.requires_sampling,
        }
        for c in BET_CATEGORIES
    ]}


@app.get("/bets")
def list_bets(
    status: Literal["active", "settled"] = Query("active"),
    gw=Depends(get_gateway),
):
    try:
        ids = gw.get_active_bets() if status == "active" else gw.get_settled_bets()
        items = [to_card(gw.get_bet_info(i)) for i in reversed(ids)]
    except LedgerError as e:
        _ledger_failure(e)
    return {"items": items, "count": len(items)}


@app.get("/bets/{bet_id}")
def get_bet(bet_id: int, gw=Depends(get_gateway)):
    try:
        info = gw.get_bet_info(bet_id)
        players = gw.get_bet_players(bet_id)
        winners = gw.get_bet_winner_indices(bet_id)
        automation = gw.get_bet_automation_data(bet_id)
    except LedgerError as e:
        _ledger_failure(e)
    return {
        "bet": to_card(info),
        "players": [p.model_dump() for p in players],
        "winner_indices": winners,
        "automation": automation.model_dump() if automation.is_automated else None,
    }


# ---------- ADMIN ----------
@app.post("/admin/bets")
def create_bet(body: CreateBetIn, gw=Depends(get_gateway)):
    currency = CurrencyType[body.currency_type]
    amount = _amount_to_units(body.amount, currency)
    try:
        txh = gw.create_bet(body.category, body.description, currency, amount,
                            body.start_time, body.end_time)
    except LedgerError as e:
        _ledger_failure(e)
    return {"ok": True, "tx_hash": txh}


@app.post("/admin/bets/{bet_id}/settle")
def settle_bet(bet_id: int, body: SettleIn, gw=Depends(get_gateway)):
    try:
        txh = gw.settle_bet(bet_id, body.actual_value)
        winners = gw.get_bet_winner_indices(bet_id)
    except LedgerError as e:
        _ledger_failure(e)
    return {"ok": True, "tx_hash": txh, "winner_indices": winners}


@app.post("/admin/bets/{bet_id}/cancel")
def cancel_bet(bet_id: int, gw=Depends(get_gateway)):
    try:
        txh = gw.cancel_bet(bet_id)
    except LedgerError as e:
        _ledger_failure(e)
    return {"ok": True, "tx_hash": txh}


# ---------- in-process ledger: player actions ----------
@app.post("/bets/{bet_id}/place")
def place_bet(bet_id: int, body: PlaceBetIn, gw: LocalLedgerGateway = Depends(get_local_gateway)):
    with gw.ledger() as lg:
        try:
            bet = lg.get_bet(bet_id)
            if bet.currency_type == CurrencyType.NATIVE:
                value = int(body.value) if body.value is not None else bet.bet_amount
                pb = lg.place_bet_native(bet_id, body.player, body.guess, value)
            else:
                pb = lg.place_bet_stable(bet_id, body.player, body.guess)
        except BetError as e:
            if e.code == "BetNotFound":
                raise HTTPException(404, "bet not found")
            _reject(e)
        except ValueError:
            raise HTTPException(400, "value must be an integer amount of base units")
        return {"ok": True, "position": pb.position, "total_pot": str(lg.get_bet_pot(bet_id))}


@app.post("/bets/{bet_id}/claim")
def claim(bet_id: int, body: ClaimIn, gw: LocalLedgerGateway = Depends(get_local_gateway)):
    with gw.ledger() as lg:
        try:
            payout = lg.claim_prize(bet_id, body.player)
        except BetError as e:
            if e.code == "BetNotFound":
                raise HTTPException(404, "bet not found")
            _reject(e)
        return {"ok": True, "kind": payout.kind.value, "amount": str(payout.amount)}


@app.post("/allowances")
def approve(body: AllowanceIn, gw: LocalLedgerGateway = Depends(get_local_gateway)):
    try:
        amount = int(body.amount)
    except ValueError:
        raise HTTPException(400, "amount must be an integer amount of base units")
    with gw.ledger() as lg:
        try:
            row = lg.approve(body.owner, amount)
        except BetError as e:
            _reject(e)
        return {"ok": True, "owner": row.owner, "amount": str(row.amount)}


# ---------- LIVE ----------
@app.get("/live/events")
def live_events(
    kind: Optional[str] = Query(None),
    bet_id: Optional[int] = Query(None),
    since_id: Optional[int] = Query(None, description="return events with id > since_id"),
    limit: int = Query(100, ge=1, le=500),
    order: Literal["asc", "desc"] = Query("asc"),
    db: Session = Depends(get_db),
):
    q = db.query(LiveEvent)
    if kind:
        q = q.filter(LiveEvent.kind == kind)
    if since_id is not None:
        q = q.filter(LiveEvent.id > since_id)
    q = q.order_by(LiveEvent.id.asc() if order == "asc" else LiveEvent.id.desc())

    items: List[Dict[str, Any]] = []
    # bet_id lives in the JSON context; filter after load to stay dialect-neutral
    for ev in q.limit(limit if bet_id is None else 10 * limit).all():
        ctx = jloads(ev.ctx_json) or {}
        if bet_id is not None and ctx.get("bet_id") != bet_id:
            continue
        items.append({
            "id": ev.id,
            "ts": ev.created_at,
            "kind": ev.kind,
            "message": ev.message,
            "ctx": ctx,
        })
        if len(items) >= limit:
            break

    next_since_id = max((i["id"] for i in items), default=since_id or 0)
    return {"items": items, "count": len(items), "next_since_id": next_since_id}


# ---------- HEALTH ----------
@app.get("/health")
def health():
    return {"ok": True, "ts": now_ms(), "network": NETWORK, "ledger": LEDGER_BACKEND}


@app.get("/__debug__/autopilot")
def debug_autopilot():
    scheduler = getattr(app.state, "autopilot", None)
    if scheduler is None:
        return {"enabled": AUTOPILOT_ENABLED, "task_exists": False}
    return {"enabled": AUTOPILOT_ENABLED, "task_exists": True, **scheduler.status()}
