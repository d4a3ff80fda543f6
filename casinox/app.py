# app.py
"""
Casino – Production Entry Point

Responsibilities:
- FastAPI HTTP server
- Request Validation (Pydantic)
- Game API orchestration (delegates to service.GameService)
- Typed error -> HTTP status mapping
- Spectator websocket and crash-round sweeper

Run with:
    uvicorn casinox.app:app
"""

from __future__ import annotations

import os
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from casinox.engine import (
    CasinoError,
    InsufficientBalance,
    IntegrityError,
    PersistenceError,
    PlayerNotFound,
    StateError,
    ValidationError,
)
from casinox.events import EventBus
from casinox.service import GameService
from casinox.storage import MemoryStorage, Storage
from casinox.utils import generate_client_seed, safe_decimal
from casinox.verify import verify

# =====================================================
# LOGGING & CONFIG
# =====================================================

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("casinox.app")

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "sql")
CRASH_SWEEP_INTERVAL_SEC = float(os.getenv("CRASH_SWEEP_INTERVAL_SEC", "1.0"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# =====================================================
# DATA MODELS (Pydantic)
# =====================================================

class InitRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)

class PlayerRequest(BaseModel):
    player_id: int = Field(..., ge=1)

class BetRequest(PlayerRequest):
    amount: float = Field(..., gt=0)  # Input is float, converted to Decimal internally
    client_seed: str = Field(..., min_length=1, max_length=64)

class DiceRequest(BetRequest):
    target: int
    direction: str

class CrashBetRequest(BetRequest):
    auto_cashout: Optional[float] = None

class CrashCashoutRequest(PlayerRequest):
    round_id: str = Field(..., min_length=1)
    multiplier: float

class MinesNewRequest(BetRequest):
    mine_count: int

class MinesRevealRequest(PlayerRequest):
    round_id: str = Field(..., min_length=1)
    position: int

class MinesCashoutRequest(PlayerRequest):
    round_id: str = Field(..., min_length=1)

class VerifyRequest(BaseModel):
    server_seed: str = Field(..., min_length=1)
    client_seed: str = Field(..., min_length=1)
    nonce: int = Field(..., ge=0)
    game_type: str
    published_hash: Optional[str] = None
    target: Optional[int] = None
    direction: Optional[str] = None
    mine_count: Optional[int] = None

# =====================================================
# LIFECYCLE
# =====================================================

def build_storage(backend: str = STORAGE_BACKEND) -> Storage:
    """Pick the storage backend once, at process startup."""
    if backend == "memory":
        return MemoryStorage()
    from casinox.db import SqlStorage
    return SqlStorage()


async def sweep_forever(service: GameService, interval: float) -> None:
    """Crash abandoned rounds whose flight time is over."""
    while True:
        await asyncio.sleep(interval)
        try:
            await service.sweep_crash_rounds()
        except Exception:
            logger.exception("Crash sweep failed")


def create_app(storage: Optional[Storage] = None, sweep_interval: float = CRASH_SWEEP_INTERVAL_SEC) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manages startup and shutdown events.
        """
        store = storage or build_storage()
        logger.info(f"Startup: Initializing {type(store).__name__}...")
        await store.init()
        service = app.state.service = GameService(store, events=EventBus())
        await service.recover_open_rounds()

        sweeper = asyncio.create_task(sweep_forever(service, sweep_interval))

        yield

        logger.info("Shutdown: Cleaning up...")
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await service.close_live_rounds()
        await store.close()

    app = FastAPI(
        title="CasinoX Provably Fair API",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(router)
    return app

# =====================================================
# ERROR HANDLERS
# =====================================================

ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InsufficientBalance, status.HTTP_402_PAYMENT_REQUIRED),
    (PlayerNotFound, status.HTTP_404_NOT_FOUND),
    (StateError, status.HTTP_409_CONFLICT),
    (IntegrityError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(exc: CasinoError) -> int:
    for exc_type, code in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(CasinoError)
    async def casino_error_handler(_, exc: CasinoError):
        code = status_for(exc)
        if code >= 500:
            logger.error(f"{exc.code}: {exc}")
        return JSONResponse(
            status_code=code,
            content={"error": exc.code, "detail": str(exc)},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(_, exc: ValueError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"error": "value_error", "detail": str(exc)},
        )

# =====================================================
# DEPENDENCIES
# =====================================================

router = APIRouter()


def get_service(request: Request) -> GameService:
    return request.app.state.service

# =====================================================
# API – PLAYER & WALLET
# =====================================================

@router.post("/api/init")
async def api_init(payload: InitRequest, service: GameService = Depends(get_service)):
    """
    Fetch or create a player. Returns a fresh client seed suggestion.
    """
    user = await service.init_player(payload.username)
    seed = await service.seed_info(user.id)
    return {
        "player_id": user.id,
        "username": user.username,
        "balance": float(user.balance),  # Convert Decimal to float for JSON
        "server_seed_hash": seed["server_seed_hash"],
        "nonce": seed["nonce"],
        "client_seed": generate_client_seed(),
    }


@router.get("/api/wallet/{player_id}")
async def api_wallet(player_id: int, service: GameService = Depends(get_service)):
    user = await service.get_player(player_id)
    return {"player_id": user.id, "balance": float(user.balance)}


@router.get("/api/wallet/{player_id}/transactions")
async def api_transactions(player_id: int, limit: int = 50, service: GameService = Depends(get_service)):
    rows = await service.transactions(player_id, limit)
    return [
        {
            "id": tx.id,
            "type": tx.type.value,
            "amount": float(tx.amount),
            "balance_after": float(tx.balance_after),
            "reference": tx.reference,
            "timestamp": tx.created_at.isoformat(),
        }
        for tx in rows
    ]

# =====================================================
# API – GAMES
# =====================================================

@router.post("/api/games/dice/play")
async def api_dice(payload: DiceRequest, service: GameService = Depends(get_service)):
    receipt = await service.play_dice(
        player_id=payload.player_id,
        bet_amount=safe_decimal(payload.amount),
        client_seed=payload.client_seed,
        target=payload.target,
        direction=payload.direction,
    )
    return receipt.to_dict()


@router.post("/api/games/crash/bet")
async def api_crash_bet(payload: CrashBetRequest, service: GameService = Depends(get_service)):
    receipt = await service.crash_bet(
        player_id=payload.player_id,
        bet_amount=safe_decimal(payload.amount),
        client_seed=payload.client_seed,
        auto_cashout=safe_decimal(payload.auto_cashout) if payload.auto_cashout is not None else None,
    )
    return receipt.to_dict()


@router.post("/api/games/crash/cashout")
async def api_crash_cashout(payload: CrashCashoutRequest, service: GameService = Depends(get_service)):
    """
    Engine is the authority: the request wins only below the crash point.
    """
    receipt = await service.crash_cashout(
        player_id=payload.player_id,
        round_id=payload.round_id,
        multiplier=safe_decimal(payload.multiplier),
    )
    return receipt.to_dict()


@router.get("/api/games/crash/{player_id}/{round_id}")
async def api_crash_state(player_id: int, round_id: str, service: GameService = Depends(get_service)):
    """
    High-frequency polling endpoint for a round's flight.
    """
    return await service.crash_state(player_id, round_id)


@router.post("/api/games/mines/new")
async def api_mines_new(payload: MinesNewRequest, service: GameService = Depends(get_service)):
    receipt = await service.mines_start(
        player_id=payload.player_id,
        bet_amount=safe_decimal(payload.amount),
        client_seed=payload.client_seed,
        mine_count=payload.mine_count,
    )
    return receipt.to_dict()


@router.post("/api/games/mines/reveal")
async def api_mines_reveal(payload: MinesRevealRequest, service: GameService = Depends(get_service)):
    receipt = await service.mines_reveal(payload.player_id, payload.round_id, payload.position)
    return receipt.to_dict()


@router.post("/api/games/mines/cashout")
async def api_mines_cashout(payload: MinesCashoutRequest, service: GameService = Depends(get_service)):
    receipt = await service.mines_cashout(payload.player_id, payload.round_id)
    return receipt.to_dict()


@router.get("/api/games/history/{player_id}")
async def api_history(player_id: int, limit: int = 50, service: GameService = Depends(get_service)):
    rows = await service.history(player_id, limit)
    return [row.to_dict() for row in rows]

# =====================================================
# API – PROVABLY FAIR
# =====================================================

@router.get("/api/provably-fair/seed/{player_id}")
async def api_seed(player_id: int, service: GameService = Depends(get_service)):
    return await service.seed_info(player_id)


@router.post("/api/provably-fair/rotate-seed")
async def api_rotate_seed(payload: PlayerRequest, service: GameService = Depends(get_service)):
    rotation = await service.rotate_seed(payload.player_id)
    return rotation.to_dict()


@router.post("/api/provably-fair/verify")
async def api_verify(payload: VerifyRequest):
    """
    Stateless: anyone can recompute a revealed bet.
    """
    report = verify(
        server_seed=payload.server_seed,
        client_seed=payload.client_seed,
        nonce=payload.nonce,
        game_type=payload.game_type,
        published_hash=payload.published_hash,
        target=payload.target,
        direction=payload.direction,
        mine_count=payload.mine_count,
    )
    return report.to_dict()

# =====================================================
# WEBSOCKET – SPECTATOR EVENTS
# =====================================================

@router.websocket("/ws")
async def ws_events(websocket: WebSocket):
    service: GameService = websocket.app.state.service
    await websocket.accept()
    queue = service.events.subscribe()
    try:
        while True:
            message = await queue.get()
            await websocket.send_json(message)
    except WebSocketDisconnect:
        logger.info("Spectator disconnected")
    finally:
        service.events.unsubscribe(queue)


app = create_app()
