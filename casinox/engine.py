# engine.py
"""
Shared Game Model – Provably Fair Core

Responsibilities:
- Game configuration (house edge, grid size, limits)
- Typed error taxonomy shared by engines, ledger and API
- Bet context and outcome models (tagged result variants per game)

The per-game engines (dice.py, crash.py, mines.py) are pure functions over
a RandomDraw; everything they return is built from the types below.
"""

from __future__ import annotations

import json
from enum import Enum
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_DOWN, getcontext
from typing import Dict, Any, List, Optional, Union

# Ensure high precision for internal calculations
getcontext().prec = 50

# =========================
# CONFIGURATION
# =========================

class GameConfig:
    # --- HOUSE EDGE ---
    HOUSE_EDGE = Decimal("0.01")  # 1%

    # --- PRECISION ---
    CENTS = Decimal("0.01")
    MULTIPLIER_STEP = Decimal("0.0001")

    # --- DICE ---
    DICE_MIN_TARGET = 1   # exclusive
    DICE_MAX_TARGET = 99  # exclusive

    # --- CRASH ---
    CRASH_MAX_MULTIPLIER = Decimal("100.00")
    CRASH_MIN_MULTIPLIER = Decimal("1.00")
    CRASH_DRAW_CAP = 0.99

    # Controls exponential growth: Multiplier = e^(SPEED_FACTOR * ms)
    # 0.0001 approx 1.00->2.00 in ~6.9 seconds
    SPEED_FACTOR = 0.0001

    # Minimum time (ms) a round stays in flight even if it crashes at 1.00x.
    MIN_FLIGHT_DURATION_MS = 300

    # --- MINES ---
    GRID_SIZE = 25
    MIN_MINES = 1
    MAX_MINES = 24


def quantize_money(value: Decimal) -> Decimal:
    """Round a monetary amount down to whole cents."""
    return value.quantize(GameConfig.CENTS, rounding=ROUND_DOWN)


def quantize_multiplier(value: Decimal) -> Decimal:
    return value.quantize(GameConfig.MULTIPLIER_STEP, rounding=ROUND_DOWN)


# =========================
# ENUMS
# =========================

class GameType(str, Enum):
    DICE = "dice"
    CRASH = "crash"
    MINES = "mines"


class DiceDirection(str, Enum):
    UNDER = "under"
    OVER = "over"


# =========================
# EXCEPTIONS
# =========================

class CasinoError(Exception):
    """Base error. `code` is stable and safe to expose to clients."""

    code = "casino_error"


class PlayerNotFound(CasinoError):
    code = "player_not_found"


# --- Validation: rejected before any balance mutation ---

class ValidationError(CasinoError):
    code = "validation_error"

class InvalidBet(ValidationError):
    code = "invalid_bet"

class InvalidTarget(ValidationError):
    code = "invalid_target"

class InvalidDirection(ValidationError):
    code = "invalid_direction"

class InvalidMineCount(ValidationError):
    code = "invalid_mine_count"

class PositionOutOfRange(ValidationError):
    code = "position_out_of_range"

class InvalidMultiplier(ValidationError):
    code = "invalid_multiplier"

class MissingClientSeed(ValidationError):
    code = "missing_client_seed"


class InsufficientBalance(CasinoError):
    code = "insufficient_balance"


# --- State: action not valid for the current round ---

class StateError(CasinoError):
    code = "state_error"

class AlreadyRevealed(StateError):
    code = "already_revealed"

class GameAlreadyOver(StateError):
    code = "game_already_over"

class CashoutTooLate(StateError):
    code = "cashout_too_late"

class NothingRevealed(StateError):
    code = "nothing_revealed"

class RoundNotFound(StateError):
    code = "round_not_found"

class RoundInProgress(StateError):
    code = "round_in_progress"


# --- Integrity: randomness can no longer be verified ---

class IntegrityError(CasinoError):
    code = "integrity_error"

class NoActiveSeed(IntegrityError):
    code = "no_active_seed"

class SeedReused(IntegrityError):
    code = "seed_reused"

class NonceMismatch(IntegrityError):
    code = "nonce_mismatch"


class PersistenceError(CasinoError):
    """
    A store write failed after the stake was debited.
    `compensated` tells whether the balance was restored.
    """

    code = "persistence_error"

    def __init__(self, message: str, compensated: bool = True) -> None:
        super().__init__(message)
        self.compensated = compensated


# =========================
# DOMAIN MODELS
# =========================

@dataclass(frozen=True)
class BetContext:
    """Everything needed to reproduce and record one bet."""

    player_id: int
    game_type: GameType
    bet_amount: Decimal
    client_seed: str
    seed_id: int
    server_seed_hash: str
    nonce: int


@dataclass(frozen=True)
class DiceResult:
    roll: int
    target: int
    direction: DiceDirection
    win_chance: int


@dataclass(frozen=True)
class CrashResult:
    crash_point: Decimal
    cashout_multiplier: Optional[Decimal]
    auto_cashout: Optional[Decimal] = None


@dataclass(frozen=True)
class MinesResult:
    mine_count: int
    mines: List[int]
    revealed: List[int]
    hit_position: Optional[int] = None
    cashed_out: bool = False


GameResult = Union[DiceResult, CrashResult, MinesResult]

_RESULT_TAGS = {
    DiceResult: GameType.DICE,
    CrashResult: GameType.CRASH,
    MinesResult: GameType.MINES,
}


def result_to_dict(result: GameResult) -> Dict[str, Any]:
    """Tagged, JSON-safe form of a result variant."""
    data = asdict(result)
    for key, value in data.items():
        if isinstance(value, Decimal):
            data[key] = str(value)
        elif isinstance(value, Enum):
            data[key] = value.value
    data["game"] = _RESULT_TAGS[type(result)].value
    return data


def serialize_result(result: GameResult) -> str:
    return json.dumps(result_to_dict(result), sort_keys=True)


@dataclass(frozen=True)
class GameOutcome:
    won: bool
    bet_amount: Decimal
    multiplier: Decimal
    payout: Decimal
    result: GameResult

    @property
    def net(self) -> Decimal:
        """Signed profit/loss recorded in game history."""
        return self.payout - self.bet_amount

    @classmethod
    def win(cls, bet_amount: Decimal, multiplier: Decimal, result: GameResult) -> "GameOutcome":
        return cls(
            won=True,
            bet_amount=bet_amount,
            multiplier=multiplier,
            payout=quantize_money(bet_amount * multiplier),
            result=result,
        )

    @classmethod
    def loss(cls, bet_amount: Decimal, result: GameResult) -> "GameOutcome":
        return cls(
            won=False,
            bet_amount=bet_amount,
            multiplier=Decimal("0"),
            payout=Decimal("0.00"),
            result=result,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "won": self.won,
            "bet_amount": float(self.bet_amount),
            "multiplier": float(self.multiplier),
            "payout": float(self.payout),
            "net": float(self.net),
            "result": result_to_dict(self.result),
        }


def validate_bet_amount(amount: Decimal) -> Decimal:
    """Reject non-positive stakes and stakes that round to zero cents."""
    if amount is None or amount <= 0:
        raise InvalidBet("Bet must be positive")
    quantized = quantize_money(amount)
    if quantized <= 0:
        raise InvalidBet("Bet must be at least 0.01")
    return quantized
