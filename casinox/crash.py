# crash.py
"""
Crash Game Engine

Responsibilities:
- Crash point derivation from a RandomDraw (inverse-distribution curve)
- Auto / manual cashout settlement against the precomputed crash point
- Per-player round state machine (PENDING -> CASHED_OUT | CRASHED)
- Flight curve for display and for expiring abandoned rounds

Cashout validity is decided only by comparing against the crash point,
never by wall-clock timing.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from enum import Enum
from typing import Callable, Dict, List, Optional

from casinox.engine import (
    BetContext,
    CashoutTooLate,
    CrashResult,
    GameAlreadyOver,
    GameConfig,
    GameOutcome,
    InvalidMultiplier,
    RoundNotFound,
    validate_bet_amount,
)


# =====================================================
# MATH
# =====================================================

def derive_crash_point(draw: float) -> Decimal:
    """
    crash = min(100, 1 / (1 - min(draw, 0.99)) * (1 - house_edge))
    rounded half-up to cents, floored at 1.00.

    The draw is converted exactly (Decimal(float)) so every verifier that
    follows this recipe lands on the same cent.
    """
    capped = Decimal(min(draw, GameConfig.CRASH_DRAW_CAP))
    raw = (Decimal(1) / (Decimal(1) - capped)) * (1 - GameConfig.HOUSE_EDGE)
    raw = min(GameConfig.CRASH_MAX_MULTIPLIER, raw)
    point = raw.quantize(GameConfig.CENTS, rounding=ROUND_HALF_UP)
    return max(GameConfig.CRASH_MIN_MULTIPLIER, point)


def validate_cashout_multiplier(multiplier: Decimal) -> Decimal:
    if multiplier is None or multiplier <= GameConfig.CRASH_MIN_MULTIPLIER:
        raise InvalidMultiplier("Cashout multiplier must be greater than 1.00")
    return multiplier.quantize(GameConfig.CENTS, rounding=ROUND_DOWN)


def settle_auto_cashout(
    bet_amount: Decimal,
    auto_cashout: Decimal,
    crash_point: Decimal,
) -> GameOutcome:
    bet_amount = validate_bet_amount(bet_amount)
    auto_cashout = validate_cashout_multiplier(auto_cashout)
    if auto_cashout < crash_point:
        result = CrashResult(
            crash_point=crash_point,
            cashout_multiplier=auto_cashout,
            auto_cashout=auto_cashout,
        )
        return GameOutcome.win(bet_amount, auto_cashout, result)
    result = CrashResult(crash_point=crash_point, cashout_multiplier=None, auto_cashout=auto_cashout)
    return GameOutcome.loss(bet_amount, result)


def settle_manual_cashout(
    bet_amount: Decimal,
    requested: Decimal,
    crash_point: Decimal,
) -> GameOutcome:
    bet_amount = validate_bet_amount(bet_amount)
    requested = validate_cashout_multiplier(requested)
    if requested >= crash_point:
        raise CashoutTooLate(f"Round crashed before x{requested}")
    result = CrashResult(crash_point=crash_point, cashout_multiplier=requested)
    return GameOutcome.win(bet_amount, requested, result)


def crashed_outcome(bet_amount: Decimal, crash_point: Decimal) -> GameOutcome:
    return GameOutcome.loss(bet_amount, CrashResult(crash_point=crash_point, cashout_multiplier=None))


def multiplier_at_ms(ms: int) -> Decimal:
    """
    Pure function: time -> multiplier.
    Formula: e^(SPEED_FACTOR * ms)
    """
    if ms <= 0:
        return Decimal("1.00")
    growth = math.exp(GameConfig.SPEED_FACTOR * ms)
    return Decimal(growth).quantize(GameConfig.CENTS, rounding=ROUND_DOWN)


def flight_duration_ms(crash_point: Decimal) -> int:
    """Milliseconds of animated flight before the round reaches its crash point."""
    ms = math.ceil(math.log(float(crash_point)) / GameConfig.SPEED_FACTOR)
    return max(ms, GameConfig.MIN_FLIGHT_DURATION_MS)


# =====================================================
# ROUND STATE
# =====================================================

class RoundState(str, Enum):
    PENDING = "PENDING"
    CASHED_OUT = "CASHED_OUT"
    CRASHED = "CRASHED"


@dataclass
class CrashRound:
    round_id: str
    context: BetContext
    crash_point: Decimal
    auto_cashout: Optional[Decimal] = None
    state: RoundState = RoundState.PENDING
    started_at: float = field(default_factory=time.time)
    outcome: Optional[GameOutcome] = None

    @property
    def player_id(self) -> int:
        return self.context.player_id

    @property
    def is_over(self) -> bool:
        return self.state is not RoundState.PENDING

    def elapsed_ms(self, now: float) -> int:
        return int((now - self.started_at) * 1000)

    def to_dict(self, now: float) -> dict:
        data = {
            "round_id": self.round_id,
            "status": self.state.value,
            "bet_amount": float(self.context.bet_amount),
            "server_seed_hash": self.context.server_seed_hash,
            "client_seed": self.context.client_seed,
            "nonce": self.context.nonce,
        }
        if self.is_over:
            # Reveal secret
            data["crash_point"] = float(self.crash_point)
            data["multiplier"] = float(self.outcome.multiplier) if self.outcome else 0.0
            data["payout"] = float(self.outcome.payout) if self.outcome else 0.0
        else:
            current = min(multiplier_at_ms(self.elapsed_ms(now)), self.crash_point)
            data["crash_point"] = None
            data["multiplier"] = float(current)
            data["elapsed_ms"] = self.elapsed_ms(now)
        return data


# =====================================================
# ENGINE CLASS
# =====================================================

class CrashEngine:
    """
    Owns live crash rounds, indexed player_id -> round_id -> round.
    Holds no balances; the service settles outcomes through the ledger.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._rounds: Dict[int, Dict[str, CrashRound]] = {}

    def now(self) -> float:
        return self._clock()

    def open_round(
        self,
        round_id: str,
        context: BetContext,
        draw: float,
        auto_cashout: Optional[Decimal] = None,
    ) -> CrashRound:
        if auto_cashout is not None:
            auto_cashout = validate_cashout_multiplier(auto_cashout)
        crash_round = CrashRound(
            round_id=round_id,
            context=context,
            crash_point=derive_crash_point(draw),
            auto_cashout=auto_cashout,
            started_at=self.now(),
        )
        # Finished rounds stay readable until the player's next bet
        rounds = {
            rid: old
            for rid, old in self._rounds.get(context.player_id, {}).items()
            if not old.is_over
        }
        rounds[round_id] = crash_round
        self._rounds[context.player_id] = rounds
        return crash_round

    def get(self, player_id: int, round_id: str) -> CrashRound:
        crash_round = self._rounds.get(player_id, {}).get(round_id)
        if crash_round is None:
            raise RoundNotFound(f"Crash round {round_id} not found")
        return crash_round

    def active_rounds(self, player_id: Optional[int] = None) -> List[CrashRound]:
        if player_id is None:
            candidates = [r for rounds in self._rounds.values() for r in rounds.values()]
        else:
            candidates = list(self._rounds.get(player_id, {}).values())
        return [r for r in candidates if not r.is_over]

    def discard(self, crash_round: CrashRound) -> None:
        rounds = self._rounds.get(crash_round.player_id)
        if rounds is None:
            return
        rounds.pop(crash_round.round_id, None)
        if not rounds:
            del self._rounds[crash_round.player_id]

    # --- transitions ---

    def resolve_auto(self, crash_round: CrashRound) -> GameOutcome:
        self._require_pending(crash_round)
        outcome = settle_auto_cashout(
            crash_round.context.bet_amount, crash_round.auto_cashout, crash_round.crash_point
        )
        self._finish(crash_round, outcome)
        return outcome

    def cashout(self, crash_round: CrashRound, requested: Decimal) -> GameOutcome:
        """
        Manual cashout. A request at or past the crash point ends the
        round as CRASHED before CashoutTooLate propagates.
        """
        self._require_pending(crash_round)
        try:
            outcome = settle_manual_cashout(
                crash_round.context.bet_amount, requested, crash_round.crash_point
            )
        except CashoutTooLate:
            self._finish(crash_round, crashed_outcome(crash_round.context.bet_amount, crash_round.crash_point))
            raise
        self._finish(crash_round, outcome)
        return outcome

    def has_expired(self, crash_round: CrashRound) -> bool:
        if crash_round.is_over:
            return False
        return crash_round.elapsed_ms(self.now()) >= flight_duration_ms(crash_round.crash_point)

    def crash(self, crash_round: CrashRound) -> GameOutcome:
        """The flight reached the crash point with no cashout."""
        self._require_pending(crash_round)
        outcome = crashed_outcome(crash_round.context.bet_amount, crash_round.crash_point)
        self._finish(crash_round, outcome)
        return outcome

    def _require_pending(self, crash_round: CrashRound) -> None:
        if crash_round.is_over:
            raise GameAlreadyOver(f"Crash round {crash_round.round_id} is {crash_round.state.value}")

    def _finish(self, crash_round: CrashRound, outcome: GameOutcome) -> None:
        crash_round.outcome = outcome
        crash_round.state = RoundState.CASHED_OUT if outcome.won else RoundState.CRASHED
