# mines.py
"""
Mines Engine

Mine layout (bit-exact from draw and mine_count alone):
    cells = [0, 1, ..., 24]
    for i in 24 .. 1:
        j = floor((draw * 10000 + i) mod (i + 1))
        swap cells[i], cells[j]
    mines = cells[:mine_count]

Multiplier after k safe reveals:
    (1 - house_edge) / prod_{i<k} (25 - mines - i) / (25 - i)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from casinox.engine import (
    AlreadyRevealed,
    BetContext,
    GameAlreadyOver,
    GameConfig,
    GameOutcome,
    InvalidMineCount,
    MinesResult,
    NothingRevealed,
    PositionOutOfRange,
    RoundNotFound,
    quantize_multiplier,
)


# =====================================================
# MATH
# =====================================================

def validate_mine_count(mine_count: int) -> int:
    if isinstance(mine_count, bool) or not isinstance(mine_count, int):
        raise InvalidMineCount("Mine count must be an integer")
    if not GameConfig.MIN_MINES <= mine_count <= GameConfig.MAX_MINES:
        raise InvalidMineCount(
            f"Mine count must be between {GameConfig.MIN_MINES} and {GameConfig.MAX_MINES}"
        )
    return mine_count


def shuffled_cells(draw: float) -> List[int]:
    cells = list(range(GameConfig.GRID_SIZE))
    for i in range(GameConfig.GRID_SIZE - 1, 0, -1):
        j = math.floor((draw * 10000 + i) % (i + 1))
        cells[i], cells[j] = cells[j], cells[i]
    return cells


def lay_mines(draw: float, mine_count: int) -> List[int]:
    """Mine positions in shuffle order."""
    mine_count = validate_mine_count(mine_count)
    return shuffled_cells(draw)[:mine_count]


def multiplier_for(mine_count: int, revealed: int) -> Decimal:
    survival = Decimal(1)
    for i in range(revealed):
        survival *= Decimal(GameConfig.GRID_SIZE - mine_count - i) / Decimal(GameConfig.GRID_SIZE - i)
    return quantize_multiplier((1 - GameConfig.HOUSE_EDGE) / survival)


# =====================================================
# ROUND STATE
# =====================================================

class RoundState(str, Enum):
    ACTIVE = "ACTIVE"
    LOST = "LOST"
    WON = "WON"


@dataclass(frozen=True)
class RevealResult:
    position: int
    is_mine: bool
    multiplier: Decimal
    terminal: bool
    outcome: Optional[GameOutcome] = None


@dataclass
class MinesRound:
    round_id: str
    context: BetContext
    mine_count: int
    mines: List[int]
    revealed: List[int] = field(default_factory=list)
    state: RoundState = RoundState.ACTIVE
    outcome: Optional[GameOutcome] = None

    @property
    def player_id(self) -> int:
        return self.context.player_id

    @property
    def is_over(self) -> bool:
        return self.state is not RoundState.ACTIVE

    @property
    def safe_cells(self) -> int:
        return GameConfig.GRID_SIZE - self.mine_count

    @property
    def multiplier(self) -> Decimal:
        """Current cashout multiplier (meaningful once something is revealed)."""
        return multiplier_for(self.mine_count, len(self.revealed))

    def result(self, hit_position: Optional[int] = None, cashed_out: bool = False) -> MinesResult:
        return MinesResult(
            mine_count=self.mine_count,
            mines=sorted(self.mines),
            revealed=list(self.revealed),
            hit_position=hit_position,
            cashed_out=cashed_out,
        )

    def to_dict(self) -> dict:
        data = {
            "round_id": self.round_id,
            "status": self.state.value,
            "bet_amount": float(self.context.bet_amount),
            "mine_count": self.mine_count,
            "revealed": list(self.revealed),
            "multiplier": float(self.multiplier) if self.revealed else 0.0,
            "server_seed_hash": self.context.server_seed_hash,
            "client_seed": self.context.client_seed,
            "nonce": self.context.nonce,
        }
        if self.is_over:
            data["mines"] = sorted(self.mines)
            data["payout"] = float(self.outcome.payout) if self.outcome else 0.0
        return data


# =====================================================
# TRANSITIONS
# =====================================================

def reveal(state: MinesRound, position: int) -> RevealResult:
    if state.is_over:
        raise GameAlreadyOver(f"Mines round {state.round_id} is {state.state.value}")
    if isinstance(position, bool) or not isinstance(position, int) \
            or not 0 <= position < GameConfig.GRID_SIZE:
        raise PositionOutOfRange(f"Position must be between 0 and {GameConfig.GRID_SIZE - 1}")
    if position in state.revealed:
        raise AlreadyRevealed(f"Position {position} already revealed")

    bet_amount = state.context.bet_amount

    if position in state.mines:
        state.state = RoundState.LOST
        state.outcome = GameOutcome.loss(bet_amount, state.result(hit_position=position))
        return RevealResult(
            position=position,
            is_mine=True,
            multiplier=Decimal("0"),
            terminal=True,
            outcome=state.outcome,
        )

    state.revealed.append(position)
    multiplier = state.multiplier

    if len(state.revealed) == state.safe_cells:
        # Board cleared: automatic cashout at the maximum multiplier
        state.state = RoundState.WON
        state.outcome = GameOutcome.win(bet_amount, multiplier, state.result(cashed_out=True))
        return RevealResult(
            position=position,
            is_mine=False,
            multiplier=multiplier,
            terminal=True,
            outcome=state.outcome,
        )

    return RevealResult(position=position, is_mine=False, multiplier=multiplier, terminal=False)


def cashout(state: MinesRound) -> GameOutcome:
    if state.is_over:
        raise GameAlreadyOver(f"Mines round {state.round_id} is {state.state.value}")
    if not state.revealed:
        raise NothingRevealed("Reveal at least one cell before cashing out")
    state.state = RoundState.WON
    state.outcome = GameOutcome.win(
        state.context.bet_amount, state.multiplier, state.result(cashed_out=True)
    )
    return state.outcome


# =====================================================
# ENGINE CLASS
# =====================================================

class MinesEngine:
    """Owns live mines rounds, indexed player_id -> round_id -> round."""

    def __init__(self) -> None:
        self._rounds: Dict[int, Dict[str, MinesRound]] = {}

    def open_round(self, round_id: str, context: BetContext, draw: float, mine_count: int) -> MinesRound:
        mines_round = MinesRound(
            round_id=round_id,
            context=context,
            mine_count=mine_count,
            mines=lay_mines(draw, mine_count),
        )
        rounds = {
            rid: old
            for rid, old in self._rounds.get(context.player_id, {}).items()
            if not old.is_over
        }
        rounds[round_id] = mines_round
        self._rounds[context.player_id] = rounds
        return mines_round

    def get(self, player_id: int, round_id: str) -> MinesRound:
        mines_round = self._rounds.get(player_id, {}).get(round_id)
        if mines_round is None:
            raise RoundNotFound(f"Mines round {round_id} not found")
        return mines_round

    def active_rounds(self, player_id: Optional[int] = None) -> List[MinesRound]:
        if player_id is None:
            candidates = [r for rounds in self._rounds.values() for r in rounds.values()]
        else:
            candidates = list(self._rounds.get(player_id, {}).values())
        return [r for r in candidates if not r.is_over]

    def discard(self, mines_round: MinesRound) -> None:
        rounds = self._rounds.get(mines_round.player_id)
        if rounds is None:
            return
        rounds.pop(mines_round.round_id, None)
        if not rounds:
            del self._rounds[mines_round.player_id]

    reveal = staticmethod(reveal)
    cashout = staticmethod(cashout)
