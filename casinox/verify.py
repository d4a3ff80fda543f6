# verify.py
"""
Independent verification of past bets.

Given a revealed server seed, the client seed and the nonce, recompute the
draw and the game outcome with exactly the formulas the house used, and
check the seed against the hash that was published before play.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from casinox import crash, dice, fairness, mines
from casinox.engine import GameType, ValidationError, result_to_dict
from casinox.utils import hash_sha256, verify_server_seed_hash


@dataclass(frozen=True)
class Verification:
    game_type: GameType
    server_seed_hash: str
    hash_matches: Optional[bool]
    draw: float
    result: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "game_type": self.game_type.value,
            "server_seed_hash": self.server_seed_hash,
            "hash_matches": self.hash_matches,
            "draw": self.draw,
            "result": self.result,
        }


def verify(
    server_seed: str,
    client_seed: str,
    nonce: int,
    game_type: Union[str, GameType],
    published_hash: Optional[str] = None,
    target: Optional[int] = None,
    direction: Optional[str] = None,
    bet_amount: Decimal = Decimal("1.00"),
    mine_count: Optional[int] = None,
) -> Verification:
    """
    `hash_matches` is None when no published hash is supplied.
    Dice needs target and direction, mines needs mine_count.
    """
    try:
        game_type = GameType(game_type)
    except ValueError:
        raise ValidationError(f"Unknown game type {game_type!r}") from None

    value = fairness.draw(server_seed, client_seed, nonce)

    if game_type is GameType.DICE:
        if target is None or direction is None:
            raise ValidationError("Dice verification needs target and direction")
        outcome = dice.play(value, target, direction, bet_amount)
        result = result_to_dict(outcome.result)
        result.update(won=outcome.won, multiplier=str(outcome.multiplier))
    elif game_type is GameType.CRASH:
        result = {"game": game_type.value, "crash_point": str(crash.derive_crash_point(value))}
    else:
        if mine_count is None:
            raise ValidationError("Mines verification needs mine_count")
        result = {
            "game": game_type.value,
            "mine_count": mine_count,
            "mines": sorted(mines.lay_mines(value, mine_count)),
        }

    return Verification(
        game_type=game_type,
        server_seed_hash=hash_sha256(server_seed),
        hash_matches=(
            verify_server_seed_hash(server_seed, published_hash) if published_hash else None
        ),
        draw=value,
        result=result,
    )
