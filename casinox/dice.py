# dice.py
"""
Dice Engine

roll        = floor(draw * 100) + 1                     # 1..100
win         = roll < target (under) | roll > target (over)
win_chance  = target - 1 (under) | 100 - target (over)
multiplier  = 100 * (1 - house_edge) / win_chance       # = 99 / win_chance
"""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Union

from casinox.engine import (
    DiceDirection,
    DiceResult,
    GameConfig,
    GameOutcome,
    InvalidDirection,
    InvalidTarget,
    quantize_multiplier,
    validate_bet_amount,
)


def roll_value(draw: float) -> int:
    # A draw of exactly 1.0 (hash prefix ffffffff) stays on the top face.
    return min(math.floor(draw * 100) + 1, 100)


def parse_direction(direction: Union[str, DiceDirection]) -> DiceDirection:
    try:
        return DiceDirection(direction)
    except ValueError:
        raise InvalidDirection(f"Direction must be 'under' or 'over', got {direction!r}") from None


def validate_target(target: int) -> int:
    if isinstance(target, bool) or not isinstance(target, int):
        raise InvalidTarget("Target must be an integer")
    if not GameConfig.DICE_MIN_TARGET < target < GameConfig.DICE_MAX_TARGET:
        raise InvalidTarget(
            f"Target must be between {GameConfig.DICE_MIN_TARGET} and "
            f"{GameConfig.DICE_MAX_TARGET} (exclusive)"
        )
    return target


def win_chance(target: int, direction: DiceDirection) -> int:
    if direction is DiceDirection.UNDER:
        return target - 1
    return 100 - target


def payout_multiplier(target: int, direction: DiceDirection) -> Decimal:
    chance = win_chance(target, direction)
    return quantize_multiplier(Decimal(100) * (1 - GameConfig.HOUSE_EDGE) / Decimal(chance))


def play(
    draw: float,
    target: int,
    direction: Union[str, DiceDirection],
    bet_amount: Decimal,
) -> GameOutcome:
    bet_amount = validate_bet_amount(bet_amount)
    target = validate_target(target)
    direction = parse_direction(direction)

    roll = roll_value(draw)
    if direction is DiceDirection.UNDER:
        won = roll < target
    else:
        won = roll > target

    result = DiceResult(
        roll=roll,
        target=target,
        direction=direction,
        win_chance=win_chance(target, direction),
    )
    if not won:
        return GameOutcome.loss(bet_amount, result)
    return GameOutcome.win(bet_amount, payout_multiplier(target, direction), result)
