# ledger.py
"""
Settlement Ledger

Responsibilities:
- Debit the stake before the outcome is known
- Credit payouts, advance the seed nonce, append game history
- Compensate (Saga rollback) when any step after the debit fails
- Per-player serialization of balance and nonce mutations

Settlement order: debit -> [draw -> engine] -> credit -> nonce -> history.
History is written last: a bet that gets compensated never has a history row.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Dict

from casinox.engine import (
    BetContext,
    GameOutcome,
    GameType,
    InsufficientBalance,
    IntegrityError,
    PersistenceError,
    PlayerNotFound,
    serialize_result,
    validate_bet_amount,
)
from casinox.fairness import SeedCommitment
from casinox.storage import Storage, TransactionType, UserRecord
from casinox.utils import format_balance, format_multiplier

logger = logging.getLogger("casinox.ledger")


# =====================================================
# LOCKS
# =====================================================

class PlayerLocks:
    """
    One asyncio.Lock per player. Bets from the same player run one at a
    time; different players never contend. A player's lock is dropped once
    nobody holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = {}
        self._holders: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, player_id: int) -> asyncio.Lock:
        lock = self._locks.get(player_id)
        if lock is None:
            lock = self._locks[player_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, player_id: int) -> AsyncIterator[None]:
        lock = self.get(player_id)
        self._holders[player_id] = self._holders.get(player_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[player_id] - 1
            if remaining:
                self._holders[player_id] = remaining
            else:
                del self._holders[player_id]
                self._locks.pop(player_id, None)


# =====================================================
# LEDGER
# =====================================================

class SettlementLedger:

    def __init__(self, storage: Storage, seeds: SeedCommitment) -> None:
        self.storage = storage
        self.seeds = seeds

    async def balance(self, player_id: int) -> Decimal:
        user = await self.storage.get_user(player_id)
        if user is None:
            raise PlayerNotFound(f"User {player_id} not found")
        return user.balance

    async def place_bet(self, player_id: int, bet_amount: Decimal, game_type: GameType) -> UserRecord:
        """
        Debit the stake immediately. Nothing else has happened yet, so a
        failure here needs no compensation.
        """
        bet_amount = validate_bet_amount(bet_amount)
        if await self.balance(player_id) < bet_amount:
            raise InsufficientBalance("Insufficient balance")

        user, _ = await self.storage.apply_transaction(
            player_id,
            -bet_amount,
            TransactionType.BET,
            reference=f"{game_type.value}_bet",
        )
        logger.info(
            f"Player {player_id} bet {format_balance(bet_amount)} on {game_type.value}, "
            f"balance {format_balance(user.balance)}"
        )
        return user

    async def settle(
        self,
        context: BetContext,
        outcome: GameOutcome,
        advance_nonce: bool = True,
    ) -> Decimal:
        """
        Credit, advance and record as one unit. Rounds that span several
        requests advance the nonce when they open and pass
        advance_nonce=False here.

        On failure the stake is restored and the nonce burned. Seed
        problems (NonceMismatch, SeedReused) are re-raised as they are once
        the balance is restored; anything else becomes PersistenceError.
        """
        credited = Decimal("0.00")
        nonce_done = not advance_nonce
        try:
            if outcome.payout > 0:
                await self.storage.apply_transaction(
                    context.player_id,
                    outcome.payout,
                    TransactionType.WIN,
                    reference=f"{context.game_type.value}_win_{format_multiplier(outcome.multiplier)}",
                )
                credited = outcome.payout

            if advance_nonce:
                await self.seeds.advance(context.seed_id, context.nonce)
                nonce_done = True

            await self.storage.create_game_history(
                user_id=context.player_id,
                game_type=context.game_type,
                bet_amount=context.bet_amount,
                multiplier=outcome.multiplier,
                outcome=outcome.net,
                game_data=serialize_result(outcome.result),
                client_seed=context.client_seed,
                server_seed_hash=context.server_seed_hash,
                nonce=context.nonce,
            )
        except Exception as e:
            logger.error(
                f"Settlement failed for player {context.player_id} "
                f"({context.game_type.value}, nonce {context.nonce}): {e!r}"
            )
            compensated = await self._compensate(context, credited, nonce_done)
            if compensated and isinstance(e, IntegrityError):
                raise
            raise PersistenceError(
                f"Settlement failed; stake {'refunded' if compensated else 'NOT refunded'}",
                compensated=compensated,
            ) from e

        balance = await self.balance(context.player_id)
        logger.info(
            f"Player {context.player_id} settled {context.game_type.value} "
            f"{'win' if outcome.won else 'loss'} {format_multiplier(outcome.multiplier)}, "
            f"net {format_balance(outcome.net)}, balance {format_balance(balance)}"
        )
        return balance

    async def refund(self, context: BetContext, reason: str) -> UserRecord:
        """Compensating credit for a stake whose round never produced an outcome."""
        user, _ = await self.storage.apply_transaction(
            context.player_id,
            context.bet_amount,
            TransactionType.REFUND,
            reference=f"{context.game_type.value}_refund_{reason}",
        )
        logger.warning(
            f"Refunded {format_balance(context.bet_amount)} to player {context.player_id}: {reason}"
        )
        return user

    async def _compensate(self, context: BetContext, credited: Decimal, nonce_done: bool) -> bool:
        """
        Restore the pre-bet balance: stake back, any credited payout out.
        The nonce is burned so the same (seed, client seed, nonce) triple
        never backs another bet.
        """
        restored = True
        try:
            await self.storage.apply_transaction(
                context.player_id,
                context.bet_amount - credited,
                TransactionType.REFUND,
                reference=f"{context.game_type.value}_settlement_rollback",
            )
        except Exception as e:
            logger.critical(
                f"Compensation FAILED for player {context.player_id}: stake "
                f"{format_balance(context.bet_amount)}, credited {format_balance(credited)}: {e!r}"
            )
            restored = False

        if not nonce_done:
            try:
                await self.seeds.advance(context.seed_id, context.nonce)
            except Exception as e:
                logger.critical(
                    f"Could not burn nonce {context.nonce} on seed {context.seed_id}: {e!r}"
                )
        return restored
