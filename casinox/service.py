# service.py
"""
Game Service – one operation per game action

Responsibilities:
- Validate requests before any balance mutation
- Run each bet as: debit -> draw -> engine -> credit -> nonce -> history
- Serialize everything that touches a player's seed or balance
- Refund the stake if a round fails before it has an outcome
- Keep an open-round marker in storage while a crash or mines round is
  live, so a restart can refund rounds it never settled
- Publish spectator events (fire-and-forget)

Integration:
- fairness.py (draws, seed lifecycle)
- dice.py / crash.py / mines.py (pure game math and round state)
- ledger.py (money movement and history)
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from casinox import dice, fairness
from casinox.crash import CrashEngine, CrashRound, validate_cashout_multiplier
from casinox.engine import (
    BetContext,
    CashoutTooLate,
    CasinoError,
    GameOutcome,
    GameType,
    MissingClientSeed,
    PersistenceError,
    PlayerNotFound,
    RoundInProgress,
    validate_bet_amount,
)
from casinox.events import EventBus
from casinox.fairness import Rotation, SeedCommitment
from casinox.ledger import PlayerLocks, SettlementLedger
from casinox.mines import MinesEngine, validate_mine_count
from casinox.storage import GameHistoryRecord, Storage, TransactionRecord, UserRecord
from casinox.utils import format_multiplier, generate_unique_id

logger = logging.getLogger("casinox.service")

# =====================================================
# CONFIG
# =====================================================

# Default starting balance for new players
STARTING_BALANCE = Decimal(os.getenv("STARTING_BALANCE", "1000.00"))

MAX_CLIENT_SEED_LENGTH = 64


# =====================================================
# RESULTS
# =====================================================

@dataclass(frozen=True)
class GameReceipt:
    """What a game action hands back to the routing layer."""

    context: BetContext
    balance: Decimal
    outcome: Optional[GameOutcome] = None
    round: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "game_type": self.context.game_type.value,
            "balance": float(self.balance),
            "finished": self.outcome is not None,
            "provably_fair": {
                "server_seed_hash": self.context.server_seed_hash,
                "client_seed": self.context.client_seed,
                "nonce": self.context.nonce,
            },
        }
        if self.outcome is not None:
            data["outcome"] = self.outcome.to_dict()
        if self.round is not None:
            data["round"] = self.round
        data.update(self.extra)
        return data


# =====================================================
# SERVICE
# =====================================================

class GameService:

    def __init__(
        self,
        storage: Storage,
        events: Optional[EventBus] = None,
        crash_engine: Optional[CrashEngine] = None,
        mines_engine: Optional[MinesEngine] = None,
        starting_balance: Decimal = STARTING_BALANCE,
    ) -> None:
        self.storage = storage
        self.seeds = SeedCommitment(storage)
        self.ledger = SettlementLedger(storage, self.seeds)
        self.locks = PlayerLocks()
        self.events = events or EventBus()
        self.crash = crash_engine or CrashEngine()
        self.mines = mines_engine or MinesEngine()
        self.starting_balance = starting_balance
        self._registration_lock = asyncio.Lock()

    # =====================================================
    # PLAYERS & WALLET
    # =====================================================

    async def init_player(self, username: str) -> UserRecord:
        """Fetch a player or create one with the starting balance and a seed pair."""
        async with self._registration_lock:
            user = await self.storage.get_user_by_username(username)
            if user is not None:
                return user
            user = await self.storage.create_user(username, self.starting_balance)
            await self.seeds.create(user.id)
            logger.info(f"Player {user.id} ({username}) created")
            return user

    async def get_player(self, player_id: int) -> UserRecord:
        user = await self.storage.get_user(player_id)
        if user is None:
            raise PlayerNotFound(f"User {player_id} not found")
        return user

    async def balance(self, player_id: int) -> Decimal:
        return await self.ledger.balance(player_id)

    async def transactions(self, player_id: int, limit: int = 50) -> List[TransactionRecord]:
        await self.get_player(player_id)
        return await self.storage.list_transactions(player_id, limit)

    async def history(self, player_id: int, limit: int = 50) -> List[GameHistoryRecord]:
        await self.get_player(player_id)
        return await self.storage.list_game_history(player_id, limit)

    # =====================================================
    # PROVABLY FAIR
    # =====================================================

    async def seed_info(self, player_id: int) -> Dict[str, Any]:
        await self.get_player(player_id)
        async with self.locks.hold(player_id):
            seed = await self.seeds.current(player_id)
        return {"server_seed_hash": seed.hash, "nonce": seed.nonce}

    async def rotate_seed(self, player_id: int) -> Rotation:
        """
        Reveal the current seed and start a new one. Refused while a
        round drawn from the current seed is still live.
        """
        await self.get_player(player_id)
        async with self.locks.hold(player_id):
            if self.crash.active_rounds(player_id) or self.mines.active_rounds(player_id):
                raise RoundInProgress("Finish the active round before rotating seeds")
            seed = await self.seeds.current(player_id)
            return await self.seeds.rotate(seed.id)

    # =====================================================
    # SHARED BET FLOW
    # =====================================================

    @staticmethod
    def _validate_client_seed(client_seed: Optional[str]) -> str:
        client_seed = (client_seed or "").strip()
        if not client_seed:
            raise MissingClientSeed("Client seed is required")
        if len(client_seed) > MAX_CLIENT_SEED_LENGTH:
            raise MissingClientSeed(f"Client seed must be at most {MAX_CLIENT_SEED_LENGTH} characters")
        return client_seed

    async def _open_bet(
        self,
        player_id: int,
        game_type: GameType,
        bet_amount: Decimal,
        client_seed: str,
    ) -> Tuple[BetContext, float]:
        """
        Debit the stake and derive the draw. Caller must hold the player lock.
        """
        await self.get_player(player_id)
        seed = await self.seeds.current(player_id)
        await self.ledger.place_bet(player_id, bet_amount, game_type)

        context = BetContext(
            player_id=player_id,
            game_type=game_type,
            bet_amount=bet_amount,
            client_seed=client_seed,
            seed_id=seed.id,
            server_seed_hash=seed.hash,
            nonce=seed.nonce,
        )
        return context, fairness.draw(seed.seed, client_seed, seed.nonce)

    async def _settle(self, context: BetContext, outcome: GameOutcome, advance_nonce: bool) -> Decimal:
        balance = await self.ledger.settle(context, outcome, advance_nonce=advance_nonce)
        self.events.publish(f"{context.game_type.value}_result", {
            "player_id": context.player_id,
            "won": outcome.won,
            "bet_amount": float(outcome.bet_amount),
            "multiplier": float(outcome.multiplier),
            "payout": float(outcome.payout),
        })
        return balance

    # =====================================================
    # DICE
    # =====================================================

    async def play_dice(
        self,
        player_id: int,
        bet_amount: Decimal,
        client_seed: str,
        target: int,
        direction: str,
    ) -> GameReceipt:
        bet_amount = validate_bet_amount(bet_amount)
        client_seed = self._validate_client_seed(client_seed)
        target = dice.validate_target(target)
        direction = dice.parse_direction(direction)

        async with self.locks.hold(player_id):
            context, value = await self._open_bet(player_id, GameType.DICE, bet_amount, client_seed)
            try:
                outcome = dice.play(value, target, direction, bet_amount)
            except Exception:
                await self.ledger.refund(context, "engine_reject")
                raise
            balance = await self._settle(context, outcome, advance_nonce=True)

        return GameReceipt(context=context, balance=balance, outcome=outcome)

    # =====================================================
    # CRASH
    # =====================================================

    async def crash_bet(
        self,
        player_id: int,
        bet_amount: Decimal,
        client_seed: str,
        auto_cashout: Optional[Decimal] = None,
    ) -> GameReceipt:
        """
        Open a crash round. With an auto-cashout the round is resolved
        immediately; otherwise it flies until cashout or crash.
        """
        bet_amount = validate_bet_amount(bet_amount)
        client_seed = self._validate_client_seed(client_seed)
        if auto_cashout is not None:
            auto_cashout = validate_cashout_multiplier(auto_cashout)

        async with self.locks.hold(player_id):
            if self.crash.active_rounds(player_id):
                raise RoundInProgress("A crash round is already in flight")

            context, value = await self._open_bet(player_id, GameType.CRASH, bet_amount, client_seed)
            crash_round = await self._open_round(
                context,
                lambda round_id: self.crash.open_round(round_id, context, value, auto_cashout),
                self.crash.discard,
            )

            self.events.publish("player_bet", {
                "player_id": player_id,
                "round_id": crash_round.round_id,
                "bet_amount": float(bet_amount),
                "auto_cashout": float(auto_cashout) if auto_cashout else None,
            })

            outcome = None
            if auto_cashout is not None:
                outcome = self.crash.resolve_auto(crash_round)
                balance = await self._settle_round(crash_round.round_id, context, outcome)
                self._publish_crash_end(crash_round)
            else:
                balance = await self.ledger.balance(player_id)

        return GameReceipt(
            context=context,
            balance=balance,
            outcome=outcome,
            round=crash_round.to_dict(self.crash.now()),
        )

    async def crash_cashout(self, player_id: int, round_id: str, multiplier: Decimal) -> GameReceipt:
        async with self.locks.hold(player_id):
            crash_round = self.crash.get(player_id, round_id)
            try:
                outcome = self.crash.cashout(crash_round, multiplier)
            except CashoutTooLate:
                # The round is over; book the loss before reporting.
                await self._settle_round(round_id, crash_round.context, crash_round.outcome)
                self._publish_crash_end(crash_round)
                raise
            balance = await self._settle_round(round_id, crash_round.context, outcome)

        self.events.publish("player_cashout", {
            "player_id": player_id,
            "round_id": round_id,
            "multiplier": float(outcome.multiplier),
            "bet_amount": float(outcome.bet_amount),
        })
        logger.info(f"Player {player_id} cashed out crash round {round_id} at {format_multiplier(outcome.multiplier)}")
        return GameReceipt(
            context=crash_round.context,
            balance=balance,
            outcome=outcome,
            round=crash_round.to_dict(self.crash.now()),
        )

    async def crash_state(self, player_id: int, round_id: str) -> Dict[str, Any]:
        """
        Heartbeat: current flight multiplier, crashing the round once the
        animated flight has reached its crash point.
        """
        async with self.locks.hold(player_id):
            crash_round = self.crash.get(player_id, round_id)
            if self.crash.has_expired(crash_round):
                await self._crash_round(crash_round)
            return crash_round.to_dict(self.crash.now())

    async def sweep_crash_rounds(self) -> int:
        """Crash every round whose flight time is over. Returns how many crashed."""
        crashed = 0
        for crash_round in self.crash.active_rounds():
            if not self.crash.has_expired(crash_round):
                continue
            async with self.locks.hold(crash_round.player_id):
                if not self.crash.has_expired(crash_round):
                    continue
                try:
                    await self._crash_round(crash_round)
                    crashed += 1
                except CasinoError as e:
                    logger.error(f"Failed to settle expired crash round {crash_round.round_id}: {e!r}")
        return crashed

    async def _crash_round(self, crash_round: CrashRound) -> None:
        outcome = self.crash.crash(crash_round)
        await self._settle_round(crash_round.round_id, crash_round.context, outcome)
        self._publish_crash_end(crash_round)

    def _publish_crash_end(self, crash_round: CrashRound) -> None:
        self.events.publish("crash_result", {
            "player_id": crash_round.player_id,
            "round_id": crash_round.round_id,
            "crash_point": float(crash_round.crash_point),
        })

    # =====================================================
    # MINES
    # =====================================================

    async def mines_start(
        self,
        player_id: int,
        bet_amount: Decimal,
        client_seed: str,
        mine_count: int,
    ) -> GameReceipt:
        bet_amount = validate_bet_amount(bet_amount)
        client_seed = self._validate_client_seed(client_seed)
        mine_count = validate_mine_count(mine_count)

        async with self.locks.hold(player_id):
            if self.mines.active_rounds(player_id):
                raise RoundInProgress("A mines round is already active")

            context, value = await self._open_bet(player_id, GameType.MINES, bet_amount, client_seed)
            mines_round = await self._open_round(
                context,
                lambda round_id: self.mines.open_round(round_id, context, value, mine_count),
                self.mines.discard,
            )
            balance = await self.ledger.balance(player_id)

        self.events.publish("player_bet", {
            "player_id": player_id,
            "round_id": mines_round.round_id,
            "bet_amount": float(bet_amount),
            "mine_count": mine_count,
        })
        return GameReceipt(context=context, balance=balance, round=mines_round.to_dict())

    async def mines_reveal(self, player_id: int, round_id: str, position: int) -> GameReceipt:
        async with self.locks.hold(player_id):
            mines_round = self.mines.get(player_id, round_id)
            revealed = self.mines.reveal(mines_round, position)
            if revealed.terminal:
                balance = await self._settle_round(round_id, mines_round.context, revealed.outcome)
            else:
                balance = await self.ledger.balance(player_id)

        return GameReceipt(
            context=mines_round.context,
            balance=balance,
            outcome=revealed.outcome,
            round=mines_round.to_dict(),
            extra={
                "position": revealed.position,
                "is_mine": revealed.is_mine,
                "multiplier": float(revealed.multiplier),
                "terminal": revealed.terminal,
            },
        )

    async def mines_cashout(self, player_id: int, round_id: str) -> GameReceipt:
        async with self.locks.hold(player_id):
            mines_round = self.mines.get(player_id, round_id)
            outcome = self.mines.cashout(mines_round)
            balance = await self._settle_round(round_id, mines_round.context, outcome)

        return GameReceipt(
            context=mines_round.context,
            balance=balance,
            outcome=outcome,
            round=mines_round.to_dict(),
        )

    # =====================================================
    # MULTI-REQUEST ROUNDS
    # =====================================================

    async def _open_round(self, context: BetContext, open_fn, discard_fn):
        """
        Create the round, reserve its nonce and write its open-round marker
        right away, since the round outlives this request. On failure the
        stake is refunded.
        """
        live_round = None
        try:
            live_round = open_fn(generate_unique_id())
            await self.seeds.advance(context.seed_id, context.nonce)
            await self.storage.create_open_round(live_round.round_id, context)
        except Exception as e:
            if live_round is not None:
                discard_fn(live_round)
            logger.error(f"Could not open {context.game_type.value} round for player {context.player_id}: {e!r}")
            await self.ledger.refund(context, "round_open_failed")
            raise
        return live_round


    async def _settle_round(self, round_id: str, context: BetContext, outcome: GameOutcome) -> Decimal:
        """
        Settle a multi-request round and clear its marker. A compensated
        failure clears the marker too, since the stake is already back.
        """
        try:
            balance = await self._settle(context, outcome, advance_nonce=False)
        except PersistenceError as e:
            if e.compensated:
                await self._forget_round(round_id)
            raise
        await self._forget_round(round_id)
        return balance

    async def _forget_round(self, round_id: str) -> None:
        try:
            await self.storage.delete_open_round(round_id)
        except Exception as e:
            # Startup recovery finds the history row and drops the marker
            logger.error(f"Could not clear open-round marker {round_id}: {e!r}")

    async def _void_round(self, live_round, discard_fn, reason: str) -> None:
        await self.ledger.refund(live_round.context, reason)
        discard_fn(live_round)
        await self._forget_round(live_round.round_id)

    # =====================================================
    # LIFECYCLE
    # =====================================================

    async def recover_open_rounds(self) -> int:
        """
        Reconcile open-round markers left by a previous process. A marker
        whose bet reached game history was settled and only lost its
        cleanup; any other marker is refunded. Returns how many were refunded.

        Assumes one service process per database.
        """
        refunded = 0
        for record in await self.storage.list_open_rounds():
            if self._is_live(record.user_id, record.round_id):
                continue
            async with self.locks.hold(record.user_id):
                settled = await self.storage.find_game_history(
                    record.user_id, record.server_seed_hash, record.nonce
                )
                if settled is None:
                    await self.ledger.refund(record.context(), "round_abandoned")
                    refunded += 1
                await self.storage.delete_open_round(record.round_id)
        if refunded:
            logger.warning(f"Refunded {refunded} round(s) abandoned by a previous run")
        return refunded

    async def close_live_rounds(self) -> int:
        """
        Shutdown: crash rounds whose flight is already over are booked as
        losses, every other live round is voided and its stake refunded.
        A round that cannot be closed keeps its marker for the next startup.
        """
        closed = 0
        for crash_round in self.crash.active_rounds():
            async with self.locks.hold(crash_round.player_id):
                if crash_round.is_over:
                    continue
                try:
                    if self.crash.has_expired(crash_round):
                        await self._crash_round(crash_round)
                    else:
                        await self._void_round(crash_round, self.crash.discard, "round_voided")
                    closed += 1
                except Exception as e:
                    logger.error(f"Could not close crash round {crash_round.round_id} on shutdown: {e!r}")

        for mines_round in self.mines.active_rounds():
            async with self.locks.hold(mines_round.player_id):
                if mines_round.is_over:
                    continue
                try:
                    await self._void_round(mines_round, self.mines.discard, "round_voided")
                    closed += 1
                except Exception as e:
                    logger.error(f"Could not close mines round {mines_round.round_id} on shutdown: {e!r}")

        if closed:
            logger.info(f"Closed {closed} live round(s) on shutdown")
        return closed

    def _is_live(self, player_id: int, round_id: str) -> bool:
        for live_round in self.crash.active_rounds(player_id) + self.mines.active_rounds(player_id):
            if live_round.round_id == round_id:
                return True
        return False
