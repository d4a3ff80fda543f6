# storage.py
"""
Storage Contract – injected into the ledger and seed commitment

Responsibilities:
- Record types shared by every backend (detached, immutable snapshots)
- Abstract Storage interface consumed by the core
- MemoryStorage: integer-keyed arenas for tests and local runs

Each method is atomic for the single record it touches. Callers are
responsible for per-player serialization (see ledger.PlayerLocks).
"""

from __future__ import annotations

import abc
import asyncio
import enum
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from casinox.engine import (
    BetContext,
    GameType,
    InsufficientBalance,
    NonceMismatch,
    PlayerNotFound,
    SeedReused,
    quantize_money,
)
from casinox.utils import utc_now


# =====================================================
# ENUMS
# =====================================================

class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    BET = "bet"
    WIN = "win"
    LOSS = "loss"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"


# =====================================================
# RECORDS
# =====================================================

@dataclass(frozen=True)
class UserRecord:
    id: int
    username: str
    balance: Decimal
    created_at: datetime


@dataclass(frozen=True)
class SeedRecord:
    id: int
    user_id: int
    seed: str
    hash: str
    nonce: int
    used: bool
    created_at: datetime


@dataclass(frozen=True)
class TransactionRecord:
    id: int
    user_id: int
    type: TransactionType
    amount: Decimal
    balance_after: Decimal
    reference: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class GameHistoryRecord:
    id: int
    user_id: int
    game_type: GameType
    bet_amount: Decimal
    multiplier: Decimal
    outcome: Decimal
    game_data: str
    client_seed: str
    server_seed_hash: str
    nonce: int
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "game_type": self.game_type.value,
            "bet_amount": float(self.bet_amount),
            "multiplier": float(self.multiplier),
            "outcome": float(self.outcome),
            "game_data": self.game_data,
            "client_seed": self.client_seed,
            "server_seed_hash": self.server_seed_hash,
            "nonce": self.nonce,
            "timestamp": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class OpenRoundRecord:
    """
    Marker for a multi-request round whose stake is debited but not yet
    settled. Written when the round opens, deleted once it settles or is
    refunded. Markers still present at startup belong to rounds a previous
    process never finished.
    """

    round_id: str
    user_id: int
    game_type: GameType
    bet_amount: Decimal
    client_seed: str
    seed_id: int
    server_seed_hash: str
    nonce: int
    created_at: datetime

    def context(self) -> BetContext:
        return BetContext(
            player_id=self.user_id,
            game_type=self.game_type,
            bet_amount=self.bet_amount,
            client_seed=self.client_seed,
            seed_id=self.seed_id,
            server_seed_hash=self.server_seed_hash,
            nonce=self.nonce,
        )


# =====================================================
# INTERFACE
# =====================================================

class Storage(abc.ABC):
    """Persistence collaborator consumed by the settlement core."""

    async def init(self) -> None:
        """Prepare the backend (create tables, open pools)."""

    async def close(self) -> None:
        """Release backend resources."""

    # --- users ---

    @abc.abstractmethod
    async def create_user(self, username: str, starting_balance: Decimal) -> UserRecord:
        """Create a user; the starting balance is booked as a deposit."""

    @abc.abstractmethod
    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        ...

    @abc.abstractmethod
    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        ...

    @abc.abstractmethod
    async def apply_transaction(
        self,
        user_id: int,
        amount: Decimal,
        tx_type: TransactionType,
        reference: Optional[str] = None,
    ) -> Tuple[UserRecord, TransactionRecord]:
        """
        Atomic balance update + immutable ledger entry.
        Raises InsufficientBalance if the balance would go negative.
        """

    @abc.abstractmethod
    async def list_transactions(self, user_id: int, limit: int = 50) -> List[TransactionRecord]:
        ...

    # --- game history ---

    @abc.abstractmethod
    async def create_game_history(
        self,
        user_id: int,
        game_type: GameType,
        bet_amount: Decimal,
        multiplier: Decimal,
        outcome: Decimal,
        game_data: str,
        client_seed: str,
        server_seed_hash: str,
        nonce: int,
    ) -> GameHistoryRecord:
        ...

    @abc.abstractmethod
    async def list_game_history(self, user_id: int, limit: int = 50) -> List[GameHistoryRecord]:
        ...

    @abc.abstractmethod
    async def find_game_history(
        self, user_id: int, server_seed_hash: str, nonce: int
    ) -> Optional[GameHistoryRecord]:
        """The settled bet for one (seed, nonce) slot, if it was recorded."""

    # --- open rounds ---

    @abc.abstractmethod
    async def create_open_round(self, round_id: str, context: BetContext) -> OpenRoundRecord:
        ...

    @abc.abstractmethod
    async def delete_open_round(self, round_id: str) -> None:
        """Remove a marker; deleting a missing marker is a no-op."""

    @abc.abstractmethod
    async def list_open_rounds(self) -> List[OpenRoundRecord]:
        ...

    # --- server seeds ---

    @abc.abstractmethod
    async def create_server_seed(self, user_id: int, seed: str, seed_hash: str) -> SeedRecord:
        ...

    @abc.abstractmethod
    async def get_server_seed_pair(self, user_id: int) -> Optional[SeedRecord]:
        """The user's active (unused) pair, if any."""

    @abc.abstractmethod
    async def advance_nonce(self, seed_id: int, expected_nonce: int) -> SeedRecord:
        """
        Compare-and-swap nonce increment.
        Raises NonceMismatch if the stored nonce is not `expected_nonce`,
        SeedReused if the pair is retired.
        """

    @abc.abstractmethod
    async def mark_seed_used(
        self, seed_id: int, next_seed: str, next_hash: str
    ) -> Tuple[SeedRecord, SeedRecord]:
        """Retire a pair and create its successor in one step."""


# =====================================================
# IN-MEMORY IMPLEMENTATION
# =====================================================

class MemoryStorage(Storage):
    """
    Arena-backed storage. Records are stored as frozen dataclasses and
    replaced wholesale on update, so callers never share mutable state.
    """

    def __init__(self) -> None:
        self._users: Dict[int, UserRecord] = {}
        self._transactions: Dict[int, TransactionRecord] = {}
        self._history: Dict[int, GameHistoryRecord] = {}
        self._seeds: Dict[int, SeedRecord] = {}
        self._open_rounds: Dict[str, OpenRoundRecord] = {}
        self._ids: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _next_id(self, arena: str) -> int:
        self._ids[arena] = self._ids.get(arena, 0) + 1
        return self._ids[arena]

    def _require_user(self, user_id: int) -> UserRecord:
        user = self._users.get(user_id)
        if user is None:
            raise PlayerNotFound(f"User {user_id} not found")
        return user

    async def create_user(self, username: str, starting_balance: Decimal) -> UserRecord:
        async with self._lock:
            user = UserRecord(
                id=self._next_id("users"),
                username=username,
                balance=Decimal("0.00"),
                created_at=utc_now(),
            )
            self._users[user.id] = user
        if starting_balance > 0:
            user, _ = await self.apply_transaction(
                user.id, starting_balance, TransactionType.DEPOSIT, "starting_balance"
            )
        return user

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        return self._users.get(user_id)

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        for user in self._users.values():
            if user.username == username:
                return user
        return None

    async def apply_transaction(
        self,
        user_id: int,
        amount: Decimal,
        tx_type: TransactionType,
        reference: Optional[str] = None,
    ) -> Tuple[UserRecord, TransactionRecord]:
        async with self._lock:
            user = self._require_user(user_id)
            amount_quantized = quantize_money(amount)
            new_balance = user.balance + amount_quantized
            if new_balance < 0:
                raise InsufficientBalance("Insufficient balance")

            user = replace(user, balance=new_balance)
            self._users[user.id] = user

            tx = TransactionRecord(
                id=self._next_id("transactions"),
                user_id=user_id,
                type=tx_type,
                amount=amount_quantized,
                balance_after=new_balance,
                reference=reference,
                created_at=utc_now(),
            )
            self._transactions[tx.id] = tx
            return user, tx

    async def list_transactions(self, user_id: int, limit: int = 50) -> List[TransactionRecord]:
        rows = [tx for tx in self._transactions.values() if tx.user_id == user_id]
        rows.sort(key=lambda tx: tx.id, reverse=True)
        return rows[:limit]

    async def create_game_history(
        self,
        user_id: int,
        game_type: GameType,
        bet_amount: Decimal,
        multiplier: Decimal,
        outcome: Decimal,
        game_data: str,
        client_seed: str,
        server_seed_hash: str,
        nonce: int,
    ) -> GameHistoryRecord:
        async with self._lock:
            self._require_user(user_id)
            record = GameHistoryRecord(
                id=self._next_id("history"),
                user_id=user_id,
                game_type=game_type,
                bet_amount=bet_amount,
                multiplier=multiplier,
                outcome=outcome,
                game_data=game_data,
                client_seed=client_seed,
                server_seed_hash=server_seed_hash,
                nonce=nonce,
                created_at=utc_now(),
            )
            self._history[record.id] = record
            return record

    async def list_game_history(self, user_id: int, limit: int = 50) -> List[GameHistoryRecord]:
        rows = [h for h in self._history.values() if h.user_id == user_id]
        rows.sort(key=lambda h: h.id, reverse=True)
        return rows[:limit]

    async def find_game_history(
        self, user_id: int, server_seed_hash: str, nonce: int
    ) -> Optional[GameHistoryRecord]:
        for record in self._history.values():
            if (record.user_id, record.server_seed_hash, record.nonce) == (user_id, server_seed_hash, nonce):
                return record
        return None

    async def create_open_round(self, round_id: str, context: BetContext) -> OpenRoundRecord:
        async with self._lock:
            self._require_user(context.player_id)
            record = OpenRoundRecord(
                round_id=round_id,
                user_id=context.player_id,
                game_type=context.game_type,
                bet_amount=context.bet_amount,
                client_seed=context.client_seed,
                seed_id=context.seed_id,
                server_seed_hash=context.server_seed_hash,
                nonce=context.nonce,
                created_at=utc_now(),
            )
            self._open_rounds[round_id] = record
            return record

    async def delete_open_round(self, round_id: str) -> None:
        async with self._lock:
            self._open_rounds.pop(round_id, None)

    async def list_open_rounds(self) -> List[OpenRoundRecord]:
        return sorted(self._open_rounds.values(), key=lambda r: r.created_at)

    async def create_server_seed(self, user_id: int, seed: str, seed_hash: str) -> SeedRecord:
        async with self._lock:
            return self._insert_seed(user_id, seed, seed_hash)

    def _insert_seed(self, user_id: int, seed: str, seed_hash: str) -> SeedRecord:
        record = SeedRecord(
            id=self._next_id("seeds"),
            user_id=user_id,
            seed=seed,
            hash=seed_hash,
            nonce=0,
            used=False,
            created_at=utc_now(),
        )
        self._seeds[record.id] = record
        return record

    async def get_server_seed_pair(self, user_id: int) -> Optional[SeedRecord]:
        active = [s for s in self._seeds.values() if s.user_id == user_id and not s.used]
        if not active:
            return None
        return max(active, key=lambda s: s.id)

    async def advance_nonce(self, seed_id: int, expected_nonce: int) -> SeedRecord:
        async with self._lock:
            seed = self._seeds.get(seed_id)
            if seed is None or seed.used:
                raise SeedReused(f"Seed {seed_id} is not active")
            if seed.nonce != expected_nonce:
                raise NonceMismatch(
                    f"Seed {seed_id} nonce is {seed.nonce}, expected {expected_nonce}"
                )
            seed = replace(seed, nonce=seed.nonce + 1)
            self._seeds[seed_id] = seed
            return seed

    async def mark_seed_used(
        self, seed_id: int, next_seed: str, next_hash: str
    ) -> Tuple[SeedRecord, SeedRecord]:
        async with self._lock:
            seed = self._seeds.get(seed_id)
            if seed is None or seed.used:
                raise SeedReused(f"Seed {seed_id} is not active")
            retired = replace(seed, used=True)
            self._seeds[seed_id] = retired
            fresh = self._insert_seed(seed.user_id, next_seed, next_hash)
            return retired, fresh
