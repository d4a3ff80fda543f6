# db.py
"""
Database Layer – SQLAlchemy async Storage implementation

Responsibilities:
- Async database engine & session lifecycle
- User, seed, transaction and game-history persistence
- Ledger-safe balance management (Decimal arithmetic, row locks)
- Compare-and-swap nonce advance

Every method runs in its own session and commits once, so each call is
atomic for the rows it touches. Rows are returned as detached records
from storage.py.
"""

from __future__ import annotations

import os
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    String,
    Text,
    DateTime,
    Integer,
    Enum,
    ForeignKey,
    Numeric,
    delete,
    select,
    update,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.exc import IntegrityError as DBIntegrityError

from casinox.engine import (
    BetContext,
    GameType,
    InsufficientBalance,
    NonceMismatch,
    PlayerNotFound,
    SeedReused,
    quantize_money,
)
from casinox.storage import (
    GameHistoryRecord,
    OpenRoundRecord,
    SeedRecord,
    Storage,
    TransactionRecord,
    TransactionType,
    UserRecord,
)
from casinox.utils import utc_now

# =====================================================
# CONFIG
# =====================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./casinox.db"
)

DB_ECHO = os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes")


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# MODELS
# =====================================================

class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    username: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )

    # PRECISION: 18 digits total, 2 after decimal.
    # Cached projection of sum(transactions.amount).
    balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=Decimal("0.00"),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="noload",
    )


class Transaction(Base):
    """
    Immutable ledger record (append-only).
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type"),
        nullable=False,
    )

    # Signed amount: -10.00 for bet, +20.00 for win
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    balance_after: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    # Extra metadata (e.g. "dice_win_x1.98")
    reference: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
    )

    user: Mapped[User] = relationship(back_populates="transactions")


class GameHistory(Base):
    """
    One row per settled bet, carrying everything needed to re-verify it.
    """

    __tablename__ = "game_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    game_type: Mapped[GameType] = mapped_column(
        Enum(GameType, name="game_type"),
        nullable=False,
    )

    bet_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    multiplier: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)

    # Signed profit/loss
    outcome: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    # JSON of the tagged game result
    game_data: Mapped[str] = mapped_column(Text, nullable=False)

    client_seed: Mapped[str] = mapped_column(String(64), nullable=False)
    server_seed_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    nonce: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class ServerSeed(Base):
    __tablename__ = "server_seeds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    seed: Mapped[str] = mapped_column(String(64), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    nonce: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class OpenRound(Base):
    """
    A multi-request round with its stake debited but not yet settled.
    Deleted on settlement; leftovers are reconciled at startup.
    """

    __tablename__ = "open_rounds"

    round_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    game_type: Mapped[GameType] = mapped_column(
        Enum(GameType, name="game_type"),
        nullable=False,
    )

    bet_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    client_seed: Mapped[str] = mapped_column(String(64), nullable=False)
    seed_id: Mapped[int] = mapped_column(Integer, nullable=False)
    server_seed_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    nonce: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


# =====================================================
# ROW -> RECORD
# =====================================================

def _user_record(row: User) -> UserRecord:
    return UserRecord(id=row.id, username=row.username, balance=row.balance, created_at=row.created_at)


def _seed_record(row: ServerSeed) -> SeedRecord:
    return SeedRecord(
        id=row.id,
        user_id=row.user_id,
        seed=row.seed,
        hash=row.hash,
        nonce=row.nonce,
        used=row.used,
        created_at=row.created_at,
    )


def _tx_record(row: Transaction) -> TransactionRecord:
    return TransactionRecord(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        amount=row.amount,
        balance_after=row.balance_after,
        reference=row.reference,
        created_at=row.created_at,
    )


def _history_record(row: GameHistory) -> GameHistoryRecord:
    return GameHistoryRecord(
        id=row.id,
        user_id=row.user_id,
        game_type=row.game_type,
        bet_amount=row.bet_amount,
        multiplier=row.multiplier,
        outcome=row.outcome,
        game_data=row.game_data,
        client_seed=row.client_seed,
        server_seed_hash=row.server_seed_hash,
        nonce=row.nonce,
        created_at=row.created_at,
    )


def _open_round_record(row: OpenRound) -> OpenRoundRecord:
    return OpenRoundRecord(
        round_id=row.round_id,
        user_id=row.user_id,
        game_type=row.game_type,
        bet_amount=row.bet_amount,
        client_seed=row.client_seed,
        seed_id=row.seed_id,
        server_seed_hash=row.server_seed_hash,
        nonce=row.nonce,
        created_at=row.created_at,
    )


# =====================================================
# ENGINE & STORAGE
# =====================================================

def make_engine(url: str = DATABASE_URL, echo: bool = DB_ECHO) -> AsyncEngine:
    return create_async_engine(
        url,
        echo=echo,
        # SSL is critical for Postgres in production
        connect_args={"ssl": "require"} if "postgresql" in url else {},
    )


class SqlStorage(Storage):

    def __init__(self, url: str = DATABASE_URL, echo: bool = DB_ECHO) -> None:
        self.engine = make_engine(url, echo)
        self.sessions = async_sessionmaker(bind=self.engine, expire_on_commit=False)

    async def init(self) -> None:
        """
        Creates all tables. Safe to run on every startup.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    # --- users ---

    async def create_user(self, username: str, starting_balance: Decimal) -> UserRecord:
        async with self.sessions() as session:
            user = User(username=username, balance=Decimal("0.00"))
            session.add(user)
            try:
                await session.flush()
            except DBIntegrityError:
                # Handle race condition where user was created in parallel
                await session.rollback()
                existing = await self.get_user_by_username(username)
                if existing is None:
                    raise
                return existing

            if starting_balance > 0:
                amount = quantize_money(starting_balance)
                user.balance = amount
                session.add(Transaction(
                    user_id=user.id,
                    type=TransactionType.DEPOSIT,
                    amount=amount,
                    balance_after=amount,
                    reference="starting_balance",
                ))
            await session.commit()
            return _user_record(user)

    async def get_user(self, user_id: int) -> Optional[UserRecord]:
        async with self.sessions() as session:
            user = await session.get(User, user_id)
            return _user_record(user) if user else None

    async def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        async with self.sessions() as session:
            result = await session.execute(select(User).where(User.username == username))
            user = result.scalar_one_or_none()
            return _user_record(user) if user else None

    async def apply_transaction(
        self,
        user_id: int,
        amount: Decimal,
        tx_type: TransactionType,
        reference: Optional[str] = None,
    ) -> Tuple[UserRecord, TransactionRecord]:
        async with self.sessions() as session:
            # 1. Lock the user row for update to prevent race conditions
            # (Only works on Postgres/MySQL, ignored on SQLite)
            result = await session.execute(
                select(User).where(User.id == user_id).with_for_update()
            )
            user = result.scalar_one_or_none()
            if user is None:
                raise PlayerNotFound(f"User {user_id} not found")

            # 2. Calculate new balance
            amount_quantized = quantize_money(amount)
            new_balance = user.balance + amount_quantized

            # 3. Validate
            if new_balance < 0:
                raise InsufficientBalance("Insufficient balance")

            # 4. Mutate User
            user.balance = new_balance

            # 5. Create Ledger Entry
            tx = Transaction(
                user_id=user.id,
                type=tx_type,
                amount=amount_quantized,
                balance_after=new_balance,
                reference=reference,
            )
            session.add(tx)
            await session.commit()
            return _user_record(user), _tx_record(tx)

    async def list_transactions(self, user_id: int, limit: int = 50) -> List[TransactionRecord]:
        async with self.sessions() as session:
            result = await session.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.id.desc())
                .limit(limit)
            )
            return [_tx_record(row) for row in result.scalars()]

    # --- game history ---

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
        async with self.sessions() as session:
            row = GameHistory(
                user_id=user_id,
                game_type=game_type,
                bet_amount=bet_amount,
                multiplier=multiplier,
                outcome=outcome,
                game_data=game_data,
                client_seed=client_seed,
                server_seed_hash=server_seed_hash,
                nonce=nonce,
            )
            session.add(row)
            await session.commit()
            return _history_record(row)

    async def list_game_history(self, user_id: int, limit: int = 50) -> List[GameHistoryRecord]:
        async with self.sessions() as session:
            result = await session.execute(
                select(GameHistory)
                .where(GameHistory.user_id == user_id)
                .order_by(GameHistory.id.desc())
                .limit(limit)
            )
            return [_history_record(row) for row in result.scalars()]

    async def find_game_history(
        self, user_id: int, server_seed_hash: str, nonce: int
    ) -> Optional[GameHistoryRecord]:
        async with self.sessions() as session:
            result = await session.execute(
                select(GameHistory)
                .where(
                    GameHistory.user_id == user_id,
                    GameHistory.server_seed_hash == server_seed_hash,
                    GameHistory.nonce == nonce,
                )
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _history_record(row) if row else None

    # --- open rounds ---

    async def create_open_round(self, round_id: str, context: BetContext) -> OpenRoundRecord:
        async with self.sessions() as session:
            row = OpenRound(
                round_id=round_id,
                user_id=context.player_id,
                game_type=context.game_type,
                bet_amount=context.bet_amount,
                client_seed=context.client_seed,
                seed_id=context.seed_id,
                server_seed_hash=context.server_seed_hash,
                nonce=context.nonce,
            )
            session.add(row)
            await session.commit()
            return _open_round_record(row)

    async def delete_open_round(self, round_id: str) -> None:
        async with self.sessions() as session:
            await session.execute(delete(OpenRound).where(OpenRound.round_id == round_id))
            await session.commit()

    async def list_open_rounds(self) -> List[OpenRoundRecord]:
        async with self.sessions() as session:
            result = await session.execute(select(OpenRound).order_by(OpenRound.created_at))
            return [_open_round_record(row) for row in result.scalars()]

    # --- server seeds ---

    async def create_server_seed(self, user_id: int, seed: str, seed_hash: str) -> SeedRecord:
        async with self.sessions() as session:
            row = ServerSeed(user_id=user_id, seed=seed, hash=seed_hash, used=False, nonce=0)
            session.add(row)
            await session.commit()
            return _seed_record(row)

    async def get_server_seed_pair(self, user_id: int) -> Optional[SeedRecord]:
        async with self.sessions() as session:
            result = await session.execute(
                select(ServerSeed)
                .where(ServerSeed.user_id == user_id, ServerSeed.used.is_(False))
                .order_by(ServerSeed.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _seed_record(row) if row else None

    async def advance_nonce(self, seed_id: int, expected_nonce: int) -> SeedRecord:
        async with self.sessions() as session:
            result = await session.execute(
                update(ServerSeed)
                .where(
                    ServerSeed.id == seed_id,
                    ServerSeed.nonce == expected_nonce,
                    ServerSeed.used.is_(False),
                )
                .values(nonce=ServerSeed.nonce + 1)
            )
            if result.rowcount != 1:
                await session.rollback()
                row = await session.get(ServerSeed, seed_id)
                if row is None or row.used:
                    raise SeedReused(f"Seed {seed_id} is not active")
                raise NonceMismatch(f"Seed {seed_id} nonce is {row.nonce}, expected {expected_nonce}")
            await session.commit()
            row = await session.get(ServerSeed, seed_id, populate_existing=True)
            return _seed_record(row)

    async def mark_seed_used(
        self, seed_id: int, next_seed: str, next_hash: str
    ) -> Tuple[SeedRecord, SeedRecord]:
        async with self.sessions() as session:
            result = await session.execute(
                select(ServerSeed).where(ServerSeed.id == seed_id).with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None or row.used:
                raise SeedReused(f"Seed {seed_id} is not active")
            row.used = True
            fresh = ServerSeed(user_id=row.user_id, seed=next_seed, hash=next_hash, used=False, nonce=0)
            session.add(fresh)
            await session.commit()
            return _seed_record(row), _seed_record(fresh)
