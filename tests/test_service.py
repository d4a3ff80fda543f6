import asyncio
import json
from decimal import Decimal

import pytest

from casinox.crash import CrashEngine
from casinox.engine import (
    CashoutTooLate,
    GameType,
    InsufficientBalance,
    InvalidMineCount,
    InvalidTarget,
    MissingClientSeed,
    PlayerNotFound,
    RoundInProgress,
    RoundNotFound,
)
from casinox.service import GameService
from casinox.storage import MemoryStorage, TransactionType
from casinox.verify import verify

from conftest import CLIENT_SEED, SERVER_SEED, SERVER_SEED_HASH, seeded_player

TEN = Decimal("10.00")


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def balance_of(service, player_id) -> Decimal:
    return await service.balance(player_id)


async def nonce_of(service, player_id) -> int:
    return (await service.seed_info(player_id))["nonce"]


# ============================================================
# Players
# ============================================================

def test_init_player_is_idempotent(service):
    async def scenario():
        first = await service.init_player("alice")
        second = await service.init_player("alice")
        seed = await service.seed_info(first.id)
        txs = await service.transactions(first.id)
        return first, second, seed, txs

    first, second, seed, txs = asyncio.run(scenario())
    assert first.id == second.id
    assert first.balance == Decimal("1000.00")
    assert seed["nonce"] == 0
    assert len(seed["server_seed_hash"]) == 64
    assert [tx.type for tx in txs] == [TransactionType.DEPOSIT]


def test_unknown_player(service):
    with pytest.raises(PlayerNotFound):
        asyncio.run(service.play_dice(42, TEN, CLIENT_SEED, 50, "over"))
    with pytest.raises(PlayerNotFound):
        asyncio.run(service.seed_info(42))


# ============================================================
# Dice
# ============================================================

def test_dice_win_updates_balance_history_and_nonce(service):
    async def scenario():
        pid = await seeded_player(service)
        receipt = await service.play_dice(pid, TEN, CLIENT_SEED, 50, "over")
        return pid, receipt, await service.history(pid), await nonce_of(service, pid)

    pid, receipt, history, nonce = asyncio.run(scenario())
    assert receipt.outcome.won
    assert receipt.outcome.result.roll == 74
    assert receipt.balance == Decimal("1009.80")
    assert receipt.context.nonce == 0
    assert receipt.context.server_seed_hash == SERVER_SEED_HASH

    assert nonce == 1
    assert len(history) == 1
    assert history[0].multiplier == Decimal("1.9800")
    assert json.loads(history[0].game_data)["roll"] == 74

    body = receipt.to_dict()
    assert body["finished"] is True
    assert body["provably_fair"] == {
        "server_seed_hash": SERVER_SEED_HASH,
        "client_seed": CLIENT_SEED,
        "nonce": 0,
    }


def test_dice_loss(service):
    async def scenario():
        pid = await seeded_player(service)
        return await service.play_dice(pid, TEN, CLIENT_SEED, 50, "under")

    receipt = asyncio.run(scenario())
    assert not receipt.outcome.won
    assert receipt.balance == Decimal("990.00")


def test_rejected_bets_change_nothing(service):
    async def scenario():
        pid = await seeded_player(service)
        with pytest.raises(InsufficientBalance):
            await service.play_dice(pid, Decimal("1000.01"), CLIENT_SEED, 50, "over")
        with pytest.raises(MissingClientSeed):
            await service.play_dice(pid, TEN, "   ", 50, "over")
        with pytest.raises(MissingClientSeed):
            await service.play_dice(pid, TEN, "x" * 65, 50, "over")
        with pytest.raises(InvalidTarget):
            await service.play_dice(pid, TEN, CLIENT_SEED, 99, "over")
        return (
            await balance_of(service, pid),
            await nonce_of(service, pid),
            await service.history(pid),
        )

    balance, nonce, history = asyncio.run(scenario())
    assert balance == Decimal("1000.00")
    assert nonce == 0
    assert history == []


def test_concurrent_bets_get_distinct_nonces(service):
    async def scenario():
        pid = await seeded_player(service)
        receipts = await asyncio.gather(*[
            service.play_dice(pid, TEN, CLIENT_SEED, 50, "over") for _ in range(8)
        ])
        txs = await service.transactions(pid, limit=100)
        return pid, receipts, txs, await balance_of(service, pid), await nonce_of(service, pid)

    pid, receipts, txs, balance, nonce = asyncio.run(scenario())
    assert sorted(r.context.nonce for r in receipts) == list(range(8))
    assert nonce == 8
    assert balance == sum((tx.amount for tx in txs), Decimal("0.00"))


# ============================================================
# Crash
# ============================================================

def test_crash_auto_cashout_resolves_at_placement(service):
    async def scenario():
        pid = await seeded_player(service)
        receipt = await service.crash_bet(pid, TEN, CLIENT_SEED, auto_cashout=Decimal("2.00"))
        return receipt, await nonce_of(service, pid)

    receipt, nonce = asyncio.run(scenario())
    assert receipt.outcome.won
    assert receipt.outcome.payout == Decimal("20.00")
    assert receipt.balance == Decimal("1010.00")
    assert receipt.round["status"] == "CASHED_OUT"
    assert receipt.round["crash_point"] == 3.75
    assert nonce == 1


def test_crash_auto_cashout_above_crash_point_loses(service):
    async def scenario():
        pid = await seeded_player(service)
        return await service.crash_bet(pid, TEN, CLIENT_SEED, auto_cashout=Decimal("3.75"))

    receipt = asyncio.run(scenario())
    assert not receipt.outcome.won
    assert receipt.balance == Decimal("990.00")
    assert receipt.round["status"] == "CRASHED"


def test_crash_manual_cashout(service):
    async def scenario():
        pid = await seeded_player(service)
        opened = await service.crash_bet(pid, TEN, CLIENT_SEED)
        nonce_after_open = await nonce_of(service, pid)
        closed = await service.crash_cashout(pid, opened.round["round_id"], Decimal("3.74"))
        return opened, nonce_after_open, closed, await nonce_of(service, pid)

    opened, nonce_after_open, closed, nonce = asyncio.run(scenario())
    assert opened.outcome is None
    assert opened.balance == Decimal("990.00")
    assert opened.round["crash_point"] is None
    assert nonce_after_open == 1

    assert closed.outcome.payout == Decimal("37.40")
    assert closed.balance == Decimal("1027.40")
    assert nonce == 1  # reserved once, at open


def test_crash_late_cashout_books_loss(service):
    async def scenario():
        pid = await seeded_player(service)
        opened = await service.crash_bet(pid, TEN, CLIENT_SEED)
        round_id = opened.round["round_id"]
        with pytest.raises(CashoutTooLate):
            await service.crash_cashout(pid, round_id, Decimal("5.00"))
        state = await service.crash_state(pid, round_id)
        return state, await balance_of(service, pid), await service.history(pid)

    state, balance, history = asyncio.run(scenario())
    assert state["status"] == "CRASHED"
    assert state["crash_point"] == 3.75
    assert balance == Decimal("990.00")
    assert len(history) == 1
    assert history[0].outcome == Decimal("-10.00")


def test_one_crash_round_at_a_time(service):
    async def scenario():
        pid = await seeded_player(service)
        await service.crash_bet(pid, TEN, CLIENT_SEED)
        with pytest.raises(RoundInProgress):
            await service.crash_bet(pid, TEN, CLIENT_SEED)
        return await balance_of(service, pid)

    assert asyncio.run(scenario()) == Decimal("990.00")


def test_crash_round_expires_on_heartbeat():
    clock = FakeClock()
    service = GameService(MemoryStorage(), crash_engine=CrashEngine(clock=clock))

    async def scenario():
        pid = await seeded_player(service)
        opened = await service.crash_bet(pid, TEN, CLIENT_SEED)
        round_id = opened.round["round_id"]

        clock.now += 5.0
        flying = await service.crash_state(pid, round_id)
        clock.now += 10.0
        landed = await service.crash_state(pid, round_id)
        return flying, landed, await service.history(pid)

    flying, landed, history = asyncio.run(scenario())
    assert flying["status"] == "PENDING"
    assert 1.0 < flying["multiplier"] < 3.75
    assert landed["status"] == "CRASHED"
    assert landed["crash_point"] == 3.75
    assert len(history) == 1


def test_sweep_crashes_abandoned_rounds():
    clock = FakeClock()
    service = GameService(MemoryStorage(), crash_engine=CrashEngine(clock=clock))

    async def scenario():
        first = await seeded_player(service, "player1")
        second = await seeded_player(service, "player2")
        await service.crash_bet(first, TEN, CLIENT_SEED)
        await service.crash_bet(second, TEN, CLIENT_SEED)
        assert await service.sweep_crash_rounds() == 0

        clock.now += 120.0  # past the longest possible flight
        swept = await service.sweep_crash_rounds()
        return swept, service.crash.active_rounds()

    swept, active = asyncio.run(scenario())
    assert swept == 2
    assert active == []


def test_crash_unknown_round(service):
    async def scenario():
        pid = await seeded_player(service)
        await service.crash_cashout(pid, "missing", Decimal("2.00"))

    with pytest.raises(RoundNotFound):
        asyncio.run(scenario())


def test_failed_round_open_refunds_stake():
    class NonceDown(MemoryStorage):
        async def advance_nonce(self, seed_id, expected_nonce):
            raise RuntimeError("seed table locked")

    service = GameService(NonceDown())

    async def scenario():
        pid = await seeded_player(service)
        with pytest.raises(RuntimeError):
            await service.crash_bet(pid, TEN, CLIENT_SEED)
        return pid, await balance_of(service, pid), await service.transactions(pid)

    pid, balance, txs = asyncio.run(scenario())
    assert balance == Decimal("1000.00")
    assert txs[0].type is TransactionType.REFUND
    assert service.crash.active_rounds(pid) == []


# ============================================================
# Mines
# ============================================================

def test_mines_reveal_and_cashout(service):
    async def scenario():
        pid = await seeded_player(service)
        opened = await service.mines_start(pid, TEN, CLIENT_SEED, 3)
        round_id = opened.round["round_id"]
        first = await service.mines_reveal(pid, round_id, 0)
        second = await service.mines_reveal(pid, round_id, 1)
        closed = await service.mines_cashout(pid, round_id)
        return opened, first, second, closed, await nonce_of(service, pid)

    opened, first, second, closed, nonce = asyncio.run(scenario())
    assert opened.balance == Decimal("990.00")
    assert "mines" not in opened.round  # hidden while active
    assert first.to_dict()["multiplier"] == 1.125
    assert second.to_dict()["multiplier"] == 1.2857
    assert not second.to_dict()["finished"]

    assert closed.outcome.payout == Decimal("12.85")
    assert closed.balance == Decimal("1002.85")
    assert closed.round["mines"] == [4, 7, 12]
    assert nonce == 1


def test_mines_hit_ends_round(service):
    async def scenario():
        pid = await seeded_player(service)
        opened = await service.mines_start(pid, TEN, CLIENT_SEED, 3)
        hit = await service.mines_reveal(pid, opened.round["round_id"], 7)
        return hit, await service.history(pid)

    hit, history = asyncio.run(scenario())
    assert hit.to_dict()["is_mine"] is True
    assert hit.outcome is not None and not hit.outcome.won
    assert hit.balance == Decimal("990.00")
    assert hit.round["status"] == "LOST"
    assert len(history) == 1


def test_mines_validation_and_single_round(service):
    async def scenario():
        pid = await seeded_player(service)
        with pytest.raises(InvalidMineCount):
            await service.mines_start(pid, TEN, CLIENT_SEED, 25)
        await service.mines_start(pid, TEN, CLIENT_SEED, 3)
        with pytest.raises(RoundInProgress):
            await service.mines_start(pid, TEN, CLIENT_SEED, 3)
        return await balance_of(service, pid)

    assert asyncio.run(scenario()) == Decimal("990.00")


# ============================================================
# Seed rotation
# ============================================================

def test_rotation_blocked_during_live_round(service):
    async def scenario():
        pid = await seeded_player(service)
        opened = await service.mines_start(pid, TEN, CLIENT_SEED, 3)
        with pytest.raises(RoundInProgress):
            await service.rotate_seed(pid)
        round_id = opened.round["round_id"]
        await service.mines_reveal(pid, round_id, 0)
        await service.mines_cashout(pid, round_id)
        return await service.rotate_seed(pid), await service.seed_info(pid)

    rotation, seed = asyncio.run(scenario())
    assert rotation.revealed_seed == SERVER_SEED
    assert rotation.final_nonce == 1
    assert seed["server_seed_hash"] == rotation.new_hash
    assert seed["nonce"] == 0


def test_revealed_seed_verifies_history(service):
    async def scenario():
        pid = await seeded_player(service)
        await service.play_dice(pid, TEN, CLIENT_SEED, 50, "over")
        await service.play_dice(pid, TEN, CLIENT_SEED, 30, "under")
        history = await service.history(pid)
        rotation = await service.rotate_seed(pid)
        return history, rotation

    history, rotation = asyncio.run(scenario())
    for record in history:
        data = json.loads(record.game_data)
        report = verify(
            server_seed=rotation.revealed_seed,
            client_seed=record.client_seed,
            nonce=record.nonce,
            game_type=GameType.DICE,
            published_hash=record.server_seed_hash,
            target=data["target"],
            direction=data["direction"],
        )
        assert report.hash_matches is True
        assert report.result["roll"] == data["roll"]


# ============================================================
# Events
# ============================================================

def test_results_are_published(service):
    queue = service.events.subscribe()

    async def scenario():
        pid = await seeded_player(service)
        await service.play_dice(pid, TEN, CLIENT_SEED, 50, "over")

    asyncio.run(scenario())
    message = queue.get_nowait()
    assert message["type"] == "dice_result"
    assert message["data"]["won"] is True
    assert message["data"]["payout"] == 19.8


# ============================================================
# Restart and shutdown
# ============================================================

def test_open_round_marker_lives_until_settlement(service, storage):
    async def scenario():
        pid = await seeded_player(service)
        started = await service.mines_start(pid, TEN, CLIENT_SEED, 3)
        opened = await service.crash_bet(pid, TEN, CLIENT_SEED)
        live = await storage.list_open_rounds()

        await service.crash_cashout(pid, opened.round["round_id"], Decimal("2.00"))
        await service.mines_reveal(pid, started.round["round_id"], 0)
        await service.mines_cashout(pid, started.round["round_id"])
        return opened, started, live, await storage.list_open_rounds()

    opened, started, live, remaining = asyncio.run(scenario())
    assert {r.round_id for r in live} == {opened.round["round_id"], started.round["round_id"]}
    assert {r.game_type for r in live} == {GameType.CRASH, GameType.MINES}
    assert remaining == []


def test_auto_cashout_leaves_no_marker(service, storage):
    async def scenario():
        pid = await seeded_player(service)
        await service.crash_bet(pid, TEN, CLIENT_SEED, auto_cashout=Decimal("2.00"))
        return await storage.list_open_rounds()

    assert asyncio.run(scenario()) == []


def test_restart_refunds_rounds_left_open(storage):
    first_run = GameService(storage)

    async def scenario():
        pid = await seeded_player(first_run)
        await first_run.crash_bet(pid, TEN, CLIENT_SEED)
        await first_run.mines_start(pid, TEN, CLIENT_SEED, 3)
        before = await balance_of(first_run, pid)

        second_run = GameService(storage)
        refunded = await second_run.recover_open_rounds()
        return (
            before,
            refunded,
            await balance_of(second_run, pid),
            await second_run.history(pid),
            await second_run.transactions(pid),
            await nonce_of(second_run, pid),
            await storage.list_open_rounds(),
        )

    before, refunded, balance, history, txs, nonce, remaining = asyncio.run(scenario())
    assert before == Decimal("980.00")
    assert refunded == 2
    assert balance == Decimal("1000.00")
    assert history == []
    assert [tx.type for tx in txs[:2]] == [TransactionType.REFUND, TransactionType.REFUND]
    assert nonce == 2  # both slots stay burned
    assert remaining == []


def test_restart_keeps_settled_round_with_stale_marker():
    class StickyMarkers(MemoryStorage):
        keep_markers = True

        async def delete_open_round(self, round_id):
            if self.keep_markers:
                raise RuntimeError("open_rounds table locked")
            await super().delete_open_round(round_id)

    storage = StickyMarkers()
    first_run = GameService(storage)

    async def scenario():
        pid = await seeded_player(first_run)
        opened = await first_run.crash_bet(pid, TEN, CLIENT_SEED)
        closed = await first_run.crash_cashout(pid, opened.round["round_id"], Decimal("3.74"))
        stale = await storage.list_open_rounds()

        storage.keep_markers = False
        second_run = GameService(storage)
        refunded = await second_run.recover_open_rounds()
        return closed, stale, refunded, await balance_of(second_run, pid), await storage.list_open_rounds()

    closed, stale, refunded, balance, remaining = asyncio.run(scenario())
    assert closed.balance == Decimal("1027.40")
    assert len(stale) == 1
    assert refunded == 0
    assert balance == Decimal("1027.40")
    assert remaining == []


def test_recovery_skips_rounds_still_live(service, storage):
    async def scenario():
        pid = await seeded_player(service)
        await service.crash_bet(pid, TEN, CLIENT_SEED)
        refunded = await service.recover_open_rounds()
        return refunded, await balance_of(service, pid), await storage.list_open_rounds()

    refunded, balance, remaining = asyncio.run(scenario())
    assert refunded == 0
    assert balance == Decimal("990.00")
    assert len(remaining) == 1


def test_shutdown_voids_live_rounds_and_crashes_expired_ones():
    clock = FakeClock()
    storage = MemoryStorage()
    service = GameService(storage, crash_engine=CrashEngine(clock=clock))

    async def scenario():
        flier = await seeded_player(service, "player1")
        miner = await seeded_player(service, "player2")
        await service.crash_bet(flier, TEN, CLIENT_SEED)
        clock.now += 120.0  # flier's round is past its crash point

        await service.crash_bet(miner, TEN, CLIENT_SEED)
        await service.mines_start(miner, TEN, CLIENT_SEED, 3)
        closed = await service.close_live_rounds()
        return (
            closed,
            await balance_of(service, flier),
            await service.history(flier),
            await balance_of(service, miner),
            await service.history(miner),
            await storage.list_open_rounds(),
        )

    closed, flier_balance, flier_history, miner_balance, miner_history, remaining = asyncio.run(scenario())
    assert closed == 3
    assert flier_balance == Decimal("990.00")
    assert len(flier_history) == 1
    assert miner_balance == Decimal("1000.00")
    assert miner_history == []
    assert remaining == []
    assert service.crash.active_rounds() == []
    assert service.mines.active_rounds() == []


def test_failed_marker_write_refunds_stake():
    class MarkersDown(MemoryStorage):
        async def create_open_round(self, round_id, context):
            raise RuntimeError("open_rounds table locked")

    service = GameService(MarkersDown())

    async def scenario():
        pid = await seeded_player(service)
        with pytest.raises(RuntimeError):
            await service.mines_start(pid, TEN, CLIENT_SEED, 3)
        return pid, await balance_of(service, pid), await nonce_of(service, pid)

    pid, balance, nonce = asyncio.run(scenario())
    assert balance == Decimal("1000.00")
    assert nonce == 1
    assert service.mines.active_rounds(pid) == []
