from decimal import Decimal

import pytest

from casinox import crash
from casinox.crash import CrashEngine, RoundState
from casinox.engine import (
    BetContext,
    CashoutTooLate,
    GameAlreadyOver,
    GameType,
    InvalidMultiplier,
    RoundNotFound,
)

from conftest import expected_draw

TEN = Decimal("10.00")


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_context(player_id: int = 1) -> BetContext:
    return BetContext(
        player_id=player_id,
        game_type=GameType.CRASH,
        bet_amount=TEN,
        client_seed="test",
        seed_id=1,
        server_seed_hash="hash",
        nonce=0,
    )


# ============================================================
# Crash point
# ============================================================

def test_crash_point_bounds():
    for i in range(1000):
        point = crash.derive_crash_point(i / 1000)
        assert Decimal("1.00") <= point <= Decimal("100.00")


def test_crash_point_low_draw_is_floored():
    # 0.99 / 1 rounds to 0.99, floored to 1.00
    assert crash.derive_crash_point(0.0) == Decimal("1.00")
    assert crash.derive_crash_point(0.001) == Decimal("1.00")


def test_crash_point_capped_draw():
    assert crash.derive_crash_point(0.99) == Decimal("99.00")
    assert crash.derive_crash_point(0.9999) == Decimal("99.00")
    assert crash.derive_crash_point(1.0) == Decimal("99.00")


def test_crash_point_exact_values():
    assert crash.derive_crash_point(0.5) == Decimal("1.98")
    assert crash.derive_crash_point(0.75) == Decimal("3.96")
    # known seed vector, nonce 0 and nonce 2
    assert crash.derive_crash_point(expected_draw(0)) == Decimal("3.75")
    assert crash.derive_crash_point(expected_draw(2)) == Decimal("1.05")


def test_crash_point_is_monotonic():
    points = [crash.derive_crash_point(i / 500) for i in range(500)]
    assert points == sorted(points)


# ============================================================
# Settlement
# ============================================================

def test_auto_cashout_below_crash_wins():
    outcome = crash.settle_auto_cashout(TEN, Decimal("2.00"), Decimal("3.75"))
    assert outcome.won
    assert outcome.multiplier == Decimal("2.00")
    assert outcome.payout == Decimal("20.00")
    assert outcome.result.cashout_multiplier == Decimal("2.00")


def test_auto_cashout_at_crash_point_loses():
    outcome = crash.settle_auto_cashout(TEN, Decimal("3.75"), Decimal("3.75"))
    assert not outcome.won
    assert outcome.payout == 0
    assert outcome.result.crash_point == Decimal("3.75")


def test_manual_cashout_too_late():
    with pytest.raises(CashoutTooLate):
        crash.settle_manual_cashout(TEN, Decimal("3.75"), Decimal("3.75"))
    with pytest.raises(CashoutTooLate):
        crash.settle_manual_cashout(TEN, Decimal("10"), Decimal("3.75"))


def test_manual_cashout_in_time():
    outcome = crash.settle_manual_cashout(TEN, Decimal("3.74"), Decimal("3.75"))
    assert outcome.won
    assert outcome.payout == Decimal("37.40")


def test_cashout_multiplier_must_exceed_one():
    with pytest.raises(InvalidMultiplier):
        crash.settle_manual_cashout(TEN, Decimal("1.00"), Decimal("3.75"))
    with pytest.raises(InvalidMultiplier):
        crash.settle_auto_cashout(TEN, Decimal("0.5"), Decimal("3.75"))


# ============================================================
# Flight curve
# ============================================================

def test_multiplier_curve():
    assert crash.multiplier_at_ms(0) == Decimal("1.00")
    assert crash.multiplier_at_ms(6931) == Decimal("1.99")
    assert crash.multiplier_at_ms(6932) == Decimal("2.00")


def test_flight_duration():
    assert crash.flight_duration_ms(Decimal("1.00")) == 300
    assert crash.flight_duration_ms(Decimal("3.75")) == 13218


# ============================================================
# Round state machine
# ============================================================

def test_round_cashout_then_terminal():
    engine = CrashEngine(clock=FakeClock())
    crash_round = engine.open_round("r1", make_context(), expected_draw(0))

    assert crash_round.state is RoundState.PENDING
    assert crash_round.to_dict(engine.now())["crash_point"] is None  # hidden while pending

    outcome = engine.cashout(crash_round, Decimal("2.50"))
    assert outcome.payout == Decimal("25.00")
    assert crash_round.state is RoundState.CASHED_OUT
    assert crash_round.to_dict(engine.now())["crash_point"] == 3.75

    with pytest.raises(GameAlreadyOver):
        engine.cashout(crash_round, Decimal("1.50"))


def test_late_cashout_ends_round():
    engine = CrashEngine(clock=FakeClock())
    crash_round = engine.open_round("r1", make_context(), expected_draw(0))

    with pytest.raises(CashoutTooLate):
        engine.cashout(crash_round, Decimal("5.00"))
    assert crash_round.state is RoundState.CRASHED
    assert not crash_round.outcome.won

    # No second try at a lower multiplier
    with pytest.raises(GameAlreadyOver):
        engine.cashout(crash_round, Decimal("1.10"))


def test_invalid_cashout_leaves_round_pending():
    engine = CrashEngine(clock=FakeClock())
    crash_round = engine.open_round("r1", make_context(), expected_draw(0))
    with pytest.raises(InvalidMultiplier):
        engine.cashout(crash_round, Decimal("0.90"))
    assert crash_round.state is RoundState.PENDING


def test_expiry_follows_flight_time():
    clock = FakeClock()
    engine = CrashEngine(clock=clock)
    crash_round = engine.open_round("r1", make_context(), expected_draw(0))

    clock.now += 13.0
    assert not engine.has_expired(crash_round)
    clock.now += 0.5
    assert engine.has_expired(crash_round)

    outcome = engine.crash(crash_round)
    assert not outcome.won
    assert crash_round.state is RoundState.CRASHED
    assert engine.active_rounds() == []


def test_rounds_are_keyed_by_player():
    engine = CrashEngine(clock=FakeClock())
    engine.open_round("r1", make_context(player_id=1), 0.5)
    with pytest.raises(RoundNotFound):
        engine.get(2, "r1")
    assert engine.get(1, "r1").crash_point == Decimal("1.98")


def test_next_bet_prunes_only_that_players_finished_rounds():
    engine = CrashEngine(clock=FakeClock())
    mine = engine.open_round("r1", make_context(player_id=1), expected_draw(0))
    theirs = engine.open_round("r2", make_context(player_id=2), expected_draw(0))
    engine.crash(mine)
    engine.crash(theirs)

    engine.open_round("r3", make_context(player_id=1), expected_draw(0))

    with pytest.raises(RoundNotFound):
        engine.get(1, "r1")
    assert engine.get(2, "r2").state is RoundState.CRASHED  # still readable
    assert [r.round_id for r in engine.active_rounds(1)] == ["r3"]
    assert engine.active_rounds(2) == []


def test_discard_drops_empty_player_index():
    engine = CrashEngine(clock=FakeClock())
    crash_round = engine.open_round("r1", make_context(player_id=1), expected_draw(0))
    engine.open_round("r2", make_context(player_id=2), expected_draw(0))

    engine.discard(crash_round)
    engine.discard(crash_round)

    with pytest.raises(RoundNotFound):
        engine.get(1, "r1")
    assert [r.round_id for r in engine.active_rounds()] == ["r2"]
