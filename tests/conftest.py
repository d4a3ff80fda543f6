"""Shared fixtures: a fixed server seed so outcomes are known in advance."""

from decimal import Decimal

import pytest

from casinox.service import GameService
from casinox.storage import MemoryStorage
from casinox.utils import hash_sha256

SERVER_SEED = "a" * 64
SERVER_SEED_HASH = "ffe054fe7ae0cb6dc65c3af9b61d5209f439851db43d0ba5997337df154668eb"
CLIENT_SEED = "test"

# sha256("aaaa...a-test-<nonce>")[:8]
DRAW_PREFIX = {0: "bc69aad1", 1: "d00653ed", 2: "0e4aad29"}


def expected_draw(nonce: int) -> float:
    return int(DRAW_PREFIX[nonce], 16) / 0xFFFFFFFF


async def seeded_player(service: GameService, username: str = "player1") -> int:
    """A player whose active server seed is SERVER_SEED."""
    user = await service.storage.create_user(username, Decimal("1000.00"))
    await service.storage.create_server_seed(user.id, SERVER_SEED, hash_sha256(SERVER_SEED))
    return user.id


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def service(storage):
    return GameService(storage)
