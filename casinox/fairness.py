# fairness.py
"""
Provably Fair Primitives

Responsibilities:
- FairnessRng: (server_seed, client_seed, nonce) -> RandomDraw in [0, 1]
- SeedCommitment: per-player server seed lifecycle (create, advance, rotate)

Draw contract (externally verifiable):
    hash = SHA256(f"{server_seed}-{client_seed}-{nonce}")   # UTF-8, hex digest
    draw = int(hash[:8], 16) / 0xFFFFFFFF

Only 32 bits of the digest are used, and a prefix of "ffffffff" maps to
exactly 1.0. Both are known limitations of this scheme.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from casinox.engine import NoActiveSeed
from casinox.storage import SeedRecord, Storage
from casinox.utils import generate_server_seed, hash_sha256

logger = logging.getLogger("casinox.fairness")

DRAW_DELIMITER = "-"
DRAW_HEX_CHARS = 8
DRAW_DIVISOR = 0xFFFFFFFF


# =========================
# RNG
# =========================

def combined_seed(server_seed: str, client_seed: str, nonce: int) -> str:
    return DRAW_DELIMITER.join((server_seed, client_seed, str(nonce)))


def draw_hash(server_seed: str, client_seed: str, nonce: int) -> str:
    return hash_sha256(combined_seed(server_seed, client_seed, nonce))


def draw(server_seed: str, client_seed: str, nonce: int) -> float:
    """
    Pure function: same inputs, same draw. The only randomness source
    for every game.
    """
    digest = draw_hash(server_seed, client_seed, nonce)
    return int(digest[:DRAW_HEX_CHARS], 16) / DRAW_DIVISOR


# =========================
# SEED COMMITMENT
# =========================

@dataclass(frozen=True)
class Rotation:
    revealed_seed: str
    revealed_hash: str
    final_nonce: int
    new_hash: str

    def to_dict(self) -> dict:
        return {
            "revealed_seed": self.revealed_seed,
            "revealed_hash": self.revealed_hash,
            "final_nonce": self.final_nonce,
            "new_hash": self.new_hash,
        }


class SeedCommitment:
    """
    Owns the secret server seeds. The hash is published up front; the
    seed itself only leaves through rotate().
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    async def create(self, player_id: int) -> SeedRecord:
        seed = generate_server_seed()
        record = await self.storage.create_server_seed(player_id, seed, hash_sha256(seed))
        logger.info(f"Seed pair {record.id} created for player {player_id}")
        return record

    async def current(self, player_id: int) -> SeedRecord:
        record = await self.storage.get_server_seed_pair(player_id)
        if record is None:
            record = await self.create(player_id)
        if record is None or record.used:
            raise NoActiveSeed(f"No active seed pair for player {player_id}")
        return record

    async def advance(self, seed_id: int, expected_nonce: int) -> SeedRecord:
        """
        Bump the nonce by exactly one. Fails with NonceMismatch if some
        other bet already consumed `expected_nonce`.
        """
        return await self.storage.advance_nonce(seed_id, expected_nonce)

    async def rotate(self, seed_id: int) -> Rotation:
        next_seed = generate_server_seed()
        retired, fresh = await self.storage.mark_seed_used(
            seed_id, next_seed, hash_sha256(next_seed)
        )
        logger.info(
            f"Seed pair {retired.id} retired at nonce {retired.nonce} "
            f"for player {retired.user_id}, successor {fresh.id}"
        )
        return Rotation(
            revealed_seed=retired.seed,
            revealed_hash=retired.hash,
            final_nonce=retired.nonce,
            new_hash=fresh.hash,
        )
